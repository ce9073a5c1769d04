from __future__ import annotations

import difflib
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from selfheal.errors import GitHubApiError, PublishError
from selfheal.gitops.github_rest import GitHubRestClient
from selfheal.gitops.labels import ensure_fix_label
from selfheal.models import Fix, PullRequestResult
from selfheal.settings import Settings

logger = logging.getLogger(__name__)


def changed_line_count(original: Optional[str], updated: str) -> int:
    diff = difflib.unified_diff((original or "").splitlines(), updated.splitlines(), lineterm="", n=0)
    return sum(1 for ln in diff if ln[:1] in ("+", "-") and not ln.startswith(("+++", "---")))


@dataclass(frozen=True)
class CommitPublisher:
    """
    Publishes a fix set as one commit on a fresh branch, then opens the PR.

    Blobs -> one tree over the branch tree -> one commit -> one fast-forward ref update.
    Nothing is visible on the branch until the final ref update succeeds.
    """

    client: GitHubRestClient
    settings: Settings
    clock: Callable[[], float] = time.time

    def new_branch_name(self) -> str:
        return f"{self.settings.fix_branch_prefix}ci-{int(self.clock() * 1000)}"

    def commit_files(self, *, branch: str, parent_sha: str, fixes: List[Fix], message: str) -> str:
        """Returns the new commit sha. Raises GitHubApiError before the ref moves on any failure."""
        tree_sha = self.client.get_commit_tree_sha(commit_sha=parent_sha)
        entries: List[Dict[str, str]] = []
        for fx in fixes:
            blob_sha = self.client.create_blob(content_text=fx.content or "")
            entries.append({"path": fx.path, "mode": "100644", "type": "blob", "sha": blob_sha})
        new_tree = self.client.create_tree(base_tree=tree_sha, entries=entries)
        commit_sha = self.client.create_commit(message=message, tree_sha=new_tree, parents=[parent_sha])
        self.client.update_ref(branch=branch, sha=commit_sha, force=False)
        return commit_sha

    def qualifies_for_auto_merge(self, *, fixes: List[Fix], originals: Dict[str, Optional[str]], confidence: float) -> bool:
        s = self.settings
        if len(fixes) > s.auto_merge_max_files or confidence < s.auto_merge_confidence:
            return False
        lines = sum(changed_line_count(originals.get(f.path), f.content or "") for f in fixes)
        return lines <= s.auto_merge_max_changed_lines

    def publish(
        self,
        *,
        base_branch: str,
        fixes: List[Fix],
        originals: Dict[str, Optional[str]],
        title: str,
        body: str,
        pattern_confidence: float = 0.0,
    ) -> PullRequestResult:
        if not fixes:
            raise PublishError("nothing_to_publish")
        if any(f.content is None for f in fixes):
            raise PublishError("publish_requires_full_content")

        try:
            base_sha = self.client.get_branch_head_sha(branch=base_branch)
        except GitHubApiError as e:
            raise PublishError(f"cannot_resolve_base_sha: {base_branch}: {e}") from e

        branch = self.new_branch_name()
        try:
            self.client.create_branch(new_branch=branch, from_sha=base_sha)
        except GitHubApiError as e:
            raise PublishError(f"cannot_create_branch: {branch}: {e}") from e

        try:
            parent = base_sha if self.settings.dry_run else self.client.get_branch_head_sha(branch=branch)
            commit_sha = self.commit_files(branch=branch, parent_sha=parent, fixes=fixes, message=title)
        except GitHubApiError as e:
            raise PublishError(f"commit_failed: {branch}: {e}") from e
        logger.info("committed %d file(s) to %s as %s", len(fixes), branch, commit_sha)

        ensure_fix_label(self.client, self.settings)
        try:
            pr = self.client.create_pull_request(
                title=title,
                body=body,
                head=branch,
                base=base_branch,
                labels=[self.settings.fix_label],
            )
        except GitHubApiError as e:
            raise PublishError(f"cannot_open_pr: {branch}: {e}") from e

        if self.qualifies_for_auto_merge(fixes=fixes, originals=originals, confidence=pattern_confidence):
            enabled = False
            if pr.node_id or pr.mode == "dry_run":
                try:
                    enabled = self.client.enable_auto_merge(pr_node_id=pr.node_id or "", method="SQUASH")
                except GitHubApiError as e:
                    logger.warning("auto-merge request failed for PR #%d: %s", pr.pr_number, e)
            if enabled:
                logger.info("auto-merge enabled for PR #%d", pr.pr_number)
                pr = pr.model_copy(update={"auto_merge": True})
        return pr
