from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from selfheal.errors import GitHubApiError
from selfheal.models import IssueResult, PullRequestResult
from selfheal.settings import Settings

logger = logging.getLogger(__name__)

_RATE_LIMIT_MARKERS = ("rate limit", "secondary rate", "abuse detection")

_AUTO_MERGE_MUTATION = """
mutation($pullRequestId: ID!, $mergeMethod: PullRequestMergeMethod!) {
  enablePullRequestAutoMerge(input: {pullRequestId: $pullRequestId, mergeMethod: $mergeMethod}) {
    pullRequest { number }
  }
}
"""


def _is_rate_limited(r: httpx.Response) -> bool:
    if r.status_code == 429:
        return True
    if r.status_code == 403:
        if r.headers.get("x-ratelimit-remaining") == "0":
            return True
        text = (r.text or "").lower()
        return any(m in text for m in _RATE_LIMIT_MARKERS)
    return False


@dataclass(frozen=True)
class GitHubRestClient:
    """
    GitHub REST wrapper for a single repository.

    Supports:
    - Actions: run metadata, jobs, per-job logs, check-run annotations, rerun of failed jobs
    - Contents / git data: file content, directory listings, recursive trees, blobs, trees,
      commits and conditional ref updates (multi-file atomic commits)
    - PRs, issues, labels, auto-merge (GraphQL)

    Notes:
    - Rate-limited responses and transient transport errors are retried with exponential backoff.
    - With dry_run=True every write is logged and skipped; reads still hit the API.
    - Designed to be mockable in tests (httpx transport override).
    """

    token: str
    repo: str  # owner/name
    api_base: str = "https://api.github.com"
    timeout_s: float = 30.0
    max_retries: int = 3
    backoff_s: float = 1.0
    dry_run: bool = False
    transport: httpx.BaseTransport | None = None
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def from_settings(cls, settings: Settings, *, repo: str, transport: httpx.BaseTransport | None = None) -> "GitHubRestClient":
        return cls(
            token=settings.github_token or "",
            repo=repo,
            api_base=settings.github_api_base,
            timeout_s=settings.github_timeout_s,
            max_retries=settings.github_max_retries,
            backoff_s=settings.github_backoff_s,
            dry_run=settings.dry_run,
            transport=transport,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_s, transport=self.transport, follow_redirects=True)

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.api_base.rstrip('/')}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = self._url(path)
        attempts = max(1, int(self.max_retries))
        for attempt in range(1, attempts + 1):
            try:
                with self._client() as c:
                    r = c.request(method, url, headers=self._headers(), **kwargs)
            except (httpx.TimeoutException, httpx.ConnectError, httpx.RemoteProtocolError, httpx.ReadError) as e:
                if attempt < attempts:
                    delay = self.backoff_s * (2 ** (attempt - 1))
                    logger.warning("github transient error on %s %s, retrying in %.1fs: %s", method, path, delay, e)
                    self.sleep(delay)
                    continue
                raise GitHubApiError(f"github_transient_error after {attempt} attempts: {e}") from e

            if _is_rate_limited(r):
                if attempt < attempts:
                    delay = self.backoff_s * (2 ** (attempt - 1))
                    logger.warning(
                        "github rate limit on %s %s, retrying in %.1fs (attempt %d/%d)",
                        method,
                        path,
                        delay,
                        attempt,
                        attempts,
                    )
                    self.sleep(delay)
                    continue
                raise GitHubApiError(
                    f"github_rate_limited after {attempt} attempts: {method} {path}",
                    status_code=r.status_code,
                    rate_limited=True,
                )
            return r
        raise GitHubApiError(f"github_request_failed: {method} {path}")

    def _json(self, method: str, path: str, *, ok: tuple[int, ...] = (200, 201), **kwargs: Any) -> Any:
        r = self._request(method, path, **kwargs)
        if r.status_code not in ok:
            raise GitHubApiError(f"github_http_{r.status_code}: {method} {path}: {r.text[:500]}", status_code=r.status_code)
        try:
            return r.json()
        except ValueError as e:
            raise GitHubApiError(f"github_invalid_json: {method} {path}") from e

    # -------- repository / actions reads --------

    def get_repo_default_branch(self) -> str:
        data = self._json("GET", f"repos/{self.repo}")
        return str((data or {}).get("default_branch") or "main")

    def get_run(self, run_id: str) -> Dict[str, Any]:
        data = self._json("GET", f"repos/{self.repo}/actions/runs/{run_id}")
        return data if isinstance(data, dict) else {}

    def list_run_jobs(self, run_id: str, *, per_page: int = 100) -> List[Dict[str, Any]]:
        data = self._json("GET", f"repos/{self.repo}/actions/runs/{run_id}/jobs", params={"per_page": per_page})
        jobs = data.get("jobs") if isinstance(data, dict) else None
        return [j for j in jobs if isinstance(j, dict)] if isinstance(jobs, list) else []

    def list_annotations(self, check_run_id: int) -> Optional[List[Dict[str, Any]]]:
        """
        Returns None when the API does not answer with an array (typically a 403 for
        tokens without checks:read), so callers can fall back to log parsing.
        """
        r = self._request("GET", f"repos/{self.repo}/check-runs/{check_run_id}/annotations", params={"per_page": 100})
        try:
            data = r.json()
        except ValueError:
            return None
        if r.status_code != 200 or not isinstance(data, list):
            return None
        return [a for a in data if isinstance(a, dict)]

    def get_job_logs(self, job_id: int) -> str:
        r = self._request("GET", f"repos/{self.repo}/actions/jobs/{job_id}/logs")
        if r.status_code != 200:
            raise GitHubApiError(f"github_http_{r.status_code}: job logs {job_id}", status_code=r.status_code)
        return r.text or ""

    # -------- contents / git data reads --------

    def get_branch_head_sha(self, *, branch: str) -> str:
        data = self._json("GET", f"repos/{self.repo}/git/ref/heads/{branch}")
        sha = ((data or {}).get("object") or {}).get("sha")
        if not sha:
            raise GitHubApiError(f"github_ref_without_sha: heads/{branch}")
        return str(sha)

    def get_commit_tree_sha(self, *, commit_sha: str) -> str:
        data = self._json("GET", f"repos/{self.repo}/git/commits/{commit_sha}")
        sha = ((data or {}).get("tree") or {}).get("sha")
        if not sha:
            raise GitHubApiError(f"github_commit_without_tree: {commit_sha}")
        return str(sha)

    def get_file_content(self, *, path: str, ref: str) -> Optional[str]:
        r = self._request("GET", f"repos/{self.repo}/contents/{path.lstrip('/')}", params={"ref": ref})
        if r.status_code == 404:
            return None
        if r.status_code != 200:
            raise GitHubApiError(f"github_http_{r.status_code}: contents {path}", status_code=r.status_code)
        data = r.json()
        if not isinstance(data, dict):
            return None
        content = data.get("content")
        if isinstance(content, str) and content:
            return base64.b64decode(content.replace("\n", "")).decode("utf-8", errors="replace")
        # Files over 1 MB come back without inline content; fetch the blob instead.
        sha = data.get("sha")
        if data.get("type") == "file" and sha:
            blob = self._json("GET", f"repos/{self.repo}/git/blobs/{sha}")
            raw = (blob or {}).get("content") or ""
            return base64.b64decode(raw.replace("\n", "")).decode("utf-8", errors="replace")
        return None

    def list_directory(self, *, path: str, ref: str) -> Optional[List[Dict[str, Any]]]:
        r = self._request("GET", f"repos/{self.repo}/contents/{path.strip('/')}", params={"ref": ref})
        if r.status_code != 200:
            return None
        data = r.json()
        return [d for d in data if isinstance(d, dict)] if isinstance(data, list) else None

    def get_tree(self, *, ref: str, recursive: bool = True) -> List[Dict[str, Any]]:
        params = {"recursive": "1"} if recursive else None
        data = self._json("GET", f"repos/{self.repo}/git/trees/{ref}", params=params)
        tree = (data or {}).get("tree")
        return [t for t in tree if isinstance(t, dict)] if isinstance(tree, list) else []

    # -------- git data writes --------

    def create_blob(self, *, content_text: str) -> str:
        if self.dry_run:
            logger.info("[dry-run] create blob (%d bytes)", len(content_text))
            return "dry-run-blob"
        b64 = base64.b64encode(content_text.encode("utf-8")).decode("ascii")
        data = self._json("POST", f"repos/{self.repo}/git/blobs", json={"content": b64, "encoding": "base64"})
        return str(data["sha"])

    def create_tree(self, *, base_tree: str, entries: List[Dict[str, str]]) -> str:
        if self.dry_run:
            logger.info("[dry-run] create tree with %d entr(ies)", len(entries))
            return "dry-run-tree"
        data = self._json("POST", f"repos/{self.repo}/git/trees", json={"base_tree": base_tree, "tree": entries})
        return str(data["sha"])

    def create_commit(self, *, message: str, tree_sha: str, parents: List[str]) -> str:
        if self.dry_run:
            logger.info("[dry-run] create commit %r", message)
            return "dry-run-commit"
        data = self._json(
            "POST",
            f"repos/{self.repo}/git/commits",
            json={"message": message, "tree": tree_sha, "parents": parents},
        )
        return str(data["sha"])

    def update_ref(self, *, branch: str, sha: str, force: bool = False) -> None:
        """Fast-forward only unless force=True; GitHub rejects the update if the branch moved."""
        if self.dry_run:
            logger.info("[dry-run] update heads/%s -> %s", branch, sha)
            return
        self._json("PATCH", f"repos/{self.repo}/git/refs/heads/{branch}", json={"sha": sha, "force": force})

    def create_branch(self, *, new_branch: str, from_sha: str) -> None:
        if self.dry_run:
            logger.info("[dry-run] create branch %s at %s", new_branch, from_sha)
            return
        r = self._request("POST", f"repos/{self.repo}/git/refs", json={"ref": f"refs/heads/{new_branch}", "sha": from_sha})
        if r.status_code not in (200, 201):
            raise GitHubApiError(f"github_http_{r.status_code}: create branch {new_branch}: {r.text[:300]}", status_code=r.status_code)

    # -------- pull requests / issues / labels --------

    def create_pull_request(
        self,
        *,
        title: str,
        body: str,
        head: str,
        base: str,
        labels: Optional[List[str]] = None,
    ) -> PullRequestResult:
        if self.dry_run:
            logger.info("[dry-run] open PR %r (%s -> %s)", title, head, base)
            return PullRequestResult(mode="dry_run", pr_number=0, pr_title=title, pr_url="", branch_name=head)
        data = self._json(
            "POST",
            f"repos/{self.repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        number = int(data["number"])
        if labels:
            self.add_labels(issue_number=number, labels=labels)
        return PullRequestResult(
            mode="real",
            pr_number=number,
            pr_title=str(data.get("title") or title),
            pr_url=str(data.get("html_url") or ""),
            branch_name=head,
            node_id=data.get("node_id"),
        )

    def list_pull_requests(self, *, state: str = "open", head: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"state": state, "per_page": 100}
        if head:
            owner = self.repo.split("/", 1)[0]
            params["head"] = f"{owner}:{head}"
        data = self._json("GET", f"repos/{self.repo}/pulls", params=params)
        return [p for p in data if isinstance(p, dict)] if isinstance(data, list) else []

    def merge_pull_request(self, *, number: int, method: str = "squash") -> bool:
        if self.dry_run:
            logger.info("[dry-run] merge PR #%d (%s)", number, method)
            return True
        r = self._request("PUT", f"repos/{self.repo}/pulls/{number}/merge", json={"merge_method": method})
        return r.status_code == 200

    def enable_auto_merge(self, *, pr_node_id: str, method: str = "SQUASH") -> bool:
        if self.dry_run:
            logger.info("[dry-run] enable auto-merge for %s", pr_node_id)
            return True
        data = self._json(
            "POST",
            "graphql",
            json={"query": _AUTO_MERGE_MUTATION, "variables": {"pullRequestId": pr_node_id, "mergeMethod": method}},
        )
        errors = (data or {}).get("errors") if isinstance(data, dict) else None
        if errors:
            logger.warning("auto-merge not enabled: %s", str(errors)[:300])
            return False
        return True

    def add_labels(self, *, issue_number: int, labels: List[str]) -> None:
        if self.dry_run:
            return
        self._json("POST", f"repos/{self.repo}/issues/{issue_number}/labels", json={"labels": labels})

    def ensure_label(self, *, name: str, color: str, description: str) -> None:
        if self.dry_run:
            return
        r = self._request(
            "POST",
            f"repos/{self.repo}/labels",
            json={"name": name, "color": color, "description": description},
        )
        # 422 if label exists; treat as idempotent.
        if r.status_code not in (200, 201, 422):
            raise GitHubApiError(f"github_http_{r.status_code}: create label {name}", status_code=r.status_code)

    def create_issue(self, *, title: str, body: str, labels: Optional[List[str]] = None) -> IssueResult:
        if self.dry_run:
            logger.info("[dry-run] open issue %r", title)
            return IssueResult(mode="dry_run", issue_number=0, issue_url="", title=title)
        payload: Dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = labels
        data = self._json("POST", f"repos/{self.repo}/issues", json=payload)
        return IssueResult(
            mode="real",
            issue_number=int(data["number"]),
            issue_url=str(data.get("html_url") or ""),
            title=str(data.get("title") or title),
        )

    def rerun_failed_jobs(self, *, run_id: str) -> None:
        if self.dry_run:
            logger.info("[dry-run] rerun failed jobs of run %s", run_id)
            return
        r = self._request("POST", f"repos/{self.repo}/actions/runs/{run_id}/rerun-failed-jobs")
        if r.status_code not in (200, 201, 204):
            raise GitHubApiError(f"github_http_{r.status_code}: rerun {run_id}: {r.text[:300]}", status_code=r.status_code)
