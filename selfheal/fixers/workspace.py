from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from selfheal.errors import GitHubApiError, SelfHealError
from selfheal.fixers.base import FixContext, FixerResult, all_log_text, iter_annotations
from selfheal.gitops.labels import ensure_fix_label
from selfheal.models import FailedJob, PullRequestResult
from selfheal.reports.render import render_shell_fix_body

logger = logging.getLogger(__name__)


class ShellFixError(SelfHealError):
    pass


def clone_url(web_base: str, repo: str, token: str | None) -> str:
    parts = urlsplit(web_base)
    host = parts.netloc or "github.com"
    scheme = parts.scheme or "https"
    if token:
        return f"{scheme}://x-access-token:{token}@{host}/{repo}.git"
    return f"{scheme}://{host}/{repo}.git"


@contextmanager
def scratch_clone(ctx: FixContext) -> Iterator[str]:
    """Shallow clone of the base branch into a temp dir that is removed on every exit path."""
    s = ctx.settings
    workdir = tempfile.mkdtemp(prefix="selfheal-")
    try:
        res = ctx.runner.run(
            [s.git_binary, "clone", "--depth", "1", "--branch", ctx.base_branch, clone_url(s.github_web_base, ctx.repo, s.github_token), workdir],
            timeout_s=s.clone_timeout_s,
        )
        if not res.ok:
            # stderr may echo the clone URL; never log it.
            raise ShellFixError(f"git_clone_failed: exit {res.exit_code}")
        yield workdir
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


def changed_files(ctx: FixContext, workdir: str) -> List[str]:
    res = ctx.runner.run([ctx.settings.git_binary, "status", "--porcelain"], cwd=workdir, timeout_s=60)
    if not res.ok:
        raise ShellFixError(f"git_status_failed: exit {res.exit_code}")
    out: List[str] = []
    for line in res.stdout.splitlines():
        if len(line) > 3:
            path = line[3:].strip()
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            out.append(path.strip('"'))
    return out


def commit_and_push(ctx: FixContext, workdir: str, *, branch: str, message: str) -> None:
    s = ctx.settings
    git = s.git_binary
    steps: List[Tuple[str, List[str], float]] = [
        ("checkout", [git, "checkout", "-b", branch], 60),
        ("add", [git, "add", "-A"], 60),
        ("commit", [git, "-c", f"user.name={s.git_author_name}", "-c", f"user.email={s.git_author_email}", "commit", "-m", message], 60),
    ]
    if not s.dry_run:
        steps.append(("push", [git, "push", "origin", branch], s.push_timeout_s))
    for stage, cmd, timeout in steps:
        res = ctx.runner.run(cmd, cwd=workdir, timeout_s=timeout)
        if not res.ok:
            raise ShellFixError(f"git_{stage}_failed: exit {res.exit_code}")


@dataclass(frozen=True)
class ShellTrigger:
    label: str
    markers: Tuple[str, ...]
    command: Tuple[str, ...]
    env: Tuple[Tuple[str, str], ...] = ()


class ShellFixer:
    """
    Clone, run a tool in write mode, and open a PR only when the tool changed files.
    Subclasses provide the triggers and the wording.
    """

    name = "shell"
    triggers: Sequence[ShellTrigger] = ()
    branch_slug = "shell"
    timeout_attr = "install_timeout_s"

    def __init__(self, ctx: FixContext, *, clock=time.time) -> None:
        self.ctx = ctx
        self._clock = clock

    def _trigger(self, jobs: List[FailedJob]) -> Optional[ShellTrigger]:
        haystack = all_log_text(jobs) + "\n" + "\n".join(a.message for a in iter_annotations(jobs))
        for t in self.triggers:
            if any(m in haystack for m in t.markers):
                return t
        return None

    def can_handle(self, jobs: List[FailedJob]) -> bool:
        return self._trigger(jobs) is not None

    def title(self, trigger: ShellTrigger) -> str:
        raise NotImplementedError

    def summary(self, trigger: ShellTrigger, files: List[str]) -> str:
        raise NotImplementedError

    def _env(self, trigger: ShellTrigger) -> Optional[Dict[str, str]]:
        if not trigger.env:
            return None
        env = dict(os.environ)
        env.update(dict(trigger.env))
        return env

    def apply(self, jobs: List[FailedJob]) -> FixerResult:
        result = FixerResult()
        trigger = self._trigger(jobs)
        if trigger is None:
            return result

        branch = f"{self.ctx.settings.fix_branch_prefix}{self.branch_slug}-{int(self._clock() * 1000)}"
        try:
            with scratch_clone(self.ctx) as workdir:
                res = self.ctx.runner.run(
                    list(trigger.command),
                    cwd=workdir,
                    timeout_s=getattr(self.ctx.settings, self.timeout_attr),
                    env=self._env(trigger),
                )
                if not res.ok:
                    # Tolerated: a partial install still rewrites the lockfile more often than not.
                    logger.warning("%s exited %d; checking for changes anyway", " ".join(trigger.command), res.exit_code)
                files = changed_files(self.ctx, workdir)
                if not files:
                    logger.info("%s: no files changed, nothing to publish", self.name)
                    return result
                title = self.title(trigger)
                summary = self.summary(trigger, files)
                commit_and_push(self.ctx, workdir, branch=branch, message=title)
        except ShellFixError as e:
            logger.warning("%s failed: %s", self.name, e)
            return result

        ensure_fix_label(self.ctx.client, self.ctx.settings)
        try:
            pr: PullRequestResult = self.ctx.client.create_pull_request(
                title=title,
                body=render_shell_fix_body(
                    repo=self.ctx.repo,
                    run_id=self.ctx.run_id,
                    web_base=self.ctx.settings.github_web_base,
                    summary=summary,
                    files=files,
                ),
                head=branch,
                base=self.ctx.base_branch,
                labels=[self.ctx.settings.fix_label],
            )
        except GitHubApiError as e:
            logger.warning("%s pushed %s but could not open a PR: %s", self.name, branch, e)
            return result
        logger.info("%s opened PR %s", self.name, pr.pr_url or pr.branch_name)
        result.prs.append(pr)
        result.notes.append(summary)
        result.resolved_messages |= {
            a.message for a in iter_annotations(jobs) if any(m in a.message for m in trigger.markers)
        }
        return result
