from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set

from selfheal.errors import GitHubApiError
from selfheal.gitops.github_rest import GitHubRestClient
from selfheal.models import Annotation, FailedJob, Fix, PullRequestResult
from selfheal.procs.runner import ProcessRunner
from selfheal.settings import Settings

logger = logging.getLogger(__name__)

SOURCE_EXTENSIONS = (".cs", ".ts", ".tsx", ".js", ".jsx", ".py")


class SourceFiles:
    """
    Read-through cache of repository files at the base branch plus the working copies
    fixers have already edited. Fixers that touch the same file build on each other.
    """

    def __init__(self, client: GitHubRestClient, ref: str) -> None:
        self.client = client
        self.ref = ref
        self._original: Dict[str, Optional[str]] = {}
        self._working: Dict[str, str] = {}
        self._dirs: Dict[str, Optional[List[Dict[str, Any]]]] = {}
        self._tree: Optional[List[Dict[str, Any]]] = None

    def original(self, path: str) -> Optional[str]:
        if path not in self._original:
            try:
                self._original[path] = self.client.get_file_content(path=path, ref=self.ref)
            except GitHubApiError as e:
                logger.warning("could not fetch %s: %s", path, e)
                self._original[path] = None
        return self._original[path]

    def current(self, path: str) -> Optional[str]:
        if path in self._working:
            return self._working[path]
        return self.original(path)

    def update(self, path: str, content: str) -> None:
        self._working[path] = content

    def changed(self) -> Dict[str, str]:
        return {p: c for p, c in self._working.items() if c != self._original.get(p)}

    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        if path not in self._dirs:
            try:
                self._dirs[path] = self.client.list_directory(path=path, ref=self.ref)
            except GitHubApiError as e:
                logger.warning("could not list %s/: %s", path, e)
                self._dirs[path] = None
        return list(self._dirs[path] or [])

    def tree(self) -> List[Dict[str, Any]]:
        if self._tree is None:
            try:
                self._tree = self.client.get_tree(ref=self.ref, recursive=True)
            except GitHubApiError as e:
                logger.warning("could not list repository tree: %s", e)
                self._tree = []
        return list(self._tree)


@dataclass(frozen=True)
class FixContext:
    repo: str
    base_branch: str
    settings: Settings
    client: GitHubRestClient
    files: SourceFiles
    runner: ProcessRunner
    run_id: str = ""


@dataclass
class FixerResult:
    fixes: List[Fix] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    # Excerpts the AI may still use when a deterministic removal was refused.
    partial_context: Dict[str, str] = field(default_factory=dict)
    # Shell-mediated fixers publish their own branch + PR.
    prs: List[PullRequestResult] = field(default_factory=list)
    resolved_messages: Set[str] = field(default_factory=set)

    def add_fix(self, fix: Fix) -> None:
        """Later fixes for the same path replace earlier ones; they were built on top of them."""
        for i, existing in enumerate(self.fixes):
            if existing.path == fix.path:
                self.fixes[i] = fix
                return
        self.fixes.append(fix)

    def merge(self, other: "FixerResult") -> None:
        for fx in other.fixes:
            self.add_fix(fx)
        self.notes.extend(other.notes)
        self.partial_context.update(other.partial_context)
        self.prs.extend(other.prs)
        self.resolved_messages |= other.resolved_messages


class Fixer(Protocol):
    name: str

    def can_handle(self, jobs: List[FailedJob]) -> bool: ...

    def apply(self, jobs: List[FailedJob]) -> FixerResult: ...


def iter_annotations(jobs: List[FailedJob]) -> List[Annotation]:
    return [a for j in jobs for a in j.annotations]


def all_log_text(jobs: List[FailedJob]) -> str:
    return "\n".join(j.log_text for j in jobs if j.log_text)


def dirname(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def basename(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def stem(path: str) -> str:
    name = basename(path)
    return name.rsplit(".", 1)[0] if "." in name else name
