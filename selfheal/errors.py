from __future__ import annotations


class SelfHealError(Exception):
    """Base class for remediation engine errors."""


class GitHubApiError(SelfHealError):
    def __init__(self, message: str, *, status_code: int | None = None, rate_limited: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.rate_limited = rate_limited


class PublishError(SelfHealError):
    """Branch/commit/PR creation could not complete; the run falls back to a manual-review issue."""


class LockTimeoutError(SelfHealError):
    pass


class AIUnavailableError(SelfHealError):
    pass
