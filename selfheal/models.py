from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, RootModel, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Annotation(BaseModel):
    """
    One structured error for a failed job (GitHub check-run annotation shape).
    Synthesized annotations built from log lines use the same model.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    path: str = ""
    start_line: int = 0
    end_line: int = 0
    severity: str = Field(default="failure", alias="annotation_level")
    message: str = ""


class FailedJob(BaseModel):
    id: int
    name: str
    annotations: List[Annotation] = Field(default_factory=list)
    log_text: str = ""


class Pattern(BaseModel):
    """
    Known error signature -> fix summary. On-disk keys follow the shared patterns file
    (`fixType`, `repos_seen`) so older files load unchanged.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    category: str = "ci-failure"
    signature: str
    fix: str
    fix_type: str = Field(default="ai-generated", alias="fixType")
    repos_seen: List[str] = Field(default_factory=list)
    occurrences: int = Field(default=0, ge=0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class PatternDB(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: int = 1
    last_updated: str = Field(default="", alias="lastUpdated")
    patterns: List[Pattern] = Field(default_factory=list)


class CooldownStatus(str, Enum):
    pending = "pending"
    fixed = "fixed"
    escalated = "escalated"


class CooldownEntry(BaseModel):
    repo: str
    error_signature: str
    attempts: int = 0
    last_attempt: datetime = Field(default_factory=utcnow)
    status: CooldownStatus = CooldownStatus.pending


class CooldownFile(RootModel[List[CooldownEntry]]):
    root: List[CooldownEntry] = Field(default_factory=list)


class CooldownDecision(str, Enum):
    proceed = "proceed"
    skip = "skip"
    escalate = "escalate"


class Replacement(BaseModel):
    search: str
    replace: str


class Fix(BaseModel):
    """
    A patch for one file: either the full new `content` or anchored `replacements`.
    """

    path: str
    content: Optional[str] = None
    replacements: Optional[List[Replacement]] = None

    @model_validator(mode="after")
    def _exactly_one_payload(self) -> "Fix":
        has_content = self.content is not None
        has_repl = bool(self.replacements)
        if has_content == has_repl:
            raise ValueError("fix must carry exactly one of content or replacements")
        return self


class AIResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    fixes: List[Fix] = Field(default_factory=list)
    explanation: str = ""


class PullRequestResult(BaseModel):
    mode: Literal["dry_run", "real"]
    pr_number: int
    pr_title: str
    pr_url: str
    branch_name: str
    node_id: Optional[str] = None
    auto_merge: bool = False


class IssueResult(BaseModel):
    mode: Literal["dry_run", "real"]
    issue_number: int
    issue_url: str
    title: str


class RemediationOutcome(str, Enum):
    loop_guard = "loop_guard"
    no_failures = "no_failures"
    skipped_cooldown = "skipped_cooldown"
    escalated = "escalated"
    rerun = "rerun"
    pr_created = "pr_created"
    issue_created = "issue_created"


class RemediationResult(BaseModel):
    repo: str
    run_id: str
    outcome: RemediationOutcome
    signature: Optional[str] = None
    explanation: str = ""
    prs: List[PullRequestResult] = Field(default_factory=list)
    issue: Optional[IssueResult] = None
    pattern_id: Optional[str] = None
    correlation_id: str = ""
