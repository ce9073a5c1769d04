from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, List, Optional

from selfheal.models import FailedJob, Pattern, PatternDB, utcnow
from selfheal.parsers.ci_log import is_generic_signature
from selfheal.settings import Settings
from selfheal.state.json_store import JsonStateFile

logger = logging.getLogger(__name__)


def _job_texts(jobs: Iterable[FailedJob]) -> List[str]:
    out: List[str] = []
    for j in jobs:
        out.extend(a.message for a in j.annotations if a.message)
        if j.log_text:
            out.append(j.log_text)
    return out


class PatternStore:
    """
    Confidence-weighted knowledge base of error signature -> fix summary.

    Matching is first-match-wins in file order over patterns at or above the threshold.
    Every mutation is a locked read-modify-write of the shared JSON file.
    """

    def __init__(
        self,
        *,
        path: str,
        match_threshold: float = 0.8,
        success_delta: float = 0.05,
        failure_delta: float = 0.1,
        new_confidence: float = 0.5,
        min_signature_chars: int = 10,
        lock_timeout_s: float = 30.0,
        lock_poll_s: float = 0.1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.match_threshold = match_threshold
        self.success_delta = success_delta
        self.failure_delta = failure_delta
        self.new_confidence = new_confidence
        self.min_signature_chars = min_signature_chars
        self._clock = clock
        self._file: JsonStateFile[PatternDB] = JsonStateFile(
            path=path,
            model=PatternDB,
            lock_timeout_s=lock_timeout_s,
            lock_poll_s=lock_poll_s,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PatternStore":
        store = cls(
            path=settings.patterns_path,
            match_threshold=settings.pattern_match_threshold,
            success_delta=settings.pattern_success_delta,
            failure_delta=settings.pattern_failure_delta,
            new_confidence=settings.pattern_new_confidence,
            min_signature_chars=settings.pattern_min_signature_chars,
            lock_timeout_s=settings.lock_timeout_s,
            lock_poll_s=settings.lock_poll_s,
        )
        store._file.ensure()
        return store

    @property
    def path(self) -> str:
        return self._file.path

    def all(self) -> List[Pattern]:
        return list(self._file.load().patterns)

    def get(self, pattern_id: str) -> Optional[Pattern]:
        for p in self._file.load().patterns:
            if p.id == pattern_id:
                return p
        return None

    def confidence_of(self, pattern_id: str | None) -> float:
        if not pattern_id:
            return 0.0
        p = self.get(pattern_id)
        return p.confidence if p else 0.0

    def match(self, jobs: Iterable[FailedJob]) -> Optional[Pattern]:
        texts = _job_texts(jobs)
        if not texts:
            return None
        for pattern in self._file.load().patterns:
            if pattern.confidence < self.match_threshold:
                continue
            if not pattern.signature:
                continue
            if any(pattern.signature in t for t in texts):
                logger.info("pattern matched: %s (confidence %.2f)", pattern.id, pattern.confidence)
                return pattern
        return None

    def record_hit(self, *, pattern_id: str, repo: str, success: bool) -> Optional[Pattern]:
        with self._file.mutate() as db:
            pattern = next((p for p in db.patterns if p.id == pattern_id), None)
            if pattern is None:
                logger.warning("record_hit for unknown pattern %s", pattern_id)
                return None
            pattern.occurrences += 1
            if repo and repo not in pattern.repos_seen:
                pattern.repos_seen.append(repo)
            if success:
                pattern.confidence = round(min(1.0, pattern.confidence + self.success_delta), 4)
            else:
                pattern.confidence = round(max(0.0, pattern.confidence - self.failure_delta), 4)
            db.last_updated = utcnow().isoformat()
            return pattern.model_copy()

    def add_new(self, *, signature: str, fix_summary: str, repo: str) -> Optional[str]:
        """
        Register a signature learned from a successful AI fix. Returns the pattern id,
        the existing id when the signature is already known, or None when rejected.
        """
        sig = (signature or "").strip()
        if len(sig) < self.min_signature_chars:
            logger.info("pattern rejected: signature too short (%d chars)", len(sig))
            return None
        if is_generic_signature(sig):
            logger.info("pattern rejected: generic signature %r", sig[:60])
            return None

        with self._file.mutate() as db:
            for p in db.patterns:
                if p.signature == sig:
                    return p.id
            known_ids = {p.id for p in db.patterns}
            stamp = int(self._clock() * 1000)
            pattern_id = f"auto-{stamp}"
            while pattern_id in known_ids:
                stamp += 1
                pattern_id = f"auto-{stamp}"
            db.patterns.append(
                Pattern(
                    id=pattern_id,
                    category="ci-failure",
                    signature=sig,
                    fix=(fix_summary or "").strip()[:200] or "AI-generated fix",
                    fix_type="ai-generated",
                    repos_seen=[repo] if repo else [],
                    occurrences=1,
                    confidence=self.new_confidence,
                )
            )
            db.last_updated = utcnow().isoformat()
        logger.info("new pattern registered: %s", pattern_id)
        return pattern_id
