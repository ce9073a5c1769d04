from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from selfheal.models import CooldownDecision, CooldownEntry, CooldownFile, CooldownStatus, utcnow
from selfheal.settings import Settings
from selfheal.state.json_store import JsonStateFile

logger = logging.getLogger(__name__)


class CooldownTracker:
    """
    Per (repo, error signature) attempt history that stops fix loops.

    - no entry                                   -> proceed
    - last attempt within the cooldown window    -> skip
    - window expired and attempts >= max         -> escalate
    - escalated entries stay escalated until reset() (a human clears them)
    - otherwise                                  -> proceed

    Entries whose last attempt is older than the retention period are dropped on load,
    except escalated ones: those are kept until reset() however old they are.
    """

    def __init__(
        self,
        *,
        path: str,
        cooldown_hours: float = 24.0,
        max_attempts_before_escalation: int = 2,
        retention_days: float = 7.0,
        lock_timeout_s: float = 30.0,
        lock_poll_s: float = 0.1,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cooldown = timedelta(hours=cooldown_hours)
        self.max_attempts = max_attempts_before_escalation
        self.retention = timedelta(days=retention_days)
        self._now = now
        self._file: JsonStateFile[CooldownFile] = JsonStateFile(
            path=path,
            model=CooldownFile,
            default=lambda: CooldownFile([]),
            lock_timeout_s=lock_timeout_s,
            lock_poll_s=lock_poll_s,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CooldownTracker":
        tracker = cls(
            path=settings.cooldowns_path,
            cooldown_hours=settings.cooldown_hours,
            max_attempts_before_escalation=settings.max_attempts_before_escalation,
            retention_days=settings.cooldown_retention_days,
            lock_timeout_s=settings.lock_timeout_s,
            lock_poll_s=settings.lock_poll_s,
        )
        tracker._file.ensure()
        return tracker

    @property
    def path(self) -> str:
        return self._file.path

    def _live(self, entries: List[CooldownEntry]) -> List[CooldownEntry]:
        cutoff = self._now() - self.retention
        # Escalations are terminal; only a human reset removes them.
        return [e for e in entries if e.status == CooldownStatus.escalated or e.last_attempt >= cutoff]

    def entries(self) -> List[CooldownEntry]:
        return self._live(self._file.load().root)

    def get(self, repo: str, signature: str) -> Optional[CooldownEntry]:
        for e in self.entries():
            if e.repo == repo and e.error_signature == signature:
                return e
        return None

    def check(self, repo: str, signature: str) -> CooldownDecision:
        entry = self.get(repo, signature)
        if entry is None:
            return CooldownDecision.proceed
        if self._now() - entry.last_attempt < self.cooldown:
            logger.info(
                "cooldown active for %s (%d attempt(s), last %s)",
                repo,
                entry.attempts,
                entry.last_attempt.isoformat(),
            )
            return CooldownDecision.skip
        if entry.status == CooldownStatus.escalated:
            logger.info("signature already escalated for %s; waiting for a human reset", repo)
            return CooldownDecision.skip
        if entry.attempts >= self.max_attempts:
            return CooldownDecision.escalate
        return CooldownDecision.proceed

    def record_attempt(self, repo: str, signature: str, success: bool) -> CooldownEntry:
        return self._record(repo, signature, status=CooldownStatus.fixed if success else CooldownStatus.pending)

    def mark_escalated(self, repo: str, signature: str) -> CooldownEntry:
        """Record the escalation as a failed attempt and pin the entry as escalated."""
        return self._record(repo, signature, status=CooldownStatus.escalated)

    def reset(self, repo: str, signature: str) -> bool:
        with self._file.mutate() as data:
            before = len(data.root)
            data.root = [e for e in data.root if not (e.repo == repo and e.error_signature == signature)]
            removed = len(data.root) != before
        if removed:
            logger.info("cooldown entry cleared for %s", repo)
        return removed

    def _record(self, repo: str, signature: str, *, status: CooldownStatus) -> CooldownEntry:
        now = self._now()
        with self._file.mutate() as data:
            data.root = self._live(data.root)
            entry = next((e for e in data.root if e.repo == repo and e.error_signature == signature), None)
            if entry is None:
                entry = CooldownEntry(repo=repo, error_signature=signature, attempts=0, last_attempt=now)
                data.root.append(entry)
            entry.attempts += 1
            entry.last_attempt = now
            if entry.status != CooldownStatus.escalated:
                entry.status = status
            return entry.model_copy()
