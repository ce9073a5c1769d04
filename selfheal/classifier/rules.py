from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

from selfheal.models import FailedJob
from selfheal.parsers.ci_log import is_generic_signature

_TRANSIENT_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\bETIMEDOUT\b"),
    re.compile(r"\bECONNRESET\b"),
    re.compile(r"\bECONNREFUSED\b"),
    re.compile(r"socket hang up", re.IGNORECASE),
    re.compile(r"rate limit exceeded", re.IGNORECASE),
    re.compile(r"Could not resolve host", re.IGNORECASE),
    re.compile(r"navigation timeout of \d+\s*ms exceeded", re.IGNORECASE),
    re.compile(r"page\.goto: Timeout \d+ms exceeded", re.IGNORECASE),
    re.compile(r"net::ERR_(CONNECTION_(RESET|REFUSED|TIMED_OUT)|NAME_NOT_RESOLVED)"),
    re.compile(r"\b50[234] (Bad Gateway|Service Unavailable|Gateway Time-?out)\b", re.IGNORECASE),
]

# A located compiler error means something in the tree is broken, whatever else the log says.
_COMPILER_ERROR = re.compile(r"\berror\s+(TS|CS|MSB)\d+", re.IGNORECASE)


@dataclass(frozen=True)
class FlakySignal:
    flaky: bool
    matches: List[str]


@dataclass(frozen=True)
class TransientFailureClassifier:
    """
    Deterministic rules only: a failure is flaky when its logs show transient
    infrastructure errors and no source-located error.
    """

    max_matches: int = 5

    def classify(self, jobs: List[FailedJob]) -> FlakySignal:
        hits: list[str] = []
        for j in jobs:
            text = "\n".join([j.log_text] + [a.message for a in j.annotations])
            for pat in _TRANSIENT_PATTERNS:
                m = pat.search(text)
                if m and m.group(0) not in hits:
                    hits.append(m.group(0))
            if len(hits) >= self.max_matches:
                break
        if not hits:
            return FlakySignal(flaky=False, matches=[])

        for j in jobs:
            if any(a.path and a.start_line > 0 and not is_generic_signature(a.message) for a in j.annotations):
                return FlakySignal(flaky=False, matches=hits)
            if _COMPILER_ERROR.search(j.log_text or ""):
                return FlakySignal(flaky=False, matches=hits)
        return FlakySignal(flaky=True, matches=hits[: self.max_matches])
