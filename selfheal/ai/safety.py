from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Set

from selfheal.models import Fix

logger = logging.getLogger(__name__)


_INJECTION_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"ignore\s+(all\s+)?previous\s+instructions", re.IGNORECASE),
    re.compile(r"BEGIN\s+SYSTEM", re.IGNORECASE),
    re.compile(r"END\s+SYSTEM", re.IGNORECASE),
    re.compile(r"you\s+are\s+(now\s+)?(chatgpt|claude|gemini)", re.IGNORECASE),
    re.compile(r"exfiltrat(e|ion)", re.IGNORECASE),
    re.compile(r"print\s+your\s+instructions", re.IGNORECASE),
    re.compile(r"do\s+not\s+follow\s+policy", re.IGNORECASE),
    re.compile(r"disregard\s+(the\s+)?(above|system)", re.IGNORECASE),
]

# Returned content shorter than this share of the original is treated as truncated.
MIN_CONTENT_RATIO = 0.3


@dataclass(frozen=True)
class InjectionSignal:
    ok: bool
    matches: List[str]


def detect_prompt_injection(text: str | None, *, max_matches: int = 5) -> InjectionSignal:
    """
    Heuristic detector for prompt-injection strings embedded in CI logs.
    Any match keeps the logs away from the assistants.
    """
    t = text or ""
    hits: list[str] = []
    for pat in _INJECTION_PATTERNS:
        if not pat.search(t):
            continue
        hits.append(pat.pattern)
        if len(hits) >= max_matches:
            break
    return InjectionSignal(ok=(len(hits) == 0), matches=hits)


@dataclass
class FixValidation:
    accepted: List[Fix] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)


def _safe_path(path: str) -> bool:
    if not path or path.startswith("/") or "\\" in path:
        return False
    norm = posixpath.normpath(path)
    return not (norm.startswith("..") or norm.startswith(".git/") or norm == ".git")


def apply_replacements(original: str, fix: Fix) -> Optional[str]:
    """All-or-nothing: every search string must be present when its turn comes."""
    text = original
    for r in fix.replacements or []:
        if not r.search or r.search not in text:
            return None
        text = text.replace(r.search, r.replace, 1)
    return text


def validate_fixes(
    fixes: Iterable[Fix],
    *,
    full_text: Callable[[str], Optional[str]],
    partial_paths: Set[str],
) -> FixValidation:
    """
    Turn assistant fixes into full-content fixes that are safe to publish.

    - replacements: every search string found verbatim in the full file, every replacement applies
    - content: rejected for files sent as partial context, or when under 30% of the original length
    """
    out = FixValidation()
    for fix in fixes:
        if not _safe_path(fix.path):
            out.rejected.append(f"{fix.path}: unsafe path")
            continue
        original = full_text(fix.path)

        if fix.replacements:
            if original is None:
                out.rejected.append(f"{fix.path}: replacements for a file that could not be fetched")
                continue
            patched = apply_replacements(original, fix)
            if patched is None:
                out.rejected.append(f"{fix.path}: search text not found verbatim")
                continue
            if patched == original:
                continue
            out.accepted.append(Fix(path=fix.path, content=patched))
            continue

        content = fix.content or ""
        if fix.path in partial_paths:
            out.rejected.append(f"{fix.path}: full content returned for a partial context file")
            continue
        if original is not None and len(content) < len(original) * MIN_CONTENT_RATIO:
            pct = round(len(content) / max(1, len(original)) * 100)
            out.rejected.append(f"{fix.path}: content is {pct}% of original (likely truncated)")
            continue
        if original is not None and content == original:
            continue
        out.accepted.append(Fix(path=fix.path, content=content))

    for r in out.rejected:
        logger.warning("rejected AI fix: %s", r)
    return out
