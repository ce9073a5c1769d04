from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from pydantic import ValidationError

from selfheal.models import AIResponse, Fix

logger = logging.getLogger(__name__)

_FENCED = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_BRACE_SPAN = re.compile(r"\{[\s\S]*\"fixes\"[\s\S]*\}")


@dataclass(frozen=True)
class DecodeResult:
    """
    Outcome of decoding an assistant reply.

    stage: which stage produced the object ("direct", "fenced", "brace_span") or "failed".
    """

    stage: str
    response: Optional[AIResponse] = None
    error: Optional[str] = None
    dropped_fixes: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.response is not None


def _loads(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


def _to_response(obj: Any) -> tuple[Optional[AIResponse], List[str]]:
    if not isinstance(obj, dict) or "fixes" not in obj:
        return None, []
    raw_fixes = obj.get("fixes")
    if not isinstance(raw_fixes, list):
        return None, []
    fixes: List[Fix] = []
    dropped: List[str] = []
    for item in raw_fixes:
        try:
            fixes.append(Fix.model_validate(item))
        except ValidationError as e:
            path = item.get("path") if isinstance(item, dict) else None
            dropped.append(f"{path or '?'}: {e.errors()[0].get('msg', 'invalid')}")
    explanation = obj.get("explanation")
    return AIResponse(fixes=fixes, explanation=str(explanation or "")), dropped


def decode_ai_response(text: str | None) -> DecodeResult:
    """
    Decode `{fixes, explanation}` from free text: direct JSON, then a fenced code block,
    then the outermost brace span mentioning "fixes". Malformed fix entries are dropped
    individually; the rest of the reply still counts.
    """
    t = (text or "").strip()
    if not t:
        return DecodeResult(stage="failed", error="empty_response")

    candidates = [("direct", t)]
    for m in _FENCED.finditer(t):
        candidates.append(("fenced", m.group(1).strip()))
    m = _BRACE_SPAN.search(t)
    if m:
        candidates.append(("brace_span", m.group(0)))

    for stage, candidate in candidates:
        obj = _loads(candidate)
        if obj is None:
            continue
        response, dropped = _to_response(obj)
        if response is None:
            continue
        for d in dropped:
            logger.warning("dropped malformed fix from assistant reply: %s", d)
        return DecodeResult(stage=stage, response=response, dropped_fixes=dropped)

    return DecodeResult(stage="failed", error=f"unparseable_response: {t[:200]}")
