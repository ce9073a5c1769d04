from __future__ import annotations

import logging
import re
from typing import Dict, List, Set

from selfheal.fixers.base import FixContext, FixerResult, iter_annotations
from selfheal.fixers.boundaries import newline_of
from selfheal.models import FailedJob, Fix

logger = logging.getLogger(__name__)

_RULE_CODE = re.compile(r"\b((?:SA|IDE)\d{4})\b")
_REGION_MARKER = re.compile(r"^\s*#\s*(?:end)?region\b")
_BRACE_CONTINUATIONS = ("else", "catch", "finally", "while")
_CLOSING_TOKENS = ("}", ")", "]", ",", ";")


def strip_trailing_whitespace(lines: List[str]) -> List[str]:
    return [ln.rstrip() for ln in lines]


def strip_region_markers(lines: List[str]) -> List[str]:
    return [ln for ln in lines if not _REGION_MARKER.match(ln)]


def collapse_blank_runs(lines: List[str]) -> List[str]:
    out: List[str] = []
    for ln in lines:
        if not ln.strip() and out and not out[-1].strip():
            continue
        out.append(ln)
    return out


def blank_line_after_closing_brace(lines: List[str]) -> List[str]:
    out: List[str] = []
    for i, ln in enumerate(lines):
        out.append(ln)
        if ln.strip() != "}" or i + 1 >= len(lines):
            continue
        nxt = lines[i + 1].strip()
        if not nxt or nxt.startswith(_CLOSING_TOKENS):
            continue
        if re.match(rf"(?:{'|'.join(_BRACE_CONTINUATIONS)})\b", nxt):
            continue
        out.append("")
    return out


# rule code -> line transform, applied in this order
_TRANSFORMS = (
    ("SA1028", strip_trailing_whitespace),
    ("SA1124", strip_region_markers),
    ("SA1123", strip_region_markers),
    ("SA1507", collapse_blank_runs),
    ("SA1513", blank_line_after_closing_brace),
)
FIXABLE_RULES = frozenset(code for code, _ in _TRANSFORMS)


def apply_rules(content: str, codes: Set[str]) -> str:
    nl = newline_of(content)
    lines = content.split(nl)
    applied = set()
    for code, transform in _TRANSFORMS:
        if code in codes and transform not in applied:
            lines = transform(lines)
            applied.add(transform)
    # Removing region markers can leave doubled blank lines behind.
    if {"SA1124", "SA1123"} & codes:
        lines = collapse_blank_runs(lines)
    return nl.join(lines)


def add_suppressions(config_text: str | None, codes: List[str], *, section: str = "[*.cs]") -> str:
    """Append `dotnet_diagnostic.<code>.severity = none` entries not already present."""
    text = config_text or ""
    missing = [c for c in codes if f"dotnet_diagnostic.{c}.severity" not in text]
    if not missing:
        return text
    nl = newline_of(text) if text else "\n"
    block = ["# Suppressed by selfheal: not auto-fixable in source", section]
    block += [f"dotnet_diagnostic.{c}.severity = none" for c in missing]
    if text and not text.endswith(nl):
        text += nl
    if text:
        text += nl
    return text + nl.join(block) + nl


class FormattingRulesFixer:
    """
    Line-level fixes for style-analyzer rules; any other rule codes reported in
    annotations are suppressed in the project's lint config instead of touching source.
    """

    name = "formatting-rules"

    def __init__(self, ctx: FixContext) -> None:
        self.ctx = ctx

    def _codes_by_file(self, jobs: List[FailedJob]) -> Dict[str, Set[str]]:
        out: Dict[str, Set[str]] = {}
        for a in iter_annotations(jobs):
            for code in _RULE_CODE.findall(a.message):
                out.setdefault(a.path, set()).add(code)
        return out

    def can_handle(self, jobs: List[FailedJob]) -> bool:
        return bool(self._codes_by_file(jobs))

    def apply(self, jobs: List[FailedJob]) -> FixerResult:
        result = FixerResult()
        codes_by_file = self._codes_by_file(jobs)
        fixed_files: List[str] = []
        unfixable: List[str] = []

        for path, codes in sorted(codes_by_file.items()):
            for code in sorted(codes - FIXABLE_RULES):
                if code not in unfixable:
                    unfixable.append(code)
            fixable = codes & FIXABLE_RULES
            if not fixable or not path:
                continue
            content = self.ctx.files.current(path)
            if content is None:
                continue
            fixed = apply_rules(content, fixable)
            if fixed != content:
                self.ctx.files.update(path, fixed)
                result.add_fix(Fix(path=path, content=fixed))
                fixed_files.append(path)
                logger.info("formatting fix for %s (%s)", path, ", ".join(sorted(fixable)))

        if fixed_files:
            result.notes.append(f"Fixed formatting issues in {', '.join(fixed_files)}")

        if unfixable:
            config_path = self.ctx.settings.lint_config_path
            current = self.ctx.files.current(config_path)
            updated = add_suppressions(current, unfixable)
            if updated != (current or ""):
                self.ctx.files.update(config_path, updated)
                result.add_fix(Fix(path=config_path, content=updated))
                result.notes.append(f"Suppressed {', '.join(unfixable)} in {config_path}")

        suppressed = set(unfixable)
        for a in iter_annotations(jobs):
            codes = set(_RULE_CODE.findall(a.message))
            if not codes:
                continue
            source_fixed = a.path in fixed_files or not (codes & FIXABLE_RULES)
            if source_fixed and (codes - FIXABLE_RULES) <= suppressed:
                result.resolved_messages.add(a.message)
        return result
