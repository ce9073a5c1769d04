from __future__ import annotations

import logging
import re
from typing import List, Set, Tuple

from selfheal.fixers.base import SOURCE_EXTENSIONS, FixContext, FixerResult, dirname, iter_annotations, stem
from selfheal.fixers.boundaries import block_text, newline_of, remove_block, strategy_for
from selfheal.models import FailedJob, Fix

logger = logging.getLogger(__name__)

# CS0101: The namespace 'X' already contains a definition for 'Y'
_DUPLICATE = re.compile(r"already contains a definition for '(\w+)'")

FRAGMENT_LEAD_IN_LINES = 5


class DuplicateDefinitionFixer:
    """
    Removes a type that is defined twice in one directory: the copy embedded in a larger
    sibling file goes, the standalone `<Name>.<ext>` file stays.
    """

    name = "duplicate-definition"

    def __init__(self, ctx: FixContext) -> None:
        self.ctx = ctx

    def _targets(self, jobs: List[FailedJob]) -> List[Tuple[str, str, str]]:
        out: List[Tuple[str, str, str]] = []
        seen: Set[Tuple[str, str]] = set()
        for a in iter_annotations(jobs):
            m = _DUPLICATE.search(a.message)
            if not m:
                continue
            key = (m.group(1), dirname(a.path))
            if key in seen:
                continue
            seen.add(key)
            out.append((m.group(1), a.path, a.message))
        return out

    def can_handle(self, jobs: List[FailedJob]) -> bool:
        return bool(self._targets(jobs))

    def apply(self, jobs: List[FailedJob]) -> FixerResult:
        result = FixerResult()
        max_bytes = self.ctx.settings.max_sibling_bytes
        messages = {a.message for a in iter_annotations(jobs) if _DUPLICATE.search(a.message)}

        for type_name, annotated_path, _ in self._targets(jobs):
            directory = dirname(annotated_path)
            logger.info("duplicate '%s' detected, scanning %s/", type_name, directory)
            siblings = [
                s
                for s in self.ctx.files.list_dir(directory)
                if s.get("type", "file") == "file"
                and str(s.get("name", "")).endswith(SOURCE_EXTENSIONS)
                and s.get("path") != annotated_path
                and int(s.get("size") or 0) < max_bytes
                and stem(str(s.get("path", ""))) != type_name
            ]
            for sib in siblings:
                path = str(sib["path"])
                content = self.ctx.files.current(path)
                if not content:
                    continue
                strategy = strategy_for(path)
                nl = newline_of(content)
                lines = content.split(nl)
                block = strategy.find(lines, type_name)
                if block is None:
                    continue

                fixed = remove_block(content, block)
                if fixed is None:
                    logger.warning(
                        "safety: '%s' spans %d/%d lines of %s (>50%%), keeping it for AI context",
                        type_name,
                        block.line_count,
                        len(lines),
                        path,
                    )
                    lead = max(0, block.start - FRAGMENT_LEAD_IN_LINES)
                    fragment = nl.join(lines[lead : block.end + 1])
                    result.partial_context[path] = (
                        f"// File: {path} (lines {lead + 1}-{block.end + 1} of {len(lines)})\n{fragment}"
                    )
                    continue

                logger.info(
                    "removing '%s' from %s (lines %d-%d of %d)",
                    type_name,
                    path,
                    block.start + 1,
                    block.end + 1,
                    len(lines),
                )
                logger.debug("removed block:\n%s", block_text(content, block))
                self.ctx.files.update(path, fixed)
                result.add_fix(Fix(path=path, content=fixed))
                result.notes.append(f"Removed duplicate class from {path}")
                result.resolved_messages |= {m for m in messages if f"'{type_name}'" in m}
        return result
