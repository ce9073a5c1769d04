from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Set, Tuple

from selfheal.fixers.base import SOURCE_EXTENSIONS, FixContext, FixerResult, basename, dirname, iter_annotations, stem
from selfheal.fixers.boundaries import block_text, newline_of, remove_block, strategy_for
from selfheal.models import FailedJob, Fix

logger = logging.getLogger(__name__)

# CS0104: 'Widget' is an ambiguous reference between 'App.Models.Widget' and 'App.Legacy.Widget'
_AMBIGUOUS = re.compile(r"'(\w+)' is an ambiguous reference between '([\w.]+)' and '([\w.]+)'")
_NAMESPACE = re.compile(r"^\s*namespace\s+([\w.]+)", re.MULTILINE)


def _namespace_of(qualified: str, name: str) -> str:
    suffix = "." + name
    return qualified[: -len(suffix)] if qualified.endswith(suffix) else qualified.rsplit(".", 1)[0]


class AmbiguousReferenceFixer:
    """
    Resolves `'X' is an ambiguous reference between 'A.X' and 'B.X'` when one side is a
    standalone `X.<ext>` file and the other is an identical copy living in the sibling
    namespace's directory. Copies that differ (beyond comments and whitespace) are left alone.
    """

    name = "ambiguous-reference"

    def __init__(self, ctx: FixContext) -> None:
        self.ctx = ctx

    def _targets(self, jobs: List[FailedJob]) -> List[Tuple[str, str, str, str]]:
        out: List[Tuple[str, str, str, str]] = []
        seen: Set[str] = set()
        for a in iter_annotations(jobs):
            m = _AMBIGUOUS.search(a.message)
            if not m or m.group(1) in seen:
                continue
            seen.add(m.group(1))
            out.append((m.group(1), m.group(2), m.group(3), a.message))
        return out

    def can_handle(self, jobs: List[FailedJob]) -> bool:
        return bool(self._targets(jobs))

    def _source_blobs(self) -> List[Dict[str, object]]:
        max_bytes = self.ctx.settings.max_sibling_bytes
        return [
            t
            for t in self.ctx.files.tree()
            if t.get("type") == "blob"
            and str(t.get("path", "")).endswith(SOURCE_EXTENSIONS)
            and int(t.get("size") or 0) < max_bytes
        ]

    def _standalone(self, name: str, blobs: List[Dict[str, object]]) -> Optional[str]:
        for t in blobs:
            path = str(t["path"])
            if stem(path) == name:
                return path
        return None

    def _candidate_dirs(self, namespace: str, blobs: List[Dict[str, object]]) -> List[str]:
        """Directories whose path ends with the namespace segments, longest match first."""
        dirs = sorted({dirname(str(t["path"])) for t in blobs})
        parts = namespace.split(".")
        for n in range(len(parts), 0, -1):
            suffix = "/".join(parts[-n:])
            hits = [d for d in dirs if d == suffix or d.endswith("/" + suffix)]
            if hits:
                return hits
        return []

    def apply(self, jobs: List[FailedJob]) -> FixerResult:
        result = FixerResult()
        blobs: Optional[List[Dict[str, object]]] = None

        for name, left, right, _ in self._targets(jobs):
            if blobs is None:
                blobs = self._source_blobs()
            standalone = self._standalone(name, blobs)
            if standalone is None:
                logger.info("no standalone %s.<ext> file found; leaving ambiguity for AI", name)
                continue
            standalone_content = self.ctx.files.current(standalone)
            if not standalone_content:
                continue

            declared = _NAMESPACE.search(standalone_content)
            ns_left, ns_right = _namespace_of(left, name), _namespace_of(right, name)
            if declared and declared.group(1) == ns_left:
                other_ns = ns_right
            elif declared and declared.group(1) == ns_right:
                other_ns = ns_left
            else:
                logger.info("standalone %s does not declare %s or %s", standalone, ns_left, ns_right)
                continue

            strategy = strategy_for(standalone)
            reference_block = strategy.find(standalone_content.split(newline_of(standalone_content)), name)
            reference = strategy.normalize(
                block_text(standalone_content, reference_block) if reference_block else standalone_content
            )

            for directory in self._candidate_dirs(other_ns, blobs):
                for t in blobs:
                    path = str(t["path"])
                    if dirname(path) != directory or path == standalone:
                        continue
                    content = self.ctx.files.current(path)
                    if not content:
                        continue
                    block = strategy_for(path).find(content.split(newline_of(content)), name)
                    if block is None:
                        continue
                    if strategy_for(path).normalize(block_text(content, block)) != reference:
                        logger.info("%s defines a different %s; not removing", path, name)
                        continue
                    fixed = remove_block(content, block)
                    if fixed is None:
                        logger.warning("safety: removing %s would drop >50%% of %s", name, path)
                        continue
                    logger.info("removing identical copy of %s from %s (kept %s)", name, path, basename(standalone))
                    self.ctx.files.update(path, fixed)
                    result.add_fix(Fix(path=path, content=fixed))
                    result.notes.append(f"Removed duplicate definition of {name} from {path}")
                    result.resolved_messages |= {
                        a.message for a in iter_annotations(jobs) if f"'{name}' is an ambiguous reference" in a.message
                    }
        return result
