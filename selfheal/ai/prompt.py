from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from selfheal.models import FailedJob, Pattern


@dataclass(frozen=True)
class ContextFile:
    path: str
    content: str
    # Excerpt or truncated content: only replacement-style fixes are trusted for it.
    partial: bool = False


TRUNCATION_MARKER = "\n// ... truncated ..."


def context_from_full_text(path: str, text: str, *, max_chars: int) -> ContextFile:
    if len(text) > max_chars:
        return ContextFile(path=path, content=text[:max_chars] + TRUNCATION_MARKER, partial=True)
    return ContextFile(path=path, content=text)


def fit_to_budget(files: Dict[str, ContextFile], max_chars: int) -> Dict[str, ContextFile]:
    """
    Share one character budget across all context files, in order.

    A file that no longer fits whole is cut and marked partial; files past the budget are dropped.
    """
    out: Dict[str, ContextFile] = {}
    remaining = max_chars
    for path, f in files.items():
        if len(f.content) <= remaining:
            out[path] = f
            remaining -= len(f.content)
            continue
        room = remaining - len(TRUNCATION_MARKER)
        if room <= 0:
            break
        out[path] = ContextFile(path=path, content=f.content[:room] + TRUNCATION_MARKER, partial=True)
        break
    return out


def pattern_hint(pattern: Optional[Pattern]) -> str:
    if pattern is None:
        return ""
    return (
        "\n\n## Known Pattern\n"
        f'This error matches known pattern "{pattern.id}".\n'
        f"Known fix: {pattern.fix}\n"
        "Apply this fix approach to the source files below.\n"
    )


_INSTRUCTIONS = """## Instructions
- Focus on BUILD/COMPILE errors first, but also fix formatting issues (trailing whitespace, missing blank lines) if present
- For "already contains a definition" errors: the class exists in TWO files. Remove the DUPLICATE (the one embedded in a larger file), keep the standalone file.
- Propose the MINIMAL fix (fewest lines changed)
- Files marked (partial) are excerpts: for those, use "replacements" with search strings copied verbatim from the excerpt, never "content"
- If you cannot fix it, return empty fixes with an explanation

## Response Format (JSON only)
{
  "fixes": [
    {
      "path": "relative/path/to/file.ext",
      "content": "full file content with fix applied"
    },
    {
      "path": "relative/path/to/large/file.ext",
      "replacements": [{"search": "exact existing text", "replace": "new text"}]
    }
  ],
  "explanation": "Brief explanation of what was wrong and what was fixed"
}"""


def build_prompt(
    jobs: List[FailedJob],
    files: Dict[str, ContextFile],
    *,
    hint: str = "",
    max_file_chars: int = 60_000,
    max_log_chars: int = 3_000,
) -> str:
    errors: List[str] = []
    for j in jobs:
        annots = "\n".join(f"  - {a.path}:{a.start_line}: {a.message}" for a in j.annotations)
        errors.append(f"### {j.name}\n{annots or '(no structured errors)'}")

    logs = [
        f"### {j.name} (raw logs)\n```\n{j.log_text[:max_log_chars]}\n```"
        for j in jobs
        if not j.annotations and j.log_text
    ]

    sources = "\n\n".join(
        f"### {f.path}{' (partial)' if f.partial else ''}\n```\n{f.content}\n```"
        for f in fit_to_budget(files, max_file_chars).values()
    )

    parts = [
        "You are a CI/CD fix assistant. Analyze the structured errors and source files below.",
        "",
        "## Errors by Job",
        "\n\n".join(errors),
        "",
    ]
    if logs:
        parts += ["## Additional Logs", "\n\n".join(logs), ""]
    parts += ["## Source Files", sources, "", _INSTRUCTIONS]
    return "\n".join(parts) + hint
