from __future__ import annotations

import re
from typing import Iterable, List, Optional

from selfheal.models import Annotation, FailedJob

# Runner workspace prefixes: /home/runner/work/<org>/<repo>/..., D:/a/<org>/<repo>/..., D:\a\<org>\<repo>\...
_LINUX_WORKSPACE = re.compile(r"home/runner/work/[^/]+/[^/]+/(.*)")
_WINDOWS_WORKSPACE = re.compile(r"[A-Za-z]/a/[^/]+/[^/]+/(.*)")
_WINDOWS_BACKSLASH_WORKSPACE = re.compile(r"[A-Za-z]:\\a\\[^\\]+\\[^\\]+\\(.*)")

# ##[error]src/Foo.cs(12,5): error CS0101: The namespace 'X' already contains ... [/path/proj.csproj]
_ERROR_LINE = re.compile(
    r"##\[error\]([\w/.+:\\-]+\.(?:cs|ts|tsx|js|jsx))\((\d+),\d+\):\s*error\s+\w+:\s*(.+?)(?:\s+\[|$)",
    re.MULTILINE,
)

_ERROR_LOCATION_PATH = re.compile(r"([\w/.+:\\-]+\.(?:ts|tsx|js|jsx|cs))\(\d+")
_PROJECT_FILE_PATH = re.compile(r"\[([\w/.+:\\-]+\.csproj)\]")
_BARE_PATH = re.compile(r"(?:^|\s)([\w/.+-]+\.(?:ts|tsx|js|jsx|cs|csproj))(?=[\s(:]|$)", re.MULTILINE)

_EXCLUDED_PREFIXES = ("node_modules/", ".github/", "home/", "usr/")

_COMPILER_ERROR_LINE = re.compile(r"error\s+(TS|CS|MSB)", re.IGNORECASE)
_GENERIC_ERROR_LINE = re.compile(r"##\[error\]|\berror\b[:\s]", re.IGNORECASE)
_LOG_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z\s+")

DUPLICATE_MARKERS = ("already contains a definition", "already defines a member")

SIGNATURE_CHARS = 80

# Messages every failing job prints; they say nothing about the cause.
_GENERIC_SIGNATURE_PREFIXES = (
    "process completed with exit code",
    "the operation was canceled",
    "the job was canceled",
    "error: process completed with exit code",
)


def is_generic_signature(signature: str) -> bool:
    s = (signature or "").strip().lower()
    return any(s.startswith(p) for p in _GENERIC_SIGNATURE_PREFIXES)


def normalize_log_path(path: str) -> str:
    """Strip CI runner absolute prefixes so paths are repository-relative."""
    m = _LINUX_WORKSPACE.search(path)
    if m:
        return m.group(1)
    m = _WINDOWS_WORKSPACE.search(path)
    if m:
        return m.group(1)
    m = _WINDOWS_BACKSLASH_WORKSPACE.search(path)
    if m:
        return m.group(1).replace("\\", "/")
    return path


def tail_lines(text: str, max_lines: int) -> str:
    if not text:
        return ""
    lines = text.splitlines()
    return "\n".join(lines[-max_lines:]) if max_lines > 0 else ""


def synthesize_annotations(log_text: str) -> List[Annotation]:
    """
    Build failure annotations from compiler error lines when the annotations API gave
    us nothing usable.
    """
    out: List[Annotation] = []
    for m in _ERROR_LINE.finditer(log_text or ""):
        line_no = int(m.group(2))
        out.append(
            Annotation(
                path=normalize_log_path(m.group(1)),
                start_line=line_no,
                end_line=line_no,
                severity="failure",
                message=m.group(3).strip(),
            )
        )
    return out


def extract_log_paths(log_text: str, *, limit: int = 10) -> List[str]:
    """Source/project paths mentioned in logs, in first-seen order, without runner/vendor paths."""
    seen: List[str] = []
    for pattern in (_ERROR_LOCATION_PATH, _PROJECT_FILE_PATH, _BARE_PATH):
        for m in pattern.finditer(log_text or ""):
            p = normalize_log_path(m.group(1))
            if p.startswith(_EXCLUDED_PREFIXES) or p.startswith("/"):
                continue
            if p not in seen:
                seen.append(p)
    return seen[:limit]


def is_duplicate_message(message: str) -> bool:
    return any(m in message for m in DUPLICATE_MARKERS)


def _strip_timestamp(line: str) -> str:
    return _LOG_TIMESTAMP.sub("", line).strip()


def learnable_signature(jobs: Iterable[FailedJob]) -> Optional[str]:
    """
    Signature to register for a newly learned pattern: the first non-duplicate annotation
    message, else the first compiler error line in the logs.
    """
    jobs = list(jobs)
    for j in jobs:
        for a in j.annotations:
            if a.message and not is_duplicate_message(a.message) and not is_generic_signature(a.message):
                return a.message[:SIGNATURE_CHARS]
    if any(not is_generic_signature(a.message) for j in jobs for a in j.annotations):
        return None
    for j in jobs:
        for line in (j.log_text or "").splitlines():
            if _COMPILER_ERROR_LINE.search(line):
                return _strip_timestamp(line)[:SIGNATURE_CHARS]
    return None


def primary_signature(jobs: Iterable[FailedJob]) -> str:
    """
    Stable key for cooldown tracking: the first specific annotation message, else the first
    specific error line of the logs, else the failing job names. Generic runner messages
    such as "Process completed with exit code 1." never form the key.
    """
    jobs = list(jobs)
    for j in jobs:
        for a in j.annotations:
            if a.message and not is_generic_signature(a.message):
                return a.message.strip()[:SIGNATURE_CHARS]
    for j in jobs:
        for line in (j.log_text or "").splitlines():
            if _GENERIC_ERROR_LINE.search(line):
                text = _strip_timestamp(line).replace("##[error]", "").strip()
                if text and not is_generic_signature(text):
                    return text[:SIGNATURE_CHARS]
    names = ",".join(sorted(j.name for j in jobs))
    return f"failed-jobs:{names}"[:SIGNATURE_CHARS]
