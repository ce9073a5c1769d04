from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Protocol

_DECLARATION_KEYWORDS = r"(?:class|interface|struct|record|enum|type|function|const|let|def)"

# Lines that belong to the definition even though they come before its header.
_BRACE_LEAD_IN = ("///", "[", "@", "/**", "* ", "*/")
_INDENT_LEAD_IN = ("@", "#")

_LINE_COMMENT = re.compile(r"//[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_HASH_COMMENT = re.compile(r"#[^\n]*")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class Block:
    """Zero-based, inclusive line span of a definition."""

    start: int
    end: int
    header: int

    @property
    def line_count(self) -> int:
        return self.end - self.start + 1


class BoundaryStrategy(Protocol):
    def find(self, lines: List[str], name: str) -> Optional[Block]: ...

    def normalize(self, text: str) -> str: ...


def _header_pattern(name: str) -> re.Pattern[str]:
    return re.compile(rf"\b{_DECLARATION_KEYWORDS}\s+{re.escape(name)}\b")


_VERBATIM_OPEN = re.compile(r'(?:@\$?|\$@)"')


def _skip_quoted(line: str, i: int, quote: str) -> int:
    """Index just past the closing `quote`; an unterminated literal ends with the line."""
    n = len(line)
    while i < n:
        if line[i] == "\\":
            i += 2
        elif line[i] == quote:
            return i + 1
        else:
            i += 1
    return n


def _skip_interpolated(line: str, i: int) -> int:
    """Past the end of a `$"..."` string whose `{...}` holes may hold nested literals."""
    n = len(line)
    depth = 0
    while i < n:
        c = line[i]
        nxt = line[i + 1] if i + 1 < n else ""
        if depth == 0:
            if c == "\\":
                i += 2
                continue
            if c == '"':
                return i + 1
            if c in "{}" and nxt == c:
                i += 2
                continue
            if c == "{":
                depth = 1
        elif c in "\"'":
            i = _skip_quoted(line, i + 1, c)
            continue
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
        i += 1
    return n


class _BraceScanner:
    """
    Yields the braces of C-family source that are code: string, char and template
    literals and comments are skipped. Block comments, verbatim strings and template
    literals carry over to the next line.
    """

    def __init__(self) -> None:
        self._mode: Optional[str] = None

    def _skip_verbatim(self, line: str, i: int) -> int:
        n = len(line)
        while i < n:
            if line[i] == '"':
                if line.startswith('""', i):
                    i += 2
                    continue
                self._mode = None
                return i + 1
            i += 1
        return n

    def _skip_template(self, line: str, i: int) -> int:
        n = len(line)
        while i < n:
            if line[i] == "\\":
                i += 2
                continue
            if line[i] == "`":
                self._mode = None
                return i + 1
            i += 1
        return n

    def braces(self, line: str) -> Iterator[str]:
        i, n = 0, len(line)
        while i < n:
            if self._mode == "block":
                j = line.find("*/", i)
                if j < 0:
                    return
                self._mode = None
                i = j + 2
                continue
            if self._mode == "verbatim":
                i = self._skip_verbatim(line, i)
                continue
            if self._mode == "template":
                i = self._skip_template(line, i)
                continue

            c = line[i]
            if line.startswith("//", i):
                return
            if line.startswith("/*", i):
                self._mode = "block"
                i += 2
                continue
            m = _VERBATIM_OPEN.match(line, i)
            if m:
                self._mode = "verbatim"
                i = m.end()
                continue
            if line.startswith('$"', i):
                i = _skip_interpolated(line, i + 2)
                continue
            if c in "\"'":
                i = _skip_quoted(line, i + 1, c)
                continue
            if c == "`":
                self._mode = "template"
                i += 1
                continue
            if c in "{}":
                yield c
            i += 1


class BraceBlockStrategy:
    """
    Brace-delimited languages (C#, TypeScript, JavaScript): the block ends when the
    brace depth opened at the header returns to zero. Braces inside literals and
    comments do not count.
    """

    def _walk_back(self, lines: List[str], header: int) -> int:
        start = header
        while start > 0:
            prev = lines[start - 1].strip()
            if prev == "" or prev.startswith(_BRACE_LEAD_IN) or prev == "*":
                start -= 1
            else:
                break
        return start

    def find(self, lines: List[str], name: str) -> Optional[Block]:
        pattern = _header_pattern(name)
        header = next((i for i, ln in enumerate(lines) if pattern.search(ln)), None)
        if header is None:
            return None

        scanner = _BraceScanner()
        depth = 0
        opened = False
        end: Optional[int] = None
        for i in range(header, len(lines)):
            for ch in scanner.braces(lines[i]):
                if ch == "{":
                    depth += 1
                    opened = True
                else:
                    depth -= 1
            if opened and depth <= 0:
                end = i
                break
            # Body-less declarations: `record Foo(int A);`, `type Foo = ...;`
            if not opened and lines[i].rstrip().endswith(";"):
                end = i
                break
        if end is None:
            return None
        return Block(start=self._walk_back(lines, header), end=end, header=header)

    def normalize(self, text: str) -> str:
        text = _BLOCK_COMMENT.sub("", text)
        text = _LINE_COMMENT.sub("", text)
        return _WHITESPACE.sub("", text)


class IndentBlockStrategy:
    """Indentation-delimited languages (Python): the block ends before the next line at or above the header's indent."""

    def find(self, lines: List[str], name: str) -> Optional[Block]:
        pattern = re.compile(rf"^(\s*)(?:async\s+)?(?:class|def)\s+{re.escape(name)}\b")
        header = None
        indent = 0
        for i, ln in enumerate(lines):
            m = pattern.match(ln)
            if m:
                header = i
                indent = len(m.group(1).expandtabs())
                break
        if header is None:
            return None

        end = header
        for i in range(header + 1, len(lines)):
            ln = lines[i]
            if not ln.strip():
                continue
            if len(ln) - len(ln.lstrip()) <= indent and not ln.lstrip().startswith(")"):
                break
            end = i

        start = header
        while start > 0:
            prev = lines[start - 1]
            stripped = prev.strip()
            if stripped == "" or (stripped.startswith(_INDENT_LEAD_IN) and len(prev) - len(prev.lstrip()) == indent):
                start -= 1
            else:
                break
        return Block(start=start, end=end, header=header)

    def normalize(self, text: str) -> str:
        return _WHITESPACE.sub("", _HASH_COMMENT.sub("", text))


def strategy_for(path: str) -> BoundaryStrategy:
    if path.endswith(".py"):
        return IndentBlockStrategy()
    return BraceBlockStrategy()


def newline_of(content: str) -> str:
    return "\r\n" if "\r\n" in content else "\n"


def block_text(content: str, block: Block) -> str:
    nl = newline_of(content)
    return nl.join(content.split(nl)[block.start : block.end + 1])


def remove_block(content: str, block: Block, *, max_fraction: float = 0.5) -> Optional[str]:
    """
    Cut `block` out of `content`, dropping doubled blank lines at the splice point.
    Returns None when the span exceeds `max_fraction` of the file's lines.
    """
    nl = newline_of(content)
    lines = content.split(nl)
    if block.line_count > len(lines) * max_fraction:
        return None

    before = lines[: block.start]
    after = lines[block.end + 1 :]
    while before and not before[-1].strip() and after and not after[0].strip():
        after.pop(0)
    return nl.join(before + after)
