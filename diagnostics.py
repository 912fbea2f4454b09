"""Source spans and caret-style diagnostic rendering."""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

Sink = Callable[[str], None]

TAB_WIDTH = 4


@dataclass(frozen=True)
class Span:
    start: int
    end: int
    line: int
    column: int

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end, "line": self.line, "column": self.column}


@dataclass(frozen=True)
class Label:
    span: Span
    message: str


@dataclass
class Diagnostic:
    message: str
    span: Optional[Span]
    severity: str = "error"
    notes: List[Label] = field(default_factory=list)


def _line_bounds(source: str, offset: int) -> Tuple[int, int]:
    start = source.rfind("\n", 0, offset) + 1
    end = source.find("\n", start)
    if end == -1:
        end = len(source)
    return start, end


def _display_width(text: str) -> int:
    width = 0
    for ch in text:
        width += TAB_WIDTH if ch == "\t" else 1
    return width


def excerpt(source: str, span: Span) -> Tuple[str, int, int]:
    """Return the source line holding ``span`` with its caret offset and width.

    Tabs are expanded so the caret lines up with what the line looks like once
    printed. The caret run is clipped to the end of the line and is always at
    least one column wide, so a span at end of input still gets a marker.
    """
    start = min(span.start, len(source))
    line_start, line_end = _line_bounds(source, start)
    raw = source[line_start:line_end].rstrip("\r")
    offset = _display_width(source[line_start:start])
    stop = min(max(span.end, start), line_start + len(raw))
    width = max(1, _display_width(source[start:stop]))
    return raw.replace("\t", " " * TAB_WIDTH), offset, width


def _render_snippet(out: List[str], label: str, source: str, span: Span) -> None:
    text, offset, width = excerpt(source, span)
    gutter = " " * len(str(span.line))
    out.append(f"{gutter}--> {label}:{span.line}:{span.column}\n")
    out.append(f"{gutter} |\n")
    out.append(f"{span.line} | {text}\n")
    out.append(f"{gutter} | " + " " * offset + "^" * width + "\n")


def format_diagnostic(label: str, source: str, diagnostic: Diagnostic) -> str:
    out: List[str] = [f"{diagnostic.severity}: {diagnostic.message}\n"]
    if diagnostic.span is None:
        out.append(f"  --> {label}\n")
    else:
        _render_snippet(out, label, source, diagnostic.span)
    for note in diagnostic.notes:
        out.append(f"note: {note.message}\n")
        _render_snippet(out, label, source, note.span)
    return "".join(out)


def render_diagnostic(sink: Sink, label: str, source: str, diagnostic: Diagnostic) -> None:
    sink(format_diagnostic(label, source, diagnostic))
