"""One-call rendering: source + variables + arrays -> output or error."""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence

from diagnostics import Sink
from extensions import RuntimeServices
from ir import IRProgram, dump_ir, lower
from lexer import PipaError, tokenize
from parser import parse
from vm import PipaRuntimeError, TracebackFormatter, VirtualMachine


def compile_source(source: str) -> IRProgram:
    tokens = tokenize(source)
    document = parse(tokens)
    return lower(source, document)


def split_array(text: str) -> List[str]:
    """Split a multi-line value into array items, one per line.

    A trailing newline does not produce an empty last item and a ``\\r``
    before each newline is dropped, so CRLF input splits the same as LF.
    """
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


@dataclass
class RenderResult:
    output: str
    error: Optional[PipaError] = None
    program: Optional[IRProgram] = None
    vm: Optional[VirtualMachine] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def write_diagnostic(self, sink: Sink, label: str, source: str) -> None:
        if self.error is not None:
            self.error.write_message(sink, label, source)

    def traceback(self, label: str, source: str, *, verbose: bool = False) -> Optional[str]:
        if self.vm is None or not isinstance(self.error, PipaRuntimeError):
            return None
        return TracebackFormatter(self.vm, label, source).format_text(self.error, verbose=verbose)

    def console(self) -> str:
        """State dump followed by the IR listing; empty if compilation failed."""
        parts: List[str] = []
        if self.vm is not None:
            self.vm.dump_state(parts.append)
            parts.append("\n")
        if self.program is not None:
            dump_ir(parts.append, self.program)
        return "".join(parts)


def render(
    source: str,
    variables: Mapping[str, str],
    arrays: Mapping[str, Sequence[str]],
    *,
    services: Optional[RuntimeServices] = None,
    verbose: bool = False,
) -> RenderResult:
    try:
        program = compile_source(source)
    except PipaError as error:
        return RenderResult(output="", error=error)

    chunks: List[str] = []
    vm = VirtualMachine(variables, arrays, services=services, verbose=verbose)
    try:
        vm.run(chunks.append, program)
    except PipaRuntimeError as error:
        return RenderResult(output="".join(chunks), error=error, program=program, vm=vm)
    return RenderResult(output="".join(chunks), program=program, vm=vm)
