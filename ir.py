"""Lowering of the template AST into a flat instruction list."""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from diagnostics import Diagnostic, Label, Sink, Span
from lexer import IDENT_PART, IDENT_START, PipaError
from parser import (
    ArraySelect,
    Comment,
    Document,
    Expression,
    ExpressionStatement,
    HostText,
    MacroDef,
    PipeChain,
    ScriptBlock,
    StringLiteral,
    VarRef,
)


INDEX_BINDING = "_index_"
ITEM_BINDING = "_item_"
PATTERN_BINDING = "_"

ESCAPES = {
    '"': '"',
    "\\": "\\",
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "$": "$",
}


class PipaSemanticError(PipaError):
    """Raised when a well-formed document cannot be lowered."""


class DuplicateMacro(PipaSemanticError):
    def __init__(self, name: str, first_span: Span, dup_span: Span) -> None:
        super().__init__(f"macro '@{name}' is defined more than once", dup_span)
        self.name = name
        self.first_span = first_span
        self.dup_span = dup_span

    def diagnostic(self) -> Diagnostic:
        return Diagnostic(
            message=self.message,
            span=self.dup_span,
            notes=[Label(self.first_span, f"'@{self.name}' first defined here")],
        )


class UnknownMacro(PipaSemanticError):
    def __init__(self, name: str, span: Span) -> None:
        super().__init__(f"unknown macro '?{name}'", span)
        self.name = name


class MalformedInterpolation(PipaSemanticError):
    def __init__(self, reason: str, span: Span) -> None:
        super().__init__(f"malformed interpolation: {reason}", span)
        self.reason = reason


# ---- Instructions ----


@dataclass(frozen=True)
class Instruction:
    span: Span

    opcode = "NOP"

    def operand(self) -> str:
        return ""


@dataclass(frozen=True)
class EmitLiteral(Instruction):
    text: str

    opcode = "EMIT_LITERAL"

    def operand(self) -> str:
        return _quote(self.text)


@dataclass(frozen=True)
class EmitVar(Instruction):
    name: str

    opcode = "EMIT_VAR"

    def operand(self) -> str:
        return self.name


@dataclass(frozen=True)
class BeginArrayIter(Instruction):
    array: str

    opcode = "BEGIN_ARRAY_ITER"

    def operand(self) -> str:
        return self.array


@dataclass(frozen=True)
class EndArrayIter(Instruction):
    opcode = "END_ARRAY_ITER"


@dataclass(frozen=True)
class BeginMacroCall(Instruction):
    name: str
    block: int

    opcode = "BEGIN_MACRO_CALL"

    def operand(self) -> str:
        return f"?{self.name}"


@dataclass(frozen=True)
class EndMacroCall(Instruction):
    opcode = "END_MACRO_CALL"


@dataclass(frozen=True)
class PushScope(Instruction):
    opcode = "PUSH_SCOPE"


@dataclass(frozen=True)
class PopScope(Instruction):
    opcode = "POP_SCOPE"


@dataclass(frozen=True)
class BeginCapture(Instruction):
    opcode = "BEGIN_CAPTURE"


@dataclass(frozen=True)
class EndCapture(Instruction):
    name: str

    opcode = "END_CAPTURE"

    def operand(self) -> str:
        return self.name


@dataclass(frozen=True)
class CommentOp(Instruction):
    text: str

    opcode = "COMMENT"

    def operand(self) -> str:
        return f"# {self.text}"


OPENERS = (BeginArrayIter, BeginMacroCall, PushScope, BeginCapture)
CLOSERS = (EndArrayIter, EndMacroCall, PopScope, EndCapture)

Fragment = Tuple[Instruction, ...]


@dataclass(frozen=True)
class Macro:
    name: str
    block: int
    span: Span
    pattern: Fragment
    body: Fragment


@dataclass
class MacroTable:
    _macros: Dict[Tuple[int, str], Macro] = field(default_factory=dict)

    def define(self, macro: Macro) -> None:
        self._macros[(macro.block, macro.name)] = macro

    def get(self, block: int, name: str) -> Optional[Macro]:
        return self._macros.get((block, name))

    def lookup(self, block: int, name: str) -> Macro:
        return self._macros[(block, name)]

    def __iter__(self) -> Iterator[Macro]:
        return iter(self._macros.values())

    def __len__(self) -> int:
        return len(self._macros)


@dataclass(frozen=True)
class IRProgram:
    instructions: Fragment
    macros: MacroTable


def _quote(text: str) -> str:
    out = ['"']
    for ch in text:
        if ch == '"' or ch == "\\":
            out.append("\\" + ch)
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\t":
            out.append("\\t")
        elif ch == "\r":
            out.append("\\r")
        else:
            out.append(ch)
    out.append('"')
    return "".join(out)


class IRGenerator:
    def __init__(self, source: str) -> None:
        self.source = source
        self.macros = MacroTable()
        self.instructions: List[Instruction] = []

    def generate(self, document: Document) -> IRProgram:
        for item in document.items:
            if isinstance(item, HostText):
                if item.text:
                    self.instructions.append(EmitLiteral(span=item.span, text=item.text))
                continue
            self._lower_block(item)
        return IRProgram(instructions=tuple(self.instructions), macros=self.macros)

    def _lower_block(self, block: ScriptBlock) -> None:
        # First pass: collect definitions so references may precede them.
        seen: Dict[str, Span] = {}
        definitions: List[MacroDef] = []
        for statement in block.statements:
            if not isinstance(statement, MacroDef):
                continue
            if statement.name in seen:
                raise DuplicateMacro(statement.name, seen[statement.name], statement.span)
            seen[statement.name] = statement.span
            definitions.append(statement)
        for statement in block.statements:
            if isinstance(statement, ExpressionStatement) and isinstance(statement.expression, PipeChain):
                target = statement.expression.target
                if target.name not in seen:
                    raise UnknownMacro(target.name, target.span)
        for definition in definitions:
            self.macros.define(
                Macro(
                    name=definition.name,
                    block=block.index,
                    span=definition.span,
                    pattern=tuple(self._lower_operand(definition.pattern)),
                    body=tuple(self._lower_operand(definition.body)),
                )
            )

        # Second pass: statements in source order.
        emit = self.instructions.extend
        for statement in block.statements:
            if isinstance(statement, Comment):
                emit([CommentOp(span=statement.span, text=statement.text)])
            elif isinstance(statement, ExpressionStatement):
                emit(self._lower_expression(block.index, statement.expression))

    def _lower_expression(self, block: int, expression: Expression) -> List[Instruction]:
        if isinstance(expression, PipeChain):
            return self._lower_pipe(block, expression)
        if isinstance(expression, ArraySelect):
            span = expression.span
            return [
                BeginArrayIter(span=span, array=expression.array_name),
                EmitVar(span=span, name=ITEM_BINDING),
                EndArrayIter(span=span),
            ]
        return self._lower_operand(expression)

    def _lower_pipe(self, block: int, chain: PipeChain) -> List[Instruction]:
        target = chain.target
        call = [
            BeginMacroCall(span=target.span, name=target.name, block=block),
            EndMacroCall(span=target.span),
        ]
        source = chain.source
        if isinstance(source, ArraySelect):
            return [BeginArrayIter(span=source.span, array=source.array_name), *call, EndArrayIter(span=source.span)]
        span = source.span
        return [
            PushScope(span=span),
            BeginCapture(span=span),
            *self._lower_operand(source),
            EndCapture(span=span, name=ITEM_BINDING),
            BeginCapture(span=span),
            EmitLiteral(span=span, text="0"),
            EndCapture(span=span, name=INDEX_BINDING),
            *call,
            PopScope(span=span),
        ]

    def _lower_operand(self, operand: Expression) -> List[Instruction]:
        if isinstance(operand, VarRef):
            return [EmitVar(span=operand.span, name=operand.name)]
        if isinstance(operand, StringLiteral):
            return self._lower_string(operand)
        raise TypeError(f"Cannot lower {type(operand).__name__} as an operand")

    def _lower_string(self, literal: StringLiteral) -> List[Instruction]:
        raw = literal.raw
        base = literal.span.start + 1
        line = literal.span.line
        column = literal.span.column + 1

        def span_at(start: int, end: int) -> Span:
            return Span(base + start, base + end, line, column + start)

        out: List[Instruction] = []
        chunk: List[str] = []
        chunk_start = 0

        def flush(end: int) -> None:
            if chunk:
                out.append(EmitLiteral(span=span_at(chunk_start, end), text="".join(chunk)))
                chunk.clear()

        i = 0
        n = len(raw)
        while i < n:
            ch = raw[i]
            if not chunk:
                chunk_start = i
            if ch == "\\" and i + 1 < n:
                nxt = raw[i + 1]
                chunk.append(ESCAPES.get(nxt, "\\" + nxt))
                i += 2
                continue
            if ch == "$" and raw.startswith("$(", i):
                close = raw.find(")", i + 2)
                if close == -1:
                    raise MalformedInterpolation("missing ')'", span_at(i, n))
                name = raw[i + 2:close]
                if not name or name[0] not in IDENT_START or any(c not in IDENT_PART for c in name):
                    raise MalformedInterpolation(f"'{name}' is not an identifier", span_at(i, close + 1))
                flush(i)
                out.append(EmitVar(span=span_at(i, close + 1), name=name))
                i = close + 1
                continue
            chunk.append(ch)
            i += 1
        flush(n)
        return out


def lower(source: str, document: Document) -> IRProgram:
    return IRGenerator(source).generate(document)


# ---- Dumping ----


def _dump_fragment(lines: List[str], fragment: Fragment, depth: int) -> None:
    for instruction in fragment:
        if isinstance(instruction, CLOSERS):
            depth = max(0, depth - 1)
        operand = instruction.operand()
        text = f"{instruction.opcode} {operand}" if operand else instruction.opcode
        lines.append("  " * depth + text)
        if isinstance(instruction, OPENERS):
            depth += 1


def format_ir(program: IRProgram) -> str:
    lines: List[str] = [f"macros ({len(program.macros)}):"]
    for macro in program.macros:
        lines.append(f"  @{macro.name} (block {macro.block}, line {macro.span.line}):")
        lines.append("    pattern:")
        _dump_fragment(lines, macro.pattern, 3)
        lines.append("    body:")
        _dump_fragment(lines, macro.body, 3)
    lines.append(f"program ({len(program.instructions)} instructions):")
    _dump_fragment(lines, program.instructions, 1)
    return "\n".join(lines) + "\n"


def dump_ir(sink: Sink, program: IRProgram) -> None:
    sink(format_ir(program))
