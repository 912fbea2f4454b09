from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Union

from diagnostics import Span
from lexer import PipaSyntaxError, Token


@dataclass
class Node:
    span: Span


class Statement(Node):
    pass


class Expression(Node):
    pass


@dataclass
class HostText(Node):
    text: str


@dataclass
class ScriptBlock(Node):
    index: int
    statements: List[Statement]


@dataclass
class Document(Node):
    items: List[Union[HostText, ScriptBlock]]

    @property
    def blocks(self) -> List[ScriptBlock]:
        return [item for item in self.items if isinstance(item, ScriptBlock)]


@dataclass
class Comment(Statement):
    text: str


@dataclass
class ExpressionStatement(Statement):
    expression: Expression


@dataclass
class MacroDef(Statement):
    name: str
    pattern: Expression
    body: Expression


@dataclass
class StringLiteral(Expression):
    raw: str


@dataclass
class VarRef(Expression):
    name: str


@dataclass(frozen=True)
class SliceSpec:
    # Only the whole-array form ``[:]`` exists; the bounds are kept for the dump.
    start: Optional[int] = None
    end: Optional[int] = None

    def __str__(self) -> str:
        return "[:]"


@dataclass
class ArraySelect(Expression):
    array_name: str
    slice: SliceSpec


@dataclass
class MacroRef(Expression):
    name: str


@dataclass
class PipeChain(Expression):
    source: Expression
    target: MacroRef


STATEMENT_END = {"NEWLINE", "COMMENT", "BLOCK_CLOSE"}

DESCRIPTIONS = {
    "HOST_TEXT": "host text",
    "BLOCK_OPEN": "'{{'",
    "BLOCK_CLOSE": "'}}'",
    "IDENT": "identifier",
    "STRING": "string literal",
    "COMMENT": "comment",
    "MACRO_DEF": "macro definition",
    "MACRO_REF": "macro reference",
    "PIPE": "'|'",
    "LBRACKET": "'['",
    "RBRACKET": "']'",
    "COLON": "':'",
    "NEWLINE": "end of line",
    "EOF": "end of input",
}


def describe(token: Token) -> str:
    if token.type == "ERROR":
        return token.value
    if token.type == "IDENT":
        return f"identifier '{token.value}'"
    if token.type == "MACRO_DEF":
        return f"macro definition '@{token.value}'"
    if token.type == "MACRO_REF":
        return f"macro reference '?{token.value}'"
    return DESCRIPTIONS.get(token.type, token.type)


class Parser:
    def __init__(self, tokens: List[Token]) -> None:
        self.tokens = tokens
        self.index = 0
        self.block_count = 0

    def parse(self) -> Document:
        items: List[Union[HostText, ScriptBlock]] = []
        while self._peek().type != "EOF":
            token = self._peek()
            if token.type == "HOST_TEXT":
                self.index += 1
                items.append(HostText(span=token.span, text=token.value))
                continue
            items.append(self._parse_block())
        eof = self._peek()
        return Document(span=Span(0, eof.span.end, 1, 1), items=items)

    def _parse_block(self) -> ScriptBlock:
        opening = self._consume("BLOCK_OPEN")
        index = self.block_count
        self.block_count += 1
        statements: List[Statement] = []
        while True:
            token = self._peek()
            if token.type == "NEWLINE":
                self.index += 1
                continue
            if token.type == "BLOCK_CLOSE":
                self.index += 1
                break
            if token.type == "EOF":
                raise PipaSyntaxError(opening.span, "'}}'", "end of input")
            statements.append(self._parse_statement())
            self._expect_statement_end()
        closing = self.tokens[self.index - 1]
        span = Span(opening.span.start, closing.span.end, opening.line, opening.column)
        return ScriptBlock(span=span, index=index, statements=statements)

    def _parse_statement(self) -> Statement:
        token = self._peek()
        if token.type == "COMMENT":
            self.index += 1
            return Comment(span=token.span, text=token.value)
        if token.type == "MACRO_DEF":
            return self._parse_macro_def()
        expr = self._parse_pipeline()
        return ExpressionStatement(span=expr.span, expression=expr)

    def _parse_macro_def(self) -> MacroDef:
        sigil = self._consume("MACRO_DEF")
        pattern = self._parse_operand(allow_array=False)
        self._consume("PIPE")
        body = self._parse_operand(allow_array=False)
        return MacroDef(span=self._join(sigil.span, body.span), name=sigil.value, pattern=pattern, body=body)

    def _parse_pipeline(self) -> Expression:
        source = self._parse_operand(allow_array=True)
        if not self._match("PIPE"):
            return source
        ref = self._consume("MACRO_REF")
        target = MacroRef(span=ref.span, name=ref.value)
        return PipeChain(span=self._join(source.span, ref.span), source=source, target=target)

    def _parse_operand(self, *, allow_array: bool) -> Expression:
        token = self._peek()
        if token.type == "STRING":
            self.index += 1
            return StringLiteral(span=token.span, raw=token.value)
        if token.type == "IDENT":
            self.index += 1
            if allow_array and self._peek().type == "LBRACKET":
                return self._parse_array_select(token)
            return VarRef(span=token.span, name=token.value)
        expected = "string literal, identifier or array selection" if allow_array else "string literal or identifier"
        raise PipaSyntaxError(token.span, expected, describe(token))

    def _parse_array_select(self, ident: Token) -> ArraySelect:
        self._consume("LBRACKET")
        self._consume("COLON", expected="':' (only whole-array selection '[:]' is supported)")
        closing = self._consume("RBRACKET")
        return ArraySelect(span=self._join(ident.span, closing.span), array_name=ident.value, slice=SliceSpec())

    def _expect_statement_end(self) -> None:
        token = self._peek()
        if token.type in STATEMENT_END:
            return
        if token.type == "EOF":
            # Reported against the block opening by the caller.
            return
        raise PipaSyntaxError(token.span, "end of statement", describe(token))

    def _consume(self, token_type: str, *, expected: Optional[str] = None) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise PipaSyntaxError(token.span, expected or DESCRIPTIONS[token_type], describe(token))
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _peek(self) -> Token:
        return self.tokens[self.index]

    @staticmethod
    def _join(first: Span, last: Span) -> Span:
        return Span(first.start, last.end, first.line, first.column)


def parse(tokens: List[Token]) -> Document:
    return Parser(tokens).parse()
