from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional

from diagnostics import Diagnostic, Sink, Span, render_diagnostic


class PipaError(Exception):
    """Base class for template engine errors."""

    def __init__(self, message: str, span: Optional[Span] = None) -> None:
        super().__init__(message)
        self.message = message
        self.span = span

    def diagnostic(self) -> Diagnostic:
        return Diagnostic(message=self.message, span=self.span)

    def write_message(self, sink: Sink, label: str, source: str) -> None:
        render_diagnostic(sink, label, source, self.diagnostic())


class PipaSyntaxError(PipaError):
    """Raised when parsing fails."""

    def __init__(self, span: Span, expected: str, found: str) -> None:
        super().__init__(f"expected {expected}, found {found}", span)
        self.expected = expected
        self.found = found


@dataclass(frozen=True)
class Token:
    type: str
    value: str
    span: Span

    @property
    def line(self) -> int:
        return self.span.line

    @property
    def column(self) -> int:
        return self.span.column


SYMBOLS = {
    "|": "PIPE",
    "[": "LBRACKET",
    "]": "RBRACKET",
    ":": "COLON",
}

SIGILS = {
    "@": "MACRO_DEF",
    "?": "MACRO_REF",
}

IDENT_START = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_"
IDENT_PART = IDENT_START + "0123456789"


class Lexer:
    def __init__(self, text: str) -> None:
        self.text = text
        self.index = 0
        self.line = 1
        self.column = 1
        self.in_block = False

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        text = self.text
        n = len(text)

        while self.index < n:
            if not self.in_block:
                tokens_append(self._consume_host_text())
                continue
            ch = text[self.index]
            if ch == " " or ch == "\t" or ch == "\r":
                self._advance()
                continue
            # Semicolon acts as a newline-token alias inside blocks
            if ch == "\n" or ch == ";":
                tokens_append(self._single("NEWLINE"))
                continue
            if ch == "}":
                if text.startswith("}}", self.index):
                    tokens_append(self._take("BLOCK_CLOSE", 2))
                    self.in_block = False
                else:
                    tokens_append(self._error("unexpected '}' (blocks close with '}}')", 1))
                continue
            if ch == "#":
                tokens_append(self._consume_comment())
                continue
            if ch in SYMBOLS:
                tokens_append(self._single(SYMBOLS[ch]))
                continue
            if ch in SIGILS:
                tokens_append(self._consume_sigil(SIGILS[ch]))
                continue
            if ch == '"':
                tokens_append(self._consume_string())
                continue
            if ch in IDENT_START:
                tokens_append(self._consume_identifier())
                continue
            tokens_append(self._error(f"unexpected character '{ch}'", 1))
        tokens_append(Token("EOF", "", self._span_from(self.index, self.line, self.column)))
        return tokens

    def _consume_host_text(self) -> Token:
        start, line, col = self.index, self.line, self.column
        end = self.text.find("{{", start)
        if end == -1:
            end = len(self.text)
        if end == start:
            token = self._take("BLOCK_OPEN", 2)
            self.in_block = True
            return token
        while self.index < end:
            self._advance()
        return Token("HOST_TEXT", self.text[start:end], self._span_from(start, line, col))

    def _consume_comment(self) -> Token:
        start, line, col = self.index, self.line, self.column
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()
        body = text[start + 1:self.index].rstrip("\r").strip()
        return Token("COMMENT", body, self._span_from(start, line, col))

    def _consume_sigil(self, token_type: str) -> Token:
        start, line, col = self.index, self.line, self.column
        sigil = self.text[start]
        self._advance()
        if self._eof or self._peek() not in IDENT_START:
            return Token("ERROR", f"expected a name after '{sigil}'", self._span_from(start, line, col))
        name = self._read_identifier()
        return Token(token_type, name, self._span_from(start, line, col))

    def _consume_string(self) -> Token:
        start, line, col = self.index, self.line, self.column
        self._advance()  # consume opening quote
        text = self.text
        n = len(text)
        while self.index < n:
            ch = text[self.index]
            if ch == '"':
                self._advance()
                return Token("STRING", text[start + 1:self.index - 1], self._span_from(start, line, col))
            if ch == "\n":
                break
            if ch == "\\" and self.index + 1 < n and text[self.index + 1] != "\n":
                self._advance()
            self._advance()
        return Token("ERROR", "unterminated string literal", self._span_from(start, line, col))

    def _consume_identifier(self) -> Token:
        start, line, col = self.index, self.line, self.column
        name = self._read_identifier()
        return Token("IDENT", name, self._span_from(start, line, col))

    def _read_identifier(self) -> str:
        start = self.index
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] in IDENT_PART:
            _advance()
        return text[start:self.index]

    def _single(self, token_type: str) -> Token:
        return self._take(token_type, 1)

    def _take(self, token_type: str, width: int) -> Token:
        start, line, col = self.index, self.line, self.column
        for _ in range(width):
            self._advance()
        return Token(token_type, self.text[start:self.index], self._span_from(start, line, col))

    def _error(self, message: str, width: int) -> Token:
        token = self._take("ERROR", width)
        return Token("ERROR", message, token.span)

    def _span_from(self, start: int, line: int, column: int) -> Span:
        return Span(start=start, end=self.index, line=line, column=column)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


def tokenize(source: str) -> List[Token]:
    return Lexer(source).tokenize()
