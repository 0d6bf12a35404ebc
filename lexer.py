from __future__ import annotations
from dataclasses import dataclass
from typing import List


class ABAPError(Exception):
    """Base class for interpreter errors."""


class LexError(ABAPError):
    """Raised when an expression cannot be tokenized."""


@dataclass
class Token:
    type: str
    value: str
    column: int


SYMBOLS = {
    "(": "LPAREN",
    ")": "RPAREN",
}

OPERATORS = {"+", "-", "*", "/"}

QUOTES = ("'", "`")

DIGITS = "0123456789"


class Lexer:
    def __init__(self, text: str) -> None:
        self.text = text
        self.index = 0

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch.isspace():
                self.index += 1
                continue
            if ch in SYMBOLS:
                tokens_append(Token(SYMBOLS[ch], ch, self.index + 1))
                self.index += 1
                continue
            if ch in OPERATORS:
                tokens_append(Token("OP", ch, self.index + 1))
                self.index += 1
                continue
            if ch in ("=", "<", ">", "!"):
                tokens_append(self._consume_comparison())
                continue
            if ch in QUOTES:
                tokens_append(self._consume_string())
                continue
            if ch in DIGITS:
                tokens_append(self._consume_number())
                continue
            if self._is_identifier_start(ch):
                tokens_append(self._consume_identifier())
                continue
            raise LexError(f"Unexpected character '{ch}' at column {self.index + 1}")
        tokens_append(Token("EOF", "", self.index + 1))
        return tokens

    def _consume_comparison(self) -> Token:
        col = self.index + 1
        ch = self._peek()
        nxt = self.text[self.index + 1] if self.index + 1 < len(self.text) else ""
        if ch == "!":
            symbol = "!=" if nxt == "=" else "!"
            raise LexError(f"Unsupported operator '{symbol}' at column {col}")
        if nxt == "=":
            raise LexError(f"Unsupported operator '{ch}=' at column {col}")
        if ch == "<" and nxt == ">":
            self.index += 2
            return Token("OP", "<>", col)
        self.index += 1
        return Token("OP", ch, col)

    def _consume_number(self) -> Token:
        col = self.index + 1
        start = self.index
        self._consume_digits()
        # Only one radix point belongs to a literal; a second dot ends it.
        if not self._eof and self._peek() == ".":
            self.index += 1
            self._consume_digits()
        return Token("NUMBER", self.text[start:self.index], col)

    def _consume_digits(self) -> None:
        text = self.text
        n = len(text)
        while self.index < n and text[self.index] in DIGITS:
            self.index += 1

    def _consume_string(self) -> Token:
        col = self.index + 1
        opening = self._peek()
        self.index += 1  # consume opening quote
        end = self.text.find(opening, self.index)
        if end == -1:
            raise LexError(f"Unterminated string literal at column {col}")
        value = self.text[self.index:end]
        self.index = end + 1
        return Token("STRING", value, col)

    def _consume_identifier(self) -> Token:
        col = self.index + 1
        start = self.index
        text = self.text
        n = len(text)
        while self.index < n and self._is_identifier_part(text[self.index]):
            self.index += 1
        return Token("IDENT", text[start:self.index], col)

    def _is_identifier_start(self, ch: str) -> bool:
        return ch == "_" or ("a" <= ch <= "z") or ("A" <= ch <= "Z")

    def _is_identifier_part(self, ch: str) -> bool:
        # "-" is allowed so that system fields such as sy-index are single names.
        return self._is_identifier_start(ch) or ch in DIGITS or ch == "-"

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]
