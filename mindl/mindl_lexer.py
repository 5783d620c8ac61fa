"""
Lexer for the Mindl directive language.

Turns directive source text into a flat list of tokens. Strings have no
escape sequences; special characters are produced at runtime with the
`qt`, `nl`, `tab` and `ret` constants and the `string(...)` builtin.

Brackets are the only delimiter, and doubling escapes them. Inside an open
directive `[[` and `]]` are read as nested brackets when that closes the
directive cleanly, so `[[add(i, 1)]]` stays an implicit lambda. Otherwise
they are literal `[` and `]`, which lex as one-character strings:
`[string("a", [[)]` shows `a[` and `[string(]], "b")]` shows `]b`.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Tuple


class LexError(Exception):
    def __init__(self, message: str, position: int):
        super().__init__(f"Lexer error at position {position}: {message}")
        self.message = message
        self.position = position


class TokenType(Enum):
    LBRACKET = "["
    RBRACKET = "]"
    LPAREN = "("
    RPAREN = ")"
    COMMA = ","
    COLON = ":"
    SEMICOLON = ";"
    DOT = "."
    DOTDOT = ".."
    STAR = "*"
    NUMBER = "number"
    STRING = "string"
    IDENTIFIER = "identifier"
    EOF = "eof"


@dataclass(frozen=True)
class Token:
    type: TokenType
    lexeme: str
    literal: Any
    position: int

    def __repr__(self):
        return f"Token({self.type.name}, {self.lexeme!r}, @{self.position})"


_SINGLE_CHAR_TOKENS = {
    '[': TokenType.LBRACKET,
    ']': TokenType.RBRACKET,
    '(': TokenType.LPAREN,
    ')': TokenType.RPAREN,
    ',': TokenType.COMMA,
    ':': TokenType.COLON,
    ';': TokenType.SEMICOLON,
    '*': TokenType.STAR,
}

_WHITESPACE = " \t\r\n"


def _scan_directive_end(text: str, start: int, escapes: bool) -> Optional[int]:
    depth = 0
    in_string = False
    i = start
    while i < len(text):
        c = text[i]
        if in_string:
            if c == '"':
                in_string = False
        elif c == '"' and depth > 0:
            in_string = True
        elif escapes and depth > 0 and text.startswith(('[[', ']]'), i):
            i += 2
            continue
        elif c == '[':
            depth += 1
        elif c == ']' and depth > 0:
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return None


def directive_end(text: str, start: int) -> Optional[Tuple[int, bool]]:
    """
    For the `[` at `text[start]`, the offset just past its closing `]` and
    whether doubled brackets inside it are escapes. None when it never closes.

    Nesting wins unless it closes on the first half of a `]]`; then the
    escaped reading is tried, and plain nesting is the last resort.
    """
    nested = _scan_directive_end(text, start, escapes=False)
    if nested is not None and not text.startswith(']', nested):
        return nested, False
    escaped = _scan_directive_end(text, start, escapes=True)
    if escaped is not None:
        return escaped, True
    if nested is not None:
        return nested, False
    return None


def _is_digit(c: str) -> bool:
    return '0' <= c <= '9'


class Lexer:
    """Single-pass scanner over a directive's source text."""

    def __init__(self, source: str):
        self.source = source
        self.start = 0
        self.current = 0
        self.tokens: List[Token] = []
        self.depth = 0
        span = directive_end(source, 0) if source.startswith('[') else None
        self.escapes = span is not None and span[1]

    def tokenize(self) -> List[Token]:
        while not self._is_at_end():
            self.start = self.current
            self._scan_token()
        self.tokens.append(Token(TokenType.EOF, "", None, self.current))
        return self.tokens

    def _scan_token(self):
        c = self._advance()
        if self.escapes and self.depth > 0 and c in '[]' and self._peek() == c:
            self._advance()
            self._add_token(TokenType.STRING, c)
        elif c in _SINGLE_CHAR_TOKENS:
            if c == '[':
                self.depth += 1
            elif c == ']':
                self.depth -= 1
            self._add_token(_SINGLE_CHAR_TOKENS[c])
        elif c == '.':
            if self._peek() == '.':
                self._advance()
                self._add_token(TokenType.DOTDOT)
            else:
                self._add_token(TokenType.DOT)
        elif c == '"':
            self._string()
        elif c == '#':
            # Comment runs to end of line
            while not self._is_at_end() and self._peek() != '\n':
                self._advance()
        elif c in _WHITESPACE:
            pass
        elif _is_digit(c):
            self._number()
        elif c.isalpha() or c == '_':
            self._identifier()
        else:
            raise LexError(f"Unexpected character '{c}'", self.current - 1)

    def _identifier(self):
        while self._peek().isalnum() or self._peek() == '_':
            self._advance()
        text = self.source[self.start:self.current]
        self._add_token(TokenType.IDENTIFIER, text)

    def _number(self):
        while _is_digit(self._peek()):
            self._advance()
        if self._peek() == '.' and _is_digit(self._peek_next()):
            self._advance()
            while _is_digit(self._peek()):
                self._advance()
        text = self.source[self.start:self.current]
        self._add_token(TokenType.NUMBER, float(text))

    def _string(self):
        while not self._is_at_end() and self._peek() != '"':
            self._advance()
        if self._is_at_end():
            raise LexError("Unterminated string", self.start)
        self._advance()  # closing quote
        self._add_token(TokenType.STRING, self.source[self.start + 1:self.current - 1])

    # --- Cursor helpers ---

    def _is_at_end(self) -> bool:
        return self.current >= len(self.source)

    def _advance(self) -> str:
        c = self.source[self.current]
        self.current += 1
        return c

    def _peek(self) -> str:
        return '\0' if self._is_at_end() else self.source[self.current]

    def _peek_next(self) -> str:
        nxt = self.current + 1
        return '\0' if nxt >= len(self.source) else self.source[nxt]

    def _add_token(self, token_type: TokenType, literal: Optional[Any] = None):
        text = self.source[self.start:self.current]
        self.tokens.append(Token(token_type, text, literal, self.start))


def tokenize(source: str) -> List[Token]:
    """Convenience wrapper: `Lexer(source).tokenize()`."""
    return Lexer(source).tokenize()
