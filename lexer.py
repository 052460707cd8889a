from __future__ import annotations
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Tuple

if TYPE_CHECKING:
    from parser import SourceLocation


class ASMError(Exception):
    """Base class for interpreter errors."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional["SourceLocation"] = None,
        rewrite_rule: Optional[str] = None,
        token: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rewrite_rule = rewrite_rule
        self.token = token


class ASMParseError(ASMError):
    """Raised when parsing fails."""


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


@dataclass
class SourceLine:
    line: int
    statement: str
    tokens: List[Token] = field(default_factory=list)


COMMENT = ";"
QUOTE = "'"
MSG_MNEMONIC = "msg"
WHITESPACE = " \t\r\f\v"


class Lexer:
    def __init__(self, text: str, filename: str = "<string>") -> None:
        self.text = text
        self.filename = filename

    def tokenize(self) -> List[SourceLine]:
        lines: List[SourceLine] = []
        lines_append = lines.append
        for number, raw in enumerate(self.text.split("\n"), start=1):
            cut = raw.find(COMMENT)
            code = raw if cut == -1 else raw[:cut]
            statement = code.strip(WHITESPACE)
            if not statement:
                continue
            lines_append(self._tokenize_line(number, code, statement))
        return lines

    def _tokenize_line(self, number: int, code: str, statement: str) -> SourceLine:
        source_line = SourceLine(line=number, statement=statement)
        tokens_append = source_line.tokens.append
        first, first_col, rest_index = self._next_word(code, 0)
        assert first is not None
        # A lone ':' is not a label; it falls through to mnemonic lookup.
        if len(first) > 1 and first.endswith(":"):
            tokens_append(Token("LABEL", first[:-1], number, first_col))
            return source_line
        tokens_append(Token("MNEMONIC", first, number, first_col))
        if first == MSG_MNEMONIC:
            for token in self._split_message_args(number, code, rest_index):
                tokens_append(token)
            return source_line
        index = rest_index
        while True:
            word, col, index = self._next_word(code, index)
            if word is None:
                break
            if word.endswith(","):
                word = word[:-1]
            tokens_append(Token("ARG", word, number, col))
        return source_line

    def _next_word(self, code: str, index: int) -> Tuple[Optional[str], int, int]:
        n = len(code)
        while index < n and code[index] in WHITESPACE:
            index += 1
        if index >= n:
            return None, 0, index
        start = index
        while index < n and code[index] not in WHITESPACE:
            index += 1
        return code[start:index], start + 1, index

    def _split_message_args(self, number: int, code: str, index: int) -> List[Token]:
        tokens: List[Token] = []
        chars: List[str] = []
        start_col = 0
        in_quote = False
        text = code.rstrip(WHITESPACE)
        n = len(text)
        while index < n:
            ch = text[index]
            index += 1
            if ch == " " and not chars:
                continue
            if ch == QUOTE:
                in_quote = not in_quote
            elif ch == "," and not in_quote:
                tokens.append(Token("ARG", "".join(chars), number, start_col or index))
                chars = []
                start_col = 0
                continue
            if not chars:
                start_col = index
            chars.append(ch)
        if chars:
            tokens.append(Token("ARG", "".join(chars), number, start_col))
        return tokens
