from __future__ import annotations
import enum
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple


class SesError(Exception):
    """Base class for interpreter errors."""


class SesParseError(SesError):
    """Raised when parsing fails."""


class SigilProfile(enum.Enum):
    """Reference syntax for variables and buffers."""

    DOLLAR = ("$", "~")
    BANG = ("!", "!")

    @property
    def variable_sigil(self) -> str:
        return self.value[0]

    @property
    def buffer_sigil(self) -> str:
        return self.value[1]

    @property
    def variable_pattern(self) -> "re.Pattern[str]":
        return re.compile(re.escape(self.variable_sigil) + r"\(([_A-Za-z]\w*)\)")

    def variable_reference(self, name: str) -> str:
        return f"{self.variable_sigil}({name})"

    def buffer_reference(self, name: str) -> str:
        return f"{self.buffer_sigil}{name}"


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int
    # PATTERN: kind is s/r/m; HEREDOC: kind is "literal" or "interpolate"
    kind: str = ""
    delimiter: str = ""
    flags: str = ""
    selector: Optional[Tuple[int, Optional[int]]] = None
    lines: Optional[List[str]] = None

    def describe(self) -> str:
        if self.type == "STRING":
            return f"{self.delimiter}{self.value}{self.delimiter}"
        if self.type == "PATTERN":
            return f"{self.kind}{self.delimiter}{self.value}{self.delimiter}{self.flags}"
        if self.type == "HEREDOC":
            return f"<<{self.value}"
        return self.value


DELIMITERS = "-+/\\*%$^=?\"',;.|"
PATTERN_KINDS = "srm"
PATTERN_FLAGS = "iLB<>^$"
OPERATORS = {"==", "!=", "<", "<=", ">", ">=", "~=", "-eq", "-ne", "-lt", "-le", "-gt", "-ge"}

ASSIGNMENT_RE = re.compile(r"([A-Za-z_]\w*)\s*(:=|\?=|=)")
PARAMETER_RE = re.compile(r"[A-Za-z_]\w*=")
FUNCTION_RE = re.compile(r"[a-z]\w*\.[a-z]\w*(?=\s|$)")
BUFFER_NAME_RE = re.compile(r"[_A-Za-z]\w*")
SELECTOR_RE = re.compile(r":(\d+)(?:-(\d+))?(?=\s|$)")


class Lexer:
    """Turns script source into a flat token list, one NEWLINE per statement.

    Statements are line oriented: blank lines and ``#`` comment lines vanish,
    heredoc bodies are folded into the HEREDOC token that opened them.
    """

    def __init__(self, text: str, filename: str, *, profile: SigilProfile = SigilProfile.DOLLAR) -> None:
        self.source_lines = text.splitlines()
        self.filename = filename
        self.profile = profile
        self.line_index = 0
        self.text = ""
        self.index = 0
        self.line = 0

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        source_lines = self.source_lines
        while self.line_index < len(source_lines):
            raw = source_lines[self.line_index]
            self.line = self.line_index + 1
            self.line_index += 1
            stripped = raw.strip()
            if not stripped or stripped.startswith("#"):
                continue
            self.text = raw
            self.index = 0
            self._tokenize_statement(tokens)
            tokens.append(Token("NEWLINE", "\n", self.line, len(raw) + 1))
        tokens.append(Token("EOF", "", len(source_lines) + 1, 1))
        return tokens

    def _tokenize_statement(self, tokens: List[Token]) -> None:
        self._skip_whitespace()
        match = ASSIGNMENT_RE.match(self.text, self.index)
        if match is not None:
            tokens.append(Token("IDENT", match.group(1), self.line, self.index + 1))
            tokens.append(Token("ASSIGN", match.group(2), self.line, match.start(2) + 1))
            self.index = match.end()
            if match.group(2) == ":=":
                self._skip_whitespace()
                if FUNCTION_RE.match(self.text, self.index) is None:
                    # arithmetic is evaluated after interpolation, keep it raw
                    tokens.append(Token("EXPR", self.text[self.index:].strip(), self.line, self.index + 1))
                    self.index = len(self.text)
                    return
        self._tokenize_operands(tokens)

    def _tokenize_operands(self, tokens: List[Token]) -> None:
        text = self.text
        n = len(text)
        tokens_append = tokens.append
        profile = self.profile
        while self.index < n:
            ch = text[self.index]
            if ch in " \t\r":
                self.index += 1
                continue
            if text.startswith("<<", self.index):
                tokens_append(self._consume_heredoc())
                continue
            if text.startswith(profile.variable_sigil + "(", self.index):
                tokens_append(self._consume_word())
                continue
            if ch == profile.buffer_sigil and BUFFER_NAME_RE.match(text, self.index + 1):
                tokens_append(self._consume_buffer())
                continue
            if PARAMETER_RE.match(text, self.index):
                tokens_append(self._consume_word())
                continue
            if ch in PATTERN_KINDS:
                pattern = self._try_pattern()
                if pattern is not None:
                    tokens_append(pattern)
                    continue
            word = self._peek_word()
            if word in OPERATORS:
                tokens_append(self._consume_word())
                continue
            if ch in "+-" and self.index + 1 < n and text[self.index + 1].isdigit():
                tokens_append(self._consume_word())
                continue
            if ch in DELIMITERS:
                tokens_append(self._consume_string())
                continue
            tokens_append(self._consume_word())

    def _consume_word(self) -> Token:
        column = self.index + 1
        word = self._peek_word()
        self.index += len(word)
        return Token("WORD", word, self.line, column)

    def _peek_word(self) -> str:
        text = self.text
        end = self.index
        while end < len(text) and text[end] not in " \t\r":
            end += 1
        return text[self.index:end]

    def _consume_string(self) -> Token:
        column = self.index + 1
        delimiter = self.text[self.index]
        closing = self.text.find(delimiter, self.index + 1)
        if closing < 0:
            raise SesParseError(
                f"Unterminated string literal at {self.filename}:{self.line}:{column}"
            )
        value = self.text[self.index + 1:closing]
        self.index = closing + 1
        return Token("STRING", value, self.line, column, delimiter=delimiter)

    def _consume_buffer(self) -> Token:
        column = self.index + 1
        match = BUFFER_NAME_RE.match(self.text, self.index + 1)
        assert match is not None
        self.index = match.end()
        selector: Optional[Tuple[int, Optional[int]]] = None
        selected = SELECTOR_RE.match(self.text, self.index)
        if selected is not None:
            last = int(selected.group(2)) if selected.group(2) is not None else None
            selector = (int(selected.group(1)), last)
            self.index = selected.end()
        return Token("BUFFER", match.group(0), self.line, column, selector=selector)

    def _try_pattern(self) -> Optional[Token]:
        text = self.text
        start = self.index
        if start + 1 >= len(text) or text[start + 1] not in DELIMITERS:
            return None
        delimiter = text[start + 1]
        closing = text.find(delimiter, start + 2)
        if closing < 0:
            return None
        end = closing + 1
        while end < len(text) and text[end] in PATTERN_FLAGS:
            end += 1
        if end < len(text) and text[end] not in " \t\r":
            return None
        self.index = end
        return Token(
            "PATTERN",
            text[start + 2:closing],
            self.line,
            start + 1,
            kind=text[start],
            delimiter=delimiter,
            flags=text[closing + 1:end],
        )

    def _consume_heredoc(self) -> Token:
        column = self.index + 1
        self.index += 2
        text = self.text
        literal = False
        if self.index < len(text) and text[self.index] in "'\"":
            quote = text[self.index]
            closing = text.find(quote, self.index + 1)
            if closing < 0:
                raise SesParseError(f"Malformed heredoc tag at {self.filename}:{self.line}:{column}")
            tag = text[self.index + 1:closing]
            self.index = closing + 1
            literal = True
        else:
            tag = self._peek_word()
            self.index += len(tag)
        if not tag:
            raise SesParseError(f"Malformed heredoc tag at {self.filename}:{self.line}:{column}")
        body: List[str] = []
        while self.line_index < len(self.source_lines):
            candidate = self.source_lines[self.line_index]
            self.line_index += 1
            if candidate.strip() == tag:
                return Token(
                    "HEREDOC",
                    tag,
                    self.line,
                    column,
                    kind="literal" if literal else "interpolate",
                    lines=body,
                )
            body.append(candidate)
        raise SesParseError(
            f"Unterminated heredoc '{tag}' started at {self.filename}:{self.line}:{column}"
        )

    def _skip_whitespace(self) -> None:
        while self.index < len(self.text) and self.text[self.index] in " \t\r":
            self.index += 1
