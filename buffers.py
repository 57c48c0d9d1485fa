from __future__ import annotations
import re
import sys
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from evaluator import EvaluationError
from matcher import Matcher


@dataclass(frozen=True, order=True)
class Position:
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.line}:{self.column}"


START = Position(1, 1)
END_OF_LINE = sys.maxsize

_POSITION_RE = re.compile(r"([-+]?\d+)(?::([-+]?\d+))?$")


@dataclass(frozen=True)
class PositionSpec:
    """``L:C`` address; signed parts are relative to the cursor.

    Line ``0`` is the cursor line, column ``0`` the end of the line and a
    missing column keeps the cursor column.
    """

    line: int
    line_relative: bool
    column: Optional[int]
    column_relative: bool

    @classmethod
    def parse(cls, text: str) -> "PositionSpec":
        match = _POSITION_RE.match(text.strip())
        if match is None:
            raise EvaluationError(f"Invalid position '{text}'")
        line_text, column_text = match.group(1), match.group(2)
        line = int(line_text)
        column = int(column_text) if column_text is not None else None
        return cls(
            line=line,
            line_relative=line_text[0] in "+-" or line == 0,
            column=column,
            column_relative=column_text is not None and column_text[0] in "+-",
        )

    def resolve(self, cursor: Position) -> Position:
        line = cursor.line + self.line if self.line_relative else self.line
        if self.column is None:
            column = cursor.column
        elif self.column_relative:
            column = cursor.column + self.column
        elif self.column == 0:
            column = END_OF_LINE
        else:
            column = self.column
        return Position(line, column)


def is_position(text: str) -> bool:
    return _POSITION_RE.match(text.strip()) is not None


@dataclass
class MatchState:
    found: bool = False
    start: Position = START
    end: Position = START
    hit: str = ""
    groups: Tuple[str, ...] = ()


@dataclass
class LineBuffer:
    name: str
    lines: List[str] = field(default_factory=list)
    cursor: Position = START
    marks: List[Position] = field(default_factory=lambda: [START])
    match: MatchState = field(default_factory=MatchState)
    filename: str = ""

    def clamp(self, position: Position) -> Position:
        if not self.lines:
            return START
        line = min(max(position.line, 1), len(self.lines))
        column = min(max(position.column, 1), len(self.lines[line - 1]) + 1)
        return Position(line, column)

    def end_position(self) -> Position:
        if not self.lines:
            return START
        return Position(len(self.lines), len(self.lines[-1]) + 1)

    def line_text(self, line: int) -> str:
        if 1 <= line <= len(self.lines):
            return self.lines[line - 1]
        return ""

    def move_to(self, position: Position) -> Position:
        self.cursor = self.clamp(position)
        return self.cursor

    def set_lines(self, lines: Iterable[str]) -> None:
        self.lines = list(lines)
        self.cursor = START
        self.match = MatchState()

    def append_lines(self, lines: Iterable[str]) -> None:
        self.lines.extend(lines)

    def selection(self, first: int, last: Optional[int] = None) -> str:
        """Text of line ``first`` or of the lines ``first..last``."""
        if last is None:
            return self.line_text(first)
        return "\n".join(self.lines[max(first, 1) - 1:max(last, 0)])

    # marks

    @property
    def mark(self) -> Position:
        return self.clamp(self.marks[-1])

    def set_mark(self, position: Position) -> None:
        self.marks[-1] = self.clamp(position)

    def push_mark(self, position: Position) -> None:
        self.marks.append(self.clamp(position))

    def pop_mark(self) -> Position:
        position = self.mark
        if len(self.marks) > 1:
            self.marks.pop()
        else:
            self.marks[0] = START
        return position

    def exchange_mark(self) -> None:
        mark = self.mark
        self.marks[-1] = self.clamp(self.cursor)
        self.cursor = mark

    # searching

    def search(self, matcher: Matcher) -> bool:
        pattern = matcher.pattern
        cursor = self.clamp(self.cursor)
        anchor = pattern.anchor
        if anchor == "<":
            origin = START
        elif anchor == ">":
            origin = self.end_position()
        elif anchor == "^":
            origin = Position(cursor.line, 1)
        elif anchor == "$":
            origin = Position(cursor.line, len(self.line_text(cursor.line)) + 1)
        else:
            origin = cursor
        if self.lines:
            if pattern.backwards:
                last = origin.line if pattern.line_scope else 1
                for line in range(origin.line, last - 1, -1):
                    text = self.lines[line - 1]
                    limit = origin.column - 1 if line == origin.line else len(text)
                    found = matcher.find_previous(text, limit)
                    if found is not None:
                        self._record_hit(line, found)
                        self.cursor = self.match.start
                        return True
            else:
                last = origin.line if pattern.line_scope else len(self.lines)
                for line in range(origin.line, last + 1):
                    start = origin.column - 1 if line == origin.line else 0
                    found = matcher.find_next(self.lines[line - 1], start)
                    if found is not None:
                        self._record_hit(line, found)
                        self.cursor = self.match.end
                        return True
        self.match = MatchState(found=False, start=cursor, end=cursor)
        return False

    def _record_hit(self, line: int, found: "re.Match[str]") -> None:
        self.match = MatchState(
            found=True,
            start=Position(line, found.start() + 1),
            end=Position(line, found.end() + 1),
            hit=found.group(0),
            groups=tuple(group or "" for group in found.groups()),
        )

    # editing

    def ordered_range(self, start: Position, end: Position) -> Tuple[Position, Position]:
        start, end = self.clamp(start), self.clamp(end)
        if end < start:
            start, end = end, start
        return start, end

    def extract(self, start: Position, end: Position) -> List[str]:
        """Lines of the half-open character range ``[start, end)``."""
        if not self.lines:
            return []
        start, end = self.ordered_range(start, end)
        first = self.lines[start.line - 1]
        if start.line == end.line:
            return [first[start.column - 1:end.column - 1]]
        middle = self.lines[start.line:end.line - 1]
        last = self.lines[end.line - 1]
        return [first[start.column - 1:]] + middle + [last[:end.column - 1]]

    def delete_range(self, start: Position, end: Position) -> Tuple[Position, Position]:
        if not self.lines:
            return START, START
        start, end = self.ordered_range(start, end)
        head = self.lines[start.line - 1][:start.column - 1]
        tail = self.lines[end.line - 1][end.column - 1:]
        self.lines[start.line - 1:end.line] = [head + tail]
        self.cursor = start
        return start, end

    def insert(self, position: Position, lines: List[str]) -> Position:
        if not lines:
            return self.cursor
        if not self.lines or position.line > len(self.lines):
            self.lines.extend(lines)
            self.cursor = self.end_position()
            return self.cursor
        at = self.clamp(position)
        current = self.lines[at.line - 1]
        head, tail = current[:at.column - 1], current[at.column - 1:]
        if len(lines) == 1:
            self.lines[at.line - 1] = head + lines[0] + tail
            self.cursor = Position(at.line, at.column + len(lines[0]))
            return self.cursor
        replacement = [head + lines[0]] + lines[1:-1] + [lines[-1] + tail]
        self.lines[at.line - 1:at.line] = replacement
        self.cursor = Position(at.line + len(lines) - 1, len(lines[-1]) + 1)
        return self.cursor

    def replace(
        self,
        matcher: Matcher,
        replacement: str,
        start: Position,
        end: Position,
        limit: Optional[int] = None,
        line_filter: Optional[Matcher] = None,
    ) -> int:
        """Substitute inside ``[start, end)``; ``limit`` caps the total.

        With ``line_filter`` only lines it matches are touched.
        """
        if not self.lines:
            return 0
        start, end = self.ordered_range(start, end)
        total = 0
        for line in range(start.line, end.line + 1):
            remaining = None if limit is None else limit - total
            if remaining is not None and remaining <= 0:
                break
            text = self.lines[line - 1]
            if line_filter is not None and not line_filter.matches(text):
                continue
            first = start.column - 1 if line == start.line else 0
            last = end.column - 1 if line == end.line else len(text)
            segment, count = matcher.substitute(text[first:last], replacement, remaining)
            if count:
                self.lines[line - 1] = text[:first] + segment + text[last:]
                total += count
        return total


RESERVED_BUFFERS = ("_main", "_result")


class BufferStore:
    """Named buffers of one run; ``_main`` and ``_result`` always exist."""

    def __init__(self) -> None:
        self._buffers: Dict[str, LineBuffer] = {}
        for name in RESERVED_BUFFERS:
            self.ensure(name)

    def get(self, name: str) -> Optional[LineBuffer]:
        return self._buffers.get(name)

    def ensure(self, name: str) -> LineBuffer:
        buffer = self._buffers.get(name)
        if buffer is None:
            buffer = LineBuffer(name)
            self._buffers[name] = buffer
        return buffer

    def __contains__(self, name: object) -> bool:
        return name in self._buffers

    def names(self) -> List[str]:
        return sorted(self._buffers)
