from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from evaluator import EvaluationError


_BACKREFERENCE_RE = re.compile(r"\$(\d)")


def glob_to_regex(glob: str) -> str:
    """Translate ``*``, ``?`` and ``[...]`` into an unanchored regex."""
    parts = []
    index = 0
    while index < len(glob):
        ch = glob[index]
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        elif ch == "[":
            closing = glob.find("]", index + 2)
            if closing < 0:
                parts.append(re.escape(ch))
            else:
                body = glob[index + 1:closing]
                if body.startswith("!"):
                    body = "^" + body[1:]
                parts.append(f"[{body}]")
                index = closing
        else:
            parts.append(re.escape(ch))
        index += 1
    return "".join(parts)


@dataclass(frozen=True)
class SearchPattern:
    """A ``s/../``, ``r/../`` or ``m/../`` pattern with its flags."""

    kind: str
    body: str
    flags: str = ""

    @property
    def ignore_case(self) -> bool:
        return "i" in self.flags

    @property
    def line_scope(self) -> bool:
        return "L" in self.flags

    @property
    def backwards(self) -> bool:
        return "B" in self.flags

    @property
    def anchor(self) -> Optional[str]:
        for flag in self.flags:
            if flag in "<>^$":
                return flag
        return None

    def regex(self) -> str:
        if self.kind == "s":
            return re.escape(self.body)
        if self.kind == "m":
            return glob_to_regex(self.body)
        return self.body

    def __str__(self) -> str:
        return f"{self.kind}/{self.body}/{self.flags}"


class Matcher:
    """Compiled pattern with the search and substitution primitives."""

    def __init__(self, pattern: SearchPattern) -> None:
        self.pattern = pattern
        try:
            self.compiled = re.compile(pattern.regex(), re.IGNORECASE if pattern.ignore_case else 0)
        except re.error as exc:
            raise EvaluationError(f"Invalid pattern '{pattern}': {exc}") from exc

    def find_next(self, text: str, start: int = 0) -> Optional["re.Match[str]"]:
        return self.compiled.search(text, start)

    def find_previous(self, text: str, end: Optional[int] = None) -> Optional["re.Match[str]"]:
        limit = len(text) if end is None else max(0, min(end, len(text)))
        # right to left, so overlapping candidates are not skipped
        for position in range(limit, -1, -1):
            match = self.compiled.match(text, position, limit)
            if match is not None:
                return match
        return None

    def expand(self, match: "re.Match[str]", replacement: str) -> str:
        """Substitute ``$0``..``$9``; references to missing groups stay literal."""

        def group(ref: "re.Match[str]") -> str:
            number = int(ref.group(1))
            if number > (match.re.groups or 0):
                return ref.group(0)
            return match.group(number) or ""

        return _BACKREFERENCE_RE.sub(group, replacement)

    def substitute(self, text: str, replacement: str, limit: Optional[int] = None) -> Tuple[str, int]:
        if limit is not None and limit <= 0:
            return text, 0
        return self.compiled.subn(lambda match: self.expand(match, replacement), text, count=limit or 0)

    def matches(self, text: str) -> bool:
        return self.compiled.search(text) is not None
