from __future__ import annotations
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set, Tuple, Union

from evaluator import EvaluationError, is_number, parse_number
from extensions import SesExtensionError
from lexer import Token
from parser import SourceLocation

if TYPE_CHECKING:
    from buffers import LineBuffer
    from interpreter import Interpreter
    from matcher import Matcher


Result = Union[str, int]
FunctionImpl = Callable[["Interpreter", List[Token], SourceLocation], Result]


@dataclass
class BuiltinFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: FunctionImpl
    numeric: bool = False

    def validate(self, supplied: int) -> None:
        if supplied < self.min_args:
            raise EvaluationError(f"{self.name} expects at least {self.min_args} arguments")
        if self.max_args is not None and supplied > self.max_args:
            raise EvaluationError(f"{self.name} expects at most {self.max_args} arguments")


class FunctionRegistry:
    """Dispatch table of ``namespace.function`` built-ins.

    Arguments reach the implementations as raw tokens so that each function
    decides whether it wants text, a buffer or a search pattern.
    """

    def __init__(self) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        self._register("buffer.difference", 2, 2, self._buffer_difference, numeric=True)
        self._register("buffer.join", 1, 2, self._buffer_join)
        self._register("buffer.pop", 1, 1, self._buffer_pop)
        self._register("buffer.shift", 1, 1, self._buffer_shift)
        self._register("buffer.sort", 1, 1, self._buffer_sort, numeric=True)
        self._register("buffer.split", 2, 3, self._buffer_split, numeric=True)
        self._register("math.random", 1, 2, self._math_random, numeric=True)
        self._register("os.basename", 1, 1, self._os_basename)
        self._register("os.cd", 1, 1, self._os_cd)
        self._register("os.changeextension", 2, 2, self._os_changeextension)
        self._register("os.copy", 2, 3, self._os_copy, numeric=True)
        self._register("os.dirname", 1, 1, self._os_dirname)
        self._register("os.exists", 1, 1, self._os_exists, numeric=True)
        self._register("os.isdir", 1, 1, self._os_isdir, numeric=True)
        self._register("os.listfiles", 2, None, self._os_listfiles, numeric=True)
        self._register("os.mkdir", 1, 1, self._os_mkdir, numeric=True)
        self._register("os.popd", 0, 0, self._os_popd, numeric=True)
        self._register("os.pushd", 1, 1, self._os_pushd, numeric=True)
        self._register("os.pwd", 0, 0, self._os_pwd)
        self._register("os.tempname", 0, 2, self._os_tempname)
        self._register("string.index", 2, 3, self._string_index, numeric=True)
        self._register("string.length", 1, 1, self._string_length, numeric=True)
        self._register("string.piece", 2, 3, self._string_piece)
        self._register("string.replace", 3, 5, self._string_replace)
        self._register("string.search", 2, 3, self._string_search)
        self._register("string.substring", 1, None, self._string_substring)

    def _register(
        self,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: FunctionImpl,
        *,
        numeric: bool = False,
    ) -> None:
        self.table[name] = BuiltinFunction(name=name, min_args=min_args, max_args=max_args, impl=impl, numeric=numeric)

    def register_extension_function(
        self,
        *,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: FunctionImpl,
        numeric: bool,
    ) -> None:
        if name in self.table:
            raise SesExtensionError(f"Function '{name}' already defined")
        self._register(name, min_args, max_args, impl, numeric=numeric)

    @property
    def namespaces(self) -> Set[str]:
        return {name.split(".", 1)[0] for name in self.table}

    def invoke(
        self,
        interpreter: "Interpreter",
        name: str,
        args: List[Token],
        location: SourceLocation,
        *,
        numeric: bool = False,
    ) -> Result:
        function = self.table.get(name)
        if function is None:
            raise EvaluationError(f"Unknown function '{name}'")
        if numeric and not function.numeric:
            raise EvaluationError(f"'{name}' is not a numeric function")
        function.validate(len(args))
        return function.impl(interpreter, args, location)

    # argument helpers

    def _text(self, interpreter: "Interpreter", token: Token) -> str:
        return interpreter.text_of(token)

    def _int(self, interpreter: "Interpreter", token: Token, rule: str) -> int:
        text = interpreter.text_of(token)
        if not is_number(text):
            raise EvaluationError(f"{rule} expects a number, got '{text}'")
        return int(parse_number(text))

    def _buffer(self, interpreter: "Interpreter", token: Token, rule: str, *, create: bool = False) -> "LineBuffer":
        if token.type != "BUFFER":
            raise EvaluationError(f"{rule} expects a buffer, got '{token.describe()}'")
        return interpreter.buffer_of(token, create=create)

    def _options(
        self, interpreter: "Interpreter", tokens: List[Token], rule: str, names: Tuple[str, ...]
    ) -> Tuple[Dict[str, str], List[Token]]:
        """Split ``name=value`` and ``name value`` options from positionals."""
        options: Dict[str, str] = {}
        positional: List[Token] = []
        index = 0
        while index < len(tokens):
            token = tokens[index]
            if token.type == "WORD":
                key, eq, value = token.value.partition("=")
                if eq and key in names:
                    options[key] = interpreter.text_of(Token("WORD", value, token.line, token.column))
                    index += 1
                    continue
                if token.value in names:
                    if index + 1 >= len(tokens):
                        raise EvaluationError(f"{rule}: missing value after '{token.value}'")
                    options[token.value] = interpreter.text_of(tokens[index + 1])
                    index += 2
                    continue
            positional.append(token)
            index += 1
        return options, positional

    def _option_int(self, options: Dict[str, str], key: str, rule: str) -> Optional[int]:
        if key not in options:
            return None
        if not is_number(options[key]):
            raise EvaluationError(f"{rule}: '{key}' expects a number, got '{options[key]}'")
        return int(parse_number(options[key]))

    # buffer.*

    def _buffer_difference(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        first = self._buffer(interpreter, args[0], "buffer.difference")
        second = self._buffer(interpreter, args[1], "buffer.difference")
        known = set(second.lines)
        return sum(1 for line in first.lines if line not in known)

    def _buffer_join(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        buffer = self._buffer(interpreter, args[0], "buffer.join")
        separator = self._text(interpreter, args[1]) if len(args) > 1 else ""
        return separator.join(buffer.lines)

    def _buffer_pop(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        buffer = self._buffer(interpreter, args[0], "buffer.pop")
        if not buffer.lines:
            return ""
        line = buffer.lines.pop()
        buffer.move_to(buffer.cursor)
        return line

    def _buffer_shift(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        buffer = self._buffer(interpreter, args[0], "buffer.shift")
        if not buffer.lines:
            return ""
        line = buffer.lines.pop(0)
        buffer.move_to(buffer.cursor)
        return line

    def _buffer_sort(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        buffer = self._buffer(interpreter, args[0], "buffer.sort")
        buffer.lines.sort()
        return len(buffer.lines)

    def _buffer_split(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        buffer = self._buffer(interpreter, args[0], "buffer.split", create=True)
        text = self._text(interpreter, args[1])
        separator = self._text(interpreter, args[2]) if len(args) > 2 else " "
        if not separator:
            raise EvaluationError("buffer.split needs a non-empty separator")
        buffer.set_lines(text.split(separator) if text else [])
        return len(buffer.lines)

    # math.*

    def _math_random(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        upper = self._int(interpreter, args[0], "math.random")
        lower = self._int(interpreter, args[1], "math.random") if len(args) > 1 else 0
        if lower > upper:
            lower, upper = upper, lower
        return int(interpreter.rng.integers(lower, upper, endpoint=True))

    # os.*

    def _os_basename(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        return interpreter.os.basename(self._text(interpreter, args[0]))

    def _os_dirname(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        return interpreter.os.dirname(self._text(interpreter, args[0]))

    def _os_changeextension(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        return interpreter.os.change_extension(self._text(interpreter, args[0]), self._text(interpreter, args[1]))

    def _os_pwd(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        return interpreter.os.pwd()

    def _os_cd(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        previous = interpreter.os.cd(self._text(interpreter, args[0]))
        return "" if previous is None else previous

    def _os_pushd(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        path = self._text(interpreter, args[0])
        if not interpreter.os.pushd(path):
            raise EvaluationError(f"os.pushd: '{path}' is not a directory")
        return 1

    def _os_popd(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        return 1 if interpreter.os.popd() else 0

    def _os_mkdir(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        return 1 if interpreter.os.mkdir(self._text(interpreter, args[0])) else 0

    def _os_isdir(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        return 1 if interpreter.os.isdir(self._text(interpreter, args[0])) else 0

    def _os_exists(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        return 1 if interpreter.os.exists(self._text(interpreter, args[0])) else 0

    def _os_listfiles(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        rule = "os.listfiles"
        buffer = self._buffer(interpreter, args[0], rule, create=True)
        directory = self._text(interpreter, args[1])
        including: Optional["Matcher"] = None
        excluding: Optional["Matcher"] = None
        kinds: List[str] = []
        rest = args[2:]
        index = 0
        while index < len(rest):
            word = rest[index].value if rest[index].type == "WORD" else None
            if word in ("including", "excluding"):
                if index + 1 >= len(rest):
                    raise EvaluationError(f"{rule}: missing pattern after '{word}'")
                matcher = interpreter.matcher_of(rest[index + 1])
                if word == "including":
                    including = matcher
                else:
                    excluding = matcher
                index += 2
                continue
            if word in ("files", "dirs", "links"):
                kinds.append(word)
                index += 1
                continue
            raise EvaluationError(f"{rule}: unexpected argument '{rest[index].describe()}'")
        if not interpreter.os.isdir(directory):
            raise EvaluationError(f"{rule}: '{directory}' is not a directory")
        names = interpreter.os.list_files(
            directory,
            including=including.matches if including else None,
            excluding=excluding.matches if excluding else None,
            kinds=kinds,
        )
        buffer.set_lines(names)
        return len(names)

    def _os_copy(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        source = self._text(interpreter, args[0])
        target = self._text(interpreter, args[1])
        unique = False
        if len(args) > 2:
            if args[2].type != "WORD" or args[2].value != "unique":
                raise EvaluationError(f"os.copy: unexpected argument '{args[2].describe()}'")
            unique = True
        return 0 if interpreter.os.copy(source, target, unique=unique) is None else 1

    def _os_tempname(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        prefix = self._text(interpreter, args[0]) if args else "ses"
        suffix = self._text(interpreter, args[1]) if len(args) > 1 else ""
        return interpreter.os.temp_name(prefix, suffix)

    # string.*

    def _string_length(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        return len(self._text(interpreter, args[0]))

    def _string_index(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> int:
        element = self._text(interpreter, args[0])
        items = self._text(interpreter, args[1])
        separator = self._text(interpreter, args[2]) if len(args) > 2 else " "
        parts = items.split(separator) if separator else [items]
        return parts.index(element) if element in parts else -1

    def _string_piece(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        index = self._int(interpreter, args[0], "string.piece")
        items = self._text(interpreter, args[1])
        separator = self._text(interpreter, args[2]) if len(args) > 2 else " "
        parts = items.split(separator) if separator else [items]
        if 1 <= index <= len(parts):
            return parts[index - 1]
        return ""

    def _string_replace(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        options, positional = self._options(interpreter, args, "string.replace", ("count",))
        if len(positional) != 3:
            raise EvaluationError("string.replace expects text, pattern and replacement")
        text = self._text(interpreter, positional[0])
        matcher = interpreter.matcher_of(positional[1])
        replacement = self._text(interpreter, positional[2])
        result, _count = matcher.substitute(text, replacement, self._option_int(options, "count", "string.replace"))
        return result

    def _string_search(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        text = self._text(interpreter, args[0])
        matcher = interpreter.matcher_of(args[1])
        separator = self._text(interpreter, args[2]) if len(args) > 2 else " "
        found = matcher.find_next(text)
        if found is None:
            return ""
        return separator.join([found.group(0)] + [group or "" for group in found.groups()])

    def _string_substring(self, interpreter: "Interpreter", args: List[Token], location: SourceLocation) -> str:
        rule = "string.substring"
        options, positional = self._options(
            interpreter, args[1:], rule, ("from", "behind", "count", "excluding", "including")
        )
        text = self._text(interpreter, args[0])
        start = 1
        if positional:
            if len(positional) > 1:
                raise EvaluationError(f"{rule}: unexpected argument '{positional[1].describe()}'")
            start = self._int(interpreter, positional[0], rule)
        if "from" in options:
            start = self._option_int(options, "from", rule) or 1
        if "behind" in options:
            start = (self._option_int(options, "behind", rule) or 0) + 1
        start = max(start, 1)
        end: Optional[int] = None
        if "count" in options:
            end = start + max(self._option_int(options, "count", rule) or 0, 0)
        elif "excluding" in options:
            end = self._option_int(options, "excluding", rule)
        elif "including" in options:
            end = (self._option_int(options, "including", rule) or 0) + 1
        if end is None:
            return text[start - 1:]
        return text[start - 1:max(end - 1, start - 1)]
