from __future__ import annotations
import os
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from lexer import OPERATORS, Lexer, SesParseError, SigilProfile, Token


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation


class Statement(Node):
    pass


@dataclass
class Block(Node):
    statements: List[Statement]


@dataclass
class TextExpression:
    parts: List[Token]
    append: bool = False


@dataclass
class NumericExpression:
    text: str


@dataclass
class CallExpression:
    namespace: str
    function: str
    args: List[Token]

    @property
    def name(self) -> str:
        return f"{self.namespace}.{self.function}"


@dataclass
class Condition:
    """``<pattern> [buffer]``, ``<operand>`` or ``<operand> <op> <operand>``."""

    left: Token
    operator: Optional[str] = None
    right: Optional[Token] = None
    buffer: Optional[Token] = None

    @property
    def is_search(self) -> bool:
        return self.left.type == "PATTERN"


@dataclass
class Assignment(Statement):
    target: str
    kind: str  # "plain", "numeric" or "conditional"
    expression: object


@dataclass
class CallStatement(Statement):
    call: CallExpression


@dataclass
class IfStatement(Statement):
    condition: Condition
    then_block: Block
    else_block: Optional[Block]


@dataclass
class WhileStatement(Statement):
    condition: Condition
    block: Block


@dataclass
class LeaveStatement(Statement):
    levels: Optional[Token]
    condition: Optional[Condition]


@dataclass
class StopStatement(Statement):
    message: Optional[Token]


@dataclass
class ExitStatement(Statement):
    code: Optional[Token]
    scope: str


@dataclass
class LogStatement(Statement):
    text: Token


@dataclass
class MoveStatement(Statement):
    target: Token
    buffer: Optional[Token]


@dataclass
class MarkStatement(Statement):
    op: str
    argument: Optional[Token]
    buffer: Optional[Token]


@dataclass
class SelectStatement(Statement):
    op: str  # "set", "push" or "pop"
    buffer: Optional[Token]


@dataclass
class LoadStatement(Statement):
    buffer: Optional[Token]
    path: Token


@dataclass
class StoreStatement(Statement):
    buffer: Optional[Token]
    path: Token
    append: bool


@dataclass
class CopyStatement(Statement):
    source: Token
    buffer: Optional[Token]
    append: bool


@dataclass
class CopyRangeStatement(Statement):
    source: Token
    start: Optional[Token]
    end_mode: Optional[str]
    end: Optional[Token]
    target: Optional[Token]
    append: bool


@dataclass
class InsertStatement(Statement):
    buffer: Optional[Token]
    position: Token
    text: Token


@dataclass
class DeleteStatement(Statement):
    start_mode: str  # "from" or "behind"
    start: Token
    end_mode: str  # "excluding", "including" or "count"
    end: Token
    buffer: Optional[Token]


@dataclass
class ReplaceStatement(Statement):
    pattern: Token
    replacement: Token
    buffer: Optional[Token]
    start_mode: Optional[str]
    start: Optional[Token]
    end_mode: Optional[str]
    end: Optional[Token]
    count: Optional[Token]
    condition: Optional[Condition]


@dataclass
class ScriptDef(Statement):
    name: str
    block: Block


@dataclass
class CallScriptStatement(Statement):
    target: Token
    parameters: Optional[Token]
    arguments: List[Token]


@dataclass
class AssertStatement(Statement):
    names: List[Token]


@dataclass
class Script:
    name: str
    filename: str
    statements: List[Statement]
    subroutines: Dict[str, ScriptDef] = field(default_factory=dict)

    @property
    def directory(self) -> str:
        return os.path.dirname(os.path.abspath(self.filename)) if self.filename else os.getcwd()


BLOCK_CLOSERS = {"else", "endif", "endwhile", "endscript"}
TEXT_TOKENS = {"STRING", "WORD", "HEREDOC", "BUFFER"}
FUNCTION_NAME_RE = re.compile(r"([a-z]\w*)\.([a-z]\w*)$")
_ARITHMETIC_RE = re.compile(r"\s*(?:\d+(?:\.\d+)?|[-+*/:%()])")


class Parser:
    def __init__(
        self,
        tokens: List[Token],
        filename: str,
        source_lines: List[str],
        *,
        script_name: str,
        function_namespaces: Optional[Iterable[str]] = None,
        variable_pattern: Optional["re.Pattern[str]"] = None,
    ):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.script_name = script_name
        self.function_namespaces = (
            set(function_namespaces) if function_namespaces is not None else {"buffer", "math", "os", "string"}
        )
        self.variable_pattern = variable_pattern or re.compile(r"\$\(([_A-Za-z]\w*)\)")
        self.index = 0
        self.loop_depth = 0
        self.in_subroutine = False
        self.subroutines: Dict[str, ScriptDef] = {}
        self._statement_parsers: Dict[str, Callable[[Token], Statement]] = {
            "assert": self._parse_assert,
            "call": self._parse_call,
            "copy": self._parse_copy,
            "delete": self._parse_delete,
            "exit": self._parse_exit,
            "if": self._parse_if,
            "insert": self._parse_insert,
            "leave": self._parse_leave,
            "load": self._parse_load,
            "log": self._parse_log,
            "mark": self._parse_mark,
            "move": self._parse_move,
            "replace": self._parse_replace,
            "script": self._parse_script,
            "select": self._parse_select,
            "stop": self._parse_stop,
            "store": self._parse_store,
            "while": self._parse_while,
        }

    def parse(self) -> Script:
        statements = self._parse_statements(stop_words=())
        return Script(
            name=self.script_name,
            filename=self.filename,
            statements=statements,
            subroutines=self.subroutines,
        )

    def _parse_statements(self, stop_words: Iterable[str]) -> List[Statement]:
        statements: List[Statement] = []
        while True:
            token = self._peek()
            if token.type == "EOF":
                if stop_words:
                    closers = sorted(word for word in stop_words if word != "else")
                    raise self._error(f"Missing {' or '.join(closers)}", token)
                return statements
            if token.type == "NEWLINE":
                self.index += 1
                continue
            keyword = self._keyword(token)
            if keyword in stop_words:
                return statements
            if keyword in BLOCK_CLOSERS:
                raise self._error(f"Unexpected '{keyword}'", token)
            statements.append(self._parse_statement())
            self._expect_line_end()

    def _parse_statement(self) -> Statement:
        token = self._peek()
        if token.type == "IDENT":
            return self._parse_assignment()
        keyword = self._keyword(token)
        if keyword is not None and keyword in self._statement_parsers:
            self.index += 1
            return self._statement_parsers[keyword](token)
        if token.type == "WORD":
            match = FUNCTION_NAME_RE.match(token.value)
            if match is not None and match.group(1) in self.function_namespaces:
                call = self._parse_function_call()
                return CallStatement(location=self._location_from_token(token), call=call)
        raise self._error(f"Unknown statement '{token.describe()}'", token)

    def _parse_assignment(self) -> Assignment:
        ident = self._consume("IDENT")
        operator = self._consume("ASSIGN").value
        location = self._location_from_token(ident)
        kind = {"=": "plain", ":=": "numeric", "?=": "conditional"}[operator]
        if ident.value.startswith("__"):
            raise self._error(f"Cannot assign to read-only variable '{ident.value}'", ident)
        token = self._peek()
        if token.type == "EXPR":
            self.index += 1
            self._check_arithmetic(token)
            return Assignment(location=location, target=ident.value, kind=kind, expression=NumericExpression(token.value))
        if self._is_function_word(token):
            call = self._parse_function_call()
            return Assignment(location=location, target=ident.value, kind=kind, expression=call)
        parts: List[Token] = []
        append = False
        while not self._at_line_end():
            part = self._peek()
            if part.type == "WORD" and part.value == "append":
                append = True
            elif part.type in ("STRING", "WORD", "BUFFER"):
                if part.type == "BUFFER" and part.selector is None:
                    raise self._error("Buffer value needs a line selector (~name:N)", part)
                parts.append(part)
            else:
                raise self._error(f"Unexpected '{part.describe()}' in assignment", part)
            self.index += 1
        return Assignment(location=location, target=ident.value, kind=kind, expression=TextExpression(parts, append))

    def _parse_function_call(self) -> CallExpression:
        name = self._consume("WORD")
        match = FUNCTION_NAME_RE.match(name.value)
        assert match is not None
        args: List[Token] = []
        while not self._at_line_end():
            args.append(self._peek())
            self.index += 1
        return CallExpression(namespace=match.group(1), function=match.group(2), args=args)

    def _parse_if(self, keyword: Token) -> IfStatement:
        condition = self._parse_condition()
        self._expect_line_end()
        then_block = self._parse_block(keyword, {"else", "endif"})
        else_block: Optional[Block] = None
        if self._keyword(self._peek()) == "else":
            else_token = self._advance()
            self._expect_line_end()
            else_block = self._parse_block(else_token, {"endif"})
        self._advance()
        return IfStatement(
            location=self._location_from_token(keyword),
            condition=condition,
            then_block=then_block,
            else_block=else_block,
        )

    def _parse_while(self, keyword: Token) -> WhileStatement:
        condition = self._parse_condition()
        self._expect_line_end()
        self.loop_depth += 1
        try:
            block = self._parse_block(keyword, {"endwhile"})
        finally:
            self.loop_depth -= 1
        self._advance()
        return WhileStatement(location=self._location_from_token(keyword), condition=condition, block=block)

    def _parse_script(self, keyword: Token) -> ScriptDef:
        if self.in_subroutine:
            raise self._error("Nested script definition", keyword)
        name = self._consume("WORD")
        if name.value in self.subroutines:
            raise self._error(f"Script '{name.value}' already defined", name)
        self._expect_line_end()
        saved_depth = self.loop_depth
        self.in_subroutine = True
        self.loop_depth = 0
        try:
            block = self._parse_block(keyword, {"endscript"})
        finally:
            self.in_subroutine = False
            self.loop_depth = saved_depth
        self._advance()
        definition = ScriptDef(location=self._location_from_token(keyword), name=name.value, block=block)
        self.subroutines[name.value] = definition
        return definition

    def _parse_block(self, opener: Token, stop_words: Iterable[str]) -> Block:
        statements = self._parse_statements(stop_words)
        return Block(location=self._location_from_token(opener), statements=statements)

    def _parse_leave(self, keyword: Token) -> LeaveStatement:
        if self.loop_depth == 0:
            raise self._error("'leave' outside of a loop", keyword)
        levels: Optional[Token] = None
        if not self._at_line_end() and self._keyword(self._peek()) != "if":
            levels = self._advance()
        condition = self._parse_condition() if self._match_word("if") else None
        return LeaveStatement(location=self._location_from_token(keyword), levels=levels, condition=condition)

    def _parse_stop(self, keyword: Token) -> StopStatement:
        message = None if self._at_line_end() else self._consume_text()
        return StopStatement(location=self._location_from_token(keyword), message=message)

    def _parse_exit(self, keyword: Token) -> ExitStatement:
        code: Optional[Token] = None
        scope = "local"
        if not self._at_line_end() and self._peek().value not in ("local", "global"):
            code = self._advance()
        matched = self._match_word("local", "global")
        if matched is not None:
            scope = matched
        return ExitStatement(location=self._location_from_token(keyword), code=code, scope=scope)

    def _parse_log(self, keyword: Token) -> LogStatement:
        return LogStatement(location=self._location_from_token(keyword), text=self._consume_text())

    def _parse_move(self, keyword: Token) -> MoveStatement:
        target = self._advance_not_at_end(keyword, "move target")
        if target.type not in ("PATTERN", "WORD", "STRING"):
            raise self._error(f"Unexpected '{target.describe()}' after move", target)
        return MoveStatement(location=self._location_from_token(keyword), target=target, buffer=self._optional_buffer())

    def _parse_mark(self, keyword: Token) -> MarkStatement:
        op_token = self._advance_not_at_end(keyword, "mark operation")
        op = op_token.value
        argument: Optional[Token] = None
        if op in ("set", "push"):
            if not self._at_line_end() and self._peek().type != "BUFFER":
                argument = self._advance()
        elif op in ("save", "restore"):
            argument = self._advance_not_at_end(keyword, "variable name")
        elif op not in ("pop", "exchange"):
            raise self._error(f"Unknown mark operation '{op}'", op_token)
        return MarkStatement(
            location=self._location_from_token(keyword), op=op, argument=argument, buffer=self._optional_buffer()
        )

    def _parse_select(self, keyword: Token) -> SelectStatement:
        op = self._match_word("push", "pop") or "set"
        buffer: Optional[Token] = None
        if op != "pop":
            buffer = self._consume("BUFFER")
        return SelectStatement(location=self._location_from_token(keyword), op=op, buffer=buffer)

    def _parse_load(self, keyword: Token) -> LoadStatement:
        buffer = self._optional_buffer()
        path = self._consume_text()
        if buffer is None:
            buffer = self._optional_buffer()
        return LoadStatement(location=self._location_from_token(keyword), buffer=buffer, path=path)

    def _parse_store(self, keyword: Token) -> StoreStatement:
        buffer = self._optional_buffer()
        path = self._consume_text()
        if buffer is None:
            buffer = self._optional_buffer()
        append = self._match_word("append") is not None
        return StoreStatement(location=self._location_from_token(keyword), buffer=buffer, path=path, append=append)

    def _parse_copy(self, keyword: Token) -> Statement:
        location = self._location_from_token(keyword)
        if self._peek().type == "WORD" and self._peek().value == "from":
            self.index += 1
            source = self._consume("BUFFER")
            start = self._advance() if self._match_word("starting") else None
            end_mode = self._match_word("including", "excluding")
            end = self._advance_not_at_end(keyword, "range end") if end_mode else None
            target = self._consume("BUFFER") if self._match_word("to") else None
            append = self._match_word("append") is not None
            return CopyRangeStatement(
                location=location, source=source, start=start, end_mode=end_mode, end=end, target=target, append=append
            )
        source = self._consume_text()
        buffer = self._optional_buffer()
        append = self._match_word("append") is not None
        return CopyStatement(location=location, source=source, buffer=buffer, append=append)

    def _parse_insert(self, keyword: Token) -> InsertStatement:
        buffer = self._optional_buffer()
        position = self._advance_not_at_end(keyword, "insert position")
        text = self._consume_text()
        return InsertStatement(location=self._location_from_token(keyword), buffer=buffer, position=position, text=text)

    def _parse_delete(self, keyword: Token) -> DeleteStatement:
        start_mode = self._match_word("from", "behind")
        if start_mode is None:
            raise self._error("Expected 'from' or 'behind' after delete", self._peek())
        start = self._advance_not_at_end(keyword, "range start")
        end_mode = self._match_word("excluding", "including", "count")
        if end_mode is None:
            raise self._error("Expected 'excluding', 'including' or 'count' in delete", self._peek())
        end = self._advance_not_at_end(keyword, "range end")
        buffer = self._consume("BUFFER") if self._match_word("in") else self._optional_buffer()
        return DeleteStatement(
            location=self._location_from_token(keyword),
            start_mode=start_mode,
            start=start,
            end_mode=end_mode,
            end=end,
            buffer=buffer,
        )

    def _parse_replace(self, keyword: Token) -> ReplaceStatement:
        pattern = self._consume("PATTERN")
        replacement = self._consume_text()
        buffer = self._optional_buffer()
        start_mode = self._match_word("from", "behind")
        start = self._advance_not_at_end(keyword, "range start") if start_mode else None
        end_mode = self._match_word("excluding", "including")
        end = self._advance_not_at_end(keyword, "range end") if end_mode else None
        count: Optional[Token] = None
        token = self._peek()
        if token.type == "WORD" and token.value.startswith("count="):
            count = Token("WORD", token.value[len("count="):], token.line, token.column)
            self.index += 1
        elif self._match_word("count"):
            count = self._advance_not_at_end(keyword, "count")
        condition = self._parse_condition() if self._match_word("if") else None
        return ReplaceStatement(
            location=self._location_from_token(keyword),
            pattern=pattern,
            replacement=replacement,
            buffer=buffer,
            start_mode=start_mode,
            start=start,
            end_mode=end_mode,
            end=end,
            count=count,
            condition=condition,
        )

    def _parse_call(self, keyword: Token) -> CallScriptStatement:
        target = self._advance_not_at_end(keyword, "script name")
        if target.type not in ("WORD", "STRING"):
            raise self._error(f"Unexpected '{target.describe()}' after call", target)
        parameters = self._optional_buffer()
        arguments: List[Token] = []
        while not self._at_line_end():
            argument = self._advance()
            if argument.type not in ("WORD", "STRING"):
                raise self._error(f"Unexpected '{argument.describe()}' in call arguments", argument)
            arguments.append(argument)
        return CallScriptStatement(
            location=self._location_from_token(keyword), target=target, parameters=parameters, arguments=arguments
        )

    def _parse_assert(self, keyword: Token) -> AssertStatement:
        names: List[Token] = []
        while not self._at_line_end():
            names.append(self._advance())
        if not names:
            raise self._error("'assert' needs at least one name", keyword)
        return AssertStatement(location=self._location_from_token(keyword), names=names)

    def _parse_condition(self) -> Condition:
        if self._at_line_end():
            raise self._error("Missing condition", self._peek())
        left = self._advance()
        if left.type == "PATTERN":
            return Condition(left=left, buffer=self._optional_buffer())
        if left.type not in ("STRING", "WORD"):
            raise self._error(f"Unexpected '{left.describe()}' in condition", left)
        token = self._peek()
        if token.type != "WORD" or token.value not in OPERATORS:
            return Condition(left=left)
        self.index += 1
        right = self._advance_not_at_end(token, "right operand")
        if token.value == "~=":
            if right.type != "PATTERN":
                raise self._error("'~=' needs a search pattern", right)
        elif right.type not in ("STRING", "WORD"):
            raise self._error(f"Unexpected '{right.describe()}' in condition", right)
        return Condition(left=left, operator=token.value, right=right)

    def _check_arithmetic(self, token: Token) -> None:
        text = self.variable_pattern.sub("0", token.value)
        position = 0
        while position < len(text):
            match = _ARITHMETIC_RE.match(text, position)
            if match is None:
                if text[position:].strip():
                    raise self._error(f"Invalid arithmetic expression '{token.value}'", token)
                break
            position = match.end()
        if not text.strip():
            raise self._error("Missing arithmetic expression", token)

    def _consume_text(self) -> Token:
        token = self._peek()
        if token.type not in TEXT_TOKENS:
            raise self._error(f"Expected text but found '{token.describe() or token.type}'", token)
        self.index += 1
        return token

    def _optional_buffer(self) -> Optional[Token]:
        if self._peek().type == "BUFFER":
            return self._advance()
        return None

    def _is_function_word(self, token: Token) -> bool:
        if token.type != "WORD":
            return False
        match = FUNCTION_NAME_RE.match(token.value)
        return match is not None and match.group(1) in self.function_namespaces

    def _keyword(self, token: Token) -> Optional[str]:
        if token.type != "WORD":
            return None
        return token.value.rstrip("!")

    def _match_word(self, *words: str) -> Optional[str]:
        token = self._peek()
        if token.type == "WORD" and token.value in words:
            self.index += 1
            return token.value
        return None

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise self._error(f"Expected token {token_type} but found {token.type}", token)
        self.index += 1
        return token

    def _advance(self) -> Token:
        token = self._peek()
        self.index += 1
        return token

    def _advance_not_at_end(self, anchor: Token, what: str) -> Token:
        if self._at_line_end():
            raise self._error(f"Missing {what}", anchor)
        return self._advance()

    def _at_line_end(self) -> bool:
        return self._peek().type in ("NEWLINE", "EOF")

    def _expect_line_end(self) -> None:
        token = self._peek()
        if token.type == "NEWLINE":
            self.index += 1
        elif token.type != "EOF":
            raise self._error(f"Unexpected '{token.describe()}'", token)

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _error(self, message: str, token: Token) -> SesParseError:
        return SesParseError(f"{message} in script '{self.script_name}' at {self.filename}:{token.line}")

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)


def parse_script(
    text: str,
    filename: str,
    *,
    name: Optional[str] = None,
    profile: Optional[SigilProfile] = None,
    function_namespaces: Optional[Iterable[str]] = None,
) -> Script:
    profile = profile or SigilProfile.DOLLAR
    if name is None:
        name = os.path.splitext(os.path.basename(filename))[0] or filename
    tokens = Lexer(text, filename, profile=profile).tokenize()
    parser = Parser(
        tokens,
        filename,
        text.splitlines(),
        script_name=name,
        function_namespaces=function_namespaces,
        variable_pattern=profile.variable_pattern,
    )
    return parser.parse()
