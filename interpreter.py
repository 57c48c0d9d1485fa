from __future__ import annotations
import datetime
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TextIO, Tuple, Type

import numpy as np

from buffers import END_OF_LINE, START, BufferStore, LineBuffer, Position, PositionSpec, is_position
from evaluator import EvaluationError, Interpolator, compare, evaluate_arithmetic, format_number, truthy
from extensions import HookRegistry, RuntimeServices, StepContext, build_default_services
from functions import FunctionRegistry
from hostos import OsPrimitives, TextFiles
from lexer import SesError, SigilProfile, Token
from matcher import Matcher, SearchPattern
from parser import (
    AssertStatement,
    Assignment,
    CallExpression,
    CallScriptStatement,
    CallStatement,
    Condition,
    CopyRangeStatement,
    CopyStatement,
    DeleteStatement,
    ExitStatement,
    IfStatement,
    InsertStatement,
    LeaveStatement,
    LoadStatement,
    LogStatement,
    MarkStatement,
    MoveStatement,
    NumericExpression,
    ReplaceStatement,
    Script,
    ScriptDef,
    SelectStatement,
    SourceLocation,
    Statement,
    StopStatement,
    StoreStatement,
    TextExpression,
    WhileStatement,
    parse_script,
)


DEFAULT_RECURSION_LIMIT = 100
TRACE_VALUE_WIDTH = 80
# Python frames reserved per script call level, block nesting included
PYTHON_FRAMES_PER_CALL = 64


class SesRuntimeError(SesError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None

    def __str__(self) -> str:
        if self.location is None:
            return self.message
        return f"{self.message} ({self.location.file}:{self.location.line})"


class SesRecursionError(SesRuntimeError):
    """Raised when nested calls exceed the configured depth."""


class LeaveSignal(Exception):
    def __init__(self, count: int) -> None:
        super().__init__(count)
        self.count = count


class ExitSignal(Exception):
    def __init__(self, code: Optional[int], scope: str) -> None:
        super().__init__(code)
        self.code = code
        self.scope = scope


class StopSignal(Exception):
    def __init__(self, message: str, location: Optional[SourceLocation] = None) -> None:
        super().__init__(message)
        self.message = message
        self.location = location


@dataclass
class Scope:
    values: Dict[str, str] = field(default_factory=dict)

    def get(self, name: str) -> Optional[str]:
        return self.values.get(name)

    def set(self, name: str, value: str) -> None:
        self.values[name] = value

    def has(self, name: str) -> bool:
        return name in self.values

    def snapshot(self) -> Dict[str, str]:
        def _render(value: str) -> str:
            if len(value) > TRACE_VALUE_WIDTH:
                return value[:TRACE_VALUE_WIDTH - 3] + "..."
            return value

        return {k: _render(v) for k, v in self.values.items()}


@dataclass
class Frame:
    name: str
    scope: Scope
    script: Script
    frame_id: str
    call_location: Optional[SourceLocation]
    selection: List[str] = field(default_factory=lambda: ["_main"])
    loop_depth: int = 0


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, Any]]
    rule: str


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        rule: str,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=location.statement if location else None,
            env_snapshot=env_snapshot,
            rule=rule,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)


def build_function_registry(services: RuntimeServices) -> FunctionRegistry:
    registry = FunctionRegistry()
    # Extension functions are appended but cannot replace built-ins.
    for function in services.functions:
        registry.register_extension_function(
            name=function.name,
            min_args=function.min_args,
            max_args=function.max_args,
            impl=function.impl,
            numeric=function.numeric,
        )
    return registry


class Interpreter:
    """Executes one parsed script against a buffer store.

    Variables are plain strings. Names starting with ``_`` live in
    ``global_variables`` and are shared by every frame of the run, names
    starting with ``__`` are computed from the selected buffer.
    """

    def __init__(
        self,
        script: Script,
        *,
        logger: Optional[logging.Logger] = None,
        profile: SigilProfile = SigilProfile.DOLLAR,
        buffers: Optional[BufferStore] = None,
        variables: Optional[Dict[str, str]] = None,
        global_variables: Optional[Dict[str, str]] = None,
        scripts: Optional[Dict[str, Script]] = None,
        script_cache: Optional[Dict[str, Script]] = None,
        services: Optional[RuntimeServices] = None,
        functions: Optional[FunctionRegistry] = None,
        trace: Optional[TextIO] = None,
        recursion_limit: int = DEFAULT_RECURSION_LIMIT,
        rng: Optional[np.random.Generator] = None,
        files: Optional[TextFiles] = None,
        os_primitives: Optional[OsPrimitives] = None,
        verbose: bool = False,
    ) -> None:
        self.script = script
        self.logger = logger or logging.getLogger("sesknife")
        self.profile = profile
        self.buffers = buffers or BufferStore()
        self.variables = dict(variables or {})
        self.global_variables: Dict[str, str] = global_variables if global_variables is not None else {}
        self.scripts = scripts or {}
        self.script_cache: Dict[str, Script] = script_cache if script_cache is not None else {}
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.functions = functions or build_function_registry(self.services)
        self.trace = trace
        self.recursion_limit = recursion_limit
        self.rng = rng or np.random.default_rng()
        self.files = files or TextFiles()
        self.os = os_primitives or OsPrimitives()
        self.verbose = verbose
        self.interpolator = Interpolator(profile.variable_pattern, self.lookup)
        self.state_log = StateLogger(verbose=verbose)
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self._matchers: Dict[Tuple[str, str, str], Matcher] = {}
        self._handlers: Dict[Type[Statement], Callable[[Any], None]] = {
            Assignment: self._execute_assignment,
            AssertStatement: self._execute_assert,
            CallScriptStatement: self._execute_call_script,
            CallStatement: self._execute_call,
            CopyRangeStatement: self._execute_copy_range,
            CopyStatement: self._execute_copy,
            DeleteStatement: self._execute_delete,
            ExitStatement: self._execute_exit,
            IfStatement: self._execute_if,
            InsertStatement: self._execute_insert,
            LeaveStatement: self._execute_leave,
            LoadStatement: self._execute_load,
            LogStatement: self._execute_log,
            MarkStatement: self._execute_mark,
            MoveStatement: self._execute_move,
            ReplaceStatement: self._execute_replace,
            SelectStatement: self._execute_select,
            StopStatement: self._execute_stop,
            StoreStatement: self._execute_store,
            WhileStatement: self._execute_while,
        }
        self._intrinsics: Dict[str, Callable[[LineBuffer], str]] = {
            "__line": lambda b: str(b.clamp(b.cursor).line),
            "__column": lambda b: str(b.clamp(b.cursor).column),
            "__lines": lambda b: str(len(b.lines)),
            "__position": lambda b: str(b.clamp(b.cursor)),
            "__mark": lambda b: str(b.mark),
            "__start": lambda b: str(b.match.start),
            "__end": lambda b: str(b.match.end),
            "__hit": lambda b: b.match.hit,
            "__length": lambda b: str(len(b.match.hit)),
            "__buffer": lambda b: b.name,
            "__file": lambda b: b.filename,
            "__date": lambda b: datetime.datetime.now().strftime("%Y.%m.%d"),
            "__time": lambda b: datetime.datetime.now().strftime("%H:%M:%S"),
        }

    # ---- entry point ----

    def run(self) -> int:
        """Execute the script; returns the exit code of the run."""
        previous_limit = sys.getrecursionlimit()
        sys.setrecursionlimit(previous_limit + self.recursion_limit * PYTHON_FRAMES_PER_CALL)
        try:
            return self._run_root()
        finally:
            sys.setrecursionlimit(previous_limit)

    def _run_root(self) -> int:
        root = self._new_frame(self.script.name, Scope(), self.script, None)
        self.call_stack.append(root)
        for name, value in self.variables.items():
            self._bind(root, name, value)
        self._emit_event("script_start", self, self.script)
        try:
            self._execute_block(self.script.statements)
        except ExitSignal as signal:
            code = signal.code or 0
        except StopSignal:
            raise
        except SesRuntimeError as error:
            self._emit_event("on_error", self, error)
            if self.state_log.entries and error.step_index is None:
                error.step_index = self.state_log.entries[-1].step_index
            raise
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            loc = None
            if self.state_log.entries:
                loc = self.state_log.entries[-1].source_location
            wrapped = SesRuntimeError(f"Internal interpreter error: {exc}", location=loc, rule="internal")
            if self.state_log.entries:
                wrapped.step_index = self.state_log.entries[-1].step_index
            raise wrapped from exc
        else:
            code = 0
        self._emit_event("script_end", self, code)
        self.call_stack.pop()
        return code

    @property
    def frame(self) -> Frame:
        return self.call_stack[-1]

    # ---- statements ----

    def _execute_block(self, statements: List[Statement]) -> None:
        emit_event = self._emit_event
        execute_stmt = self._execute_statement
        for statement in statements:
            if isinstance(statement, ScriptDef):
                continue
            emit_event("before_statement", self, statement)
            execute_stmt(statement)
            emit_event("after_statement", self, statement)

    def _execute_statement(self, statement: Statement) -> None:
        rule = statement.__class__.__name__
        self._log_step(rule=rule, location=statement.location)
        self._trace_line(f"{self.frame.name}-{statement.location.line:03d}: {statement.location.statement}")
        handler = self._handlers[type(statement)]
        try:
            handler(statement)
        except EvaluationError as exc:
            raise SesRuntimeError(exc.args[0], location=statement.location, rule=rule) from exc
        except OSError as exc:
            raise SesRuntimeError(f"I/O error: {exc}", location=statement.location, rule=rule) from exc

    def _execute_assignment(self, statement: Assignment) -> None:
        target = statement.target
        if statement.kind == "conditional" and self.is_bound(target):
            self._trace_detail(f"{target} kept")
            return
        expression = statement.expression
        if isinstance(expression, NumericExpression):
            value = format_number(evaluate_arithmetic(self.interpolate(expression.text)))
        elif isinstance(expression, CallExpression):
            result = self.functions.invoke(
                self, expression.name, expression.args, statement.location, numeric=statement.kind == "numeric"
            )
            value = format_number(result) if isinstance(result, int) else result
        else:
            assert isinstance(expression, TextExpression)
            value = "".join(self.text_of(part) for part in expression.parts)
            if expression.append:
                value = (self.lookup_quiet(target) or "") + value
        self.assign(target, value)
        self._trace_detail(f"{target} -> {value[:TRACE_VALUE_WIDTH]}")

    def _execute_call(self, statement: CallStatement) -> None:
        call = statement.call
        result = self.functions.invoke(self, call.name, call.args, statement.location)
        self._trace_detail(f"-> {result}")

    def _execute_if(self, statement: IfStatement) -> None:
        if self.condition(statement.condition):
            self._execute_block(statement.then_block.statements)
        elif statement.else_block is not None:
            self._execute_block(statement.else_block.statements)

    def _execute_while(self, statement: WhileStatement) -> None:
        frame = self.frame
        frame.loop_depth += 1
        try:
            while self.condition(statement.condition):
                try:
                    self._execute_block(statement.block.statements)
                except LeaveSignal as signal:
                    if signal.count > 1:
                        signal.count -= 1
                        raise
                    return
        finally:
            frame.loop_depth -= 1

    def _execute_leave(self, statement: LeaveStatement) -> None:
        if statement.condition is not None and not self.condition(statement.condition):
            return
        levels = self._int_of(statement.levels, "leave") if statement.levels is not None else 1
        if levels < 1:
            raise EvaluationError(f"'leave' needs a positive count, got {levels}")
        # more levels than enclosing loops leaves all of them
        raise LeaveSignal(min(levels, self.frame.loop_depth))

    def _execute_stop(self, statement: StopStatement) -> None:
        message = self.text_of(statement.message) if statement.message is not None else "stopped"
        raise StopSignal(message, statement.location)

    def _execute_exit(self, statement: ExitStatement) -> None:
        code = self._int_of(statement.code, "exit") if statement.code is not None else None
        raise ExitSignal(code, statement.scope)

    def _execute_log(self, statement: LogStatement) -> None:
        for line in self.lines_of(statement.text):
            self.logger.info(line)

    def _execute_move(self, statement: MoveStatement) -> None:
        buffer = self.target_buffer(statement.buffer)
        target = statement.target
        if target.type == "PATTERN":
            found = buffer.search(self.matcher_of(target))
            self._trace_detail(f"-> {buffer.cursor}" if found else "-> no hit")
            return
        buffer.move_to(self.position_of(target, buffer))
        self._trace_detail(f"-> {buffer.cursor}")

    def _execute_mark(self, statement: MarkStatement) -> None:
        buffer = self.target_buffer(statement.buffer)
        op = statement.op
        if op in ("set", "push"):
            position = self._mark_position(statement.argument, buffer)
            if op == "set":
                buffer.set_mark(position)
            else:
                buffer.push_mark(position)
        elif op == "pop":
            buffer.pop_mark()
        elif op == "exchange":
            buffer.exchange_mark()
        elif op == "save":
            assert statement.argument is not None
            self.assign(self._variable_name(statement.argument), str(buffer.clamp(buffer.cursor)))
        else:
            assert statement.argument is not None
            name = self._variable_name(statement.argument)
            saved = self.lookup(name)
            if saved is None:
                raise EvaluationError(f"Variable '{name}' used before definition")
            if not is_position(saved):
                raise EvaluationError(f"Variable '{name}' does not hold a position: '{saved}'")
            buffer.move_to(PositionSpec.parse(saved).resolve(buffer.cursor))
        self._trace_detail(f"-> cursor {buffer.cursor} mark {buffer.mark}")

    def _mark_position(self, argument: Optional[Token], buffer: LineBuffer) -> Position:
        if argument is None or (argument.type == "WORD" and argument.value in ("pos", "position")):
            return buffer.cursor
        if argument.type == "WORD" and argument.value == "search":
            return buffer.match.start
        return self.position_of(argument, buffer)

    def _execute_select(self, statement: SelectStatement) -> None:
        selection = self.frame.selection
        if statement.op == "pop":
            if len(selection) <= 1:
                raise EvaluationError("'select pop' without a matching 'select push'")
            selection.pop()
        else:
            assert statement.buffer is not None
            buffer = self.buffer_of(statement.buffer)
            if statement.op == "push":
                selection.append(buffer.name)
            else:
                selection[-1] = buffer.name
        self._trace_detail(f"-> {self.profile.buffer_reference(selection[-1])}")

    def _execute_load(self, statement: LoadStatement) -> None:
        path = self.text_of(statement.path)
        if not self.files.exists(path):
            raise EvaluationError(f"File '{path}' does not exist")
        lines = self.files.read_lines(path)
        buffer = self.target_buffer(statement.buffer, create=True)
        buffer.set_lines(lines)
        buffer.filename = path
        self.logger.debug("%s: %d lines read into %s", path, len(lines), buffer.name)
        self._trace_detail(f"{path}: {len(lines)} lines read")

    def _execute_store(self, statement: StoreStatement) -> None:
        path = self.text_of(statement.path)
        buffer = self.target_buffer(statement.buffer)
        self.files.write_lines(path, buffer.lines, append=statement.append)
        self.logger.debug("%s: %d lines written from %s", path, len(buffer.lines), buffer.name)
        self._trace_detail(f"{path}: {len(buffer.lines)} lines written")

    def _execute_copy(self, statement: CopyStatement) -> None:
        lines = self.lines_of(statement.source)
        buffer = self.target_buffer(statement.buffer, create=True)
        if statement.append:
            buffer.append_lines(lines)
        else:
            buffer.set_lines(lines)
        self._trace_detail(f"{buffer.name}: {len(buffer.lines)} lines")

    def _execute_copy_range(self, statement: CopyRangeStatement) -> None:
        source = self.buffer_of(statement.source)
        start = self.position_of(statement.start, source) if statement.start is not None else START
        if statement.end is None:
            end = source.end_position()
        else:
            end = source.clamp(self.position_of(statement.end, source))
            if statement.end_mode == "including":
                end = Position(end.line, end.column + 1)
        lines = source.extract(start, end)
        target = self.target_buffer(statement.target, create=True)
        if statement.append:
            target.append_lines(lines)
        else:
            target.set_lines(lines)
        self._trace_detail(f"{target.name}: {len(lines)} lines copied")

    def _execute_insert(self, statement: InsertStatement) -> None:
        buffer = self.target_buffer(statement.buffer)
        position = self.position_of(statement.position, buffer)
        lines = self.lines_of(statement.text)
        if statement.text.type in ("HEREDOC", "BUFFER"):
            # whole lines keep their line break
            lines = lines + [""]
        buffer.insert(position, lines)
        self._trace_detail(f"-> {buffer.cursor}")

    def _execute_delete(self, statement: DeleteStatement) -> None:
        buffer = self.target_buffer(statement.buffer)
        start = buffer.clamp(self.position_of(statement.start, buffer))
        if statement.start_mode == "behind":
            start = Position(start.line, start.column + 1)
        if statement.end_mode == "count":
            end = Position(start.line, start.column + max(self._int_of(statement.end, "delete"), 0))
        else:
            end = buffer.clamp(self.position_of(statement.end, buffer))
            if statement.end_mode == "including":
                end = Position(end.line, end.column - 1)
        first, last = buffer.delete_range(start, end)
        self._trace_detail(f"deleting {first} - {last}")

    def _execute_replace(self, statement: ReplaceStatement) -> None:
        buffer = self.target_buffer(statement.buffer)
        matcher = self.matcher_of(statement.pattern)
        line_filter: Optional[Matcher] = None
        if statement.condition is not None:
            if statement.condition.is_search:
                line_filter = self.matcher_of(statement.condition.left)
            elif not self.condition(statement.condition, default_buffer=buffer):
                self._trace_detail("-> 0 replacement(s)")
                return
        replacement = self.text_of(statement.replacement)
        limit = self._int_of(statement.count, "replace") if statement.count is not None else None
        if statement.start_mode is not None or statement.end_mode is not None:
            start = START
            if statement.start is not None:
                start = buffer.clamp(self.position_of(statement.start, buffer))
                if statement.start_mode == "behind":
                    start = Position(start.line, start.column + 1)
            end = buffer.end_position()
            if statement.end is not None:
                end = buffer.clamp(self.position_of(statement.end, buffer))
                if statement.end_mode == "including":
                    end = Position(end.line, end.column - 1)
        elif matcher.pattern.line_scope:
            line = buffer.clamp(buffer.cursor).line
            start, end = Position(line, 1), Position(line, END_OF_LINE)
        else:
            start, end = START, buffer.end_position()
        count = buffer.replace(matcher, replacement, start, end, limit, line_filter)
        self._trace_detail(f"-> {count} replacement(s)")

    def _execute_call_script(self, statement: CallScriptStatement) -> None:
        parameters: Dict[str, str] = {}
        if statement.parameters is not None:
            for line in self.buffer_of(statement.parameters).lines:
                if not line.strip():
                    continue
                self._split_parameter(line, parameters)
        for argument in statement.arguments:
            self._split_parameter(self.text_of(argument), parameters)
        target = statement.target
        if target.type == "WORD":
            name = self.interpolate(target.value)
            definition = self.frame.script.subroutines.get(name)
            if definition is not None:
                self._invoke(name, self.frame.script, definition.block.statements, parameters, statement.location)
                return
            loaded = self.scripts.get(name)
            if loaded is not None:
                self._invoke(loaded.name, loaded, loaded.statements, parameters, statement.location)
                return
        path = self.text_of(target)
        resolved = self._resolve_script_path(path)
        if resolved is None:
            raise EvaluationError(f"Script '{path}' not found")
        script = self._load_script_file(resolved)
        self._invoke(script.name, script, script.statements, parameters, statement.location)

    def _execute_assert(self, statement: AssertStatement) -> None:
        missing: List[str] = []
        for token in statement.names:
            if token.type == "BUFFER":
                if token.value not in self.buffers:
                    missing.append(f"buffer {self.profile.buffer_reference(token.value)}")
                continue
            name = self._variable_name(token)
            if not self.is_bound(name):
                missing.append(f"variable {name}")
        if missing:
            raise EvaluationError(f"Assertion failed, missing {', '.join(missing)}")

    # ---- calls ----

    def _invoke(
        self,
        name: str,
        script: Script,
        statements: List[Statement],
        parameters: Dict[str, str],
        call_location: SourceLocation,
    ) -> None:
        if len(self.call_stack) >= self.recursion_limit:
            raise SesRecursionError(
                f"Call depth exceeds {self.recursion_limit} frames calling '{name}'",
                location=call_location,
                rule="call",
            )
        self.buffers.ensure("_result").set_lines([])
        frame = self._new_frame(name, Scope(), script, call_location)
        for key, value in parameters.items():
            self._bind(frame, key, value)
        self.call_stack.append(frame)
        self.logger.debug("calling %s with %d parameter(s)", name, len(parameters))
        try:
            self._execute_block(statements)
        except ExitSignal as signal:
            if signal.scope == "global":
                raise
            if signal.code is not None:
                self.global_variables["_rc"] = str(signal.code)
        self.call_stack.pop()

    def _split_parameter(self, text: str, parameters: Dict[str, str]) -> None:
        key, eq, value = text.partition("=")
        if not eq or not key.strip():
            raise EvaluationError(f"Parameter '{text}' is not of the form name=value")
        parameters[key.strip()] = value

    def _resolve_script_path(self, path: str) -> Optional[str]:
        bases = [os.getcwd(), self.frame.script.directory]
        for candidate in (path, path + ".ses"):
            if os.path.isabs(candidate):
                if os.path.isfile(candidate):
                    return candidate
                continue
            for base in bases:
                full = os.path.join(base, candidate)
                if os.path.isfile(full):
                    return os.path.abspath(full)
        return None

    def _load_script_file(self, path: str) -> Script:
        key = os.path.abspath(path)
        script = self.script_cache.get(key)
        if script is None:
            text = "\n".join(self.files.read_lines(key))
            script = parse_script(
                text,
                key,
                profile=self.profile,
                function_namespaces=self.functions.namespaces,
            )
            self.script_cache[key] = script
        return script

    # ---- values ----

    def lookup(self, name: str) -> Optional[str]:
        if name.startswith("__"):
            intrinsic = self._intrinsics.get(name)
            if intrinsic is None:
                raise EvaluationError(f"Unknown reserved variable '{name}'")
            return intrinsic(self.selected_buffer())
        if name.startswith("_"):
            return self.global_variables.get(name)
        return self.frame.scope.get(name)

    def lookup_quiet(self, name: str) -> Optional[str]:
        if name.startswith("__") and name not in self._intrinsics:
            return None
        return self.lookup(name)

    def is_bound(self, name: str) -> bool:
        return self.lookup_quiet(name) is not None

    def assign(self, name: str, value: str) -> None:
        self._bind(self.frame, name, value)

    def _bind(self, frame: Frame, name: str, value: str) -> None:
        if name.startswith("__"):
            raise EvaluationError(f"Cannot modify read-only variable '{name}'")
        if name.startswith("_"):
            self.global_variables[name] = value
        else:
            frame.scope.set(name, value)

    def interpolate(self, text: str) -> str:
        return self.interpolator.expand(text)

    def _variable_name(self, token: Token) -> str:
        match = self.profile.variable_pattern.fullmatch(token.value)
        return match.group(1) if match else token.value

    def text_of(self, token: Token) -> str:
        if token.type in ("STRING", "WORD"):
            return self.interpolate(token.value)
        if token.type == "HEREDOC":
            return "\n".join(self.lines_of(token))
        if token.type == "BUFFER":
            buffer = self.buffer_of(token)
            if token.selector is not None:
                return buffer.selection(*token.selector)
            return "\n".join(buffer.lines)
        raise EvaluationError(f"Expected text but found '{token.describe()}'")

    def lines_of(self, token: Token) -> List[str]:
        if token.type == "HEREDOC":
            body = token.lines or []
            if token.kind == "literal":
                return list(body)
            return [self.interpolate(line) for line in body]
        if token.type == "BUFFER" and token.selector is None:
            return list(self.buffer_of(token).lines)
        return self.text_of(token).split("\n")

    def _int_of(self, token: Token, rule: str) -> int:
        text = self.text_of(token).strip()
        try:
            return int(text)
        except ValueError:
            raise EvaluationError(f"{rule} expects an integer, got '{text}'")

    def buffer_of(self, token: Token, *, create: bool = False) -> LineBuffer:
        if token.type != "BUFFER":
            raise EvaluationError(f"Expected a buffer but found '{token.describe()}'")
        if create:
            return self.buffers.ensure(token.value)
        buffer = self.buffers.get(token.value)
        if buffer is None:
            raise EvaluationError(f"Unknown buffer '{self.profile.buffer_reference(token.value)}'")
        return buffer

    def selected_buffer(self) -> LineBuffer:
        return self.buffers.ensure(self.frame.selection[-1])

    def target_buffer(self, token: Optional[Token], *, create: bool = False) -> LineBuffer:
        if token is None:
            return self.selected_buffer()
        return self.buffer_of(token, create=create)

    def position_of(self, token: Token, buffer: LineBuffer) -> Position:
        return PositionSpec.parse(self.text_of(token)).resolve(buffer.clamp(buffer.cursor))

    def matcher_of(self, token: Token) -> Matcher:
        if token.type == "PATTERN":
            key = (token.kind, self.interpolate(token.value), token.flags)
        elif token.type in ("STRING", "WORD"):
            key = ("r", self.text_of(token), "")
        else:
            raise EvaluationError(f"Expected a search pattern but found '{token.describe()}'")
        matcher = self._matchers.get(key)
        if matcher is None:
            matcher = Matcher(SearchPattern(*key))
            self._matchers[key] = matcher
        return matcher

    def condition(self, condition: Condition, *, default_buffer: Optional[LineBuffer] = None) -> bool:
        left = condition.left
        if condition.is_search:
            if condition.buffer is not None:
                buffer = self.buffer_of(condition.buffer)
            else:
                buffer = default_buffer or self.selected_buffer()
            found = buffer.search(self.matcher_of(left))
            self._trace_detail(f"{buffer.name}: {'hit ' + str(buffer.match.start) if found else 'no hit'}")
            return found
        left_text = self.text_of(left)
        if condition.operator is None:
            return truthy(left_text, quoted=left.type == "STRING")
        assert condition.right is not None
        if condition.operator == "~=":
            return self.matcher_of(condition.right).matches(left_text)
        return compare(condition.operator, left_text, self.text_of(condition.right))

    # ---- bookkeeping ----

    def _new_frame(
        self, name: str, scope: Scope, script: Script, call_location: Optional[SourceLocation]
    ) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, scope=scope, script=script, frame_id=frame_id, call_location=call_location)

    def _trace_line(self, text: str) -> None:
        if self.trace is not None:
            self.trace.write(text + "\n")

    def _trace_detail(self, text: str) -> None:
        if self.trace is not None:
            self.trace.write(f"  {text}\n")

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except SesRuntimeError:
            raise
        except Exception as exc:
            loc = None
            if self.state_log.entries:
                loc = self.state_log.entries[-1].source_location
            raise SesRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                location=loc,
                rule="EXT",
            )

    def _log_step(self, *, rule: str, location: Optional[SourceLocation]) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        env_snapshot = frame.scope.snapshot() if (self.verbose and frame) else None
        entry = self.state_log.record(frame=frame, location=location, rule=rule, env_snapshot=env_snapshot)

        # Run extension step rules (every N steps) after recording.
        try:
            self.hook_registry.after_step(
                self,
                StepContext(
                    step_index=entry.step_index,
                    statement=entry.statement or "",
                    location=location,
                    frame=frame.name if frame else "",
                ),
            )
        except SesRuntimeError:
            raise
        except Exception as exc:
            raise SesRuntimeError(
                f"Extension step rule failed: {exc}",
                location=location,
                rule="EXT",
            )


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            entry = self.interpreter.state_log.last_entry_for_frame(frame.frame_id)
            location = entry.source_location if entry else frame.call_location
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=location,
                    statement=entry.statement if entry else None,
                    state_entry=entry,
                )
            )
        return frames

    def format_text(self, error: SesRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.location:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}")
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.env_snapshot is not None:
                    snapshot = ", ".join(f"{k}={v}" for k, v in frame.state_entry.env_snapshot.items())
                    lines.append(f"    Scope: {snapshot}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (statement: {rule})")
        return "\n".join(lines)

    def to_json(self, error: SesRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "statement": frame.location.statement,
                }
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                entry["rule"] = frame.state_entry.rule
                if frame.state_entry.env_snapshot is not None:
                    entry["scope"] = frame.state_entry.env_snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
