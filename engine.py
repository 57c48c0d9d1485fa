"""Host-facing facade: load scripts, define variables, run."""
from __future__ import annotations
import logging
import sys
from typing import Dict, List, Optional, TextIO, Union

import numpy as np

from buffers import BufferStore, LineBuffer
from extensions import RuntimeServices, build_default_services
from functions import FunctionRegistry
from hostos import OsPrimitives, TextFiles
from interpreter import (
    DEFAULT_RECURSION_LIMIT,
    ExitSignal,
    Interpreter,
    SesRuntimeError,
    StopSignal,
    TracebackFormatter,
    build_function_registry,
)
from lexer import SesError, SigilProfile
from parser import Script, parse_script


TraceTarget = Union[str, TextIO, None]


class SearchEngine:
    """Owns named scripts and runs one of them against fresh buffers.

    The engine keeps no process-wide state: the logger, the sigil profile
    and the random generator are per instance.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        *,
        profile: SigilProfile = SigilProfile.DOLLAR,
        recursion_limit: int = DEFAULT_RECURSION_LIMIT,
        seed: Optional[int] = None,
        services: Optional[RuntimeServices] = None,
        verbose: bool = False,
    ) -> None:
        self.logger = logger or logging.getLogger("sesknife")
        self.profile = profile
        self.recursion_limit = recursion_limit
        self.services = services or build_default_services()
        self.functions: FunctionRegistry = build_function_registry(self.services)
        self.rng = np.random.default_rng(seed)
        self.files = TextFiles()
        self.os = OsPrimitives()
        self.verbose = verbose
        self.scripts: Dict[str, Script] = {}
        self.script_cache: Dict[str, Script] = {}
        self.selected: Optional[str] = None
        self.variables: Dict[str, str] = {}
        self.trace: Optional[TextIO] = None
        self._owns_trace = False
        self.buffers = BufferStore()
        self.last_error: Optional[SesRuntimeError] = None
        self.last_interpreter: Optional[Interpreter] = None

    # ---- scripts ----

    def load_script(self, name: str, path: str) -> Script:
        with open(path, "r", encoding="utf-8") as handle:
            text = handle.read()
        return self.load_script_text(name, text, path)

    def load_script_text(self, name: str, text: str, filename: str = "<string>") -> Script:
        script = parse_script(
            text,
            filename,
            name=name,
            profile=self.profile,
            function_namespaces=self.functions.namespaces,
        )
        self.scripts[name] = script
        if self.selected is None:
            self.selected = name
        self.logger.debug("script %s loaded from %s", name, filename)
        return script

    def select_script(self, name: str) -> None:
        if name not in self.scripts:
            raise SesError(f"Unknown script '{name}'")
        self.selected = name

    def define_variable(self, name: str, value: str) -> None:
        match = self.profile.variable_pattern.fullmatch(name)
        if match is not None:
            name = match.group(1)
        if name.startswith("__"):
            raise SesError(f"Cannot define read-only variable '{name}'")
        self.variables[name] = value

    # ---- tracing ----

    def set_trace(self, target: TraceTarget) -> None:
        """``"-"`` traces to stderr, a string names a file, ``None`` disables."""
        self._close_trace()
        if target is None:
            return
        if target == "-":
            self.trace = sys.stderr
        elif isinstance(target, str):
            self.trace = open(target, "w", encoding="utf-8")
            self._owns_trace = True
        else:
            self.trace = target

    def _close_trace(self) -> None:
        if self._owns_trace and self.trace is not None:
            self.trace.close()
        self.trace = None
        self._owns_trace = False

    def close(self) -> None:
        self._close_trace()

    # ---- running ----

    def test_and_run(self, name: Optional[str] = None, *, input_file: Optional[str] = None) -> int:
        """Run a script; 0 on success, the exit code, or 1 after stop or an error."""
        if name is not None:
            self.select_script(name)
        if self.selected is None:
            raise SesError("No script loaded")
        script = self.scripts[self.selected]
        self.buffers = BufferStore()
        self.last_error = None
        local_variables: Dict[str, str] = {}
        global_variables: Dict[str, str] = {}
        for key, value in self.variables.items():
            if key.startswith("_"):
                global_variables[key] = value
            else:
                local_variables[key] = value
        interpreter = Interpreter(
            script,
            logger=self.logger,
            profile=self.profile,
            buffers=self.buffers,
            variables=local_variables,
            global_variables=global_variables,
            scripts=self.scripts,
            script_cache=self.script_cache,
            services=self.services,
            functions=self.functions,
            trace=self.trace,
            recursion_limit=self.recursion_limit,
            rng=self.rng,
            files=self.files,
            os_primitives=self.os,
            verbose=self.verbose,
        )
        self.last_interpreter = interpreter
        if input_file is not None:
            main = self.buffers.ensure("_main")
            main.set_lines(self.files.read_lines(input_file))
            main.filename = input_file
        try:
            code = interpreter.run()
        except StopSignal as signal:
            where = f"{signal.location.file}:{signal.location.line}: " if signal.location else ""
            self.logger.error("%s%s", where, signal.message)
            return 1
        except ExitSignal as signal:
            return signal.code or 0
        except SesRuntimeError as error:
            self.last_error = error
            if error.location is not None:
                self.logger.error("%s:%d: %s", error.location.file, error.location.line, error.message)
            else:
                self.logger.error("%s", error.message)
            return 1
        finally:
            if self.trace is not None:
                self.trace.flush()
        return code

    def buffer(self, name: str) -> Optional[LineBuffer]:
        return self.buffers.get(name)

    def buffer_lines(self, name: str) -> List[str]:
        buffer = self.buffers.get(name)
        return list(buffer.lines) if buffer is not None else []

    def format_traceback(self, *, as_json: bool = False) -> str:
        if self.last_error is None or self.last_interpreter is None:
            return ""
        formatter = TracebackFormatter(self.last_interpreter)
        if as_json:
            return formatter.to_json(self.last_error)
        return formatter.format_text(self.last_error, verbose=self.verbose)
