from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


EXTENSION_API_VERSION = 1

EVENTS = ("script_start", "script_end", "before_statement", "after_statement", "on_error")


class SesExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    statement: str
    location: Any  # SourceLocation | None
    frame: str


@dataclass(frozen=True)
class ExtensionFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: Callable[..., Any]
    numeric: bool
    ext_name: str
    doc: str = ""


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, ext_name, name)]
    _step_rules: List[Tuple[int, Callable[[Any, StepContext], None], str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        if event not in EVENTS:
            raise SesExtensionError(f"Unknown event '{event}' (known: {', '.join(EVENTS)})")
        self._events.setdefault(event, []).append((priority, handler, ext_name))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: Callable[[Any, StepContext], None], ext_name: str) -> None:
        if every_n <= 0:
            raise SesExtensionError("every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name))

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler, _ext, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    # functions are registered into interpreter.functions at attach time
    functions: List[ExtensionFunction] = field(default_factory=list)


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    # ---- metadata ----
    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    # ---- functions ----
    def register_function(
        self,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: Callable[..., Any],
        *,
        numeric: bool = False,
        doc: str = "",
    ) -> None:
        namespace, _, function = name.partition(".")
        if not namespace or not function:
            raise SesExtensionError(f"Function name must look like 'namespace.function', got '{name}'")
        self._services.functions.append(
            ExtensionFunction(
                name=name,
                min_args=int(min_args),
                max_args=None if max_args is None else int(max_args),
                impl=impl,
                numeric=numeric,
                ext_name=self._ext_name,
                doc=doc,
            )
        )

    def function(self, name: str, min_args: int, max_args: Optional[int] = None, *, numeric: bool = False, doc: str = ""):
        def deco(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_function(name, min_args, max_args, fn, numeric=numeric, doc=doc)
            return fn

        return deco

    # ---- hooks ----
    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
        return handler

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        if handler is None:
            def deco(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
                self._services.hook_registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.add_step_rule(name=name or handler.__name__, every_n=every_n, handler=handler, ext_name=self._ext_name)
        return handler


def _unique_module_name(path: str) -> str:
    base = os.path.basename(path)
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    safe = "".join(ch if ch.isalnum() else "_" for ch in base)
    return f"ses_ext_{safe}_{digest}"


def load_extension_module(path: str) -> Any:
    if not os.path.exists(path):
        raise SesExtensionError(f"Extension not found: {path}")
    mod_name = _unique_module_name(path)
    spec = importlib.util.spec_from_file_location(mod_name, path)
    if spec is None or spec.loader is None:
        raise SesExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # Let extensions import siblings by temporarily prepending their directory.
    ext_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)  # type: ignore[union-attr]
    finally:
        if sys.path and sys.path[0] == ext_dir:
            sys.path.pop(0)
    return module


def read_extension_list(pointer_file: str) -> List[str]:
    """Paths listed in a ``.sesx`` file, relative to that file."""
    if not os.path.exists(pointer_file):
        raise SesExtensionError(f".sesx file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    out: List[str] = []
    with open(pointer_file, "r", encoding="utf-8") as handle:
        for raw in handle.read().splitlines():
            line = raw.split("#", 1)[0].strip()
            if not line:
                continue
            if not os.path.isabs(line):
                line = os.path.abspath(os.path.join(base_dir, line))
            out.append(line)
    return out


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for p in paths:
        if p.lower().endswith(".sesx"):
            expanded.extend(read_extension_list(p))
        else:
            expanded.append(p)
    return [os.path.abspath(p) for p in expanded]


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in gather_extension_paths(paths):
        module = load_extension_module(path)
        api_version = getattr(module, "SES_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if api_version != EXTENSION_API_VERSION:
            raise SesExtensionError(
                f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
            )
        register = getattr(module, "ses_register", None)
        if register is None or not callable(register):
            raise SesExtensionError(f"Extension {path} must define callable ses_register(ext)")
        ext_name = getattr(module, "SES_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0])
        ext = ExtensionAPI(services=services, ext_name=str(ext_name))
        register(ext)
    return services
