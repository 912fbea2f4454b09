"""Extension hooks for the pipa VM.

An extension is a Python file defining ``pipa_register(ext)``. Through the
``ExtensionAPI`` it receives it can:

* listen to run events: ``program_start(vm, program)``, ``program_end(vm)``
  and ``on_error(vm, error)``;
* listen to template events: ``macro_call(vm, MacroCallEvent)`` fires once a
  macro's pattern has been rendered and before its body runs, and
  ``array_iter(vm, ArrayIterEvent)`` fires before the first item of an array
  is bound;
* run a step rule every N executed instructions;
* filter text on its way to the output sink (captured text is not filtered).

``.pipax`` files list extension paths, one per line.
"""

from __future__ import annotations

import hashlib
import importlib.util
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple


EXTENSION_API_VERSION = 1

EVENTS = ("program_start", "program_end", "on_error", "macro_call", "array_iter")

POINTER_SUFFIX = ".pipax"
REGISTER_FUNCTION = "pipa_register"


class PipaExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    opcode: str
    span: Any  # Span | None
    frame_id: Optional[str]


@dataclass(frozen=True)
class MacroCallEvent:
    name: str
    block: int
    span: Any
    pattern: str  # the rendered pattern, bound to `_` in the body


@dataclass(frozen=True)
class ArrayIterEvent:
    array: str
    items: Tuple[str, ...]
    span: Any


StepRule = Callable[[Any, StepContext], None]
OutputFilter = Callable[[Any, str], str]


class _Hook(NamedTuple):
    priority: int
    handler: Callable[..., Any]
    owner: str


class HookRegistry:
    """Event listeners, step rules and output filters for one set of extensions."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[_Hook]] = {event: [] for event in EVENTS}
        self._step_rules: List[Tuple[int, StepRule, str]] = []
        self._filters: List[_Hook] = []

    @staticmethod
    def _insert(hooks: List[_Hook], hook: _Hook) -> None:
        # Higher priority first; equal priorities keep registration order.
        position = len(hooks)
        while position > 0 and hooks[position - 1].priority < hook.priority:
            position -= 1
        hooks.insert(position, hook)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int = 0, owner: str = "") -> None:
        if event not in self._listeners:
            raise PipaExtensionError(f"Unknown event '{event}' (expected one of: {', '.join(EVENTS)})")
        self._insert(self._listeners[event], _Hook(priority, handler, owner))

    def listens_to(self, event: str) -> bool:
        return bool(self._listeners.get(event))

    def emit(self, event: str, *args: Any) -> None:
        for hook in self._listeners.get(event, ()):
            hook.handler(*args)

    def add_step_rule(self, every_n: int, handler: StepRule, *, owner: str = "") -> None:
        if every_n < 1:
            raise PipaExtensionError(f"every_n_steps must be >= 1, got {every_n}")
        self._step_rules.append((every_n, handler, owner))

    @property
    def has_step_rules(self) -> bool:
        return bool(self._step_rules)

    def after_step(self, vm: Any, ctx: StepContext) -> None:
        for every_n, handler, _owner in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(vm, ctx)

    def add_output_filter(self, handler: OutputFilter, *, priority: int = 0, owner: str = "") -> None:
        self._insert(self._filters, _Hook(priority, handler, owner))

    @property
    def has_output_filters(self) -> bool:
        return bool(self._filters)

    def filter_output(self, vm: Any, text: str) -> str:
        for hook in self._filters:
            text = hook.handler(vm, text)
            if not isinstance(text, str):
                raise PipaExtensionError(
                    f"output filter from '{hook.owner}' returned {type(text).__name__}, expected str"
                )
        return text


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


def _register_or_decorate(handler: Optional[Callable[..., Any]], register: Callable[[Callable[..., Any]], None]):
    if handler is not None:
        register(handler)
        return handler

    def deco(fn: Callable[..., Any]) -> Callable[..., Any]:
        register(fn)
        return fn

    return deco


class ExtensionAPI:
    """What ``pipa_register`` receives. Every hook method also works as a decorator."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    @property
    def name(self) -> str:
        return self._ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        registry = self._services.hook_registry
        return _register_or_decorate(
            handler, lambda fn: registry.on_event(event, fn, priority=priority, owner=self._ext_name)
        )

    def every_n_steps(self, every_n: int, handler: Optional[StepRule] = None):
        registry = self._services.hook_registry
        return _register_or_decorate(handler, lambda fn: registry.add_step_rule(every_n, fn, owner=self._ext_name))

    def output_filter(self, handler: Optional[OutputFilter] = None, *, priority: int = 0):
        registry = self._services.hook_registry
        return _register_or_decorate(
            handler, lambda fn: registry.add_output_filter(fn, priority=priority, owner=self._ext_name)
        )


def read_pointer_file(pointer_file: str) -> List[str]:
    """Extension paths listed in a ``.pipax`` file, relative to the file itself."""
    try:
        with open(pointer_file, "r", encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except OSError as exc:
        raise PipaExtensionError(f"Cannot read extension list {pointer_file}: {exc}") from None
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    paths: List[str] = []
    for raw in lines:
        entry = raw.partition("#")[0].strip()
        if entry:
            paths.append(os.path.normpath(os.path.join(base_dir, entry)))
    return paths


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    gathered: List[str] = []
    for path in paths:
        if path.lower().endswith(POINTER_SUFFIX):
            gathered.extend(read_pointer_file(path))
        else:
            gathered.append(os.path.abspath(path))
    return gathered


def _import_extension(path: str) -> Any:
    if not os.path.isfile(path):
        raise PipaExtensionError(f"Extension not found: {path}")
    stem = os.path.splitext(os.path.basename(path))[0]
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    module_name = "pipa_ext_" + "".join(ch if ch.isalnum() else "_" for ch in stem) + "_" + digest
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise PipaExtensionError(f"Cannot import extension {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise PipaExtensionError(f"Extension {path} failed to import: {exc}") from exc
    return module


def _register_extension(services: RuntimeServices, path: str, module: Any) -> None:
    api_version = getattr(module, "PIPA_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise PipaExtensionError(f"Extension {path} targets API {api_version}, this pipa provides {EXTENSION_API_VERSION}")
    register = getattr(module, REGISTER_FUNCTION, None)
    if not callable(register):
        raise PipaExtensionError(f"Extension {path} has no {REGISTER_FUNCTION}(ext) function")
    name = str(getattr(module, "PIPA_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
    try:
        register(ExtensionAPI(services=services, ext_name=name))
    except PipaExtensionError:
        raise
    except Exception as exc:
        raise PipaExtensionError(f"Extension {path} failed to register: {exc}") from exc


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in gather_extension_paths(paths):
        _register_extension(services, path, _import_extension(path))
    return services
