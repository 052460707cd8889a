from __future__ import annotations

import hashlib
import importlib.util
import os
import re
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional, Sequence


EXTENSION_API_VERSION = 1

EVENTS = (
    "program_start",
    "before_instruction",
    "after_instruction",
    "on_error",
    "program_end",
)

# Handlers receive the interpreter first, then the event payload.
Handler = Callable[..., None]
# Step rules receive the interpreter and the StepRecord just logged.
StepHandler = Callable[[Any, Any], None]


class ASMExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class Hook:
    priority: int
    handler: Handler
    ext_name: str


@dataclass(frozen=True)
class StepRule:
    every_n: int
    handler: StepHandler
    ext_name: str
    name: str


class HookRegistry:
    """Event handlers and every-N-steps rules installed by extensions.

    Handlers for one event run highest priority first; equal priorities keep
    registration order.
    """

    def __init__(self) -> None:
        self.hooks: Dict[str, List[Hook]] = {event: [] for event in EVENTS}
        self.step_rules: List[StepRule] = []

    def on_event(self, event: str, handler: Handler, *, priority: int = 0, ext_name: str = "") -> None:
        hooks = self.hooks.get(event)
        if hooks is None:
            raise ASMExtensionError(f"Unknown event '{event}'")
        hooks.append(Hook(priority, handler, ext_name))
        hooks.sort(key=lambda hook: hook.priority, reverse=True)

    def has_handlers(self, event: str) -> bool:
        return bool(self.hooks.get(event))

    def emit(self, event: str, *args: Any) -> None:
        for hook in self.hooks[event]:
            hook.handler(*args)

    def add_step_rule(self, every_n: int, handler: StepHandler, *, ext_name: str = "", name: str = "") -> None:
        if every_n < 1:
            raise ASMExtensionError(f"every_n_steps must be >= 1, got {every_n}")
        self.step_rules.append(StepRule(every_n, handler, ext_name, name or getattr(handler, "__name__", "rule")))

    def run_step_rules(self, interpreter: Any, record: Any) -> None:
        step = record.step
        for rule in self.step_rules:
            if step % rule.every_n == 0:
                rule.handler(interpreter, record)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    """Handle passed to an extension's ``regasm_register(ext)``.

    ``on_event`` and ``every_n_steps`` register immediately when given a
    handler and otherwise return a decorator.
    """

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self.services = services
        self.name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self.services.metadata.append(ExtensionMetadata(name, version, requires_api))

    def on_event(self, event: str, handler: Optional[Handler] = None, *, priority: int = 0):
        registry = self.services.hook_registry

        def bind(fn: Handler) -> Handler:
            registry.on_event(event, fn, priority=priority, ext_name=self.name)
            return fn

        return bind if handler is None else bind(handler)

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        registry = self.services.hook_registry

        def bind(fn: StepHandler) -> StepHandler:
            registry.add_step_rule(every_n, fn, ext_name=self.name, name=name)
            return fn

        return bind if handler is None else bind(handler)


def _module_name(path: str) -> str:
    stem = re.sub(r"\W", "_", os.path.splitext(os.path.basename(path))[0])
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:10]
    return f"regasm_ext_{stem}_{digest}"


def load_extension_module(path: str) -> ModuleType:
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise ASMExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_module_name(path), path)
    if spec is None or spec.loader is None:
        raise ASMExtensionError(f"Cannot import extension: {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise ASMExtensionError(f"Extension {path} failed to import: {exc}") from exc
    return module


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def register_extension(services: RuntimeServices, module: ModuleType, *, origin: str) -> None:
    api_version = getattr(module, "REGASM_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise ASMExtensionError(
            f"Extension {origin} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
        )
    register = getattr(module, "regasm_register", None)
    if not callable(register):
        raise ASMExtensionError(f"Extension {origin} must define callable regasm_register(ext)")
    ext_name = getattr(module, "REGASM_EXTENSION_NAME", os.path.splitext(os.path.basename(origin))[0])
    register(ExtensionAPI(services=services, ext_name=str(ext_name)))


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in paths:
        register_extension(services, load_extension_module(path), origin=os.path.abspath(path))
    return services
