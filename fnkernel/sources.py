"""
Plugin sources: the ways a KernelPlugin can be produced.

Every source implements the PluginSource protocol (``kind`` plus an async
``load()``); the kernel only ever sees the resulting KernelPlugin.

- TypePluginSource: instantiate a class, collect its @kernel_function methods
- ObjectPluginSource: collect @kernel_function methods of an existing object
  (or functions of a module)
- PromptDirectoryPluginSource: one prompt function per template file
- OpenApiPluginSource: one function per already-parsed OpenAPI operation
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from fnkernel.functions import function_from_callable, get_descriptor
from fnkernel.protocols import SourceKind
from fnkernel.templating import create_prompt_function
from fnkernel.types import (
    ExecutionSettings,
    FunctionChoiceBehavior,
    InputVariable,
    KernelFunction,
    KernelParameter,
    KernelPlugin,
    PromptTemplate,
)

logger = logging.getLogger(__name__)

PROMPT_FILE = "skprompt.txt"
CONFIG_FILE = "config.json"

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_]")


def _first_line(doc: Optional[str]) -> str:
    return (inspect.cleandoc(doc).split("\n", 1)[0]) if doc else ""


def _sanitize_name(raw: str) -> str:
    name = _INVALID_NAME_CHARS.sub("_", raw.strip())
    if not name or name[0].isdigit():
        name = f"_{name}"
    return name


def _collect_functions(obj: Any) -> list[KernelFunction]:
    """@kernel_function members of ``obj`` in definition order."""
    if inspect.ismodule(obj):
        namespaces: Iterable[dict] = [vars(obj)]
    else:
        owner = obj if inspect.isclass(obj) else type(obj)
        namespaces = [vars(klass) for klass in reversed(owner.__mro__)]

    seen: dict[str, None] = {}
    for namespace in namespaces:
        for attr in namespace:
            seen.setdefault(attr, None)

    functions = []
    for attr in seen:
        if attr.startswith("__"):
            continue
        member = getattr(obj, attr, None)
        if member is None or not callable(member):
            continue
        if get_descriptor(member) is None:
            continue
        functions.append(function_from_callable(member))
    return functions


def plugin_from_object(
    obj: Any, plugin_name: Optional[str] = None, description: Optional[str] = None
) -> KernelPlugin:
    """Build a plugin from the @kernel_function members of an object or module."""
    if plugin_name is None:
        plugin_name = obj.__name__.rsplit(".", 1)[-1] if inspect.ismodule(obj) else type(obj).__name__
    if description is None:
        description = _first_line(inspect.getdoc(obj))
    functions = _collect_functions(obj)
    if not functions:
        logger.warning("No @kernel_function members found on %r", obj)
    return KernelPlugin.from_functions(plugin_name, functions, description=description)


# =============================================================================
# TYPE / OBJECT
# =============================================================================


class ObjectPluginSource:
    """A plugin from an existing object's @kernel_function methods."""

    kind = SourceKind.OBJECT

    def __init__(self, obj: Any, plugin_name: Optional[str] = None, description: Optional[str] = None):
        self._obj = obj
        if plugin_name is None:
            plugin_name = obj.__name__.rsplit(".", 1)[-1] if inspect.ismodule(obj) else type(obj).__name__
        self.plugin_name = plugin_name
        self._description = description

    async def load(self) -> KernelPlugin:
        return plugin_from_object(self._obj, self.plugin_name, self._description)


class TypePluginSource:
    """A plugin from a class; the instance is created on load."""

    kind = SourceKind.TYPE

    def __init__(
        self,
        cls: type,
        plugin_name: Optional[str] = None,
        description: Optional[str] = None,
        args: tuple = (),
        kwargs: Optional[dict[str, Any]] = None,
    ) -> None:
        if not inspect.isclass(cls):
            raise ValueError(f"TypePluginSource needs a class, got {cls!r}")
        self._cls = cls
        self.plugin_name = plugin_name or cls.__name__
        self._description = description
        self._args = args
        self._kwargs = dict(kwargs or {})

    async def load(self) -> KernelPlugin:
        instance = self._cls(*self._args, **self._kwargs)
        source = ObjectPluginSource(
            instance,
            plugin_name=self.plugin_name,
            description=self._description if self._description is not None else _first_line(self._cls.__doc__),
        )
        return await source.load()


# =============================================================================
# PROMPT DIRECTORY
# =============================================================================


def _settings_from_config(raw: Any) -> Optional[ExecutionSettings]:
    if not raw:
        return None
    if not isinstance(raw, dict):
        raise ValueError("execution_settings must be an object")
    values = dict(raw.get("default", raw))
    choice = values.pop("function_choice", None)
    kwargs: dict[str, Any] = {}
    if choice == "auto":
        kwargs["function_choice"] = FunctionChoiceBehavior.auto()
    elif choice not in (None, "none"):
        raise ValueError(f"Unknown function_choice: {choice}")
    for key in ("timeout", "max_tool_call_rounds", "tool_failure_policy", "temperature", "max_tokens"):
        if key in values:
            kwargs[key] = values.pop(key)
    kwargs["extra"] = values
    return ExecutionSettings(**kwargs)


def _template_from_config(text: str, config: dict[str, Any]) -> PromptTemplate:
    variables = []
    for entry in config.get("input_variables", []):
        if not isinstance(entry, dict) or "name" not in entry:
            raise ValueError("input_variables entries need a 'name'")
        variables.append(
            InputVariable(
                name=entry["name"],
                description=entry.get("description", ""),
                default=entry.get("default"),
                is_required=entry.get("is_required", True),
            )
        )
    return PromptTemplate(
        text=text,
        input_variables=tuple(variables),
        description=config.get("description", ""),
    )


class PromptDirectoryPluginSource:
    """A plugin from a directory of prompt templates.

    Layouts (both may be mixed):
        <dir>/<Function>/skprompt.txt   (+ optional config.json)
        <dir>/<Function>.txt
    """

    kind = SourceKind.PROMPT_DIRECTORY

    def __init__(
        self,
        directory: Union[str, Path],
        plugin_name: Optional[str] = None,
        description: str = "",
    ) -> None:
        self.directory = Path(directory).expanduser()
        self.plugin_name = plugin_name or _sanitize_name(self.directory.name)
        self._description = description

    def _load_sync(self) -> KernelPlugin:
        if not self.directory.is_dir():
            raise FileNotFoundError(f"Prompt directory not found: {self.directory}")

        plugin = KernelPlugin(name=self.plugin_name, description=self._description)
        for entry in sorted(self.directory.iterdir(), key=lambda p: p.name):
            if entry.is_dir():
                prompt_file = entry / PROMPT_FILE
                if not prompt_file.is_file():
                    logger.debug("Skipping %s: no %s", entry, PROMPT_FILE)
                    continue
                text = prompt_file.read_text(encoding="utf-8")
                config: dict[str, Any] = {}
                config_file = entry / CONFIG_FILE
                if config_file.is_file():
                    try:
                        config = json.loads(config_file.read_text(encoding="utf-8"))
                    except json.JSONDecodeError as e:
                        raise ValueError(f"Invalid {config_file}: {e}") from e
                fn = create_prompt_function(
                    _sanitize_name(entry.name),
                    _template_from_config(text, config),
                    settings=_settings_from_config(config.get("execution_settings")),
                )
            elif entry.suffix == ".txt":
                fn = create_prompt_function(
                    _sanitize_name(entry.stem),
                    PromptTemplate(text=entry.read_text(encoding="utf-8")),
                )
            else:
                continue
            plugin.add(fn)
        logger.debug("Loaded %d prompt functions from %s", len(plugin), self.directory)
        return plugin

    async def load(self) -> KernelPlugin:
        return await asyncio.to_thread(self._load_sync)


# =============================================================================
# OPENAPI
# =============================================================================


@dataclass(frozen=True)
class OpenApiOperation:
    """One already-parsed OpenAPI operation. Parsing happens elsewhere."""

    operation_id: str
    method: str
    path: str
    description: str = ""
    parameters: tuple[KernelParameter, ...] = ()
    server_url: str = ""


OperationFetcher = Callable[[str], Union[Iterable[OpenApiOperation], Awaitable[Iterable[OpenApiOperation]]]]
OperationCaller = Callable[[OpenApiOperation, dict[str, Any]], Any]


class OpenApiPluginSource:
    """A plugin whose functions are remote OpenAPI operations.

    Args:
        plugin_name: Name of the resulting plugin.
        uri: Document location, handed to ``fetch``.
        fetch: ``fetch(uri)`` returns the parsed operations (sync or async).
        call: ``call(operation, arguments)`` executes one operation and
            returns its result (sync or async).
    """

    kind = SourceKind.OPENAPI

    def __init__(
        self,
        plugin_name: str,
        uri: str,
        fetch: OperationFetcher,
        call: OperationCaller,
        description: str = "",
    ) -> None:
        self.plugin_name = plugin_name
        self.uri = uri
        self._fetch = fetch
        self._call = call
        self._description = description

    def _function_for(self, operation: OpenApiOperation) -> KernelFunction:
        call = self._call

        async def invoker(arguments: dict[str, Any], kernel: Any) -> Any:
            if inspect.iscoroutinefunction(call):
                return await call(operation, arguments)
            result = await asyncio.to_thread(call, operation, arguments)
            if inspect.isawaitable(result):
                result = await result
            return result

        return KernelFunction(
            plugin_name=self.plugin_name,
            name=_sanitize_name(operation.operation_id),
            description=operation.description or f"{operation.method.upper()} {operation.path}",
            parameters=tuple(operation.parameters),
            invoker=invoker,
        )

    async def load(self) -> KernelPlugin:
        fetched = self._fetch(self.uri)
        if inspect.isawaitable(fetched):
            fetched = await fetched
        operations = list(fetched)
        logger.debug("Fetched %d operations from %s", len(operations), self.uri)
        return KernelPlugin.from_functions(
            self.plugin_name,
            [self._function_for(op) for op in operations],
            description=self._description,
        )
