"""
FunctionRegistry: plugin registration, resolution and invocation.

Functions are addressed as ``{plugin_name}.{function_name}``. The registry
is source-agnostic: plugin sources (fnkernel.sources) produce KernelPlugin
values and the registry only ever sees those.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Iterator, Optional

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from fnkernel.functions import coerce_arguments
from fnkernel.protocols import (
    ArgumentError,
    CancelledError,
    DuplicateNameError,
    FunctionExecutionError,
    ToolDefinition,
    UnknownFunctionError,
)
from fnkernel.types import KernelFunction, KernelPlugin

logger = logging.getLogger(__name__)


class FunctionRegistry:
    """Maps qualified names to kernel functions, unique across all plugins."""

    def __init__(self) -> None:
        self._plugins: dict[str, KernelPlugin] = {}
        self._functions: dict[str, KernelFunction] = {}
        self._validators: dict[str, Draft7Validator] = {}

    # ---- Registration ----

    def register(self, plugin: KernelPlugin) -> KernelPlugin:
        """Register every function of a plugin, or none of them.

        Raises:
            DuplicateNameError: If the plugin name or any qualified name
                is already registered. The registry is left unchanged.
        """
        if plugin.name in self._plugins:
            raise DuplicateNameError(f"Plugin '{plugin.name}' is already registered")

        validators: dict[str, Draft7Validator] = {}
        for fn in plugin:
            if fn.qualified_name in self._functions:
                raise DuplicateNameError(f"Function '{fn.qualified_name}' is already registered")
            try:
                Draft7Validator.check_schema(fn.input_schema)
            except SchemaError as e:
                raise ValueError(
                    f"Function '{fn.qualified_name}' has invalid schema: {e.message}"
                ) from e
            validators[fn.qualified_name] = Draft7Validator(fn.input_schema)

        self._plugins[plugin.name] = plugin
        for fn in plugin:
            self._functions[fn.qualified_name] = fn
        self._validators.update(validators)
        logger.debug("Registered plugin %s (%d functions)", plugin.name, len(plugin))
        return plugin

    def unregister(self, plugin_name: str) -> None:
        """Remove a plugin and all of its functions."""
        plugin = self._plugins.pop(plugin_name, None)
        if plugin is None:
            return
        for fn in plugin:
            self._functions.pop(fn.qualified_name, None)
            self._validators.pop(fn.qualified_name, None)

    # ---- Lookup ----

    def resolve(self, qualified_name: str) -> KernelFunction:
        fn = self._functions.get(qualified_name)
        if fn is None:
            raise UnknownFunctionError(qualified_name)
        return fn

    @property
    def plugins(self) -> dict[str, KernelPlugin]:
        return dict(self._plugins)

    @property
    def functions(self) -> list[KernelFunction]:
        return list(self._functions.values())

    def list_for_model(self, function_names: Optional[list[str] | tuple[str, ...]] = None) -> list[ToolDefinition]:
        """Tool descriptors for the backend, in registration order.

        Args:
            function_names: Optional allow-list of qualified names.
        """
        if function_names is None:
            return [fn.to_tool_definition() for fn in self._functions.values()]
        for name in function_names:
            self.resolve(name)
        allowed = set(function_names)
        return [
            fn.to_tool_definition() for fn in self._functions.values() if fn.qualified_name in allowed
        ]

    # ---- Invocation ----

    def coerce(self, function: KernelFunction, arguments: Optional[dict[str, Any]]) -> dict[str, Any]:
        """Coerce and schema-check arguments for ``function``."""
        coerced = coerce_arguments(function, arguments)
        validator = self._validators.get(function.qualified_name)
        if validator is None:
            validator = Draft7Validator(function.input_schema)
        errors = sorted(validator.iter_errors(coerced), key=lambda err: list(err.path))
        if errors:
            first = errors[0]
            path = ".".join(str(part) for part in first.path) or "(root)"
            raise ArgumentError(
                f"{function.qualified_name}: schema validation failed at {path}: {first.message}"
            )
        return coerced

    async def invoke(
        self,
        qualified_name: str,
        arguments: Optional[dict[str, Any]] = None,
        *,
        kernel: Any = None,
    ) -> Any:
        """Resolve, coerce and execute a function.

        Raises:
            UnknownFunctionError: No such function.
            ArgumentError: Arguments do not fit the declared parameters.
            FunctionExecutionError: The capability itself failed.
        """
        function = self.resolve(qualified_name)
        coerced = self.coerce(function, arguments)
        return await self.execute(function, coerced, kernel=kernel)

    async def execute(
        self,
        function: KernelFunction,
        arguments: dict[str, Any],
        *,
        kernel: Any = None,
    ) -> Any:
        """Execute an already-resolved function with coerced arguments."""
        try:
            result = function.invoker(arguments, kernel)
            if inspect.isawaitable(result):
                result = await result
        except (asyncio.CancelledError, CancelledError):
            raise
        except Exception as exc:
            logger.debug("Function %s raised: %s", function.qualified_name, exc, exc_info=True)
            raise FunctionExecutionError(function.qualified_name, str(exc) or type(exc).__name__) from exc
        return result

    def __contains__(self, qualified_name: object) -> bool:
        return qualified_name in self._functions

    def __iter__(self) -> Iterator[KernelFunction]:
        return iter(list(self._functions.values()))

    def __len__(self) -> int:
        return len(self._functions)
