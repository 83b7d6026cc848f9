"""
Kernel function construction and argument coercion.

Capabilities declare an explicit descriptor with ``@kernel_function``:
name, description and (optionally) a parameter list. Parameters that are
not declared are derived from the signature, so plain annotated methods
need no extra ceremony.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
import typing
from dataclasses import dataclass
from typing import Any, Callable, Optional

from fnkernel.protocols import ArgumentError
from fnkernel.types import KernelFunction, KernelParameter

logger = logging.getLogger(__name__)

DESCRIPTOR_ATTR = "__kernel_function__"

# Parameter names the kernel injects instead of taking from arguments.
_INJECTED = ("self", "cls", "kernel")

_PY_TO_JSON = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    dict: "object",
}

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


@dataclass(frozen=True)
class FunctionDescriptor:
    """What @kernel_function attaches to a callable."""

    name: str
    description: str
    parameters: Optional[tuple[KernelParameter, ...]] = None


def kernel_function(
    func: Optional[Callable] = None,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    parameters: Optional[list[KernelParameter]] = None,
):
    """Mark a function or method as a kernel function.

    Usable bare (``@kernel_function``) or with arguments::

        @kernel_function(description="Get the current time in UTC")
        def GetCurrentUtcTime(self) -> str: ...
    """

    def decorate(fn: Callable) -> Callable:
        doc = inspect.getdoc(fn) or ""
        descriptor = FunctionDescriptor(
            name=name or fn.__name__,
            description=description if description is not None else doc.split("\n", 1)[0],
            parameters=tuple(parameters) if parameters is not None else None,
        )
        setattr(fn, DESCRIPTOR_ATTR, descriptor)
        return fn

    if func is not None:
        return decorate(func)
    return decorate


def get_descriptor(obj: Any) -> Optional[FunctionDescriptor]:
    """Return the descriptor attached by @kernel_function, if any."""
    descriptor = getattr(obj, DESCRIPTOR_ATTR, None)
    return descriptor if isinstance(descriptor, FunctionDescriptor) else None


# =============================================================================
# SIGNATURE -> PARAMETERS
# =============================================================================


def _json_type(annotation: Any) -> str:
    if annotation is inspect.Parameter.empty or annotation is Any:
        return "string"
    origin = typing.get_origin(annotation)
    if origin is typing.Union:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        return _json_type(args[0]) if args else "string"
    if origin is not None:
        return _PY_TO_JSON.get(origin, "string")
    return _PY_TO_JSON.get(annotation, "string")


def parameters_from_signature(fn: Callable) -> tuple[KernelParameter, ...]:
    """Derive parameters from a callable's signature and annotations."""
    signature = inspect.signature(fn)
    try:
        hints = typing.get_type_hints(fn)
    except (NameError, TypeError):
        hints = {}

    params = []
    for pname, param in signature.parameters.items():
        if pname in _INJECTED:
            continue
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        has_default = param.default is not inspect.Parameter.empty
        params.append(
            KernelParameter(
                name=pname,
                type=_json_type(hints.get(pname, param.annotation)),
                required=not has_default,
                default=param.default if has_default else None,
            )
        )
    return tuple(params)


def function_from_callable(
    fn: Callable,
    *,
    plugin_name: str = "",
    name: Optional[str] = None,
    description: Optional[str] = None,
    parameters: Optional[list[KernelParameter]] = None,
) -> KernelFunction:
    """Build a KernelFunction around a plain or async callable.

    Sync callables run on a worker thread when invoked; coroutine functions
    are awaited. A ``kernel`` parameter, if declared, receives the invoking
    kernel (None outside one).
    """
    descriptor = get_descriptor(fn)
    fn_name = name or (descriptor.name if descriptor else fn.__name__)
    fn_description = description
    if fn_description is None:
        fn_description = descriptor.description if descriptor else ""
    if parameters is not None:
        fn_params = tuple(parameters)
    elif descriptor is not None and descriptor.parameters is not None:
        fn_params = descriptor.parameters
    else:
        fn_params = parameters_from_signature(fn)

    wants_kernel = "kernel" in inspect.signature(fn).parameters

    if inspect.iscoroutinefunction(fn):

        async def invoker(arguments: dict[str, Any], kernel: Any) -> Any:
            if wants_kernel:
                return await fn(**arguments, kernel=kernel)
            return await fn(**arguments)

    else:

        async def invoker(arguments: dict[str, Any], kernel: Any) -> Any:
            if wants_kernel:
                return await asyncio.to_thread(fn, **arguments, kernel=kernel)
            return await asyncio.to_thread(fn, **arguments)

    return KernelFunction(
        plugin_name=plugin_name,
        name=fn_name,
        description=fn_description,
        parameters=fn_params,
        invoker=invoker,
    )


# =============================================================================
# ARGUMENT COERCION
# =============================================================================


def _coerce_value(param: KernelParameter, value: Any) -> Any:
    expected = param.type
    if expected == "string":
        if isinstance(value, str):
            return value
        if isinstance(value, (bool, int, float)):
            return str(value).lower() if isinstance(value, bool) else str(value)
        raise ValueError(f"expected a string, got {type(value).__name__}")

    if expected == "integer":
        if isinstance(value, bool):
            raise ValueError("expected an integer, got bool")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass
        raise ValueError(f"expected an integer, got {value!r}")

    if expected == "number":
        if isinstance(value, bool):
            raise ValueError("expected a number, got bool")
        if isinstance(value, (int, float)):
            number = float(value) if isinstance(value, float) else value
        elif isinstance(value, str):
            try:
                number = float(value.strip())
            except ValueError:
                raise ValueError(f"expected a number, got {value!r}") from None
        else:
            raise ValueError(f"expected a number, got {type(value).__name__}")
        if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
            raise ValueError(f"expected a finite number, got {value!r}")
        return number

    if expected == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _TRUE:
            return True
        if isinstance(value, str) and value.strip().lower() in _FALSE:
            return False
        raise ValueError(f"expected a boolean, got {value!r}")

    container = list if expected == "array" else dict
    if isinstance(value, tuple) and container is list:
        return list(value)
    if isinstance(value, container):
        return value
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, container):
            return decoded
    raise ValueError(f"expected {'an array' if container is list else 'an object'}, got {value!r}")


def coerce_arguments(function: KernelFunction, arguments: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Coerce raw arguments against a function's declared parameters.

    Raises:
        ArgumentError: On a missing required argument or an uncoercible value.
    """
    raw = dict(arguments or {})
    declared = {p.name for p in function.parameters}
    unknown = [key for key in raw if key not in declared]
    if unknown:
        logger.debug(
            "Dropping undeclared arguments for %s: %s",
            function.qualified_name,
            ", ".join(sorted(unknown)),
        )

    coerced: dict[str, Any] = {}
    for param in function.parameters:
        if param.name not in raw or raw[param.name] is None:
            if param.required:
                raise ArgumentError(
                    f"{function.qualified_name}: missing required argument '{param.name}'"
                )
            if param.default is not None:
                coerced[param.name] = param.default
            continue
        try:
            coerced[param.name] = _coerce_value(param, raw[param.name])
        except ValueError as exc:
            raise ArgumentError(
                f"{function.qualified_name}: argument '{param.name}' {exc}"
            ) from exc
    return coerced
