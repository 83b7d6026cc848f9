"""
Shared data types for fnkernel.

Functions, plugins, chat messages, execution settings, results and the
cancellation token. These are the vocabulary passed between the registry,
the renderer, the filter chain and the kernel.
"""

from __future__ import annotations

import copy
import re
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from fnkernel.protocols import (
    CancelledError,
    DuplicateNameError,
    ToolDefinition,
)

JSON_TYPES = ("string", "integer", "number", "boolean", "array", "object")

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_name(value: str, what: str) -> str:
    """Plugin and function names are identifiers: no dots, no spaces."""
    if not isinstance(value, str) or not _NAME_RE.match(value):
        raise ValueError(f"Invalid {what} name: {value!r}")
    return value


# =============================================================================
# FUNCTIONS & PLUGINS
# =============================================================================


@dataclass(frozen=True)
class KernelParameter:
    """One declared parameter of a kernel function."""

    name: str
    type: str = "string"
    required: bool = True
    description: str = ""
    default: Any = None

    def __post_init__(self) -> None:
        validate_name(self.name, "parameter")
        if self.type not in JSON_TYPES:
            raise ValueError(f"Parameter '{self.name}' has unsupported type: {self.type}")

    def to_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        if self.default is not None:
            schema["default"] = self.default
        return schema


@dataclass(frozen=True)
class KernelFunction:
    """A typed, invocable function. Immutable once registered.

    ``invoker`` is called as ``invoker(arguments, kernel)`` with already
    coerced arguments; it may return a value or an awaitable. ``kernel`` is
    None when the function is invoked straight through a registry.
    """

    plugin_name: str
    name: str
    description: str
    parameters: tuple[KernelParameter, ...]
    invoker: Callable[[dict[str, Any], Any], Any] = field(compare=False, repr=False)
    is_prompt: bool = False

    def __post_init__(self) -> None:
        validate_name(self.name, "function")
        if self.plugin_name:
            validate_name(self.plugin_name, "plugin")
        seen: set[str] = set()
        for param in self.parameters:
            if param.name in seen:
                raise ValueError(f"Duplicate parameter '{param.name}' in function '{self.name}'")
            seen.add(param.name)

    @property
    def qualified_name(self) -> str:
        return f"{self.plugin_name}.{self.name}"

    @property
    def input_schema(self) -> dict[str, Any]:
        """JSON schema (draft 7) describing the function's arguments."""
        return {
            "type": "object",
            "properties": {p.name: p.to_schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
        }

    def bind(self, plugin_name: str) -> KernelFunction:
        """Return a copy of this function owned by ``plugin_name``."""
        return replace(self, plugin_name=plugin_name)

    def to_tool_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.qualified_name,
            description=self.description,
            input_schema=self.input_schema,
        )


@dataclass
class KernelPlugin:
    """A named, ordered set of kernel functions."""

    name: str
    description: str = ""
    functions: dict[str, KernelFunction] = field(default_factory=dict)

    def __post_init__(self) -> None:
        validate_name(self.name, "plugin")
        incoming = list(self.functions.values())
        self.functions = {}
        for fn in incoming:
            self.add(fn)

    @classmethod
    def from_functions(
        cls,
        name: str,
        functions: list[KernelFunction],
        description: str = "",
    ) -> KernelPlugin:
        plugin = cls(name=name, description=description)
        for fn in functions:
            plugin.add(fn)
        return plugin

    def add(self, function: KernelFunction) -> KernelFunction:
        """Add a function, rebinding it to this plugin's name."""
        if function.name in self.functions:
            raise DuplicateNameError(
                f"Function '{function.name}' already exists in plugin '{self.name}'"
            )
        bound = function if function.plugin_name == self.name else function.bind(self.name)
        self.functions[bound.name] = bound
        return bound

    def __getitem__(self, name: str) -> KernelFunction:
        return self.functions[name]

    def __contains__(self, name: object) -> bool:
        return name in self.functions

    def __iter__(self) -> Iterator[KernelFunction]:
        return iter(self.functions.values())

    def __len__(self) -> int:
        return len(self.functions)


# =============================================================================
# CHAT
# =============================================================================


class AuthorRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ChatMessage:
    """A message in a conversation."""

    role: AuthorRole
    content: str = ""
    tool_call_id: Optional[str] = None
    tool_calls: Optional[list[dict[str, Any]]] = None
    name: Optional[str] = None

    def __post_init__(self) -> None:
        self.role = AuthorRole(self.role)
        if self.role == AuthorRole.TOOL and not self.tool_call_id:
            raise ValueError("Tool messages require a tool_call_id")


class ChatHistory:
    """Ordered, append-only sequence of chat messages.

    Owned by the caller. At most one system message, and only in first
    position.
    """

    def __init__(
        self,
        system_message: Optional[str] = None,
        messages: Optional[list[ChatMessage]] = None,
    ) -> None:
        self._messages: list[ChatMessage] = []
        if system_message is not None:
            self.add_system_message(system_message)
        for message in messages or []:
            self.add(message)

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    def add(self, message: ChatMessage) -> None:
        if message.role == AuthorRole.SYSTEM and self._messages:
            raise ValueError("A system message may only be the first message in a chat history")
        self._messages.append(message)

    def add_system_message(self, content: str) -> None:
        self.add(ChatMessage(role=AuthorRole.SYSTEM, content=content))

    def add_user_message(self, content: str) -> None:
        self.add(ChatMessage(role=AuthorRole.USER, content=content))

    def add_assistant_message(
        self,
        content: str,
        tool_calls: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        self.add(ChatMessage(role=AuthorRole.ASSISTANT, content=content, tool_calls=tool_calls))

    def add_tool_message(self, tool_call_id: str, content: str, name: Optional[str] = None) -> None:
        self.add(
            ChatMessage(role=AuthorRole.TOOL, content=content, tool_call_id=tool_call_id, name=name)
        )

    def copy(self) -> ChatHistory:
        clone = ChatHistory()
        clone._messages = [copy.copy(m) for m in self._messages]
        return clone

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(list(self._messages))

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> ChatMessage:
        return self._messages[index]


# =============================================================================
# EXECUTION SETTINGS
# =============================================================================


@dataclass(frozen=True)
class FunctionChoiceBehavior:
    """Whether, and which, registered functions are offered to the model.

    ``auto()`` offers every registered function (or the ``functions``
    allow-list) and, with ``auto_invoke``, lets the kernel run the calls the
    model requests. ``none()`` offers nothing.
    """

    type: str = "none"
    functions: Optional[tuple[str, ...]] = None
    auto_invoke: bool = True

    def __post_init__(self) -> None:
        if self.type not in ("auto", "none"):
            raise ValueError(f"Unknown function choice: {self.type}")

    @classmethod
    def auto(
        cls,
        functions: Optional[list[str]] = None,
        *,
        auto_invoke: bool = True,
    ) -> FunctionChoiceBehavior:
        return cls(
            type="auto",
            functions=tuple(functions) if functions is not None else None,
            auto_invoke=auto_invoke,
        )

    @classmethod
    def none(cls) -> FunctionChoiceBehavior:
        return cls(type="none")

    @property
    def offers_tools(self) -> bool:
        return self.type == "auto"


class ToolFailurePolicy(str, Enum):
    """What a failing tool call does to its round."""

    SOFT = "soft"  # recorded as a tool error message, round continues
    HARD = "hard"  # round fails with FunctionExecutionError


@dataclass
class ExecutionSettings:
    """Per-call settings. Unset calls use the kernel config's defaults."""

    function_choice: FunctionChoiceBehavior = field(default_factory=FunctionChoiceBehavior.none)
    timeout: Optional[float] = None
    max_tool_call_rounds: int = 5
    tool_failure_policy: ToolFailurePolicy = ToolFailurePolicy.SOFT
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.tool_failure_policy = ToolFailurePolicy(self.tool_failure_policy)
        if self.max_tool_call_rounds < 0:
            raise ValueError("max_tool_call_rounds must be >= 0")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")


# =============================================================================
# PROMPTS & RESULTS
# =============================================================================


@dataclass(frozen=True)
class InputVariable:
    """A declared template variable, optionally with a default."""

    name: str
    description: str = ""
    default: Any = None
    is_required: bool = True


@dataclass(frozen=True)
class PromptTemplate:
    """Template text plus its declared input variables."""

    text: str
    input_variables: tuple[InputVariable, ...] = ()
    description: str = ""

    def defaults(self) -> dict[str, Any]:
        return {v.name: v.default for v in self.input_variables if v.default is not None}


@dataclass
class FunctionResult:
    """The outcome of a kernel invocation. ``str(result)`` is the value."""

    value: Any
    function_name: Optional[str] = None
    rendered_prompt: Optional[str] = None
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)
    rounds: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return "" if self.value is None else str(self.value)


class CancellationToken:
    """Cooperative cancellation signal shared across threads.

    Suspending operations check it at each suspension point. Callbacks run
    once, on the first cancel().
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        """Forget a callback registered with on_cancel(). No-op if absent."""
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise CancelledError(f"{what} cancelled")
