"""
fnkernel Protocol Definitions
=============================

The interface contracts between the kernel and its collaborators.

Components and their roles:
- Kernel:        The orchestrator. Renders, filters, dispatches, loops.
- Registry:      Holds plugins (named groups of invocable functions).
- Model:         The completion backend. Interchangeable. Required for prompts.
- Embedder:      Turns text into fixed-length vectors. Used by callers of
                 the memory store, never by the store itself.
- Plugin source: Produces a plugin from somewhere (a type, an object, a
                 directory of prompt files, OpenAPI operations).

Error handling philosophy:
- Registry and rendering errors abort before anything is dispatched
- A capability's own failure is wrapped in FunctionExecutionError
- Backend errors are surfaced uninterpreted as BackendError (no retries)
- Filters that raise abort the whole invocation with FilterError
- Invalid constructor arguments raise ValueError
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Iterator,
    Optional,
    Protocol,
    runtime_checkable,
)

if TYPE_CHECKING:
    from fnkernel.filters import FunctionInvocationContext, PromptRenderContext
    from fnkernel.types import ChatMessage, ExecutionSettings, KernelPlugin


# =============================================================================
# ERRORS
# =============================================================================


class KernelError(Exception):
    """Base for all fnkernel errors."""

    pass


class DuplicateNameError(KernelError):
    """Raised when a plugin or function name is already registered."""

    pass


class UnknownFunctionError(KernelError):
    """Raised when a qualified function name cannot be resolved."""

    def __init__(self, qualified_name: str) -> None:
        super().__init__(f"Unknown function: {qualified_name}")
        self.qualified_name = qualified_name


class ArgumentError(KernelError):
    """Raised when arguments cannot be coerced to a function's parameter schema."""

    pass


class FunctionExecutionError(KernelError):
    """Raised when a registered capability fails. The cause is chained."""

    def __init__(self, qualified_name: str, message: str) -> None:
        super().__init__(f"{qualified_name} failed: {message}")
        self.qualified_name = qualified_name


class UndefinedVariableError(KernelError):
    """Raised when a template references a variable with no value and no default."""

    def __init__(self, variable: str) -> None:
        super().__init__(f"Undefined template variable: {variable}")
        self.variable = variable


class TemplateSyntaxError(KernelError):
    """Raised when a template block cannot be parsed."""

    pass


class FilterError(KernelError):
    """Raised when a filter throws or misuses its continuation.

    Fatal: aborts the whole invocation.
    """

    pass


class ToolCallLoopExceededError(KernelError):
    """Raised when the model keeps requesting tools past the round cap."""

    def __init__(self, max_rounds: int) -> None:
        super().__init__(f"Model still requested tool calls after {max_rounds} round(s)")
        self.max_rounds = max_rounds


class BackendError(KernelError):
    """Raised when the completion backend fails (network, quota, timeout...)."""

    def __init__(self, error_class: str, message: str) -> None:
        super().__init__(message)
        self.error_class = error_class


class CancelledError(KernelError):
    """Raised when an operation observes its cancellation token."""

    pass


class StorageError(KernelError):
    """Raised by memory stores on storage or schema failures."""

    pass


# =============================================================================
# SHARED TYPES
# =============================================================================
# The wire vocabulary between the kernel and a completion backend. Tool
# calls travel as plain dicts: {"id": str, "name": str, "input": dict}.
# =============================================================================


class SourceKind(str, Enum):
    """The four recognized plugin source kinds."""

    OPENAPI = "openapi"
    TYPE = "type"
    OBJECT = "object"
    PROMPT_DIRECTORY = "prompt_directory"


@dataclass
class ModelCapabilities:
    """What a backend implementation can do."""

    model_id: str
    provider: str
    context_window: int = 8192
    max_output_tokens: int = 4096
    supports_tools: bool = True
    supports_streaming: bool = True
    # Backend rejects a round unless every tool call in it succeeded.
    requires_atomic_tool_results: bool = False


@dataclass
class ModelResponse:
    """Complete response from a backend."""

    content: str
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)
    stop_reason: Optional[str] = None
    model_id: Optional[str] = None


@dataclass
class ModelChunk:
    """A streaming chunk from a backend."""

    content: str = ""
    tool_call: Optional[dict[str, Any]] = None
    is_final: bool = False
    usage: Optional[dict[str, int]] = None


@dataclass
class ToolDefinition:
    """A function offered to the model for tool calling."""

    name: str
    description: str
    input_schema: dict[str, Any]


# =============================================================================
# MODEL PROTOCOL
# =============================================================================
# Required for prompt/chat invocation. The kernel never retries; retry
# policy, if any, belongs to the implementation.
# =============================================================================


@runtime_checkable
class ModelProtocol(Protocol):
    """Interface for a completion backend."""

    @property
    def model_id(self) -> str:
        """Identifier (e.g., 'gpt-4o-mini', 'llama3:8b')."""
        ...

    @property
    def capabilities(self) -> ModelCapabilities:
        """What this backend can do."""
        ...

    def generate(
        self,
        messages: list[ChatMessage],
        *,
        tools: Optional[list[ToolDefinition]] = None,
        settings: Optional[ExecutionSettings] = None,
    ) -> ModelResponse:
        """Generate a complete response."""
        ...

    def stream(
        self,
        messages: list[ChatMessage],
        *,
        tools: Optional[list[ToolDefinition]] = None,
        settings: Optional[ExecutionSettings] = None,
    ) -> Iterator[ModelChunk]:
        """Stream a finite, ordered sequence of chunks.

        Tool calls, if any, arrive as chunks carrying ``tool_call``.
        """
        ...


@runtime_checkable
class EmbeddingProtocol(Protocol):
    """Interface for text embedding generation."""

    @property
    def embedding_dimension(self) -> int:
        """Dimension of vectors produced by embed()."""
        ...

    def embed(self, text: str) -> list[float]:
        """Embed text into a fixed-length vector."""
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Batch embed. Default: loop over embed()."""
        ...


# =============================================================================
# PLUGIN SOURCE PROTOCOL
# =============================================================================


@runtime_checkable
class PluginSource(Protocol):
    """Anything that can produce a plugin. Loading may suspend (e.g. a fetch)."""

    @property
    def kind(self) -> SourceKind: ...

    async def load(self) -> KernelPlugin: ...


# =============================================================================
# FILTER PROTOCOLS
# =============================================================================
# Onion middleware. A filter awaits ``next(context)`` at most once; code
# before the call is pre-processing, code after it is post-processing.
# =============================================================================


@runtime_checkable
class PromptRenderFilter(Protocol):
    """Wraps prompt rendering. May observe or rewrite ``rendered_prompt``."""

    async def on_prompt_render(
        self,
        context: PromptRenderContext,
        next: Callable[[PromptRenderContext], Awaitable[None]],
    ) -> None: ...


@runtime_checkable
class FunctionInvocationFilter(Protocol):
    """Wraps a function invocation. May rewrite arguments or the result."""

    async def on_function_invocation(
        self,
        context: FunctionInvocationContext,
        next: Callable[[FunctionInvocationContext], Awaitable[None]],
    ) -> None: ...
