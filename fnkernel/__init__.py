"""
fnkernel - A function-calling kernel.

Plugins, prompt templates, filters, tool-calling orchestration and vector memory.
"""

from .config import KernelConfig
from .filters import FilterChain, FunctionInvocationContext, PromptRenderContext
from .functions import kernel_function
from .kernel import Kernel
from .protocols import (
    ArgumentError,
    BackendError,
    CancelledError,
    DuplicateNameError,
    FilterError,
    FunctionExecutionError,
    KernelError,
    StorageError,
    TemplateSyntaxError,
    ToolCallLoopExceededError,
    UndefinedVariableError,
    UnknownFunctionError,
)
from .registry import FunctionRegistry
from .templating import PromptRenderer
from .types import (
    AuthorRole,
    CancellationToken,
    ChatHistory,
    ChatMessage,
    ExecutionSettings,
    FunctionChoiceBehavior,
    FunctionResult,
    KernelFunction,
    KernelParameter,
    KernelPlugin,
    PromptTemplate,
    ToolFailurePolicy,
)

try:
    from importlib.metadata import version

    __version__ = version("fnkernel")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "ArgumentError",
    "AuthorRole",
    "BackendError",
    "CancellationToken",
    "CancelledError",
    "ChatHistory",
    "ChatMessage",
    "DuplicateNameError",
    "ExecutionSettings",
    "FilterChain",
    "FilterError",
    "FunctionChoiceBehavior",
    "FunctionExecutionError",
    "FunctionInvocationContext",
    "FunctionRegistry",
    "FunctionResult",
    "Kernel",
    "KernelConfig",
    "KernelError",
    "KernelFunction",
    "KernelParameter",
    "KernelPlugin",
    "PromptRenderContext",
    "PromptRenderer",
    "PromptTemplate",
    "StorageError",
    "TemplateSyntaxError",
    "ToolCallLoopExceededError",
    "ToolFailurePolicy",
    "UndefinedVariableError",
    "UnknownFunctionError",
    "kernel_function",
]
