"""Kernel configuration, with FNKERNEL_* environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from fnkernel.types import ExecutionSettings, FunctionChoiceBehavior, ToolFailurePolicy

FUNCTION_CHOICES = ("auto", "none")
SIMILARITY_METRICS = ("cosine", "dot_product")

_ENV_PREFIX = "FNKERNEL_"


@dataclass(frozen=True)
class KernelConfig:
    """Defaults applied when a call does not pass its own ExecutionSettings.

    Attributes:
        function_choice: "auto" offers registered functions as tools,
            "none" offers nothing.
        timeout: Per backend call, in seconds. None waits indefinitely.
        max_tool_call_rounds: Cap on tool-invoking phases per invocation.
        tool_failure_policy: "soft" or "hard" (see ToolFailurePolicy).
        similarity_metric: Default distance for new memory collections.
        top_k: Default number of search results.
        stream_buffer_size: Capacity of the streaming channel.
    """

    function_choice: str = "auto"
    timeout: Optional[float] = None
    max_tool_call_rounds: int = 5
    tool_failure_policy: str = "soft"
    similarity_metric: str = "cosine"
    top_k: int = 5
    stream_buffer_size: int = 16

    def __post_init__(self) -> None:
        if self.function_choice not in FUNCTION_CHOICES:
            raise ValueError(f"function_choice must be one of {FUNCTION_CHOICES}")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.max_tool_call_rounds < 0:
            raise ValueError("max_tool_call_rounds must be >= 0")
        ToolFailurePolicy(self.tool_failure_policy)
        if self.similarity_metric not in SIMILARITY_METRICS:
            raise ValueError(f"similarity_metric must be one of {SIMILARITY_METRICS}")
        if self.top_k < 1:
            raise ValueError("top_k must be >= 1")
        if self.stream_buffer_size < 1:
            raise ValueError("stream_buffer_size must be >= 1")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> KernelConfig:
        """Build a config from FNKERNEL_* variables; unset ones keep defaults."""
        env = os.environ if environ is None else environ

        def read(name: str) -> Optional[str]:
            value = env.get(_ENV_PREFIX + name, "").strip()
            return value or None

        def read_int(name: str) -> Optional[int]:
            raw = read(name)
            if raw is None:
                return None
            try:
                return int(raw)
            except ValueError:
                raise ValueError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from None

        kwargs: dict = {}
        if (choice := read("FUNCTION_CHOICE")) is not None:
            kwargs["function_choice"] = choice.lower()
        if (raw_timeout := read("TIMEOUT")) is not None:
            try:
                kwargs["timeout"] = float(raw_timeout)
            except ValueError:
                raise ValueError(
                    f"{_ENV_PREFIX}TIMEOUT must be a number, got {raw_timeout!r}"
                ) from None
        if (rounds := read_int("MAX_TOOL_CALL_ROUNDS")) is not None:
            kwargs["max_tool_call_rounds"] = rounds
        if (policy := read("TOOL_FAILURE_POLICY")) is not None:
            kwargs["tool_failure_policy"] = policy.lower()
        if (metric := read("SIMILARITY_METRIC")) is not None:
            kwargs["similarity_metric"] = metric.lower()
        if (top_k := read_int("TOP_K")) is not None:
            kwargs["top_k"] = top_k
        if (buffer := read_int("STREAM_BUFFER_SIZE")) is not None:
            kwargs["stream_buffer_size"] = buffer
        return cls(**kwargs)

    def default_settings(self) -> ExecutionSettings:
        choice = (
            FunctionChoiceBehavior.auto()
            if self.function_choice == "auto"
            else FunctionChoiceBehavior.none()
        )
        return ExecutionSettings(
            function_choice=choice,
            timeout=self.timeout,
            max_tool_call_rounds=self.max_tool_call_rounds,
            tool_failure_policy=ToolFailurePolicy(self.tool_failure_policy),
        )
