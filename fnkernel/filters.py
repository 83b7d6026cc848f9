"""
Filter chain: onion middleware around prompt rendering and function calls.

The chain is an explicit, ordered list of stages. Stage ``i`` receives
``(context, next)``; ``next`` runs stage ``i + 1`` and the last stage's
``next`` runs the default handler. Pre-processing therefore happens in
registration order and post-processing in reverse.

Rules enforced here:
- ``next`` may be awaited at most once per stage (FilterError otherwise)
- not awaiting ``next`` short-circuits everything inside the stage
- a render chain must end with ``rendered_prompt`` set
- an exception raised by a filter body becomes FilterError; exceptions
  raised by the stages it wraps pass through unchanged
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from fnkernel.protocols import CancelledError, FilterError
from fnkernel.types import CancellationToken, KernelFunction, PromptTemplate

logger = logging.getLogger(__name__)


# =============================================================================
# CONTEXTS
# =============================================================================


@dataclass
class PromptRenderContext:
    """What a prompt-render filter sees."""

    template: Union[str, PromptTemplate]
    arguments: dict[str, Any] = field(default_factory=dict)
    function: Optional[KernelFunction] = None
    rendered_prompt: Optional[str] = None
    cancellation: Optional[CancellationToken] = None


@dataclass
class FunctionInvocationContext:
    """What a function-invocation filter sees.

    ``arguments`` and ``result`` may be rewritten. Setting ``terminate``
    from an auto-invoked tool call ends the tool loop after the current
    round.
    """

    function: KernelFunction
    arguments: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    cancellation: Optional[CancellationToken] = None
    request_index: int = 0
    function_index: int = 0
    function_count: int = 1
    terminate: bool = False


Handler = Callable[[Any], Awaitable[None]]


# =============================================================================
# CHAIN
# =============================================================================


class FilterChain:
    """Ordered prompt-render and function-invocation filters."""

    def __init__(self, filters: Optional[Iterable[Any]] = None) -> None:
        self._render: list[Any] = []
        self._invocation: list[Any] = []
        for f in filters or []:
            self.add(f)

    def add(self, filter: Any) -> None:
        """Append a filter to every extension point it implements."""
        matched = False
        if callable(getattr(filter, "on_prompt_render", None)):
            self._render.append(filter)
            matched = True
        if callable(getattr(filter, "on_function_invocation", None)):
            self._invocation.append(filter)
            matched = True
        if not matched:
            raise ValueError(
                f"{type(filter).__name__} implements neither on_prompt_render "
                "nor on_function_invocation"
            )

    def remove(self, filter: Any) -> None:
        for stages in (self._render, self._invocation):
            if filter in stages:
                stages.remove(filter)

    @property
    def render_filters(self) -> list[Any]:
        return list(self._render)

    @property
    def invocation_filters(self) -> list[Any]:
        return list(self._invocation)

    def __len__(self) -> int:
        return len(self._render) + len(self._invocation)

    async def run_prompt_render(self, context: PromptRenderContext, handler: Handler) -> None:
        """Run render filters around ``handler`` (which sets rendered_prompt)."""
        await self._run(list(self._render), "on_prompt_render", context, handler)
        if context.rendered_prompt is None:
            raise FilterError("Prompt render chain finished without a rendered prompt")

    async def run_function_invocation(
        self, context: FunctionInvocationContext, handler: Handler
    ) -> None:
        await self._run(list(self._invocation), "on_function_invocation", context, handler)

    async def _run(self, stages: list[Any], method: str, context: Any, handler: Handler) -> None:
        async def run_stage(index: int, ctx: Any) -> None:
            if index == len(stages):
                await handler(ctx)
                return

            stage = stages[index]
            name = type(stage).__name__
            called = False
            inner: list[BaseException] = []

            async def next_(next_ctx: Any) -> None:
                nonlocal called
                if called:
                    raise FilterError(f"{name} called next() more than once")
                called = True
                try:
                    await run_stage(index + 1, next_ctx)
                except BaseException as exc:
                    inner.append(exc)
                    raise

            try:
                await getattr(stage, method)(ctx, next_)
            except (asyncio.CancelledError, CancelledError, FilterError):
                raise
            except Exception as exc:
                if any(exc is seen for seen in inner):
                    raise
                raise FilterError(f"Filter {name} failed: {exc}") from exc

            if not called:
                logger.debug("%s short-circuited %s", name, method)

        await run_stage(0, context)


# =============================================================================
# BUILT-IN FILTERS
# =============================================================================


class PromptLoggingFilter:
    """Logs every rendered prompt."""

    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.INFO) -> None:
        self._log = log or logger
        self._level = level

    async def on_prompt_render(self, context: PromptRenderContext, next) -> None:
        await next(context)
        self._log.log(self._level, "Rendered prompt: %s", context.rendered_prompt)


class RedactionFilter:
    """Masks forbidden substrings in the rendered prompt (case-insensitive)."""

    def __init__(self, forbidden: Iterable[str], mask: str = "*******") -> None:
        words = [w for w in forbidden]
        if not words or any(not w for w in words):
            raise ValueError("RedactionFilter needs at least one non-empty forbidden string")
        # Longest first so overlapping words mask the larger span.
        ordered = sorted(set(words), key=len, reverse=True)
        self._pattern = re.compile("|".join(re.escape(w) for w in ordered), re.IGNORECASE)
        self._mask = mask

    def redact(self, text: str) -> str:
        return self._pattern.sub(lambda _: self._mask, text)

    async def on_prompt_render(self, context: PromptRenderContext, next) -> None:
        await next(context)
        if context.rendered_prompt:
            redacted = self.redact(context.rendered_prompt)
            if redacted != context.rendered_prompt:
                logger.debug("Redacted forbidden content from rendered prompt")
            context.rendered_prompt = redacted


class FunctionLoggingFilter:
    """Logs each function invocation with its duration."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._log = log or logger

    async def on_function_invocation(self, context: FunctionInvocationContext, next) -> None:
        name = context.function.qualified_name
        self._log.info("Invoking %s", name)
        start = time.perf_counter()
        try:
            await next(context)
        except Exception as exc:
            self._log.warning(
                "%s failed after %.1fms: %s", name, (time.perf_counter() - start) * 1000, exc
            )
            raise
        self._log.info("%s completed in %.1fms", name, (time.perf_counter() - start) * 1000)
