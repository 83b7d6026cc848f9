"""
Kernel: the orchestrator.

One invocation moves through:

    Rendering -> render filters -> Dispatch -> Completed
                                      |
                                      +-> ToolCallsRequested -> Invoking -> Dispatch ...

with at most ``max_tool_call_rounds`` Invoking phases. Every collaborator
is passed in explicitly; the kernel holds no global state.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional, Sequence, Union

from fnkernel.config import KernelConfig
from fnkernel.filters import FilterChain, FunctionInvocationContext, PromptRenderContext
from fnkernel.logging_config import log_dispatch, log_render, log_tool_call
from fnkernel.memory.base import VectorStore, VectorStoreCollection
from fnkernel.memory.ingest import embed_and_upsert as _embed_and_upsert
from fnkernel.memory.records import (
    CollectionDefinition,
    DistanceFunction,
    Key,
    MemoryRecord,
    RecordFilter,
    ScoredRecord,
)
from fnkernel.protocols import (
    ArgumentError,
    BackendError,
    EmbeddingProtocol,
    FunctionExecutionError,
    KernelError,
    ModelProtocol,
    ModelResponse,
    PluginSource,
    ToolCallLoopExceededError,
    ToolDefinition,
    UnknownFunctionError,
)
from fnkernel.registry import FunctionRegistry
from fnkernel.sources import plugin_from_object
from fnkernel.streaming import DeltaChannel
from fnkernel.templating import PromptRenderer, create_prompt_function, parse_chat_prompt
from fnkernel.types import (
    AuthorRole,
    CancellationToken,
    ChatHistory,
    ChatMessage,
    ExecutionSettings,
    FunctionResult,
    KernelFunction,
    KernelPlugin,
    PromptTemplate,
    ToolFailurePolicy,
)

logger = logging.getLogger(__name__)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _merge_usage(total: dict[str, int], usage: Optional[dict[str, int]]) -> None:
    for key, value in (usage or {}).items():
        if isinstance(value, (int, float)):
            total[key] = total.get(key, 0) + value


@dataclass
class _Turn:
    """What one chat turn produced."""

    reply: ChatMessage
    messages: list[ChatMessage] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)
    rounds: int = 0
    model_id: Optional[str] = None


class Kernel:
    """Renders prompts, runs filters, dispatches to a backend, resolves tool calls.

    Args:
        registry: Registered plugins. A fresh registry if omitted.
        model: Completion backend. Required for prompt and chat invocation.
        embedder: Embedding backend. Required for embed_and_upsert/search_memory.
        renderer: Prompt renderer. Defaults to one over ``registry``.
        filters: A FilterChain or an iterable of filters.
        memory: Vector store used when collections are passed by name.
        config: Defaults for calls without their own ExecutionSettings.
        kernel_id: Label written to the kernel event log.
    """

    def __init__(
        self,
        registry: Optional[FunctionRegistry] = None,
        model: Optional[ModelProtocol] = None,
        embedder: Optional[EmbeddingProtocol] = None,
        renderer: Optional[PromptRenderer] = None,
        filters: Union[FilterChain, Sequence[Any], None] = None,
        memory: Optional[VectorStore] = None,
        config: Optional[KernelConfig] = None,
        kernel_id: str = "default",
    ) -> None:
        self.registry = registry if registry is not None else FunctionRegistry()
        self.model = model
        self.embedder = embedder
        self.renderer = renderer if renderer is not None else PromptRenderer(self.registry)
        self.filters = filters if isinstance(filters, FilterChain) else FilterChain(filters)
        self.memory = memory
        self.config = config if config is not None else KernelConfig()
        self.kernel_id = kernel_id

    # =========================================================================
    # PLUGINS & FILTERS
    # =========================================================================

    def add_plugin(
        self,
        plugin: Any,
        plugin_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> KernelPlugin:
        """Register a KernelPlugin, or an object/module with @kernel_function members."""
        if not isinstance(plugin, KernelPlugin):
            plugin = plugin_from_object(plugin, plugin_name, description)
        self.registry.register(plugin)
        logger.info("Added plugin %s (%d functions)", plugin.name, len(plugin))
        return plugin

    async def add_plugin_from(
        self,
        source: PluginSource,
        *,
        cancellation: Optional[CancellationToken] = None,
    ) -> KernelPlugin:
        """Load a plugin from a source and register it."""
        if cancellation is not None:
            cancellation.raise_if_cancelled("plugin load")
        plugin = await source.load()
        if cancellation is not None:
            cancellation.raise_if_cancelled("plugin load")
        self.registry.register(plugin)
        logger.info(
            "Added plugin %s from %s source (%d functions)",
            plugin.name,
            getattr(source.kind, "value", source.kind),
            len(plugin),
        )
        return plugin

    def add_filter(self, filter: Any) -> None:
        self.filters.add(filter)

    def create_function_from_prompt(
        self,
        template: Union[str, PromptTemplate],
        *,
        function_name: str = "prompt",
        plugin_name: Optional[str] = None,
        description: Optional[str] = None,
        settings: Optional[ExecutionSettings] = None,
    ) -> KernelFunction:
        """Wrap a prompt as a function; registered as its own plugin if ``plugin_name`` is given."""
        function = create_prompt_function(
            function_name,
            template,
            plugin_name=plugin_name or "",
            description=description,
            settings=settings,
        )
        if plugin_name:
            plugin = KernelPlugin(name=plugin_name)
            function = plugin.add(function)
            self.registry.register(plugin)
        return function

    @property
    def plugins(self) -> dict[str, KernelPlugin]:
        return self.registry.plugins

    # =========================================================================
    # FUNCTIONS
    # =========================================================================

    async def _invoke_function(
        self,
        function: KernelFunction,
        arguments: Optional[dict[str, Any]],
        cancellation: Optional[CancellationToken],
        *,
        request_index: int = 0,
        function_index: int = 0,
        function_count: int = 1,
    ) -> FunctionInvocationContext:
        context = FunctionInvocationContext(
            function=function,
            arguments=dict(arguments or {}),
            cancellation=cancellation,
            request_index=request_index,
            function_index=function_index,
            function_count=function_count,
        )

        async def handler(ctx: FunctionInvocationContext) -> None:
            if ctx.cancellation is not None:
                ctx.cancellation.raise_if_cancelled(ctx.function.qualified_name)
            coerced = self.registry.coerce(ctx.function, ctx.arguments)
            ctx.result = await self.registry.execute(ctx.function, coerced, kernel=self)

        await self.filters.run_function_invocation(context, handler)
        return context

    async def invoke(
        self,
        function: Union[str, KernelFunction],
        arguments: Optional[dict[str, Any]] = None,
        *,
        cancellation: Optional[CancellationToken] = None,
    ) -> FunctionResult:
        """Invoke one function (by qualified name or directly) through the invocation filters."""
        if isinstance(function, str):
            function = self.registry.resolve(function)
        context = await self._invoke_function(function, arguments, cancellation)
        return FunctionResult(value=context.result, function_name=function.qualified_name)

    # =========================================================================
    # RENDERING
    # =========================================================================

    async def render_prompt(
        self,
        template: Union[str, PromptTemplate],
        arguments: Optional[dict[str, Any]] = None,
        *,
        cancellation: Optional[CancellationToken] = None,
        function: Optional[KernelFunction] = None,
        escape_values: bool = False,
    ) -> str:
        """Render a template through the prompt-render filters. No backend call.

        With ``escape_values`` substituted text is XML-escaped, as needed
        before the result is parsed as chat markup.
        """
        context = PromptRenderContext(
            template=template,
            arguments=dict(arguments or {}),
            function=function,
            cancellation=cancellation,
        )

        async def inline_call(qualified_name: str, call_args: dict[str, Any]) -> Any:
            target = self.registry.resolve(qualified_name)
            invoked = await self._invoke_function(target, call_args, cancellation)
            return invoked.result

        async def handler(ctx: PromptRenderContext) -> None:
            ctx.rendered_prompt = await self.renderer.render(
                ctx.template,
                ctx.arguments,
                cancellation=ctx.cancellation,
                caller=inline_call,
                escape_values=escape_values,
            )

        await self.filters.run_prompt_render(context, handler)
        text = template.text if isinstance(template, PromptTemplate) else template
        log_render(self.kernel_id, len(text), len(context.rendered_prompt))
        return context.rendered_prompt

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def _require_model(self) -> ModelProtocol:
        if self.model is None:
            raise KernelError("No completion backend configured")
        return self.model

    def _effective_settings(self, settings: Optional[ExecutionSettings]) -> ExecutionSettings:
        resolved = settings if settings is not None else self.config.default_settings()
        model = self._require_model()
        if (
            model.capabilities.requires_atomic_tool_results
            and resolved.tool_failure_policy != ToolFailurePolicy.HARD
        ):
            resolved = dataclasses.replace(resolved, tool_failure_policy=ToolFailurePolicy.HARD)
        return resolved

    def _tools_for(self, settings: ExecutionSettings) -> list[ToolDefinition]:
        choice = settings.function_choice
        if not choice.offers_tools:
            return []
        return self.registry.list_for_model(choice.functions)

    async def _dispatch(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        settings: ExecutionSettings,
        cancellation: Optional[CancellationToken],
        round: int,
    ) -> ModelResponse:
        model = self._require_model()
        if cancellation is not None:
            cancellation.raise_if_cancelled("dispatch")
        log_dispatch(self.kernel_id, model.model_id, len(messages), len(tools), round)
        logger.debug("Dispatching %d messages to %s (round %d)", len(messages), model.model_id, round)

        call = asyncio.to_thread(model.generate, messages, tools=tools or None, settings=settings)
        try:
            if settings.timeout is not None:
                response = await asyncio.wait_for(call, settings.timeout)
            else:
                response = await call
        except asyncio.TimeoutError as exc:
            raise BackendError(
                "timeout", f"{model.model_id} did not respond within {settings.timeout}s"
            ) from exc
        except BackendError:
            raise
        except Exception as exc:
            raise BackendError("unknown", f"{model.model_id}: {exc}") from exc

        if cancellation is not None:
            cancellation.raise_if_cancelled("dispatch")
        return response

    def _requested_calls(self, calls: Optional[list[dict[str, Any]]], settings: ExecutionSettings) -> list[dict[str, Any]]:
        calls = list(calls or [])
        if calls and not settings.function_choice.offers_tools:
            logger.warning("Ignoring %d tool call(s): no functions were offered", len(calls))
            return []
        return calls

    async def _invoke_tool_calls(
        self,
        calls: list[dict[str, Any]],
        history: ChatHistory,
        settings: ExecutionSettings,
        cancellation: Optional[CancellationToken],
        request_index: int,
    ) -> tuple[list[ChatMessage], bool, Any]:
        """Run one round of tool calls in order.

        Returns the tool messages added, whether a filter asked to
        terminate, and the last tool result.
        """
        added: list[ChatMessage] = []
        terminate = False
        last: Any = None

        for index, call in enumerate(calls):
            if cancellation is not None:
                cancellation.raise_if_cancelled("tool invocation")
            call_id = str(call.get("id") or f"call_{request_index}_{index}")
            name = str(call.get("name", ""))
            arguments = call.get("input") or {}

            ok = True
            try:
                if isinstance(arguments, str):
                    try:
                        arguments = json.loads(arguments)
                    except json.JSONDecodeError as e:
                        raise ArgumentError(f"{name}: arguments are not valid JSON: {e}") from e
                if not isinstance(arguments, dict):
                    raise ArgumentError(f"{name}: arguments must be an object")
                function = self.registry.resolve(name)
                context = await self._invoke_function(
                    function,
                    arguments,
                    cancellation,
                    request_index=request_index,
                    function_index=index,
                    function_count=len(calls),
                )
                last = context.result
                content = _stringify(context.result)
                terminate = terminate or context.terminate
            except (UnknownFunctionError, ArgumentError, FunctionExecutionError) as exc:
                if settings.tool_failure_policy == ToolFailurePolicy.HARD:
                    if isinstance(exc, FunctionExecutionError):
                        raise
                    raise FunctionExecutionError(name, str(exc)) from exc
                logger.warning("Tool call %s failed: %s", name, exc)
                ok = False
                content = f"Error: {exc}"
                last = content

            message = ChatMessage(
                role=AuthorRole.TOOL, content=content, tool_call_id=call_id, name=name
            )
            history.add(message)
            added.append(message)
            log_tool_call(self.kernel_id, name, call_id, ok=ok)

        return added, terminate, last

    async def _run_chat(
        self,
        history: ChatHistory,
        settings: Optional[ExecutionSettings],
        cancellation: Optional[CancellationToken],
    ) -> _Turn:
        """Dispatch/tool loop over ``history`` (mutated in place)."""
        settings = self._effective_settings(settings)
        tools = self._tools_for(settings)
        turn = _Turn(reply=ChatMessage(role=AuthorRole.ASSISTANT))

        while True:
            response = await self._dispatch(
                history.messages, tools, settings, cancellation, turn.rounds
            )
            _merge_usage(turn.usage, response.usage)
            turn.model_id = response.model_id or turn.model_id
            calls = self._requested_calls(response.tool_calls, settings)

            if not calls or not settings.function_choice.auto_invoke:
                reply = ChatMessage(
                    role=AuthorRole.ASSISTANT,
                    content=response.content or "",
                    tool_calls=calls or None,
                )
                history.add(reply)
                turn.messages.append(reply)
                turn.reply = reply
                return turn

            if turn.rounds >= settings.max_tool_call_rounds:
                raise ToolCallLoopExceededError(settings.max_tool_call_rounds)
            turn.rounds += 1

            request = ChatMessage(
                role=AuthorRole.ASSISTANT, content=response.content or "", tool_calls=calls
            )
            history.add(request)
            turn.messages.append(request)
            added, terminate, last = await self._invoke_tool_calls(
                calls, history, settings, cancellation, turn.rounds - 1
            )
            turn.messages.extend(added)

            if terminate:
                logger.info("Tool loop terminated by filter after round %d", turn.rounds)
                turn.reply = ChatMessage(role=AuthorRole.ASSISTANT, content=_stringify(last))
                return turn

    # =========================================================================
    # INVOCATION
    # =========================================================================

    async def invoke_prompt(
        self,
        template: Union[str, PromptTemplate],
        arguments: Optional[dict[str, Any]] = None,
        settings: Optional[ExecutionSettings] = None,
        *,
        cancellation: Optional[CancellationToken] = None,
    ) -> FunctionResult:
        """Render, filter, dispatch and resolve tool calls; return the final content."""
        self._require_model()
        rendered = await self.render_prompt(
            template, arguments, cancellation=cancellation, escape_values=True
        )
        turn = await self._run_chat(parse_chat_prompt(rendered), settings, cancellation)
        return FunctionResult(
            value=turn.reply.content,
            rendered_prompt=rendered,
            tool_calls=list(turn.reply.tool_calls or []),
            usage=turn.usage,
            rounds=turn.rounds,
            metadata={"model_id": turn.model_id, "messages": turn.messages},
        )

    async def invoke_chat(
        self,
        history: ChatHistory,
        settings: Optional[ExecutionSettings] = None,
        *,
        append_to_history: bool = False,
        cancellation: Optional[CancellationToken] = None,
    ) -> ChatMessage:
        """Run one chat turn on a copy of ``history``.

        With ``append_to_history`` the turn's new messages (tool-round
        messages and the model's final reply) are appended to ``history``.
        """
        working = history.copy()
        turn = await self._run_chat(working, settings, cancellation)
        if append_to_history:
            for message in turn.messages:
                history.add(message)
        return turn.reply

    async def stream_chat(
        self,
        history: ChatHistory,
        settings: Optional[ExecutionSettings] = None,
        *,
        cancellation: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas as the backend produces them.

        Tool calls requested in a round are resolved once that round's
        stream ends, then the next round streams. ``history`` is not
        modified.
        """
        settings = self._effective_settings(settings)
        model = self._require_model()
        tools = self._tools_for(settings)
        working = history.copy()
        rounds = 0

        while True:
            if cancellation is not None:
                cancellation.raise_if_cancelled("stream")
            messages = working.messages
            log_dispatch(self.kernel_id, model.model_id, len(messages), len(tools), rounds)

            channel = DeltaChannel(self.config.stream_buffer_size)
            channel.feed(lambda msgs=messages: model.stream(msgs, tools=tools or None, settings=settings))
            if cancellation is not None:
                cancellation.on_cancel(channel.close)

            parts: list[str] = []
            requested: list[dict[str, Any]] = []
            try:
                while True:
                    try:
                        chunk = await channel.get(timeout=settings.timeout)
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError as exc:
                        raise BackendError(
                            "timeout", f"{model.model_id} stalled for {settings.timeout}s"
                        ) from exc
                    except BackendError:
                        raise
                    except Exception as exc:
                        raise BackendError("unknown", f"{model.model_id}: {exc}") from exc

                    if cancellation is not None:
                        cancellation.raise_if_cancelled("stream")
                    if chunk.tool_call:
                        requested.append(chunk.tool_call)
                    if chunk.content:
                        parts.append(chunk.content)
                        yield chunk.content
            finally:
                channel.close()
                if cancellation is not None:
                    cancellation.remove_callback(channel.close)

            if cancellation is not None:
                cancellation.raise_if_cancelled("stream")

            calls = self._requested_calls(requested, settings)
            if not calls:
                return
            if not settings.function_choice.auto_invoke:
                logger.debug("Stream ended with %d uninvoked tool call(s)", len(calls))
                return
            if rounds >= settings.max_tool_call_rounds:
                raise ToolCallLoopExceededError(settings.max_tool_call_rounds)
            rounds += 1

            working.add(
                ChatMessage(role=AuthorRole.ASSISTANT, content="".join(parts), tool_calls=calls)
            )
            _, terminate, last = await self._invoke_tool_calls(
                calls, working, settings, cancellation, rounds - 1
            )
            if terminate:
                text = _stringify(last)
                if text:
                    yield text
                return

    async def stream_prompt(
        self,
        template: Union[str, PromptTemplate],
        arguments: Optional[dict[str, Any]] = None,
        settings: Optional[ExecutionSettings] = None,
        *,
        cancellation: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """Render a prompt, then stream the reply."""
        rendered = await self.render_prompt(
            template, arguments, cancellation=cancellation, escape_values=True
        )
        stream = self.stream_chat(parse_chat_prompt(rendered), settings, cancellation=cancellation)
        async with contextlib.aclosing(stream):
            async for delta in stream:
                yield delta

    # =========================================================================
    # MEMORY
    # =========================================================================

    def _default_definition(self, records: Sequence[MemoryRecord]) -> CollectionDefinition:
        """Definition for a collection created by name on first use."""
        fields: list[str] = []
        for record in records:
            fields.extend(name for name in record.fields if name not in fields)
        int_keys = bool(records) and all(
            isinstance(r.key, int) and not isinstance(r.key, bool) for r in records
        )
        return CollectionDefinition(
            dimensions=self._require_embedder().embedding_dimension,
            fields=tuple(fields),
            key_type="int" if int_keys else "str",
            distance=DistanceFunction(self.config.similarity_metric),
        )

    def _collection(
        self,
        collection: Union[str, VectorStoreCollection],
        definition: Optional[CollectionDefinition] = None,
        records: Sequence[MemoryRecord] = (),
    ) -> VectorStoreCollection:
        if isinstance(collection, VectorStoreCollection):
            return collection
        if self.memory is None:
            raise KernelError("No memory store configured")
        if definition is None and collection not in self.memory.list_collection_names():
            definition = self._default_definition(records)
        return self.memory.get_collection(collection, definition)

    def _require_embedder(self) -> EmbeddingProtocol:
        if self.embedder is None:
            raise KernelError("No embedding backend configured")
        return self.embedder

    async def embed_and_upsert(
        self,
        collection: Union[str, VectorStoreCollection],
        records: Sequence[MemoryRecord],
        text_of: Callable[[MemoryRecord], str],
        *,
        definition: Optional[CollectionDefinition] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> list[Key]:
        """Embed each record's text in parallel, then upsert all of them at once.

        A collection named here that does not exist yet is created with
        ``definition``, or one derived from the embedder's dimension, the
        records' fields and key type, and ``config.similarity_metric``.
        """
        records = list(records)
        keys = await _embed_and_upsert(
            self._collection(collection, definition, records),
            records,
            text_of,
            self._require_embedder(),
            cancellation=cancellation,
        )
        logger.info("Upserted %d embedded records", len(keys))
        return keys

    async def search_memory(
        self,
        collection: Union[str, VectorStoreCollection],
        query: str,
        top_k: Optional[int] = None,
        filter: Optional[RecordFilter] = None,
        *,
        definition: Optional[CollectionDefinition] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> list[ScoredRecord]:
        """Embed ``query`` and search ``collection`` (top_k defaults to config).

        An unknown collection name searches an empty collection.
        """
        target = self._collection(collection, definition)
        embedder = self._require_embedder()
        if cancellation is not None:
            cancellation.raise_if_cancelled("search")
        vector = await asyncio.to_thread(embedder.embed, query)
        return await asyncio.to_thread(
            target.search, vector, top_k if top_k is not None else self.config.top_k, filter
        )
