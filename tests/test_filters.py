"""Tests for fnkernel.filters: chain ordering, rules and built-in filters."""

import logging
from unittest.mock import MagicMock

import pytest

from fnkernel.filters import (
    FilterChain,
    FunctionInvocationContext,
    FunctionLoggingFilter,
    PromptLoggingFilter,
    PromptRenderContext,
    RedactionFilter,
)
from fnkernel.functions import function_from_callable
from fnkernel.protocols import FilterError


class Recorder:
    def __init__(self, name, trace):
        self.name = name
        self.trace = trace

    async def on_prompt_render(self, context, next):
        self.trace.append(f"{self.name}:pre")
        await next(context)
        self.trace.append(f"{self.name}:post")


class Uppercase:
    async def on_prompt_render(self, context, next):
        await next(context)
        context.rendered_prompt = context.rendered_prompt.upper()


def _handler(text="my secret plan", trace=None):
    async def handler(context):
        if trace is not None:
            trace.append("handler")
        context.rendered_prompt = text

    return handler


def _context():
    return PromptRenderContext(template="ignored")


class TestChainOrder:
    @pytest.mark.asyncio
    async def test_onion_order(self):
        trace = []
        chain = FilterChain([Recorder("a", trace), Recorder("b", trace)])
        await chain.run_prompt_render(_context(), _handler(trace=trace))
        assert trace == ["a:pre", "b:pre", "handler", "b:post", "a:post"]

    @pytest.mark.asyncio
    async def test_post_processing_runs_in_reverse(self):
        ctx = _context()
        chain = FilterChain([Uppercase(), RedactionFilter(["secret"], mask="[x]")])
        await chain.run_prompt_render(ctx, _handler())
        assert ctx.rendered_prompt == "MY [X] PLAN"

        ctx = _context()
        chain = FilterChain([RedactionFilter(["secret"], mask="[x]"), Uppercase()])
        await chain.run_prompt_render(ctx, _handler())
        assert ctx.rendered_prompt == "MY [x] PLAN"

    @pytest.mark.asyncio
    async def test_empty_chain_runs_handler(self):
        ctx = _context()
        await FilterChain().run_prompt_render(ctx, _handler("plain"))
        assert ctx.rendered_prompt == "plain"


class TestChainRules:
    @pytest.mark.asyncio
    async def test_next_twice_is_error(self):
        class Twice:
            async def on_prompt_render(self, context, next):
                await next(context)
                await next(context)

        with pytest.raises(FilterError, match="more than once"):
            await FilterChain([Twice()]).run_prompt_render(_context(), _handler())

    @pytest.mark.asyncio
    async def test_short_circuit_with_prompt(self):
        trace = []

        class Cached:
            async def on_prompt_render(self, context, next):
                context.rendered_prompt = "cached"

        ctx = _context()
        await FilterChain([Cached()]).run_prompt_render(ctx, _handler(trace=trace))
        assert ctx.rendered_prompt == "cached"
        assert trace == []

    @pytest.mark.asyncio
    async def test_short_circuit_without_prompt(self):
        class Skip:
            async def on_prompt_render(self, context, next):
                return None

        with pytest.raises(FilterError, match="without a rendered prompt"):
            await FilterChain([Skip()]).run_prompt_render(_context(), _handler())

    @pytest.mark.asyncio
    async def test_filter_body_exception_wrapped(self):
        class Broken:
            async def on_prompt_render(self, context, next):
                raise RuntimeError("bad filter")

        with pytest.raises(FilterError, match="Broken") as exc_info:
            await FilterChain([Broken()]).run_prompt_render(_context(), _handler())
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_handler_exception_passes_through(self):
        async def handler(context):
            raise ValueError("handler failed")

        trace = []
        with pytest.raises(ValueError, match="handler failed"):
            await FilterChain([Recorder("a", trace)]).run_prompt_render(_context(), handler)
        assert trace == ["a:pre"]

    @pytest.mark.asyncio
    async def test_translating_inner_exception_is_wrapped(self):
        class Translate:
            async def on_prompt_render(self, context, next):
                try:
                    await next(context)
                except ValueError:
                    raise KeyError("translated")

        async def handler(context):
            raise ValueError("inner")

        with pytest.raises(FilterError):
            await FilterChain([Translate()]).run_prompt_render(_context(), handler)


class TestChainRegistration:
    def test_rejects_object_without_hooks(self):
        with pytest.raises(ValueError, match="neither"):
            FilterChain().add(object())

    def test_both_hooks_register_twice(self):
        class Both:
            async def on_prompt_render(self, context, next):
                await next(context)

            async def on_function_invocation(self, context, next):
                await next(context)

        both = Both()
        chain = FilterChain([both])
        assert chain.render_filters == [both]
        assert chain.invocation_filters == [both]
        assert len(chain) == 2
        chain.remove(both)
        assert len(chain) == 0


def add(a: int, b: int) -> int:
    return a + b


class TestFunctionInvocation:
    @pytest.mark.asyncio
    async def test_filter_rewrites_arguments_and_result(self):
        class Double:
            async def on_function_invocation(self, context, next):
                context.arguments = {k: v * 2 for k, v in context.arguments.items()}
                await next(context)
                context.result = f"result={context.result}"

        async def handler(context):
            context.result = add(**context.arguments)

        ctx = FunctionInvocationContext(function=function_from_callable(add), arguments={"a": 1, "b": 2})
        await FilterChain([Double()]).run_function_invocation(ctx, handler)
        assert ctx.result == "result=6"

    @pytest.mark.asyncio
    async def test_logging_filter_success(self):
        log = MagicMock()

        async def handler(context):
            context.result = 1

        ctx = FunctionInvocationContext(function=function_from_callable(add, plugin_name="Math"))
        await FilterChain([FunctionLoggingFilter(log)]).run_function_invocation(ctx, handler)
        assert log.info.call_count == 2
        assert log.info.call_args_list[0].args == ("Invoking %s", "Math.add")
        log.warning.assert_not_called()

    @pytest.mark.asyncio
    async def test_logging_filter_failure_reraises(self):
        log = MagicMock()

        async def handler(context):
            raise ZeroDivisionError("nope")

        ctx = FunctionInvocationContext(function=function_from_callable(add, plugin_name="Math"))
        with pytest.raises(ZeroDivisionError):
            await FilterChain([FunctionLoggingFilter(log)]).run_function_invocation(ctx, handler)
        log.warning.assert_called_once()


class TestBuiltInRenderFilters:
    def test_redaction_longest_match(self):
        redactor = RedactionFilter(["pass", "password"])
        assert redactor.redact("PassWord: x, pass") == "*******: x, *******"

    def test_redaction_requires_words(self):
        with pytest.raises(ValueError):
            RedactionFilter([])
        with pytest.raises(ValueError):
            RedactionFilter(["ok", ""])

    @pytest.mark.asyncio
    async def test_prompt_logging(self):
        log = MagicMock()
        ctx = _context()
        await FilterChain([PromptLoggingFilter(log, level=logging.DEBUG)]).run_prompt_render(
            ctx, _handler("hello")
        )
        log.log.assert_called_once_with(logging.DEBUG, "Rendered prompt: %s", "hello")
