"""
Pytest fixtures and test configuration for fnkernel tests.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Iterator, Optional

import pytest

from fnkernel.functions import kernel_function
from fnkernel.protocols import ModelCapabilities, ModelChunk, ModelResponse
from fnkernel.registry import FunctionRegistry
from fnkernel.sources import plugin_from_object


class ScriptedModel:
    """Backend fake that replays scripted responses and records every call.

    ``responses`` feed generate(): each item is a ModelResponse, a plain
    string (content only) or an exception to raise. ``streams`` feed
    stream(): each item is a list of chunks (ModelChunk, str or exception).
    """

    def __init__(
        self,
        responses: Optional[list[Any]] = None,
        streams: Optional[list[list[Any]]] = None,
        model_id: str = "scripted-1",
        requires_atomic_tool_results: bool = False,
    ) -> None:
        self._responses = list(responses or [])
        self._streams = list(streams or [])
        self._model_id = model_id
        self._capabilities = ModelCapabilities(
            model_id=model_id,
            provider="test",
            requires_atomic_tool_results=requires_atomic_tool_results,
        )
        self.calls: list[SimpleNamespace] = []

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def capabilities(self) -> ModelCapabilities:
        return self._capabilities

    def _record(self, messages, tools, settings) -> None:
        self.calls.append(SimpleNamespace(messages=list(messages), tools=tools, settings=settings))

    def generate(self, messages, *, tools=None, settings=None) -> ModelResponse:
        self._record(messages, tools, settings)
        if not self._responses:
            raise AssertionError("ScriptedModel has no responses left")
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return ModelResponse(content=item, model_id=self._model_id)
        return item

    def stream(self, messages, *, tools=None, settings=None) -> Iterator[ModelChunk]:
        self._record(messages, tools, settings)
        if not self._streams:
            raise AssertionError("ScriptedModel has no streams left")
        for chunk in self._streams.pop(0):
            if isinstance(chunk, BaseException):
                raise chunk
            if isinstance(chunk, str):
                yield ModelChunk(content=chunk)
            else:
                yield chunk


class FakeEmbedder:
    """Embeds text as a fixed-size letter histogram; records calls."""

    def __init__(self, dimension: int = 4, fail_on: Optional[str] = None) -> None:
        self._dimension = dimension
        self.fail_on = fail_on
        self.calls: list[str] = []

    @property
    def embedding_dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail_on is not None and text == self.fail_on:
            raise RuntimeError(f"cannot embed {text!r}")
        vector = [0.0] * self._dimension
        for ch in text.lower():
            if ch.isalpha():
                vector[(ord(ch) - ord("a")) % self._dimension] += 1.0
        return vector

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class TimePlugin:
    """Clock functions."""

    def __init__(self) -> None:
        self.calls = 0

    @kernel_function(description="Get the current time in UTC")
    def GetCurrentUtcTime(self) -> str:
        self.calls += 1
        return "2024-01-01T00:00:00Z"


class MathPlugin:
    """Arithmetic."""

    @kernel_function(description="Add two integers")
    def Add(self, a: int, b: int) -> int:
        return a + b

    @kernel_function(description="Divide a by b")
    async def Divide(self, a: float, b: float) -> float:
        return a / b


def tool_call(name: str, input: Optional[dict] = None, id: str = "call_1") -> dict:
    return {"id": id, "name": name, "input": input or {}}


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    """Keep event logs out of the real home directory."""
    monkeypatch.setenv("FNKERNEL_DATA_DIR", str(tmp_path / "data"))
    return tmp_path / "data"


@pytest.fixture
def time_plugin():
    return TimePlugin()


@pytest.fixture
def registry(time_plugin):
    registry = FunctionRegistry()
    registry.register(plugin_from_object(time_plugin, "Time"))
    registry.register(plugin_from_object(MathPlugin(), "Math"))
    return registry


@pytest.fixture
def embedder():
    return FakeEmbedder()
