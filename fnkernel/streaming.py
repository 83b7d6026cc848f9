"""
Bounded producer/consumer channel for streamed backend output.

A backend's ``stream()`` is a blocking iterator. DeltaChannel runs it on a
producer thread and hands items to an async consumer through a bounded
queue, so a slow consumer applies backpressure to the backend instead of
buffering an unbounded response.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from typing import Any, Callable, Iterable, Optional

logger = logging.getLogger(__name__)

# Producer re-checks for close() this often while the queue is full.
_PUT_POLL_SECONDS = 0.05


class _End:
    """Terminal marker; carries the producer's exception, if any."""

    __slots__ = ("error",)

    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.error = error


class DeltaChannel:
    """Single-producer, single-consumer bounded channel.

    Usage::

        channel = DeltaChannel(maxsize=16)
        channel.feed(lambda: backend.stream(messages))
        async for chunk in channel:
            ...

    The channel is not restartable. ``close()`` is idempotent, stops the
    producer at its next put and wakes a waiting consumer.
    """

    def __init__(self, maxsize: int = 16) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._queue: queue.Queue = queue.Queue(maxsize)
        self._closed = threading.Event()
        self._finished = False
        self._thread: Optional[threading.Thread] = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    # ---- Producer side ----

    def put(self, item: Any) -> bool:
        """Block until there is room. Returns False once the channel is closed."""
        while not self._closed.is_set():
            try:
                self._queue.put(item, timeout=_PUT_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def finish(self, error: Optional[BaseException] = None) -> None:
        """Signal end of stream (optionally with the producer's failure)."""
        self.put(_End(error))

    def feed(self, source: Callable[[], Iterable[Any]]) -> threading.Thread:
        """Start a producer thread draining ``source()`` into the channel."""
        if self._thread is not None:
            raise RuntimeError("DeltaChannel already has a producer")

        def produce() -> None:
            iterator = None
            try:
                iterator = iter(source())
                for item in iterator:
                    if not self.put(item):
                        logger.debug("Channel closed; producer stopping early")
                        break
            except Exception as exc:
                self.finish(exc)
            else:
                self.finish()
            finally:
                close = getattr(iterator, "close", None)
                if callable(close):
                    close()

        self._thread = threading.Thread(target=produce, name="fnkernel-stream", daemon=True)
        self._thread.start()
        return self._thread

    # ---- Consumer side ----

    def close(self) -> None:
        """Close the channel. Pending items are discarded."""
        if self._closed.is_set():
            return
        self._closed.set()
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        try:
            self._queue.put_nowait(_End())
        except queue.Full:
            pass

    async def get(self, timeout: Optional[float] = None) -> Any:
        """Next item. Raises StopAsyncIteration at end of stream.

        Raises:
            asyncio.TimeoutError: No item arrived within ``timeout`` seconds.
        """
        if self._finished or self._closed.is_set():
            raise StopAsyncIteration
        pending = asyncio.to_thread(self._queue.get)
        item = await (asyncio.wait_for(pending, timeout) if timeout else pending)
        if isinstance(item, _End):
            self._finished = True
            self._closed.set()
            if item.error is not None:
                raise item.error
            raise StopAsyncIteration
        if self._closed.is_set():
            # closed while we waited; the item raced the drain
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> DeltaChannel:
        return self

    async def __anext__(self) -> Any:
        return await self.get()
