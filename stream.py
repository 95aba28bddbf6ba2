# stream.py
"""
Owns the single live inbound subscription of a session.

A reader task pulls events from the client's event source into a bounded queue;
a consumer task hands them to `on_message` one at a time in arrival order.

    Idle -> Starting -> Streaming -> Stopping -> Idle
    Idle -> Starting -> Failed -> Idle
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from config import settings
from errors import AlreadyActive, SyncError, TransportError
from models import RawMessage

logger = logging.getLogger(__name__)

OnMessage = Callable[[RawMessage], Union[None, Awaitable[None]]]
OnError = Callable[[SyncError], Any]

_STOP = object()


class StreamState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    STOPPING = "stopping"
    FAILED = "failed"


class StreamManager:
    def __init__(self, on_error: Optional[OnError] = None, queue_maxsize: Optional[int] = None,
                 stop_timeout: Optional[float] = None):
        self.on_error = on_error
        self.queue_maxsize = int(queue_maxsize or settings.get("stream_queue_maxsize", 256))
        self.stop_timeout = float(stop_timeout or settings.get("stream_stop_timeout_secs", 5))
        self.state = StreamState.IDLE
        self.last_error: Optional[SyncError] = None
        self.client: Any = None
        self._generation = 0
        self._source: Any = None
        self._queue: Optional[asyncio.Queue] = None
        self._reader: Optional[asyncio.Task] = None
        self._consumer: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self.state in (StreamState.STARTING, StreamState.STREAMING)

    async def start(self, client: Any, on_message: OnMessage) -> None:
        """Open the live subscription. Only one may run; use `replace()` to hand over."""
        if self.active:
            raise AlreadyActive("a subscription is already running")
        if self.state is StreamState.STOPPING:
            raise AlreadyActive("previous subscription is still stopping")

        self.state = StreamState.STARTING
        self.last_error = None
        self.client = client
        self._generation += 1
        generation = self._generation
        try:
            source = await client.subscribe()
        except Exception as exc:
            err = TransportError(f"subscription open failed: {exc}")
            if generation == self._generation:
                self._fail(generation, err)
            raise err from exc

        if generation != self._generation:
            # stop() ran while the open call was pending
            await self._close_source(source)
            return

        self._source = source
        self._queue = asyncio.Queue(maxsize=self.queue_maxsize)
        self._reader = asyncio.create_task(self._read(generation, source, self._queue))
        self._consumer = asyncio.create_task(self._consume(generation, self._queue, on_message))
        self.state = StreamState.STREAMING
        logger.info("Live subscription streaming (generation %d)", generation)

    async def stop(self) -> None:
        """Stop the subscription; no new callbacks start once this returns.

        Safe to call repeatedly or concurrently. Waits at most `stop_timeout`
        for the transport to release.
        """
        if self.state in (StreamState.IDLE, StreamState.STOPPING):
            return
        if self.state is StreamState.FAILED:
            self.state = StreamState.IDLE
            self.client = None
            return

        self.state = StreamState.STOPPING
        self._generation += 1
        reader, consumer, queue, source = self._reader, self._consumer, self._queue, self._source
        self._reader = self._consumer = self._queue = self._source = None

        if reader is not None:
            reader.cancel()
        if queue is not None:
            _wake(queue)
        if source is not None:
            await self._close_source(source)
        await self._settle(reader, consumer)

        self.client = None
        self.state = StreamState.IDLE
        logger.info("Live subscription stopped")

    async def replace(self, client: Any, on_message: OnMessage) -> None:
        """Hand the session over to a new client: stop the old stream first."""
        await self.stop()
        await self.start(client, on_message)

    # -------------------- workers --------------------
    async def _read(self, generation: int, source: Any, queue: asyncio.Queue) -> None:
        try:
            async for raw in source:
                if generation != self._generation:
                    return
                await queue.put(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Live subscription read failed: %s", exc)
            await self._abort(generation, TransportError(f"subscription read failed: {exc}"))
            return
        if generation == self._generation:
            await self._abort(generation, TransportError("subscription closed by transport"))

    async def _consume(self, generation: int, queue: asyncio.Queue, on_message: OnMessage) -> None:
        while True:
            raw = await queue.get()
            if raw is _STOP or generation != self._generation:
                return
            try:
                result = on_message(raw)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Live message handler failed")
                await self._abort(generation, TransportError(f"message handler failed: {exc}"))
                return

    async def _abort(self, generation: int, err: SyncError) -> None:
        """Tear down from inside a worker after an unexpected failure."""
        if generation != self._generation or self.state is not StreamState.STREAMING:
            return
        reader, queue, source = self._reader, self._queue, self._source
        self._reader = self._consumer = self._queue = self._source = None
        self._fail(generation, err)
        current = asyncio.current_task()
        if reader is not None and reader is not current:
            reader.cancel()
        if queue is not None:
            _wake(queue)
        if source is not None:
            await self._close_source(source)

    def _fail(self, generation: int, err: SyncError) -> None:
        self._generation = generation + 1
        self.state = StreamState.FAILED
        self.last_error = err
        logger.error("Live subscription failed: %s", err)
        if self.on_error is not None:
            try:
                self.on_error(err)
            except Exception:
                logger.exception("Subscription error callback failed")

    async def _close_source(self, source: Any) -> None:
        close = getattr(source, "close", None) or getattr(source, "aclose", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("Event source did not close within %.1fs; abandoning it", self.stop_timeout)
        except Exception as exc:
            logger.warning("Event source close failed: %s", exc)

    async def _settle(self, *tasks: Optional[asyncio.Task]) -> None:
        pending = [t for t in tasks if t is not None and t is not asyncio.current_task()]
        if not pending:
            return
        done, still_running = await asyncio.wait(pending, timeout=self.stop_timeout)
        for task in still_running:
            logger.warning("Subscription worker did not finish in time; cancelling")
            task.cancel()
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning("Subscription worker ended with %r", task.exception())


def _wake(queue: asyncio.Queue) -> None:
    """Drop queued events and leave a stop marker for the consumer."""
    while True:
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            break
    queue.put_nowait(_STOP)
