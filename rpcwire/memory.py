"""In-process transport over bounded asynchronous queues.

Both ends of every channel live in the same process. A queue ends for its
receiver once every send side has been closed or dropped, and sending fails
once every receive side has been dropped.
"""

from __future__ import annotations

import asyncio
import weakref
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from .base import Connector, Listener, LocalAddr, RecvStream, SendSink, TransportError

CHANNEL_BUFFER = 128


class _DroppedError(TransportError):
    """The other end of a channel is gone."""

    reason = "RemoteDropped"

    def __init__(self) -> None:
        super().__init__(self.reason)


class SendError(_DroppedError):
    """The receiving side of the channel was dropped."""

    reason = "ReceiverDropped"


class OpenError(_DroppedError):
    """The listener at the remote side of the connector was dropped."""


class AcceptError(_DroppedError):
    """Every connector of the listener was dropped."""


class _Disconnected(Exception):
    """The other side of a queue is gone."""


@contextmanager
def _disconnect_as(error: type[TransportError]) -> Iterator[None]:
    try:
        yield
    except _Disconnected:
        raise error() from None


class _Queue:
    """A bounded multi-producer queue that tracks how many ends are alive.

    A capacity of zero makes every send wait until its item was received.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError(f"capacity must not be negative: {capacity}")
        self._capacity = capacity
        self._items: deque[Any] = deque()
        self._senders = 0
        self._receivers = 0
        self._pushed = 0
        self._popped = 0
        self._waiters: list[asyncio.Future[None]] = []

    def attach(self, sender: bool) -> Callable[[], None]:
        """Count one more end; return the function that detaches it."""
        if sender:
            self._senders += 1
        else:
            self._receivers += 1
        return lambda: self._detach(sender)

    def _detach(self, sender: bool) -> None:
        if sender:
            self._senders -= 1
            if self._senders:
                return
        else:
            self._receivers -= 1
            if self._receivers:
                return
            self._items.clear()
        self._wake()

    def _wake(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                try:
                    waiter.set_result(None)
                except RuntimeError:
                    # The loop the waiter belongs to is already closed.
                    pass

    async def _wait(self) -> None:
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        await waiter

    def _require_receiver(self) -> None:
        if self._receivers == 0:
            raise _Disconnected

    async def put(self, item: Any) -> None:
        limit = max(self._capacity, 1)
        while True:
            self._require_receiver()
            if len(self._items) < limit:
                break
            await self._wait()
        ticket = self._pushed
        self._items.append(item)
        self._pushed += 1
        self._wake()
        if self._capacity == 0:
            while self._popped <= ticket:
                self._require_receiver()
                await self._wait()

    async def get(self) -> Any:
        while True:
            if self._items:
                item = self._items.popleft()
                self._popped += 1
                self._wake()
                return item
            if self._senders == 0:
                raise _Disconnected
            await self._wait()


class _QueueEnd:
    """One end attached to a queue, detached when closed or collected."""

    _sender = False

    def __init__(self, queue: _Queue) -> None:
        self._queue = queue
        self._release = weakref.finalize(self, queue.attach(self._sender))

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class MemorySendSink(_QueueEnd, SendSink):
    """The send side of an in-memory channel."""

    _sender = True

    async def send(self, item: Any) -> None:
        if not self._release.alive:
            raise SendError()
        with _disconnect_as(SendError):
            await self._queue.put(item)

    async def close(self) -> None:
        self._release()


class MemoryRecvStream(_QueueEnd, RecvStream):
    """The receive side of an in-memory channel; it never fails."""

    async def recv(self) -> Any:
        try:
            return await self._queue.get()
        except _Disconnected:
            raise StopAsyncIteration from None


class MemoryListener(_QueueEnd, Listener):
    """Accepts the channels opened by its connector. Created by ``channel``."""

    async def accept(self) -> tuple[MemorySendSink, MemoryRecvStream]:
        with _disconnect_as(AcceptError):
            return await self._queue.get()

    def local_addr(self) -> tuple[LocalAddr, ...]:
        return (LocalAddr.mem(),)


class MemoryConnector(_QueueEnd, Connector):
    """Opens channels to its listener. Created by ``channel``."""

    _sender = True

    async def open(self) -> tuple[MemorySendSink, MemoryRecvStream]:
        to_remote = _Queue(CHANNEL_BUFFER)
        to_local = _Queue(CHANNEL_BUFFER)
        remote = (MemorySendSink(to_local), MemoryRecvStream(to_remote))
        local = (MemorySendSink(to_remote), MemoryRecvStream(to_local))
        with _disconnect_as(OpenError):
            await self._queue.put(remote)
        return local


def channel(buffer: int) -> tuple[MemoryListener, MemoryConnector]:
    """Create a listener and a connector wired to it.

    ``buffer`` is how many opened channels may wait to be accepted; keep it
    low to get backpressure.
    """
    queue = _Queue(buffer)
    return MemoryListener(queue), MemoryConnector(queue)