"""A transport that combines two other transports.

Each side is optional. A combined connector opens its channels on the first
side that is configured; a combined listener accepts on every configured side
at once and hands out whichever channel arrives first.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any

from .base import Connector, Listener, LocalAddr, RecvStream, SendSink, TransportError

_SIDES = ("a", "b")


def _check_side(side: str) -> str:
    if side not in _SIDES:
        raise ValueError(f"side must be 'a' or 'b', not {side!r}")
    return side


class CombinedError(TransportError):
    """An error raised by one side of a combined transport."""

    def __init__(self, side: str, error: BaseException) -> None:
        super().__init__(side, error)
        self.side = _check_side(side)
        self.error = error

    def __str__(self) -> str:
        return f"{self.side.upper()}({self.error})"


class SendError(CombinedError):
    """Sending on one side failed."""


class RecvError(CombinedError):
    """Receiving on one side failed."""


class OpenError(CombinedError):
    """Opening a channel on one side failed."""


class NoChannelError(OpenError):
    """Neither side of the combined connector is configured."""

    def __init__(self) -> None:
        TransportError.__init__(self, "NoChannel")
        self.side = None
        self.error = None

    def __str__(self) -> str:
        return "NoChannel"


class AcceptError(CombinedError):
    """Accepting a channel on one side failed."""


class CombinedSendSink(SendSink):
    """A send sink of one side, with its errors tagged by that side."""

    def __init__(self, side: str, inner: SendSink) -> None:
        self.side = _check_side(side)
        self.inner = inner

    async def send(self, item: Any) -> None:
        try:
            await self.inner.send(item)
        except Exception as exc:
            raise SendError(self.side, exc) from exc

    async def close(self) -> None:
        try:
            await self.inner.close()
        except Exception as exc:
            raise SendError(self.side, exc) from exc


class CombinedRecvStream(RecvStream):
    """A receive stream of one side, with its errors tagged by that side."""

    def __init__(self, side: str, inner: RecvStream) -> None:
        self.side = _check_side(side)
        self.inner = inner

    async def recv(self) -> Any:
        try:
            return await self.inner.recv()
        except StopAsyncIteration:
            raise
        except Exception as exc:
            raise RecvError(self.side, exc) from exc


def _wrap(side: str, pair: tuple[SendSink, RecvStream]) -> tuple[CombinedSendSink, CombinedRecvStream]:
    send, recv = pair
    return CombinedSendSink(side, send), CombinedRecvStream(side, recv)


class CombinedConnector(Connector):
    """Opens channels on ``a`` if it is set, otherwise on ``b``."""

    def __init__(self, a: Connector | None = None, b: Connector | None = None) -> None:
        self.a = a
        self.b = b

    def __repr__(self) -> str:
        return f"CombinedConnector(a={self.a!r}, b={self.b!r})"

    async def open(self) -> tuple[CombinedSendSink, CombinedRecvStream]:
        for side, connector in (("a", self.a), ("b", self.b)):
            if connector is None:
                continue
            try:
                pair = await connector.open()
            except Exception as exc:
                raise OpenError(side, exc) from exc
            return _wrap(side, pair)
        raise NoChannelError()


class CombinedListener(Listener):
    """Accepts channels on both configured listeners.

    With neither listener configured, ``accept`` waits forever instead of
    failing.
    """

    def __init__(self, a: Listener | None = None, b: Listener | None = None) -> None:
        self.a = a
        self.b = b
        addrs: list[LocalAddr] = []
        for listener in (a, b):
            if listener is not None:
                addrs.extend(listener.local_addr())
        self._local_addr = tuple(addrs)
        self._ready: deque[tuple[str, asyncio.Future[Any]]] = deque()

    def __repr__(self) -> str:
        return f"CombinedListener(a={self.a!r}, b={self.b!r})"

    async def accept(self) -> tuple[CombinedSendSink, CombinedRecvStream]:
        if not self._ready:
            tasks = {
                asyncio.ensure_future(listener.accept()): side
                for side, listener in (("a", self.a), ("b", self.b))
                if listener is not None
            }
            if not tasks:
                never: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
                await never
            try:
                await asyncio.wait(set(tasks), return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()
                # Keep a channel that finished alongside the winner for the next call.
                self._ready.extend(
                    (side, task)
                    for task, side in tasks.items()
                    if task.done() and not task.cancelled()
                )
        side, task = self._ready.popleft()
        try:
            pair = task.result()
        except Exception as exc:
            raise AcceptError(side, exc) from exc
        return _wrap(side, pair)

    def local_addr(self) -> tuple[LocalAddr, ...]:
        return self._local_addr

    def into_inner(self) -> tuple[Listener | None, Listener | None]:
        """Return the two inner listeners."""
        return self.a, self.b