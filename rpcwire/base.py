"""Core transport abstractions: addresses, channel ends, connectors and listeners.

A connector opens bidirectional typed channels to a remote side; a listener
accepts them. Either way, a channel is a pair of a send sink and a receive
stream. Channels are unrelated to services: they only move messages.
"""

from __future__ import annotations

import abc
import asyncio
import ipaddress
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from .mapped import MappedConnector


class TransportError(Exception):
    """Base class for errors raised by transports."""


@dataclass(frozen=True)
class LocalAddr:
    """An address a listener is bound to: either a socket address or in-memory."""

    host: str | None = None
    port: int | None = None

    @classmethod
    def socket(cls, host: str, port: int) -> LocalAddr:
        """A socket address made of an IP address and a port."""
        ip = ipaddress.ip_address(host)
        if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 0xFFFF:
            raise ValueError(f"invalid port: {port!r}")
        return cls(str(ip), port)

    @classmethod
    def mem(cls) -> LocalAddr:
        """The in-memory address."""
        return cls()

    @property
    def is_mem(self) -> bool:
        return self.host is None

    def __str__(self) -> str:
        if self.host is None:
            return "mem"
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class SendSink(abc.ABC):
    """The send side of a bidirectional typed channel."""

    @abc.abstractmethod
    async def send(self, item: Any) -> None:
        """Send one message."""

    async def close(self) -> None:
        """Finish the send side; the default does nothing."""

    async def __aenter__(self) -> SendSink:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class RecvStream(abc.ABC):
    """The receive side of a bidirectional typed channel.

    ``recv`` returns the next message, raises the transport's error for a
    message that could not be received, and raises ``StopAsyncIteration``
    once the stream has ended.
    """

    @abc.abstractmethod
    async def recv(self) -> Any:
        """Receive the next message."""

    def __aiter__(self) -> RecvStream:
        return self

    async def __anext__(self) -> Any:
        return await self.recv()


class Connector(abc.ABC):
    """A connection to a remote side that opens typed channels."""

    @abc.abstractmethod
    async def open(self) -> tuple[SendSink, RecvStream]:
        """Open a channel and return its send and receive sides."""

    def map(
        self,
        convert_in: Callable[[Any], Any],
        convert_out: Callable[[Any], Any],
    ) -> MappedConnector:
        """Map the incoming and outgoing message types of this connector."""
        from .mapped import MappedConnector

        return MappedConnector(self, convert_in, convert_out)


class Listener(abc.ABC):
    """Accepts typed channels from any connected remote side."""

    @abc.abstractmethod
    async def accept(self) -> tuple[SendSink, RecvStream]:
        """Wait for the next channel and return its send and receive sides."""

    @abc.abstractmethod
    def local_addr(self) -> tuple[LocalAddr, ...]:
        """The local addresses this listener is bound to."""


class DummyListener(Listener):
    """A listener that never accepts anything and is bound nowhere.

    Useful as a default where a listener is optional.
    """

    async def accept(self) -> tuple[SendSink, RecvStream]:
        never: asyncio.Future[tuple[SendSink, RecvStream]] = (
            asyncio.get_running_loop().create_future()
        )
        return await never

    def local_addr(self) -> tuple[LocalAddr, ...]:
        return ()