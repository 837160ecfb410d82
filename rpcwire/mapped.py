"""Channels and connectors that map incoming and outgoing message types."""

from __future__ import annotations

from typing import Any, Callable

from .base import Connector, RecvStream, SendSink, TransportError


class MapError(TransportError):
    """Error receiving on a mapped stream."""


class InnerError(MapError):
    """The inner stream failed to receive a message."""

    def __init__(self, error: BaseException) -> None:
        super().__init__(error)
        self.error = error

    def __str__(self) -> str:
        return f"Inner error: {self.error}"


class ConversionError(MapError):
    """A received message could not be converted to the mapped type."""

    def __init__(self, value: Any = None) -> None:
        super().__init__(value)
        self.value = value

    def __str__(self) -> str:
        return "Conversion error"


class MappedRecvStream(RecvStream):
    """Converts every message of an inner stream.

    ``convert`` signals a message that does not fit by raising ``ValueError``
    or ``TypeError``; that becomes a ``ConversionError``. Errors of the inner
    stream are raised as ``InnerError``.
    """

    def __init__(self, inner: RecvStream, convert: Callable[[Any], Any]) -> None:
        self.inner = inner
        self._convert = convert

    async def recv(self) -> Any:
        try:
            item = await self.inner.recv()
        except StopAsyncIteration:
            raise
        except Exception as exc:
            raise InnerError(exc) from exc
        try:
            return self._convert(item)
        except (ValueError, TypeError) as exc:
            raise ConversionError(item) from exc


class MappedSendSink(SendSink):
    """Converts every message before passing it to an inner sink.

    The conversion always succeeds; errors of the inner sink pass through.
    """

    def __init__(self, inner: SendSink, convert: Callable[[Any], Any]) -> None:
        self.inner = inner
        self._convert = convert

    async def send(self, item: Any) -> None:
        await self.inner.send(self._convert(item))

    async def close(self) -> None:
        await self.inner.close()


class MappedConnector(Connector):
    """A connector whose channels carry mapped message types."""

    def __init__(
        self,
        inner: Connector,
        convert_in: Callable[[Any], Any],
        convert_out: Callable[[Any], Any],
    ) -> None:
        self.inner = inner
        self._convert_in = convert_in
        self._convert_out = convert_out

    async def open(self) -> tuple[MappedSendSink, MappedRecvStream]:
        send, recv = await self.inner.open()
        return (
            MappedSendSink(send, self._convert_out),
            MappedRecvStream(recv, self._convert_in),
        )