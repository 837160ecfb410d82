"""Length-prefixed framing of serialized messages over byte streams.

Every frame is a four byte big-endian length followed by that many bytes of
payload. Payloads are messages serialized with MessagePack.
"""

from __future__ import annotations

import asyncio
import struct
from typing import Any, Protocol

import msgpack

from .base import RecvStream, SendSink, TransportError

MAX_FRAME_LENGTH = 1024 * 1024 * 16
"""Default limit for the payload size of a single frame."""

_PREFIX = struct.Struct(">I")
_PREFIX_LEN = _PREFIX.size
_U32_MAX = 0xFFFFFFFF


class FramingError(TransportError):
    """A message could not be serialized, deserialized or framed."""


class FrameTooLargeError(FramingError):
    """A frame is larger than the configured maximum."""

    def __init__(self, length: int, max_frame_length: int) -> None:
        super().__init__(f"frame size too big: {length} > {max_frame_length}")
        self.length = length
        self.max_frame_length = max_frame_length


class _ByteWriter(Protocol):
    def write(self, data: bytes) -> Any: ...

    async def drain(self) -> None: ...

    def close(self) -> Any: ...

    async def wait_closed(self) -> None: ...


class _ByteReader(Protocol):
    async def readexactly(self, n: int) -> bytes: ...


def serialize(item: Any) -> bytes:
    """Serialize one message to bytes."""
    try:
        return msgpack.packb(item, use_bin_type=True)
    except (TypeError, ValueError, OverflowError) as exc:
        raise FramingError(f"cannot serialize message: {exc}") from exc


def deserialize(data: bytes) -> Any:
    """Deserialize one message from exactly the given bytes."""
    try:
        return msgpack.unpackb(bytes(data), raw=False, strict_map_key=False)
    except (msgpack.UnpackException, ValueError, TypeError) as exc:
        raise FramingError(f"cannot deserialize message: {exc}") from exc


def encode_frame(payload: bytes, max_frame_length: int = MAX_FRAME_LENGTH) -> bytes:
    """Prefix a payload with its length, refusing payloads over the limit."""
    length = len(payload)
    if length > max_frame_length or length > _U32_MAX:
        raise FrameTooLargeError(length, max_frame_length)
    return _PREFIX.pack(length) + bytes(payload)


def try_get_length_prefixed(buf: bytes) -> bytes | None:
    """Return the payload of the first complete frame in ``buf``, if any."""
    if len(buf) < _PREFIX_LEN:
        return None
    (length,) = _PREFIX.unpack_from(buf)
    end = _PREFIX_LEN + length
    if len(buf) < end:
        return None
    return bytes(buf[_PREFIX_LEN:end])


def split_frames(buf: bytes) -> tuple[list[bytes], int]:
    """Split all complete frames off the start of ``buf``.

    Returns the payloads and the number of bytes they took up; whatever
    follows is an incomplete frame.
    """
    view = memoryview(buf)
    frames: list[bytes] = []
    consumed = 0
    while (payload := try_get_length_prefixed(view[consumed:])) is not None:
        frames.append(payload)
        consumed += _PREFIX_LEN + len(payload)
    return frames, consumed


class FramedWriter(SendSink):
    """Writes serialized, length-prefixed messages to a byte writer."""

    def __init__(self, writer: _ByteWriter, max_frame_length: int = MAX_FRAME_LENGTH) -> None:
        self._writer = writer
        self.max_frame_length = max_frame_length

    def __repr__(self) -> str:
        return "FramedWriter()"

    async def send(self, item: Any) -> None:
        frame = encode_frame(serialize(item), self.max_frame_length)
        self._writer.write(frame)
        await self._writer.drain()

    async def close(self) -> None:
        self._writer.close()
        await self._writer.wait_closed()

    def into_inner(self) -> _ByteWriter:
        """Return the underlying byte writer, to use it without framing."""
        return self._writer


class FramedReader(RecvStream):
    """Reads length-prefixed, serialized messages from a byte reader."""

    def __init__(self, reader: _ByteReader, max_frame_length: int = MAX_FRAME_LENGTH) -> None:
        self._reader = reader
        self.max_frame_length = max_frame_length

    def __repr__(self) -> str:
        return "FramedReader()"

    async def recv(self) -> Any:
        try:
            prefix = await self._reader.readexactly(_PREFIX_LEN)
        except asyncio.IncompleteReadError as exc:
            if not exc.partial:
                raise StopAsyncIteration from None
            raise FramingError("bytes remaining on stream") from None
        (length,) = _PREFIX.unpack(prefix)
        if length > self.max_frame_length:
            raise FrameTooLargeError(length, self.max_frame_length)
        try:
            payload = await self._reader.readexactly(length)
        except asyncio.IncompleteReadError:
            raise FramingError("bytes remaining on stream") from None
        return deserialize(payload)

    def __aiter__(self) -> FramedReader:
        return self

    async def __anext__(self) -> Any:
        return await self.recv()

    def into_inner(self) -> _ByteReader:
        """Return the underlying byte reader, to use it without framing."""
        return self._reader