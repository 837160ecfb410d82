"""HTTP/2 transport: every channel is one streaming POST request.

The request body carries the messages from connector to listener and the
response body carries the messages back. Both bodies hold length-prefixed
frames of serialized messages. Connections use HTTP/2 without TLS and
without an upgrade step.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections import deque
from typing import Any, Callable
from urllib.parse import urlsplit

import h2.config
import h2.connection
import h2.events
import h2.exceptions
from h2.errors import ErrorCodes
from h2.settings import SettingCodes

from .base import Connector, Listener, LocalAddr, RecvStream, SendSink, TransportError
from .framing import FramingError, deserialize, encode_frame, serialize, split_frames

_DEFAULT_WINDOW = 65535
_READ_SIZE = 256 * 1024
_ACCEPT_BUFFER = 32


class ChannelConfigError(TransportError, ValueError):
    """A channel configuration value is out of range."""

    def __init__(self, kind: str, value: int) -> None:
        super().__init__(f"{kind}({value})")
        self.kind = kind
        self.value = value


@dataclasses.dataclass(frozen=True)
class ChannelConfig:
    """Settings shared by connectors and listeners."""

    max_frame_size: int = 0xFFFFFF
    max_payload_size: int = 0xFFFFFF

    def __post_init__(self) -> None:
        if not 0x4000 <= self.max_frame_size <= 0xFFFFFF:
            raise ChannelConfigError("InvalidMaxFrameSize", self.max_frame_size)
        if not 4096 <= self.max_payload_size < 1024 * 1024 * 16:
            raise ChannelConfigError("InvalidMaxPayloadSize", self.max_payload_size)

    def with_max_frame_size(self, value: int) -> ChannelConfig:
        """Return a copy with another HTTP/2 frame size (0x4000 to 0xFFFFFF)."""
        return dataclasses.replace(self, max_frame_size=value)

    def with_max_payload_size(self, value: int) -> ChannelConfig:
        """Return a copy with another message size limit (4096 up to 16 MiB)."""
        return dataclasses.replace(self, max_payload_size=value)


class SendError(TransportError):
    """Sending a message failed."""


class SerializeError(SendError):
    """The message could not be serialized."""


class SizeError(SendError):
    """The serialized message is larger than the payload limit."""

    def __init__(self, size: int) -> None:
        super().__init__(f"SizeError({size})")
        self.size = size


class ReceiverDroppedError(SendError):
    """The stream was closed or reset."""

    def __init__(self) -> None:
        super().__init__("ReceiverDropped")


class RecvError(TransportError):
    """Receiving a message failed."""


class DeserializeError(RecvError):
    """A received frame could not be deserialized."""


class NetworkError(RecvError):
    """The network connection failed."""


class OpenError(TransportError):
    """A channel could not be opened."""

    def __init__(self, message: str = "RemoteDropped") -> None:
        super().__init__(message)


class AcceptError(TransportError):
    """A channel could not be accepted."""

    def __init__(self, message: str = "RemoteDropped") -> None:
        super().__init__(message)


class _StreamGone(Exception):
    """The stream or its connection can no longer carry data."""


class _Stream:
    """Per-stream state: received body chunks and the response headers."""

    def __init__(self, stream_id: int, response: asyncio.Future[dict[str, str]] | None) -> None:
        self.id = stream_id
        self.data: asyncio.Queue[bytes | None] = asyncio.Queue()
        self.response = response
        self.local_done = False
        self.remote_done = False


class _H2Connection:
    """One HTTP/2 connection over an asyncio stream pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        client_side: bool,
        config: ChannelConfig,
        on_request: Callable[[_H2Connection, _Stream], None] | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._on_request = on_request
        self._streams: dict[int, _Stream] = {}
        self._window = asyncio.Event()
        self.closed = False
        self._h2 = h2.connection.H2Connection(
            h2.config.H2Configuration(client_side=client_side, header_encoding="utf-8")
        )
        self._h2.initiate_connection()
        self._h2.update_settings(
            {
                SettingCodes.INITIAL_WINDOW_SIZE: config.max_frame_size,
                SettingCodes.MAX_FRAME_SIZE: config.max_frame_size,
            }
        )
        extra = config.max_frame_size - _DEFAULT_WINDOW
        if extra > 0:
            self._h2.increment_flow_control_window(extra)
        self._flush()
        self._task = asyncio.ensure_future(self._run())

    def _flush(self) -> None:
        data = self._h2.data_to_send()
        if data and not self._writer.is_closing():
            self._writer.write(data)

    def _wake(self) -> None:
        self._window.set()
        self._window = asyncio.Event()

    async def _run(self) -> None:
        try:
            while not self.closed:
                data = await self._reader.read(_READ_SIZE)
                if not data:
                    break
                for event in self._h2.receive_data(data):
                    self._handle(event)
                self._flush()
        except (OSError, h2.exceptions.ProtocolError):
            pass
        finally:
            self._shutdown()

    def _handle(self, event: h2.events.Event) -> None:
        if isinstance(event, h2.events.RequestReceived):
            stream = _Stream(event.stream_id, None)
            self._streams[event.stream_id] = stream
            if self._on_request is not None:
                self._on_request(self, stream)
        elif isinstance(event, h2.events.ResponseReceived):
            stream = self._streams.get(event.stream_id)
            if stream is not None and stream.response is not None and not stream.response.done():
                stream.response.set_result(dict(event.headers))
        elif isinstance(event, h2.events.DataReceived):
            try:
                self._h2.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
            except (h2.exceptions.ProtocolError, ValueError):
                pass
            stream = self._streams.get(event.stream_id)
            if stream is not None and not stream.remote_done and event.data:
                stream.data.put_nowait(event.data)
        elif isinstance(event, h2.events.StreamEnded):
            stream = self._streams.get(event.stream_id)
            if stream is not None:
                self._end_remote(stream, OpenError("stream ended without a response"))
        elif isinstance(event, h2.events.StreamReset):
            stream = self._streams.get(event.stream_id)
            if stream is not None:
                stream.local_done = True
                self._end_remote(stream, OpenError("stream reset by the remote side"))
            self._wake()
        elif isinstance(event, (h2.events.WindowUpdated, h2.events.RemoteSettingsChanged)):
            self._wake()
        elif isinstance(event, h2.events.ConnectionTerminated):
            self.closed = True

    def _end_remote(self, stream: _Stream, error: Exception) -> None:
        if not stream.remote_done:
            stream.remote_done = True
            stream.data.put_nowait(None)
        if stream.response is not None and not stream.response.done():
            stream.response.set_exception(error)
        self._forget(stream)

    def _forget(self, stream: _Stream) -> None:
        if stream.local_done and stream.remote_done:
            self._streams.pop(stream.id, None)

    def _shutdown(self) -> None:
        self.closed = True
        for stream in list(self._streams.values()):
            stream.local_done = True
            self._end_remote(stream, OpenError("connection closed"))
        self._wake()
        self._writer.close()

    def open_stream(self, headers: list[tuple[str, str]]) -> _Stream:
        """Start a request; raises h2's ProtocolError if that is not possible."""
        stream_id = self._h2.get_next_available_stream_id()
        self._h2.send_headers(stream_id, headers)
        stream = _Stream(stream_id, asyncio.get_running_loop().create_future())
        self._streams[stream_id] = stream
        self._flush()
        return stream

    def send_response(self, stream: _Stream, headers: list[tuple[str, str]]) -> None:
        self._h2.send_headers(stream.id, headers)
        self._flush()

    async def send_data(self, stream: _Stream, data: bytes) -> None:
        view = memoryview(data)
        offset = 0
        while offset < len(view):
            if self.closed or stream.local_done:
                raise _StreamGone
            try:
                room = min(
                    self._h2.local_flow_control_window(stream.id),
                    self._h2.max_outbound_frame_size,
                )
            except h2.exceptions.ProtocolError:
                raise _StreamGone from None
            if room <= 0:
                await self._window.wait()
                continue
            chunk = bytes(view[offset : offset + room])
            try:
                self._h2.send_data(stream.id, chunk)
            except h2.exceptions.ProtocolError:
                raise _StreamGone from None
            offset += len(chunk)
            self._flush()
            try:
                await self._writer.drain()
            except OSError:
                raise _StreamGone from None

    def end_stream(self, stream: _Stream) -> None:
        if stream.local_done or self.closed:
            return
        try:
            self._h2.end_stream(stream.id)
        except h2.exceptions.ProtocolError:
            pass
        stream.local_done = True
        self._flush()
        self._forget(stream)

    def reset(self, stream: _Stream) -> None:
        if not stream.local_done and not self.closed:
            try:
                self._h2.reset_stream(stream.id, error_code=ErrorCodes.CANCEL)
            except h2.exceptions.ProtocolError:
                pass
            self._flush()
        stream.local_done = True
        self._end_remote(stream, OpenError("stream reset"))

    async def wait_closed(self) -> None:
        await asyncio.wait({self._task})

    async def aclose(self) -> None:
        if not self.closed:
            try:
                self._h2.close_connection()
                self._flush()
            except h2.exceptions.ProtocolError:
                pass
        self._writer.close()
        self._task.cancel()
        await asyncio.wait({self._task})
        try:
            await self._writer.wait_closed()
        except OSError:
            pass


class HttpSendSink(SendSink):
    """Sends framed messages on the body of one HTTP/2 stream."""

    def __init__(self, conn: _H2Connection, stream: _Stream, config: ChannelConfig) -> None:
        self._conn = conn
        self._stream = stream
        self._config = config
        self._failed = False

    def __repr__(self) -> str:
        return "HttpSendSink()"

    def _frame(self, item: Any) -> bytes:
        try:
            payload = serialize(item)
        except FramingError as exc:
            raise SerializeError(str(exc)) from exc
        if len(payload) > self._config.max_payload_size:
            raise SizeError(len(payload))
        return encode_frame(payload, self._config.max_payload_size)

    async def send(self, item: Any) -> None:
        if self._failed:
            raise ReceiverDroppedError()
        try:
            frame = self._frame(item)
        except SendError:
            # The stream is aborted so that the remote side sees it end early.
            self._failed = True
            self._conn.reset(self._stream)
            raise
        try:
            await self._conn.send_data(self._stream, frame)
        except _StreamGone:
            raise ReceiverDroppedError() from None

    async def close(self) -> None:
        self._conn.end_stream(self._stream)


class HttpRecvStream(RecvStream):
    """Receives framed messages from the body of one HTTP/2 stream.

    A frame that cannot be deserialized is raised as ``DeserializeError``;
    the stream goes on with the next frame.
    """

    def __init__(self, stream: _Stream) -> None:
        self._stream = stream
        self._buf = bytearray()
        self._pending: deque[tuple[Any, RecvError | None]] = deque()
        self._ended = False

    def __repr__(self) -> str:
        return "HttpRecvStream()"

    def _has_frame(self) -> bool:
        if len(self._buf) < 4:
            return False
        return len(self._buf) >= 4 + int.from_bytes(self._buf[:4], "big")

    async def recv(self) -> Any:
        while not self._pending:
            if self._ended:
                raise StopAsyncIteration
            chunk = await self._stream.data.get()
            if chunk is None:
                self._ended = True
                continue
            self._buf.extend(chunk)
            if not self._has_frame():
                continue
            frames, used = split_frames(bytes(self._buf))
            del self._buf[:used]
            for payload in frames:
                try:
                    self._pending.append((deserialize(payload), None))
                except FramingError as exc:
                    self._pending.append((None, DeserializeError(str(exc))))
        value, error = self._pending.popleft()
        if error is not None:
            raise error
        return value


class HttpConnector(Connector):
    """Opens channels as POST requests to an ``http://`` URI."""

    def __init__(self, uri: str, config: ChannelConfig | None = None) -> None:
        parts = urlsplit(uri)
        if parts.scheme != "http" or not parts.hostname:
            raise ValueError(f"expected an http:// URI with a host, got {uri!r}")
        self.uri = uri
        self.config = config if config is not None else ChannelConfig()
        self._host = parts.hostname
        self._port = parts.port or 80
        self._authority = parts.netloc
        self._path = parts.path or "/"
        if parts.query:
            self._path += "?" + parts.query
        self._conn: _H2Connection | None = None
        self._lock: asyncio.Lock | None = None

    def __repr__(self) -> str:
        return f"HttpConnector(uri={self.uri!r}, config={self.config!r})"

    async def _connection(self) -> _H2Connection:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._conn is None or self._conn.closed:
                reader, writer = await asyncio.open_connection(self._host, self._port)
                self._conn = _H2Connection(reader, writer, client_side=True, config=self.config)
            return self._conn

    async def open(self) -> tuple[HttpSendSink, HttpRecvStream]:
        try:
            conn = await self._connection()
        except OSError as exc:
            raise OpenError(str(exc)) from exc
        headers = [
            (":method", "POST"),
            (":scheme", "http"),
            (":authority", self._authority),
            (":path", self._path),
        ]
        try:
            stream = conn.open_stream(headers)
        except h2.exceptions.ProtocolError as exc:
            raise OpenError(str(exc)) from exc
        assert stream.response is not None
        await stream.response
        return HttpSendSink(conn, stream, self.config), HttpRecvStream(stream)

    async def close(self) -> None:
        """Close the underlying connection; a later ``open`` reconnects."""
        if self._conn is not None:
            await self._conn.aclose()
            self._conn = None


class HttpListener(Listener):
    """An HTTP/2 server whose every request becomes an accepted channel.

    Create it with ``serve``; ``close`` stops the server and all of its
    connections.
    """

    def __init__(self, config: ChannelConfig | None = None) -> None:
        self.config = config if config is not None else ChannelConfig()
        self._queue: asyncio.Queue[tuple[HttpSendSink, HttpRecvStream]] = asyncio.Queue(
            _ACCEPT_BUFFER
        )
        self._closed = asyncio.Event()
        self._conns: set[_H2Connection] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._server: asyncio.AbstractServer | None = None
        self._local_addr: tuple[LocalAddr, ...] = ()

    def __repr__(self) -> str:
        addrs = ", ".join(str(addr) for addr in self._local_addr)
        return f"HttpListener({addrs})"

    @classmethod
    async def serve(cls, host: str, port: int, config: ChannelConfig | None = None) -> HttpListener:
        """Start a server on ``host`` and ``port``; port 0 picks a free one."""
        listener = cls(config)
        server = await asyncio.start_server(listener._on_connect, host, port)
        listener._server = server
        sockname = server.sockets[0].getsockname()
        listener._local_addr = (LocalAddr.socket(sockname[0], sockname[1]),)
        return listener

    async def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._closed.is_set():
            writer.close()
            return
        conn = _H2Connection(
            reader, writer, client_side=False, config=self.config, on_request=self._on_request
        )
        self._conns.add(conn)
        try:
            await conn.wait_closed()
        finally:
            self._conns.discard(conn)

    def _on_request(self, conn: _H2Connection, stream: _Stream) -> None:
        task = asyncio.ensure_future(self._deliver(conn, stream))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, conn: _H2Connection, stream: _Stream) -> None:
        await self._queue.put((HttpSendSink(conn, stream, self.config), HttpRecvStream(stream)))
        try:
            conn.send_response(stream, [(":status", "200")])
        except h2.exceptions.ProtocolError:
            conn.reset(stream)

    async def accept(self) -> tuple[HttpSendSink, HttpRecvStream]:
        if self._closed.is_set():
            raise AcceptError()
        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (getter, closer):
                if not task.done():
                    task.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        raise AcceptError()

    def local_addr(self) -> tuple[LocalAddr, ...]:
        return self._local_addr

    async def close(self) -> None:
        """Stop accepting connections and close the open ones."""
        self._closed.set()
        if self._server is not None:
            self._server.close()
        for conn in list(self._conns):
            await conn.aclose()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.wait(set(self._tasks))
        if self._server is not None:
            await self._server.wait_closed()