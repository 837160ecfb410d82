# rpcwire

Typed, bidirectional message channels for asyncio programs.

A **connector** (`rpcwire.base.Connector`) opens channels to a remote side. A
**listener** (`rpcwire.base.Listener`) accepts the channels that remote sides
open. Both return a pair `(send, recv)`. `send` is a `SendSink` with
`send(item)` and `close()`, and it also works as an async context manager
that closes on exit. `recv` is a `RecvStream` with `recv()`, and you can
iterate over it with `async for`. When the stream has ended, `recv()` raises
`StopAsyncIteration`.

Channels carry messages and nothing else. They know nothing about services.

## Installation

```
pip install rpcwire
```

## Transports

### In memory: `rpcwire.memory`

`channel(buffer)` returns a `MemoryListener` and a `MemoryConnector` that are
wired to each other. `buffer` sets how many opened channels may wait to be
accepted, so a small value gives backpressure.

- Each channel buffers up to 128 messages in each direction.
- A receive stream ends once every send side feeding it has been closed or
  garbage-collected.
- Sending after the receiving side is gone raises `SendError`.
- `open()` raises `OpenError` when the listener is gone.
- `accept()` raises `AcceptError` when the connector is gone.
- The listener's `local_addr()` is `(LocalAddr.mem(),)`, which prints as `mem`.

### HTTP/2: `rpcwire.http`

Every channel is one streaming POST request. The request body carries messages
from the connector to the listener, and the response body carries messages
back. The connection is plain HTTP/2 with no TLS and no upgrade step.

- `await HttpListener.serve(host, port, config=None)` starts a server. Port 0
  picks a free port, and `local_addr()` reports the address that was bound.
  `accept()` returns the next channel, and `close()` stops the server and all
  of its connections.
- `HttpConnector(uri, config=None)` takes an `http://` URI. It opens one
  connection and reuses it for every channel. `close()` drops that
  connection, and a later `open()` connects again.
- `ChannelConfig(max_frame_size=0xFFFFFF, max_payload_size=0xFFFFFF)` is an
  immutable configuration. `with_max_frame_size()` and
  `with_max_payload_size()` return changed copies. The frame size must lie
  between 0x4000 and 0xFFFFFF. The payload size must be at least 4096 and
  below 16 MiB. A value out of range raises `ChannelConfigError`.

Sending errors:

- A message that cannot be serialized raises `SerializeError`.
- A message larger than `max_payload_size` raises `SizeError`.

Either of these errors resets the stream, so the other side sees it end
early. After that, and on a stream that was reset or whose connection closed,
`send` raises `ReceiverDroppedError`.

On the receiving side, a frame that cannot be deserialized raises
`DeserializeError` and the stream goes on with the next frame.

### Combining two transports: `rpcwire.combined`

- `CombinedConnector(a, b)` opens its channels on `a` if `a` is set, and
  otherwise on `b`. If neither is set it raises `NoChannelError`. Errors from
  one side are wrapped in `OpenError`, `SendError` or `RecvError`, and the
  wrapper's `side` (`"a"` or `"b"`) and `error` tell you where the error came
  from.
- `CombinedListener(a, b)` accepts on both listeners at once and returns
  whichever channel arrives first. Its `local_addr()` joins the addresses of
  both listeners. With neither listener set, `accept()` waits forever.
  `into_inner()` returns `(a, b)`.

### Mapping message types: `rpcwire.mapped`

`connector.map(convert_in, convert_out)` returns a `MappedConnector` built on
that connector.

- Outgoing messages pass through `convert_out`.
- Incoming messages pass through `convert_in`. If `convert_in` raises
  `ValueError` or `TypeError`, the stream raises `ConversionError`.
- Errors from the inner stream are raised as `InnerError`.

### Placeholder: `rpcwire.base.DummyListener`

`DummyListener` never accepts a channel and is bound to no address. It is
useful as a default where a listener is optional.

## Wire format: `rpcwire.framing`

Each message is serialized with MessagePack (`serialize`, `deserialize`) and
sent as a frame: a four-byte big-endian length followed by the payload.

- `encode_frame` builds a frame. It raises `FrameTooLargeError` if the payload
  exceeds the limit, which defaults to 16 MiB.
- `try_get_length_prefixed` and `split_frames` take complete frames off the
  front of a buffer.
- `FramedWriter` and `FramedReader` put this format on top of asyncio stream
  writers and readers. `into_inner()` returns the raw stream.

## Example

```python
import asyncio
from rpcwire.memory import channel

async def main():
    listener, connector = channel(1)

    async def serve():
        send, recv = await listener.accept()
        async for n in recv:
            await send.send(n * n)
        await send.close()

    task = asyncio.create_task(serve())
    send, recv = await connector.open()
    await send.send(1234)
    print(await recv.recv())  # 1522756
    await send.close()
    await task

asyncio.run(main())
```

## Errors

Every exception raised by the transports derives from
`rpcwire.base.TransportError`.

## What this package does not do

This package moves messages over channels and stops there.

- It has no client or server layer for request/response or streaming call
  patterns. You decide what messages mean and match requests to responses.
- It has no QUIC transport.
- The HTTP/2 transport has no TLS.

## Running the tests

```
pip install -e ".[test]"
pytest
```