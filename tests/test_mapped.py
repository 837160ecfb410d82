import asyncio
from dataclasses import dataclass

import pytest

from rpcwire.base import Connector, RecvStream, SendSink, TransportError
from rpcwire.mapped import (
    ConversionError,
    InnerError,
    MapError,
    MappedConnector,
    MappedRecvStream,
    MappedSendSink,
)

_END = object()


@dataclass
class RequestA:
    value: int


@dataclass
class RequestB:
    value: str


@dataclass
class Outer:
    inner: object


def _to_sub(request):
    if isinstance(request, RequestB):
        return request.value
    raise ValueError("not a sub-service request")


def _from_sub(text):
    return RequestB(text)


class _QueueSink(SendSink):
    def __init__(self, queue):
        self.queue = queue
        self.closed = False

    async def send(self, item):
        await self.queue.put(item)

    async def close(self):
        self.closed = True
        await self.queue.put(_END)


class _QueueStream(RecvStream):
    def __init__(self, queue):
        self.queue = queue

    async def recv(self):
        item = await self.queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class _LoopbackConnector(Connector):
    """Echoes every sent message back on the receive side."""

    def __init__(self, fail=None):
        self.fail = fail

    async def open(self):
        if self.fail is not None:
            raise self.fail
        queue = asyncio.Queue()
        return _QueueSink(queue), _QueueStream(queue)


def _mapped_stream(*items):
    queue = asyncio.Queue()
    for item in items:
        queue.put_nowait(item)
    return MappedRecvStream(_QueueStream(queue), _to_sub)


@pytest.mark.asyncio
async def test_recv_converts_items():
    stream = _mapped_stream(RequestB("hello"), RequestB("world"), _END)
    assert [x async for x in stream] == ["hello", "world"]


@pytest.mark.asyncio
async def test_recv_conversion_failure():
    stream = _mapped_stream(RequestA(1))
    with pytest.raises(ConversionError) as info:
        await stream.recv()
    assert info.value.value == RequestA(1)
    assert str(info.value) == "Conversion error"
    assert isinstance(info.value, MapError)


@pytest.mark.asyncio
async def test_recv_continues_after_conversion_failure():
    stream = _mapped_stream(RequestA(1), RequestB("x"), _END)
    with pytest.raises(ConversionError):
        await stream.recv()
    assert await stream.recv() == "x"


@pytest.mark.asyncio
async def test_recv_wraps_inner_error():
    failure = TransportError("boom")
    stream = _mapped_stream(failure)
    with pytest.raises(InnerError) as info:
        await stream.recv()
    assert info.value.error is failure
    assert str(info.value) == "Inner error: boom"


@pytest.mark.asyncio
async def test_recv_end_of_stream_passes_through():
    stream = _mapped_stream(_END)
    with pytest.raises(StopAsyncIteration):
        await stream.recv()


@pytest.mark.asyncio
async def test_send_converts_items():
    queue = asyncio.Queue()
    sink = MappedSendSink(_QueueSink(queue), _from_sub)
    await sink.send("abc")
    assert queue.get_nowait() == RequestB("abc")
    await sink.close()
    assert sink.inner.closed


@pytest.mark.asyncio
async def test_connector_round_trip():
    connector = MappedConnector(_LoopbackConnector(), _to_sub, _from_sub)
    send, recv = await connector.open()
    for text in ("a", "b"):
        await send.send(text)
    await send.close()
    assert [x async for x in recv] == ["a", "b"]


@pytest.mark.asyncio
async def test_connector_open_error_passes_through():
    failure = TransportError("no remote")
    connector = MappedConnector(_LoopbackConnector(fail=failure), _to_sub, _from_sub)
    with pytest.raises(TransportError) as info:
        await connector.open()
    assert info.value is failure


async def _loop_once(connector, item):
    send, recv = await connector.open()
    await send.send(item)
    return await recv.recv()


@pytest.mark.asyncio
async def test_mapping_twice_nests_types():
    outer = _LoopbackConnector()
    middle = MappedConnector(outer, lambda msg: msg.inner, Outer)
    inner = MappedConnector(middle, _to_sub, _from_sub)
    assert await _loop_once(inner, "deep") == "deep"
    assert inner.inner is middle
    assert middle.inner is outer


@pytest.mark.asyncio
async def test_mapped_sub_service_rejects_other_variant():
    connector = MappedConnector(_LoopbackConnector(), _to_sub, RequestA)
    with pytest.raises(ConversionError) as info:
        await _loop_once(connector, 5)
    assert info.value.value == RequestA(5)