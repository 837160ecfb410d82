import asyncio
import contextlib
import gc

import pytest

from rpcwire.base import LocalAddr
from rpcwire.mapped import MappedRecvStream, MappedSendSink
from rpcwire.memory import (
    AcceptError,
    MemoryRecvStream,
    MemorySendSink,
    OpenError,
    SendError,
    channel,
)

SMOKE_EXPECTED = (
    ("sqr_response", 1522756),
    [6],
    [0, 1, 1, 2, 3, 5, 8, 13, 21, 34],
    [2, 4, 6],
)

BENCH_EXPECTED = (332833500, 332833500, 1000, 999000)


async def _handle(send, recv):
    try:
        kind, arg = await recv.recv()
    except StopAsyncIteration:
        return
    if kind == "sqr":
        await send.send(("sqr_response", arg * arg))
    elif kind == "sum":
        total = 0
        async for _, n in recv:
            total += n
        await send.send(("sum_response", total))
    elif kind == "fibonacci":
        a, b = 0, 1
        for _ in range(arg):
            await send.send(("fibonacci_response", a))
            a, b = b, a + b
    elif kind == "multiply":
        async for _, n in recv:
            await send.send(("multiply_response", arg * n))
    else:
        raise ValueError("unexpected start message")
    await send.close()


def _wrap(item):
    return ("inner", ("compute", item))


def _unwrap(item):
    outer, inner = item
    if outer != "inner" or inner[0] != "compute":
        raise ValueError(item)
    return inner[1]


async def _handle_mapped(send, recv):
    await _handle(MappedSendSink(send, _wrap), MappedRecvStream(recv, _unwrap))


async def _serve(listener, handler=_handle):
    tasks = set()
    while True:
        send, recv = await listener.accept()
        task = asyncio.create_task(handler(send, recv))
        tasks.add(task)
        task.add_done_callback(tasks.discard)


@contextlib.asynccontextmanager
async def _running(listener, handler=_handle):
    task = asyncio.create_task(_serve(listener, handler))
    try:
        yield task
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, AcceptError):
            await task


async def _connected(buffer=1):
    """Open one channel and accept it: returns the client and server ends."""
    listener, connector = channel(buffer)
    client = await connector.open()
    server = await listener.accept()
    return client, server


async def _blocked(coro):
    task = asyncio.create_task(coro)
    await asyncio.sleep(0.01)
    assert not task.done()
    return task


async def _rpc(connector, request):
    send, recv = await connector.open()
    await send.send(request)
    return await recv.recv()


async def _send_all(send, items):
    for item in items:
        await send.send(item)
    await send.close()


async def _stream(connector, start, updates):
    """Send a start message and updates concurrently; collect the reply values."""
    send, recv = await connector.open()
    await send.send(start)
    sender = asyncio.create_task(_send_all(send, updates))
    values = [value async for _, value in recv]
    await sender
    return values


async def _smoke(connector):
    sqr = await _rpc(connector, ("sqr", 1234))
    total = await _stream(connector, ("sum", None), [("sum_update", i) for i in (1, 2, 3)])
    fib = await _stream(connector, ("fibonacci", 10), [])
    updates = [("multiply_update", i) for i in (1, 2, 3)]
    products = await _stream(connector, ("multiply", 2), updates)
    return sqr, total, fib, products


async def _bench(connector, n):
    sequential = 0
    for i in range(n):
        _, value = await _rpc(connector, ("sqr", i))
        sequential += value

    results = await asyncio.gather(*(_rpc(connector, ("sqr", i)) for i in range(n)))
    parallel = sum(value for _, value in results)

    values = await _stream(connector, ("multiply", 2), [("multiply_update", i) for i in range(n)])
    return sequential, parallel, len(values), sum(values)


@pytest.mark.asyncio
async def test_channel_smoke():
    listener, connector = channel(1)
    async with _running(listener):
        assert await _smoke(connector) == SMOKE_EXPECTED


@pytest.mark.asyncio
async def test_channel_bench():
    listener, connector = channel(1)
    async with _running(listener):
        assert await _bench(connector, 1000) == BENCH_EXPECTED


@pytest.mark.asyncio
async def test_channel_mapped_bench_and_termination():
    listener, connector = channel(1)
    server = asyncio.create_task(_serve(listener, _handle_mapped))
    client = connector.map(_unwrap, _wrap)
    assert await _bench(client, 1000) == BENCH_EXPECTED
    assert await _smoke(client) == SMOKE_EXPECTED
    del client, connector
    gc.collect()
    with pytest.raises(AcceptError):
        await asyncio.wait_for(server, 2)


@pytest.mark.asyncio
async def test_local_addr_is_mem():
    listener, _connector = channel(1)
    assert listener.local_addr() == (LocalAddr.mem(),)
    assert [str(addr) for addr in listener.local_addr()] == ["mem"]


@pytest.mark.asyncio
async def test_messages_arrive_in_order_and_stream_ends_on_close():
    (client_send, _client_recv), (_server_send, server_recv) = await _connected()
    await _send_all(client_send, range(5))
    assert [item async for item in server_recv] == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_reply_travels_back():
    (client_send, client_recv), (server_send, server_recv) = await _connected()
    await client_send.send("ping")
    assert await server_recv.recv() == "ping"
    await server_send.send("pong")
    assert await client_recv.recv() == "pong"


@pytest.mark.asyncio
async def test_send_after_receiver_dropped():
    (client_send, _client_recv), (_server_send, server_recv) = await _connected()
    del server_recv
    gc.collect()
    with pytest.raises(SendError) as excinfo:
        await client_send.send(1)
    assert str(excinfo.value) == "ReceiverDropped"


@pytest.mark.asyncio
async def test_send_after_close_fails():
    (client_send, _client_recv), _server = await _connected()
    await client_send.close()
    with pytest.raises(SendError):
        await client_send.send(1)


@pytest.mark.asyncio
@pytest.mark.parametrize("dropped", ["listener", "connector"])
async def test_call_after_other_side_dropped(dropped):
    ends = dict(zip(("listener", "connector"), channel(1)))
    del ends[dropped]
    gc.collect()
    if dropped == "listener":
        call, error = ends["connector"].open, OpenError
    else:
        call, error = ends["listener"].accept, AcceptError
    with pytest.raises(error) as excinfo:
        await call()
    assert str(excinfo.value) == "RemoteDropped"


@pytest.mark.asyncio
async def test_pending_accept_wakes_when_connector_dropped():
    listener, connector = channel(1)
    accepting = await _blocked(listener.accept())
    del connector
    gc.collect()
    with pytest.raises(AcceptError):
        await asyncio.wait_for(accepting, 1)


@pytest.mark.asyncio
async def test_open_backpressure():
    listener, connector = channel(1)
    first_send, _first_recv = await connector.open()
    pending = await _blocked(connector.open())
    _first_server_send, first_server_recv = await listener.accept()
    second_send, _second_recv = await asyncio.wait_for(pending, 1)
    _second_server_send, second_server_recv = await listener.accept()
    await first_send.send("first")
    await second_send.send("second")
    assert await first_server_recv.recv() == "first"
    assert await second_server_recv.recv() == "second"


@pytest.mark.asyncio
async def test_zero_buffer_is_rendezvous():
    listener, connector = channel(0)
    pending = await _blocked(connector.open())
    server_send, _server_recv = await listener.accept()
    _client_send, client_recv = await asyncio.wait_for(pending, 1)
    await server_send.send(7)
    assert await client_recv.recv() == 7


@pytest.mark.asyncio
async def test_channel_buffer_holds_128_messages():
    (client_send, _client_recv), (_server_send, server_recv) = await _connected()
    for i in range(128):
        await asyncio.wait_for(client_send.send(i), 1)
    blocked = await _blocked(client_send.send(128))
    assert await server_recv.recv() == 0
    await asyncio.wait_for(blocked, 1)
    assert blocked.done()


@pytest.mark.asyncio
async def test_open_returns_memory_ends_that_work():
    (send, recv), (server_send, _server_recv) = await _connected(2)
    assert isinstance(send, MemorySendSink)
    assert isinstance(recv, MemoryRecvStream)
    await server_send.close()
    assert [item async for item in recv] == []


def test_negative_buffer_rejected():
    with pytest.raises(ValueError):
        channel(-1)