import asyncio
from contextlib import asynccontextmanager

import pytest
from aiohttp import web

from mtxrelay.forwarder import (
    BlackholeForwarder,
    ForwardedTransaction,
    RpcForwarder,
    build_send_transaction_request,
    create_forwarder,
    process_upstream_message,
)
from mtxrelay.messages import (
    RequestMessageEnvelope,
    ResponseMessageEnvelope,
    Transaction,
    build_ping_message_envelope,
    build_tx_message_envelope,
)
from mtxrelay.metrics import ClientMetrics


@asynccontextmanager
async def rpc_node(handler):
    app = web.Application()
    app.router.add_post("/", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = runner.addresses[0][1]
    try:
        yield f"http://127.0.0.1:{port}/"
    finally:
        await runner.cleanup()


def sample_transaction():
    return Transaction(signature="sig", data="AQID", tpu=["10.0.0.1:8009"])


def test_blackhole_counts_success():
    metrics = ClientMetrics()
    BlackholeForwarder(metrics).process("server", sample_transaction())
    assert metrics.tx_received.labels("server").value == 1
    assert metrics.tx_forward_succeeded.labels("server").value == 1
    assert metrics.tx_forward_failed.labels("server").value == 0


def test_send_transaction_request_shape():
    request = build_send_transaction_request("AQID")
    assert request["jsonrpc"] == "2.0"
    assert request["method"] == "sendTransaction"
    assert request["id"] == 1
    assert request["params"][0] == "AQID"
    config = request["params"][1]
    assert config["skipPreflight"] is True
    assert config["encoding"] == "base64"
    assert config["preflightCommitment"] == "processed"
    assert config["maxRetries"] is None


def test_create_forwarder_blackhole_wins():
    metrics = ClientMetrics()
    forwarder = create_forwarder("http://localhost:8899", True, 10, metrics)
    result = forwarder.process("srv", sample_transaction())
    assert result is None
    assert metrics.tx_received.labels("srv").value == 1
    assert metrics.tx_forward_succeeded.labels("srv").value == 1
    assert metrics.tx_forward_failed.labels("srv").value == 0


def test_create_forwarder_rpc():
    forwarder = create_forwarder("http://localhost:8899", False, 10, ClientMetrics())
    assert isinstance(forwarder, RpcForwarder)
    assert forwarder.url == "http://localhost:8899"


def test_create_forwarder_rejects_identity_with_rpc():
    with pytest.raises(ValueError, match="Cannot use parameters identity and tpu-addr"):
        create_forwarder(
            "http://localhost:8899", False, 10, ClientMetrics(), tpu_addr="127.0.0.1"
        )


def test_create_forwarder_needs_a_method():
    with pytest.raises(ValueError):
        create_forwarder(None, False, 10, ClientMetrics())


def test_rpc_forwarder_rejects_zero_parallel():
    with pytest.raises(ValueError):
        RpcForwarder("http://localhost:8899", 0, ClientMetrics())


@pytest.mark.asyncio
async def test_upstream_ping_is_answered_with_pong():
    upstream, transactions = asyncio.Queue(), asyncio.Queue()
    process_upstream_message("srv", build_ping_message_envelope("5"), upstream, transactions)
    reply = upstream.get_nowait()
    assert isinstance(reply, RequestMessageEnvelope)
    assert reply.pong.id == "5"
    assert transactions.empty()


@pytest.mark.asyncio
async def test_upstream_transaction_is_queued_with_source():
    upstream, transactions = asyncio.Queue(), asyncio.Queue()
    envelope = build_tx_message_envelope("sig", "AQID", ["10.0.0.1:8009"])
    process_upstream_message("srv", envelope, upstream, transactions)
    forwarded = transactions.get_nowait()
    assert forwarded == ForwardedTransaction("srv", envelope.transaction)
    assert upstream.empty()


@pytest.mark.asyncio
async def test_upstream_error_and_full_queues_are_ignored():
    upstream, transactions = asyncio.Queue(maxsize=1), asyncio.Queue()
    upstream.put_nowait(RequestMessageEnvelope())
    process_upstream_message("srv", RuntimeError("broken"), upstream, transactions)
    envelope = ResponseMessageEnvelope(
        ping=build_ping_message_envelope("1").ping,
        transaction=sample_transaction(),
    )
    process_upstream_message("srv", envelope, upstream, transactions)
    assert upstream.qsize() == 1
    assert transactions.qsize() == 1


@pytest.mark.asyncio
async def test_rpc_forwarder_success():
    received = []

    async def handler(request):
        received.append(await request.json())
        return web.json_response({"jsonrpc": "2.0", "result": "sig", "id": 1})

    metrics = ClientMetrics()
    async with rpc_node(handler) as url:
        forwarder = RpcForwarder(url, 4, metrics)
        assert await forwarder.process("srv", sample_transaction()) is True
    assert received[0]["params"][0] == "AQID"
    assert metrics.tx_received.labels("srv").value == 1
    assert metrics.tx_forward_succeeded.labels("srv").value == 1


@pytest.mark.asyncio
async def test_rpc_forwarder_counts_rpc_error():
    async def handler(request):
        return web.json_response(
            {"jsonrpc": "2.0", "error": {"code": -32002, "message": "failed"}, "id": 1}
        )

    metrics = ClientMetrics()
    async with rpc_node(handler) as url:
        forwarder = RpcForwarder(url, 4, metrics)
        assert await forwarder.process("srv", sample_transaction()) is False
    assert metrics.tx_forward_failed.labels("srv").value == 1
    assert metrics.tx_forward_succeeded.labels("srv").value == 0


@pytest.mark.asyncio
async def test_rpc_forwarder_counts_http_error():
    async def handler(request):
        return web.Response(status=500)

    metrics = ClientMetrics()
    async with rpc_node(handler) as url:
        forwarder = RpcForwarder(url, 4, metrics)
        assert await forwarder.process("srv", sample_transaction()) is False
    assert metrics.tx_forward_failed.labels("srv").value == 1


@pytest.mark.asyncio
async def test_rpc_forwarder_respects_throttle():
    in_flight = 0
    peak = 0

    async def handler(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.02)
        in_flight -= 1
        return web.json_response({"jsonrpc": "2.0", "result": "sig", "id": 1})

    metrics = ClientMetrics()
    async with rpc_node(handler) as url:
        forwarder = RpcForwarder(url, 1, metrics)
        tasks = [forwarder.process("srv", sample_transaction()) for _ in range(4)]
        results = await asyncio.gather(*tasks)
    assert results == [True] * 4
    assert peak == 1
    assert metrics.tx_forward_succeeded.labels("srv").value == 4