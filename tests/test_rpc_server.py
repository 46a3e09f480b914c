import asyncio
import base64
import dataclasses
import random

import jwt
import pytest
from aiohttp.test_utils import TestClient, TestServer
from cryptography.hazmat.primitives.asymmetric import rsa

from mtxrelay.auth import AllowAuth, JwtAuth
from mtxrelay.balancer import Balancer
from mtxrelay.rpc_server import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    Mode,
    RpcError,
    RpcServer,
    b58encode,
    first_signature,
    select_mode,
)

SIG = bytes(range(64))
OTHER_SIG = b"\x07" * 64


def _message(version0=False):
    prefix = b"\x80" if version0 else b""
    body = (
        bytes([1, 0, 1])
        + bytes([2])
        + b"\x11" * 32
        + b"\x22" * 32
        + b"\x33" * 32
        + bytes([1, 1, 1, 0, 0])
    )
    suffix = bytes([0]) if version0 else b""
    return prefix + body + suffix


def _wire(signatures, version0=False):
    return bytes([len(signatures)]) + b"".join(signatures) + _message(version0)


def _encoded(signatures):
    return base64.b64encode(_wire(signatures)).decode()


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def test_b58encode_known_values():
    assert b58encode(b"") == ""
    assert b58encode(b"hello world") == "StV1DL6CwTryKyV"
    assert b58encode(b"\x00\x00") == "11"


def test_first_signature_legacy_message():
    assert first_signature(_wire([SIG, OTHER_SIG])) == SIG


def test_first_signature_v0_message():
    assert first_signature(_wire([SIG], version0=True)) == SIG


def test_first_signature_none_when_unsigned():
    assert first_signature(_wire([])) is None


def test_first_signature_allows_trailing_bytes():
    assert first_signature(_wire([SIG]) + b"extra") == SIG


def test_first_signature_rejects_truncated():
    with pytest.raises(ValueError):
        first_signature(_wire([SIG])[:-3])


def test_first_signature_rejects_unknown_version():
    wire = bytes([1]) + SIG + b"\x81" + _message()
    with pytest.raises(ValueError):
        first_signature(wire)


def test_first_signature_rejects_oversized():
    with pytest.raises(ValueError):
        first_signature(_wire([SIG] * 20))


def test_select_mode_forwards_without_auth():
    assert select_mode(None, ["acme"], random.Random(0)) is Mode.FORWARD


def test_select_mode_forwards_non_partners():
    rng = random.Random(0)
    modes = {select_mode(AllowAuth("other"), ["acme"], rng) for _ in range(50)}
    assert modes == {Mode.FORWARD}


def test_select_mode_blackholes_some_partner_traffic():
    rng = random.Random(0)
    modes = {select_mode(AllowAuth("acme"), ["acme"], rng) for _ in range(50)}
    assert modes == {Mode.FORWARD, Mode.BLACKHOLE}


def test_extract_state_without_key_trusts_header():
    server = RpcServer(Balancer())
    first = server.extract_state(None)
    second = server.extract_state("desk-7")
    assert first.auth == AllowAuth("unknown")
    assert second.auth == AllowAuth("desk-7")
    assert (first.req_id, second.req_id) == (0, 1)
    assert second.mode is Mode.FORWARD


def test_extract_state_with_valid_jwt(rsa_key):
    server = RpcServer(Balancer(), public_key=rsa_key.public_key())
    encoded = jwt.encode({"iat": 1, "exp": 2, "partner": "acme"}, rsa_key, algorithm="RS256")
    state = server.extract_state(f"Bearer {encoded}")
    assert state.auth == JwtAuth(iat=1, exp=2, partner="acme")
    assert state.partner_name == "JWT:partner:acme"
    assert state.auth_error is None


def test_extract_state_with_bad_jwt(rsa_key):
    server = RpcServer(Balancer(), public_key=rsa_key.public_key())
    state = server.extract_state("Bearer token")
    assert state.auth is None
    assert state.partner_name == "UNAUTHORIZED"
    assert state.auth_error


@pytest.mark.asyncio
async def test_send_forwards_to_consumer():
    balancer = Balancer(watcher_inbox=asyncio.Queue(), rng=random.Random(1))
    consumer = balancer.subscribe("validator-a", "token")
    server = RpcServer(balancer)
    state = server.extract_state("partner-x")
    data = _encoded([SIG])

    result = await server.send_priority_transaction(state, data, {"skipPreflight": True})

    assert result == b58encode(SIG)
    envelope = consumer.queue.get_nowait()
    assert envelope.transaction.signature == result
    assert envelope.transaction.data == data
    record = balancer.watcher_inbox.get_nowait()
    assert record.partner_name == "partner-x"
    assert record.mode == "FORWARD"
    assert set(record.consumers) == {"validator-a"}
    assert balancer.metrics.server_rpc_tx_accepted.labels("partner-x", "FORWARD").value == 1
    assert balancer.metrics.server_rpc_tx_bytes_in.value == len(data)


@pytest.mark.asyncio
async def test_send_transaction_behaves_like_priority():
    balancer = Balancer(rng=random.Random(1))
    balancer.subscribe("validator-a", "token")
    server = RpcServer(balancer)
    result = await server.send_transaction(
        server.extract_state(None), _encoded([SIG]), {"skipPreflight": True}
    )
    assert result == b58encode(SIG)


@pytest.mark.asyncio
async def test_send_without_consumers_fails():
    server = RpcServer(Balancer())
    with pytest.raises(RpcError) as excinfo:
        await server.send_priority_transaction(
            server.extract_state(None), _encoded([SIG]), {"skipPreflight": True}
        )
    assert excinfo.value.code == INTERNAL_ERROR
    assert excinfo.value.message == "Failed to forward the transaction"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "config, message",
    [
        (None, "config options are mandatory"),
        ({}, "skipPreflight is mandatory"),
        ({"skipPreflight": False}, "skipPreflight must be true"),
    ],
)
async def test_send_config_validation(config, message):
    server = RpcServer(Balancer())
    with pytest.raises(RpcError) as excinfo:
        await server.send_priority_transaction(server.extract_state(None), _encoded([SIG]), config)
    assert excinfo.value.code == INVALID_PARAMS
    assert excinfo.value.message == message


@pytest.mark.asyncio
async def test_send_rejects_unauthenticated(rsa_key):
    server = RpcServer(Balancer(), public_key=rsa_key.public_key())
    with pytest.raises(RpcError) as excinfo:
        await server.send_priority_transaction(
            server.extract_state(None), _encoded([SIG]), {"skipPreflight": True}
        )
    assert excinfo.value.code == 403


@pytest.mark.asyncio
async def test_send_blackhole_skips_consumers():
    balancer = Balancer(rng=random.Random(1))
    consumer = balancer.subscribe("validator-a", "token")
    server = RpcServer(balancer)
    state = dataclasses.replace(server.extract_state("acme"), mode=Mode.BLACKHOLE)
    result = await server.send_priority_transaction(state, _encoded([SIG]), {"skipPreflight": True})
    assert result == b58encode(SIG)
    assert consumer.queue.empty()


@pytest.mark.asyncio
async def test_send_rejects_malformed_data():
    server = RpcServer(Balancer())
    with pytest.raises(RpcError) as excinfo:
        await server.send_priority_transaction(
            server.extract_state(None), "!!not base64!!", {"skipPreflight": True}
        )
    assert excinfo.value.code == INVALID_PARAMS


@pytest.mark.asyncio
async def test_send_rejects_unsigned_transaction():
    server = RpcServer(Balancer())
    with pytest.raises(RpcError) as excinfo:
        await server.send_priority_transaction(
            server.extract_state(None), _encoded([]), {"skipPreflight": True}
        )
    assert excinfo.value.code == INTERNAL_ERROR


def test_get_health_follows_consumers():
    balancer = Balancer()
    server = RpcServer(balancer)
    with pytest.raises(RpcError) as excinfo:
        server.get_health()
    assert excinfo.value.code == 503
    balancer.subscribe("validator-a", "token")
    assert server.get_health() is None


@pytest.mark.asyncio
async def test_handle_dispatches_methods():
    balancer = Balancer(rng=random.Random(1))
    balancer.subscribe("validator-a", "token")
    server = RpcServer(balancer)
    health = await server.handle({"jsonrpc": "2.0", "id": 1, "method": "getHealth"})
    assert health == {"jsonrpc": "2.0", "result": None, "id": 1}
    sent = await server.handle(
        {
            "jsonrpc": "2.0",
            "id": 2,
            "method": "sendTransaction",
            "params": [_encoded([SIG]), {"skipPreflight": True}],
        }
    )
    assert sent["result"] == b58encode(SIG)


@pytest.mark.asyncio
async def test_handle_errors_and_batches():
    server = RpcServer(Balancer())
    unknown = await server.handle({"jsonrpc": "2.0", "id": 3, "method": "nope"})
    assert unknown["error"]["code"] == METHOD_NOT_FOUND
    batch = await server.handle(
        [
            {"jsonrpc": "2.0", "id": 4, "method": "getHealth"},
            {"jsonrpc": "2.0", "method": "getHealth"},
        ]
    )
    assert [item["id"] for item in batch] == [4]
    assert batch[0]["error"]["code"] == 503
    assert await server.handle({"jsonrpc": "2.0", "method": "getHealth"}) is None


@pytest.mark.asyncio
async def test_app_serves_rpc_and_health():
    balancer = Balancer()
    server = RpcServer(balancer)
    async with TestClient(TestServer(server.app())) as client:
        health = await client.get("/health")
        assert health.status == 503
        balancer.subscribe("validator-a", "token")
        health = await client.get("/health")
        assert health.status == 200
        response = await client.post("/", json={"jsonrpc": "2.0", "id": 9, "method": "getHealth"})
        assert await response.json() == {"jsonrpc": "2.0", "result": None, "id": 9}
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        broken = await client.post("/", data="{")
        assert (await broken.json())["error"]["code"] == -32700