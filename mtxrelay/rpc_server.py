"""JSON-RPC front end that accepts signed transactions and hands them to the balancer."""

from __future__ import annotations

import base64
import binascii
import itertools
import json
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any

from aiohttp import web

from .auth import AllowAuth, AuthError, JwtAuth, authenticate
from .balancer import Balancer, NoConsumersError, SignatureRecord, time_ms
from .metrics import ServerMetrics

log = logging.getLogger(__name__)

PACKET_DATA_SIZE = 1232
SIGNATURE_SIZE = 64
PUBKEY_SIZE = 32
MESSAGE_VERSION_PREFIX = 0x80

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}


class Mode(Enum):
    """Whether an accepted transaction is forwarded or silently dropped."""

    BLACKHOLE = "BLACKHOLE"
    FORWARD = "FORWARD"

    def __str__(self) -> str:
        return self.value


class RpcError(Exception):
    """A JSON-RPC error with its code, message and optional data."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


@dataclass(frozen=True)
class RpcState:
    """Per-request context: who is calling, and how their transactions are handled."""

    auth: JwtAuth | AllowAuth | None
    auth_error: str | None
    balancer: Balancer
    req_id: int
    mode: Mode

    @property
    def partner_name(self) -> str:
        return str(self.auth) if self.auth is not None else "UNAUTHORIZED"


def b58encode(data: bytes) -> str:
    """Encode bytes in base58 with the Bitcoin alphabet."""
    number = int.from_bytes(data, "big")
    digits = []
    while number:
        number, remainder = divmod(number, 58)
        digits.append(_B58_ALPHABET[remainder])
    leading_zeros = len(data) - len(data.lstrip(b"\x00"))
    return "1" * leading_zeros + "".join(reversed(digits))


class _Reader:
    """Sequential reader over transaction bytes with a hard size limit."""

    def __init__(self, data: bytes, limit: int) -> None:
        self._data = data
        self._limit = limit
        self._pos = 0

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > self._limit:
            raise ValueError("the size limit has been reached")
        if end > len(self._data):
            raise ValueError("unexpected end of transaction data")
        chunk = self._data[self._pos : end]
        self._pos = end
        return chunk

    def byte(self) -> int:
        return self.take(1)[0]

    def short_len(self) -> int:
        value = 0
        for position in range(3):
            current = self.byte()
            value |= (current & 0x7F) << (7 * position)
            if not current & 0x80:
                if current == 0 and position > 0:
                    raise ValueError("non-canonical length encoding")
                break
        else:
            raise ValueError("length encoding is too long")
        if value > 0xFFFF:
            raise ValueError("length overflows 16 bits")
        return value

    def short_vec(self, item_size: int) -> list[bytes]:
        return [self.take(item_size) for _ in range(self.short_len())]

    def short_bytes(self) -> bytes:
        return self.take(self.short_len())


def _read_message(reader: _Reader) -> None:
    first = reader.byte()
    versioned = bool(first & MESSAGE_VERSION_PREFIX)
    if versioned:
        version = first & ~MESSAGE_VERSION_PREFIX
        if version != 0:
            raise ValueError(f"invalid message version {version}")
        reader.take(3)
    else:
        reader.take(2)
    reader.short_vec(PUBKEY_SIZE)
    reader.take(PUBKEY_SIZE)
    for _ in range(reader.short_len()):
        reader.byte()
        reader.short_bytes()
        reader.short_bytes()
    if versioned:
        for _ in range(reader.short_len()):
            reader.take(PUBKEY_SIZE)
            reader.short_bytes()
            reader.short_bytes()


def first_signature(wire_transaction: bytes) -> bytes | None:
    """The first signature of a serialized transaction, or None if it has none.

    Raises ValueError when the bytes are not a well-formed transaction that fits
    in one packet. Trailing bytes after the transaction are ignored.
    """
    reader = _Reader(wire_transaction, PACKET_DATA_SIZE)
    signatures = reader.short_vec(SIGNATURE_SIZE)
    _read_message(reader)
    return signatures[0] if signatures else None


def select_mode(auth, partners, rng: random.Random | None = None) -> Mode:
    """Blackhole about half of the transactions from test partners."""
    if auth is not None and str(auth) in partners:
        rng = rng if rng is not None else random.Random()
        if rng.getrandbits(1):
            return Mode.BLACKHOLE
    return Mode.FORWARD


def _error_response(call_id: Any, error: RpcError) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "error": error.to_dict(), "id": call_id}


def _send_params(params: Any) -> tuple[str, dict[str, Any] | None]:
    if params is None:
        params = []
    if not isinstance(params, list):
        raise RpcError(INVALID_PARAMS, "Invalid params: expected an array")
    if not 1 <= len(params) <= 2:
        raise RpcError(INVALID_PARAMS, "Invalid params: expected 1 or 2 parameters")
    data = params[0]
    if not isinstance(data, str):
        raise RpcError(INVALID_PARAMS, "Invalid params: transaction data must be a string")
    config = params[1] if len(params) == 2 else None
    if config is not None and not isinstance(config, dict):
        raise RpcError(INVALID_PARAMS, "Invalid params: config must be an object")
    return data, config


class RpcServer:
    """Handles the sendPriorityTransaction, sendTransaction and getHealth methods."""

    def __init__(
        self,
        balancer: Balancer,
        public_key=None,
        test_partners=None,
        metrics: ServerMetrics | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.balancer = balancer
        self.public_key = public_key
        self.partners = list(test_partners or [])
        self.metrics = metrics if metrics is not None else balancer.metrics
        self._rng = rng if rng is not None else random.Random()
        self._req_ids = itertools.count()

    def extract_state(self, authorization: str | None) -> RpcState:
        """Build the request context from the Authorization header value."""
        auth: JwtAuth | AllowAuth | None = None
        auth_error: str | None = None
        if self.public_key is not None:
            try:
                auth = authenticate(self.public_key, authorization)
            except AuthError as err:
                auth_error = str(err)
            mode = select_mode(auth, self.partners, self._rng)
        else:
            # Without a key the caller is trusted by whatever it presents.
            auth = AllowAuth(authorization if authorization is not None else "unknown")
            mode = Mode.FORWARD
        return RpcState(
            auth=auth,
            auth_error=auth_error,
            balancer=self.balancer,
            req_id=next(self._req_ids),
            mode=mode,
        )

    async def send_priority_transaction(
        self, state: RpcState, data: str, config: dict[str, Any] | None
    ) -> str:
        """Accept a base64 transaction and forward it; returns its base58 signature."""
        ctime = time_ms()
        if state.auth is None:
            log.error("Authentication error: %s", state.auth_error)
            raise RpcError(403, "Failed to authenticate")
        if config is None:
            raise RpcError(INVALID_PARAMS, "config options are mandatory")
        skip_preflight = config.get("skipPreflight")
        if skip_preflight is None:
            raise RpcError(INVALID_PARAMS, "skipPreflight is mandatory")
        if not isinstance(skip_preflight, bool):
            raise RpcError(INVALID_PARAMS, "Invalid params: skipPreflight must be a boolean")
        if not skip_preflight:
            raise RpcError(INVALID_PARAMS, "skipPreflight must be true")
        log.info("Skipping preflight checks")

        partner_name = str(state.auth)
        log.info(
            "RPC method sendPriorityTransaction called req_id=%s partner_name=%s mode=%s",
            state.req_id,
            partner_name,
            state.mode,
        )
        self.metrics.server_rpc_tx_accepted.labels(partner_name, state.mode.value).inc()
        self.metrics.server_rpc_tx_bytes_in.inc(len(data))

        try:
            wire_transaction = base64.b64decode(data, validate=True)
            raw_signature = first_signature(wire_transaction)
        except (binascii.Error, ValueError) as err:
            log.error("Deserialize error: %s", err)
            raise RpcError(INVALID_PARAMS, f"Invalid params: {err}") from err
        if raw_signature is None:
            raise RpcError(INTERNAL_ERROR, "Failed to get the transaction's signature")
        signature = b58encode(raw_signature)

        if state.mode is Mode.BLACKHOLE:
            log.info("Transaction blackholed: %s", signature)
            return signature

        session = SignatureRecord(
            signature=signature,
            partner_name=partner_name,
            mode=state.mode.value,
            req_id=state.req_id,
            ctime=ctime,
            rtime=time_ms(),
        )
        try:
            await state.balancer.publish(session, signature, data)
        except NoConsumersError as err:
            raise RpcError(INTERNAL_ERROR, "Failed to forward the transaction") from err
        return signature

    async def send_transaction(
        self, state: RpcState, data: str, config: dict[str, Any] | None
    ) -> str:
        """Same as send_priority_transaction."""
        return await self.send_priority_transaction(state, data, config)

    def get_health(self) -> None:
        """Raise unless at least one consumer is connected."""
        if self.metrics.server_total_connected_tx_consumers.value == 0:
            raise RpcError(503, "No connected tx consumers")

    async def _dispatch(self, state: RpcState, method: str, params: Any) -> Any:
        if method in ("sendPriorityTransaction", "sendTransaction"):
            data, config = _send_params(params)
            return await self.send_priority_transaction(state, data, config)
        if method == "getHealth":
            if params not in (None, [], {}):
                raise RpcError(INVALID_PARAMS, "Invalid params: expected no parameters")
            self.get_health()
            return None
        raise RpcError(METHOD_NOT_FOUND, "Method not found")

    async def _call(self, state: RpcState, call: Any) -> dict[str, Any] | None:
        if not isinstance(call, dict) or not isinstance(call.get("method"), str):
            return _error_response(None, RpcError(INVALID_REQUEST, "Invalid request"))
        call_id = call.get("id")
        try:
            result = await self._dispatch(state, call["method"], call.get("params"))
            response = {"jsonrpc": "2.0", "result": result, "id": call_id}
        except RpcError as err:
            response = _error_response(call_id, err)
        return response if "id" in call else None

    async def handle(self, request: Any, authorization: str | None = None):
        """Answer a decoded JSON-RPC request or batch; None when nothing is owed."""
        state = self.extract_state(authorization)
        if isinstance(request, list):
            if not request:
                return _error_response(None, RpcError(INVALID_REQUEST, "Invalid request"))
            responses = [await self._call(state, call) for call in request]
            return [response for response in responses if response is not None] or None
        return await self._call(state, request)

    def app(self) -> web.Application:
        """An application serving JSON-RPC on POST / and a health check on GET /health."""

        async def handle_post(request: web.Request) -> web.Response:
            try:
                body = json.loads(await request.text())
            except ValueError:
                return web.json_response(
                    _error_response(None, RpcError(PARSE_ERROR, "Parse error")),
                    headers=_CORS_HEADERS,
                )
            response = await self.handle(body, request.headers.get("Authorization"))
            if response is None:
                return web.Response(text="", headers=_CORS_HEADERS)
            return web.json_response(response, headers=_CORS_HEADERS)

        async def handle_health(request: web.Request) -> web.Response:
            try:
                self.get_health()
            except RpcError as err:
                return web.json_response(err.to_dict(), status=503, headers=_CORS_HEADERS)
            return web.json_response(None, headers=_CORS_HEADERS)

        async def handle_options(request: web.Request) -> web.Response:
            return web.Response(
                headers={
                    **_CORS_HEADERS,
                    "Access-Control-Allow-Methods": "POST, OPTIONS",
                    "Access-Control-Allow-Headers": "Content-Type, Authorization",
                }
            )

        app = web.Application()
        app.router.add_post("/", handle_post)
        app.router.add_route("OPTIONS", "/", handle_options)
        app.router.add_get("/health", handle_health)
        return app