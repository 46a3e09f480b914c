"""Forwarding of transactions received from relay servers."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from .messages import (
    Pong,
    RequestMessageEnvelope,
    ResponseMessageEnvelope,
    Transaction,
)
from .metrics import ClientMetrics

log = logging.getLogger(__name__)


@dataclass
class ForwardedTransaction:
    """A transaction together with the server it came from."""

    source: str
    transaction: Transaction


class BlackholeForwarder:
    """Counts transactions as forwarded without sending them anywhere."""

    def __init__(self, metrics: ClientMetrics) -> None:
        self.metrics = metrics

    def process(self, source: str, transaction: Transaction) -> None:
        self.metrics.tx_received.labels(source).inc()
        self.metrics.tx_forward_succeeded.labels(source).inc()
        log.info("Tx %s -> blackhole (%s)", transaction.signature, transaction.tpu)


def build_send_transaction_request(data: str) -> dict[str, Any]:
    """A sendTransaction JSON-RPC call for a base64 transaction, skipping preflight."""
    config = {
        "skipPreflight": True,
        "preflightCommitment": "processed",
        "encoding": "base64",
        "maxRetries": None,
        "minContextSlot": None,
    }
    return {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "sendTransaction",
        "params": [data, config],
    }


class _SendError(Exception):
    pass


class RpcForwarder:
    """Sends transactions to an RPC node, with a bound on requests in flight."""

    def __init__(self, rpc_url: str, throttle_parallel: int, metrics: ClientMetrics) -> None:
        if throttle_parallel < 1:
            raise ValueError("throttle_parallel must be at least 1")
        self.url = rpc_url
        self.metrics = metrics
        self._throttle = asyncio.Semaphore(throttle_parallel)
        self._request_ids = itertools.count(1)
        self._tasks: set[asyncio.Task] = set()

    def process(self, source: str, transaction: Transaction) -> asyncio.Task:
        """Start sending a transaction; returns the task doing it."""
        self.metrics.tx_received.labels(source).inc()
        task = asyncio.get_running_loop().create_task(self._forward(source, transaction))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        async with aiohttp.ClientSession() as session:
            async with session.post(self.url, json=payload) as response:
                if response.status >= 400:
                    raise _SendError(f"HTTP status {response.status}")
                body = await response.json(content_type=None)
        if not isinstance(body, dict):
            raise _SendError("malformed RPC response")
        return body

    async def _forward(self, source: str, transaction: Transaction) -> bool:
        async with self._throttle:
            log.info("Tx %s -> %s", transaction.signature, self.url)
            payload = build_send_transaction_request(transaction.data)
            payload["id"] = next(self._request_ids)
            try:
                body = await self._post(payload)
                error = body.get("error")
                if error is not None:
                    if isinstance(error, dict):
                        log.error(
                            "Failed to send the transaction, RPC error: %s %s %s",
                            error.get("code"),
                            error.get("message"),
                            error.get("data"),
                        )
                    else:
                        log.error("Failed to send the transaction: %s", error)
                    raise _SendError("RPC error")
                if "result" not in body:
                    raise _SendError("RPC response has no result")
            except (_SendError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as err:
                if not isinstance(err, _SendError) or str(err) != "RPC error":
                    log.error("Failed to send the transaction: %s", err)
                self.metrics.tx_forward_failed.labels(source).inc()
                return False
            self.metrics.tx_forward_succeeded.labels(source).inc()
            return True


def create_forwarder(
    rpc_url: str | None,
    blackhole: bool,
    throttle_parallel: int,
    metrics: ClientMetrics,
    identity=None,
    tpu_addr=None,
):
    """Choose the forwarder the client settings call for."""
    if blackhole:
        log.warning("Blackholing all transactions!")
        return BlackholeForwarder(metrics)
    if rpc_url is not None:
        if identity is not None or tpu_addr is not None:
            raise ValueError(
                "Cannot use parameters identity and tpu-addr when rpc-url is specified!"
            )
        return RpcForwarder(rpc_url, throttle_parallel, metrics)
    raise ValueError("Either an RPC URL or blackhole mode is required to forward transactions")


def process_upstream_message(
    source: str,
    envelope: ResponseMessageEnvelope | Exception,
    upstream: asyncio.Queue,
    transactions: asyncio.Queue,
) -> None:
    """Answer pings and queue transactions from one message of a relay server."""
    if isinstance(envelope, Exception):
        log.error("Received error from upstream: %s", envelope)
        return
    if envelope.ping is not None:
        log.info("Sending pong: %s", envelope.ping.id)
        try:
            upstream.put_nowait(RequestMessageEnvelope(pong=Pong(id=envelope.ping.id)))
        except asyncio.QueueFull as err:
            log.error("Failed to enqueue pong: %r", err)
    if envelope.transaction is not None:
        try:
            transactions.put_nowait(ForwardedTransaction(source, envelope.transaction))
        except asyncio.QueueFull as err:
            log.error("Failed to enqueue tx: %r", err)