"""Messages exchanged between the relay server and its transaction consumers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


def _omit_none(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


@dataclass
class Transaction:
    """A signed transaction to be forwarded to the listed TPU addresses."""

    signature: str = ""
    data: str = ""
    tpu: list[str] = field(default_factory=list)


@dataclass
class Ping:
    id: str = ""


@dataclass
class Pong:
    id: str = ""


@dataclass
class Metrics:
    """Counters a client reports back to the server."""

    tx_received: int = 0
    tx_forward_succeeded: int = 0
    tx_forward_failed: int = 0
    version: str = ""
    quic_forwarder_permits_used_max: int = 0
    memory_physical: int = 0


@dataclass
class Rtt:
    ip: str = ""
    rtt: int = 0


@dataclass
class RequestMessageEnvelope:
    """A message sent from a client to the server."""

    metrics: Metrics | None = None
    pong: Pong | None = None
    rtt: Rtt | None = None

    def to_dict(self) -> dict[str, Any]:
        return _omit_none(asdict(self))

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> RequestMessageEnvelope:
        metrics = values.get("metrics")
        pong = values.get("pong")
        rtt = values.get("rtt")
        return cls(
            metrics=Metrics(**metrics) if metrics is not None else None,
            pong=Pong(**pong) if pong is not None else None,
            rtt=Rtt(**rtt) if rtt is not None else None,
        )


@dataclass
class ResponseMessageEnvelope:
    """A message sent from the server to a client."""

    ping: Ping | None = None
    transaction: Transaction | None = None

    def to_dict(self) -> dict[str, Any]:
        return _omit_none(asdict(self))

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> ResponseMessageEnvelope:
        ping = values.get("ping")
        transaction = values.get("transaction")
        return cls(
            ping=Ping(**ping) if ping is not None else None,
            transaction=Transaction(**transaction) if transaction is not None else None,
        )


def build_tx_message_envelope(signature: str, data: str, tpu: list[str]) -> ResponseMessageEnvelope:
    """Wrap a transaction for delivery to a consumer."""
    return ResponseMessageEnvelope(
        transaction=Transaction(signature=signature, data=data, tpu=list(tpu))
    )


def build_ping_message_envelope(id: str) -> ResponseMessageEnvelope:
    """Wrap a ping with the given identifier."""
    return ResponseMessageEnvelope(ping=Ping(id=id))