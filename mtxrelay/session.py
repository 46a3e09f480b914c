"""State of one connected transaction consumer on the server side."""

from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import dataclass, field

from cryptography import x509
from cryptography.x509.oid import NameOID

from .balancer import Balancer
from .messages import Metrics, Pong, RequestMessageEnvelope, build_ping_message_envelope
from .metrics import ServerMetrics

log = logging.getLogger(__name__)

PING_INTERVAL_SECONDS = 10
TOKEN_LENGTH = 16
_ALPHANUMERIC = string.ascii_letters + string.digits


@dataclass(frozen=True)
class PingState:
    """The last ping sent to a client and when it was sent."""

    id: int = 0
    at: float = field(default_factory=time.monotonic)


def identity_from_certificate(der: bytes) -> str | None:
    """The first common name in a DER certificate's subject, if any."""
    try:
        certificate = x509.load_der_x509_certificate(der)
    except ValueError:
        return None
    for attribute in certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
        if isinstance(attribute.value, str):
            return attribute.value
    return None


def handle_client_metrics(
    metrics: ServerMetrics, identity: str, token: str, report: Metrics
) -> None:
    """Record the counters a client reported."""
    log.info("Accepted metrics from %s (%s): %s", identity, token, report)
    metrics.client_tx_received.labels(identity).set(report.tx_received)
    metrics.client_tx_forward_succeeded.labels(identity).set(report.tx_forward_succeeded)
    metrics.client_tx_forward_failed.labels(identity).set(report.tx_forward_failed)
    metrics.client_quic_forwarder_permits_used_max.labels(identity).set(
        report.quic_forwarder_permits_used_max
    )
    metrics.client_memory_physical.labels(identity).set(report.memory_physical)


def handle_client_pong(
    metrics: ServerMetrics, identity: str, pong: Pong, last_ping: PingState
) -> bool:
    """Record the round trip if the pong answers the last ping; True if it did."""
    if str(last_ping.id) != pong.id:
        return False
    metrics.client_ping_rtt.labels(identity).observe(time.monotonic() - last_ping.at)
    return True


class ClientSession:
    """A subscribed consumer with its ping bookkeeping."""

    def __init__(
        self,
        balancer: Balancer,
        identity: str,
        token: str | None = None,
        metrics: ServerMetrics | None = None,
    ) -> None:
        self.balancer = balancer
        self.identity = identity
        self.token = (
            token
            if token is not None
            else "".join(secrets.choice(_ALPHANUMERIC) for _ in range(TOKEN_LENGTH))
        )
        self.metrics = metrics if metrics is not None else balancer.metrics
        self.last_ping = PingState()
        log.info("New client connected: %s (%s).", self.identity, self.token)
        self.consumer = balancer.subscribe(self.identity, self.token)

    def handle_request(self, envelope: RequestMessageEnvelope | Exception) -> None:
        """Apply one message received from the client."""
        if isinstance(envelope, Exception):
            log.error(
                "Error receiving message from the client %s (%s): %s",
                self.identity,
                self.token,
                envelope,
            )
            return
        if envelope.metrics is not None:
            handle_client_metrics(self.metrics, self.identity, self.token, envelope.metrics)
        if envelope.rtt is not None:
            self.balancer.update_rtt(self.identity, envelope.rtt)
        if envelope.pong is not None:
            handle_client_pong(self.metrics, self.identity, envelope.pong, self.last_ping)

    async def next_ping(self) -> PingState:
        """Send the next ping; ConnectionError if the client has gone."""
        ping = PingState(id=self.last_ping.id + 1)
        self.last_ping = ping
        try:
            await self.consumer.send(build_ping_message_envelope(str(ping.id)))
        except ConnectionError as err:
            log.error(
                "Error sending ping to the client %s (%s): %s", self.identity, self.token, err
            )
            raise
        log.info("Ping has been sent to %s (%s)", self.identity, self.token)
        return ping

    def close(self) -> None:
        """Unsubscribe the client and drop its per-client metrics."""
        log.info("Cleaning resources after client %s (%s)", self.identity, self.token)
        self.consumer.close()
        self.balancer.unsubscribe(self.identity, self.token)
        self.metrics.reset_client_metrics(self.identity)