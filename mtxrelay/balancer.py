"""Distribution of incoming transactions across connected consumers."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import asdict, dataclass, field
from itertools import chain

from .messages import ResponseMessageEnvelope, Rtt, build_tx_message_envelope
from .metrics import ServerMetrics

log = logging.getLogger(__name__)

N_COPIES = 2
N_LEADERS = 7
N_CONSUMERS = 3
LEADER_REFRESH_SECONDS = 3600
NODES_REFRESH_SECONDS = 60
CONSUMER_QUEUE_SIZE = 100
DEFAULT_STAKE = 1


def time_ms() -> int:
    """Milliseconds since the Unix epoch."""
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class LeaderInfo:
    """A validator expected to lead soon, with the TPU address to reach it."""

    identity: str
    tpu: str


@dataclass
class SignatureRecord:
    """What is known about one forwarded transaction, for later confirmation."""

    signature: str
    partner_name: str
    mode: str
    req_id: int = 0
    ctime: int = 0
    rtime: int = 0
    created_at: float = field(default_factory=time.monotonic)
    consumers: list[str] = field(default_factory=list)
    tpu_ips: set[str] = field(default_factory=set)


class NoConsumersError(Exception):
    """No consumer is connected to take a transaction."""


@dataclass(eq=False)
class TxConsumer:
    """A connected client that forwards transactions it is sent."""

    identity: str
    stake: int
    token: str
    queue: asyncio.Queue = field(
        default_factory=lambda: asyncio.Queue(maxsize=CONSUMER_QUEUE_SIZE)
    )
    unsubscribed: asyncio.Event = field(default_factory=asyncio.Event)
    do_unsubscribe: bool = False
    closed: bool = False

    async def send(self, envelope: ResponseMessageEnvelope) -> None:
        """Queue a message for the consumer; ConnectionError once it has gone."""
        if self.closed:
            raise ConnectionError(f"consumer {self.identity} ({self.token}) is closed")
        await self.queue.put(envelope)

    def close(self) -> None:
        """Mark the consumer's connection as gone."""
        self.closed = True


@dataclass
class _RttValue:
    rtt: int = 0
    n: int = 0


class Balancer:
    """Tracks consumers, their stake and upcoming leaders, and routes transactions."""

    def __init__(
        self,
        watcher_inbox: asyncio.Queue | None = None,
        metrics: ServerMetrics | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.watcher_inbox = watcher_inbox
        self.metrics = metrics if metrics is not None else ServerMetrics()
        self._rng = rng if rng is not None else random.Random()
        self.tx_consumers: dict[str, TxConsumer] = {}
        self.stake_weights: dict[str, int] = {}
        self.total_connected_stake = 0
        self.leaders: dict[str, LeaderInfo] = {}
        self.leader_tpus: list[LeaderInfo] = []
        self.rtt_values: dict[str, dict[str, _RttValue]] = {}

    def subscribe(self, identity: str, token: str) -> TxConsumer:
        """Register a consumer, replacing any earlier one with the same identity."""
        log.info('Subscribing # {"identity":"%s","token":"%s"}', identity, token)
        consumer = TxConsumer(
            identity=identity,
            stake=self.stake_weights.get(identity, DEFAULT_STAKE),
            token=token,
        )
        previous = self.tx_consumers.get(identity)
        self.tx_consumers[identity] = consumer
        if previous is not None:
            previous.unsubscribed.set()
        self.recalc_total_connected_stake()
        return consumer

    def unsubscribe(self, identity: str, token: str) -> None:
        """Remove a consumer, provided the token matches its current session."""
        consumer = self.tx_consumers.get(identity)
        if consumer is None or consumer.token != token:
            return
        del self.tx_consumers[identity]
        consumer.unsubscribed.set()
        self.recalc_total_connected_stake()

    def sample_consumer_stake_weighted(self, rng: random.Random) -> TxConsumer | None:
        """Pick one consumer at random, weighted by stake."""
        if self.total_connected_stake == 0:
            if not self.tx_consumers:
                return None
            total_weight = len(self.tx_consumers)
        else:
            total_weight = self.total_connected_stake

        point = rng.randrange(total_weight)
        accumulated = 0
        for consumer in self.tx_consumers.values():
            accumulated += consumer.stake + 1
            if point < accumulated:
                return consumer
        return None

    def pick_consumers(
        self, rng: random.Random | None = None
    ) -> list[tuple[TxConsumer, list[LeaderInfo]]]:
        """Choose consumers for one transaction and the leader TPUs each should hit.

        Consumers that are themselves upcoming leaders are always chosen; the rest
        are sampled by stake. Leader TPUs are then spread so that each goes to
        N_COPIES consumers.
        """
        rng = rng if rng is not None else self._rng
        consumers = [
            (consumer, [self.leaders[identity]])
            for identity, consumer in self.tx_consumers.items()
            if identity in self.leaders
        ]

        for _ in range(N_CONSUMERS - min(len(consumers), N_CONSUMERS)):
            pick = self.sample_consumer_stake_weighted(rng)
            if pick is None:
                break
            consumers.append((pick, []))

        n = len(consumers)
        if n > 0 and self.leader_tpus:
            chunk_len = max(len(self.leader_tpus) // n, 1)
            chunks = (
                self.leader_tpus[start : start + chunk_len]
                for start in range(0, len(self.leader_tpus), chunk_len)
            )
            for i, tpus in enumerate(chunks):
                for tpu in tpus:
                    for j in range(N_COPIES):
                        consumers[(i + j) % n][1].append(tpu)

        return consumers

    def update_stake_weights(self, stake_weights: dict[str, int]) -> None:
        """Replace the stake table and refresh the stake of connected consumers."""
        self.stake_weights = dict(stake_weights)
        for identity, consumer in self.tx_consumers.items():
            consumer.stake = self.stake_weights.get(identity, DEFAULT_STAKE)
        log.info("Stake weights updated")

    def recalc_total_connected_stake(self) -> None:
        """Recompute the connected stake and publish it as metrics."""
        self.metrics.server_total_connected_tx_consumers.set(len(self.tx_consumers))
        for consumer in self.tx_consumers.values():
            self.metrics.server_total_connected_stake.labels(consumer.identity).set(
                consumer.stake
            )
        self.total_connected_stake = sum(c.stake for c in self.tx_consumers.values())

    async def publish(self, session: SignatureRecord, signature: str, data: str) -> SignatureRecord:
        """Send a transaction to the chosen consumers and hand the record to the watcher."""
        log.info("Forwarding tx %s...", signature)

        picks = self.pick_consumers()
        if not picks:
            log.error("Dropping tx, no available clients")
            raise NoConsumersError("No available clients connected")

        for consumer, info in picks:
            info_json = json.dumps([asdict(item) for item in info])
            tpus = list(dict.fromkeys(item.tpu for item in info))
            tpu_ips = [tpu.split(":", 1)[0] for tpu in tpus]
            try:
                await consumer.send(build_tx_message_envelope(signature, data, tpus))
            except ConnectionError as err:
                log.error("Client disconnected %s %s", consumer.identity, err)
                consumer.do_unsubscribe = True
                continue
            log.info("forwarded to %s # %s", consumer.identity, info_json)
            session.consumers.append(consumer.identity)
            session.tpu_ips.update(tpu_ips)

        if self.watcher_inbox is not None:
            try:
                self.watcher_inbox.put_nowait(session)
            except asyncio.QueueFull as err:
                log.error("Failed to propagate signature to the watcher: %r", err)

        return session

    def set_leaders(self, leader_tpus: list[LeaderInfo], leaders: dict[str, LeaderInfo]) -> None:
        self.leader_tpus = list(leader_tpus)
        self.leaders = dict(leaders)

    def update_rtt(self, identity: str, rtt: Rtt) -> None:
        """Fold a reported round-trip time into the running average for that peer."""
        slot = self.rtt_values.setdefault(identity, {}).setdefault(rtt.ip, _RttValue())
        n = slot.n + 1
        slot.rtt = (slot.n * slot.rtt + rtt.rtt) // n
        slot.n = n

    def flush_unsubscribes(self) -> None:
        """Remove every consumer flagged as disconnected."""
        flagged = [
            (consumer.identity, consumer.token)
            for consumer in self.tx_consumers.values()
            if consumer.do_unsubscribe
        ]
        for identity, token in flagged:
            self.unsubscribe(identity, token)


def merge_stake_overrides(
    stake_weights: dict[str, int], identities: list[str], sols: list[int]
) -> dict[str, int]:
    """Stake weights with the paired overrides applied on top."""
    return dict(chain(stake_weights.items(), zip(identities, sols)))