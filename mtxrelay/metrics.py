"""In-process metric collection rendered in the Prometheus text format."""

from __future__ import annotations

import logging
import math
from bisect import bisect_left
from functools import partial
from itertools import accumulate
from operator import itemgetter
from typing import Any, Iterator

from aiohttp import web

from .messages import Metrics

log = logging.getLogger(__name__)

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
PING_RTT_BUCKETS = (0.002, 0.004, 0.008, 0.016, 0.032, 0.064, 0.128)

_Sample = tuple[str, tuple[tuple[str, str], ...], float]


def _format_value(value: float) -> str:
    if isinstance(value, float):
        if math.isinf(value):
            return "+Inf" if value > 0 else "-Inf"
        if math.isnan(value):
            return "NaN"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _format_labels(labels: tuple[tuple[str, str], ...]) -> str:
    if not labels:
        return ""
    body = ",".join(f'{name}="{_escape_label(value)}"' for name, value in labels)
    return "{" + body + "}"


class Counter:
    """A monotonically increasing value."""

    kind = "counter"

    def __init__(self, name: str, help: str) -> None:
        self.name = name
        self.help = help
        self._value = 0

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        self._value += amount

    def _samples(self) -> Iterator[_Sample]:
        yield "", (), self._value


class Gauge:
    """A value that can go up and down."""

    kind = "gauge"

    def __init__(self, name: str, help: str) -> None:
        self.name = name
        self.help = help
        self._value = 0

    @property
    def value(self) -> float:
        return self._value

    def set(self, value: float) -> None:
        self._value = value

    def inc(self, amount: float = 1) -> None:
        self._value += amount

    def _samples(self) -> Iterator[_Sample]:
        yield "", (), self._value


class Histogram:
    """Observations counted into cumulative upper-bounded buckets."""

    kind = "histogram"

    def __init__(self, name: str, help: str, buckets=DEFAULT_BUCKETS) -> None:
        bounds = [float(bound) for bound in buckets if not math.isinf(float(bound))]
        if not bounds:
            raise ValueError("a histogram needs at least one finite bucket")
        if any(low >= high for low, high in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be strictly increasing")
        self.name = name
        self.help = help
        self._bounds = bounds
        self._counts = [0] * len(bounds)
        self._sum = 0.0
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    @property
    def sum(self) -> float:
        return self._sum

    @property
    def buckets(self) -> list[tuple[float, int]]:
        """Upper bounds with their cumulative counts, ending with +Inf."""
        cumulative = list(zip(self._bounds, accumulate(self._counts)))
        cumulative.append((math.inf, self._count))
        return cumulative

    def observe(self, value: float) -> None:
        position = bisect_left(self._bounds, value)
        if position < len(self._counts):
            self._counts[position] += 1
        self._sum += value
        self._count += 1

    def _samples(self) -> Iterator[_Sample]:
        for bound, count in self.buckets:
            yield "_bucket", (("le", _format_value(bound)),), count
        yield "_sum", (), self._sum
        yield "_count", (), self._count


class LabeledMetric:
    """A family of metrics of one type, keyed by label values."""

    def __init__(self, metric_type, name: str, help: str, label_names, **options: Any) -> None:
        self.name = name
        self.help = help
        self.kind = metric_type.kind
        self.label_names = tuple(label_names)
        self._factory = partial(metric_type, name, help, **options)
        self._children: dict[tuple[str, ...], Any] = {}

    def _key(self, values) -> tuple[str, ...]:
        if len(values) != len(self.label_names):
            raise ValueError(
                f"{self.name} expects {len(self.label_names)} label values, got {len(values)}"
            )
        return tuple(str(value) for value in values)

    def labels(self, *args: str):
        """Return the metric for these label values, creating it if needed."""
        key = self._key(args)
        child = self._children.get(key)
        if child is None:
            child = self._children[key] = self._factory()
        return child

    def remove(self, *args: str) -> None:
        """Discard the metric for these label values; KeyError if absent."""
        key = self._key(args)
        try:
            del self._children[key]
        except KeyError:
            raise KeyError(f"{self.name} has no metric for labels {key!r}") from None

    def _samples(self) -> Iterator[_Sample]:
        for values, child in sorted(self._children.items(), key=itemgetter(0)):
            labels = tuple(zip(self.label_names, values))
            for suffix, extra, value in child._samples():
                yield suffix, labels + extra, value


class Registry:
    """A named collection of metrics."""

    def __init__(self) -> None:
        self._metrics: dict[str, Any] = {}

    def register(self, metric):
        if metric.name in self._metrics:
            raise ValueError(f"metric {metric.name!r} is already registered")
        self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        lines: list[str] = []
        for name, metric in sorted(self._metrics.items(), key=itemgetter(0)):
            samples = list(metric._samples())
            if not samples:
                continue
            lines.append(f"# HELP {name} {_escape_help(metric.help)}")
            lines.append(f"# TYPE {name} {metric.kind}")
            lines.extend(
                f"{name}{suffix}{_format_labels(labels)} {_format_value(value)}"
                for suffix, labels, value in samples
            )
        return "".join(f"{line}\n" for line in lines)


class ServerMetrics:
    """The metrics the relay server exposes."""

    def __init__(self, registry: Registry | None = None) -> None:
        self.registry = registry if registry is not None else Registry()

        def gauges(name: str, help: str, *labels: str) -> LabeledMetric:
            return self.registry.register(LabeledMetric(Gauge, name, help, labels))

        self.client_tx_received = gauges(
            "mtx_client_tx_received",
            "How many transactions were received by the client",
            "identity",
        )
        self.client_tx_forward_succeeded = gauges(
            "mtx_client_tx_forward_succeeded",
            "How many transactions were successfully forwarded",
            "identity",
        )
        self.client_tx_forward_failed = gauges(
            "mtx_client_tx_forward_failed",
            "How many transactions failed on the client side",
            "identity",
        )
        self.client_quic_forwarder_permits_used_max = gauges(
            "mtx_client_quic_forwarder_available_permits_max",
            "QUIC concurrent tasks created on the client side at any single moment "
            "since the last metric feed to the server",
            "identity",
        )
        self.client_memory_physical = gauges(
            "mtx_client_memory_physical", "Memory used by the client", "identity"
        )
        self.client_ping_rtt = self.registry.register(
            LabeledMetric(
                Histogram,
                "mtx_client_ping_rtt",
                "Latency to the client based on ping times",
                ("identity",),
                buckets=PING_RTT_BUCKETS,
            )
        )
        self.chain_tx_finalized = gauges(
            "mtx_chain_tx_finalized",
            "How many transactions were finalized on chain",
            "partner",
            "mode",
        )
        self.chain_tx_finalized_by_consumer = gauges(
            "mtx_chain_tx_finalized_by_consumer",
            "How many transactions finalized submitted through consumer",
            "consumer",
        )
        self.chain_tx_finalized_by_tpu_ip = gauges(
            "mtx_chain_tx_finalized_by_tpu_ip",
            "How many transactions finalized submitted through a specific tpu ip",
            "tpu_ip",
        )
        self.chain_tx_timeout = gauges(
            "mtx_chain_tx_timeout",
            "How many transactions we were unable to confirm as finalized",
            "partner",
            "mode",
        )
        self.chain_tx_timeout_by_consumer = gauges(
            "mtx_chain_tx_timeout_by_consumer",
            "How many transactions timed out submitted through consumer",
            "consumer",
        )
        self.chain_tx_timeout_by_tpu_ip = gauges(
            "mtx_chain_tx_timeout_by_tpu_ip",
            "How many transactions timed out submitted through a specific tpu ip",
            "tpu_ip",
        )
        self.chain_tx_execution_success = gauges(
            "mtx_chain_tx_execution_success",
            "How many transactions ended on chain without errors",
            "partner",
            "mode",
        )
        self.chain_tx_execution_error = self.registry.register(
            Counter(
                "mtx_chain_tx_execution_error",
                "How many transactions ended on chain with errors",
            )
        )
        self.server_rpc_tx_accepted = gauges(
            "mtx_server_rpc_tx_accepted",
            "How many transactions were accepted by the server",
            "partner",
            "mode",
        )
        self.server_rpc_tx_bytes_in = self.registry.register(
            Counter(
                "mtx_server_rpc_tx_bytes_in",
                "How many bytes were ingested by the RPC server",
            )
        )
        self.server_total_connected_stake = gauges(
            "mtx_server_total_connected_stake",
            "Total amount of stake connected to MTX server",
            "identity",
        )
        self.server_total_connected_tx_consumers = self.registry.register(
            Gauge(
                "mtx_server_total_connected_tx_consumers",
                "Total amount of TX consumers to MTX server",
            )
        )
        # Reported as 0 until a consumer connects, so there is always something to scrape.
        self.server_total_connected_tx_consumers.set(0)

    def reset_client_metrics(self, identity: str) -> None:
        """Drop per-client latency and stake series for a departed client."""
        try:
            self.client_ping_rtt.remove(identity)
        except KeyError as err:
            log.warning("Couldn't discard latency metrics for %s. Error: %s", identity, err)
        try:
            self.server_total_connected_stake.remove(identity)
        except KeyError as err:
            log.warning(
                "Couldn't discard connected stake metrics for %s. Error: %s", identity, err
            )


class ClientMetrics:
    """The metrics a forwarding client keeps and reports upstream."""

    def __init__(self, registry: Registry | None = None) -> None:
        self.registry = registry if registry is not None else Registry()
        self.tx_received = self.registry.register(
            LabeledMetric(
                Counter,
                "tx_received",
                "How many transactions were received by the client",
                ("source",),
            )
        )
        self.tx_forward_succeeded = self.registry.register(
            LabeledMetric(
                Counter,
                "tx_forward_succeeded",
                "How many transactions were successfully forwarded",
                ("source",),
            )
        )
        self.tx_forward_failed = self.registry.register(
            LabeledMetric(
                Counter,
                "tx_forward_failed",
                "How many transactions failed on the client side",
                ("source",),
            )
        )
        self.quic_forwarder_permits_used_max = self.registry.register(
            Gauge(
                "quic_forwarder_available_permits_max",
                "QUIC concurrent tasks created at any single moment since the last "
                "metric feed to the server",
            )
        )

    def observe_quic_forwarder_permits(self, permits_used: int) -> None:
        gauge = self.quic_forwarder_permits_used_max
        gauge.set(max(gauge.value, permits_used))

    def build_report(self, source: str, version: str, memory_physical: int = 0) -> Metrics:
        """Snapshot the counters for a source and reset the permits high-water mark."""
        report = Metrics(
            tx_received=int(self.tx_received.labels(source).value),
            tx_forward_succeeded=int(self.tx_forward_succeeded.labels(source).value),
            tx_forward_failed=int(self.tx_forward_failed.labels(source).value),
            version=version,
            quic_forwarder_permits_used_max=int(self.quic_forwarder_permits_used_max.value),
            memory_physical=memory_physical,
        )
        self.quic_forwarder_permits_used_max.set(0)
        return report


def metrics_app(registry: Registry) -> web.Application:
    """An application serving the registry at GET /metrics."""

    async def handle_metrics(request: web.Request) -> web.Response:
        return web.Response(text=registry.render(), content_type="text/plain")

    app = web.Application()
    app.router.add_get("/metrics", handle_metrics)
    return app