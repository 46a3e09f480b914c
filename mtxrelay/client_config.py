"""Command-line options and upstream server list of the forwarding client."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path

import yaml

VERSION = "rust-0.0.14-beta"
DEFAULT_METRICS_ADDR = "127.0.0.1:9091"
DEFAULT_THROTTLE_PARALLEL = 1000
SERVERS_KEY = "mtransaction_servers"

# Retries are delayed linearly, up to a minute.
GRPC_RECONNECT_DELAY_MS = 1_000
GRPC_RECONNECT_MAX_DELAY_MS = 60_000


@dataclass(frozen=True)
class ClientParams:
    """Settings of the forwarding client."""

    grpc_urls_file: str
    tls_grpc_ca_cert: str | None = None
    tls_grpc_client_key: str | None = None
    tls_grpc_client_cert: str | None = None
    identity: str | None = None
    tpu_addr: str | None = None
    metrics_addr: str = DEFAULT_METRICS_ADDR
    rpc_url: str | None = None
    blackhole: bool = False
    throttle_parallel: int = DEFAULT_THROTTLE_PARALLEL


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mtx-client", description="Forward transactions received from relay servers."
    )
    parser.add_argument("--tls-grpc-ca-cert")
    parser.add_argument("--tls-grpc-client-key")
    parser.add_argument("--tls-grpc-client-cert")
    parser.add_argument("--grpc-urls-file", required=True)
    parser.add_argument("--identity")
    parser.add_argument("--tpu-addr")
    parser.add_argument("--metrics-addr", default=DEFAULT_METRICS_ADDR)
    parser.add_argument("--rpc-url")
    parser.add_argument("--blackhole", action="store_true")
    parser.add_argument("--throttle-parallel", type=int, default=DEFAULT_THROTTLE_PARALLEL)
    return parser


def parse_args(argv: list[str] | None = None) -> ClientParams:
    """Parse command-line arguments; exits with a usage message on bad input."""
    namespace = _build_parser().parse_args(argv)
    return ClientParams(**vars(namespace))


def read_grpc_urls_from_file(path) -> list[str]:
    """The non-empty string entries of the mtransaction_servers list in a YAML file.

    Raises OSError if the file cannot be read and ValueError if it is not valid
    YAML or holds no server list.
    """
    text = Path(path).read_text()
    try:
        content = yaml.safe_load(text)
    except yaml.YAMLError as err:
        raise ValueError(f"error reading content: {err}") from err
    servers = content.get(SERVERS_KEY) if isinstance(content, dict) else None
    if not isinstance(servers, list):
        raise ValueError("No mtransaction_servers found")
    return [entry for entry in servers if isinstance(entry, str) and entry]


def retry_delay_ms(retry: int) -> int:
    """Delay before the given reconnection attempt, in milliseconds."""
    return min(GRPC_RECONNECT_MAX_DELAY_MS, GRPC_RECONNECT_DELAY_MS * retry)


def diff_urls(old: list[str], new: list[str]) -> tuple[list[str], list[str]]:
    """URLs to start connections for, and URLs whose connections to stop."""
    to_spawn = [url for url in new if url not in old]
    to_abort = [url for url in old if url not in new]
    return to_spawn, to_abort