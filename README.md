# mtxrelay

`mtxrelay` provides the parts of a relay for signed transactions. Clients
submit transactions to a JSON-RPC front end, and the relay hands them out to
a pool of connected consumers. The library covers both the server side and
the consumer side.

## Server side

- `mtxrelay.rpc_server.RpcServer` answers the JSON-RPC methods
  `sendPriorityTransaction`, `sendTransaction` and `getHealth`, including
  batches. Its `app()` method returns an `aiohttp` application with these
  routes:
  - `POST /` for JSON-RPC calls.
  - `OPTIONS /` for CORS preflight requests.
  - `GET /health`, which returns status 503 when no consumer is connected.
- Callers are authenticated in one of two ways:
  - With a public key, the `Authorization` header must hold an RS256 JWT
    bearer token. `mtxrelay.auth.authenticate` verifies it against an RSA
    key loaded with `mtxrelay.auth.load_public_key`.
  - Without a key, the header value is trusted as the caller's name, and
    `"unknown"` is used when the header is absent.
- The `config` parameter is required, and it must contain
  `"skipPreflight": true`. The transaction data must be base64.
- `first_signature` reads the transaction's first signature from the wire
  bytes. The size limit is 1232 bytes, and trailing bytes are ignored. The
  signature is returned to the caller in base58, encoded by `b58encode`.
- `select_mode` picks `Mode.BLACKHOLE` at random for about half of the calls
  from callers named in `test_partners`. These transactions are
  acknowledged and not forwarded. All other transactions are passed to the
  balancer.
- `mtxrelay.balancer.Balancer` chooses consumers for each transaction:
  - Connected consumers that are current leaders (set with `set_leaders`)
    are always chosen.
  - Further picks are sampled at random, weighted by stake, until there
    are three picks.
  - The leader TPU addresses are split into chunks across the picks. Each
    address goes to two of them.
  - Each chosen consumer gets a transaction envelope on its `asyncio.Queue`.
  - The `SignatureRecord` is put on the optional `watcher_inbox` queue.
  - When there are no consumers, `NoConsumersError` is raised.
  - Stake comes from `update_stake_weights`. A consumer not listed there
    has a stake of 1. `merge_stake_overrides` applies per-identity
    overrides on top of a stake table.
- `mtxrelay.session.ClientSession` is one subscribed consumer. It does the
  following:
  - Generates a random 16-character token.
  - Sends a ping each time `next_ping()` is awaited.
  - Records round-trip times when matching pongs arrive.
  - Stores the metrics and RTT reports the consumer sends.
  - Unsubscribes the consumer and drops its per-client series on `close()`.
- `identity_from_certificate` takes the first common name from a DER
  client certificate.
- `mtxrelay.metrics` holds `Counter`, `Gauge`, `Histogram` and
  `LabeledMetric`:
  - `Registry.render()` writes all registered metrics in the Prometheus
    text format.
  - `metrics_app(registry)` serves that text at `GET /metrics`.
  - `ServerMetrics` and `ClientMetrics` register the relay's metric
    families.

## Consumer side

- `mtxrelay.client_config.parse_args` parses the consumer's options:
  - `--grpc-urls-file` is required.
  - `--tls-grpc-ca-cert`, `--tls-grpc-client-key`, `--tls-grpc-client-cert`,
    `--identity`, `--tpu-addr` and `--rpc-url` are optional.
  - `--metrics-addr` defaults to `127.0.0.1:9091`.
  - `--blackhole` is a flag.
  - `--throttle-parallel` defaults to 1000.
- `read_grpc_urls_from_file` reads the `mtransaction_servers` list from a
  YAML file.
- `retry_delay_ms` gives the linear reconnect back-off, capped at 60 seconds.
- `diff_urls` says which connections to start and which to stop after the
  list changes.
- `mtxrelay.forwarder.create_forwarder` returns one of two forwarders:
  - A `BlackholeForwarder`, which counts transactions and drops them.
  - An `RpcForwarder`, which posts `sendTransaction` to a JSON-RPC node with
    `skipPreflight` and base64 encoding. No more than `throttle_parallel`
    requests are in flight at once.
- `process_upstream_message` handles one message from a relay server. It
  answers a ping with a pong on the upstream queue and puts any transaction
  on the transactions queue.

## Examples

Serving the RPC front end:

```python
from aiohttp import web

from mtxrelay.balancer import Balancer
from mtxrelay.rpc_server import RpcServer

balancer = Balancer()
server = RpcServer(balancer)          # no public key: trust the Authorization header
web.run_app(server.app(), port=3000)
```

Reading the upstream list:

```yaml
# client.yml
mtransaction_servers:
  - http://localhost:50051
  - http://relay.example.com:50051
```

```python
from mtxrelay.client_config import read_grpc_urls_from_file, retry_delay_ms

urls = read_grpc_urls_from_file("client.yml")
# ['http://localhost:50051', 'http://relay.example.com:50051']

retry_delay_ms(3)    # 3000
retry_delay_ms(500)  # 60000, the cap
```

Building the envelopes that go to a consumer:

```python
from mtxrelay.messages import build_ping_message_envelope, build_tx_message_envelope

envelope = build_tx_message_envelope("5sig", "AQID", ["10.0.0.1:8009"])
envelope.transaction.tpu             # ['10.0.0.1:8009']
build_ping_message_envelope("1").ping.id   # '1'
```

Checking a bearer token:

```python
from mtxrelay.auth import AuthError, authenticate, load_public_key

public_key = load_public_key("jwtRS256.key.pub")
try:
    auth = authenticate(public_key, "Bearer token")
except AuthError as err:
    print("rejected:", err)
```

A verified token becomes a `JwtAuth`. Its string form is one of
`JWT:partner:<name>`, `JWT:pubkey:<key>` or `JWT:Anonymous`. This string is
used as the partner label on metrics and is compared with the list of test
partners.

## Errors

- `AuthError` is raised for missing or invalid credentials.
- `RpcError` carries a JSON-RPC code and message:
  - 403 when authentication failed.
  - Invalid params when the config or `skipPreflight` is missing or false,
    or when the transaction cannot be decoded.
  - Internal error when the transaction has no signature or no consumer is
    connected.
  - 503 from `getHealth` when no consumer is connected.
- `NoConsumersError` is raised by `Balancer.publish` when there is no
  consumer.

## What is not included

- There are no command-line programs. `parse_args` only parses the
  consumer's options.
- There is no streaming transport between server and consumers. Messages are
  passed through `asyncio.Queue` objects, and the caller must connect them
  to a network.
- There is no direct TPU (QUIC) forwarding. `create_forwarder` raises
  `ValueError` unless an RPC URL is given or blackhole mode is on.
- Nothing fetches leader schedules, stake or epochs from a chain, and
  nothing confirms forwarded transactions. The caller supplies these through
  `set_leaders`, `update_stake_weights` and the `watcher_inbox` queue.
- `ClientSession` does not send pings on a timer. The caller decides when to
  await `next_ping()`.

## Tests

The tests use `pytest` and `pytest-asyncio`. Install them with the `test`
extra.