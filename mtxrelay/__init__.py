"""Transaction relay parts: JSON-RPC front end, stake-weighted balancer, metrics and forwarders."""

__version__ = "0.2.5"