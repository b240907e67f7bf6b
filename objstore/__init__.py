"""Object storage buckets: in-memory, prefixed and instrumented, with directory transfer, HTTP header and TLS helpers."""

__version__ = "0.1.0"

__all__ = [
    "bucket",
    "errors",
    "httputil",
    "inmem",
    "metrics",
    "prefixed",
    "tlsconfig",
    "transfer",
]