"""TLS and HTTP transport settings for object storage clients."""

from __future__ import annotations

import ssl
import urllib.request
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional


@dataclass
class TLSConfig:
    """Options for TLS connections to storage endpoints."""

    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""
    server_name: str = ""
    insecure_skip_verify: bool = False


class _ClientContext(ssl.SSLContext):
    """Client context that falls back to a configured server name."""

    server_name: str = ""

    def _hostname(self, server_hostname: Optional[str]) -> Optional[str]:
        return server_hostname or self.server_name or None

    def wrap_socket(
        self,
        sock,
        server_side=False,
        do_handshake_on_connect=True,
        suppress_ragged_eofs=True,
        server_hostname=None,
        session=None,
    ):
        return super().wrap_socket(
            sock,
            server_side=server_side,
            do_handshake_on_connect=do_handshake_on_connect,
            suppress_ragged_eofs=suppress_ragged_eofs,
            server_hostname=self._hostname(server_hostname),
            session=session,
        )

    def wrap_bio(self, incoming, outgoing, server_side=False, server_hostname=None, session=None):
        return super().wrap_bio(
            incoming,
            outgoing,
            server_side=server_side,
            server_hostname=self._hostname(server_hostname),
            session=session,
        )


def _set_insecure(ctx: ssl.SSLContext, insecure: bool) -> None:
    if insecure:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    else:
        ctx.verify_mode = ssl.CERT_REQUIRED
        ctx.check_hostname = True


def _read_ca_file(path: str) -> bytes:
    try:
        with open(path, "rb") as handle:
            return handle.read()
    except OSError as exc:
        raise ValueError(f"unable to load specified CA cert {path}: {exc}") from exc


def _update_root_ca(ctx: ssl.SSLContext, data: bytes) -> bool:
    try:
        ctx.load_verify_locations(cadata=data.decode("ascii"))
    except (UnicodeDecodeError, ssl.SSLError, ValueError):
        return False
    return True


def new_tls_config(cfg: TLSConfig) -> ssl.SSLContext:
    """Build a client SSL context from ``cfg``."""
    ctx = _ClientContext(ssl.PROTOCOL_TLS_CLIENT)
    _set_insecure(ctx, cfg.insecure_skip_verify)

    if cfg.ca_file:
        if not _update_root_ca(ctx, _read_ca_file(cfg.ca_file)):
            raise ValueError(f"unable to use specified CA cert {cfg.ca_file}")
    else:
        ctx.load_default_certs()

    if cfg.server_name:
        ctx.server_name = cfg.server_name

    if cfg.cert_file and not cfg.key_file:
        raise ValueError(f'client cert file "{cfg.cert_file}" specified without client key file')
    if cfg.key_file and not cfg.cert_file:
        raise ValueError(f'client key file "{cfg.key_file}" specified without client cert file')
    if cfg.cert_file and cfg.key_file:
        try:
            ctx.load_cert_chain(cfg.cert_file, cfg.key_file)
        except OSError as exc:
            raise ValueError(
                f"unable to use specified client cert ({cfg.cert_file}) & key ({cfg.key_file}): {exc}"
            ) from exc
    return ctx


@dataclass
class HTTPConfig:
    """HTTP transport settings; the defaults are the recommended values."""

    idle_conn_timeout: timedelta = timedelta(seconds=90)
    response_header_timeout: timedelta = timedelta(minutes=2)
    insecure_skip_verify: bool = False
    tls_handshake_timeout: timedelta = timedelta(seconds=10)
    expect_continue_timeout: timedelta = timedelta(seconds=1)
    max_idle_conns: int = 100
    max_idle_conns_per_host: int = 100
    max_conns_per_host: int = 0
    transport: Optional[Any] = None
    tls_config: TLSConfig = field(default_factory=TLSConfig)
    disable_compression: bool = False


DEFAULT_HTTP_CONFIG = HTTPConfig()


@dataclass(frozen=True)
class Transport:
    """Resolved connection settings for an HTTP client."""

    tls_context: ssl.SSLContext
    max_idle_conns: int
    max_idle_conns_per_host: int
    idle_conn_timeout: timedelta
    max_conns_per_host: int
    tls_handshake_timeout: timedelta
    expect_continue_timeout: timedelta
    response_header_timeout: timedelta
    dial_timeout: timedelta = timedelta(seconds=30)
    keep_alive: timedelta = timedelta(seconds=30)
    proxy: Callable[[], dict] = urllib.request.getproxies


def default_transport(config: HTTPConfig) -> Transport:
    """Build transport settings from ``config``.

    The top-level ``insecure_skip_verify`` always overrides the one in the TLS section.
    """
    ctx = new_tls_config(config.tls_config)
    _set_insecure(ctx, config.insecure_skip_verify)
    return Transport(
        tls_context=ctx,
        max_idle_conns=config.max_idle_conns,
        max_idle_conns_per_host=config.max_idle_conns_per_host,
        idle_conn_timeout=config.idle_conn_timeout,
        max_conns_per_host=config.max_conns_per_host,
        tls_handshake_timeout=config.tls_handshake_timeout,
        expect_continue_timeout=config.expect_continue_timeout,
        response_header_timeout=config.response_header_timeout,
    )