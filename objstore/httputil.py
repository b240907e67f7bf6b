"""Parsing of common HTTP response headers."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Mapping, Sequence, Union

CONTENT_LENGTH_HEADER = "Content-Length"
LAST_MODIFIED_HEADER = "Last-Modified"

RFC3339 = "%Y-%m-%dT%H:%M:%S%z"
RFC1123 = "%a, %d %b %Y %H:%M:%S %Z"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_DECIMAL = re.compile(r"[+-]?[0-9]+")
_RFC3339_VALUE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)

HeaderValue = Union[str, bytes, Sequence[str]]


def _first_value(headers: Mapping[str, HeaderValue], name: str) -> str:
    if name not in headers:
        raise ValueError(f"{name} header not found")
    values = headers[name]
    if isinstance(values, (str, bytes)):
        values = [values]
    values = list(values)
    if not values:
        raise ValueError(f"{name} header has no values")
    value = values[0]
    if isinstance(value, bytes):
        value = value.decode("latin-1")
    return value


def parse_content_length(headers: Mapping[str, HeaderValue]) -> int:
    """Return the byte count held in the Content-Length header."""
    value = _first_value(headers, CONTENT_LENGTH_HEADER)
    if not _DECIMAL.fullmatch(value):
        raise ValueError(f'convert {CONTENT_LENGTH_HEADER}: parsing "{value}": invalid syntax')
    length = int(value)
    if not _INT64_MIN <= length <= _INT64_MAX:
        raise ValueError(f'convert {CONTENT_LENGTH_HEADER}: parsing "{value}": value out of range')
    return length


def _parse_rfc3339(value: str) -> datetime:
    match = _RFC3339_VALUE.fullmatch(value)
    if match is None:
        raise ValueError("value does not match the RFC 3339 layout")
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    microsecond = int((fraction or "").ljust(6, "0")[:6])
    if offset == "Z":
        tz = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        hours, minutes = offset[1:].split(":")
        tz = timezone(sign * timedelta(hours=int(hours), minutes=int(minutes)))
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), microsecond, tzinfo=tz
    )


def parse_last_modified(headers: Mapping[str, HeaderValue], fmt: str = "") -> datetime:
    """Return the timestamp held in the Last-Modified header.

    ``fmt`` is a ``strptime`` format; an empty one means RFC 3339. Times
    parsed without a numeric offset are taken to be UTC.
    """
    value = _first_value(headers, LAST_MODIFIED_HEADER)
    fmt = fmt or RFC3339
    try:
        if fmt == RFC3339:
            parsed = _parse_rfc3339(value)
        else:
            parsed = datetime.strptime(value, fmt)
    except ValueError as exc:
        raise ValueError(
            f'parse {LAST_MODIFIED_HEADER}: parsing time "{value}" as "{fmt}": {exc}'
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed