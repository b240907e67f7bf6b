"""A bucket view that places every object under a fixed prefix."""

from __future__ import annotations

import dataclasses
from typing import Any, Callable

from objstore.bucket import (
    DIR_DELIM,
    Bucket,
    IterObjectAttributes,
    IterOption,
    IterOptionType,
    ObjectAttributes,
    ObjectUploadOption,
    ObjProvider,
)


def _valid_prefix(prefix: str) -> bool:
    return len(prefix.replace(DIR_DELIM, "")) > 0


def _with_prefix(prefix: str, name: str) -> str:
    return prefix + DIR_DELIM + name


def _conditional_prefix(prefix: str, name: str) -> str:
    return _with_prefix(prefix, name) if name else name


class PrefixedBucket(Bucket):
    """Delegates to another bucket with all names placed under ``prefix``."""

    def __init__(self, bucket: Bucket, prefix: str) -> None:
        self._bucket = bucket
        self._prefix = prefix.strip(DIR_DELIM)

    @property
    def prefix(self) -> str:
        return self._prefix

    def _trim(self, name: str) -> str:
        return name.removeprefix(self._prefix + DIR_DELIM)

    def _full(self, name: str) -> str:
        return _conditional_prefix(self._prefix, name)

    def provider(self) -> ObjProvider:
        return self._bucket.provider()

    def close(self) -> None:
        self._bucket.close()

    def iter(self, dir: str, f: Callable[[str], None], *args: IterOption) -> None:
        self._bucket.iter(_with_prefix(self._prefix, dir), lambda s: f(self._trim(s)), *args)

    def iter_with_attributes(
        self, dir: str, f: Callable[[IterObjectAttributes], None], *args: IterOption
    ) -> None:
        self._bucket.iter_with_attributes(
            _with_prefix(self._prefix, dir),
            lambda attrs: f(dataclasses.replace(attrs, name=self._trim(attrs.name))),
            *args,
        )

    def supported_iter_options(self) -> list[IterOptionType]:
        return self._bucket.supported_iter_options()

    def get(self, name: str) -> Any:
        return self._bucket.get(self._full(name))

    def get_range(self, name: str, off: int, length: int) -> Any:
        return self._bucket.get_range(self._full(name), off, length)

    def exists(self, name: str) -> bool:
        return self._bucket.exists(self._full(name))

    def is_obj_not_found_err(self, err: BaseException) -> bool:
        return self._bucket.is_obj_not_found_err(err)

    def is_access_denied_err(self, err: BaseException) -> bool:
        return self._bucket.is_access_denied_err(err)

    def attributes(self, name: str) -> ObjectAttributes:
        return self._bucket.attributes(self._full(name))

    def upload(self, name: str, reader: Any, *args: ObjectUploadOption) -> None:
        self._bucket.upload(self._full(name), reader, *args)

    def delete(self, name: str) -> None:
        self._bucket.delete(self._full(name))

    def name(self) -> str:
        return self._bucket.name()


def new_prefixed_bucket(bucket: Bucket, prefix: str) -> Bucket:
    """Return ``bucket`` viewed under ``prefix``, or ``bucket`` itself if the prefix is empty."""
    if _valid_prefix(prefix):
        return PrefixedBucket(bucket, prefix)
    return bucket