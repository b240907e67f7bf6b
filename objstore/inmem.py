"""A bucket kept entirely in process memory, meant for tests."""

from __future__ import annotations

import io
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from objstore.bucket import (
    DIR_DELIM,
    Bucket,
    IterObjectAttributes,
    IterOption,
    IterOptionType,
    ObjectAttributes,
    ObjectNotFoundError,
    ObjectSizerReader,
    ObjectUploadOption,
    ObjProvider,
    apply_iter_options,
    validate_iter_options,
)

_NOT_FOUND_MESSAGE = "inmem: object not found"


def _split_after(value: str, sep: str) -> list[str]:
    """Split ``value`` after each ``sep``, keeping the separator on each part."""
    pieces = value.split(sep)
    return [piece + sep for piece in pieces[:-1]] + [pieces[-1]]


def _sized_reader(data: bytes) -> ObjectSizerReader:
    return ObjectSizerReader(io.BytesIO(data), lambda: len(data))


def _is_not_found(err: Optional[BaseException]) -> bool:
    seen = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, ObjectNotFoundError):
            return True
        seen.add(id(err))
        err = err.__cause__
    return False


class InMemBucket(Bucket):
    """Bucket storing immutable objects in a dictionary; safe to share between threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[str, bytes] = {}
        self._attrs: dict[str, ObjectAttributes] = {}

    def provider(self) -> ObjProvider:
        return ObjProvider.MEMORY

    def objects(self) -> dict[str, bytes]:
        """Return a copy of the stored objects."""
        with self._lock:
            return dict(self._objects)

    def _generic_iter(
        self,
        dir: str,
        f: Callable[[str, Optional[datetime]], None],
        options: tuple[IterOption, ...],
    ) -> None:
        params = apply_iter_options(options)
        dir_parts_count = sum(1 for part in _split_after(dir, DIR_DELIM) if part)

        unique: set[str] = set()
        last_modified: dict[str, datetime] = {}
        with self._lock:
            for filename, attrs in self._attrs.items():
                if not filename.startswith(dir) or filename == dir:
                    continue
                if params.recursive:
                    unique.add(filename)
                    last_modified[filename] = attrs.last_modified
                    continue
                parts = _split_after(filename, DIR_DELIM)
                name = "".join(parts[: dir_parts_count + 1])
                unique.add(name)
                if params.last_modified:
                    last_modified[name] = attrs.last_modified

        # Files come first, then directories, each group in lexical order.
        for key in sorted(unique, key=lambda k: (k.endswith(DIR_DELIM), k)):
            modified = last_modified.get(key) if params.last_modified else None
            f(key, modified)

    def iter(self, dir: str, f: Callable[[str], None], *args: IterOption) -> None:
        """Call ``f`` with the full name of each entry under ``dir``."""
        self._generic_iter(dir, lambda name, _modified: f(name), args)

    def supported_iter_options(self) -> list[IterOptionType]:
        return [IterOptionType.RECURSIVE, IterOptionType.UPDATED_AT]

    def iter_with_attributes(
        self, dir: str, f: Callable[[IterObjectAttributes], None], *args: IterOption
    ) -> None:
        validate_iter_options(self.supported_iter_options(), args)
        self._generic_iter(
            dir,
            lambda name, modified: f(IterObjectAttributes(name=name, last_modified=modified)),
            args,
        )

    def _lookup(self, name: str) -> bytes:
        if name == "":
            raise ValueError("inmem: object name is empty")
        with self._lock:
            data = self._objects.get(name)
        if data is None:
            raise ObjectNotFoundError(_NOT_FOUND_MESSAGE)
        return data

    def get(self, name: str) -> ObjectSizerReader:
        return _sized_reader(self._lookup(name))

    def get_range(self, name: str, off: int, length: int) -> ObjectSizerReader:
        data = self._lookup(name)
        if len(data) < off:
            return _sized_reader(b"")
        if length == -1:
            return _sized_reader(data[off:])
        if length <= 0:
            raise ValueError("length cannot be smaller or equal 0")
        if len(data) <= off + length:
            length = len(data) - off
        return _sized_reader(data[off : off + length])

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._objects

    def attributes(self, name: str) -> ObjectAttributes:
        with self._lock:
            attrs = self._attrs.get(name)
        if attrs is None:
            raise ObjectNotFoundError(_NOT_FOUND_MESSAGE)
        return attrs

    def upload(self, name: str, reader: Any, *args: ObjectUploadOption) -> None:
        body = reader.read()
        if isinstance(body, str):
            body = body.encode()
        body = bytes(body)
        with self._lock:
            self._objects[name] = body
            self._attrs[name] = ObjectAttributes(
                size=len(body), last_modified=datetime.now(timezone.utc)
            )

    def delete(self, name: str) -> None:
        with self._lock:
            if name not in self._objects:
                raise ObjectNotFoundError(_NOT_FOUND_MESSAGE)
            del self._objects[name]
            self._attrs.pop(name, None)

    def is_obj_not_found_err(self, err: BaseException) -> bool:
        return _is_not_found(err)

    def is_access_denied_err(self, err: BaseException) -> bool:
        return False

    def close(self) -> None:
        pass

    def name(self) -> str:
        return "inmem"