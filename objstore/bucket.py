"""Core object storage types: providers, iteration options, attributes and the bucket interface."""

from __future__ import annotations

import abc
import enum
import io
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

DIR_DELIM = "/"

OP_ITER = "iter"
OP_GET = "get"
OP_GET_RANGE = "get_range"
OP_EXISTS = "exists"
OP_UPLOAD = "upload"
OP_DELETE = "delete"
OP_ATTRIBUTES = "attributes"


class ObjProvider(str, enum.Enum):
    """Kinds of object storage backends."""

    MEMORY = "MEMORY"
    FILESYSTEM = "FILESYSTEM"
    GCS = "GCS"
    S3 = "S3"
    AZURE = "AZURE"
    SWIFT = "SWIFT"
    COS = "COS"
    ALIYUNOSS = "ALIYUNOSS"
    BOS = "BOS"
    OCI = "OCI"
    OBS = "OBS"

    def __str__(self) -> str:
        return self.value


class IterOptionType(enum.IntEnum):
    """Kinds of iteration options, used to check provider support."""

    RECURSIVE = 0
    UPDATED_AT = 1


@dataclass
class IterParams:
    """Iteration parameters assembled from options."""

    recursive: bool = False
    last_modified: bool = False


@dataclass(frozen=True)
class IterOption:
    """An iteration option: its kind and how it changes the parameters."""

    type: IterOptionType
    apply: Callable[[IterParams], None]


class OptionNotSupportedError(ValueError):
    """Raised when a provider does not support a requested iteration option."""


class ObjectNotFoundError(LookupError):
    """Raised when the requested object does not exist."""


def _set_recursive(params: IterParams) -> None:
    params.recursive = True


def _set_last_modified(params: IterParams) -> None:
    params.last_modified = True


def with_recursive_iter() -> IterOption:
    """Option that lists every object under the directory, at any depth."""
    return IterOption(IterOptionType.RECURSIVE, _set_recursive)


def with_updated_at() -> IterOption:
    """Option that includes the last modification time in iterated attributes."""
    return IterOption(IterOptionType.UPDATED_AT, _set_last_modified)


def validate_iter_options(supported: Iterable[IterOptionType], options: Iterable[IterOption]) -> None:
    """Raise OptionNotSupportedError for the first option whose type is not supported."""
    supported = set(supported)
    for opt in options:
        if opt.type not in supported:
            raise OptionNotSupportedError(f"iter option is not supported: {opt.type.name}")


def apply_iter_options(options: Iterable[IterOption]) -> IterParams:
    """Fold ``options`` into a fresh IterParams."""
    params = IterParams()
    for opt in options:
        opt.apply(params)
    return params


@dataclass
class UploadObjectParams:
    """Parameters of a single object upload."""

    content_type: str = ""


ObjectUploadOption = Callable[[UploadObjectParams], None]


def with_content_type(content_type: str) -> ObjectUploadOption:
    """Upload option that sets the object's content type."""

    def apply(params: UploadObjectParams) -> None:
        params.content_type = content_type

    return apply


def apply_object_upload_options(options: Iterable[ObjectUploadOption]) -> UploadObjectParams:
    """Fold upload ``options`` into a fresh UploadObjectParams."""
    params = UploadObjectParams()
    for opt in options:
        opt(params)
    return params


@dataclass
class ObjectAttributes:
    """Size in bytes and last modification time of an object."""

    size: int
    last_modified: datetime


@dataclass
class IterObjectAttributes:
    """An iterated entry; ``last_modified`` is None when unavailable."""

    name: str
    last_modified: Optional[datetime] = None


def try_to_get_size(reader: Any) -> int:
    """Return the size of the data behind ``reader`` without reading it.

    Objects with an ``object_size`` method report their own size, in-memory
    byte streams report the unread length and real files their total size.
    Raises TypeError for readers whose size cannot be known.
    """
    sizer = getattr(reader, "object_size", None)
    if callable(sizer):
        return sizer()
    if isinstance(reader, io.BytesIO):
        with reader.getbuffer() as buf:
            total = buf.nbytes
        return max(0, total - reader.tell())
    fileno = getattr(reader, "fileno", None)
    if callable(fileno):
        try:
            fd = fileno()
        except OSError:
            fd = None
        if fd is not None:
            return os.fstat(fd).st_size
    raise TypeError(f"unsupported type of reader: {type(reader).__name__}")


class ObjectSizerReader:
    """A readable stream that can also report the size of its object."""

    def __init__(self, reader: Any, size: Optional[Callable[[], int]] = None) -> None:
        self._reader = reader
        self._size = size

    def read(self, size: int = -1) -> bytes:
        return self._reader.read(size)

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        close = getattr(self._reader, "close", None)
        if callable(close):
            close()

    def object_size(self) -> int:
        """Return the object size; raise ValueError if it is unknown."""
        if self._size is None:
            raise ValueError("unknown size")
        return self._size()

    def __enter__(self) -> "ObjectSizerReader":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class _NopCloserWithSize(ObjectSizerReader):
    def __init__(self, reader: Any) -> None:
        super().__init__(reader, lambda: try_to_get_size(reader))

    def close(self) -> None:
        pass


def nop_closer_with_size(reader: Any) -> ObjectSizerReader:
    """Wrap ``reader`` so that closing is a no-op and its size can be queried."""
    return _NopCloserWithSize(reader)


class Bucket(abc.ABC):
    """Read and write access to an object storage bucket.

    Writes are assumed to be strongly consistent with later reads.
    """

    @abc.abstractmethod
    def provider(self) -> ObjProvider:
        """Return the kind of backend."""

    @abc.abstractmethod
    def iter(self, dir: str, f: Callable[[str], None], *args: IterOption) -> None:
        """Call ``f`` with the full name of each entry in ``dir``, in sorted order."""

    @abc.abstractmethod
    def iter_with_attributes(
        self, dir: str, f: Callable[[IterObjectAttributes], None], *args: IterOption
    ) -> None:
        """Like iter, but pass attributes requested with the options."""

    @abc.abstractmethod
    def supported_iter_options(self) -> list[IterOptionType]:
        """Return the iteration options the backend supports."""

    @abc.abstractmethod
    def get(self, name: str) -> Any:
        """Return a reader for the named object."""

    @abc.abstractmethod
    def get_range(self, name: str, off: int, length: int) -> Any:
        """Return a reader for ``length`` bytes of the object from ``off``; -1 reads to the end."""

    @abc.abstractmethod
    def exists(self, name: str) -> bool:
        """Return whether the named object exists."""

    @abc.abstractmethod
    def attributes(self, name: str) -> ObjectAttributes:
        """Return size and modification time of the named object."""

    @abc.abstractmethod
    def upload(self, name: str, reader: Any, *args: ObjectUploadOption) -> None:
        """Store the contents of ``reader`` as the named object; idempotent."""

    @abc.abstractmethod
    def delete(self, name: str) -> None:
        """Remove the named object; fail if it does not exist."""

    @abc.abstractmethod
    def is_obj_not_found_err(self, err: BaseException) -> bool:
        """Return whether ``err`` means the object was not found."""

    @abc.abstractmethod
    def is_access_denied_err(self, err: BaseException) -> bool:
        """Return whether ``err`` means access to the object was denied."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release resources held by the bucket."""

    @abc.abstractmethod
    def name(self) -> str:
        """Return the bucket name."""

    def __enter__(self) -> "Bucket":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()