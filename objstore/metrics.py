"""Operation metrics for buckets: a small metric registry and an instrumenting bucket wrapper."""

from __future__ import annotations

import asyncio
import bisect
import concurrent.futures
import dataclasses
import io
import math
import threading
import time
from typing import Any, Callable, Iterator, Optional, Sequence

from objstore.bucket import (
    OP_ATTRIBUTES,
    OP_DELETE,
    OP_EXISTS,
    OP_GET,
    OP_GET_RANGE,
    OP_ITER,
    OP_UPLOAD,
    Bucket,
    IterObjectAttributes,
    IterOption,
    IterOptionType,
    ObjectAttributes,
    ObjectUploadOption,
    ObjProvider,
    try_to_get_size,
)

IsOpFailureExpectedFunc = Callable[[BaseException], bool]
Sample = tuple[str, dict[str, str], float]

_ALL_OPS = (OP_ITER, OP_GET, OP_GET_RANGE, OP_EXISTS, OP_UPLOAD, OP_DELETE, OP_ATTRIBUTES)
_BYTES_OPS = (OP_GET, OP_GET_RANGE, OP_UPLOAD)

# 32KiB, 64KiB, ... 1GiB
TRANSFERRED_BYTES_BUCKETS = tuple(float(32768 * 2**i) for i in range(16))
DURATION_BUCKETS = (0.001, 0.01, 0.1, 0.3, 0.6, 1, 3, 6, 9, 20, 30, 60, 90, 120)


def _format_bound(bound: float) -> str:
    return "+Inf" if math.isinf(bound) else repr(float(bound))


class Counter:
    """A monotonically increasing value."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self) -> None:
        self.add(1.0)

    def add(self, amount: float) -> None:
        """Increase the counter by ``amount``; negative amounts raise ValueError."""
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount


class Histogram:
    """Counts observations in buckets with fixed upper bounds."""

    def __init__(self, upper_bounds: Sequence[float]) -> None:
        bounds = tuple(float(b) for b in upper_bounds)
        if any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be in increasing order")
        self._bounds = bounds
        self._counts = [0] * (len(bounds) + 1)
        self._sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        index = bisect.bisect_left(self._bounds, value)
        with self._lock:
            self._counts[index] += 1
            self._sum += value

    @property
    def count(self) -> int:
        return sum(self._counts)

    @property
    def sum(self) -> float:
        return self._sum

    @property
    def buckets(self) -> list[tuple[float, int]]:
        """Cumulative ``(upper_bound, count)`` pairs, ending with infinity."""
        with self._lock:
            counts = list(self._counts)
        result = []
        running = 0
        for bound, count in zip(self._bounds + (math.inf,), counts):
            running += count
            result.append((bound, running))
        return result


class _Vec:
    kind = ""

    def __init__(
        self, name: str, help: str, label_name: str, const_labels: Optional[dict[str, str]] = None
    ) -> None:
        self.name = name
        self.help = help
        self.label_name = label_name
        self.const_labels = dict(const_labels or {})
        self._children: dict[str, Any] = {}
        self._lock = threading.Lock()

    def _new_child(self) -> Any:
        raise NotImplementedError

    def with_label_values(self, value: str) -> Any:
        """Return the child for ``value``, creating it at zero if needed."""
        with self._lock:
            child = self._children.get(value)
            if child is None:
                child = self._children[value] = self._new_child()
            return child

    def _items(self) -> list[tuple[str, Any]]:
        with self._lock:
            return sorted(self._children.items())

    def _labels(self, value: str) -> dict[str, str]:
        return {**self.const_labels, self.label_name: value}

    def __len__(self) -> int:
        with self._lock:
            return len(self._children)


class CounterVec(_Vec):
    """Counters partitioned by one label."""

    kind = "counter"

    def _new_child(self) -> Counter:
        return Counter()

    def with_label_values(self, value: str) -> Counter:
        return super().with_label_values(value)

    def _samples(self) -> Iterator[Sample]:
        for value, child in self._items():
            yield self.name, self._labels(value), child.value


class HistogramVec(_Vec):
    """Histograms partitioned by one label."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        label_name: str,
        buckets: Sequence[float],
        const_labels: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(name, help, label_name, const_labels)
        self.upper_bounds = tuple(buckets)

    def _new_child(self) -> Histogram:
        return Histogram(self.upper_bounds)

    def with_label_values(self, value: str) -> Histogram:
        return super().with_label_values(value)

    def _samples(self) -> Iterator[Sample]:
        for value, child in self._items():
            labels = self._labels(value)
            for bound, count in child.buckets:
                yield f"{self.name}_bucket", {**labels, "le": _format_bound(bound)}, float(count)
            yield f"{self.name}_sum", labels, child.sum
            yield f"{self.name}_count", labels, float(child.count)


class Gauge:
    """A value that can go up and down."""

    kind = "gauge"

    def __init__(self, name: str, help: str, const_labels: Optional[dict[str, str]] = None) -> None:
        self.name = name
        self.help = help
        self.const_labels = dict(const_labels or {})
        self.value = 0.0

    def set_to_current_time(self) -> None:
        """Set the value to the current Unix time in seconds."""
        self.value = time.time()

    def _samples(self) -> Iterator[Sample]:
        yield self.name, dict(self.const_labels), self.value


class Registry:
    """Holds metrics and exposes their current samples."""

    def __init__(self) -> None:
        self._metrics: dict[tuple[str, tuple[tuple[str, str], ...]], Any] = {}
        self._lock = threading.Lock()

    def register(self, metric: Any) -> None:
        """Add ``metric``; raise ValueError on a duplicate or inconsistent registration."""
        key = (metric.name, tuple(sorted(metric.const_labels.items())))
        with self._lock:
            if key in self._metrics:
                raise ValueError(f"duplicate metrics collector registration attempted: {metric.name}")
            for (name, _), other in self._metrics.items():
                if name == metric.name and (other.help != metric.help or other.kind != metric.kind):
                    raise ValueError(f"metric {metric.name} registered with inconsistent help or type")
            self._metrics[key] = metric

    def collect(self) -> list[Sample]:
        """Return ``(name, labels, value)`` for every sample of every registered metric."""
        with self._lock:
            metrics = list(self._metrics.values())
        return [sample for metric in metrics for sample in metric._samples()]


def _never_expected(err: BaseException) -> bool:
    return False


@dataclasses.dataclass
class Metrics:
    """The set of metrics recorded for a bucket."""

    ops: CounterVec
    ops_failures: CounterVec
    ops_fetched_bytes: CounterVec
    ops_transferred_bytes: HistogramVec
    ops_duration: HistogramVec
    last_successful_upload_time: Gauge
    is_op_failure_expected: IsOpFailureExpectedFunc = _never_expected


def bucket_metrics(registry: Optional[Registry], name: str) -> Metrics:
    """Create bucket metrics labelled with ``name``, registering them if ``registry`` is given."""
    const = {"bucket": name}
    metrics = Metrics(
        ops=CounterVec(
            "objstore_bucket_operations_total",
            "Total number of all attempted operations against a bucket.",
            "operation",
            const,
        ),
        ops_failures=CounterVec(
            "objstore_bucket_operation_failures_total",
            "Total number of operations against a bucket that failed, but were not expected to fail "
            "in certain way from caller perspective. Those errors have to be investigated.",
            "operation",
            const,
        ),
        ops_fetched_bytes=CounterVec(
            "objstore_bucket_operation_fetched_bytes_total",
            "Total number of bytes fetched from bucket, per operation.",
            "operation",
            const,
        ),
        ops_transferred_bytes=HistogramVec(
            "objstore_bucket_operation_transferred_bytes",
            "Number of bytes transferred from/to bucket per operation.",
            "operation",
            TRANSFERRED_BYTES_BUCKETS,
            const,
        ),
        ops_duration=HistogramVec(
            "objstore_bucket_operation_duration_seconds",
            "Duration of successful operations against the bucket per operation - "
            "iter operations include time spent on each callback.",
            "operation",
            DURATION_BUCKETS,
            const,
        ),
        last_successful_upload_time=Gauge(
            "objstore_bucket_last_successful_upload_time",
            "Second timestamp of the last successful upload to the bucket.",
            const,
        ),
    )
    if registry is not None:
        for metric in (
            metrics.ops,
            metrics.ops_failures,
            metrics.ops_fetched_bytes,
            metrics.ops_transferred_bytes,
            metrics.ops_duration,
            metrics.last_successful_upload_time,
        ):
            registry.register(metric)
    return metrics


def _is_cancelled(err: Optional[BaseException]) -> bool:
    seen = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, (concurrent.futures.CancelledError, asyncio.CancelledError)):
            return True
        seen.add(id(err))
        err = err.__cause__
    return False


class TimingReader:
    """Wraps a reader and records bytes read, failures and duration for one operation."""

    def __init__(
        self,
        reader: Any,
        *,
        op: str,
        duration: HistogramVec,
        failed: CounterVec,
        is_failure_expected: IsOpFailureExpectedFunc,
        transferred_bytes: HistogramVec,
        fetched_bytes: Optional[CounterVec] = None,
        close_reader: bool = True,
        start: Optional[float] = None,
    ) -> None:
        duration.with_label_values(op)
        failed.with_label_values(op)
        self._reader = reader
        self._close_reader = close_reader
        self._obj_size: Optional[int] = None
        self._obj_size_err: Optional[Exception] = None
        try:
            self._obj_size = try_to_get_size(reader)
        except Exception as exc:
            self._obj_size_err = exc
        self._already_got_err = False
        self._start = time.monotonic() if start is None else start
        self._op = op
        self._duration = duration
        self._failed = failed
        self._is_failure_expected = is_failure_expected
        self._fetched_bytes = fetched_bytes
        self._transferred_bytes = transferred_bytes
        self.read_bytes = 0

    def object_size(self) -> int:
        """Return the size of the wrapped object as known when wrapping started."""
        if self._obj_size_err is not None:
            raise self._obj_size_err
        return self._obj_size  # type: ignore[return-value]

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        try:
            data = self._reader.read(size)
        except Exception as exc:
            self._update_metrics(0, exc)
            raise
        self._update_metrics(len(data), None)
        return data

    def _update_metrics(self, n: int, err: Optional[BaseException]) -> None:
        if self._fetched_bytes is not None:
            self._fetched_bytes.with_label_values(self._op).add(n)
        self.read_bytes += n
        if not self._already_got_err and err is not None:
            if not self._is_failure_expected(err) and not _is_cancelled(err):
                self._failed.with_label_values(self._op).inc()
            self._already_got_err = True

    def seekable(self) -> bool:
        seekable = getattr(self._reader, "seekable", None)
        return bool(seekable()) if callable(seekable) else False

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if not self.seekable():
            raise io.UnsupportedOperation("underlying reader is not seekable")
        return self._reader.seek(offset, whence)

    def close(self) -> None:
        """Record the operation and close the wrapped reader if asked to; safe to call twice."""
        close_err: Optional[Exception] = None
        close = getattr(self._reader, "close", None)
        if self._close_reader and callable(close):
            try:
                close()
            except Exception as exc:
                close_err = exc
                if not self._already_got_err:
                    self._failed.with_label_values(self._op).inc()
                    self._already_got_err = True

        if not self._already_got_err:
            self._duration.with_label_values(self._op).observe(time.monotonic() - self._start)
            self._transferred_bytes.with_label_values(self._op).observe(float(self.read_bytes))
            self._already_got_err = True

        if close_err is not None:
            raise close_err

    def __enter__(self) -> "TimingReader":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class MetricBucket(Bucket):
    """A bucket that records metrics for every operation on the bucket it wraps."""

    def __init__(self, bucket: Bucket, metrics: Metrics) -> None:
        self.bucket = bucket
        self.metrics = metrics
        for op in _ALL_OPS:
            metrics.ops.with_label_values(op)
            metrics.ops_failures.with_label_values(op)
            metrics.ops_duration.with_label_values(op)
        for op in _BYTES_OPS:
            metrics.ops_fetched_bytes.with_label_values(op)
            metrics.ops_transferred_bytes.with_label_values(op)

    def _record_failure(self, op: str, err: BaseException) -> None:
        if not self.metrics.is_op_failure_expected(err) and not _is_cancelled(err):
            self.metrics.ops_failures.with_label_values(op).inc()

    def _observe(self, op: str, start: float) -> None:
        self.metrics.ops_duration.with_label_values(op).observe(time.monotonic() - start)

    def _timing_reader(self, op: str, reader: Any, start: float, fetch: bool) -> TimingReader:
        m = self.metrics
        return TimingReader(
            reader,
            op=op,
            duration=m.ops_duration,
            failed=m.ops_failures,
            is_failure_expected=m.is_op_failure_expected,
            transferred_bytes=m.ops_transferred_bytes,
            fetched_bytes=m.ops_fetched_bytes if fetch else None,
            close_reader=fetch,
            start=start,
        )

    def provider(self) -> ObjProvider:
        return self.bucket.provider()

    def with_expected_errs(self, fn: IsOpFailureExpectedFunc) -> "MetricBucket":
        """Return a view whose failures matching ``fn`` are not counted."""
        return MetricBucket(self.bucket, dataclasses.replace(self.metrics, is_op_failure_expected=fn))

    def reader_with_expected_errs(self, fn: IsOpFailureExpectedFunc) -> "MetricBucket":
        return self.with_expected_errs(fn)

    def iter(self, dir: str, f: Callable[[str], None], *args: IterOption) -> None:
        self.metrics.ops.with_label_values(OP_ITER).inc()
        start = time.monotonic()
        try:
            self.bucket.iter(dir, f, *args)
        except Exception as exc:
            self._record_failure(OP_ITER, exc)
            raise
        finally:
            self._observe(OP_ITER, start)

    def iter_with_attributes(
        self, dir: str, f: Callable[[IterObjectAttributes], None], *args: IterOption
    ) -> None:
        self.metrics.ops.with_label_values(OP_ITER).inc()
        start = time.monotonic()
        try:
            self.bucket.iter_with_attributes(dir, f, *args)
        except Exception as exc:
            self._record_failure(OP_ITER, exc)
            raise
        finally:
            self._observe(OP_ITER, start)

    def supported_iter_options(self) -> list[IterOptionType]:
        return self.bucket.supported_iter_options()

    def attributes(self, name: str) -> ObjectAttributes:
        self.metrics.ops.with_label_values(OP_ATTRIBUTES).inc()
        start = time.monotonic()
        try:
            attrs = self.bucket.attributes(name)
        except Exception as exc:
            self._record_failure(OP_ATTRIBUTES, exc)
            raise
        self._observe(OP_ATTRIBUTES, start)
        return attrs

    def _get(self, op: str, fetch: Callable[[], Any]) -> TimingReader:
        self.metrics.ops.with_label_values(op).inc()
        start = time.monotonic()
        try:
            reader = fetch()
        except Exception as exc:
            self._record_failure(op, exc)
            self._observe(op, start)
            raise
        return self._timing_reader(op, reader, start, fetch=True)

    def get(self, name: str) -> TimingReader:
        return self._get(OP_GET, lambda: self.bucket.get(name))

    def get_range(self, name: str, off: int, length: int) -> TimingReader:
        return self._get(OP_GET_RANGE, lambda: self.bucket.get_range(name, off, length))

    def exists(self, name: str) -> bool:
        self.metrics.ops.with_label_values(OP_EXISTS).inc()
        start = time.monotonic()
        try:
            ok = self.bucket.exists(name)
        except Exception as exc:
            self._record_failure(OP_EXISTS, exc)
            raise
        self._observe(OP_EXISTS, start)
        return ok

    def upload(self, name: str, reader: Any, *args: ObjectUploadOption) -> None:
        self.metrics.ops.with_label_values(OP_UPLOAD).inc()
        start = time.monotonic()
        trc = self._timing_reader(OP_UPLOAD, reader, start, fetch=False)
        try:
            try:
                self.bucket.upload(name, trc, *args)
            except Exception as exc:
                self._record_failure(OP_UPLOAD, exc)
                raise
            self.metrics.last_successful_upload_time.set_to_current_time()
        finally:
            trc.close()

    def delete(self, name: str) -> None:
        self.metrics.ops.with_label_values(OP_DELETE).inc()
        start = time.monotonic()
        try:
            self.bucket.delete(name)
        except Exception as exc:
            self._record_failure(OP_DELETE, exc)
            raise
        self._observe(OP_DELETE, start)

    def is_obj_not_found_err(self, err: BaseException) -> bool:
        return self.bucket.is_obj_not_found_err(err)

    def is_access_denied_err(self, err: BaseException) -> bool:
        return self.bucket.is_access_denied_err(err)

    def close(self) -> None:
        self.bucket.close()

    def name(self) -> str:
        return self.bucket.name()


def wrap_with(bucket: Bucket, metrics: Metrics) -> MetricBucket:
    """Wrap ``bucket`` so that its operations are recorded in ``metrics``."""
    return MetricBucket(bucket, metrics)


def wrap_with_metrics(bucket: Bucket, registry: Optional[Registry], name: str) -> MetricBucket:
    """Create metrics for ``name`` in ``registry`` and wrap ``bucket`` with them."""
    return wrap_with(bucket, bucket_metrics(registry, name))