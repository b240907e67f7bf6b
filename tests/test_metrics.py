import concurrent.futures
import io
import math

import pytest

from objstore.bucket import (
    OP_ATTRIBUTES,
    OP_DELETE,
    OP_EXISTS,
    OP_GET,
    OP_GET_RANGE,
    OP_ITER,
    OP_UPLOAD,
    ObjectNotFoundError,
    try_to_get_size,
)
from objstore.inmem import InMemBucket
from objstore.metrics import (
    Counter,
    Histogram,
    Registry,
    TimingReader,
    bucket_metrics,
    wrap_with,
    wrap_with_metrics,
)

ALL_OPS = [OP_ITER, OP_GET, OP_GET_RANGE, OP_EXISTS, OP_UPLOAD, OP_DELETE, OP_ATTRIBUTES]


def _count(vec, op):
    return vec.with_label_values(op).value


class _MockReader:
    def __init__(self, data, close=None):
        self._buf = io.BytesIO(data)
        self._close = close

    def read(self, size=-1):
        return self._buf.read(size)

    def close(self):
        if self._close is not None:
            self._close()


class _StreamOnly:
    def __init__(self, data):
        self._buf = io.BytesIO(data)

    def read(self, size=-1):
        return self._buf.read(size)


class _FailingReader:
    def __init__(self, err):
        self.err = err

    def read(self, size=-1):
        raise self.err


class _MockBucket(InMemBucket):
    def __init__(self, upload=None, get=None, get_range=None):
        super().__init__()
        self._upload = upload
        self._get = get
        self._get_range = get_range

    def upload(self, name, reader, *args):
        if self._upload is None:
            raise RuntimeError("Upload has not been mocked")
        self._upload(name, reader, *args)

    def get(self, name):
        if self._get is None:
            raise RuntimeError("Get has not been mocked")
        return self._get(name)

    def get_range(self, name, off, length):
        if self._get_range is None:
            raise RuntimeError("GetRange has not been mocked")
        return self._get_range(name, off, length)


def _timing_reader(bucket, reader, expected=lambda err: False):
    m = bucket.metrics
    return TimingReader(
        reader,
        op=OP_GET,
        duration=m.ops_duration,
        failed=m.ops_failures,
        is_failure_expected=expected,
        fetched_bytes=m.ops_fetched_bytes,
        transferred_bytes=m.ops_transferred_bytes,
    )


def test_wrap_initializes_all_operations():
    bkt = wrap_with_metrics(InMemBucket(), None, "abc")
    assert len(bkt.metrics.ops) == 7
    assert len(bkt.metrics.ops_failures) == 7
    assert len(bkt.metrics.ops_duration) == 7
    assert len(bkt.metrics.ops_fetched_bytes) == 3
    assert all(_count(bkt.metrics.ops, op) == 0 for op in ALL_OPS)


def test_registry_collects_initialized_samples():
    reg = Registry()
    wrap_with_metrics(InMemBucket(), reg, "abc")
    ops = {
        s[1]["operation"]: s[2]
        for s in reg.collect()
        if s[0] == "objstore_bucket_operations_total"
    }
    assert ops == {op: 0.0 for op in ALL_OPS}
    labels = [s[1] for s in reg.collect() if s[0] == "objstore_bucket_last_successful_upload_time"]
    assert labels == [{"bucket": "abc"}]


def test_multiple_clients_share_registry():
    reg = Registry()
    wrap_with_metrics(InMemBucket(), reg, "abc")
    wrap_with_metrics(InMemBucket(), reg, "def")
    buckets = {s[1]["bucket"] for s in reg.collect() if s[0] == "objstore_bucket_operations_total"}
    assert buckets == {"abc", "def"}


def test_duplicate_registration_raises():
    reg = Registry()
    bucket_metrics(reg, "abc")
    with pytest.raises(ValueError):
        bucket_metrics(reg, "abc")


def test_counter_cannot_decrease():
    counter = Counter()
    counter.add(2.5)
    counter.inc()
    assert counter.value == 3.5
    with pytest.raises(ValueError):
        counter.add(-1)


def test_histogram_buckets_are_cumulative():
    hist = Histogram([1, 2, 4])
    for value in (0.5, 1, 3, 10):
        hist.observe(value)
    assert hist.buckets == [(1.0, 2), (2.0, 2), (4.0, 3), (math.inf, 4)]
    assert hist.count == 4
    assert hist.sum == 14.5


def test_expected_errors_are_not_counted():
    bkt = wrap_with_metrics(InMemBucket(), None, "abc")
    quiet = bkt.with_expected_errs(bkt.is_obj_not_found_err)
    with pytest.raises(ObjectNotFoundError):
        quiet.get("missing")
    assert _count(bkt.metrics.ops, OP_GET) == 1
    assert _count(bkt.metrics.ops_failures, OP_GET) == 0

    with pytest.raises(ObjectNotFoundError):
        bkt.get("missing")
    with pytest.raises(ObjectNotFoundError):
        bkt.attributes("missing")
    assert _count(bkt.metrics.ops, OP_GET) == 2
    assert _count(bkt.metrics.ops_failures, OP_GET) == 1
    assert _count(bkt.metrics.ops_failures, OP_ATTRIBUTES) == 1
    assert bkt.metrics.ops_duration.with_label_values(OP_GET).count == 2


def test_iter_failure_counted_and_timed():
    bkt = wrap_with_metrics(InMemBucket(), None, "")
    bkt.upload("dir/a", io.BytesIO(b"a"))

    def boom(_name):
        raise RuntimeError("callback failed")

    with pytest.raises(RuntimeError):
        bkt.iter("dir/", boom)
    seen = []
    bkt.iter("dir/", seen.append)
    assert seen == ["dir/a"]
    assert _count(bkt.metrics.ops, OP_ITER) == 2
    assert _count(bkt.metrics.ops_failures, OP_ITER) == 1
    assert bkt.metrics.ops_duration.with_label_values(OP_ITER).count == 2


def test_operations_counted_and_upload_time_set():
    bkt = wrap_with_metrics(InMemBucket(), None, "")
    bkt.upload("obj", io.BytesIO(b"data"))
    first = bkt.metrics.last_successful_upload_time.value
    assert first > 0
    assert bkt.exists("obj") is True
    assert bkt.attributes("obj").size == 4
    with bkt.get_range("obj", 1, 2) as rc:
        assert rc.read() == b"at"
    bkt.delete("obj")
    bkt.upload("obj2", io.BytesIO(b"x"))
    assert bkt.metrics.last_successful_upload_time.value >= first
    for op, expected in [(OP_UPLOAD, 2), (OP_EXISTS, 1), (OP_ATTRIBUTES, 1), (OP_GET_RANGE, 1), (OP_DELETE, 1)]:
        assert _count(bkt.metrics.ops, op) == expected
    assert all(_count(bkt.metrics.ops_failures, op) == 0 for op in ALL_OPS)


def _write(tmp_path):
    path = tmp_path / "test"
    path.write_bytes(b"test")
    return path


def test_upload_does_not_close_input_reader():
    closed = []
    reader = _MockReader(b"test", close=lambda: closed.append(True))
    bkt = wrap_with_metrics(InMemBucket(), None, "")
    bkt.upload("dir/obj1", reader)
    assert closed == []
    reader.close()
    assert closed == [True]
    assert _count(bkt.metrics.ops, OP_UPLOAD) == 1
    assert _count(bkt.metrics.ops_failures, OP_UPLOAD) == 0


@pytest.mark.parametrize("op", [OP_GET, OP_GET_RANGE])
def test_get_wrapper_closes_wrapped_reader(op):
    closed = []
    orig = _MockReader(b"test", close=lambda: closed.append(True))
    mock = _MockBucket(get=lambda name: orig, get_range=lambda name, off, length: orig)
    bkt = wrap_with_metrics(mock, None, "")
    wrapped = bkt.get("dir/obj1") if op == OP_GET else bkt.get_range("dir/obj1", 0, 1)
    assert wrapped is not orig
    assert closed == []
    wrapped.close()
    assert closed == [True]
    assert _count(bkt.metrics.ops, op) == 1
    assert _count(bkt.metrics.ops_failures, op) == 0


def _failing_close():
    raise RuntimeError("mocked error")


def test_upload_failure_counted():
    orig = _MockReader(b"test", close=_failing_close)
    bkt = wrap_with_metrics(_MockBucket(get=lambda name: orig), None, "")
    with pytest.raises(RuntimeError):
        bkt.upload("test", orig)
    assert _count(bkt.metrics.ops, OP_UPLOAD) == 1
    assert _count(bkt.metrics.ops_failures, OP_UPLOAD) == 1


@pytest.mark.parametrize("op", [OP_GET, OP_GET_RANGE])
def test_reader_close_error_tracked_once(op):
    orig = _MockReader(b"test", close=_failing_close)
    mock = _MockBucket(get=lambda name: orig, get_range=lambda name, off, length: orig)
    bkt = wrap_with_metrics(mock, None, "")
    reader = bkt.get("test") if op == OP_GET else bkt.get_range("test", 0, 1)
    with pytest.raises(RuntimeError):
        reader.close()
    with pytest.raises(RuntimeError):
        reader.close()
    assert _count(bkt.metrics.ops, op) == 1
    assert _count(bkt.metrics.ops_failures, op) == 1


def test_transferred_and_fetched_bytes():
    reg = Registry()
    bkt = wrap_with_metrics(InMemBucket(), reg, "")
    bkt.upload("dir/obj1", io.BytesIO(b"1"))
    bkt.upload("dir/obj2", io.BytesIO(b"2"))
    bkt.upload("dir/obj3", io.BytesIO(b"3" * 1024 * 1024))
    for name in ("dir/obj1", "dir/obj2", "dir/obj3"):
        with bkt.get(name) as rc:
            rc.read()

    m = bkt.metrics
    assert _count(m.ops, OP_UPLOAD) == 3
    assert _count(m.ops, OP_GET) == 3
    assert _count(m.ops_fetched_bytes, OP_GET) == 1048578
    assert _count(m.ops_fetched_bytes, OP_GET_RANGE) == 0
    assert _count(m.ops_fetched_bytes, OP_UPLOAD) == 0
    for op in (OP_GET, OP_UPLOAD):
        hist = dict(m.ops_transferred_bytes.with_label_values(op).buckets)
        assert hist[32768.0] == 2
        assert hist[524288.0] == 2
        assert hist[1048576.0] == 3
        assert hist[math.inf] == 3
        assert m.ops_transferred_bytes.with_label_values(op).sum == 1048578
    assert m.ops_transferred_bytes.with_label_values(OP_GET_RANGE).count == 0

    samples = {(s[0], tuple(sorted(s[1].items()))): s[2] for s in reg.collect()}
    key = (
        "objstore_bucket_operation_transferred_bytes_bucket",
        (("bucket", ""), ("le", "+Inf"), ("operation", "get")),
    )
    assert samples[key] == 3.0


def test_timing_reader_size_and_seek():
    bkt = wrap_with_metrics(InMemBucket(), None, "")
    tr = _timing_reader(bkt, io.BytesIO(b"hello world"))
    assert try_to_get_size(tr) == 11
    assert tr.read(4) == b"hell"
    assert try_to_get_size(tr) == 11
    assert tr.seekable() is True
    assert tr.seek(0) == 0
    assert tr.read() == b"hello world"
    assert _count(bkt.metrics.ops_failures, OP_GET) == 0


def test_timing_reader_expected_error():
    err = RuntimeError("something went wrong")
    bkt = wrap_with_metrics(InMemBucket(), None, "")
    tr = _timing_reader(bkt, _FailingReader(err), expected=lambda e: e is err)
    with pytest.raises(RuntimeError) as info:
        tr.read(1)
    assert info.value is err
    assert _count(bkt.metrics.ops_failures, OP_GET) == 0


def test_timing_reader_unexpected_error():
    err = RuntimeError("something went wrong")
    bkt = wrap_with_metrics(InMemBucket(), None, "")
    tr = _timing_reader(bkt, _FailingReader(err))
    with pytest.raises(RuntimeError) as info:
        tr.read(1)
    assert info.value is err
    assert _count(bkt.metrics.ops_failures, OP_GET) == 1


def test_timing_reader_cancellation_not_counted():
    err = concurrent.futures.CancelledError()
    bkt = wrap_with_metrics(InMemBucket(), None, "")
    tr = _timing_reader(bkt, _FailingReader(err))
    with pytest.raises(concurrent.futures.CancelledError):
        tr.read(1)
    assert _count(bkt.metrics.ops_failures, OP_GET) == 0


def test_timing_reader_wraps_file(tmp_path):
    path = _write(tmp_path)
    bkt = wrap_with_metrics(InMemBucket(), None, "")
    with open(path, "rb") as handle:
        tr = _timing_reader(bkt, handle)
        assert tr.seekable() is True
        assert tr.object_size() == 4


def test_timing_reader_unknown_size_raises():
    bkt = wrap_with_metrics(InMemBucket(), None, "")
    tr = _timing_reader(bkt, _StreamOnly(b"abc"))
    with pytest.raises(TypeError):
        tr.object_size()
    with pytest.raises(io.UnsupportedOperation):
        tr.seek(0)


def test_wrap_with_shares_metrics():
    metrics = bucket_metrics(None, "shared")
    first = wrap_with(InMemBucket(), metrics)
    second = wrap_with(InMemBucket(), metrics)
    first.exists("a")
    second.exists("b")
    assert _count(metrics.ops, OP_EXISTS) == 2
    assert first.name() == "inmem"