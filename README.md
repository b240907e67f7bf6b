# objstore

A small library with no third-party dependencies that models an object
storage bucket: a flat namespace of named, immutable blobs, listed as if `/`
separated directories.

## What is in it

- `objstore.bucket`: the abstract `Bucket` class with its operations
  (`iter`, `iter_with_attributes`, `get`, `get_range`, `exists`,
  `attributes`, `upload`, `delete`, `name`, `provider`, `close`), the
  `ObjProvider` enum, iteration options `with_recursive_iter()` and
  `with_updated_at()`, `validate_iter_options` and `apply_iter_options`,
  the upload option `with_content_type()`, the `ObjectAttributes` and
  `IterObjectAttributes` dataclasses, `ObjectSizerReader`,
  `nop_closer_with_size`, and `try_to_get_size`, which finds the size of a
  reader before it is read (objects with an `object_size()` method,
  `io.BytesIO` streams and real files; anything else raises `TypeError`).
  A missing object raises `ObjectNotFoundError`; an unsupported iteration
  option raises `OptionNotSupportedError`.
- `objstore.inmem`: `InMemBucket`, a thread-safe bucket kept in a
  dictionary. Listings give files first, then directories, each group in
  lexical order. It supports both iteration options.
- `objstore.prefixed`: `new_prefixed_bucket(bucket, prefix)` returns a
  `PrefixedBucket` that places every object under `prefix` (leading and
  trailing slashes are stripped). A prefix made only of slashes, or an empty
  one, returns the bucket unchanged.
- `objstore.metrics`: `wrap_with_metrics(bucket, registry, name)` and
  `wrap_with(bucket, metrics)` return a `MetricBucket` that counts
  operations, failures, fetched bytes, transferred bytes and durations per
  operation, and the time of the last successful upload. Reads go through a
  `TimingReader`. `MetricBucket.with_expected_errs(fn)` gives a view whose
  failures matching `fn` are not counted. Metrics live in a small in-process
  `Registry` whose `collect()` returns `(name, labels, value)` samples.
- `objstore.transfer`: `upload_file`, `upload_dir`, `download_file` and
  `download_dir`, which copy between local files and a bucket using a thread
  pool of the given `concurrency`.
- `objstore.httputil`: `parse_content_length(headers)` and
  `parse_last_modified(headers, fmt)` for HTTP response headers. An empty
  `fmt` means RFC 3339; other formats are `strptime` formats such as
  `httputil.RFC1123`. Problems raise `ValueError`.
- `objstore.tlsconfig`: `TLSConfig`, `new_tls_config(cfg)` which builds an
  `ssl.SSLContext`, `HTTPConfig` with recommended defaults, and
  `default_transport(config)` which returns a `Transport` record of resolved
  connection settings.
- `objstore.errors`: `MultiError`, a list that gathers errors with `add()`
  and turns them into one `NonNilMultiError` with `err()`.

## Installation

```
pip install .
```

## Example

```python
import io

from objstore.bucket import with_recursive_iter
from objstore.inmem import InMemBucket
from objstore.metrics import Registry, wrap_with_metrics
from objstore.prefixed import new_prefixed_bucket

bucket = InMemBucket()
bucket.upload("dir/a.txt", io.BytesIO(b"hello"))
bucket.upload("dir/sub/b.txt", io.BytesIO(b"world"))

names = []
bucket.iter("dir/", names.append)
# names == ["dir/a.txt", "dir/sub/"]

everything = []
bucket.iter("", everything.append, with_recursive_iter())
# everything == ["dir/a.txt", "dir/sub/b.txt"]

reader = bucket.get_range("dir/a.txt", 1, 3)
assert reader.read() == b"ell"

tenant = new_prefixed_bucket(bucket, "tenant-1")
tenant.upload("data.bin", io.BytesIO(b"\x00\x01"))
assert bucket.exists("tenant-1/data.bin")

registry = Registry()
instrumented = wrap_with_metrics(bucket, registry, "example")
instrumented.exists("dir/a.txt")
samples = registry.collect()
```

Use `bucket.is_obj_not_found_err(err)` when the kind of error matters.

## Copying directories

```python
from objstore.transfer import download_dir, upload_dir

upload_dir(bucket, "local-block", "blocks/01", concurrency=4)
download_dir(bucket, "blocks/01", "blocks/01/", "restore", concurrency=4, ignored_paths=[])
```

Once one file fails, files not yet started are skipped and the first error is
raised. If a download fails part way, the files already written and the
target directory are removed.

## What it does not do

- The only bucket that stores anything is `InMemBucket`. `ObjProvider` names
  cloud and filesystem backends, but the package has no client for any of
  them, and no way to build a bucket from a configuration file.
- `default_transport` only gathers connection settings and a TLS context; it
  does not open connections or make HTTP requests.
- The metrics `Registry` is in-process only; it has no exposition format or
  HTTP endpoint.
- There is no command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```