"""Copying whole files and directory trees between the local filesystem and a bucket."""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import stat
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, Iterator, Optional

from objstore.bucket import DIR_DELIM, Bucket

logger = logging.getLogger(__name__)


def _wrap(exc: BaseException, message: str) -> BaseException:
    """Return an exception of the same kind as ``exc`` whose message is prefixed with ``message``."""
    text = f"{message}: {exc}"
    try:
        return type(exc)(text)
    except Exception:
        return RuntimeError(text)


def _base(name: str) -> str:
    """Last element of a slash-separated name, ignoring trailing slashes."""
    stripped = name.rstrip(DIR_DELIM)
    if not stripped:
        return DIR_DELIM if name else "."
    return posixpath.basename(stripped)


def _clean_join(*parts: str) -> str:
    joined = posixpath.join(*parts)
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = DIR_DELIM + cleaned.lstrip(DIR_DELIM)
    return cleaned


def _walk_files(root: str) -> Iterator[str]:
    """Yield every non-directory path under ``root`` in lexical order, without following links."""
    with os.scandir(root) as it:
        entries = sorted(it, key=lambda entry: entry.name)
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from _walk_files(entry.path)
        else:
            yield entry.path


def _close_logged(resource: Any, what: str) -> None:
    try:
        resource.close()
    except Exception as exc:
        logger.warning("detected close error: %s: %s", what, exc)


def _remove_all(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


def _run_concurrently(
    concurrency: int,
    produce: Callable[[Callable[[Any], None]], None],
    work: Callable[[Any], None],
) -> None:
    """Run ``work`` on every item ``produce`` submits, at most ``concurrency`` at a time.

    Once any item fails, items not yet started are skipped. The first error raised is re-raised.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    errors: list[BaseException] = []
    lock = threading.Lock()
    failed = threading.Event()

    def record(exc: BaseException) -> None:
        with lock:
            errors.append(exc)
        failed.set()

    def guarded(item: Any) -> None:
        if failed.is_set():
            return
        try:
            work(item)
        except Exception as exc:
            record(exc)

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        try:
            produce(lambda item: pool.submit(guarded, item))
        except Exception as exc:
            record(exc)

    if errors:
        raise errors[0]


def upload_file(bucket: Bucket, src: str, dst: str) -> None:
    """Upload the local file ``src`` as the object ``dst``.

    Cleaning up a partial upload after a failure is left to the caller.
    """
    try:
        handle = open(os.path.normpath(src), "rb")
    except OSError as exc:
        raise _wrap(exc, f"open file {src}") from exc
    try:
        try:
            bucket.upload(dst, handle)
        except Exception as exc:
            raise _wrap(exc, f"upload file {src} as {dst}") from exc
    finally:
        _close_logged(handle, f"close file {src}")
    logger.debug("uploaded file from %s to %s in bucket %s", src, dst, bucket.name())


def upload_dir(bucket: Bucket, srcdir: str, dstdir: str, concurrency: int = 1) -> None:
    """Upload every file under ``srcdir`` to objects under ``dstdir``, keeping relative paths."""
    try:
        info = os.stat(srcdir)
    except OSError as exc:
        raise _wrap(exc, "stat dir") from exc
    if not stat.S_ISDIR(info.st_mode):
        raise NotADirectoryError(f"{srcdir} is not a directory")

    def produce(submit: Callable[[str], None]) -> None:
        for path in _walk_files(srcdir):
            submit(path)

    def work(path: str) -> None:
        rel = os.path.relpath(path, srcdir).replace(os.sep, DIR_DELIM)
        upload_file(bucket, path, _clean_join(dstdir, rel))

    _run_concurrently(concurrency, produce, work)


def download_file(bucket: Bucket, src: str, dst: str) -> None:
    """Download the object ``src`` to ``dst``, overwriting any existing file.

    If ``dst`` is an existing directory the file is created inside it under the
    object's base name. A partially written file is removed on failure.
    """
    dst = os.fspath(dst)
    try:
        info = os.stat(dst)
    except FileNotFoundError:
        pass
    else:
        if stat.S_ISDIR(info.st_mode):
            dst = os.path.join(dst, _base(src))

    try:
        reader = bucket.get(src)
    except Exception as exc:
        raise _wrap(exc, f"get file {src}") from exc

    try:
        try:
            out = open(dst, "wb")
        except OSError as exc:
            raise _wrap(exc, f"create file {dst}") from exc
        try:
            with out:
                shutil.copyfileobj(reader, out)
        except Exception as exc:
            try:
                os.remove(dst)
            except OSError as rerr:
                logger.warning("failed to remove partially downloaded file %s: %s", dst, rerr)
            raise _wrap(exc, f"copy object to file {src}") from exc
    finally:
        _close_logged(reader, "close block's file reader")


def download_dir(
    bucket: Bucket,
    original_src: str,
    src: str,
    dst: str,
    concurrency: int = 1,
    ignored_paths: Iterable[str] = (),
) -> None:
    """Download every object under the directory ``src`` into the local directory ``dst``.

    Objects whose name relative to ``original_src`` is in ``ignored_paths`` are
    skipped. On failure everything downloaded, and ``dst`` itself, is removed.
    """
    dst = os.fspath(dst)
    try:
        os.makedirs(dst, 0o750, exist_ok=True)
    except OSError as exc:
        raise _wrap(exc, "create dir") from exc

    ignored = tuple(ignored_paths)
    downloaded: list[str] = []
    lock = threading.Lock()

    def work(name: str) -> None:
        target = os.path.join(dst, _base(name))
        if name.endswith(DIR_DELIM):
            download_dir(bucket, original_src, name, target, concurrency, ignored)
        else:
            relative = name.removeprefix(original_src + DIR_DELIM)
            if relative in ignored:
                logger.debug("not downloading %s again because a provided path matches it", name)
                return
            download_file(bucket, name, target)
        with lock:
            downloaded.append(target)

    def produce(submit: Callable[[str], None]) -> None:
        bucket.iter(src, submit)

    try:
        _run_concurrently(concurrency, produce, work)
    except Exception:
        for path in [*downloaded, dst]:
            try:
                _remove_all(path)
            except OSError as rerr:
                logger.warning("failed to remove file %s on partial dir download error: %s", path, rerr)
        raise