"""Factory for the file and S3 sinks that make up a Zarr dataset."""

from __future__ import annotations

import logging
import os
import threading
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from enum import IntEnum
from pathlib import Path
from typing import Protocol, TypeVar

from .file_sink import FileSink
from .s3_connection import S3ConnectionPool
from .s3_sink import S3Sink
from .sink import Sink
from .thread_pool import ThreadPool

_log = logging.getLogger(__name__)

_FILE_SCHEME = "file://"

_T = TypeVar("_T")
_R = TypeVar("_R")


class Dimension(Protocol):
    """Anything with a name can describe a dimension of the dataset."""

    name: str


PartsAlongDimension = Callable[[Dimension], int]


class ZarrVersion(IntEnum):
    """Supported Zarr storage format versions."""

    V2 = 2
    V3 = 3


_METADATA_PATHS: dict[ZarrVersion, tuple[str, ...]] = {
    ZarrVersion.V2: (".zattrs", ".zgroup", "0/.zattrs", "acquire.json"),
    ZarrVersion.V3: ("zarr.json", "meta/root.group.json", "meta/acquire.json"),
}


def _strip_file_scheme(path: str) -> str:
    return path[len(_FILE_SCHEME):] if path.startswith(_FILE_SCHEME) else path


def _require(condition: object, message: str) -> None:
    if not condition:
        raise ValueError(message)


def _metadata_paths(version: int) -> tuple[str, ...]:
    try:
        return _METADATA_PATHS[ZarrVersion(version)]
    except ValueError:
        raise ValueError(f"Invalid Zarr version {version}") from None


class _Latch:
    """Count down from a fixed number; ``wait`` blocks until zero."""

    def __init__(self, count: int) -> None:
        self._count = count
        self._cv = threading.Condition()

    def count_down(self) -> None:
        with self._cv:
            self._count -= 1
            if self._count <= 0:
                self._cv.notify_all()

    def wait(self) -> None:
        with self._cv:
            self._cv.wait_for(lambda: self._count <= 0)


def _make_directory(dirname: str) -> None:
    if not dirname:
        raise ValueError("Directory name must not be empty.")
    if os.path.isdir(dirname):
        return
    if os.path.exists(dirname):
        raise NotADirectoryError(f"'{dirname}' exists but is not a directory")
    try:
        os.makedirs(dirname, exist_ok=True)
    except OSError as exc:
        raise OSError(f"Failed to create directory '{dirname}': {exc}") from exc


def _open_file_sink(filename: str) -> FileSink:
    try:
        return FileSink(filename)
    except OSError as exc:
        raise OSError(f"Failed to create file '{filename}': {exc}") from exc


class SinkCreator:
    """Create sinks for data and metadata, on the filesystem or in S3.

    Directories and files are created in parallel on ``thread_pool``. The
    ``connection_pool`` may be ``None`` when only filesystem sinks are needed.

    ``dimensions`` arguments are sequences of objects with a ``name``; the
    first is the append dimension and the last is the width (x) dimension.
    """

    def __init__(
        self,
        thread_pool: ThreadPool,
        connection_pool: S3ConnectionPool | None = None,
    ) -> None:
        self._thread_pool = thread_pool
        self._connection_pool = connection_pool

    # Single sinks

    @staticmethod
    def make_sink(file_path: str | os.PathLike[str]) -> FileSink:
        """Open a file sink, creating its parent directories as needed."""
        path_str = _strip_file_scheme(os.fspath(file_path))
        _require(path_str, "File path must not be empty.")

        parent = Path(path_str).parent
        if not parent.is_dir():
            try:
                parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise OSError(
                    f"Failed to create directory '{parent}': {exc}"
                ) from exc

        return FileSink(path_str)

    def make_s3_sink(self, bucket_name: str, object_key: str) -> S3Sink:
        """Create a sink writing to ``object_key`` in an existing bucket."""
        _require(bucket_name, "Bucket name must not be empty.")
        _require(object_key, "Object key must not be empty.")
        pool = self._require_pool()
        if not self._bucket_exists(bucket_name):
            raise RuntimeError(f"Bucket '{bucket_name}' does not exist.")
        return S3Sink(bucket_name, object_key, pool)

    # Data sinks

    def make_data_sinks(
        self,
        base_path: str | os.PathLike[str],
        dimensions: Sequence[Dimension],
        parts_along_dimension: PartsAlongDimension,
    ) -> list[FileSink]:
        """Create one file sink per part (shard or chunk) of the dataset."""
        base = _strip_file_scheme(os.fspath(base_path))
        _require(base, "Base path must not be empty.")

        try:
            paths = self._data_sink_paths(
                base, dimensions, parts_along_dimension, create_directories=True
            )
        except (OSError, RuntimeError) as exc:
            raise RuntimeError(f"Failed to create dataset paths: {exc}") from exc

        return self._make_files(paths)

    def make_s3_data_sinks(
        self,
        bucket_name: str,
        base_path: str,
        dimensions: Sequence[Dimension],
        parts_along_dimension: PartsAlongDimension,
    ) -> list[S3Sink]:
        """Create one S3 sink per part (shard or chunk) of the dataset."""
        _require(base_path, "Base path must not be empty.")
        paths = self._data_sink_paths(
            base_path, dimensions, parts_along_dimension, create_directories=False
        )
        if not paths:
            return []
        pool = self._s3_objects_pool(bucket_name)
        return [S3Sink(bucket_name, key, pool) for key in paths]

    # Metadata sinks

    def make_metadata_sinks(
        self, version: int, base_path: str | os.PathLike[str]
    ) -> dict[str, FileSink]:
        """Create the metadata file sinks for ``version``, keyed by relative path."""
        base = _strip_file_scheme(os.fspath(base_path))
        _require(base, "Base path must not be empty.")

        relative_paths = _metadata_paths(version)

        self._make_dirs([base])
        parents = {
            os.path.join(base, parent)
            for parent in (os.path.dirname(p) for p in relative_paths)
            if parent
        }
        if parents:
            self._make_dirs(sorted(parents))

        full_paths = [f"{base}/{p}" for p in relative_paths]
        sinks = self._make_files(full_paths)
        return dict(zip(relative_paths, sinks))

    def make_s3_metadata_sinks(
        self, version: int, bucket_name: str, base_path: str
    ) -> dict[str, S3Sink]:
        """Create the metadata S3 sinks for ``version``, keyed by relative path."""
        _require(bucket_name, "Bucket name must not be empty.")
        _require(base_path, "Base path must not be empty.")
        if not self._bucket_exists(bucket_name):
            raise RuntimeError(f"Bucket '{bucket_name}' does not exist.")

        relative_paths = _metadata_paths(version)
        pool = self._s3_objects_pool(bucket_name)
        return {
            key: S3Sink(bucket_name, f"{base_path}/{key}", pool)
            for key in relative_paths
        }

    # Helpers

    def _require_pool(self) -> S3ConnectionPool:
        if self._connection_pool is None:
            raise RuntimeError("S3 connection pool not provided.")
        return self._connection_pool

    def _s3_objects_pool(self, bucket_name: str) -> S3ConnectionPool:
        _require(bucket_name, "Bucket name not provided.")
        return self._require_pool()

    def _bucket_exists(self, bucket_name: str) -> bool:
        pool = self._require_pool()
        with pool.connection() as conn:
            return conn.bucket_exists(bucket_name)

    def _data_sink_paths(
        self,
        base_path: str,
        dimensions: Sequence[Dimension],
        parts_along_dimension: PartsAlongDimension,
        create_directories: bool,
    ) -> list[str]:
        if not dimensions:
            raise ValueError("At least one dimension is required.")

        paths: deque[str] = deque([base_path])
        if create_directories:
            self._make_dirs(paths)

        # Skip the append dimension (first) and the width dimension (last).
        for dim in dimensions[1:-1]:
            n_parts = self._parts(dim, parts_along_dimension)
            paths = deque(
                f"{path}/{k}" if path else str(k)
                for path in paths
                for k in range(n_parts)
            )
            if create_directories:
                try:
                    self._make_dirs(paths)
                except RuntimeError as exc:
                    raise RuntimeError(
                        f"Failed to create directories for dimension "
                        f"'{dim.name}': {exc}"
                    ) from exc

        width = dimensions[-1]
        n_parts = self._parts(width, parts_along_dimension)
        return [f"{path}/{k}" for path in paths for k in range(n_parts)]

    @staticmethod
    def _parts(dim: Dimension, parts_along_dimension: PartsAlongDimension) -> int:
        n_parts = parts_along_dimension(dim)
        if n_parts <= 0:
            raise ValueError(
                f"Number of parts along dimension '{dim.name}' must be positive."
            )
        return n_parts

    def _run_parallel(
        self, items: Iterable[_T], action: Callable[[_T], _R]
    ) -> tuple[list[_R | None], list[BaseException]]:
        items = list(items)
        results: list[_R | None] = [None] * len(items)
        errors: list[BaseException] = []
        if not items:
            return results, errors

        lock = threading.Lock()
        latch = _Latch(len(items))

        def make_job(index: int, item: _T) -> Callable[[], None]:
            def job() -> None:
                try:
                    results[index] = action(item)
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                    raise
                finally:
                    latch.count_down()

            return job

        for index, item in enumerate(items):
            self._thread_pool.push_job(make_job(index, item))

        latch.wait()
        return results, errors

    def _make_dirs(self, dir_paths: Iterable[str]) -> None:
        _, errors = self._run_parallel(dir_paths, _make_directory)
        if errors:
            raise RuntimeError(f"Failed to create directories: {errors[0]}")

    def _make_files(self, file_paths: Iterable[str]) -> list[FileSink]:
        sinks, errors = self._run_parallel(file_paths, _open_file_sink)
        if errors:
            for sink in sinks:
                if sink is not None:
                    sink.close()
            raise RuntimeError(f"Failed to create files: {errors[0]}")
        return [sink for sink in sinks if sink is not None]


__all__ = ["Dimension", "SinkCreator", "ZarrVersion", "Sink"]