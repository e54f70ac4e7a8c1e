"""Sink that writes to a local file."""

from __future__ import annotations

import os
from pathlib import Path

from .sink import BytesLike, Sink


class FileSink(Sink):
    """Write bytes at arbitrary offsets into a file, truncating it on open."""

    def __init__(self, filename: str | os.PathLike[str]) -> None:
        self.path = Path(filename)
        self._file = open(self.path, "wb")

    def write(self, offset: int, data: BytesLike) -> None:
        if offset < 0:
            raise ValueError(f"Offset must be non-negative, got {offset}")
        view = memoryview(data)
        if view.nbytes == 0:
            return
        self._file.seek(offset)
        self._file.write(view)

    def _flush(self) -> None:
        self._file.flush()

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> FileSink:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()