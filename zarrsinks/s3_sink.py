"""Sink that streams bytes into an S3 object, switching to multipart uploads."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .s3_connection import Part, S3ConnectionPool
from .sink import BytesLike, Sink

_log = logging.getLogger(__name__)


@dataclass
class _MultipartUpload:
    upload_id: str
    parts: list[Part] = field(default_factory=list)


class S3Sink(Sink):
    """Buffer writes into parts and upload them to ``bucket_name/object_key``.

    Data that fits in a single part is uploaded as a whole object when the
    sink is finalized. Once a part fills up, a multipart upload is started
    and each full part is uploaded as it completes; finalizing uploads the
    remainder and assembles the object.
    """

    MAX_PART_SIZE = 5 << 20

    def __init__(
        self,
        bucket_name: str,
        object_key: str,
        connection_pool: S3ConnectionPool,
    ) -> None:
        if not bucket_name:
            raise ValueError("Bucket name must not be empty")
        if not object_key:
            raise ValueError("Object key must not be empty")
        if connection_pool is None:
            raise ValueError("Null pointer: connection_pool")

        self.bucket_name = bucket_name
        self.object_key = object_key
        self._pool = connection_pool

        self._buffer = bytearray(self.MAX_PART_SIZE)
        self._nbytes_buffered = 0
        self._nbytes_flushed = 0
        self._upload: _MultipartUpload | None = None

    @property
    def parts(self) -> list[Part]:
        """Parts uploaded so far in the current multipart upload."""
        return list(self._upload.parts) if self._upload is not None else []

    def write(self, offset: int, data: BytesLike) -> None:
        view = memoryview(data).cast("B")
        if view.nbytes == 0:
            return

        if offset < self._nbytes_flushed:
            raise ValueError(
                f"Cannot write data at offset {offset}, "
                f"already flushed to {self._nbytes_flushed}"
            )
        position = offset - self._nbytes_flushed
        if position > self.MAX_PART_SIZE:
            raise ValueError(
                f"Cannot write data at offset {offset}: beyond the current part "
                f"starting at {self._nbytes_flushed}"
            )
        self._nbytes_buffered = position

        while view.nbytes > 0:
            room = self.MAX_PART_SIZE - self._nbytes_buffered
            count = min(view.nbytes, room)
            if count:
                start = self._nbytes_buffered
                self._buffer[start : start + count] = view[:count]
                self._nbytes_buffered += count
                view = view[count:]

            if self._nbytes_buffered == self.MAX_PART_SIZE:
                self._flush_part()

    def _flush(self) -> None:
        if self._upload is not None:
            if self._nbytes_buffered > 0:
                self._flush_part()
            if not self._finalize_multipart_upload():
                raise RuntimeError(
                    f"Failed to finalize multipart upload of object {self.object_key}"
                )
        elif self._nbytes_buffered > 0:
            self._put_object()

        self._nbytes_buffered = 0

    def _put_object(self) -> None:
        data = bytes(self._buffer[: self._nbytes_buffered])
        try:
            with self._pool.connection() as conn:
                etag = conn.put_object(self.bucket_name, self.object_key, data)
            if not etag:
                raise RuntimeError("no etag returned")
        except Exception as exc:
            _log.error("Error: %s", exc)
            raise RuntimeError(
                f"Failed to upload object: {self.object_key}"
            ) from exc

        self._nbytes_flushed = self._nbytes_buffered
        self._nbytes_buffered = 0

    def _create_multipart_upload(self) -> _MultipartUpload:
        with self._pool.connection() as conn:
            upload_id = conn.create_multipart_object(
                self.bucket_name, self.object_key
            )
        self._upload = _MultipartUpload(upload_id)
        return self._upload

    def _flush_part(self) -> None:
        upload = self._upload or self._create_multipart_upload()

        size = self._nbytes_buffered
        number = len(upload.parts) + 1
        data = bytes(self._buffer[:size])
        try:
            with self._pool.connection() as conn:
                etag = conn.upload_multipart_object_part(
                    self.bucket_name,
                    self.object_key,
                    upload.upload_id,
                    data,
                    number,
                )
            if not etag:
                raise RuntimeError("no etag returned")
            upload.parts.append(Part(number=number, etag=etag, size=size))
        except Exception as exc:
            _log.error("Error: %s", exc)
            raise RuntimeError(
                f"Failed to upload part {number} of object {self.object_key}"
            ) from exc
        finally:
            self._nbytes_flushed += size
            self._nbytes_buffered = 0

    def _finalize_multipart_upload(self) -> bool:
        assert self._upload is not None
        with self._pool.connection() as conn:
            return conn.complete_multipart_object(
                self.bucket_name,
                self.object_key,
                self._upload.upload_id,
                self._upload.parts,
            )