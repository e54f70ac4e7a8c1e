"""S3 client connections and a thread-safe pool that shares them."""

from __future__ import annotations

import hashlib
import hmac
import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import quote, urlsplit
from xml.etree import ElementTree

import httpx

from .sink import BytesLike

_log = logging.getLogger(__name__)

_REGION = "us-east-1"
_SERVICE = "s3"
_ALGORITHM = "AWS4-HMAC-SHA256"
_SIGNED_HEADERS = "host;x-amz-content-sha256;x-amz-date"
_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class Part:
    """One uploaded part of a multipart object."""

    number: int
    etag: str
    size: int | None = None


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _uri_encode(value: str, safe: str = "") -> str:
    return quote(value, safe="-_.~" + safe)


def _canonical_query(params: dict[str, str]) -> str:
    encoded = sorted((_uri_encode(k), _uri_encode(v)) for k, v in params.items())
    return "&".join(f"{k}={v}" for k, v in encoded)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find_text(content: bytes, name: str) -> str:
    """Return the text of the first element called ``name``, ignoring namespaces."""
    try:
        root = ElementTree.fromstring(content)
    except ElementTree.ParseError:
        return ""
    for element in root.iter():
        if _local_name(element.tag) == name:
            return (element.text or "").strip()
    return ""


def _is_error_document(content: bytes) -> bool:
    if not content:
        return False
    try:
        root = ElementTree.fromstring(content)
    except ElementTree.ParseError:
        return False
    return _local_name(root.tag) == "Error"


def _describe_error(response: httpx.Response) -> str:
    code = _find_text(response.content, "Code")
    message = _find_text(response.content, "Message")
    detail = ": ".join(part for part in (code, message) if part)
    return f"HTTP {response.status_code}" + (f" {detail}" if detail else "")


def _require(condition: object, message: str) -> None:
    if not condition:
        raise ValueError(message)


def _etag_of(response: httpx.Response) -> str:
    return response.headers.get("etag", "").strip('"')


class S3Connection:
    """A signed HTTP connection to an S3-compatible endpoint (path-style)."""

    def __init__(
        self, endpoint: str, access_key_id: str, secret_access_key: str
    ) -> None:
        if "://" not in endpoint:
            endpoint = "http://" + endpoint
        url = urlsplit(endpoint)
        if not url.hostname:
            raise ValueError(f"Invalid endpoint: {endpoint!r}")

        self._scheme = "https" if endpoint.startswith("https") else "http"
        host = url.hostname
        if ":" in host:
            host = f"[{host}]"
        port = url.port
        if port is not None and port != _DEFAULT_PORTS[self._scheme]:
            host = f"{host}:{port}"
        self._host = host
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._client = httpx.Client(timeout=httpx.Timeout(60.0))

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def __enter__(self) -> S3Connection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # Request signing and dispatch

    def _sign(
        self, method: str, path: str, query: str, body: bytes, now: datetime
    ) -> dict[str, str]:
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = now.strftime("%Y%m%d")
        payload_hash = _sha256_hex(body)

        canonical_headers = (
            f"host:{self._host}\n"
            f"x-amz-content-sha256:{payload_hash}\n"
            f"x-amz-date:{amz_date}\n"
        )
        canonical_request = "\n".join(
            (method, path, query, canonical_headers, _SIGNED_HEADERS, payload_hash)
        )
        scope = f"{date_stamp}/{_REGION}/{_SERVICE}/aws4_request"
        string_to_sign = "\n".join(
            (_ALGORITHM, amz_date, scope, _sha256_hex(canonical_request.encode()))
        )

        key = ("AWS4" + self._secret_access_key).encode("utf-8")
        for component in (date_stamp, _REGION, _SERVICE, "aws4_request"):
            key = _hmac(key, component)
        signature = hmac.new(
            key, string_to_sign.encode("utf-8"), hashlib.sha256
        ).hexdigest()

        return {
            "Host": self._host,
            "x-amz-date": amz_date,
            "x-amz-content-sha256": payload_hash,
            "Authorization": (
                f"{_ALGORITHM} Credential={self._access_key_id}/{scope}, "
                f"SignedHeaders={_SIGNED_HEADERS}, Signature={signature}"
            ),
        }

    def _request(
        self,
        method: str,
        bucket: str = "",
        key: str = "",
        params: dict[str, str] | None = None,
        body: bytes = b"",
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        path = "/"
        if bucket:
            path += _uri_encode(bucket)
            if key:
                path += "/" + _uri_encode(key, safe="/")
        query = _canonical_query(params or {})
        headers = self._sign(method, path, query, body, datetime.now(timezone.utc))
        if extra_headers:
            headers.update(extra_headers)

        url = f"{self._scheme}://{self._host}{path}"
        if query:
            url += "?" + query
        return self._client.request(
            method, url, content=body or None, headers=headers
        )

    # Service and bucket operations

    def is_connection_valid(self) -> bool:
        """Test the connection by listing the buckets at the endpoint."""
        try:
            return self._request("GET").is_success
        except httpx.HTTPError as exc:
            _log.error("Failed to list buckets: %s", exc)
            return False

    def bucket_exists(self, bucket_name: str) -> bool:
        """Return whether ``bucket_name`` exists."""
        try:
            return self._request("HEAD", bucket_name).is_success
        except httpx.HTTPError as exc:
            _log.error("Failed to check bucket %s: %s", bucket_name, exc)
            return False

    # Object operations

    def object_exists(self, bucket_name: str, object_name: str) -> bool:
        """Return whether ``object_name`` exists in ``bucket_name``."""
        try:
            return self._request("HEAD", bucket_name, object_name).is_success
        except httpx.HTTPError as exc:
            _log.error("Failed to stat object %s: %s", object_name, exc)
            return False

    def put_object(self, bucket_name: str, object_name: str, data: BytesLike) -> str:
        """Upload ``data`` as a whole object and return its etag.

        Raises ValueError on empty arguments and RuntimeError if the upload fails.
        """
        _require(bucket_name, "Bucket name must not be empty.")
        _require(object_name, "Object name must not be empty.")
        body = bytes(memoryview(data))
        _require(body, "Data must not be empty.")

        _log.debug("Putting object %s in bucket %s", object_name, bucket_name)
        failure = f"Failed to put object {object_name} in bucket {bucket_name}"
        try:
            response = self._request("PUT", bucket_name, object_name, body=body)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"{failure}: {exc}") from exc
        if not response.is_success:
            raise RuntimeError(f"{failure}: {_describe_error(response)}")

        etag = _etag_of(response)
        if not etag:
            raise RuntimeError(f"{failure}: no etag returned")
        return etag

    def delete_object(self, bucket_name: str, object_name: str) -> bool:
        """Delete an object; return whether the request succeeded."""
        _require(bucket_name, "Bucket name must not be empty.")
        _require(object_name, "Object name must not be empty.")

        _log.debug("Deleting object %s from bucket %s", object_name, bucket_name)
        try:
            response = self._request("DELETE", bucket_name, object_name)
        except httpx.HTTPError as exc:
            _log.error(
                "Failed to delete object %s from bucket %s: %s",
                object_name, bucket_name, exc,
            )
            return False
        if not response.is_success:
            _log.error(
                "Failed to delete object %s from bucket %s: %s",
                object_name, bucket_name, _describe_error(response),
            )
            return False
        return True

    # Multipart object operations

    def create_multipart_object(self, bucket_name: str, object_name: str) -> str:
        """Start a multipart upload and return its upload id.

        Raises ValueError on empty arguments and RuntimeError if no upload id
        is obtained.
        """
        _require(bucket_name, "Bucket name must not be empty.")
        _require(object_name, "Object name must not be empty.")

        _log.debug(
            "Creating multipart object %s in bucket %s", object_name, bucket_name
        )
        failure = (
            f"Failed to create multipart object {object_name} in bucket {bucket_name}"
        )
        try:
            response = self._request(
                "POST", bucket_name, object_name, params={"uploads": ""}
            )
        except httpx.HTTPError as exc:
            raise RuntimeError(f"{failure}: {exc}") from exc
        if not response.is_success:
            raise RuntimeError(f"{failure}: {_describe_error(response)}")

        upload_id = _find_text(response.content, "UploadId")
        if not upload_id:
            raise RuntimeError("Upload id returned empty.")
        return upload_id

    def upload_multipart_object_part(
        self,
        bucket_name: str,
        object_name: str,
        upload_id: str,
        data: BytesLike,
        part_number: int,
    ) -> str:
        """Upload one part of a multipart object and return its etag.

        Raises ValueError on invalid arguments and RuntimeError if the upload
        fails.
        """
        _require(bucket_name, "Bucket name must not be empty.")
        _require(object_name, "Object name must not be empty.")
        body = bytes(memoryview(data))
        _require(body, "Number of bytes must be positive.")
        _require(part_number > 0, "Part number must be positive.")

        _log.debug(
            "Uploading multipart object part %d for object %s in bucket %s",
            part_number, object_name, bucket_name,
        )
        failure = (
            f"Failed to upload part {part_number} for object {object_name} "
            f"in bucket {bucket_name}"
        )
        params = {"partNumber": str(part_number), "uploadId": upload_id}
        try:
            response = self._request(
                "PUT", bucket_name, object_name, params=params, body=body
            )
        except httpx.HTTPError as exc:
            raise RuntimeError(f"{failure}: {exc}") from exc
        if not response.is_success:
            raise RuntimeError(f"{failure}: {_describe_error(response)}")

        etag = _etag_of(response)
        if not etag:
            raise RuntimeError(f"{failure}: no etag returned")
        return etag

    def complete_multipart_object(
        self,
        bucket_name: str,
        object_name: str,
        upload_id: str,
        parts: Iterable[Part],
    ) -> bool:
        """Assemble the uploaded ``parts``; return whether it succeeded."""
        parts = list(parts)
        _require(bucket_name, "Bucket name must not be empty.")
        _require(object_name, "Object name must not be empty.")
        _require(upload_id, "Upload id must not be empty.")
        _require(parts, "Parts list must not be empty.")

        _log.debug(
            "Completing multipart object %s in bucket %s", object_name, bucket_name
        )
        root = ElementTree.Element("CompleteMultipartUpload")
        for part in parts:
            element = ElementTree.SubElement(root, "Part")
            ElementTree.SubElement(element, "PartNumber").text = str(part.number)
            ElementTree.SubElement(element, "ETag").text = part.etag
        body = ElementTree.tostring(root, encoding="utf-8")

        failure = (
            f"Failed to complete multipart object {object_name} "
            f"in bucket {bucket_name}"
        )
        try:
            response = self._request(
                "POST",
                bucket_name,
                object_name,
                params={"uploadId": upload_id},
                body=body,
                extra_headers={"Content-Type": "application/xml"},
            )
        except httpx.HTTPError as exc:
            _log.error("%s: %s", failure, exc)
            return False
        if not response.is_success or _is_error_document(response.content):
            _log.error("%s: %s", failure, _describe_error(response))
            return False
        return True


class S3ConnectionPool:
    """A fixed set of validated connections handed out one thread at a time."""

    def __init__(
        self,
        n_connections: int,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
    ) -> None:
        self._connections: list[S3Connection] = []
        self._cv = threading.Condition()
        self._accepting = True

        for _ in range(n_connections):
            connection = S3Connection(endpoint, access_key_id, secret_access_key)
            if connection.is_connection_valid():
                self._connections.append(connection)
            else:
                connection.close()

        if not self._connections:
            raise RuntimeError(f"Could not connect to S3 endpoint {endpoint!r}.")

    def get_connection(self) -> S3Connection:
        """Take a connection, waiting until one is free.

        Raises RuntimeError if the pool is closed.
        """
        with self._cv:
            self._cv.wait_for(lambda: not self._accepting or bool(self._connections))
            if not self._accepting or not self._connections:
                raise RuntimeError("S3 connection pool is closed.")
            return self._connections.pop()

    def return_connection(self, conn: S3Connection) -> None:
        """Give a connection back to the pool."""
        with self._cv:
            if not self._accepting:
                conn.close()
                return
            self._connections.append(conn)
            self._cv.notify()

    @contextmanager
    def connection(self) -> Iterator[S3Connection]:
        """Borrow a connection for the duration of a ``with`` block."""
        conn = self.get_connection()
        try:
            yield conn
        finally:
            self.return_connection(conn)

    def close(self) -> None:
        """Stop handing out connections and close the idle ones."""
        with self._cv:
            self._accepting = False
            idle, self._connections = self._connections, []
            self._cv.notify_all()
        for conn in idle:
            conn.close()

    def __enter__(self) -> S3ConnectionPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()