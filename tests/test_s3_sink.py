from contextlib import contextmanager

import httpx
import pytest
import respx

from zarrsinks.s3_connection import Part, S3ConnectionPool
from zarrsinks.s3_sink import S3Sink
from zarrsinks.sink import finalize_sink


class FakeConnection:
    def __init__(self):
        self.puts = []
        self.created = []
        self.uploaded = []
        self.completed = []
        self.complete_result = True
        self.fail_put = False

    def put_object(self, bucket_name, object_name, data):
        if self.fail_put:
            raise RuntimeError("boom")
        self.puts.append((bucket_name, object_name, bytes(data)))
        return "etag-put"

    def create_multipart_object(self, bucket_name, object_name):
        self.created.append((bucket_name, object_name))
        return "upload-1"

    def upload_multipart_object_part(
        self, bucket_name, object_name, upload_id, data, part_number
    ):
        self.uploaded.append((upload_id, part_number, bytes(data)))
        return f"etag-{part_number}"

    def complete_multipart_object(self, bucket_name, object_name, upload_id, parts):
        self.completed.append((upload_id, list(parts)))
        return self.complete_result


class FakePool:
    def __init__(self):
        self.conn = FakeConnection()
        self.borrowed = 0

    @contextmanager
    def connection(self):
        self.borrowed += 1
        try:
            yield self.conn
        finally:
            self.borrowed -= 1


@pytest.fixture
def pool():
    return FakePool()


@pytest.mark.parametrize(
    "bucket, key, use_pool",
    [("", "key", True), ("bucket", "", True), ("bucket", "key", False)],
)
def test_constructor_rejects_invalid_arguments(pool, bucket, key, use_pool):
    with pytest.raises(ValueError):
        S3Sink(bucket, key, pool if use_pool else None)


def test_part_is_uploaded_at_five_mebibytes(pool):
    size = 5 << 20
    sink = S3Sink("bucket", "key", pool)
    sink.write(0, bytes(size - 1))
    assert pool.conn.created == []
    assert pool.conn.uploaded == []
    sink.write(size - 1, b"\x01")
    assert pool.conn.created == [("bucket", "key")]
    assert [(n, len(d)) for _, n, d in pool.conn.uploaded] == [(1, size)]


def test_small_write_is_put_as_single_object(pool):
    sink = S3Sink("bucket", "dir/key", pool)
    sink.write(0, b"hello")
    sink.write(5, b" world")
    assert pool.conn.puts == []
    finalize_sink(sink)
    assert pool.conn.puts == [("bucket", "dir/key", b"hello world")]
    assert pool.conn.created == []
    assert pool.borrowed == 0


def test_empty_write_uploads_nothing(pool):
    sink = S3Sink("bucket", "key", pool)
    sink.write(0, b"")
    finalize_sink(sink)
    assert pool.conn.puts == []
    assert pool.conn.uploaded == []


def test_full_part_starts_multipart_upload(pool):
    size = S3Sink.MAX_PART_SIZE
    sink = S3Sink("bucket", "key", pool)
    sink.write(0, bytes(size))
    assert pool.conn.created == [("bucket", "key")]
    assert [(u, n, len(d)) for u, n, d in pool.conn.uploaded] == [
        ("upload-1", 1, size)
    ]
    finalize_sink(sink)
    assert pool.conn.puts == []
    assert pool.conn.completed == [
        ("upload-1", [Part(number=1, etag="etag-1", size=size)])
    ]


def test_multipart_parts_reassemble_input(pool):
    size = S3Sink.MAX_PART_SIZE
    payload = bytes(range(256)) * ((2 * size + 10) // 256 + 1)
    payload = payload[: 2 * size + 10]
    sink = S3Sink("bucket", "key", pool)
    sink.write(0, payload)
    finalize_sink(sink)

    numbers = [n for _, n, _ in pool.conn.uploaded]
    assert numbers == [1, 2, 3]
    assert b"".join(d for _, _, d in pool.conn.uploaded) == payload
    _, parts = pool.conn.completed[0]
    assert [p.number for p in parts] == numbers
    assert sum(p.size for p in parts) == len(payload)


def test_write_before_flushed_offset_raises(pool):
    size = S3Sink.MAX_PART_SIZE
    sink = S3Sink("bucket", "key", pool)
    sink.write(0, bytes(size))
    with pytest.raises(ValueError):
        sink.write(size - 1, b"x")


def test_write_beyond_current_part_raises(pool):
    sink = S3Sink("bucket", "key", pool)
    with pytest.raises(ValueError):
        sink.write(S3Sink.MAX_PART_SIZE + 1, b"x")


def test_gap_in_offsets_is_zero_filled(pool):
    sink = S3Sink("bucket", "key", pool)
    sink.write(3, b"ab")
    finalize_sink(sink)
    assert pool.conn.puts[0][2] == b"\x00\x00\x00ab"


def test_failed_put_raises_and_returns_connection(pool):
    pool.conn.fail_put = True
    sink = S3Sink("bucket", "key", pool)
    sink.write(0, b"data")
    with pytest.raises(RuntimeError, match="key"):
        finalize_sink(sink)
    assert pool.borrowed == 0


def test_failed_completion_raises(pool):
    pool.conn.complete_result = False
    sink = S3Sink("bucket", "key", pool)
    sink.write(0, bytes(S3Sink.MAX_PART_SIZE))
    with pytest.raises(RuntimeError):
        finalize_sink(sink)


def test_put_through_real_pool_sends_body():
    with respx.mock(assert_all_called=False) as router:
        router.get("http://s3.test/").mock(return_value=httpx.Response(200))
        route = router.put("http://s3.test/bucket/obj").mock(
            return_value=httpx.Response(200, headers={"ETag": '"abc"'})
        )
        router.head("http://s3.test/bucket/obj").mock(
            return_value=httpx.Response(200)
        )
        real_pool = S3ConnectionPool(1, "http://s3.test", "placeholder", "secret")
        sink = S3Sink("bucket", "obj", real_pool)
        sink.write(0, b"hello")
        finalize_sink(sink)
        with real_pool.connection() as conn:
            assert conn.object_exists("bucket", "obj") is True
        real_pool.close()

    assert route.call_count == 1
    assert route.calls.last.request.content == b"hello"


def test_put_through_real_pool_failure_raises():
    with respx.mock(assert_all_called=False) as router:
        router.get("http://s3.test/").mock(return_value=httpx.Response(200))
        router.put("http://s3.test/bucket/obj").mock(
            return_value=httpx.Response(500)
        )
        real_pool = S3ConnectionPool(1, "http://s3.test", "placeholder", "secret")
        sink = S3Sink("bucket", "obj", real_pool)
        sink.write(0, b"hello")
        with pytest.raises(RuntimeError, match="obj"):
            finalize_sink(sink)
        real_pool.close()