# zarrsinks

Byte sinks that write Zarr datasets one part at a time. A sink can write to
the local filesystem or to an S3-compatible object store.

A sink accepts writes at byte offsets. You finalize it once. Finalizing
flushes whatever is still buffered and then closes the sink. Errors are
raised as exceptions.

## Modules

- `zarrsinks.sink`
  - `Sink` is the abstract interface. It has `write(offset, data)` and `close()`.
  - `finalize_sink(sink)` flushes a sink and closes it. It does nothing when
    given `None`.
- `zarrsinks.file_sink`
  - `FileSink` writes into a local file and truncates the file when it opens it.
  - A negative offset raises `ValueError`.
  - It can be used as a context manager.
- `zarrsinks.s3_sink`
  - `S3Sink` buffers data in 5 MiB parts (`S3Sink.MAX_PART_SIZE`).
  - If the data never fills a part, finalizing uploads it with a single PUT.
  - Once a part fills, the sink starts a multipart upload and sends each full
    part as soon as it is complete. Finalizing then uploads the remainder and
    completes the upload.
  - `S3Sink.parts` lists the parts uploaded so far.
- `zarrsinks.s3_connection`
  - `S3Connection` is a small S3 client. It uses path-style requests signed with
    AWS Signature Version 4 for the `us-east-1` region, and works over `httpx`.
    It can check whether buckets and objects exist, put and delete objects, and
    create, upload and complete multipart objects.
  - `Part` records one uploaded part: its number, its etag and an optional size.
  - `S3ConnectionPool` opens a number of connections and keeps only those that
    can list buckets. It raises `RuntimeError` if none can.
    - `get_connection()` blocks until a connection is free.
    - `return_connection(conn)` gives a connection back.
    - `connection()` is a context manager that borrows one connection for a
      `with` block.
    - `close()` stops the pool from handing out connections.
- `zarrsinks.thread_pool`
  - `ThreadPool` runs jobs on worker threads. A job is a callable that takes no
    arguments.
  - The number of threads is clamped between 1 and the CPU count.
  - If a job raises, the error handler receives the exception's message.
  - `push_job` raises `RuntimeError` after `await_stop()`.
  - `await_stop()` runs the jobs still queued and then joins the workers.
- `zarrsinks.sink_creator`
  - `SinkCreator` builds the sinks for a dataset.
  - `ZarrVersion` (`V2`, `V3`) selects which set of metadata files to create.

## Writing to a file

```python
from zarrsinks.file_sink import FileSink
from zarrsinks.sink import finalize_sink

sink = FileSink("data.bin")
sink.write(0, b"\x00\x01\x02\x03")
finalize_sink(sink)
```

`FileSink` does not create directories. `SinkCreator.make_sink(path)` does:
it strips a leading `file://` from the path, creates any missing parent
directories, and then opens the file.

## Writing to S3

```python
from zarrsinks.s3_connection import S3ConnectionPool
from zarrsinks.s3_sink import S3Sink
from zarrsinks.sink import finalize_sink

pool = S3ConnectionPool(4, "http://localhost:9000", "access-key-id", "placeholder")
sink = S3Sink("my-bucket", "dataset/zarr.json", pool)
sink.write(0, b"{}")
finalize_sink(sink)
pool.close()
```

`S3Sink.write` refuses these offsets with `ValueError`:

- an offset below what has already been uploaded;
- an offset more than one part beyond the start of the part now being
  buffered.

`S3Sink.write` raises `RuntimeError` when a part upload fails while the sink
is writing. Finalizing raises `RuntimeError` when the final PUT fails, or when
the multipart upload cannot be completed.

## Creating sinks for a dataset

`SinkCreator(thread_pool, connection_pool)` creates directories and files in
parallel on the given `ThreadPool`. Pass `None` as the connection pool when
you only need filesystem sinks.

```python
from dataclasses import dataclass

from zarrsinks.sink import finalize_sink
from zarrsinks.sink_creator import SinkCreator, ZarrVersion
from zarrsinks.thread_pool import ThreadPool


@dataclass
class Dim:
    name: str
    parts: int


threads = ThreadPool(4, lambda message: print("error:", message))
creator = SinkCreator(threads, None)

metadata = creator.make_metadata_sinks(ZarrVersion.V2, "dataset.zarr")
# keys: ".zattrs", ".zgroup", "0/.zattrs", "acquire.json"

dims = [Dim("t", 1), Dim("c", 2), Dim("y", 3), Dim("x", 4)]
data = creator.make_data_sinks("dataset.zarr/0", dims, lambda d: d.parts)
# 2 * 3 * 4 = 24 sinks: dataset.zarr/0/<c>/<y>/<x>

for sink in [*metadata.values(), *data]:
    finalize_sink(sink)
threads.await_stop()
```

How the sink methods work:

- Dimensions can be any objects that have a `name`.
- The first dimension is the append dimension and gets no path component. The
  last dimension names the files.
- Any dimension for which `parts_along_dimension` returns zero or less raises
  `ValueError`.
- The V3 metadata keys are `zarr.json`, `meta/root.group.json` and
  `meta/acquire.json`. Any other version raises `ValueError`.
- `make_s3_sink`, `make_s3_data_sinks` and `make_s3_metadata_sinks` create
  `S3Sink`s instead of files. They need a connection pool, and raise
  `RuntimeError` when it is missing.
- `make_s3_sink` and `make_s3_metadata_sinks` also raise `RuntimeError` when
  the bucket does not exist.

## What this package does not do

This package only provides the places that bytes go to. It does not:

- produce the contents of Zarr metadata documents;
- split frames into chunks or shards;
- compress data;
- create buckets.

It has no command-line interface.

## Running the tests

```
pip install -e ".[test]"
pytest
```