"""File and S3 byte sinks, a thread pool and a sink factory for Zarr datasets."""

__version__ = "0.1.0"