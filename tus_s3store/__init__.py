"""Storage backend for tus resumable uploads on S3 multipart uploads."""

__version__ = "0.1.0"
__all__ = ["model", "s3api", "part_producer", "backend", "upload", "store"]