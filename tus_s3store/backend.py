"""Configuration and the low-level S3 operations shared by uploads."""

from __future__ import annotations

import contextlib
import tempfile
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import IO, Any

from .model import S3StoreError
from .part_producer import TEMP_FILE_PREFIX
from .s3api import S3API, error_code

_COPY_BUFFER = 32 * 1024

# Error codes meaning that the optional incomplete part object is not there
# (or not visible to us, which S3 reports as access denied for missing keys).
_ABSENT_PART_CODES = frozenset(
    {"NoSuchKey", "NotFound", "404", "AccessDenied", "Forbidden", "403"}
)


@dataclass
class S3Part:
    """One part of an S3 multipart upload."""

    number: int
    size: int
    etag: str = ""


def split_ids(id: str) -> tuple[str, str]:
    """Split an upload ID into object ID and multipart ID at the last ``+``.

    Both are empty if the ID holds no ``+``.
    """
    object_id, sep, multipart_id = id.rpartition("+")
    if not sep:
        return "", ""
    return object_id, multipart_id


class S3Backend:
    """Bucket configuration, part sizing and access to the auxiliary objects."""

    def __init__(self, bucket: str, service: S3API) -> None:
        self.bucket = bucket
        self.service = service
        self.object_prefix = ""
        self.metadata_object_prefix = ""
        self.max_part_size = 5 * 1024 * 1024 * 1024
        self.min_part_size = 5 * 1024 * 1024
        self.preferred_part_size = 50 * 1024 * 1024
        self.max_multipart_parts = 10000
        self.max_object_size = 5 * 1024 * 1024 * 1024 * 1024
        self.max_buffered_parts = 20
        self.temporary_directory = ""
        self.disable_content_hashes = False

        self.semaphore_demand = 0
        self.semaphore_limit = 0
        self._demand_lock = threading.Lock()
        self._upload_semaphore = threading.Semaphore(1)
        self.set_concurrent_part_uploads(10)

    # -- concurrency -------------------------------------------------------

    def set_concurrent_part_uploads(self, limit: int) -> None:
        """Change how many part uploads to S3 may run at the same time."""
        if limit < 1:
            raise ValueError("the concurrent part upload limit must be at least 1")
        self._upload_semaphore = threading.Semaphore(limit)
        self.semaphore_limit = limit

    def _acquire_upload_slot(self) -> None:
        with self._demand_lock:
            self.semaphore_demand += 1
        self._upload_semaphore.acquire()

    def _release_upload_slot(self) -> None:
        self._upload_semaphore.release()
        with self._demand_lock:
            self.semaphore_demand -= 1

    @contextlib.contextmanager
    def upload_slot(self) -> Iterator[None]:
        """Hold one of the limited part upload slots for the block's duration."""
        self._acquire_upload_slot()
        try:
            yield
        finally:
            self._release_upload_slot()

    # -- sizing and keys ---------------------------------------------------

    def calc_optimal_part_size(self, size: int) -> int:
        """Return the part size with which ``size`` bytes fit into the part limit."""
        if size <= self.preferred_part_size:
            optimal = self.preferred_part_size
        elif size <= self.preferred_part_size * self.max_multipart_parts:
            optimal = self.preferred_part_size
        elif size % self.max_multipart_parts == 0:
            optimal = size // self.max_multipart_parts
        else:
            # Round up so the upload still fits into max_multipart_parts parts.
            optimal = size // self.max_multipart_parts + 1

        if optimal > self.max_part_size:
            raise S3StoreError(
                f"calcOptimalPartSize: to upload {size} bytes optimalPartSize {optimal} "
                f"must exceed MaxPartSize {self.max_part_size}"
            )
        return optimal

    @staticmethod
    def _join(prefix: str, key: str) -> str:
        if prefix and not prefix.endswith("/"):
            prefix += "/"
        return prefix + key

    def key_with_prefix(self, key: str) -> str:
        """Return the object key for uploaded data."""
        return self._join(self.object_prefix, key)

    def metadata_key_with_prefix(self, key: str) -> str:
        """Return the key for ``.info`` and ``.part`` objects."""
        return self._join(self.metadata_object_prefix or self.object_prefix, key)

    # -- multipart parts ---------------------------------------------------

    def list_all_parts(self, object_id: str, multipart_id: str) -> list[S3Part]:
        """Return every part of the multipart upload, following pagination."""
        parts: list[S3Part] = []
        marker: Any = None
        while True:
            request: dict[str, Any] = {
                "Bucket": self.bucket,
                "Key": self.key_with_prefix(object_id),
                "UploadId": multipart_id,
            }
            if marker is not None:
                request["PartNumberMarker"] = marker
            result = self.service.list_parts(**request)
            parts.extend(
                S3Part(number=part["PartNumber"], size=part["Size"], etag=part["ETag"])
                for part in result.get("Parts") or []
            )
            if result.get("IsTruncated"):
                marker = result.get("NextPartNumberMarker")
            else:
                return parts

    # -- incomplete part object -------------------------------------------

    def _part_key(self, object_id: str) -> str:
        return self.metadata_key_with_prefix(object_id + ".part")

    def download_incomplete_part(self, object_id: str) -> IO[bytes] | None:
        """Copy the incomplete part into a temporary file, positioned at its start.

        Returns ``None`` if there is no incomplete part. Closing the returned
        file removes it from disk.
        """
        try:
            result = self.service.get_object(Bucket=self.bucket, Key=self._part_key(object_id))
        except Exception as exc:
            if error_code(exc) in _ABSENT_PART_CODES:
                return None
            raise

        body = result["Body"]
        file = tempfile.NamedTemporaryFile(
            mode="w+b", prefix=TEMP_FILE_PREFIX, dir=self.temporary_directory or None
        )
        try:
            copied = 0
            while data := body.read(_COPY_BUFFER):
                file.write(data)
                copied += len(data)
            expected = result.get("ContentLength")
            if expected is not None and copied < expected:
                raise S3StoreError("short read of incomplete upload")
            file.flush()
            file.seek(0)
        except BaseException:
            file.close()
            raise
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()
        return file

    def head_incomplete_part(self, object_id: str) -> int:
        """Return the size of the incomplete part, or 0 if there is none."""
        try:
            result = self.service.head_object(Bucket=self.bucket, Key=self._part_key(object_id))
        except Exception as exc:
            if error_code(exc) in _ABSENT_PART_CODES:
                return 0
            raise
        return int(result["ContentLength"])

    def put_incomplete_part(self, object_id: str, file: IO[bytes]) -> None:
        """Store ``file`` as the upload's incomplete part."""
        self.service.put_object(Bucket=self.bucket, Key=self._part_key(object_id), Body=file)

    def delete_incomplete_part(self, object_id: str) -> None:
        """Delete the upload's incomplete part object."""
        self.service.delete_object(Bucket=self.bucket, Key=self._part_key(object_id))