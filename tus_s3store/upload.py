"""A single tus upload stored as an S3 multipart upload plus auxiliary objects."""

from __future__ import annotations

import contextlib
import copy
import shutil
import tempfile
import threading
import urllib.error
import urllib.request
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from .backend import S3Backend, S3Part
from .model import FileInfo, IncompleteUploadError, S3StoreError, UploadNotFoundError
from .part_producer import FileChunk, PartProducer
from .s3api import error_code

_PRESIGN_EXPIRY_SECONDS = 15 * 60
_CONCAT_FILE_PREFIX = "tusd-s3-concat-tmp-"
_MISSING_UPLOAD_CODES = frozenset({"NoSuchUpload", "NoSuchKey"})


class _ConcatReader:
    """Reads from several binary readers one after another."""

    def __init__(self, *readers: Any) -> None:
        self._readers = list(readers)

    def read(self, size: int | None = -1) -> bytes:
        if size is None or size < 0:
            data = b"".join(reader.read() for reader in self._readers)
            self._readers.clear()
            return data
        while self._readers:
            data = self._readers[0].read(size)
            if data:
                return data
            self._readers.pop(0)
        return b""


def _raise_first_error(futures: Iterable[Future]) -> None:
    for future in futures:
        exc = future.exception()
        if exc is not None:
            raise exc


def _close_body(body: Any) -> None:
    close = getattr(body, "close", None)
    if close is not None:
        close()


class S3Upload:
    """One upload: its info object, multipart upload and optional incomplete part."""

    def __init__(self, backend: S3Backend, object_id: str, multipart_id: str) -> None:
        self.backend = backend
        self.object_id = object_id
        self.multipart_id = multipart_id
        # Cached state; filled from S3 on first use.
        self.info: FileInfo | None = None
        self.parts: list[S3Part] = []
        self.incomplete_part_size = 0

    # -- info ----------------------------------------------------------------

    def _object_request(self) -> dict[str, Any]:
        return {
            "Bucket": self.backend.bucket,
            "Key": self.backend.key_with_prefix(self.object_id),
            "UploadId": self.multipart_id,
        }

    def _write_info(self, info: FileInfo) -> None:
        self.info = copy.copy(info)
        data = info.to_json()
        self.backend.service.put_object(
            Bucket=self.backend.bucket,
            Key=self.backend.metadata_key_with_prefix(self.object_id + ".info"),
            Body=data,
            ContentLength=len(data),
        )

    def _ensure_info(self) -> FileInfo:
        if self.info is None:
            info, parts, incomplete = self._fetch_info()
            self.info = info
            self.parts = parts
            self.incomplete_part_size = incomplete
        return self.info

    def _read_info_object(self) -> FileInfo:
        result = self.backend.service.get_object(
            Bucket=self.backend.bucket,
            Key=self.backend.metadata_key_with_prefix(self.object_id + ".info"),
        )
        body = result["Body"]
        try:
            data = body.read()
        finally:
            _close_body(body)
        return FileInfo.from_json(data)

    def _fetch_info(self) -> tuple[FileInfo, list[S3Part], int]:
        with ThreadPoolExecutor(max_workers=3) as pool:
            info_future = pool.submit(self._read_info_object)
            parts_future = pool.submit(
                self.backend.list_all_parts, self.object_id, self.multipart_id
            )
            incomplete_future = pool.submit(self.backend.head_incomplete_part, self.object_id)

        info_error = info_future.exception()
        if info_error is not None:
            if error_code(info_error) == "NoSuchKey":
                raise UploadNotFoundError() from info_error
            raise info_error
        info = info_future.result()

        incomplete_error = incomplete_future.exception()
        incomplete = incomplete_future.result() if incomplete_error is None else 0

        parts_error = parts_future.exception()
        if parts_error is not None:
            # A missing multipart upload next to an existing info object means
            # the upload has already been completed.
            if error_code(parts_error) in _MISSING_UPLOAD_CODES:
                info.offset = info.size
                return info, [], incomplete
            raise parts_error

        if incomplete_error is not None:
            raise incomplete_error

        parts = parts_future.result()
        info.offset = incomplete + sum(part.size for part in parts)
        return info, parts, incomplete

    def get_info(self) -> FileInfo:
        """Return the upload's info, fetching it from S3 on first use."""
        return copy.copy(self._ensure_info())

    def declare_length(self, length: int) -> None:
        """Set the final size of an upload whose size was deferred."""
        info = self.get_info()
        info.size = length
        info.size_is_deferred = False
        self._write_info(info)

    # -- writing -------------------------------------------------------------

    def write_chunk(self, offset: int, src: Any) -> int:
        """Upload the data read from ``src`` and return how many bytes were taken."""
        self._ensure_info()
        prefix_size = self.incomplete_part_size
        if prefix_size <= 0:
            return self._upload_parts(offset, src, 0)

        part_file = self.backend.download_incomplete_part(self.object_id)
        if part_file is None:
            raise S3StoreError("s3store: Expected an incomplete part file but did not get any")
        with part_file:
            self.backend.delete_incomplete_part(self.object_id)
            self.incomplete_part_size = 0
            return self._upload_parts(
                offset - prefix_size, _ConcatReader(part_file, src), prefix_size
            )

    def _upload_parts(self, offset: int, src: Any, prefix_size: int) -> int:
        backend = self.backend
        info = self._ensure_info()
        part_size = backend.calc_optimal_part_size(info.size)

        producer = PartProducer(src, backend.max_buffered_parts, backend.temporary_directory)
        stop = threading.Event()
        thread = threading.Thread(target=producer.produce, args=(part_size, stop), daemon=True)
        thread.start()

        next_number = len(self.parts) + 1
        uploaded = 0
        futures: list[Future] = []
        try:
            with ThreadPoolExecutor(max_workers=max(backend.semaphore_limit, 1)) as pool:
                chunks = iter(producer)
                while True:
                    # Take a slot before reading the next part so that few
                    # part files wait on disk without being sent.
                    slot = contextlib.ExitStack()
                    slot.enter_context(backend.upload_slot())
                    chunk = next(chunks, None)
                    if chunk is None:
                        slot.close()
                        break

                    is_final = (
                        not info.size_is_deferred
                        and info.size == offset + uploaded + chunk.size
                    )
                    try:
                        if chunk.size >= backend.min_part_size or is_final:
                            part = S3Part(number=next_number, size=chunk.size)
                            self.parts.append(part)
                            futures.append(pool.submit(self._send_part, slot, chunk, part))
                        else:
                            futures.append(pool.submit(self._send_incomplete_part, slot, chunk))
                    except BaseException:
                        slot.close()
                        chunk.close()
                        raise
                    uploaded += chunk.size
                    next_number += 1
        finally:
            stop.set()
            producer.close_unread_files()
            thread.join()

        _raise_first_error(futures)

        # The re-sent incomplete part is invisible to the client.
        written = max(uploaded - prefix_size, 0)
        info.offset += written
        if producer.error is not None:
            raise producer.error
        return written

    def _send_part(self, slot: contextlib.ExitStack, chunk: FileChunk, part: S3Part) -> None:
        with slot:
            try:
                etag = self._put_part(part.number, chunk)
            except BaseException:
                with contextlib.suppress(OSError):
                    chunk.close()
                raise
            part.etag = etag
            chunk.close()

    def _send_incomplete_part(self, slot: contextlib.ExitStack, chunk: FileChunk) -> None:
        with slot:
            try:
                self.backend.put_incomplete_part(self.object_id, chunk.reader)
            except BaseException:
                with contextlib.suppress(OSError):
                    chunk.close()
                raise
            self.incomplete_part_size = chunk.size
            chunk.close()

    def _put_part(self, number: int, chunk: FileChunk) -> str:
        request = dict(self._object_request(), PartNumber=number)
        if not self.backend.disable_content_hashes:
            result = self.backend.service.upload_part(Body=chunk.reader, **request)
            return result["ETag"]
        return self._put_part_presigned(request, chunk)

    def _put_part_presigned(self, request: dict[str, Any], chunk: FileChunk) -> str:
        # Sending the body ourselves to a presigned URL keeps the client from
        # hashing the part's content.
        presign = getattr(self.backend.service, "generate_presigned_url", None)
        if presign is None:
            raise S3StoreError("s3store: failed to cast S3 service for presigning")
        try:
            url = presign("upload_part", Params=request, ExpiresIn=_PRESIGN_EXPIRY_SECONDS)
        except Exception as exc:
            raise S3StoreError(f"s3store: failed to presign UploadPart: {exc}") from exc

        http_request = urllib.request.Request(
            url,
            data=chunk.reader,
            method="PUT",
            headers={"Content-Length": str(chunk.size)},
        )
        try:
            with urllib.request.urlopen(http_request) as response:
                status = response.status
                etag = response.headers.get("ETag", "")
                body = response.read()
        except urllib.error.HTTPError as exc:
            text = exc.read().decode("utf-8", "replace")
            raise S3StoreError(
                f"s3store: unexpected response code {exc.code} for presigned upload: {text}"
            ) from exc
        if status != 200:
            text = body.decode("utf-8", "replace")
            raise S3StoreError(
                f"s3store: unexpected response code {status} for presigned upload: {text}"
            )
        return etag

    # -- reading -------------------------------------------------------------

    def get_reader(self) -> Any:
        """Return a readable body for a finished upload."""
        service = self.backend.service
        key = self.backend.key_with_prefix(self.object_id)
        try:
            return service.get_object(Bucket=self.backend.bucket, Key=key)["Body"]
        except Exception as exc:
            if error_code(exc) != "NoSuchKey":
                raise

        try:
            service.list_parts(
                Bucket=self.backend.bucket, Key=key, UploadId=self.multipart_id, MaxParts=0
            )
        except Exception as exc:
            if error_code(exc) == "NoSuchUpload":
                raise UploadNotFoundError() from exc
            raise
        raise IncompleteUploadError()

    # -- termination and completion -----------------------------------------

    def terminate(self) -> None:
        """Abort the multipart upload and delete every object of the upload."""
        backend = self.backend
        service = backend.service

        def abort() -> None:
            try:
                service.abort_multipart_upload(**self._object_request())
            except Exception as exc:
                if error_code(exc) != "NoSuchUpload":
                    raise

        def delete() -> list[Exception]:
            result = service.delete_objects(
                Bucket=backend.bucket,
                Delete={
                    "Objects": [
                        {"Key": backend.key_with_prefix(self.object_id)},
                        {"Key": backend.metadata_key_with_prefix(self.object_id + ".part")},
                        {"Key": backend.metadata_key_with_prefix(self.object_id + ".info")},
                    ],
                    "Quiet": True,
                },
            )
            return [
                S3StoreError(
                    f"AWS S3 Error ({item.get('Code')}) for object "
                    f"{item.get('Key')}: {item.get('Message')}"
                )
                for item in (result or {}).get("Errors") or []
                if item.get("Code") != "NoSuchKey"
            ]

        with ThreadPoolExecutor(max_workers=2) as pool:
            abort_future = pool.submit(abort)
            delete_future = pool.submit(delete)

        errors: list[BaseException] = []
        if abort_future.exception() is not None:
            errors.append(abort_future.exception())
        if delete_future.exception() is not None:
            errors.append(delete_future.exception())
        else:
            errors.extend(delete_future.result())

        if len(errors) == 1:
            raise errors[0]
        if errors:
            raise S3StoreError("\n".join(str(err) for err in errors)) from errors[0]

    def finish_upload(self) -> None:
        """Complete the multipart upload so the object appears in the bucket."""
        self._ensure_info()
        service = self.backend.service
        parts = self.parts
        if not parts:
            # S3 needs at least one part to complete a multipart upload.
            result = service.upload_part(PartNumber=1, Body=b"", **self._object_request())
            parts = [S3Part(number=1, size=0, etag=result["ETag"])]

        service.complete_multipart_upload(
            MultipartUpload={
                "Parts": [{"ETag": part.etag, "PartNumber": part.number} for part in parts]
            },
            **self._object_request(),
        )

    # -- concatenation -------------------------------------------------------

    def concat_uploads(self, partial_uploads: Iterable[S3Upload]) -> None:
        """Assemble this upload from finished partial uploads, in order."""
        partials = list(partial_uploads)
        sizes = [partial.get_info().size for partial in partials]
        # Parts below the minimum size cannot be copied into a multipart upload.
        if any(size < self.backend.min_part_size for size in sizes):
            self._concat_using_download(partials)
        else:
            self._concat_using_multipart(partials)

    def _concat_using_download(self, partials: list[S3Upload]) -> None:
        backend = self.backend
        service = backend.service
        with tempfile.TemporaryFile(
            prefix=_CONCAT_FILE_PREFIX, dir=backend.temporary_directory or None
        ) as file:
            for partial in partials:
                result = service.get_object(
                    Bucket=backend.bucket, Key=backend.key_with_prefix(partial.object_id)
                )
                body = result["Body"]
                try:
                    shutil.copyfileobj(body, file)
                finally:
                    _close_body(body)
            file.flush()
            file.seek(0)
            service.put_object(
                Bucket=backend.bucket, Key=backend.key_with_prefix(self.object_id), Body=file
            )

        # The multipart upload is no longer needed; its outcome does not matter.
        threading.Thread(target=self._abort_quietly, daemon=True).start()

    def _abort_quietly(self) -> None:
        with contextlib.suppress(Exception):
            self.backend.service.abort_multipart_upload(**self._object_request())

    def _concat_using_multipart(self, partials: list[S3Upload]) -> None:
        backend = self.backend
        service = backend.service

        def copy_part(number: int, partial: S3Upload) -> S3Part:
            result = service.upload_part_copy(
                PartNumber=number,
                CopySource=f"{backend.bucket}/{backend.key_with_prefix(partial.object_id)}",
                **self._object_request(),
            )
            # The size is not needed for completing the upload.
            return S3Part(number=number, size=-1, etag=result["CopyPartResult"]["ETag"])

        with ThreadPoolExecutor(max_workers=max(len(partials), 1)) as pool:
            futures = [
                pool.submit(copy_part, number, partial)
                for number, partial in enumerate(partials, start=1)
            ]
        _raise_first_error(futures)
        self.parts = [future.result() for future in futures]
        self.finish_upload()