"""The S3 client interface the store talks to, and helpers to inspect its errors."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class S3API(Protocol):
    """The S3 operations the store needs.

    Arguments and results use the S3 wire names (``Bucket``, ``Key``,
    ``UploadId``, ``ETag`` ...), so a boto3 S3 client fits this interface.
    Failures are raised as exceptions, for example :class:`S3Error`.
    """

    def put_object(self, **kwargs: Any) -> dict[str, Any]:
        """Store an object."""

    def list_parts(self, **kwargs: Any) -> dict[str, Any]:
        """List the parts of a multipart upload."""

    def upload_part(self, **kwargs: Any) -> dict[str, Any]:
        """Upload one part of a multipart upload."""

    def get_object(self, **kwargs: Any) -> dict[str, Any]:
        """Fetch an object; the result holds a readable ``Body``."""

    def head_object(self, **kwargs: Any) -> dict[str, Any]:
        """Fetch an object's metadata."""

    def create_multipart_upload(self, **kwargs: Any) -> dict[str, Any]:
        """Start a multipart upload."""

    def abort_multipart_upload(self, **kwargs: Any) -> dict[str, Any]:
        """Abort a multipart upload and drop its parts."""

    def delete_object(self, **kwargs: Any) -> dict[str, Any]:
        """Delete one object."""

    def delete_objects(self, **kwargs: Any) -> dict[str, Any]:
        """Delete several objects in one request."""

    def complete_multipart_upload(self, **kwargs: Any) -> dict[str, Any]:
        """Assemble the parts of a multipart upload into an object."""

    def upload_part_copy(self, **kwargs: Any) -> dict[str, Any]:
        """Copy an existing object into a part of a multipart upload."""


class S3Error(Exception):
    """An error answered by the S3 service."""

    def __init__(
        self,
        code: str,
        message: str = "",
        status: int | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message
        self.status = status
        self.headers = dict(headers or {})


def _chain(err: BaseException | None):
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__


def _response(err: BaseException) -> Mapping[str, Any] | None:
    response = getattr(err, "response", None)
    return response if isinstance(response, Mapping) else None


def error_code(err: BaseException | None) -> str | None:
    """Return the S3 error code carried by ``err`` or its causes, if any."""
    for item in _chain(err):
        if isinstance(item, S3Error):
            return item.code
        response = _response(item)
        if response is not None:
            code = (response.get("Error") or {}).get("Code")
            if code is not None:
                return str(code)
    return None


def http_status(err: BaseException | None) -> int | None:
    """Return the HTTP status of the S3 response behind ``err``, if known."""
    for item in _chain(err):
        if isinstance(item, S3Error) and item.status is not None:
            return item.status
        response = _response(item)
        if response is not None:
            status = (response.get("ResponseMetadata") or {}).get("HTTPStatusCode")
            if status is not None:
                return int(status)
    return None


def response_headers(err: BaseException | None) -> dict[str, str]:
    """Return the headers of the S3 response behind ``err`` with lower-case names."""
    for item in _chain(err):
        if isinstance(item, S3Error) and item.headers:
            return {name.lower(): value for name, value in item.headers.items()}
        response = _response(item)
        if response is not None:
            headers = (response.get("ResponseMetadata") or {}).get("HTTPHeaders")
            if headers:
                return {str(name).lower(): str(value) for name, value in headers.items()}
    return {}