"""Upload metadata and the errors raised by the store."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from http import HTTPStatus

_JSON_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


@dataclass
class FileInfo:
    """Information about an upload, stored as the JSON ``.info`` object."""

    id: str = ""
    size: int = 0
    size_is_deferred: bool = False
    offset: int = 0
    meta_data: dict[str, str] | None = None
    is_partial: bool = False
    is_final: bool = False
    partial_uploads: list[str] | None = None
    storage: dict[str, str] | None = field(default=None)

    def to_json(self) -> bytes:
        """Encode as compact UTF-8 JSON with sorted map keys and HTML-safe escapes."""
        document = {
            "ID": self.id,
            "Size": self.size,
            "SizeIsDeferred": self.size_is_deferred,
            "Offset": self.offset,
            "MetaData": _sorted_map(self.meta_data),
            "IsPartial": self.is_partial,
            "IsFinal": self.is_final,
            "PartialUploads": None if self.partial_uploads is None else list(self.partial_uploads),
            "Storage": _sorted_map(self.storage),
        }
        text = json.dumps(document, ensure_ascii=False, separators=(",", ":"))
        for char, escaped in _JSON_ESCAPES:
            text = text.replace(char, escaped)
        return text.encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> FileInfo:
        """Decode a JSON document; absent fields keep their defaults."""
        document = json.loads(data)
        if not isinstance(document, dict):
            raise ValueError("file info must be a JSON object")
        meta_data = document.get("MetaData")
        partial_uploads = document.get("PartialUploads")
        storage = document.get("Storage")
        return cls(
            id=document.get("ID") or "",
            size=int(document.get("Size") or 0),
            size_is_deferred=bool(document.get("SizeIsDeferred", False)),
            offset=int(document.get("Offset") or 0),
            meta_data=None if meta_data is None else dict(meta_data),
            is_partial=bool(document.get("IsPartial", False)),
            is_final=bool(document.get("IsFinal", False)),
            partial_uploads=None if partial_uploads is None else list(partial_uploads),
            storage=None if storage is None else dict(storage),
        )


def _sorted_map(mapping: dict[str, str] | None) -> dict[str, str] | None:
    if mapping is None:
        return None
    return dict(sorted(mapping.items()))


class TusError(Exception):
    """An error with a machine-readable code and an HTTP status."""

    def __init__(self, code: str, message: str, status: int) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.status = status


class UploadNotFoundError(TusError):
    """The requested upload does not exist."""

    def __init__(self) -> None:
        super().__init__("ERR_UPLOAD_NOT_FOUND", "upload not found", HTTPStatus.NOT_FOUND)


class IncompleteUploadError(TusError):
    """The upload cannot be read because it has not been finished."""

    def __init__(self) -> None:
        super().__init__(
            "ERR_INCOMPLETE_UPLOAD", "cannot stream non-finished upload", HTTPStatus.BAD_REQUEST
        )


class S3StoreError(Exception):
    """A failure inside the store that is not an S3 service error."""