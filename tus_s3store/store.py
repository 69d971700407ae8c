"""The tus data store backed by an S3 bucket."""

from __future__ import annotations

import copy
import re
import secrets

from .backend import S3Backend, split_ids
from .model import FileInfo, S3StoreError, UploadNotFoundError
from .upload import S3Upload

# Every character that is not valid in an HTTP header value.
_NON_PRINTABLE = re.compile(r"[^\x09\x20-\x7E]")


def _new_object_id() -> str:
    return secrets.token_hex(16)


class S3Store(S3Backend):
    """Creates and looks up uploads kept in an S3 bucket.

    Every setting of :class:`S3Backend` (prefixes, part sizes, temporary
    directory ...) can be changed on the instance after construction.
    """

    def new_upload(self, info: FileInfo) -> S3Upload:
        """Start a multipart upload and store the upload's info object."""
        if info.size > self.max_object_size:
            raise S3StoreError(
                f"s3store: upload size of {info.size} bytes exceeds "
                f"MaxObjectSize of {self.max_object_size} bytes"
            )

        info = copy.deepcopy(info)
        object_id = info.id or _new_object_id()
        meta_data = info.meta_data or {}

        # S3 metadata must be header-safe; the info object keeps the originals.
        request = {
            "Bucket": self.bucket,
            "Key": self.key_with_prefix(object_id),
            "Metadata": {key: _NON_PRINTABLE.sub("?", value) for key, value in meta_data.items()},
        }
        file_type = meta_data.get("filetype")
        if file_type is not None:
            request["ContentType"] = file_type

        try:
            result = self.service.create_multipart_upload(**request)
        except Exception as exc:
            raise S3StoreError(f"s3store: unable to create multipart upload:\n{exc}") from exc

        multipart_id = result["UploadId"]
        info.id = f"{object_id}+{multipart_id}"
        info.storage = {
            "Type": "s3store",
            "Bucket": self.bucket,
            "Key": self.key_with_prefix(object_id),
        }

        upload = S3Upload(self, object_id, multipart_id)
        try:
            upload._write_info(info)
        except Exception as exc:
            raise S3StoreError(f"s3store: unable to create info file:\n{exc}") from exc
        return upload

    def get_upload(self, id: str) -> S3Upload:
        """Return the upload with the given ID; nothing is fetched from S3 yet."""
        object_id, multipart_id = split_ids(id)
        if not object_id or not multipart_id:
            raise UploadNotFoundError()
        return S3Upload(self, object_id, multipart_id)