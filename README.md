# tus_s3store

A storage backend for tus resumable uploads. It keeps upload data in an
S3 bucket, or in any service that speaks the S3 API.

It has no dependencies outside the standard library. You supply the S3
client yourself.

## How uploads are stored

- **Info object.** Each upload has a `<id>.info` object. It holds the JSON form of
  its `FileInfo`: the size, the metadata, the concatenation flags and the storage
  location.
- **Multipart upload.** The data goes into an S3 multipart upload. Chunks from the
  client are cut into parts, and parts are sent to S3 while later parts are still
  being buffered.
- **Incomplete part.** A piece smaller than the minimum part size is kept in a
  `<id>.part` object. It is put in front of the next chunk. The last piece of an
  upload is the exception: it is always sent as a real part.
- **Finishing.** `S3Upload.finish_upload` completes the multipart upload. The final
  object then exists under the upload's key. An upload without parts gets one
  empty part first, because S3 needs at least one.
- **Terminating.** `S3Upload.terminate` aborts the multipart upload. It also deletes
  the final object, the `.part` object and the `.info` object.

Metadata sent to S3 may only hold printable ASCII and tabs. Any other character
becomes `?`. The info object keeps the metadata unchanged. A `filetype` metadata
entry becomes the object's content type.

An upload's ID has the form `<object id>+<multipart id>`. `split_ids` in
`tus_s3store.backend` splits it at the last `+`, so object IDs may hold plus signs.

## The S3 client

The store calls the methods of `tus_s3store.s3api.S3API` with keyword arguments
that use the S3 names (`Bucket`, `Key`, `UploadId`, `PartNumber` and so on).
Results are dictionaries with the S3 names as well. A boto3 S3 client has this
shape. The methods are:

- `put_object`
- `list_parts`
- `upload_part`
- `get_object`
- `head_object`
- `create_multipart_upload`
- `abort_multipart_upload`
- `delete_object`
- `delete_objects`
- `complete_multipart_upload`
- `upload_part_copy`

The client reports failures by raising exceptions. The store reads the S3 error
code from an exception in one of two ways:

- from a `tus_s3store.s3api.S3Error`, or
- from an exception with a boto-style `response` dictionary.

It also looks through the exception's `__cause__` chain. The functions
`error_code`, `http_status` and `response_headers` in `tus_s3store.s3api` do
this lookup.

## Usage

```python
from tus_s3store.model import FileInfo
from tus_s3store.store import S3Store

store = S3Store("my-bucket", service)
store.object_prefix = "uploads"

upload = store.new_upload(FileInfo(size=11, meta_data={"filetype": "text/plain"}))
with open("hello.txt", "rb") as src:
    written = upload.write_chunk(0, src)
upload.finish_upload()

again = store.get_upload(upload.get_info().id)
print(again.get_info().offset)
```

`S3Store.get_upload` fetches nothing from S3. The upload's info, its parts and
its incomplete part are read on first use.

`S3Upload` has these methods besides the ones above:

- `declare_length(length)` sets the size of an upload whose size was deferred.
- `get_reader()` returns the readable body of a finished upload.
- `concat_uploads(partial_uploads)` builds the upload from finished partial
  uploads, in order. When every partial upload is at least `min_part_size`, their
  objects are copied into the multipart upload as parts. Otherwise they are
  downloaded into a temporary file, which is stored as the final object.

## Tuning

`S3Store` has these settings, which can be changed on the instance:

| Setting | Default |
| --- | --- |
| `object_prefix` | none |
| `metadata_object_prefix` | `object_prefix` |
| `min_part_size` | 5 MiB |
| `preferred_part_size` | 50 MiB |
| `max_part_size` | 5 GiB |
| `max_multipart_parts` | 10000 |
| `max_object_size` | 5 TiB |
| `max_buffered_parts` | 20 |
| `temporary_directory` | the system default |
| `disable_content_hashes` | `False` |

`set_concurrent_part_uploads(limit)` sets how many parts are sent to S3 at once.
The default is 10. The current counts can be read from `semaphore_limit` and
`semaphore_demand`.

`calc_optimal_part_size(size)` picks the part size for an upload of `size` bytes:

- it uses `preferred_part_size` when the upload fits into `max_multipart_parts`
  parts of that size;
- otherwise it uses the smallest size that still fits the upload into that many
  parts.

It raises `S3StoreError` if that size would exceed `max_part_size`.

When `disable_content_hashes` is set, each part goes to a presigned URL. The
client's `generate_presigned_url` method makes the URL, and the part is sent
with `urllib`, so the client does not hash the part's content.

Setting the environment variable `TUSD_S3STORE_TEMP_MEMORY=1` buffers parts in
memory instead of in temporary files. `tus_s3store.part_producer.PartProducer`
does this splitting and can be used on its own.

## Errors

All of these are in `tus_s3store.model`:

- `UploadNotFoundError` means the upload does not exist.
- `IncompleteUploadError` means the upload cannot be read yet because it is not
  finished.
- `S3StoreError` means the store itself failed. An example is an upload that
  exceeds `max_object_size`.

`UploadNotFoundError` and `IncompleteUploadError` are `TusError`s. A `TusError`
carries a `code`, a `message` and an HTTP `status`.

Errors from the S3 client that the store does not handle are raised as they are.

## What this package does not do

This package is a storage backend only:

- it has no HTTP server;
- it has no tus protocol handler;
- it has no command-line program.

It also has no helper for answering a client's download request. That means no
range requests and no conditional requests against the finished object. To send
a finished upload to a client, read it with `S3Upload.get_reader` and serve it
yourself.