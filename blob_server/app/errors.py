"""Per-request failures raised by the storage services.

Each one maps to a single HTTP response in ``blob_server.main``.
"""


class BlobServerError(Exception):
    """Base class for upload and retrieval failures."""


class InvalidContentType(BlobServerError):
    """The Content-Type header does not carry a parsable media type."""


class InvalidMultipart(BlobServerError):
    """A multipart/form-data body is structurally broken."""


class MissingFilePart(BlobServerError):
    """A multipart body has no part that carries a file."""


class UploadTooLarge(BlobServerError):
    """The upload exceeds the per-upload ceiling."""

    def __init__(self, limit: int):
        super().__init__(f"upload exceeds {limit} bytes")
        self.limit = limit


class StorageError(BlobServerError):
    """A filesystem operation on the store failed.

    `tag` is the short, non-sensitive name of the failed step and is the only
    detail that reaches the client.
    """

    def __init__(self, tag: str):
        super().__init__(tag)
        self.tag = tag
