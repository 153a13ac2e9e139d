"""Domain exceptions raised by the image pipeline."""
from typing import Any, Dict, Optional


class ImageServiceError(Exception):
    """
    Base exception for all image pipeline errors.

    Subclasses fix the error code, the HTTP status the API maps them to,
    and whether a caller may simply retry the same request.
    """

    error_code: str = "image_service_error"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class UnsupportedFormatError(ImageServiceError):
    """Declared content type is not an image, or the bytes cannot be decoded."""

    error_code = "unsupported_format"
    status_code = 415


class UploadTooLargeError(ImageServiceError):
    """Raw upload exceeds MAX_UPLOAD_BYTES."""

    error_code = "upload_too_large"
    status_code = 413


class StorageIOError(ImageServiceError):
    """Write or delete on the file store failed."""

    error_code = "storage_io_failure"
    status_code = 502


class MetadataConflictError(ImageServiceError):
    """A concurrent writer broke the order or main-image invariant."""

    error_code = "metadata_conflict"
    status_code = 409
    retryable = True


class ConvergenceTimeoutError(ImageServiceError):
    """Size budget convergence exceeded CONVERGE_TIMEOUT_SECONDS."""

    error_code = "convergence_timeout"
    status_code = 503
    retryable = True


class BatchAbortedError(ImageServiceError):
    """
    A create batch stopped part-way through.

    details["rolled_back"] lists the urls written earlier in the batch and
    removed again; details["orphaned"] those whose removal failed too;
    details["aborted"] lists the filenames never processed.
    """

    error_code = "batch_aborted"
    status_code = 502


class MetadataWriteError(ImageServiceError):
    """The metadata transaction failed for a reason other than a conflict."""

    error_code = "metadata_write_failure"
    status_code = 500
