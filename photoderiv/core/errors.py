"""
Exceptions raised by the derivative pipeline.

Decode and format failures end an upload. Transform and persistence
failures only cost the derivative they happened on and are collected into
the pipeline result.
"""


class PhotoError(Exception):
    """Base exception for the derivative pipeline"""
    pass


class DecodeFailure(PhotoError):
    """Raised when no backend can decode the source bytes"""
    pass


class UnsupportedFormat(PhotoError):
    """Raised when the image type is outside the supported formats"""

    def __init__(self, mime_type: str):
        super().__init__(f"Unsupported image type: {mime_type}")
        self.mime_type = mime_type


class TransformFailure(PhotoError):
    """Raised when a resize, rotate, crop or encode call fails on a handle"""
    pass


class PersistenceFailure(PhotoError):
    """Raised when the store rejects one or more derivative writes"""

    def __init__(self, message: str, scales=()):
        super().__init__(message)
        self.scales = tuple(scales)


class UploadTooLarge(PhotoError):
    """Raised when the upload exceeds the configured byte limit"""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Image exceeds size limit of {limit} bytes ({size} bytes)")
        self.size = size
        self.limit = limit
