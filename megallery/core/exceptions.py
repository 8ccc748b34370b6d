"""Custom exceptions for the application."""


class MegalleryException(Exception):
    """Base exception for all gallery-related errors."""

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundException(MegalleryException):
    """Raised when a resource is not found."""

    def __init__(self, resource: str, identifier: str):
        message = f"{resource} with identifier '{identifier}' not found"
        super().__init__(message, status_code=404)


class ValidationException(MegalleryException):
    """Raised when request validation fails."""

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


# Image processing


class UnsupportedFormat(MegalleryException):
    """Raised when image bytes are not in a recognized encoding."""

    def __init__(self, message: str = "unsupported image format"):
        super().__init__(message, status_code=415)


class CorruptImage(MegalleryException):
    """Raised when a recognized encoding fails to decode."""

    def __init__(self, message: str = "image data is corrupt"):
        super().__init__(message, status_code=422)


class InvalidDimensions(MegalleryException):
    """Raised when a derivative is requested at unusable dimensions."""

    def __init__(self, width: int, height: int, reason: str = "must be positive"):
        self.width = width
        self.height = height
        super().__init__(f"invalid dimensions {width}x{height}: {reason}", status_code=400)


# Embedding / collections


class InsufficientData(MegalleryException):
    """Raised when fewer than two images can take part in an embedding."""

    def __init__(self, available: int):
        self.available = available
        super().__init__(
            f"embedding needs at least 2 images with features, got {available}",
            status_code=409
        )


class AlreadyFinalized(MegalleryException):
    """Raised when a finalized collection needs a recompute the caller did not force."""

    def __init__(self, collection_id: str):
        super().__init__(
            f"collection '{collection_id}' is finalized with a stale embedding; "
            "pass force_recompute to compute a new generation",
            status_code=409
        )


class Cancelled(MegalleryException):
    """Raised when a cooperative cancellation stopped a computation."""

    def __init__(self, message: str = "computation cancelled"):
        super().__init__(message, status_code=409)


# Infrastructure


class CapacityExceeded(MegalleryException):
    """Raised when the cache cannot make room for an entry."""

    def __init__(self, requested: int, capacity: int):
        self.requested = requested
        self.capacity = capacity
        super().__init__(
            f"Cache error: {requested} bytes do not fit in {capacity} byte budget",
            status_code=507
        )


class PayloadTooLarge(MegalleryException):
    """Raised when a response would exceed its byte limit."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"response of {size} bytes exceeds the {limit} byte limit", status_code=413)


class StorageException(MegalleryException):
    """Raised when file storage operations fail."""

    def __init__(self, message: str):
        super().__init__(f"Storage error: {message}", status_code=500)


class CacheException(MegalleryException):
    """Raised when cache operations fail."""

    def __init__(self, message: str):
        super().__init__(f"Cache error: {message}", status_code=500)


class DatabaseException(MegalleryException):
    """Raised when database operations fail."""

    def __init__(self, message: str):
        super().__init__(f"Database error: {message}", status_code=500)
