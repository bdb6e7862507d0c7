"""
Custom exception hierarchy for the photo indexer.

Per-entry I/O problems are not exceptions here: they are logged and
recorded in the scan/watch reports. These types cover the failures that
must reach a caller.
"""


class PhotoIndexerError(Exception):
    """Base exception for all photo indexer errors."""
    pass


class CatalogError(PhotoIndexerError):
    """Raised when a catalog read or write fails."""
    pass


class ThumbnailError(PhotoIndexerError):
    """Raised inside the preview pipeline when a decode path fails."""
    pass


class SubscriptionError(PhotoIndexerError):
    """Raised when a filesystem watch cannot be (re)established."""
    pass


class FileOperationError(PhotoIndexerError):
    """Raised when a file cannot be trashed."""
    pass
