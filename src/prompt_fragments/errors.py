"""Error taxonomy raised by the fragment store and generation log."""

from __future__ import annotations


class FragmentStoreError(Exception):
    """Base class for every error the core raises."""


class NotFoundError(FragmentStoreError, LookupError):
    """An id is absent from the collection it was looked up in."""

    def __init__(self, collection: str, item_id: str):
        self.collection = collection
        self.item_id = item_id
        super().__init__(f"{item_id!r} not found in collection {collection!r}")


class InvalidArgumentError(FragmentStoreError, ValueError):
    """Input rejected before any I/O happened."""


class StorageFailureError(FragmentStoreError):
    """A document could not be read, parsed, locked, or written."""

    def __init__(self, message: str, path: object = None):
        self.path = path
        super().__init__(message if path is None else f"{message}: {path}")
