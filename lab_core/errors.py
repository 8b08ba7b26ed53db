# lab_core/errors.py
from __future__ import annotations


class RoomStoreError(Exception):
    """Base class for everything the room store raises on purpose."""


class InvalidArgumentError(RoomStoreError, ValueError):
    """Caller input was rejected before anything was touched on disk."""


class InvalidStatusError(InvalidArgumentError):
    def __init__(self, status):
        self.status = status
        super().__init__(f"Invalid status: {status!r}")


class StorageUnavailableError(RoomStoreError):
    """The room directory, lock or document could not be opened or written."""
