from __future__ import annotations

from enum import Enum


class GoneReason(str, Enum):
    DELETED = "deleted"
    EXPIRED = "expired"
    LIMIT_REACHED = "limit_reached"


class LinkdropError(Exception):
    """Base class for every error the file lifecycle core raises."""


class NotFoundError(LinkdropError):
    """The token is unknown to the registry."""

    def __init__(self, token: str | None = None) -> None:
        super().__init__("File not found")
        self.token = token


class GoneError(LinkdropError):
    """The record exists but can no longer be downloaded."""

    _MESSAGES = {
        GoneReason.DELETED: "File has been deleted",
        GoneReason.EXPIRED: "File has expired",
        GoneReason.LIMIT_REACHED: "Download limit reached",
    }

    def __init__(self, reason: GoneReason, token: str | None = None) -> None:
        super().__init__(self._MESSAGES[reason])
        self.reason = reason
        self.token = token


class ConflictError(LinkdropError):
    """A token or storage key is already taken."""


class StorageIOError(LinkdropError):
    """The storage backend failed to read, write or delete a blob."""


class BlobNotFoundError(StorageIOError):
    """The storage key does not resolve to an existing object."""


class InvalidKeyError(LinkdropError):
    """A storage key resolves outside the adapter root or is malformed."""
