"""watermarking_errors.py

Exception taxonomy shared by the envelope codec and every watermarking
method. Re-exported from :mod:`watermarking_method`.
"""
from __future__ import annotations

from typing import Iterable


class WatermarkingError(Exception):
    """Base class for all watermarking-related errors.

    ``location`` names the anchor, segment or archive member that was
    being processed when the failure was detected, if any.
    """

    def __init__(self, message: str, *, location: str | None = None) -> None:
        super().__init__(message)
        self.location = location


class InputNotFoundError(WatermarkingError, FileNotFoundError):
    """Raised when the input document does not exist."""


class InvalidFormatSignatureError(WatermarkingError, ValueError):
    """Raised when the host bytes do not carry the expected magic/structure."""


class AnchorNotFoundError(WatermarkingError):
    """Raised when no insertion point exists and no fallback applies."""


class EncryptionError(WatermarkingError):
    """Raised when the envelope cannot be sealed."""


class DecryptionError(WatermarkingError):
    """Raised when an envelope cannot be decoded or authenticated."""


class ChecksumMismatchError(WatermarkingError):
    """Raised when the decrypted text does not match the stored checksum."""


class WatermarkNotFoundError(WatermarkingError):
    """Raised when extraction finds no envelope in any known location."""

    def __init__(self, message: str, *, tried: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.tried = tuple(tried)


class RepackError(WatermarkingError):
    """Raised when re-encoding an image or repacking an archive fails."""


class UnsupportedFormatError(WatermarkingError, KeyError):
    """Raised when no method is registered for a file extension."""

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0]) if self.args else ""


class WatermarkTimeoutError(WatermarkingError):
    """Raised when an operation exceeds its wall-clock budget."""


__all__ = [
    "WatermarkingError",
    "InputNotFoundError",
    "InvalidFormatSignatureError",
    "AnchorNotFoundError",
    "EncryptionError",
    "DecryptionError",
    "ChecksumMismatchError",
    "WatermarkNotFoundError",
    "RepackError",
    "UnsupportedFormatError",
    "WatermarkTimeoutError",
]
