"""watermarking_method.py

Abstract base class, error taxonomy and I/O helpers shared by every
document watermarking method.

This module defines the contract each per-format method implements and
a handful of helpers concrete implementations can import. The contract
is small on purpose: a method knows how to splice an envelope into the
bytes of one host format and how to find it again. File handling
(reading the input, writing the output atomically) is done once, here.

Required interface
------------------
Concrete implementations must subclass :class:`WatermarkingMethod`,
set :attr:`~WatermarkingMethod.name`, :attr:`~WatermarkingMethod.extension`
and :attr:`~WatermarkingMethod.profile`, and implement:

``embed(data, text) -> bytes``
    Return a new host document (as ``bytes``) carrying a freshly sealed
    envelope for ``text``.

``read_secret(data) -> ExtractedWatermark``
    Locate and open the envelope. Raise :class:`WatermarkNotFoundError`
    when nothing recognizable is present.

``is_watermark_applicable(data) -> bool``
    Cheap signature check, never raises.

The path based entry points :meth:`WatermarkingMethod.add_watermark`
and :meth:`WatermarkingMethod.extract_watermark` are implemented here in
terms of the two abstract methods above.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, TypeAlias, Union
import contextlib
import logging
import os
import tempfile

from watermark_envelope import (
    Envelope,
    EnvelopeCodec,
    EnvelopeProfile,
    ExtractedWatermark,
    decode_base64_lenient,
)
from watermarking_errors import (
    AnchorNotFoundError,
    ChecksumMismatchError,
    DecryptionError,
    EncryptionError,
    InputNotFoundError,
    InvalidFormatSignatureError,
    RepackError,
    UnsupportedFormatError,
    WatermarkingError,
    WatermarkNotFoundError,
    WatermarkTimeoutError,
)

logger = logging.getLogger(__name__)

# ----------------------------
# Public type aliases & errors
# ----------------------------

PathSource: TypeAlias = Union[str, os.PathLike[str]]
"""Accepted type for input and output document locations.

Errors live in :mod:`watermarking_errors` (the envelope codec raises them
too) and are re-exported from here.
"""


# ----------------------------
# Helper functions
# ----------------------------

def load_document_bytes(src: PathSource) -> bytes:
    """Read the full contents of ``src``.

    Raises
    ------
    InputNotFoundError
        If ``src`` does not exist or is not a regular file.
    """
    path = Path(os.fspath(src))
    if not path.is_file():
        raise InputNotFoundError(f"Input document not found: {path}")
    with open(path, "rb") as fh:
        return fh.read()


def write_atomic(dest: PathSource, data: bytes) -> None:
    """Atomically write ``data`` to ``dest``.

    The bytes go to a temporary file in the destination directory which
    is fsynced and then renamed over ``dest``. On failure the temporary
    file is removed and ``dest`` is left untouched.
    """
    path = Path(os.fspath(dest))
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
    )
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise
    logger.debug("Wrote %d bytes -> %s", len(data), path)


def extension_of(name: str | os.PathLike[str]) -> str:
    """Return the lowercase extension of ``name`` without the leading dot.

    Bare extensions are accepted as well: ``"DOCX"``, ``".docx"`` and
    ``"report.docx"`` all yield ``"docx"``.
    """
    text = os.fspath(name)
    suffix = Path(text).suffix
    if not suffix:
        suffix = text
    return suffix.lstrip(".").lower()


def parse_delimited_payload(payload: str, location: str = "") -> Envelope | ExtractedWatermark:
    """Parse the text between a pair of begin/end markers.

    Three ``|``-separated fields are an envelope. Two fields are the
    clear ``base64(text)|timestamp`` record written by earlier releases;
    it is returned directly, unverified.

    Raises
    ------
    DecryptionError
        If the payload matches neither shape.
    """
    fields = payload.strip().split("|")
    if len(fields) == 2 and all(fields):
        raw = decode_base64_lenient(fields[0])
        logger.warning("Legacy plaintext watermark at %s", location or "marker")
        return ExtractedWatermark(
            text=raw.decode("utf-8", errors="replace"),
            timestamp=fields[1],
            verified=False,
            location=location,
        )
    return Envelope.from_delimited(payload)


@dataclass(frozen=True)
class AnchorMiss:
    """One location that did not yield a usable watermark."""

    location: str
    reason: str


class EnvelopeSearch:
    """Outcome bookkeeping for an ordered walk over candidate locations.

    Each candidate either misses (:meth:`miss`), yields an envelope that
    is opened through the codec (:meth:`open`), or yields a ready result
    (:meth:`accept`, used for legacy plaintext). A verified result ends
    the walk; an unverified one is kept as a fallback while the rest of
    the candidates are tried. :meth:`conclude` turns the collected
    outcomes into a result or the appropriate error.
    """

    def __init__(self, method_name: str) -> None:
        self.method_name = method_name
        self.misses: list[AnchorMiss] = []
        self.fallback: ExtractedWatermark | None = None
        self.result: ExtractedWatermark | None = None
        self.error: WatermarkingError | None = None

    @property
    def done(self) -> bool:
        return self.result is not None

    @property
    def found_any(self) -> bool:
        """True once any structurally valid envelope has been seen."""
        return self.done or self.fallback is not None or self.error is not None

    def miss(self, location: str, reason: str) -> None:
        logger.debug("%s: %s: %s", self.method_name, location, reason)
        self.misses.append(AnchorMiss(location, reason))

    def accept(self, found: ExtractedWatermark) -> bool:
        if found.verified:
            self.result = found
            return True
        if self.fallback is None:
            self.fallback = found
        return False

    def open(self, codec: EnvelopeCodec, envelope: Envelope, location: str) -> bool:
        try:
            found = codec.open(envelope, location=location)
        except (DecryptionError, ChecksumMismatchError) as exc:
            logger.warning("%s: envelope at %s rejected: %s", self.method_name, location, exc)
            self.misses.append(AnchorMiss(location, str(exc)))
            self.error = exc
            return False
        return self.accept(found)

    def consider(
        self,
        codec: EnvelopeCodec,
        found: Envelope | ExtractedWatermark | None,
        location: str,
    ) -> bool:
        """Record whatever a candidate location yielded; ``True`` ends the walk."""
        if found is None:
            self.miss(location, "no envelope")
            return False
        if isinstance(found, ExtractedWatermark):
            return self.accept(found)
        return self.open(codec, found, location)

    def reject(self, location: str, exc: WatermarkingError) -> None:
        """Record an envelope-shaped value that could not be parsed."""
        self.miss(location, f"malformed envelope: {exc}")
        self.error = exc

    def conclude(self) -> ExtractedWatermark:
        if self.result is not None:
            return self.result
        if self.fallback is not None:
            logger.warning(
                "%s: returning unverified watermark from %s",
                self.method_name,
                self.fallback.location,
            )
            return self.fallback
        if self.error is not None:
            raise self.error
        tried = [m.location for m in self.misses]
        raise WatermarkNotFoundError(
            f"No {self.method_name} watermark found (tried: {', '.join(tried) or 'nothing'})",
            tried=tried,
        )


# ---------------------------------
# Abstract base class (the contract)
# ---------------------------------

class WatermarkingMethod(ABC):
    """Abstract base class for per-format watermarking strategies.

    Instances are stateless: one instance is built at startup, registered
    and reused for every call, possibly from several threads at once.
    """

    #: Human-friendly unique identifier for the method.
    name: ClassVar[str] = "abstract"

    #: Lowercase file extension (no dot) handled by this method.
    extension: ClassVar[str] = ""

    #: Additional extensions routed to this method.
    aliases: ClassVar[tuple[str, ...]] = ()

    #: Envelope settings (cipher, key policy, mismatch policy, ...).
    profile: ClassVar[EnvelopeProfile] = EnvelopeProfile()

    def __init__(self, shared_secret: bytes | None = None) -> None:
        self.codec = EnvelopeCodec(self.profile, shared_secret=shared_secret)

    @staticmethod
    @abstractmethod
    def get_usage() -> str:
        """Return a short description of where the watermark is stored."""
        raise NotImplementedError

    def supported_extension(self) -> str:
        return self.extension

    # -- path based API ------------------------------------------------

    def add_watermark(
        self,
        input_path: PathSource,
        output_path: PathSource,
        text: str,
    ) -> None:
        """Watermark ``input_path`` with ``text`` and write ``output_path``.

        The output only appears once it has been written completely.

        Raises
        ------
        InputNotFoundError
            If the input document does not exist.
        ValueError
            If ``text`` is empty or too long.
        WatermarkingError
            On any failure to embed the watermark.
        """
        data = load_document_bytes(input_path)
        out = self.embed(data, text)
        write_atomic(output_path, out)
        logger.debug(
            "%s: embedded watermark %s -> %s", self.name, input_path, output_path
        )

    def extract_watermark(self, input_path: PathSource) -> ExtractedWatermark:
        """Recover the watermark stored in ``input_path``.

        Raises
        ------
        InputNotFoundError
            If the input document does not exist.
        WatermarkNotFoundError
            If no recognizable watermark is present.
        DecryptionError, ChecksumMismatchError
            If an envelope was found but failed integrity checks.
        """
        data = load_document_bytes(input_path)
        return self.read_secret(data)

    # -- in-memory core ------------------------------------------------

    @abstractmethod
    def is_watermark_applicable(self, data: bytes) -> bool:
        """Return whether ``data`` looks like a host this method handles."""
        raise NotImplementedError

    @abstractmethod
    def embed(self, data: bytes, text: str) -> bytes:
        """Return ``data`` with a freshly sealed envelope for ``text``."""
        raise NotImplementedError

    @abstractmethod
    def read_secret(self, data: bytes) -> ExtractedWatermark:
        """Extract and return the watermark embedded in ``data``."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} .{self.extension}>"


__all__ = [
    "PathSource",
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
    "ExtractedWatermark",
    "AnchorMiss",
    "EnvelopeSearch",
    "parse_delimited_payload",
    "load_document_bytes",
    "write_atomic",
    "extension_of",
    "WatermarkingMethod",
]
