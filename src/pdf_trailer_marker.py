"""pdf_trailer_marker.py

PDF watermarking with a comment line placed just before the trailer.

A ``%`` line is a comment to every PDF parser, so the document renders
unchanged. Inserting in front of the last ``trailer`` keyword leaves the
cross-reference offsets of all earlier objects intact; files without a
classic trailer (cross-reference streams) get the line appended at the
end instead.

Format (ASCII):

.. code-block:: text

    ...
    %WATERMARK_BEGIN:<ciphertext>|<rfc3339>|<md5>:WATERMARK_END%
    trailer
    ...

Adding again inserts another line; the last one in the file is the
newest and wins on extraction.
"""
from __future__ import annotations

from typing import Final
import logging
import re

from watermarking_method import (
    DecryptionError,
    EnvelopeSearch,
    ExtractedWatermark,
    InvalidFormatSignatureError,
    WatermarkingMethod,
    parse_delimited_payload,
)

logger = logging.getLogger(__name__)


class PdfTrailerMarker(WatermarkingMethod):
    """Envelope in a PDF comment line before the last ``trailer``."""

    name = "pdf-trailer-marker"
    extension = "pdf"

    # Constants
    _SIGNATURE: Final[bytes] = b"%PDF-"
    _TRAILER: Final[bytes] = b"trailer"
    _BEGIN: Final[bytes] = b"%WATERMARK_BEGIN:"
    _END: Final[bytes] = b":WATERMARK_END%"
    _BLOCK_RE: Final[re.Pattern[bytes]] = re.compile(
        rb"%WATERMARK_BEGIN:([^\r\n]*?):WATERMARK_END%"
    )

    # ---------------------
    # Public API overrides
    # ---------------------

    @staticmethod
    def get_usage() -> str:
        return "Inserts the envelope as a comment line before the last PDF trailer."

    def is_watermark_applicable(self, data: bytes) -> bool:
        return data.startswith(self._SIGNATURE)

    def embed(self, data: bytes, text: str) -> bytes:
        if not self.is_watermark_applicable(data):
            raise InvalidFormatSignatureError("Not a PDF file (missing %PDF- header)")
        envelope = self.codec.seal(text)
        block = b"\n" + self._BEGIN + envelope.to_delimited().encode("ascii") + self._END + b"\n"

        idx = data.rfind(self._TRAILER)
        if idx == -1:
            logger.debug("%s: no trailer keyword, appending at end", self.name)
            return data + block
        return data[:idx] + block + data[idx:]

    def read_secret(self, data: bytes) -> ExtractedWatermark:
        if not self.is_watermark_applicable(data):
            raise InvalidFormatSignatureError("Not a PDF file (missing %PDF- header)")
        search = EnvelopeSearch(self.name)
        blocks = list(self._BLOCK_RE.finditer(data))
        if not blocks:
            search.miss("comment", "no watermark comment line")
        for m in reversed(blocks):
            location = f"comment@{m.start()}"
            try:
                found = parse_delimited_payload(m.group(1).decode("ascii"), location)
            except UnicodeDecodeError as exc:
                search.reject(location, DecryptionError(f"Non-ASCII payload: {exc}", location=location))
                continue
            except DecryptionError as exc:
                search.reject(location, exc)
                continue
            if search.consider(self.codec, found, location):
                break
        return search.conclude()


__all__ = ["PdfTrailerMarker"]
