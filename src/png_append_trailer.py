"""png_append_trailer.py

PNG watermarking by appending a marked envelope after ``IEND``.

Decoders stop at ``IEND`` and ignore what follows, so the image renders
unchanged. The host is re-encoded with Pillow first, which normalizes
the chunk layout and discards any trailer left by an earlier add.
"""
from __future__ import annotations

from typing import Final
import io
import logging
import re

from PIL import Image

from watermarking_method import (
    DecryptionError,
    EnvelopeSearch,
    ExtractedWatermark,
    InvalidFormatSignatureError,
    RepackError,
    WatermarkingMethod,
    parse_delimited_payload,
)

logger = logging.getLogger(__name__)

PNG_SIGNATURE: Final[bytes] = b"\x89PNG\r\n\x1a\n"


class PngAppendTrailer(WatermarkingMethod):
    """Envelope appended after ``IEND`` inside an HTML-style comment."""

    name = "png-append-trailer"
    extension = "png"

    _BEGIN: Final[bytes] = b"\n<!--WATERMARK_BEGIN:"
    _END: Final[bytes] = b":WATERMARK_END-->\n"
    _BLOCK_RE: Final[re.Pattern[bytes]] = re.compile(
        rb"<!--WATERMARK_BEGIN:(.*?):WATERMARK_END-->", re.DOTALL
    )

    @staticmethod
    def get_usage() -> str:
        return "Re-encodes the image and appends the envelope after the IEND chunk."

    def is_watermark_applicable(self, data: bytes) -> bool:
        return data.startswith(PNG_SIGNATURE)

    def _reencode(self, data: bytes) -> bytes:
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                out = io.BytesIO()
                img.save(out, format="PNG")
        except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
            raise RepackError(f"PNG re-encoding failed: {exc}") from exc
        return out.getvalue()

    def embed(self, data: bytes, text: str) -> bytes:
        if not self.is_watermark_applicable(data):
            raise InvalidFormatSignatureError("Not a PNG file (bad signature)")
        envelope = self.codec.seal(text)
        encoded = self._reencode(data)
        return encoded + self._BEGIN + envelope.to_delimited().encode("ascii") + self._END

    def read_secret(self, data: bytes) -> ExtractedWatermark:
        if not self.is_watermark_applicable(data):
            raise InvalidFormatSignatureError("Not a PNG file (bad signature)")
        search = EnvelopeSearch(self.name)
        blocks = list(self._BLOCK_RE.finditer(data))
        if not blocks:
            search.miss("trailer", "no marker after IEND")
        # the last block is the newest
        for m in reversed(blocks):
            location = f"trailer@{m.start()}"
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


__all__ = ["PngAppendTrailer", "PNG_SIGNATURE"]
