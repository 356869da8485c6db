"""jpeg_comment_segment.py

JPEG watermarking through a comment (``COM``) segment.

The image is decoded and re-encoded with Pillow, which drops any
comment it carried, and a single ``COM`` segment holding the envelope is
spliced in right after the start-of-image marker:

.. code-block:: text

    FF D8                     SOI
    FF FE <len:u16be>         COM, len = payload + 2
    WATERMARK:<base64(JSON)>  payload
    ...                       re-encoded image

Reading walks the segment headers up to start-of-scan without decoding
any pixels. Every length is bounds-checked before it is used and a
malformed header ends the walk.
"""
from __future__ import annotations

from typing import Final, Iterator, NamedTuple
import io
import logging
import struct

from PIL import Image

import watermarking_config
from watermark_envelope import Envelope, EnvelopeProfile, TimestampStyle
from watermarking_method import (
    DecryptionError,
    EncryptionError,
    EnvelopeSearch,
    ExtractedWatermark,
    InvalidFormatSignatureError,
    RepackError,
    WatermarkingMethod,
)

logger = logging.getLogger(__name__)

SOI: Final[bytes] = b"\xff\xd8"
COM: Final[int] = 0xFE
SOS: Final[int] = 0xDA
EOI: Final[int] = 0xD9
MAX_SEGMENT_PAYLOAD: Final[int] = 0xFFFF - 2

# markers that carry no length field
_STANDALONE: Final[frozenset[int]] = frozenset({0x01, 0xD8, *range(0xD0, 0xD8)})

# JPEG can't store these modes directly
_JPEG_MODES: Final[frozenset[str]] = frozenset({"RGB", "L", "CMYK"})


class Segment(NamedTuple):
    marker: int
    offset: int  # of the FF byte
    payload: bytes


def iter_segments(data: bytes) -> Iterator[Segment]:
    """Yield the header segments of a JPEG stream, stopping at SOS/EOI.

    Fill bytes (repeated ``FF``) are skipped and standalone markers
    yield nothing. A truncated or impossible length ends the iteration.
    """
    pos = len(SOI)
    end = len(data)
    while pos < end:
        if data[pos] != 0xFF:
            logger.debug("Expected marker at offset %d, found 0x%02x", pos, data[pos])
            return
        start = pos
        while pos < end and data[pos] == 0xFF:
            pos += 1
        if pos >= end:
            return
        marker = data[pos]
        pos += 1
        if marker in _STANDALONE:
            continue
        if marker in (SOS, EOI) or marker == 0x00:
            return
        if pos + 2 > end:
            logger.debug("Truncated length field at offset %d", pos)
            return
        (length,) = struct.unpack(">H", data[pos:pos + 2])
        if length < 2 or pos + length > end:
            logger.debug("Bad segment length %d at offset %d", length, pos)
            return
        yield Segment(marker, start, data[pos + 2:pos + length])
        pos += length


def build_comment_segment(payload: bytes) -> bytes:
    if len(payload) > MAX_SEGMENT_PAYLOAD:
        raise EncryptionError(
            f"Watermark payload of {len(payload)} bytes does not fit a COM segment"
        )
    return b"\xff\xfe" + struct.pack(">H", len(payload) + 2) + payload


class JpegCommentSegment(WatermarkingMethod):
    """Envelope (JSON form) in a ``COM`` segment right after SOI."""

    name = "jpeg-comment-segment"
    extension = "jpg"
    aliases = ("jpeg",)
    profile = EnvelopeProfile(
        salted_checksum=False, timestamp_style=TimestampStyle.UNIX
    )

    TAG: Final[bytes] = b"WATERMARK:"

    @staticmethod
    def get_usage() -> str:
        return "Re-encodes the image and stores the envelope in a JPEG COM segment after SOI."

    def is_watermark_applicable(self, data: bytes) -> bool:
        return data.startswith(SOI)

    def _reencode(self, data: bytes) -> bytes:
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                icc_profile = img.info.get("icc_profile")
                exif = img.info.get("exif")
                if img.mode not in _JPEG_MODES:
                    img = img.convert("RGB")
                img.info.pop("comment", None)
                out = io.BytesIO()
                save_kwargs = {"quality": watermarking_config.JPEG_QUALITY}
                if icc_profile:
                    save_kwargs["icc_profile"] = icc_profile
                if exif:
                    save_kwargs["exif"] = exif
                img.save(out, format="JPEG", **save_kwargs)
        except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
            raise RepackError(f"JPEG re-encoding failed: {exc}") from exc
        return out.getvalue()

    def embed(self, data: bytes, text: str) -> bytes:
        if not self.is_watermark_applicable(data):
            raise InvalidFormatSignatureError("Not a JPEG file (missing SOI marker)")
        envelope = self.codec.seal(text)
        segment = build_comment_segment(self.TAG + envelope.to_json_b64().encode("ascii"))
        encoded = self._reencode(data)
        if not encoded.startswith(SOI):
            raise RepackError("Re-encoded image does not start with SOI")
        logger.debug("COM segment of %d bytes spliced after SOI", len(segment))
        return encoded[:len(SOI)] + segment + encoded[len(SOI):]

    def read_secret(self, data: bytes) -> ExtractedWatermark:
        if not self.is_watermark_applicable(data):
            raise InvalidFormatSignatureError("Not a JPEG file (missing SOI marker)")
        search = EnvelopeSearch(self.name)
        for seg in iter_segments(data):
            if seg.marker != COM or not seg.payload.startswith(self.TAG):
                continue
            location = f"COM@{seg.offset}"
            try:
                raw = seg.payload[len(self.TAG):].decode("ascii")
                envelope = Envelope.from_json_b64(raw)
            except UnicodeDecodeError as exc:
                search.reject(location, DecryptionError(f"Non-ASCII payload: {exc}", location=location))
                continue
            except DecryptionError as exc:
                search.reject(location, exc)
                continue
            if search.consider(self.codec, envelope, location):
                break
        if not search.misses and not search.found_any:
            search.miss("COM", "no tagged comment segment")
        return search.conclude()


__all__ = ["JpegCommentSegment", "Segment", "iter_segments", "build_comment_segment"]
