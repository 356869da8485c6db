"""rtf_info_block.py

RTF watermarking with an ignorable destination group.

The envelope is written as a ``{\\*\\watermark-data ...}`` group. The
``\\*`` prefix tells RTF readers to skip the whole group when they do not
know the destination, so the document renders unchanged. The group goes
into the ``\\info`` block when there is one, otherwise in front of the
font table defaults, otherwise right after the ``{\\rtf1`` header.

Each add inserts a new group ahead of any previous one, so the first
group in the file is the newest.
"""
from __future__ import annotations

from typing import Final, Optional
import logging
import re

from watermark_envelope import Envelope, EnvelopeProfile, TimestampStyle
from watermarking_method import (
    DecryptionError,
    EnvelopeSearch,
    ExtractedWatermark,
    InvalidFormatSignatureError,
    WatermarkingMethod,
)

logger = logging.getLogger(__name__)

RTF_SIGNATURE: Final[bytes] = b"{\\rtf1"

_INFO_RE: Final[re.Pattern[str]] = re.compile(r"\\info(?![a-z])[\s\S]*?\}", re.IGNORECASE)
_GROUP_RE: Final[re.Pattern[str]] = re.compile(r"\{\\\*\\watermark-data\b([^{}]*)\}")
_BODY_RE: Final[re.Pattern[str]] = re.compile(
    r' timestamp="(\d+)" checksum="([a-f0-9]+)"\\watermark-content ([A-Za-z0-9+/=]+)\\watermark-end'
)


def find_insertion_point(doc: str) -> int:
    """Offset at which a new destination group is inserted.

    An existing group is always preceded, keeping the newest first.
    """
    existing = _GROUP_RE.search(doc)
    if existing is not None:
        return existing.start()
    m = _INFO_RE.search(doc)
    if m is not None:
        return m.end()
    for keyword in ("\\deff", "\\deflang"):
        idx = doc.find(keyword)
        if idx != -1:
            return idx
    return doc.find("{\\rtf1") + len("{\\rtf1")


def format_group(envelope: Envelope) -> str:
    return (
        f'{{\\*\\watermark-data timestamp="{envelope.timestamp}" '
        f'checksum="{envelope.checksum}"\\watermark-content '
        f"{envelope.ciphertext}\\watermark-end}}"
    )


def parse_group(inner: str) -> Optional[Envelope]:
    m = _BODY_RE.fullmatch(inner)
    if m is None:
        return None
    return Envelope(ciphertext=m.group(3), timestamp=m.group(1), checksum=m.group(2))


class RtfInfoBlock(WatermarkingMethod):
    name = "rtf-info-block"
    extension = "rtf"
    profile = EnvelopeProfile(
        salted_checksum=False, timestamp_style=TimestampStyle.UNIX
    )

    @staticmethod
    def get_usage() -> str:
        return "Inserts the envelope as an ignorable {\\*\\watermark-data} group in the info block."

    def is_watermark_applicable(self, data: bytes) -> bool:
        return data.startswith(RTF_SIGNATURE)

    @staticmethod
    def _decode(data: bytes) -> str:
        # RTF is 7-bit; latin-1 maps every byte one to one
        return data.decode("latin-1")

    def embed(self, data: bytes, text: str) -> bytes:
        if not self.is_watermark_applicable(data):
            raise InvalidFormatSignatureError("Not an RTF file (missing {\\rtf1 header)")
        envelope = self.codec.seal(text)
        doc = self._decode(data)
        at = find_insertion_point(doc)
        logger.debug("%s: inserting group at offset %d", self.name, at)
        return (doc[:at] + format_group(envelope) + doc[at:]).encode("latin-1")

    def read_secret(self, data: bytes) -> ExtractedWatermark:
        if not self.is_watermark_applicable(data):
            raise InvalidFormatSignatureError("Not an RTF file (missing {\\rtf1 header)")
        doc = self._decode(data)
        search = EnvelopeSearch(self.name)
        groups = list(_GROUP_RE.finditer(doc))
        if not groups:
            search.miss("\\*\\watermark-data", "no destination group")
        for m in groups:
            location = f"group@{m.start()}"
            envelope = parse_group(m.group(1))
            if envelope is None:
                search.reject(location, DecryptionError("Malformed watermark group", location=location))
                continue
            if search.consider(self.codec, envelope, location):
                break
        return search.conclude()


__all__ = ["RtfInfoBlock", "find_insertion_point", "format_group", "parse_group"]
