"""odt_watermark.py

OpenDocument text (``.odt``) watermarking.

``meta.xml`` gets a keyword and a user-defined ``Watermark`` field; the
``watermark-data.xml`` part (the only location earlier releases wrote)
is rewritten as well and listed in the manifest. ``mimetype`` keeps its
place as the first, uncompressed member.
"""
from __future__ import annotations

from watermark_envelope import EnvelopeProfile, TimestampStyle
from zip_package_watermark import (
    OdfMetaAnchor,
    OdfWatermarkDataAnchor,
    ZipPackageWatermark,
)

ODT_MIMETYPE = b"application/vnd.oasis.opendocument.text"


class OdtWatermark(ZipPackageWatermark):
    name = "odt-meta"
    extension = "odt"
    profile = EnvelopeProfile(
        salted_checksum=False, timestamp_style=TimestampStyle.UNIX
    )
    required_part = "mimetype"

    anchors = (
        OdfMetaAnchor("meta:keyword"),
        OdfMetaAnchor("meta:user-defined", user_name="Watermark"),
        OdfWatermarkDataAnchor("watermark-data.xml"),
    )

    def is_watermark_applicable(self, data: bytes) -> bool:
        # the mimetype member is stored first, so its content sits at a fixed offset
        return super().is_watermark_applicable(data) and ODT_MIMETYPE in data[:200]


__all__ = ["OdtWatermark"]
