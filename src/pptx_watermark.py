"""pptx_watermark.py

Presentation (OOXML ``.pptx``) watermarking. Same anchors as ``.docx``;
the legacy clear-text comment lived in the slide parts.
"""
from __future__ import annotations

from watermark_envelope import Base64Variant, EnvelopeProfile
from zip_package_watermark import (
    AuxiliaryPartAnchor,
    CorePropertyAnchor,
    CustomPropertyAnchor,
    PatternAnchor,
    ZipPackageWatermark,
)


class PptxWatermark(ZipPackageWatermark):
    name = "pptx-package-properties"
    extension = "pptx"
    profile = EnvelopeProfile(encoding=Base64Variant.RAW_URLSAFE)
    required_part = "ppt/presentation.xml"

    anchors = (
        CorePropertyAnchor("cp:keywords"),
        CustomPropertyAnchor("Watermark"),
        AuxiliaryPartAnchor("customXml/watermark.xml"),
    )
    legacy_anchors = (
        PatternAnchor(
            "docProps/core.xml",
            r"Watermark:([^<\s]{1,100})",
            plaintext=True,
            timestamp_pattern=r"TimeStamp:([^<\s]+)",
        ),
        PatternAnchor(
            "ppt/slides/slide*.xml", r"<!--\s*Watermark:\s*(.{1,100}?)\s*-->", plaintext=True
        ),
    )


__all__ = ["PptxWatermark"]
