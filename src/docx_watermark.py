"""docx_watermark.py

Word-processing (OOXML ``.docx``) watermarking.

The envelope goes into the core ``cp:keywords`` property, a custom
document property and a small auxiliary part. Documents marked by older
versions kept the text in clear (``Watermark:<text>`` in the keywords or
an XML comment in the body); those are still read, unverified.
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


class DocxWatermark(ZipPackageWatermark):
    """Envelope in core keywords, custom properties and ``customXml/watermark.xml``."""

    name = "docx-package-properties"
    extension = "docx"
    profile = EnvelopeProfile(encoding=Base64Variant.RAW_URLSAFE)
    required_part = "word/document.xml"

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
            "word/document.xml", r"<!--\s*Watermark:\s*(.{1,100}?)\s*-->", plaintext=True
        ),
    )


__all__ = ["DocxWatermark"]
