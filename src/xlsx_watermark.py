"""xlsx_watermark.py

Spreadsheet (OOXML ``.xlsx``) watermarking.

Spreadsheets keep the cipher of the first release: AES-CFB keyed with
the checksum prefix. CFB carries no authentication tag, so a checksum
mismatch is reported as a warning and the text comes back with
``verified=False`` instead of failing the extraction.

Earlier releases scattered the envelope over several places (an
``app.xml`` property, a ``customXmlPart`` element, the description, a
workbook attribute, the shared strings table). They are searched, in
that order, when none of the current anchors holds an envelope.
"""
from __future__ import annotations

from watermark_envelope import (
    Base64Variant,
    CipherMode,
    EnvelopeProfile,
    KeyPolicy,
    MismatchPolicy,
)
from zip_package_watermark import (
    AuxiliaryPartAnchor,
    CorePropertyAnchor,
    CustomPropertyAnchor,
    PatternAnchor,
    ZipPackageWatermark,
)


class XlsxWatermark(ZipPackageWatermark):
    name = "xlsx-package-properties"
    extension = "xlsx"
    profile = EnvelopeProfile(
        cipher=CipherMode.CFB,
        key_policy=KeyPolicy.CHECKSUM_PREFIX,
        encoding=Base64Variant.RAW_URLSAFE,
        on_mismatch=MismatchPolicy.WARN,
    )
    required_part = "xl/workbook.xml"

    anchors = (
        CustomPropertyAnchor("Watermark"),
        CorePropertyAnchor("cp:keywords"),
        AuxiliaryPartAnchor("xl/customWatermark.xml"),
    )
    legacy_anchors = (
        PatternAnchor("docProps/app.xml", r'<Property\s+name="WM"[^>]*>(.*?)</Property>'),
        PatternAnchor(
            "docProps/core.xml",
            r'<cp:customXmlPart\s+name="watermark"[^>]*>(.*?)</cp:customXmlPart>',
        ),
        PatternAnchor("docProps/core.xml", r"<dc:description>\s*WM:(.*?)</dc:description>"),
        PatternAnchor("xl/workbook.xml", r'\bcustomWatermark="([^"]*)"'),
        PatternAnchor("xl/sharedStrings.xml", r"(WATERMARK_BEGIN:.*?:WATERMARK_END)"),
    )


__all__ = ["XlsxWatermark"]
