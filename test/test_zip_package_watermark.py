# test/test_zip_package_watermark.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import io
import re
import zipfile

import pytest

from docx_watermark import DocxWatermark
from odt_watermark import OdtWatermark
from pptx_watermark import PptxWatermark
from xlsx_watermark import XlsxWatermark
from watermarking_method import (
    ChecksumMismatchError,
    DecryptionError,
    InvalidFormatSignatureError,
    WatermarkNotFoundError,
)
from zip_package_watermark import PackageAnchor, PackageParts, delimit

from conftest import (
    DOCX_MEMBERS,
    ODT_MEMBERS,
    PPTX_MEMBERS,
    XLSX_MEMBERS,
    build_zip,
    flip_char,
    read_members,
    rewrite_members,
)

ENVELOPE_RE = re.compile(r"WATERMARK_BEGIN:([^|]+)\|")


def _infos(data: bytes) -> list[zipfile.ZipInfo]:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return zf.infolist()


def _tamper_all(data: bytes) -> bytes:
    """Flip one ciphertext character in every delimited envelope of the package."""
    def fn(name: str, content: bytes) -> bytes:
        text = content.decode("utf-8")
        return ENVELOPE_RE.sub(
            lambda m: "WATERMARK_BEGIN:" + flip_char(m.group(1), 30) + "|", text
        ).encode("utf-8")
    return rewrite_members(data, fn)


# --------- the spreadsheet scenario ----------
def test_xlsx_confidential_roundtrip_via_custom_properties():
    method = XlsxWatermark()
    host = build_zip(XLSX_MEMBERS)
    before = datetime.now(timezone.utc) - timedelta(seconds=2)

    marked = method.embed(host, "CONFIDENTIAL-42")
    members = read_members(marked)
    custom = members["docProps/custom.xml"].decode("utf-8")
    assert 'name="Watermark"' in custom
    assert "WATERMARK_BEGIN:" in custom

    found = method.read_secret(marked)
    assert found.text == "CONFIDENTIAL-42"
    assert found.verified
    assert found.location.startswith("docProps/custom.xml")
    assert before <= found.created_at <= datetime.now(timezone.utc) + timedelta(seconds=2)


def test_custom_properties_part_is_registered_once():
    method = DocxWatermark()
    marked = method.embed(method.embed(build_zip(DOCX_MEMBERS), "one"), "two")
    members = read_members(marked)

    rels = members["_rels/.rels"].decode("utf-8")
    types = members["[Content_Types].xml"].decode("utf-8")
    custom = members["docProps/custom.xml"].decode("utf-8")
    assert rels.count('Target="docProps/custom.xml"') == 1
    assert 'Id="rId3"' in rels
    assert types.count('PartName="/docProps/custom.xml"') == 1
    assert custom.count('name="Watermark"') == 1
    assert 'pid="2"' in custom
    assert method.read_secret(marked).text == "two"


def test_existing_custom_properties_are_kept():
    custom = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        '<Properties xmlns="http://schemas.openxmlformats.org/officeDocument/2006/custom-properties" '
        'xmlns:vt="http://schemas.openxmlformats.org/officeDocument/2006/docPropsVTypes">'
        '<property fmtid="{D5CDD505-2E9C-101B-9397-08002B2CF9AE}" pid="2" name="Project">'
        "<vt:lpwstr>Apollo</vt:lpwstr></property></Properties>"
    )
    host = build_zip(DOCX_MEMBERS + [("docProps/custom.xml", custom)])
    marked = DocxWatermark().embed(host, "owner")
    updated = read_members(marked)["docProps/custom.xml"].decode("utf-8")
    assert "<vt:lpwstr>Apollo</vt:lpwstr>" in updated
    assert re.search(r'pid="3" name="Watermark"', updated)


def test_core_keywords_keep_existing_content():
    method = DocxWatermark()
    marked = method.embed(method.embed(build_zip(DOCX_MEMBERS), "one"), "two")
    core = read_members(marked)["docProps/core.xml"].decode("utf-8")
    keywords = re.search(r"<cp:keywords>(.*?)</cp:keywords>", core).group(1)
    assert keywords.count("WATERMARK_BEGIN:") == 1
    assert keywords.endswith(" budget")


def test_core_keywords_synthesized_when_missing():
    members = [
        (name, content.replace("<cp:keywords>budget</cp:keywords>", ""))
        if name == "docProps/core.xml" else (name, content)
        for name, content in PPTX_MEMBERS
    ]
    marked = PptxWatermark().embed(build_zip(members), "deck-owner")
    core = read_members(marked)["docProps/core.xml"].decode("utf-8")
    assert re.search(r"<cp:keywords>WATERMARK_BEGIN:.*:WATERMARK_END</cp:keywords></cp:coreProperties>", core)


# --------- non-corruption ----------
@pytest.mark.parametrize("method_cls,members,stored", [
    (DocxWatermark, DOCX_MEMBERS, ()),
    (XlsxWatermark, XLSX_MEMBERS, ()),
    (PptxWatermark, PPTX_MEMBERS, ()),
    (OdtWatermark, ODT_MEMBERS, ("mimetype",)),
])
def test_untouched_members_are_preserved(method_cls, members, stored):
    host = build_zip(members, stored=stored)
    marked = method_cls().embed(host, "keeper")

    before, after = _infos(host), _infos(marked)
    assert [i.filename for i in after[:len(before)]] == [i.filename for i in before]
    for old, new in zip(before, after):
        assert new.compress_type == old.compress_type
        assert new.date_time == old.date_time

    parts = PackageParts(marked)
    touched = {"docProps/core.xml", "_rels/.rels", "[Content_Types].xml",
               "meta.xml", "META-INF/manifest.xml"}
    original = read_members(host)
    for name, content in original.items():
        if name not in touched:
            assert parts.read(name) == content, name


def test_odt_mimetype_first_and_stored():
    method = OdtWatermark()
    marked = method.embed(method.embed(build_zip(ODT_MEMBERS, stored={"mimetype"}), "a"), "b")
    first = _infos(marked)[0]
    assert first.filename == "mimetype"
    assert first.compress_type == zipfile.ZIP_STORED

    members = read_members(marked)
    manifest = members["META-INF/manifest.xml"].decode("utf-8")
    assert manifest.count('manifest:full-path="watermark-data.xml"') == 1
    meta = members["meta.xml"].decode("utf-8")
    assert meta.count('meta:name="Watermark"') == 1
    assert "<meta:keyword>budget</meta:keyword>" in meta
    data_part = members["watermark-data.xml"].decode("utf-8")
    assert re.search(r'<watermark timestamp="\d+" checksum="[0-9a-f]{32}">', data_part)
    assert method.read_secret(marked).text == "b"


# --------- redundancy & fallback ----------
def test_redundant_copies_survive_lost_parts():
    method = DocxWatermark()
    marked = method.embed(build_zip(DOCX_MEMBERS), "survivor")

    def drop(name: str, content: bytes):
        if name in ("docProps/core.xml", "docProps/custom.xml"):
            return None
        return content

    found = method.read_secret(rewrite_members(marked, drop))
    assert found.text == "survivor"
    assert found.location == "customXml/watermark.xml"


def test_odt_falls_back_to_watermark_data_part():
    method = OdtWatermark()
    marked = method.embed(build_zip(ODT_MEMBERS, stored={"mimetype"}), "aux-only")
    stripped = rewrite_members(
        marked, lambda name, content: None if name == "meta.xml" else content
    )
    found = method.read_secret(stripped)
    assert found.text == "aux-only"
    assert found.location == "watermark-data.xml"


def test_tampered_copy_is_skipped_when_another_verifies():
    method = DocxWatermark()
    marked = method.embed(build_zip(DOCX_MEMBERS), "intact")

    def tamper_core(name: str, content: bytes) -> bytes:
        if name != "docProps/core.xml":
            return content
        text = content.decode("utf-8")
        return ENVELOPE_RE.sub(
            lambda m: "WATERMARK_BEGIN:" + flip_char(m.group(1), 30) + "|", text
        ).encode("utf-8")

    found = method.read_secret(rewrite_members(marked, tamper_core))
    assert found.text == "intact"
    assert found.verified
    assert found.location.startswith("docProps/custom.xml")


def test_docx_tampered_everywhere_fails_integrity():
    method = DocxWatermark()
    marked = method.embed(build_zip(DOCX_MEMBERS), "intact")
    with pytest.raises(DecryptionError):
        method.read_secret(_tamper_all(marked))


def test_docx_forged_checksum_is_rejected():
    method = DocxWatermark()
    marked = method.embed(build_zip(DOCX_MEMBERS), "intact")

    def forge(name: str, content: bytes) -> bytes:
        return re.sub(rb"\|([0-9a-f]{32}):WATERMARK_END", b"|" + b"0" * 32 + b":WATERMARK_END", content)

    with pytest.raises(ChecksumMismatchError):
        method.read_secret(rewrite_members(marked, forge))


def test_xlsx_tampering_returns_unverified_text(caplog):
    method = XlsxWatermark()
    marked = method.embed(build_zip(XLSX_MEMBERS), "CONFIDENTIAL-42")
    with caplog.at_level("WARNING"):
        found = method.read_secret(_tamper_all(marked))
    assert found.verified is False
    assert found.text != "CONFIDENTIAL-42"
    assert "unverified" in caplog.text


# --------- legacy locations ----------
def test_docx_legacy_plaintext_keyword():
    members = [
        (name, content.replace(
            "<cp:keywords>budget</cp:keywords>",
            "<cp:keywords>Watermark:OLD-OWNER TimeStamp:2023-05-01T10:00:00Z</cp:keywords>",
        ))
        if name == "docProps/core.xml" else (name, content)
        for name, content in DOCX_MEMBERS
    ]
    found = DocxWatermark().read_secret(build_zip(members))
    assert found.as_tuple() == ("OLD-OWNER", "2023-05-01T10:00:00Z")
    assert found.verified is False


def test_pptx_legacy_slide_comment():
    members = [
        (name, content.replace("<p:cSld/>", "<p:cSld/><!-- Watermark: deck-2019 -->"))
        if name == "ppt/slides/slide1.xml" else (name, content)
        for name, content in PPTX_MEMBERS
    ]
    found = PptxWatermark().read_secret(build_zip(members))
    assert found.text == "deck-2019"
    assert not found.verified


def test_xlsx_legacy_app_property_envelope():
    method = XlsxWatermark()
    envelope = method.codec.seal("LEGACY-SHEET")
    app = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        "<Properties><CustomDocumentProperties>"
        f'<Property name="WM" type="string"><![CDATA[{delimit(envelope)}]]></Property>'
        "</CustomDocumentProperties></Properties>"
    )
    found = method.read_secret(build_zip(XLSX_MEMBERS + [("docProps/app.xml", app)]))
    assert found.text == "LEGACY-SHEET"
    assert found.verified


def test_xlsx_legacy_workbook_attribute():
    method = XlsxWatermark()
    envelope = method.codec.seal("ATTR-OWNER")
    members = [
        (name, content.replace("<sheets>", f'<fileVersion customWatermark="{delimit(envelope)}"/><sheets>'))
        if name == "xl/workbook.xml" else (name, content)
        for name, content in XLSX_MEMBERS
    ]
    assert method.read_secret(build_zip(members)).text == "ATTR-OWNER"


# --------- bad input ----------
def test_not_a_zip():
    with pytest.raises(InvalidFormatSignatureError):
        DocxWatermark().read_secret(b"%PDF-1.4 nope")


def test_wrong_package_type():
    xlsx = build_zip(XLSX_MEMBERS)
    assert DocxWatermark().is_watermark_applicable(xlsx) is False
    with pytest.raises(InvalidFormatSignatureError, match="word/document.xml"):
        DocxWatermark().embed(xlsx, "x")


def test_not_found_lists_tried_locations():
    with pytest.raises(WatermarkNotFoundError) as excinfo:
        XlsxWatermark().read_secret(build_zip(XLSX_MEMBERS))
    tried = excinfo.value.tried
    assert tried[0].startswith("docProps/custom.xml")
    assert "xl/customWatermark.xml" in tried
    assert any(t.startswith("xl/sharedStrings.xml") for t in tried)


def test_anchor_must_implement_write_and_locate():
    class WriteOnly(PackageAnchor):
        def write(self, parts, envelope):
            return False

    with pytest.raises(TypeError):
        PackageAnchor()
    with pytest.raises(TypeError):
        WriteOnly()
