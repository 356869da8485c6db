# test/conftest.py
from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable
import io
import zipfile

import pytest
from PIL import Image


# --------- minimal package parts ----------
CT_NS = "http://schemas.openxmlformats.org/package/2006/content-types"
REL_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
OFFICE_REL = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"

CORE_XML = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
    '<cp:coreProperties xmlns:cp="http://schemas.openxmlformats.org/package/2006/metadata/core-properties" '
    'xmlns:dc="http://purl.org/dc/elements/1.1/">'
    "<dc:title>Sample</dc:title><cp:keywords>budget</cp:keywords>"
    "</cp:coreProperties>"
)


def _content_types(main_part: str, main_type: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        f'<Types xmlns="{CT_NS}">'
        '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
        '<Default Extension="xml" ContentType="application/xml"/>'
        f'<Override PartName="/{main_part}" ContentType="{main_type}"/>'
        '<Override PartName="/docProps/core.xml" '
        'ContentType="application/vnd.openxmlformats-package.core-properties+xml"/>'
        "</Types>"
    )


def _package_rels(main_part: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        f'<Relationships xmlns="{REL_NS}">'
        f'<Relationship Id="rId1" Type="{OFFICE_REL}/officeDocument" Target="{main_part}"/>'
        '<Relationship Id="rId2" '
        'Type="http://schemas.openxmlformats.org/package/2006/relationships/metadata/core-properties" '
        'Target="docProps/core.xml"/>'
        "</Relationships>"
    )


DOCX_MEMBERS: list[tuple[str, str]] = [
    ("[Content_Types].xml", _content_types(
        "word/document.xml",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml",
    )),
    ("_rels/.rels", _package_rels("word/document.xml")),
    ("docProps/core.xml", CORE_XML),
    ("word/document.xml", (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">'
        "<w:body><w:p><w:r><w:t>Hello</w:t></w:r></w:p></w:body></w:document>"
    )),
]

XLSX_MEMBERS: list[tuple[str, str]] = [
    ("[Content_Types].xml", _content_types(
        "xl/workbook.xml",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet.main+xml",
    )),
    ("_rels/.rels", _package_rels("xl/workbook.xml")),
    ("docProps/core.xml", CORE_XML),
    ("xl/workbook.xml", (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        '<workbook xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main">'
        '<sheets><sheet name="Sheet1" sheetId="1"/></sheets></workbook>'
    )),
    ("xl/worksheets/sheet1.xml", (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        '<worksheet xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main">'
        '<sheetData><row r="1"><c r="A1"><v>42</v></c></row></sheetData></worksheet>'
    )),
]

PPTX_MEMBERS: list[tuple[str, str]] = [
    ("[Content_Types].xml", _content_types(
        "ppt/presentation.xml",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation.main+xml",
    )),
    ("_rels/.rels", _package_rels("ppt/presentation.xml")),
    ("docProps/core.xml", CORE_XML),
    ("ppt/presentation.xml", (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        '<p:presentation xmlns:p="http://schemas.openxmlformats.org/presentationml/2006/main"/>'
    )),
    ("ppt/slides/slide1.xml", (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        '<p:sld xmlns:p="http://schemas.openxmlformats.org/presentationml/2006/main">'
        "<p:cSld/></p:sld>"
    )),
]

ODT_MIMETYPE = "application/vnd.oasis.opendocument.text"

ODT_MEMBERS: list[tuple[str, str]] = [
    ("mimetype", ODT_MIMETYPE),
    ("META-INF/manifest.xml", (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<manifest:manifest xmlns:manifest="urn:oasis:names:tc:opendocument:xmlns:manifest:1.0" '
        'manifest:version="1.2">'
        f'<manifest:file-entry manifest:full-path="/" manifest:media-type="{ODT_MIMETYPE}"/>'
        '<manifest:file-entry manifest:full-path="content.xml" manifest:media-type="text/xml"/>'
        '<manifest:file-entry manifest:full-path="meta.xml" manifest:media-type="text/xml"/>'
        "</manifest:manifest>"
    )),
    ("content.xml", (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<office:document-content xmlns:office="urn:oasis:names:tc:opendocument:xmlns:office:1.0" '
        'xmlns:text="urn:oasis:names:tc:opendocument:xmlns:text:1.0" office:version="1.2">'
        "<office:body><office:text><text:p>Hello</text:p></office:text></office:body>"
        "</office:document-content>"
    )),
    ("meta.xml", (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<office:document-meta xmlns:office="urn:oasis:names:tc:opendocument:xmlns:office:1.0" '
        'xmlns:meta="urn:oasis:names:tc:opendocument:xmlns:meta:1.0" office:version="1.2">'
        "<office:meta><meta:generator>tests</meta:generator>"
        "<meta:keyword>budget</meta:keyword></office:meta></office:document-meta>"
    )),
]

PDF_BYTES = (
    b"%PDF-1.4\n"
    b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
    b"2 0 obj\n<< /Type /Pages /Kids [] /Count 0 >>\nendobj\n"
    b"xref\n0 3\n0000000000 65535 f \n0000000009 00000 n \n0000000058 00000 n \n"
    b"trailer\n<< /Size 3 /Root 1 0 R >>\nstartxref\n110\n%%EOF\n"
)

RTF_BYTES = (
    b"{\\rtf1\\ansi\\deff0 {\\fonttbl {\\f0 Times New Roman;}}"
    b"{\\info{\\title Sample}{\\author Tests}}"
    b"\\f0\\fs24 Hello world.\\par}"
)


def build_zip(members: Iterable[tuple[str, str | bytes]], stored: Iterable[str] = ()) -> bytes:
    """Serialize ``members`` in order; names in ``stored`` are not compressed."""
    stored = set(stored)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in members:
            info = zipfile.ZipInfo(name, date_time=(2024, 1, 2, 3, 4, 6))
            info.compress_type = zipfile.ZIP_STORED if name in stored else zipfile.ZIP_DEFLATED
            zf.writestr(info, content)
    return buf.getvalue()


def read_members(data: bytes) -> dict[str, bytes]:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return {info.filename: zf.read(info) for info in zf.infolist()}


def rewrite_members(data: bytes, fn: Callable[[str, bytes], bytes | None]) -> bytes:
    """Rebuild a ZIP, passing every member through ``fn`` (``None`` drops it)."""
    buf = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(data)) as src, zipfile.ZipFile(buf, "w") as dst:
        for info in src.infolist():
            content = fn(info.filename, src.read(info))
            if content is not None:
                dst.writestr(info, content)
    return buf.getvalue()


def image_bytes(fmt: str, size: tuple[int, int] = (16, 16), **save_kwargs) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buf, format=fmt, **save_kwargs)
    return buf.getvalue()


def flip_char(s: str, index: int) -> str:
    """Replace one base64 character with a different one from the same alphabet."""
    c = s[index]
    return s[:index] + ("B" if c == "A" else "A") + s[index + 1:]


HOST_BUILDERS: dict[str, Callable[[], bytes]] = {
    "docx": lambda: build_zip(DOCX_MEMBERS),
    "xlsx": lambda: build_zip(XLSX_MEMBERS),
    "pptx": lambda: build_zip(PPTX_MEMBERS),
    "odt": lambda: build_zip(ODT_MEMBERS, stored={"mimetype"}),
    "jpg": lambda: image_bytes("JPEG"),
    "png": lambda: image_bytes("PNG"),
    "pdf": lambda: PDF_BYTES,
    "rtf": lambda: RTF_BYTES,
}


# --------- fixtures ----------
@pytest.fixture
def make_host(tmp_path: Path) -> Callable[..., Path]:
    """Write a fresh, unmarked host of the given extension and return its path."""
    def _make(ext: str, data: bytes | None = None, name: str = "sample") -> Path:
        path = tmp_path / f"{name}.{ext}"
        path.write_bytes(data if data is not None else HOST_BUILDERS[ext]())
        return path
    return _make


@pytest.fixture(scope="session")
def secret_text() -> str:
    return "unit-test-watermark"
