# test/test_rtf_info_block.py
from __future__ import annotations

import pytest

from rtf_info_block import RtfInfoBlock, find_insertion_point
from watermarking_method import (
    DecryptionError,
    InvalidFormatSignatureError,
    WatermarkNotFoundError,
)

from conftest import RTF_BYTES


@pytest.fixture
def method() -> RtfInfoBlock:
    return RtfInfoBlock(shared_secret=b"rtf-tests")


def test_group_lands_inside_info(method):
    marked = method.embed(RTF_BYTES, "CONFIDENTIAL-42")
    assert b"{\\info{\\title Sample}{\\*\\watermark-data timestamp=\"" in marked
    assert marked.endswith(b"\\f0\\fs24 Hello world.\\par}")
    found = method.read_secret(marked)
    assert found.text == "CONFIDENTIAL-42"
    assert found.timestamp.isdigit()


@pytest.mark.parametrize("doc,expected_prefix", [
    ("{\\rtf1\\ansi\\deff0 Hello}", "{\\rtf1\\ansi{\\*\\watermark-data"),
    ("{\\rtf1\\ansi\\deflang1033 Hello}", "{\\rtf1\\ansi{\\*\\watermark-data"),
    ("{\\rtf1 Hello}", "{\\rtf1{\\*\\watermark-data"),
])
def test_fallback_anchors(method, doc, expected_prefix):
    marked = method.embed(doc.encode("latin-1"), "owner")
    assert marked.decode("latin-1").startswith(expected_prefix)
    assert method.read_secret(marked).text == "owner"


def test_info_keyword_is_case_insensitive():
    doc = "{\\rtf1{\\INFO{\\title T}}\\deff0 x}"
    assert doc[find_insertion_point(doc):].startswith("}\\deff0")


@pytest.mark.parametrize("doc", [RTF_BYTES, b"{\\rtf1\\ansi\\deff0 Hello}"])
def test_readd_puts_newest_first(method, doc):
    twice = method.embed(method.embed(doc, "first"), "second")
    assert twice.count(b"\\watermark-data") == 2
    assert method.read_secret(twice).text == "second"


def test_non_numeric_timestamp_is_malformed(method):
    doc = (
        b"{\\rtf1{\\*\\watermark-data timestamp=\"yesterday\" checksum=\"00ff\""
        b"\\watermark-content QUJD\\watermark-end}\\deff0 x}"
    )
    with pytest.raises(DecryptionError):
        method.read_secret(doc)


def test_unmarked(method):
    with pytest.raises(WatermarkNotFoundError):
        method.read_secret(RTF_BYTES)


def test_non_ascii_bytes_are_preserved(method):
    doc = b"{\\rtf1\\ansi\\deff0 caf\xe9 \\'e9}"
    marked = method.embed(doc, "owner")
    assert b"caf\xe9 \\'e9}" in marked


def test_signature_must_lead(method):
    assert not method.is_watermark_applicable(b"  \n" + RTF_BYTES)
    with pytest.raises(InvalidFormatSignatureError):
        method.embed(b"\n" + RTF_BYTES, "owner")


def test_rewritten_timestamp_fails(method):
    marked = method.embed(RTF_BYTES, "owner").decode("latin-1")
    stamp = method.read_secret(marked.encode("latin-1")).timestamp
    later = str(int(stamp) + 365 * 24 * 3600)
    forged = marked.replace(f'timestamp="{stamp}"', f'timestamp="{later}"')
    assert forged != marked
    with pytest.raises(DecryptionError):
        method.read_secret(forged.encode("latin-1"))
