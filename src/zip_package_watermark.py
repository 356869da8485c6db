"""zip_package_watermark.py

Shared machinery for ZIP-packaged XML documents (OOXML word-processing,
spreadsheet and presentation packages, and ODF text documents).

The four formats share one algorithm and differ only in the *anchors*
they use: the archive members and XML elements that can carry an
envelope. Adding writes the same envelope to every primary anchor so the
watermark survives editors that drop one kind of metadata; extracting
walks the primary anchors in order and, only if none of them holds an
envelope, the legacy anchors used by earlier versions of the tool.

All editing is string insertion on the serialized XML, never a parse and
re-serialize, so everything outside the touched element stays byte for
byte the same. Members are re-written in their original order with
their original compression method and timestamps; parts this module
creates are appended at the end (ODF requires ``mimetype`` to stay
first).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from fnmatch import fnmatch
from typing import ClassVar, Final, Optional, Sequence, Union
from xml.sax.saxutils import escape, unescape
import io
import logging
import re
import time
import zipfile
import zlib

from watermark_envelope import Envelope, ExtractedWatermark
from watermarking_method import (
    AnchorNotFoundError,
    DecryptionError,
    EnvelopeSearch,
    InvalidFormatSignatureError,
    RepackError,
    WatermarkingMethod,
)

logger = logging.getLogger(__name__)

ZIP_MAGIC: Final[bytes] = b"PK\x03\x04"

ENVELOPE_BEGIN: Final[str] = "WATERMARK_BEGIN:"
ENVELOPE_END: Final[str] = ":WATERMARK_END"
_ENVELOPE_RE: Final[re.Pattern[str]] = re.compile(
    re.escape(ENVELOPE_BEGIN) + r"(.*?)" + re.escape(ENVELOPE_END), re.DOTALL
)
_ENVELOPE_STRIP_RE: Final[re.Pattern[str]] = re.compile(
    r"\s*" + _ENVELOPE_RE.pattern, re.DOTALL
)

# OPC (OOXML) names
CONTENT_TYPES_PART: Final[str] = "[Content_Types].xml"
PACKAGE_RELS_PART: Final[str] = "_rels/.rels"
CORE_PROPS_PART: Final[str] = "docProps/core.xml"
CUSTOM_PROPS_PART: Final[str] = "docProps/custom.xml"
CUSTOM_PROPS_REL_TYPE: Final[str] = (
    "http://schemas.openxmlformats.org/officeDocument/2006/relationships/custom-properties"
)
CUSTOM_PROPS_CONTENT_TYPE: Final[str] = (
    "application/vnd.openxmlformats-officedocument.custom-properties+xml"
)
CUSTOM_PROPS_NS: Final[str] = (
    "http://schemas.openxmlformats.org/officeDocument/2006/custom-properties"
)
VT_NS: Final[str] = "http://schemas.openxmlformats.org/officeDocument/2006/docPropsVTypes"
CUSTOM_PROPS_FMTID: Final[str] = "{D5CDD505-2E9C-101B-9397-08002B2CF9AE}"

# ODF names
ODF_META_PART: Final[str] = "meta.xml"
ODF_MANIFEST_PART: Final[str] = "META-INF/manifest.xml"
ODF_OFFICE_NS: Final[str] = "urn:oasis:names:tc:opendocument:xmlns:office:1.0"
ODF_META_NS: Final[str] = "urn:oasis:names:tc:opendocument:xmlns:meta:1.0"

XML_DECLARATION: Final[str] = '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'

Found = Union[Envelope, ExtractedWatermark]


def delimit(envelope: Envelope) -> str:
    return envelope.to_delimited(ENVELOPE_BEGIN, ENVELOPE_END)


def find_delimited(text: str) -> Optional[Envelope]:
    """Return the first delimited envelope inside ``text``, if any."""
    m = _ENVELOPE_RE.search(text)
    if m is None:
        return None
    return Envelope.from_delimited(unescape(m.group(1)))


def strip_delimited(text: str) -> str:
    return _ENVELOPE_STRIP_RE.sub("", text)


def _insert_before(text: str, closing_tag: str, fragment: str) -> Optional[str]:
    idx = text.rfind(closing_tag)
    if idx == -1:
        return None
    return text[:idx] + fragment + text[idx:]


# --------------------
# In-memory package
# --------------------

class PackageParts:
    """Editable in-memory view of a ZIP package.

    Members keep their :class:`zipfile.ZipInfo` metadata; :meth:`write`
    replaces a member's content or appends a new member.
    """

    def __init__(self, data: bytes) -> None:
        if not data.startswith(ZIP_MAGIC):
            raise InvalidFormatSignatureError("Not a ZIP package (missing PK header)")
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as zf:
                self._infos = zf.infolist()
                self._contents = {info.filename: zf.read(info) for info in self._infos}
        except zipfile.BadZipFile as exc:
            raise InvalidFormatSignatureError(f"Corrupt ZIP package: {exc}") from exc
        except (NotImplementedError, RuntimeError, zlib.error, OSError) as exc:
            raise RepackError(f"Cannot read ZIP package: {exc}") from exc
        self._added: list[str] = []

    def __contains__(self, name: str) -> bool:
        return name in self._contents

    def names(self) -> list[str]:
        return [info.filename for info in self._infos] + list(self._added)

    def read(self, name: str) -> Optional[bytes]:
        return self._contents.get(name)

    def text(self, name: str) -> Optional[str]:
        raw = self._contents.get(name)
        if raw is None:
            return None
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Package member %s is not UTF-8; ignoring it", name)
            return None

    def write(self, name: str, content: Union[str, bytes]) -> None:
        data = content.encode("utf-8") if isinstance(content, str) else content
        if name not in self._contents:
            self._added.append(name)
        self._contents[name] = data

    def to_bytes(self) -> bytes:
        buf = io.BytesIO()
        try:
            with zipfile.ZipFile(buf, "w") as out:
                for info in self._infos:
                    out.writestr(_clone_info(info), self._contents[info.filename])
                now = time.localtime()[:6]
                for name in self._added:
                    info = zipfile.ZipInfo(name, date_time=now)
                    info.compress_type = zipfile.ZIP_DEFLATED
                    info.external_attr = 0o644 << 16
                    out.writestr(info, self._contents[name])
        except (ValueError, NotImplementedError, RuntimeError, zlib.error) as exc:
            raise RepackError(f"Failed to repack ZIP package: {exc}") from exc
        return buf.getvalue()


def _clone_info(info: zipfile.ZipInfo) -> zipfile.ZipInfo:
    clone = zipfile.ZipInfo(info.filename, date_time=info.date_time)
    clone.compress_type = info.compress_type
    clone.external_attr = info.external_attr
    clone.create_system = info.create_system
    clone.comment = info.comment
    return clone


# --------------------
# OPC / ODF bookkeeping
# --------------------

def ensure_package_relationship(parts: PackageParts, rel_type: str, target: str) -> None:
    rels = parts.text(PACKAGE_RELS_PART)
    if rels is None or f'Target="{target}"' in rels or f'Target="/{target}"' in rels:
        return
    ids = [int(n) for n in re.findall(r'Id="rId(\d+)"', rels)]
    rel_id = f"rId{max(ids, default=0) + 1}"
    fragment = f'<Relationship Id="{rel_id}" Type="{rel_type}" Target="{target}"/>'
    updated = _insert_before(rels, "</Relationships>", fragment)
    if updated is not None:
        parts.write(PACKAGE_RELS_PART, updated)


def ensure_content_type_override(parts: PackageParts, part_name: str, content_type: str) -> None:
    types = parts.text(CONTENT_TYPES_PART)
    if types is None or f'PartName="/{part_name}"' in types:
        return
    fragment = f'<Override PartName="/{part_name}" ContentType="{content_type}"/>'
    updated = _insert_before(types, "</Types>", fragment)
    if updated is not None:
        parts.write(CONTENT_TYPES_PART, updated)


def ensure_xml_default(parts: PackageParts) -> None:
    types = parts.text(CONTENT_TYPES_PART)
    if types is None or re.search(r'<Default\s[^>]*Extension="xml"', types):
        return
    updated = _insert_before(
        types, "</Types>", '<Default Extension="xml" ContentType="application/xml"/>'
    )
    if updated is not None:
        parts.write(CONTENT_TYPES_PART, updated)


def ensure_manifest_entry(parts: PackageParts, full_path: str, media_type: str = "text/xml") -> None:
    manifest = parts.text(ODF_MANIFEST_PART)
    if manifest is None or f'manifest:full-path="{full_path}"' in manifest:
        return
    fragment = (
        f'<manifest:file-entry manifest:full-path="{full_path}" '
        f'manifest:media-type="{media_type}"/>'
    )
    updated = _insert_before(manifest, "</manifest:manifest>", fragment)
    if updated is not None:
        parts.write(ODF_MANIFEST_PART, updated)


# --------------------
# Anchors
# --------------------

class PackageAnchor(ABC):
    """A place inside the package that can hold an envelope."""

    #: Human readable location used in logs and errors.
    location: str = ""

    @abstractmethod
    def write(self, parts: PackageParts, envelope: Envelope) -> bool:
        """Store ``envelope``; return ``False`` if this anchor is unusable."""
        raise NotImplementedError

    @abstractmethod
    def locate(self, parts: PackageParts) -> Optional[Found]:
        """Return the envelope stored here, or ``None``.

        Raises :class:`DecryptionError` if something envelope-shaped is
        present but cannot be parsed.
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.location}>"


class CorePropertyAnchor(PackageAnchor):
    """An element of ``docProps/core.xml`` (default ``cp:keywords``).

    The envelope is prepended to whatever the element already holds; an
    envelope left by a previous add is removed first.
    """

    def __init__(self, element: str = "cp:keywords") -> None:
        self.element = element
        self.location = f"{CORE_PROPS_PART}#{element}"
        tag = re.escape(element)
        self._element_re = re.compile(
            rf"<{tag}(\s[^>]*)?>(.*?)</{tag}>|<{tag}(\s[^>]*)?/>", re.DOTALL
        )

    def write(self, parts: PackageParts, envelope: Envelope) -> bool:
        core = parts.text(CORE_PROPS_PART)
        if core is None:
            return False
        value = escape(delimit(envelope))
        m = self._element_re.search(core)
        if m is not None:
            existing = strip_delimited(m.group(2) or "").strip()
            inner = f"{value} {existing}" if existing else value
            attrs = m.group(1) or m.group(3) or ""
            replacement = f"<{self.element}{attrs}>{inner}</{self.element}>"
            updated = core[: m.start()] + replacement + core[m.end():]
        else:
            updated = _insert_before(
                core,
                "</cp:coreProperties>",
                f"<{self.element}>{value}</{self.element}>",
            )
            if updated is None:
                return False
        parts.write(CORE_PROPS_PART, updated)
        return True

    def locate(self, parts: PackageParts) -> Optional[Found]:
        core = parts.text(CORE_PROPS_PART)
        if core is None:
            return None
        m = self._element_re.search(core)
        if m is None or not m.group(2):
            return None
        return find_delimited(m.group(2))


class CustomPropertyAnchor(PackageAnchor):
    """A named ``vt:lpwstr`` property in ``docProps/custom.xml``.

    The part, its package relationship and its content-type override are
    created when the package has none.
    """

    def __init__(self, prop_name: str = "Watermark") -> None:
        self.prop_name = prop_name
        self.location = f"{CUSTOM_PROPS_PART}#{prop_name}"
        self._prop_re = re.compile(
            rf'(<property\b[^>]*\bname="{re.escape(prop_name)}"[^>]*>)(.*?)(</property>)',
            re.DOTALL,
        )

    def _value(self, envelope: Envelope) -> str:
        return f"<vt:lpwstr>{escape(delimit(envelope))}</vt:lpwstr>"

    def write(self, parts: PackageParts, envelope: Envelope) -> bool:
        custom = parts.text(CUSTOM_PROPS_PART)
        if custom is None:
            custom = (
                XML_DECLARATION
                + f'<Properties xmlns="{CUSTOM_PROPS_NS}" xmlns:vt="{VT_NS}">'
                + f'<property fmtid="{CUSTOM_PROPS_FMTID}" pid="2" name="{self.prop_name}">'
                + self._value(envelope)
                + "</property></Properties>"
            )
            parts.write(CUSTOM_PROPS_PART, custom)
            ensure_package_relationship(parts, CUSTOM_PROPS_REL_TYPE, CUSTOM_PROPS_PART)
            ensure_content_type_override(parts, CUSTOM_PROPS_PART, CUSTOM_PROPS_CONTENT_TYPE)
            return True

        m = self._prop_re.search(custom)
        if m is not None:
            updated = custom[: m.start(2)] + self._value(envelope) + custom[m.end(2):]
        else:
            pids = [int(p) for p in re.findall(r'\bpid="(\d+)"', custom)]
            pid = max(pids + [1]) + 1
            ns = "" if "xmlns:vt=" in custom else f' xmlns:vt="{VT_NS}"'
            prop = (
                f'<property fmtid="{CUSTOM_PROPS_FMTID}" pid="{pid}" '
                f'name="{self.prop_name}"{ns}>{self._value(envelope)}</property>'
            )
            updated = _insert_before(custom, "</Properties>", prop)
            if updated is None:
                return False
        parts.write(CUSTOM_PROPS_PART, updated)
        return True

    def locate(self, parts: PackageParts) -> Optional[Found]:
        custom = parts.text(CUSTOM_PROPS_PART)
        if custom is None:
            return None
        m = self._prop_re.search(custom)
        if m is None:
            return None
        return find_delimited(m.group(2))


class AuxiliaryPartAnchor(PackageAnchor):
    """A small XML part owned by this tool, overwritten on every add."""

    _BODY_RE: Final[re.Pattern[str]] = re.compile(
        r"<watermark>(?:<!\[CDATA\[)?(.*?)(?:\]\]>)?</watermark>", re.DOTALL
    )

    def __init__(self, part_name: str) -> None:
        self.part_name = part_name
        self.location = part_name

    def write(self, parts: PackageParts, envelope: Envelope) -> bool:
        body = f"{XML_DECLARATION}<watermark><![CDATA[{delimit(envelope)}]]></watermark>"
        parts.write(self.part_name, body)
        ensure_xml_default(parts)
        return True

    def locate(self, parts: PackageParts) -> Optional[Found]:
        content = parts.text(self.part_name)
        if content is None:
            return None
        m = self._BODY_RE.search(content)
        if m is None:
            return None
        return find_delimited(m.group(1))


class PatternAnchor(PackageAnchor):
    """Read-only anchor matching a regular expression in one or more parts.

    Used for locations written by earlier versions. ``parts_glob`` may be
    a member name or a glob (e.g. ``ppt/slides/slide*.xml``). With
    ``plaintext=True`` group 1 is the clear watermark text and the result
    is returned unverified; otherwise group 1 is a delimited envelope.
    """

    def __init__(
        self,
        parts_glob: str,
        pattern: str,
        *,
        plaintext: bool = False,
        timestamp_pattern: str | None = None,
    ) -> None:
        self.parts_glob = parts_glob
        self.location = f"{parts_glob}~/{pattern}/"
        self._re = re.compile(pattern, re.DOTALL)
        self._ts_re = re.compile(timestamp_pattern) if timestamp_pattern else None
        self.plaintext = plaintext

    def write(self, parts: PackageParts, envelope: Envelope) -> bool:
        return False

    def _candidates(self, parts: PackageParts) -> list[str]:
        return sorted(n for n in parts.names() if fnmatch(n, self.parts_glob))

    def locate(self, parts: PackageParts) -> Optional[Found]:
        for name in self._candidates(parts):
            content = parts.text(name)
            if content is None:
                continue
            m = self._re.search(content)
            if m is None:
                continue
            value = unescape(m.group(1)).strip()
            if not self.plaintext:
                envelope = find_delimited(value)
                return envelope if envelope is not None else Envelope.from_delimited(value)
            timestamp = ""
            if self._ts_re is not None:
                ts = self._ts_re.search(content)
                if ts is not None:
                    timestamp = ts.group(1)
            logger.warning("Found legacy plaintext watermark in %s", name)
            return ExtractedWatermark(
                text=value, timestamp=timestamp, verified=False, location=name
            )
        return None


# ODF anchors

def _ensure_odf_meta(parts: PackageParts) -> Optional[str]:
    """Return ``meta.xml`` content, creating a minimal part when absent."""
    meta = parts.text(ODF_META_PART)
    if meta is not None:
        if "<office:meta/>" in meta:
            meta = meta.replace("<office:meta/>", "<office:meta></office:meta>", 1)
        if "</office:meta>" not in meta:
            return None
        return meta
    if ODF_MANIFEST_PART not in parts:
        return None
    meta = (
        XML_DECLARATION
        + f'<office:document-meta xmlns:office="{ODF_OFFICE_NS}" '
        + f'xmlns:meta="{ODF_META_NS}" office:version="1.2">'
        + "<office:meta></office:meta></office:document-meta>"
    )
    ensure_manifest_entry(parts, ODF_META_PART)
    return meta


class OdfMetaAnchor(PackageAnchor):
    """An element inside ``<office:meta>`` of ``meta.xml``.

    ``element`` is ``meta:keyword`` (one keyword holding the envelope) or
    ``meta:user-defined`` with ``meta:name`` set to ``user_name``.
    """

    def __init__(self, element: str, user_name: str | None = None) -> None:
        self.element = element
        self.user_name = user_name
        self.location = f"{ODF_META_PART}#{element}" + (f"[{user_name}]" if user_name else "")
        tag = re.escape(element)
        if user_name:
            attr = rf'[^>]*\bmeta:name="{re.escape(user_name)}"[^>]*'
            self._re = re.compile(rf"<{tag}\b{attr}>(.*?)</{tag}>", re.DOTALL)
        else:
            self._re = re.compile(
                rf"<{tag}>([^<]*?{re.escape(ENVELOPE_BEGIN)}.*?)</{tag}>", re.DOTALL
            )

    def _element(self, envelope: Envelope) -> str:
        value = escape(delimit(envelope))
        if self.user_name:
            return (
                f'<{self.element} meta:name="{self.user_name}" '
                f'meta:value-type="string">{value}</{self.element}>'
            )
        return f"<{self.element}>{value}</{self.element}>"

    def write(self, parts: PackageParts, envelope: Envelope) -> bool:
        meta = _ensure_odf_meta(parts)
        if meta is None:
            return False
        fragment = self._element(envelope)
        m = self._re.search(meta)
        if m is not None:
            updated = meta[: m.start()] + fragment + meta[m.end():]
        else:
            updated = _insert_before(meta, "</office:meta>", fragment)
            if updated is None:
                return False
        parts.write(ODF_META_PART, updated)
        return True

    def locate(self, parts: PackageParts) -> Optional[Found]:
        meta = parts.text(ODF_META_PART)
        if meta is None:
            return None
        m = self._re.search(meta)
        if m is None:
            return None
        return find_delimited(m.group(1))


class OdfWatermarkDataAnchor(PackageAnchor):
    """The ``watermark-data.xml`` part: attributes carry timestamp and checksum."""

    _RE: Final[re.Pattern[str]] = re.compile(
        r'<watermark\s+timestamp="([^"]*)"\s+checksum="([^"]*)"\s*>(.*?)</watermark>',
        re.DOTALL,
    )

    def __init__(self, part_name: str = "watermark-data.xml") -> None:
        self.part_name = part_name
        self.location = part_name

    def write(self, parts: PackageParts, envelope: Envelope) -> bool:
        body = (
            f'{XML_DECLARATION}<watermark timestamp="{escape(envelope.timestamp)}" '
            f'checksum="{escape(envelope.checksum)}">{escape(envelope.ciphertext)}</watermark>'
        )
        parts.write(self.part_name, body)
        ensure_manifest_entry(parts, self.part_name)
        return True

    def locate(self, parts: PackageParts) -> Optional[Found]:
        content = None
        for name in parts.names():
            if name == self.part_name or name.endswith("/" + self.part_name):
                content = parts.text(name)
                break
        if content is None:
            return None
        m = self._RE.search(content)
        if m is None:
            raise DecryptionError(f"Malformed {self.part_name}", location=self.location)
        return Envelope(
            ciphertext=unescape(m.group(3)).strip(),
            timestamp=unescape(m.group(1)),
            checksum=unescape(m.group(2)),
        )


# --------------------
# The method
# --------------------

class ZipPackageWatermark(WatermarkingMethod):
    """Base class for the ZIP-packaged document methods.

    Subclasses list their anchors; this class does the rest.
    """

    #: Anchors written on add and searched first on extract, in priority order.
    anchors: ClassVar[Sequence[PackageAnchor]] = ()

    #: Read-only anchors searched only if no primary anchor holds an envelope.
    legacy_anchors: ClassVar[Sequence[PackageAnchor]] = ()

    #: Member whose presence identifies the package type.
    required_part: ClassVar[str] = ""

    @classmethod
    def get_usage(cls) -> str:
        where = ", ".join(a.location for a in cls.anchors)
        return f"Encrypted envelope written redundantly to: {where}."

    def is_watermark_applicable(self, data: bytes) -> bool:
        try:
            parts = PackageParts(data)
        except (InvalidFormatSignatureError, RepackError):
            return False
        return not self.required_part or self.required_part in parts

    def _open_package(self, data: bytes) -> PackageParts:
        parts = PackageParts(data)
        if self.required_part and self.required_part not in parts:
            raise InvalidFormatSignatureError(
                f"Not a {self.extension} package: missing {self.required_part}",
                location=self.required_part,
            )
        return parts

    def embed(self, data: bytes, text: str) -> bytes:
        parts = self._open_package(data)
        envelope = self.codec.seal(text)

        written: list[str] = []
        for anchor in self.anchors:
            if anchor.write(parts, envelope):
                written.append(anchor.location)
            else:
                logger.warning("%s: could not write anchor %s", self.name, anchor.location)
        if not written:
            tried = ", ".join(a.location for a in self.anchors)
            raise AnchorNotFoundError(f"No usable anchor in {self.extension} package (tried: {tried})")

        logger.debug("%s: envelope written to %s", self.name, ", ".join(written))
        return parts.to_bytes()

    def _scan(self, parts: PackageParts, anchors: Sequence[PackageAnchor], search: EnvelopeSearch) -> None:
        for anchor in anchors:
            try:
                found = anchor.locate(parts)
            except DecryptionError as exc:
                search.reject(anchor.location, exc)
                continue
            if search.consider(self.codec, found, anchor.location):
                return

    def read_secret(self, data: bytes) -> ExtractedWatermark:
        parts = self._open_package(data)
        search = EnvelopeSearch(self.name)
        self._scan(parts, self.anchors, search)
        if not search.found_any and self.legacy_anchors:
            logger.debug("%s: nothing in primary anchors, trying legacy locations", self.name)
            self._scan(parts, self.legacy_anchors, search)
        return search.conclude()


__all__ = [
    "ENVELOPE_BEGIN",
    "ENVELOPE_END",
    "PackageParts",
    "PackageAnchor",
    "CorePropertyAnchor",
    "CustomPropertyAnchor",
    "AuxiliaryPartAnchor",
    "PatternAnchor",
    "OdfMetaAnchor",
    "OdfWatermarkDataAnchor",
    "ZipPackageWatermark",
    "delimit",
    "find_delimited",
    "strip_delimited",
]
