"""watermark_envelope.py

Envelope codec shared by every format method.

An *envelope* is the encrypted, checksummed, timestamped form of the
watermark text that actually gets spliced into a host document. The
cipher, key policy, checksum salting and timestamp style are picked per
format through an :class:`EnvelopeProfile`; the routines themselves
exist only once, here.

Key policies
------------
``SHARED_SECRET``
    The configured secret, repeated and truncated to 32 bytes (AES-256).

``CHECKSUM_PREFIX``
    The first 16 hex characters of the checksum, as ASCII (AES-128). The
    checksum is stored in clear next to the ciphertext, so the key is
    only an obfuscation device. The checksum is therefore always computed
    before encrypting.

Integrity
---------
With AES-GCM the tag authenticates the ciphertext. With AES-CFB the
checksum is the only integrity signal. A checksum mismatch is either
fatal (:attr:`MismatchPolicy.STRICT`) or downgraded to a warning and an
unverified result (:attr:`MismatchPolicy.WARN`).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Final, Optional
import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

try:
    from cryptography.hazmat.decrepit.ciphers.modes import CFB
except ImportError:  # older cryptography releases keep CFB in primitives
    CFB = modes.CFB

import watermarking_config
from watermarking_errors import DecryptionError, EncryptionError, ChecksumMismatchError

logger = logging.getLogger(__name__)

AES_KEY_SIZE: Final[int] = 32
CHECKSUM_KEY_SIZE: Final[int] = 16
GCM_NONCE_SIZE: Final[int] = 12
GCM_TAG_SIZE: Final[int] = 16
CFB_IV_SIZE: Final[int] = 16

_HEX_RE: Final[re.Pattern[str]] = re.compile(r"[0-9a-f]+")
_STD_ALPHABET_RE: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9+/]*")
_URL_ALPHABET_RE: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9_-]*")


class CipherMode(str, Enum):
    GCM = "aes-gcm"
    CFB = "aes-cfb"


class KeyPolicy(str, Enum):
    SHARED_SECRET = "shared-secret"
    CHECKSUM_PREFIX = "checksum-prefix"


class TimestampStyle(str, Enum):
    RFC3339 = "rfc3339"
    UNIX = "unix"


class MismatchPolicy(str, Enum):
    STRICT = "strict"
    WARN = "warn"


class Base64Variant(str, Enum):
    RAW_URLSAFE = "raw-urlsafe"
    URLSAFE = "urlsafe"
    STANDARD = "standard"
    RAW_STANDARD = "raw-standard"
    REPAIRED = "repaired"


@dataclass(frozen=True)
class EnvelopeProfile:
    """Per-format envelope settings."""

    cipher: CipherMode = CipherMode.GCM
    key_policy: KeyPolicy = KeyPolicy.SHARED_SECRET
    salted_checksum: bool = True
    timestamp_style: TimestampStyle = TimestampStyle.RFC3339
    encoding: Base64Variant = Base64Variant.STANDARD
    on_mismatch: MismatchPolicy = MismatchPolicy.STRICT


@dataclass(frozen=True)
class Envelope:
    """Serialized watermark: ciphertext, timestamp and checksum strings."""

    ciphertext: str
    timestamp: str
    checksum: str

    def to_delimited(self, begin: str = "", end: str = "") -> str:
        return f"{begin}{self.ciphertext}|{self.timestamp}|{self.checksum}{end}"

    @classmethod
    def from_delimited(cls, payload: str) -> "Envelope":
        """Parse ``ciphertext|timestamp|checksum`` (markers already removed)."""
        parts = payload.strip().split("|")
        if len(parts) != 3 or not all(parts):
            raise DecryptionError(
                f"Malformed envelope: expected 3 fields, got {len(parts)}"
            )
        return cls(ciphertext=parts[0], timestamp=parts[1], checksum=parts[2])

    def to_json_b64(self) -> str:
        """Base64 of a compact JSON object; requires a Unix timestamp."""
        obj = {
            "timestamp": int(self.timestamp),
            "checksum": self.checksum,
            "content": self.ciphertext,
        }
        j = json.dumps(obj, separators=(",", ":"), ensure_ascii=True)
        return base64.b64encode(j.encode("utf-8")).decode("ascii")

    @classmethod
    def from_json_b64(cls, payload: str) -> "Envelope":
        raw = decode_base64_lenient(payload)
        try:
            obj = json.loads(raw.decode("utf-8"))
            return cls(
                ciphertext=str(obj["content"]),
                timestamp=str(int(obj["timestamp"])),
                checksum=str(obj["checksum"]),
            )
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
            raise DecryptionError("Malformed JSON envelope") from exc


@dataclass(frozen=True)
class ExtractedWatermark:
    """Outcome of an extraction.

    ``verified`` is ``False`` when the checksum did not match under a
    ``WARN`` policy, or when the text came from a legacy plaintext
    location that carries no checksum at all. Callers must treat such a
    result as unreliable.
    """

    text: str
    timestamp: str
    verified: bool = True
    location: str = ""

    @property
    def created_at(self) -> Optional[datetime]:
        """The timestamp as an aware datetime, or ``None`` if unparseable."""
        return parse_timestamp(self.timestamp)

    def as_tuple(self) -> tuple[str, str]:
        return self.text, self.timestamp


@dataclass(frozen=True)
class DecodeAttempt:
    """Result of trying one base64 variant."""

    variant: Base64Variant
    data: Optional[bytes] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.data is not None


# --------------------
# Base64 handling
# --------------------

def encode_base64(data: bytes, variant: Base64Variant = Base64Variant.STANDARD) -> str:
    if variant in (Base64Variant.URLSAFE, Base64Variant.RAW_URLSAFE):
        out = base64.urlsafe_b64encode(data).decode("ascii")
    else:
        out = base64.b64encode(data).decode("ascii")
    if variant in (Base64Variant.RAW_URLSAFE, Base64Variant.RAW_STANDARD):
        out = out.rstrip("=")
    return out


def _decode_variant(text: str, variant: Base64Variant) -> DecodeAttempt:
    urlsafe = variant in (Base64Variant.URLSAFE, Base64Variant.RAW_URLSAFE)
    raw = variant in (Base64Variant.RAW_URLSAFE, Base64Variant.RAW_STANDARD)
    alphabet = _URL_ALPHABET_RE if urlsafe else _STD_ALPHABET_RE

    if raw:
        if "=" in text:
            return DecodeAttempt(variant, reason="padding present")
        if len(text) % 4 == 1:
            return DecodeAttempt(variant, reason="impossible length")
        body, padded = text, text + "=" * (-len(text) % 4)
    else:
        if len(text) % 4:
            return DecodeAttempt(variant, reason="length not a multiple of 4")
        body = text.rstrip("=")
        if len(text) - len(body) > 2:
            return DecodeAttempt(variant, reason="too much padding")
        padded = text

    if not alphabet.fullmatch(body):
        return DecodeAttempt(variant, reason="character outside alphabet")
    try:
        data = base64.b64decode(
            padded, altchars=b"-_" if urlsafe else None, validate=True
        )
    except binascii.Error as exc:
        return DecodeAttempt(variant, reason=str(exc))
    return DecodeAttempt(variant, data=data)


def _decode_repaired(text: str) -> DecodeAttempt:
    fixed = text.strip().replace(" ", "+").replace("-", "+").replace("_", "/")
    fixed = fixed.rstrip("=")
    fixed += "=" * (-len(fixed) % 4)
    try:
        data = base64.b64decode(fixed, validate=True)
    except binascii.Error as exc:
        return DecodeAttempt(Base64Variant.REPAIRED, reason=str(exc))
    return DecodeAttempt(Base64Variant.REPAIRED, data=data)


_DECODE_ORDER: Final[tuple[Base64Variant, ...]] = (
    Base64Variant.RAW_URLSAFE,
    Base64Variant.URLSAFE,
    Base64Variant.STANDARD,
    Base64Variant.RAW_STANDARD,
)


def decode_attempts(text: str) -> list[DecodeAttempt]:
    """Try every accepted base64 variant in order, stopping at the first hit."""
    attempts: list[DecodeAttempt] = []
    for variant in _DECODE_ORDER:
        attempt = _decode_variant(text, variant)
        attempts.append(attempt)
        if attempt.ok:
            return attempts
    attempts.append(_decode_repaired(text))
    return attempts


def decode_base64_lenient(text: str) -> bytes:
    """Decode ``text`` accepting raw/padded and standard/URL-safe base64.

    Raises
    ------
    DecryptionError
        If every variant, including the repair pass, fails.
    """
    attempts = decode_attempts(text)
    last = attempts[-1]
    if last.ok:
        if last.variant is not _DECODE_ORDER[0]:
            logger.debug("Decoded base64 payload as %s", last.variant.value)
        return last.data  # type: ignore[return-value]
    reasons = "; ".join(f"{a.variant.value}: {a.reason}" for a in attempts)
    raise DecryptionError(f"All base64 decoding variants failed ({reasons})")


# --------------------
# Crypto primitives
# --------------------

def fit_key(secret: bytes, length: int = AES_KEY_SIZE) -> bytes:
    """Repeat and truncate ``secret`` to exactly ``length`` bytes."""
    if not secret:
        raise EncryptionError("Shared secret must not be empty")
    reps = length // len(secret) + 1
    return (secret * reps)[:length]


def checksum(text: str, timestamp: str | None = None) -> str:
    """Hex MD5 over ``text`` (optionally followed by ``timestamp``).

    A corruption signal only; MD5 is kept for compatibility with
    envelopes written by earlier versions.
    """
    material = text + (timestamp or "")
    return hashlib.md5(material.encode("utf-8")).hexdigest()


def encrypt(
    text: str,
    key: bytes,
    mode: CipherMode = CipherMode.GCM,
    variant: Base64Variant = Base64Variant.STANDARD,
    associated_data: bytes | None = None,
) -> str:
    """Encrypt ``text`` and return ``base64(nonce || ciphertext)``.

    ``associated_data`` is authenticated by the GCM tag but not stored;
    CFB ignores it.
    """
    plaintext = text.encode("utf-8")
    try:
        if mode is CipherMode.GCM:
            nonce = os.urandom(GCM_NONCE_SIZE)
            blob = nonce + AESGCM(key).encrypt(nonce, plaintext, associated_data)
        else:
            iv = os.urandom(CFB_IV_SIZE)
            enc = Cipher(algorithms.AES(key), CFB(iv)).encryptor()
            blob = iv + enc.update(plaintext) + enc.finalize()
    except ValueError as exc:
        raise EncryptionError(f"Encryption failed: {exc}") from exc
    return encode_base64(blob, variant)


def decrypt(
    blob: str,
    key: bytes,
    mode: CipherMode = CipherMode.GCM,
    associated_data: bytes | None = None,
) -> str:
    """Reverse :func:`encrypt`.

    Raises
    ------
    DecryptionError
        On base64 failure, a blob shorter than nonce (+ tag), or an AEAD
        authentication failure.
    """
    data = decode_base64_lenient(blob)
    if mode is CipherMode.GCM:
        if len(data) < GCM_NONCE_SIZE + GCM_TAG_SIZE:
            raise DecryptionError(f"Ciphertext too short: {len(data)} bytes")
        nonce, body = data[:GCM_NONCE_SIZE], data[GCM_NONCE_SIZE:]
        try:
            plaintext = AESGCM(key).decrypt(nonce, body, associated_data)
        except InvalidTag as exc:
            raise DecryptionError("Envelope failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted text is not valid UTF-8") from exc

    if len(data) < CFB_IV_SIZE:
        raise DecryptionError(f"Ciphertext too short: {len(data)} bytes")
    iv, body = data[:CFB_IV_SIZE], data[CFB_IV_SIZE:]
    try:
        dec = Cipher(algorithms.AES(key), CFB(iv)).decryptor()
        plaintext = dec.update(body) + dec.finalize()
    except ValueError as exc:
        raise DecryptionError(f"Decryption failed: {exc}") from exc
    # a wrong key yields garbage; the checksum comparison reports it
    return plaintext.decode("utf-8", errors="replace")


# --------------------
# Timestamps & text
# --------------------

def format_timestamp(moment: datetime, style: TimestampStyle) -> str:
    moment = moment.astimezone(timezone.utc).replace(microsecond=0)
    if style is TimestampStyle.UNIX:
        return str(int(moment.timestamp()))
    return moment.isoformat()


def parse_timestamp(value: str) -> Optional[datetime]:
    value = value.strip()
    if value.isdigit():
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_text(text: str) -> None:
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Watermark text must be a non-empty string")
    if len(text) > watermarking_config.MAX_TEXT_LENGTH:
        raise ValueError(
            f"Watermark text longer than {watermarking_config.MAX_TEXT_LENGTH} characters"
        )


# --------------------
# Codec
# --------------------

class EnvelopeCodec:
    """Seal and open envelopes according to one :class:`EnvelopeProfile`."""

    def __init__(
        self, profile: EnvelopeProfile, shared_secret: bytes | None = None
    ) -> None:
        self.profile = profile
        secret = (
            shared_secret if shared_secret is not None else watermarking_config.SHARED_SECRET
        )
        self._shared_key = fit_key(secret, AES_KEY_SIZE)

    def _key_for(self, digest: str) -> bytes:
        if self.profile.key_policy is KeyPolicy.SHARED_SECRET:
            return self._shared_key
        if len(digest) < CHECKSUM_KEY_SIZE or not _HEX_RE.fullmatch(digest):
            raise DecryptionError(f"Checksum unusable as key source: {digest!r}")
        return digest[:CHECKSUM_KEY_SIZE].encode("ascii")

    def _checksum(self, text: str, timestamp: str) -> str:
        return checksum(text, timestamp if self.profile.salted_checksum else None)

    def seal(self, text: str, now: datetime | None = None) -> Envelope:
        """Encrypt ``text`` and stamp it with ``now`` (default: current UTC).

        Under GCM the timestamp is bound to the tag as associated data, so
        it cannot be changed without failing authentication.
        """
        validate_text(text)
        moment = now if now is not None else datetime.now(timezone.utc)
        timestamp = format_timestamp(moment, self.profile.timestamp_style)
        digest = self._checksum(text, timestamp)
        ciphertext = encrypt(
            text,
            self._key_for(digest),
            self.profile.cipher,
            self.profile.encoding,
            associated_data=timestamp.encode("utf-8"),
        )
        return Envelope(ciphertext=ciphertext, timestamp=timestamp, checksum=digest)

    def _decrypt(self, envelope: Envelope, key: bytes) -> tuple[str, bool]:
        """Return the plaintext and whether the timestamp is authenticated."""
        if self.profile.cipher is not CipherMode.GCM:
            return decrypt(envelope.ciphertext, key, self.profile.cipher), False
        try:
            text = decrypt(
                envelope.ciphertext,
                key,
                CipherMode.GCM,
                associated_data=envelope.timestamp.encode("utf-8"),
            )
            return text, True
        except DecryptionError as exc:
            # envelopes from earlier versions carry no associated data
            try:
                text = decrypt(envelope.ciphertext, key, CipherMode.GCM)
            except DecryptionError:
                raise exc from None
            return text, False

    def open(self, envelope: Envelope, location: str = "") -> ExtractedWatermark:
        """Decrypt and verify ``envelope``.

        A GCM envelope without a bound timestamp is still opened; unless
        the checksum is salted with the timestamp the result comes back
        with ``verified=False``.

        Raises
        ------
        DecryptionError
            If the ciphertext cannot be decoded or authenticated.
        ChecksumMismatchError
            On a checksum mismatch under the ``STRICT`` policy.
        """
        stored = envelope.checksum.strip().lower()
        try:
            text, bound = self._decrypt(envelope, self._key_for(stored))
        except DecryptionError as exc:
            exc.location = location
            raise
        computed = self._checksum(text, envelope.timestamp)
        verified = hmac.compare_digest(computed, stored)
        if not verified:
            msg = f"Checksum mismatch at {location or 'envelope'}: stored {stored}, computed {computed}"
            if self.profile.on_mismatch is MismatchPolicy.STRICT:
                raise ChecksumMismatchError(msg, location=location)
            logger.warning("%s; returning unverified text", msg)
        elif not bound and self.profile.cipher is CipherMode.GCM and not self.profile.salted_checksum:
            logger.warning(
                "Timestamp at %s is not authenticated; returning unverified text",
                location or "envelope",
            )
            verified = False
        return ExtractedWatermark(
            text=text,
            timestamp=envelope.timestamp,
            verified=verified,
            location=location,
        )


__all__ = [
    "CipherMode",
    "KeyPolicy",
    "TimestampStyle",
    "MismatchPolicy",
    "Base64Variant",
    "EnvelopeProfile",
    "Envelope",
    "ExtractedWatermark",
    "DecodeAttempt",
    "EnvelopeCodec",
    "encode_base64",
    "decode_attempts",
    "decode_base64_lenient",
    "fit_key",
    "checksum",
    "encrypt",
    "decrypt",
    "format_timestamp",
    "parse_timestamp",
    "validate_text",
]
