"""
Configuration for the document watermarking toolkit.

Settings are plain module level constants read from the environment at
import time. Each format method picks up :data:`SHARED_SECRET` when it is
constructed, so tests and embedding applications can still pass an
explicit secret instead.
"""

from __future__ import annotations

import os

# Secret behind the shared-secret key policy. Repeated/truncated to the
# AES-256 key length by the envelope codec.
SHARED_SECRET: bytes = os.environ.get(
    "DOCMARK_SHARED_SECRET", "watermark-security-key-for-encryption"
).encode("utf-8")

# Wall-clock budget (seconds) for a single add/extract when run through
# the dispatch helpers. 0 disables the limit.
DEFAULT_TIMEOUT: float = float(os.environ.get("DOCMARK_TIMEOUT", "60"))

# Level name handed to logging.basicConfig by the CLI.
LOG_LEVEL: str = os.environ.get("DOCMARK_LOG_LEVEL", "WARNING").upper()

# Quality used when re-encoding JPEG hosts.
JPEG_QUALITY: int = int(os.environ.get("DOCMARK_JPEG_QUALITY", "95"))

# Watermark text bounds, in characters.
MAX_TEXT_LENGTH: int = 100
