"""watermarking_utils.py

Format registry and dispatch helpers for the document watermarking
methods.

This module exposes:

- :class:`FormatRegistry`: a mapping from lowercase file extension to an
  instantiated :class:`~watermarking_method.WatermarkingMethod`.
- :data:`REGISTRY`: the registry built once at import with every
  supported format.
- :func:`register_method` / :func:`get_method`: registry helpers.
- :func:`apply_watermark`: watermark a file with the method matching its
  extension.
- :func:`read_watermark`: recover a watermark the same way.
- :func:`run_with_timeout`: run an operation under a wall-clock budget.

Timeouts
--------
Python threads cannot be killed, so an operation that runs out of time
is abandoned rather than stopped: :func:`run_with_timeout` stops waiting
and raises :class:`~watermarking_method.WatermarkTimeoutError`. Because
the worker only ever transforms bytes in memory and the output file is
written by the caller afterwards, an abandoned worker never leaves a
file behind.
"""
from __future__ import annotations

from typing import Callable, Dict, Iterable, Iterator, Optional, TypeVar
import concurrent.futures
import logging
import threading

import watermarking_config
from watermarking_method import (
    ExtractedWatermark,
    PathSource,
    UnsupportedFormatError,
    WatermarkingMethod,
    WatermarkTimeoutError,
    extension_of,
    load_document_bytes,
    write_atomic,
)
from docx_watermark import DocxWatermark
from xlsx_watermark import XlsxWatermark
from pptx_watermark import PptxWatermark
from odt_watermark import OdtWatermark
from jpeg_comment_segment import JpegCommentSegment
from png_append_trailer import PngAppendTrailer
from pdf_trailer_marker import PdfTrailerMarker
from rtf_info_block import RtfInfoBlock

logger = logging.getLogger(__name__)

T = TypeVar("T")

# --------------------
# Method registry
# --------------------


class FormatRegistry:
    """Extension -> method mapping.

    Registration replaces the table under a lock (last writer wins);
    lookups read the current table without locking.
    """

    def __init__(self, methods: Iterable[WatermarkingMethod] = ()) -> None:
        self._lock = threading.Lock()
        self._by_ext: Dict[str, WatermarkingMethod] = {}
        for method in methods:
            self.register(method)

    def register(self, method: WatermarkingMethod) -> None:
        """Register (or replace) ``method`` for its extension and aliases."""
        extensions = (method.extension, *method.aliases)
        with self._lock:
            table = dict(self._by_ext)
            for ext in extensions:
                previous = table.get(ext.lower())
                if previous is not None and previous is not method:
                    logger.debug("Replacing %r for .%s with %r", previous, ext, method)
                table[ext.lower()] = method
            self._by_ext = table

    def lookup(self, name: str | PathSource) -> Optional[WatermarkingMethod]:
        """Return the method for an extension or file name, or ``None``."""
        return self._by_ext.get(extension_of(name))

    def all_extensions(self) -> frozenset[str]:
        return frozenset(self._by_ext)

    def methods(self) -> list[WatermarkingMethod]:
        """Distinct registered methods, in registration order."""
        seen: Dict[int, WatermarkingMethod] = {}
        for method in self._by_ext.values():
            seen.setdefault(id(method), method)
        return list(seen.values())

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        return self.lookup(name) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._by_ext))

    def __len__(self) -> int:
        return len(self._by_ext)


def build_default_registry(shared_secret: bytes | None = None) -> FormatRegistry:
    """Build a registry holding one instance of every supported method."""
    return FormatRegistry(
        cls(shared_secret=shared_secret)
        for cls in (
            DocxWatermark,
            XlsxWatermark,
            PptxWatermark,
            OdtWatermark,
            JpegCommentSegment,
            PngAppendTrailer,
            PdfTrailerMarker,
            RtfInfoBlock,
        )
    )


REGISTRY: FormatRegistry = build_default_registry()
"""Registry of available watermarking methods, keyed by extension."""


def register_method(method: WatermarkingMethod) -> None:
    """Register (or replace) a watermarking method in :data:`REGISTRY`."""
    REGISTRY.register(method)


def get_method(method: str | PathSource | WatermarkingMethod) -> WatermarkingMethod:
    """Resolve a method from an extension or file path, or pass-through an instance.

    Raises
    ------
    UnsupportedFormatError
        If no method is registered for the extension.
    """
    if isinstance(method, WatermarkingMethod):
        return method
    found = REGISTRY.lookup(method)
    if found is None:
        raise UnsupportedFormatError(
            f"Unsupported format: {extension_of(method)!r}. "
            f"Known: {sorted(REGISTRY.all_extensions())}"
        )
    return found


# --------------------
# Timeouts
# --------------------

def _effective_timeout(timeout: float | None) -> float | None:
    limit = watermarking_config.DEFAULT_TIMEOUT if timeout is None else timeout
    return limit if limit and limit > 0 else None


def run_with_timeout(fn: Callable[..., T], timeout: float | None, *args, **kwargs) -> T:
    """Call ``fn(*args, **kwargs)`` on a worker thread, waiting at most ``timeout`` s.

    ``None`` or a non-positive ``timeout`` runs ``fn`` inline. The worker
    is a daemon thread, so an abandoned call does not keep the process
    alive.

    Raises
    ------
    WatermarkTimeoutError
        If ``fn`` has not returned in time. The worker is abandoned.
    """
    if timeout is None or timeout <= 0:
        return fn(*args, **kwargs)
    future: concurrent.futures.Future = concurrent.futures.Future()

    def _work() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args, **kwargs)
        except BaseException as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    threading.Thread(target=_work, name="docmark-worker", daemon=True).start()
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as exc:
        raise WatermarkTimeoutError(
            f"{getattr(fn, '__qualname__', fn)} exceeded {timeout:g}s"
        ) from exc


# --------------------
# Public API helpers
# --------------------

def apply_watermark(
    input_path: PathSource,
    output_path: PathSource,
    text: str,
    timeout: float | None = None,
    method: str | WatermarkingMethod | None = None,
) -> None:
    """Watermark ``input_path`` with ``text`` and write ``output_path``.

    The method is chosen from the input's extension unless ``method`` is
    given. ``timeout`` defaults to :data:`watermarking_config.DEFAULT_TIMEOUT`;
    ``0`` disables it. On timeout nothing is written.
    """
    m = get_method(method if method is not None else input_path)
    data = load_document_bytes(input_path)
    out = run_with_timeout(m.embed, _effective_timeout(timeout), data, text)
    write_atomic(output_path, out)
    logger.debug("%s: watermarked %s -> %s", m.name, input_path, output_path)


def read_watermark(
    input_path: PathSource,
    timeout: float | None = None,
    method: str | WatermarkingMethod | None = None,
) -> ExtractedWatermark:
    """Recover the watermark embedded in ``input_path``."""
    m = get_method(method if method is not None else input_path)
    data = load_document_bytes(input_path)
    return run_with_timeout(m.read_secret, _effective_timeout(timeout), data)


def is_watermarking_applicable(
    input_path: PathSource,
    method: str | WatermarkingMethod | None = None,
) -> bool:
    """Return whether the file looks like a host for its method."""
    m = get_method(method if method is not None else input_path)
    return m.is_watermark_applicable(load_document_bytes(input_path))


__all__ = [
    "FormatRegistry",
    "REGISTRY",
    "build_default_registry",
    "register_method",
    "get_method",
    "run_with_timeout",
    "apply_watermark",
    "read_watermark",
    "is_watermarking_applicable",
]
