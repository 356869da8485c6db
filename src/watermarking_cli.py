"""watermarking_cli.py

Command-line interface for the document watermarking toolkit.

Usage examples
--------------

List supported file types:
    docmark types

Watermark a document (the method follows the input's extension):
    docmark add report.docx report.marked.docx "CONFIDENTIAL-42"

Read the text from a file or stdin instead:
    docmark add photo.jpg photo.marked.jpg --text-file label.txt
    echo "INTERNAL" | docmark add slides.pptx out.pptx --text-stdin

Extract a watermark, with its timestamp, or as JSON:
    docmark extract report.marked.docx --timestamp
    docmark extract report.marked.docx --json

Exit codes
----------
0   success
2   invalid usage / bad input / unsupported format
3   watermark not found
4   integrity failure (decryption or checksum)
5   other watermarking error
6   timeout
"""
from __future__ import annotations

from datetime import timezone
from typing import Iterable, Optional
import argparse
import json
import logging
import sys

import watermarking_config
from watermarking_method import (
    ChecksumMismatchError,
    DecryptionError,
    ExtractedWatermark,
    UnsupportedFormatError,
    WatermarkingError,
    WatermarkNotFoundError,
    WatermarkTimeoutError,
)
from watermarking_utils import (
    REGISTRY,
    apply_watermark,
    is_watermarking_applicable,
    read_watermark,
)

__version__ = "0.2.0"

logger = logging.getLogger("docmark")

# --------------------
# Helpers
# --------------------

def _read_text_from_file(path: str) -> str:
    with open(path, "r", encoding="utf-8") as fh:
        return fh.read()


def _read_text_from_stdin() -> str:
    data = sys.stdin.read()
    if not data:
        raise ValueError("No data received on stdin")
    return data


def _resolve_text(args: argparse.Namespace) -> str:
    if args.text is not None:
        return args.text
    if args.text_file is not None:
        return _read_text_from_file(args.text_file).strip("\n\r")
    if args.text_stdin:
        return _read_text_from_stdin().strip("\n\r")
    raise ValueError("No watermark text given (use TEXT, --text-file or --text-stdin)")


def _display_timestamp(found: ExtractedWatermark) -> str:
    """UTC ``YYYY-MM-DD HH:MM:SS`` for both Unix and RFC 3339 timestamps."""
    moment = found.created_at
    if moment is None:
        return found.timestamp
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _configure_logging(verbosity: int) -> None:
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = getattr(logging, watermarking_config.LOG_LEVEL, logging.WARNING)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


# --------------------
# Subcommand handlers
# --------------------

def cmd_types(_args: argparse.Namespace) -> int:
    for method in REGISTRY.methods():
        exts = ", ".join((method.extension, *method.aliases))
        print(f"{exts:<10} {method.name:<26} {method.get_usage()}")
    return 0


def cmd_add(args: argparse.Namespace) -> int:
    text = _resolve_text(args)
    if not is_watermarking_applicable(args.input):
        print(f"error: {args.input} does not look like a .{REGISTRY.lookup(args.input).extension} file",
              file=sys.stderr)
        return 2

    apply_watermark(args.input, args.output, text, timeout=args.timeout)
    logger.info("Watermarked %s -> %s", args.input, args.output)
    print(f"Wrote watermarked document -> {args.output}")
    return 0


def cmd_extract(args: argparse.Namespace) -> int:
    found = read_watermark(args.input, timeout=args.timeout)
    if not found.verified:
        print(f"warning: watermark at {found.location} could not be verified", file=sys.stderr)

    if args.json:
        out = json.dumps(
            {
                "text": found.text,
                "timestamp": found.timestamp,
                "verified": found.verified,
                "location": found.location,
            },
            ensure_ascii=False,
        )
    elif args.timestamp:
        out = f"{found.text}\n{_display_timestamp(found)}"
    else:
        out = found.text

    if args.out:
        with open(args.out, "w", encoding="utf-8") as fh:
            fh.write(out + "\n")
        print(f"Wrote watermark -> {args.out}")
    else:
        print(out)
    return 0


# --------------------
# Argument parser
# --------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="docmark",
        description="Document watermarking utilities (add/extract/types)"
    )
    p.add_argument("--version", action="version", version=f"docmark {__version__}")
    p.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="More logging (-v info, -vv debug)"
    )
    p.add_argument(
        "--timeout",
        type=float,
        default=watermarking_config.DEFAULT_TIMEOUT,
        help="Seconds allowed per operation, 0 for no limit "
             f"(default: {watermarking_config.DEFAULT_TIMEOUT:g})"
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    # types
    p_types = sub.add_parser("types", help="List supported file types")
    p_types.set_defaults(func=cmd_types)

    # add
    p_add = sub.add_parser("add", help="Embed a watermark into a document")
    p_add.add_argument("input", help="Input document path")
    p_add.add_argument("output", help="Output (watermarked) document path")
    p_add.add_argument("text", nargs="?", help="Watermark text (1-100 characters)")

    g_text = p_add.add_argument_group("text input")
    g_text.add_argument("--text-file", help="Read watermark text from a file")
    g_text.add_argument(
        "--text-stdin",
        action="store_true",
        help="Read watermark text from stdin"
    )
    p_add.set_defaults(func=cmd_add)

    # extract
    p_extract = sub.add_parser("extract", help="Extract a watermark from a document")
    p_extract.add_argument("input", help="Input document path (possibly watermarked)")
    p_extract.add_argument(
        "-t", "--timestamp",
        action="store_true",
        help="Also print the embedding timestamp"
    )
    p_extract.add_argument("--json", action="store_true", help="Print the result as JSON")
    p_extract.add_argument("--out", help="Write recovered watermark to file (default: stdout)")
    p_extract.set_defaults(func=cmd_extract)

    return p


# --------------------
# Entrypoint
# --------------------

def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.verbose)

    try:
        return int(args.func(args))
    except UnsupportedFormatError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except FileNotFoundError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except WatermarkNotFoundError as e:
        print(f"watermark not found: {e}", file=sys.stderr)
        return 3
    except (DecryptionError, ChecksumMismatchError) as e:
        print(f"integrity check failed: {e}", file=sys.stderr)
        return 4
    except WatermarkTimeoutError as e:
        print(f"timed out: {e}", file=sys.stderr)
        return 6
    except WatermarkingError as e:
        print(f"watermarking error: {e}", file=sys.stderr)
        return 5


if __name__ == "__main__":
    raise SystemExit(main())
