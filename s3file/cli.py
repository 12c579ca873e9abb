"""s3file CLI – inspect, validate, dump and generate test vectors."""

from __future__ import annotations

import argparse
import hashlib
import logging
import mmap
import os
import sys
from contextlib import contextmanager
from typing import Iterator

import numpy as np

from . import __version__
from .format import as_dtype
from .reader import S3Error, S3File
from .writer import S3Writer


# ── Terminal UI (colors when TTY, Unicode tables) ───────────────────────────

def _color_enabled() -> bool:
    if not hasattr(sys.stdout, "isatty") or not sys.stdout.isatty():
        return False
    return os.environ.get("NO_COLOR", "").strip() == ""

_COLORS = {
    "reset": "\033[0m",
    "dim": "\033[2m",
    "green": "\033[32m",
    "red": "\033[31m",
    "cyan": "\033[36m",
    "bold": "\033[1m",
}

def _c(name: str, text: str) -> str:
    if not _color_enabled() or name not in _COLORS:
        return text
    return f"{_COLORS[name]}{text}{_COLORS['reset']}"

def _section(title: str) -> str:
    return _c("cyan", f"\n  ◆ {title}")

def _ok(msg: str) -> str:
    return _c("green", "✓ ") + msg

def _fail(msg: str) -> str:
    return _c("red", "✗ ") + msg

def _table(headers: list[str], rows: list[list[str]], padding: int = 1) -> list[str]:
    """Return lines for a UTF-8 box table. Column widths from content."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    pad = " " * padding
    lines = ["╭" + "┬".join("─" * (w + 2 * padding) for w in widths) + "╮"]
    lines.append("│" + "│".join(pad + h.ljust(w) + pad for h, w in zip(headers, widths)) + "│")
    lines.append("├" + "┼".join("─" * (w + 2 * padding) for w in widths) + "┤")
    for row in rows:
        lines.append("│" + "│".join(pad + c.ljust(w) + pad for c, w in zip(row, widths)) + "│")
    lines.append("╰" + "┴".join("─" * (w + 2 * padding) for w in widths) + "╯")
    return lines


# ── File access ─────────────────────────────────────────────────────────────


@contextmanager
def _open_s3(path: str) -> Iterator[S3File]:
    """Map *path* read-only and yield a handle with its header parsed."""
    with open(path, "rb") as f:
        size = os.fstat(f.fileno()).st_size
        if size == 0:
            mm = None
            s = S3File(b"")
        else:
            mm = mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ)
            s = S3File(mm)
    try:
        s.parse_header()
        yield s
    finally:
        if not s.released:
            s.release()
        if mm is not None:
            mm.close()


# ── Layout ──────────────────────────────────────────────────────────────────


_KINDS = ("raw", "1d", "2d", "3d")


def parse_layout(text: str) -> list[tuple[str, np.dtype, int]]:
    """Parse ``1d:f4,2d:u1,raw:i4x3`` into ``(kind, dtype, count)`` triples.

    *count* is only meaningful for ``raw`` segments.
    """
    segments = []
    for item in filter(None, (s.strip() for s in text.split(","))):
        kind, sep, rest = item.partition(":")
        if not sep or kind not in _KINDS:
            raise ValueError(f"bad layout segment {item!r}")
        count = 1
        if kind == "raw" and "x" in rest:
            rest, _, n = rest.partition("x")
            count = int(n)
        segments.append((kind, as_dtype(rest), count))
    return segments


def _read_segment(s: S3File, kind: str, dtype: np.dtype, count: int) -> np.ndarray:
    if kind == "raw":
        arr = np.empty(count, dtype=dtype.newbyteorder("="))
        s.read_raw(arr, dtype.itemsize, count)
        return arr
    if kind == "1d":
        return s.read_1d(dtype)[0]
    if kind == "2d":
        return s.read_2d(dtype)[0]
    return s.read_3d(dtype)[0]


# ── inspect ─────────────────────────────────────────────────────────────────


def cmd_inspect(args: argparse.Namespace) -> None:
    try:
        with _open_s3(args.file) as s:
            print(_c("bold", "\n  s3file  ") + _c("dim", args.file))
            print(_section("File"))
            print(f"    Byte order  {'big' if s.byteorder == '>' else 'little'}-endian"
                  f"{' (swapped)' if s.swap else ''}")
            print(f"    Checksum    {'yes' if s.has_checksum else 'no'}")
            print(f"    Payload     {s.remaining():,} bytes at offset {s.tell()}")
            print(_section(f"Header ({len(s.headers)})"))
            rows = [[str(i), s.header_name(i), s.header_value(i)] for i in range(len(s.headers))]
            for line in _table(["#", "Name", "Value"], rows):
                print("  " + line)
            print()
    except (OSError, S3Error) as exc:
        print(_fail(str(exc)), file=sys.stderr)
        sys.exit(1)


# ── validate ────────────────────────────────────────────────────────────────


def cmd_validate(args: argparse.Namespace) -> None:
    try:
        layout = parse_layout(args.layout)
        with _open_s3(args.file) as s:
            for kind, dtype, count in layout:
                _read_segment(s, kind, dtype, count)
            if not s.has_checksum:
                print(_ok(f"{len(layout)} segments read (no checksum declared)."))
                return
            s.verify_checksum()
            if s.remaining():
                print(_c("dim", f"  {s.remaining()} trailing bytes after checksum"))
            print(_ok(f"{len(layout)} segments, checksum 0x{s.checksum:08x} OK."))
    except (OSError, ValueError, S3Error) as exc:
        print(_fail(str(exc)), file=sys.stderr)
        sys.exit(1)


# ── dump ────────────────────────────────────────────────────────────────────


def cmd_dump(args: argparse.Namespace) -> None:
    try:
        layout = parse_layout(args.layout)
        with _open_s3(args.file) as s:
            rows = []
            for i, (kind, dtype, count) in enumerate(layout):
                arr = _read_segment(s, kind, dtype, count)
                flat = arr.ravel()
                preview = np.array2string(flat[: args.preview], separator=", ")
                if flat.size > args.preview:
                    preview = preview[:-1] + ", …]"
                rows.append([str(i), kind, str(arr.dtype), str(arr.shape), preview])
            for line in _table(["#", "Kind", "Dtype", "Shape", "Values"], rows):
                print("  " + line)
    except (OSError, ValueError, S3Error) as exc:
        print(_fail(str(exc)), file=sys.stderr)
        sys.exit(1)


# ── make-test-vector ────────────────────────────────────────────────────────


def make_test_vector(byteorder: str = "=") -> S3Writer:
    """Header ``version 1``, one 1-d float32 array of three values, checksum."""
    w = S3Writer(byteorder=byteorder)
    w.write_header({"version": "1"})
    w.write_1d(np.array([1.0, 2.0, 3.0], dtype="f4"))
    w.write_checksum()
    return w


def cmd_make_test_vector(args: argparse.Namespace) -> None:
    w = make_test_vector(args.byteorder)
    w.save(args.output)

    sha = hashlib.sha256(w.getvalue()).hexdigest()
    print(_ok(f"Wrote {args.output} ({len(w):,} bytes)"))
    print(f"    sha256 {sha}")


# ── Entry point ─────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="s3file", description="Sphinx-3 binary file tool"
    )
    parser.add_argument(
        "--version", action="version", version=f"s3file {__version__}"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable verbose logging"
    )
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("inspect", help="Show header and byte order", aliases=["info"])
    p.add_argument("file")

    layout_help = "comma separated segments, e.g. 1d:f4,2d:f4,3d:u1,raw:i4x2"

    p = sub.add_parser("validate", help="Read all segments and verify the checksum")
    p.add_argument("file")
    p.add_argument("--layout", required=True, help=layout_help)

    p = sub.add_parser("dump", help="Print the segments of a file")
    p.add_argument("file")
    p.add_argument("--layout", required=True, help=layout_help)
    p.add_argument("--preview", type=int, default=8,
                   help="values shown per segment (default: 8)")

    p = sub.add_parser("make-test-vector", help="Generate a golden test vector")
    p.add_argument("output")
    p.add_argument("--byteorder", choices=["=", "<", ">"], default="=")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING, format="%(message)s")

    cmds = {
        "inspect": cmd_inspect,
        "info": cmd_inspect,  # alias
        "validate": cmd_validate,
        "dump": cmd_dump,
        "make-test-vector": cmd_make_test_vector,
    }
    fn = cmds.get(args.command)
    if fn:
        fn(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
