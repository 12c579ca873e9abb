"""Sphinx-3 binary layout constants, byte-order detection and checksum helpers."""

from __future__ import annotations

import struct
import sys

import numpy as np

# ── Magic & markers ─────────────────────────────────────────────────────────

MAGIC_LINE = b"s3\n"
END_HEADER_LINE = b"endhdr\n"
COMMENT_PREFIX = b"#"

BYTE_ORDER_MAGIC = 0x11223344
MARKER_SIZE = 4
CHECKSUM_SIZE = 4
DIM_SIZE = 4

CHECKSUM_HEADER = "chksum0"
VERSION_HEADER = "version"

# ── Struct formats ──────────────────────────────────────────────────────────

NATIVE_U32 = "=I"
HOST_ORDER = "<" if sys.byteorder == "little" else ">"
SWAPPED_ORDER = ">" if HOST_ORDER == "<" else "<"

assert struct.calcsize(NATIVE_U32) == MARKER_SIZE

# ── Element sizes ───────────────────────────────────────────────────────────

ELEMENT_SIZES = (1, 2, 4, 8)

# Rotation applied to the running sum before each element is added.
CHECKSUM_ROTATE: dict[int, int] = {1: 5, 2: 10, 4: 20}

U32_MASK = 0xFFFFFFFF


# ── Byte order ─────────────────────────────────────────────────────────────


def detect_swap(marker: bytes) -> bool | None:
    """Return whether *marker* needs byte-swapping, or ``None`` if corrupt."""
    if len(marker) != MARKER_SIZE:
        return None
    (value,) = struct.unpack(NATIVE_U32, marker)
    if value == BYTE_ORDER_MAGIC:
        return False
    (value,) = struct.unpack(SWAPPED_ORDER + "I", marker)
    if value == BYTE_ORDER_MAGIC:
        return True
    return None


def file_byteorder(swap: bool) -> str:
    return SWAPPED_ORDER if swap else HOST_ORDER


def resolve_byteorder(byteorder: str) -> str:
    """Map ``=``, ``<``, ``>``, ``little``, ``big`` to ``<`` or ``>``."""
    if byteorder in ("=", "native"):
        return HOST_ORDER
    if byteorder in ("<", "little"):
        return "<"
    if byteorder in (">", "big"):
        return ">"
    raise ValueError(f"unknown byte order: {byteorder!r}")


def marker_bytes(byteorder: str) -> bytes:
    return struct.pack(resolve_byteorder(byteorder) + "I", BYTE_ORDER_MAGIC)


# ── dtype helpers ──────────────────────────────────────────────────────────


def as_dtype(dtype) -> np.dtype:
    """Accept a numpy dtype-like or a bare element size.

    A plain integer is read as an unsigned integer of that width.  Only
    bool, integer and float scalars are accepted; complex values have no
    single-word layout and are rejected.
    """
    if isinstance(dtype, (int, np.integer)) and not isinstance(dtype, bool):
        if int(dtype) not in ELEMENT_SIZES:
            raise ValueError(f"unsupported element size: {dtype}")
        return np.dtype(f"u{int(dtype)}")
    dt = np.dtype(dtype)
    if dt.kind not in "biuf" or dt.itemsize not in ELEMENT_SIZES:
        raise ValueError(f"unsupported element type: {dt}")
    return dt


def unsigned_view(itemsize: int, byteorder: str) -> np.dtype:
    """Unsigned integer dtype used to read raw elements in *byteorder*."""
    if itemsize == 1:
        return np.dtype("u1")
    return np.dtype(f"{byteorder}u{itemsize}")


# ── Checksum ───────────────────────────────────────────────────────────────


def _rotl(value: int, bits: int) -> int:
    return ((value << bits) | (value >> (32 - bits))) & U32_MASK


def checksum_accum(values: np.ndarray, chksum: int) -> int:
    """Fold the logical unsigned *values* into the running *chksum*.

    *values* must be an unsigned integer array; its item size selects the
    rotation.  8-byte elements are folded as two 4-byte words, low first.
    """
    itemsize = values.dtype.itemsize
    if itemsize == 8:
        words = []
        for v in values.ravel().tolist():
            words.append(v & U32_MASK)
            words.append(v >> 32)
        rot = CHECKSUM_ROTATE[4]
    elif itemsize in CHECKSUM_ROTATE:
        words = values.ravel().tolist()
        rot = CHECKSUM_ROTATE[itemsize]
    else:
        raise ValueError(f"unsupported element size for checksum: {itemsize}")
    for w in words:
        chksum = (_rotl(chksum, rot) + w) & U32_MASK
    return chksum


def payload_nbytes(dims: tuple[int, ...], itemsize: int) -> int:
    n = itemsize
    for d in dims:
        if d < 0:
            raise ValueError(f"negative dimension: {d}")
        n *= d
    return n
