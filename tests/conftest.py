"""Shared helpers for building s3 buffers by hand."""

from __future__ import annotations

import struct
import sys

import pytest

from s3file import log

NATIVE = "<" if sys.byteorder == "little" else ">"
SWAPPED = ">" if NATIVE == "<" else "<"

MAGIC_VALUE = 0x11223344


def marker(order: str = NATIVE) -> bytes:
    return struct.pack(order + "I", MAGIC_VALUE)


def header(*lines: str, order: str = NATIVE) -> bytes:
    """``s3`` + *lines* + ``endhdr`` + byte-order marker."""
    body = "".join(line + "\n" for line in lines)
    return b"s3\n" + body.encode("utf-8") + b"endhdr\n" + marker(order)


def rotl(value: int, bits: int) -> int:
    return ((value << bits) | (value >> (32 - bits))) & 0xFFFFFFFF


def reference_checksum(data: bytes, el_size: int, order: str, start: int = 0) -> int:
    """Straight-line accumulator over file-order bytes, for comparison."""
    rot = {1: 5, 2: 10, 4: 20}[el_size]
    endian = "little" if order == "<" else "big"
    chksum = start
    for i in range(0, len(data), el_size):
        value = int.from_bytes(data[i : i + el_size], endian)
        chksum = (rotl(chksum, rot) + value) & 0xFFFFFFFF
    return chksum


@pytest.fixture(autouse=True)
def _reset_logging():
    log.reset()
    yield
    log.reset()
