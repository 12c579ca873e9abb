"""s3file – Sphinx-3 binary model-data files parsed from memory."""

__version__ = "0.1.0"

from .format import BYTE_ORDER_MAGIC, MAGIC_LINE, END_HEADER_LINE, checksum_accum
from .reader import (
    ChecksumError,
    HeaderEntry,
    HeaderError,
    ReadError,
    S3Error,
    S3File,
    Span,
    TruncatedError,
    UsageError,
    init,
    release,
    retain,
)
from .writer import S3Writer

__all__ = [
    "__version__",
    "BYTE_ORDER_MAGIC", "MAGIC_LINE", "END_HEADER_LINE", "checksum_accum",
    "S3File", "S3Writer", "HeaderEntry", "Span",
    "S3Error", "HeaderError", "ReadError", "TruncatedError",
    "ChecksumError", "UsageError",
    "init", "retain", "release",
]
