#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
rsync-blocksync: Block-Level Delta Synchronization over Byte-Range Transports
=============================================================================

A client holding an older copy of a file rebuilds the current version by
fetching a compact checksum index from the holder of that version, matching
its own bytes against the index with the rsync rolling checksum, and
downloading only the blocks it could not find locally.

Quick Start:
-----------
    >>> from rsync_blocksync import (
    ...     BytesDataSource, DataSourceRequester, BlockSource, PatchEngine,
    ...     build_checksum_index, decode_checksum_index, FileSummary,
    ... )
    >>> import io
    >>>
    >>> remote = BytesDataSource(b"The quick brown fox jumped over the lazy dog")
    >>> index = decode_checksum_index(build_checksum_index(remote, block_size=4))
    >>> summary = FileSummary.from_index(index, block_size=4)
    >>>
    >>> local = BytesDataSource(b"The quick brown fox jumped over the lazy cat")
    >>> output = io.BytesIO()
    >>> source = BlockSource(DataSourceRequester(remote), summary)
    >>> stats = PatchEngine(local, source, summary, output).patch()
    >>> output.getvalue()
    b'The quick brown fox jumped over the lazy dog'
    >>> stats.remote_blocks
    1

Pipeline:
--------
    holder:  ChecksumGenerator -> encode_checksum_index -> transport
    client:  decode_checksum_index -> FileSummary / BlockIndex
             PatchEngine(local file, BlockSource(Requester)) -> output file

Checksum Index Wire Format (little-endian):
------------------------------------------
    offset 0   int64   file size
    offset 8   uint32  weak checksum width
    offset 12  uint32  strong checksum width
    offset 16  records: weak bytes + strong bytes, one per block, to EOF

CLI Usage:
---------
    $ rsync-blocksync serve remote.bin --port 8000
    $ rsync-blocksync patch local.bin http://localhost:8000 -b 4096 -o new.bin
    $ rsync-blocksync index remote.bin -b 4096 -o remote.idx
    $ rsync-blocksync inspect remote.idx -b 4096

Copyright:
---------
    rsync algorithm: Andrew Tridgell, Paul Mackerras
    Python implementation: Alejandro Sanchez (2024-2026)
    License: GPLv3+

References:
----------
    [1] Tridgell (1999): PhD Thesis - https://www.samba.org/~tridge/phd_thesis.pdf
    [2] rsync source: https://github.com/WayneD/rsync
"""

from __future__ import annotations

__version__ = "1.0.0"
__author__ = "Alejandro Sanchez"
__email__ = "alesangreat@gmail.com"
__license__ = "GPL-3.0-or-later"
__copyright__ = "Copyright (C) 2024-2026 Alejandro Sanchez"

# Public API exports
__all__ = [
    # Checksums
    'Checksum',
    'ChecksumType',
    'ChecksumRegistry',
    'ChecksumGenerator',

    # Index data model and codec
    'ChecksumRecord',
    'ChecksumIndex',
    'BlockIndex',
    'FileSummary',
    'encode_checksum_index',
    'write_checksum_index',
    'decode_checksum_index',
    'build_checksum_index',

    # Transport
    'Requester',
    'DataSourceRequester',
    'HttpRequester',
    'BlockSource',
    'call_with_retries',
    'fetch_summary',

    # Reconstruction
    'CopyLocal',
    'FetchRemote',
    'ReconstructionPlan',
    'PatchEngine',
    'SyncStats',
    'make_patch_engine',
    'sync_file',

    # Reference server
    'ContentEncoding',
    'CompressionRegistry',
    'make_reference_server',

    # Streaming support
    'DataSource',
    'BytesDataSource',
    'FileDataSource',

    # Exceptions
    'BlockSyncError',
    'ValidationError',
    'ReadError',
    'DecodeError',
    'TruncatedStreamError',
    'OutOfRangeError',
    'TransportError',
    'TransportExhaustedError',
    'ChecksumMismatchError',

    # Configuration
    'Config',
    'Colors',

    # Validation / utilities
    'validate_block_size',
    'format_size',
    'format_time',

    # Wire constants
    'HEADER_FORMAT',
    'HEADER_SIZE',
    'WEAK_CHECKSUM_WIDTH',
    'CHECKSUM_PATH',
    'CONTENT_PATH',
    'BLOCK_SIZE_PARAM',
]

import io
import os
import sys
import struct
import hashlib
import logging
import argparse
import shutil
import tempfile
import threading
import time
import zlib
import http.client
import urllib.parse
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import (
    Optional, Tuple, List, Dict, Union, Any, Callable, Protocol, TypeVar,
    cast, Iterator, Iterable, BinaryIO, ClassVar, Deque, Sequence
)
from enum import Enum
from dataclasses import dataclass, field
from abc import ABC, abstractmethod

import xxhash
import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]

# Normalize untyped third-party imports to `Any` for strict type-checkers.
_lz4_frame: Any = cast(Any, lz4.frame)
_zstandard: Any = cast(Any, zstandard)

T = TypeVar('T')

# ============================================================================
# WIRE CONSTANTS - Checksum index stream layout
# ============================================================================

HEADER_FORMAT = '<qII'  # file size, weak width, strong width
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 16 bytes

# The rolling checksum is (s2 << 16) | s1, transmitted as 4 little-endian bytes.
WEAK_CHECKSUM_WIDTH = 4

MD5_DIGEST_LEN = 16
SHA1_DIGEST_LEN = 20
SHA256_DIGEST_LEN = 32

KB = 1024
MB = 1024 * KB

MAX_BLOCK_SIZE_LIMIT = 64 * MB

# Routes served by the reference holder (see make_reference_server)
CHECKSUM_PATH = '/checksum'
CONTENT_PATH = '/content'
BLOCK_SIZE_PARAM = 'blockSize'


# ============================================================================
# GLOBAL CONFIGURATION - Performance and behavior tuning
# ============================================================================

class Config:
    """
    Global configuration for rsync-blocksync behavior.

    Constructors read these values when the corresponding argument is left
    as None, so settings changed at runtime apply to objects created later.

    Attributes:
        DEFAULT_BLOCK_SIZE (int): Block size used when none is requested
        STRONG_CHECKSUM (ChecksumType): Strong checksum algorithm
        CONCURRENCY (int): Concurrent range requests per BlockSource
        MAX_OUTSTANDING_BYTES (int): Requested-but-unconsumed byte budget
        MAX_REQUEST_BYTES (int): Largest single coalesced range request
        MAX_ATTEMPTS (int): Attempts per range request before giving up
        RETRY_BACKOFF_BASE (float): First retry delay in seconds
        RETRY_BACKOFF_MAX (float): Upper bound for a single retry delay
        HTTP_TIMEOUT (float): Socket timeout for HTTP requests
        SCAN_CHUNK_SIZE (int): Read size while scanning the local file
        VERBOSE_LOGGING (bool): Enable verbose logging output
        USE_COLORS (bool): Enable colored terminal output (auto-detected)
        COLLECT_STATS (bool): Log match statistics after each patch

    Example:
        >>> Config.CONCURRENCY = 4
        >>> Config.MAX_ATTEMPTS = 5
        >>> Config.reset_defaults()  # Reset all to defaults
    """
    # Algorithm settings
    DEFAULT_BLOCK_SIZE: ClassVar[int] = 1 * MB
    STRONG_CHECKSUM: ClassVar['ChecksumType']  # assigned after ChecksumType

    # Transport settings
    CONCURRENCY: ClassVar[int] = 1
    MAX_OUTSTANDING_BYTES: ClassVar[int] = 4 * MB
    MAX_REQUEST_BYTES: ClassVar[int] = 4 * MB
    MAX_ATTEMPTS: ClassVar[int] = 3
    RETRY_BACKOFF_BASE: ClassVar[float] = 0.1
    RETRY_BACKOFF_MAX: ClassVar[float] = 5.0
    HTTP_TIMEOUT: ClassVar[float] = 30.0

    # Performance settings
    SCAN_CHUNK_SIZE: ClassVar[int] = 1 * MB

    # UI settings
    USE_COLORS: ClassVar[bool] = True
    VERBOSE_LOGGING: ClassVar[bool] = False

    # Statistics collection
    COLLECT_STATS: ClassVar[bool] = False

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "DEFAULT_BLOCK_SIZE": 1 * MB,
            "STRONG_CHECKSUM": ChecksumType.MD5,
            "CONCURRENCY": 1,
            "MAX_OUTSTANDING_BYTES": 4 * MB,
            "MAX_REQUEST_BYTES": 4 * MB,
            "MAX_ATTEMPTS": 3,
            "RETRY_BACKOFF_BASE": 0.1,
            "RETRY_BACKOFF_MAX": 5.0,
            "HTTP_TIMEOUT": 30.0,
            "SCAN_CHUNK_SIZE": 1 * MB,
            "USE_COLORS": True,
            "VERBOSE_LOGGING": False,
            "COLLECT_STATS": False,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

# By default keep stdout clean (tests and CLI); --verbose raises the level.
_default_log_level = logging.INFO if Config.VERBOSE_LOGGING else logging.WARNING
logging.basicConfig(
    level=_default_log_level,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('rsync-blocksync')
logger.setLevel(_default_log_level)


# ============================================================================
# UTILITY FUNCTIONS - Formatting and helpers
# ============================================================================

def format_size(size: int) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    value = float(size)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(value) < 1024.0:
            return f"{value:.2f} {unit}" if unit != 'B' else f"{int(value)} {unit}"
        value = value / 1024.0
    return f"{value:.2f} PB"


def format_time(seconds: float) -> str:
    """
    Format time duration in human-readable format.

    Example:
        >>> format_time(0.00123)
        '1.23ms'
    """
    if seconds < 0.001:
        return f"{seconds * 1000000:.0f}µs"
    elif seconds < 1.0:
        return f"{seconds * 1000:.2f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    else:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


# ============================================================================
# TERMINAL COLORS - For CLI output (auto-detects TTY)
# ============================================================================

class Colors:
    """
    ANSI color helpers for terminal output.

    Disabled on non-TTY streams, when Config.USE_COLORS is False, or when
    the NO_COLOR environment variable is set.

    Example:
        >>> print(Colors.success("Patched"))
        [OK] Patched
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'
    _BLUE = '\033[94m'

    @classmethod
    def _is_enabled(cls) -> bool:
        """Check if colors should be enabled."""
        if not Config.USE_COLORS or os.environ.get('NO_COLOR'):
            return False
        return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        """Format text as success (green with checkmark)."""
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        """Format text as error (red with X)."""
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        """Format text as warning (yellow with !)."""
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"

    @classmethod
    def info(cls, text: str) -> str:
        """Format text as info (blue with i)."""
        if cls._is_enabled():
            return f"{cls._BLUE}ℹ{cls._RESET} {text}"
        return f"[INFO] {text}"

    @classmethod
    def bold(cls, text: str) -> str:
        """Format text as bold."""
        if cls._is_enabled():
            return f"{cls._BOLD}{text}{cls._RESET}"
        return text


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================

class BlockSyncError(Exception):
    """
    Base exception for all rsync-blocksync errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code, also used as the CLI exit status

    Example:
        >>> raise BlockSyncError("Operation failed", code=1)
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(BlockSyncError):
    """
    Raised when input validation fails.

    This indicates a programming error or invalid user input, such as a
    non-positive block size or a checksum width the algorithm cannot supply.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class DecodeError(BlockSyncError):
    """
    Raised when a checksum index stream is malformed.

    Retrying a malformed index is pointless, so this is never retried.
    """
    def __init__(self, message: str, code: int = 5) -> None:
        super().__init__(message, code)


class TruncatedStreamError(DecodeError):
    """Raised when the record section is not a whole number of records."""


class ReadError(BlockSyncError):
    """
    Raised when a local byte source cannot be read to its declared size.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=6)


class OutOfRangeError(BlockSyncError):
    """Raised for a block index beyond the known block count."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=7)


class TransportError(BlockSyncError):
    """
    Raised by a Requester when a range request fails.

    Transport errors are transient by assumption and are retried with
    backoff by call_with_retries().
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=8)


class TransportExhaustedError(BlockSyncError):
    """
    Raised when every retry attempt of a request failed.

    Attributes:
        attempts: Number of attempts made
        last_error: The TransportError of the final attempt
    """
    def __init__(self, message: str, attempts: int,
                 last_error: Optional[TransportError] = None) -> None:
        super().__init__(message, code=9)
        self.attempts = attempts
        self.last_error = last_error


class ChecksumMismatchError(BlockSyncError):
    """
    Raised when fetched block data disagrees with the index.

    Either the index is stale or the remote content is corrupt; neither is
    fixed by retrying, so the enclosing patch operation fails.

    Attributes:
        block_index: The block whose strong checksum did not match
    """
    def __init__(self, message: str, block_index: int) -> None:
        super().__init__(message, code=10)
        self.block_index = block_index


# ============================================================================
# INPUT VALIDATION
# ============================================================================

def validate_block_size(block_size: int) -> None:
    """
    Validate block size is within acceptable range.

    Raises:
        ValidationError: If block_size is invalid

    Example:
        >>> validate_block_size(4096)  # OK
        >>> validate_block_size(0)  # Raises ValidationError
    """
    if isinstance(block_size, bool) or not isinstance(block_size, int):
        raise ValidationError(f"block_size must be an integer, got {type(block_size).__name__}")
    if block_size <= 0:
        raise ValidationError(f"block_size must be positive, got {block_size}")
    if block_size > MAX_BLOCK_SIZE_LIMIT:
        raise ValidationError(
            f"block_size too large ({block_size}), maximum is {MAX_BLOCK_SIZE_LIMIT} bytes"
        )


def _validate_positive(name: str, value: int) -> None:
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


# ============================================================================
# STREAMING DATA SOURCES - Seekable byte sources for local and reference files
# ============================================================================

class DataSource(ABC):
    """
    Abstract base class for seekable byte sources.

    DataSource provides a unified interface for reading data from memory or
    files in a streaming fashion, so neither the reference file nor the
    local file has to fit in memory.

    Subclasses must implement read_chunk(), size(), and seek() methods.

    Example:
        >>> with FileDataSource("large_file.bin") as source:
        ...     while chunk := source.read_chunk(4096):
        ...         process(chunk)
    """

    @abstractmethod
    def read_chunk(self, size: int) -> bytes:
        """
        Read a chunk of data from the source.

        Args:
            size: Maximum bytes to read

        Returns:
            Bytes read (may be less than size near EOF, empty at EOF)
        """
        raise NotImplementedError

    @abstractmethod
    def size(self) -> int:
        """Get total size of the data source in bytes."""
        raise NotImplementedError

    @abstractmethod
    def seek(self, offset: int) -> None:
        """Seek to a byte offset from the start."""
        raise NotImplementedError

    def read_at(self, offset: int, length: int) -> bytes:
        """
        Read up to length bytes starting at offset.

        Short reads from the underlying source are retried until length
        bytes arrive or the source reports EOF.
        """
        self.seek(offset)
        parts: List[bytes] = []
        remaining = length
        while remaining > 0:
            chunk = self.read_chunk(remaining)
            if not chunk:
                break
            parts.append(chunk)
            remaining -= len(chunk)
        return b''.join(parts)

    def close(self) -> None:
        """Close the data source and release resources."""
        pass

    def __enter__(self) -> 'DataSource':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class BytesDataSource(DataSource):
    """
    DataSource that reads from in-memory bytes.

    Example:
        >>> source = BytesDataSource(b"Hello, World!")
        >>> source.read_chunk(5)
        b'Hello'
        >>> source.read_at(7, 5)
        b'World'
    """

    def __init__(self, data: Union[bytes, bytearray]) -> None:
        self._data = bytes(data)
        self._position = 0

    def read_chunk(self, size: int) -> bytes:
        chunk = self._data[self._position:self._position + size]
        self._position += len(chunk)
        return chunk

    def size(self) -> int:
        return len(self._data)

    def seek(self, offset: int) -> None:
        self._position = max(0, min(offset, len(self._data)))

    @property
    def position(self) -> int:
        """Current read position."""
        return self._position


class FileDataSource(DataSource):
    """
    DataSource that reads from a file on disk.

    Example:
        >>> with FileDataSource("/path/to/large.iso") as source:
        ...     print(f"File size: {source.size()}")
        ...     first_block = source.read_chunk(4096)
    """

    def __init__(self, filepath: str) -> None:
        """
        Args:
            filepath: Path to the file

        Raises:
            ReadError: If file cannot be accessed
        """
        self.filepath = filepath
        self._file: Optional[BinaryIO] = None
        try:
            self._size = os.path.getsize(filepath)
        except OSError as e:
            raise ReadError(f"Cannot access file {filepath}: {e}") from e

    def __enter__(self) -> 'FileDataSource':
        """Open the file for reading."""
        try:
            self._file = open(self.filepath, 'rb')
        except OSError as e:
            raise ReadError(f"Cannot open file {self.filepath}: {e}") from e
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def read_chunk(self, size: int) -> bytes:
        if not self._file:
            raise RuntimeError("File not opened. Use 'with' statement.")
        try:
            return self._file.read(size)
        except OSError as e:
            raise ReadError(f"Cannot read {self.filepath}: {e}") from e

    def size(self) -> int:
        return self._size

    def seek(self, offset: int) -> None:
        if not self._file:
            raise RuntimeError("File not opened. Use 'with' statement.")
        self._file.seek(offset)

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None

    @property
    def is_open(self) -> bool:
        """Check if file is currently open."""
        return self._file is not None


# ============================================================================
# CHECKSUM TYPES - Strong checksum algorithms
# ============================================================================

class ChecksumType(Enum):
    """
    Supported strong checksum algorithms.

    The index stream records only the strong checksum width, so holder and
    client must agree on the algorithm out of band (Config.STRONG_CHECKSUM).

    Performance Characteristics:
        - xxHash3: ~30GB/s (fastest, non-cryptographic)
        - xxHash64: ~10GB/s (fast, non-cryptographic)
        - MD5: ~500MB/s (cryptographic, default)
        - SHA1: ~400MB/s (cryptographic, stronger)

    Example:
        >>> generator = ChecksumGenerator(4096, checksum_type=ChecksumType.XXH128)
    """
    MD5 = "md5"        # default
    SHA1 = "sha1"
    SHA256 = "sha256"
    XXH64 = "xxh64"    # fast, 64-bit
    XXH3 = "xxh3"      # fastest, 64-bit
    XXH128 = "xxh128"  # fast, 128-bit


Config.STRONG_CHECKSUM = ChecksumType.MD5


class ChecksumRegistry:
    """
    Registry of available strong checksum algorithms.

    Abstracts the underlying implementations (hashlib, xxhash) behind a
    unified bytes -> digest interface.

    Example:
        >>> func = ChecksumRegistry.get_checksum_function(ChecksumType.MD5)
        >>> digest = func(b"Hello, World!")
        >>> print(digest.hex())
    """

    @classmethod
    def get_checksum_function(cls, checksum_type: ChecksumType) -> Callable[[bytes], bytes]:
        """
        Get checksum function for given type.

        Raises:
            ValueError: If checksum type is not supported
        """
        if checksum_type == ChecksumType.MD5:
            return cls._md5_checksum
        elif checksum_type == ChecksumType.SHA1:
            return cls._sha1_checksum
        elif checksum_type == ChecksumType.SHA256:
            return cls._sha256_checksum
        elif checksum_type == ChecksumType.XXH64:
            return cls._xxh64_checksum
        elif checksum_type == ChecksumType.XXH3:
            return cls._xxh3_checksum
        elif checksum_type == ChecksumType.XXH128:
            return cls._xxh128_checksum
        else:
            raise ValueError(f"Unsupported checksum type: {checksum_type}")

    @staticmethod
    def _md5_checksum(data: bytes) -> bytes:
        return hashlib.md5(data).digest()

    @staticmethod
    def _sha1_checksum(data: bytes) -> bytes:
        return hashlib.sha1(data).digest()

    @staticmethod
    def _sha256_checksum(data: bytes) -> bytes:
        return hashlib.sha256(data).digest()

    @staticmethod
    def _xxh64_checksum(data: bytes) -> bytes:
        return xxhash.xxh64(data).digest()

    @staticmethod
    def _xxh3_checksum(data: bytes) -> bytes:
        return xxhash.xxh3_64(data).digest()

    @staticmethod
    def _xxh128_checksum(data: bytes) -> bytes:
        return xxhash.xxh3_128(data).digest()

    @staticmethod
    def get_digest_length(checksum_type: ChecksumType) -> int:
        """Get the digest length in bytes for a checksum type."""
        lengths = {
            ChecksumType.MD5: MD5_DIGEST_LEN,
            ChecksumType.SHA1: SHA1_DIGEST_LEN,
            ChecksumType.SHA256: SHA256_DIGEST_LEN,
            ChecksumType.XXH64: 8,
            ChecksumType.XXH3: 8,
            ChecksumType.XXH128: 16,
        }
        return lengths[checksum_type]


# ============================================================================
# CHECKSUM IMPLEMENTATION - Rolling weak checksum + strong digest
# ============================================================================

class Checksum:
    """
    Implements the rsync rolling checksum and the configured strong digest.

    1. Rolling Checksum (Weak Checksum):
       A 32-bit checksum based on Adler-32 that can be updated in O(1) as a
       window slides by one byte:

           s1 = Σ data[i] mod 2^16
           s2 = Σ (n-i) * data[i] mod 2^16
           checksum = (s2 << 16) | s1

    2. Strong Checksum:
       A digest (MD5 by default) that confirms a weak checksum candidate.

    Example:
        >>> cs = Checksum()
        >>> weak = cs.rolling_checksum(b"Hello, World!")
        >>> strong = cs.strong_checksum(b"Hello, World!")
    """

    def __init__(self, checksum_type: Optional[ChecksumType] = None) -> None:
        self.checksum_type = checksum_type or Config.STRONG_CHECKSUM
        self.strong_checksum_func = ChecksumRegistry.get_checksum_function(self.checksum_type)
        self.digest_length = ChecksumRegistry.get_digest_length(self.checksum_type)

    @staticmethod
    def rolling_checksum(
        data: Union[bytes, bytearray, memoryview],
        offset: int = 0,
        length: Optional[int] = None
    ) -> int:
        """
        Calculate the weak rolling checksum of data[offset:offset+length].

        Returns:
            32-bit checksum as (s1 & 0xFFFF) | (s2 << 16)

        Example:
            >>> hex(Checksum.rolling_checksum(b"abc"))
            '0x24a0126'
        """
        if length is None:
            length = len(data) - offset

        s1 = 0
        s2 = 0
        for i in range(offset, offset + length):
            s1 = (s1 + data[i]) & 0xFFFF
            s2 = (s2 + s1) & 0xFFFF

        return s1 | (s2 << 16)

    @staticmethod
    def rolling_update(
        old_byte: int,
        new_byte: int,
        old_s1: int,
        old_s2: int,
        length: int
    ) -> Tuple[int, int]:
        """
        Update the rolling checksum when the window slides one byte.

            s1_new = s1_old - old_byte + new_byte
            s2_new = s2_old - (length * old_byte) + s1_new

        Args:
            old_byte: Byte leaving the window (at position 0)
            new_byte: Byte entering the window (at position length)
            old_s1: Current s1 component
            old_s2: Current s2 component
            length: Window size

        Returns:
            Tuple of (new_s1, new_s2)
        """
        new_s1 = (old_s1 - old_byte + new_byte) & 0xFFFF
        new_s2 = (old_s2 - length * old_byte + new_s1) & 0xFFFF
        return new_s1, new_s2

    @staticmethod
    def combine_checksum(s1: int, s2: int) -> int:
        """Combine s1 and s2 components into 32-bit checksum."""
        return (s1 & 0xFFFF) | ((s2 & 0xFFFF) << 16)

    @staticmethod
    def checksum_components(checksum: int) -> Tuple[int, int]:
        """Extract s1 and s2 components from 32-bit checksum."""
        return checksum & 0xFFFF, (checksum >> 16) & 0xFFFF

    def strong_checksum(self, data: Union[bytes, bytearray, memoryview]) -> bytes:
        """Calculate strong checksum using the configured algorithm."""
        return self.strong_checksum_func(bytes(data))


# ============================================================================
# INDEX DATA MODEL - Records, lookup structure, file summary
# ============================================================================

@dataclass(frozen=True)
class ChecksumRecord:
    """
    Checksums of a single block; the block index is the record's position.

    Attributes:
        weak_checksum: 32-bit rolling checksum of the block
        strong_checksum: Strong digest (or digest prefix) of the block
    """
    weak_checksum: int
    strong_checksum: bytes

    def __repr__(self) -> str:
        return (
            f"ChecksumRecord(weak=0x{self.weak_checksum:08x}, "
            f"strong={self.strong_checksum.hex()[:16]}...)"
        )


class BlockIndex:
    """
    Lookup structure over the records of a checksum index.

    Weak checksums collide by design, so candidates_for() returns every
    block recorded under a weak value, in block order. Each candidate must
    be confirmed with strong_checksum_of() before it is trusted.

    The index is built once and never mutated, so it can be shared by any
    number of fetch workers.

    Example:
        >>> idx = BlockIndex(records)
        >>> for block in idx.candidates_for(weak):
        ...     if idx.strong_checksum_of(block) == strong:
        ...         print(f"block {block} matches")
    """

    def __init__(self, records: Sequence[ChecksumRecord]) -> None:
        self._strong: Tuple[bytes, ...] = tuple(r.strong_checksum for r in records)
        table: Dict[int, List[int]] = {}
        for i, record in enumerate(records):
            table.setdefault(record.weak_checksum, []).append(i)
        self._table: Dict[int, Tuple[int, ...]] = {
            weak: tuple(indices) for weak, indices in table.items()
        }

    def candidates_for(self, weak_checksum: int) -> Tuple[int, ...]:
        """Block indices sharing this weak checksum (possibly empty)."""
        return self._table.get(weak_checksum, ())

    def strong_checksum_of(self, block_index: int) -> bytes:
        """
        Stored strong checksum of a block.

        Raises:
            OutOfRangeError: If block_index is outside [0, block_count)
        """
        if not 0 <= block_index < len(self._strong):
            raise OutOfRangeError(
                f"block index {block_index} out of range (block count {len(self._strong)})"
            )
        return self._strong[block_index]

    @property
    def block_count(self) -> int:
        return len(self._strong)

    def __len__(self) -> int:
        return len(self._strong)


@dataclass(frozen=True)
class ChecksumIndex:
    """
    A decoded checksum index: header fields plus ordered records.

    Attributes:
        file_size: Size of the reference file in bytes
        weak_width: Bytes per weak checksum on the wire
        strong_width: Bytes per strong checksum on the wire
        records: One ChecksumRecord per block, in block order
        lookup: BlockIndex built from records
    """
    file_size: int
    weak_width: int
    strong_width: int
    records: Tuple[ChecksumRecord, ...]
    lookup: BlockIndex = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'records', tuple(self.records))
        object.__setattr__(self, 'lookup', BlockIndex(self.records))

    @property
    def record_size(self) -> int:
        return self.weak_width + self.strong_width

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class FileSummary:
    """
    Reference file geometry plus its checksum index.

    Invariant: block_count == ceil(file_size / block_size) == len(index), and
    the last block holds file_size - block_size * (block_count - 1) bytes.

    Example:
        >>> summary = FileSummary.from_index(index, block_size=4)
        >>> summary.block_range(10)
        (40, 44)
    """
    file_size: int
    block_size: int
    index: ChecksumIndex

    @classmethod
    def from_index(cls, index: ChecksumIndex, block_size: int) -> 'FileSummary':
        """
        Bind a decoded index to the block size it was generated with.

        Raises:
            ValidationError: If block_size is invalid
            DecodeError: If the record count disagrees with the file size
        """
        validate_block_size(block_size)
        expected = _ceil_div(index.file_size, block_size)
        if expected != len(index.records):
            raise DecodeError(
                f"index holds {len(index.records)} records but a {index.file_size}-byte "
                f"file has {expected} blocks of {block_size} bytes"
            )
        return cls(file_size=index.file_size, block_size=block_size, index=index)

    @property
    def block_count(self) -> int:
        return len(self.index.records)

    @property
    def lookup(self) -> BlockIndex:
        return self.index.lookup

    def _check(self, block_index: int) -> None:
        if not 0 <= block_index < self.block_count:
            raise OutOfRangeError(
                f"block index {block_index} out of range (block count {self.block_count})"
            )

    def block_offset(self, block_index: int) -> int:
        self._check(block_index)
        return block_index * self.block_size

    def block_length(self, block_index: int) -> int:
        self._check(block_index)
        if block_index == self.block_count - 1:
            return self.file_size - self.block_size * block_index
        return self.block_size

    def block_range(self, block_index: int) -> Tuple[int, int]:
        """Byte range [start, end) of a block in the reference file."""
        start = self.block_offset(block_index)
        return start, start + self.block_length(block_index)

    def __repr__(self) -> str:
        return (
            f"FileSummary(file_size={format_size(self.file_size)}, "
            f"blocks={self.block_count}, block_size={self.block_size}, "
            f"weak={self.index.weak_width}B, strong={self.index.strong_width}B)"
        )


# ============================================================================
# CHECKSUM GENERATOR - Per-block checksums of a reference source
# ============================================================================

class ChecksumGenerator:
    """
    Scan a byte source in fixed-size blocks and checksum each block.

    The final block may be shorter than block_size; it is checksummed over
    exactly its own bytes.

    Attributes:
        block_size: Size of each block
        checksum: Rolling/strong checksum calculator
        strong_width: Bytes of the strong digest kept per record

    Example:
        >>> generator = ChecksumGenerator(block_size=4)
        >>> with FileDataSource("remote.txt") as source:
        ...     for record in generator.generate(source):
        ...         print(record)
    """

    def __init__(
        self,
        block_size: int,
        checksum_type: Optional[ChecksumType] = None,
        strong_width: Optional[int] = None
    ) -> None:
        validate_block_size(block_size)
        self.block_size = block_size
        self.checksum = Checksum(checksum_type)
        if strong_width is None:
            strong_width = self.checksum.digest_length
        if not 0 < strong_width <= self.checksum.digest_length:
            raise ValidationError(
                f"strong_width must be in 1..{self.checksum.digest_length} for "
                f"{self.checksum.checksum_type.value}, got {strong_width}"
            )
        self.strong_width = strong_width

    @property
    def weak_width(self) -> int:
        return WEAK_CHECKSUM_WIDTH

    def generate(self, source: DataSource,
                 file_size: Optional[int] = None) -> Iterator[ChecksumRecord]:
        """
        Yield one ChecksumRecord per block, in block order.

        Each call seeks the source back to the start, so the sequence can be
        regenerated from the same source.

        Args:
            source: Seekable byte source
            file_size: Declared size (defaults to source.size())

        Raises:
            ReadError: If the source ends before file_size bytes were read
        """
        expected = source.size() if file_size is None else file_size
        if expected < 0:
            raise ValidationError(f"file_size cannot be negative ({expected})")

        source.seek(0)
        offset = 0
        while offset < expected:
            want = min(self.block_size, expected - offset)
            block = self._read_block(source, want)
            if len(block) != want:
                raise ReadError(
                    f"source ended after {offset + len(block)} of {expected} bytes"
                )
            yield ChecksumRecord(
                weak_checksum=self.checksum.rolling_checksum(block),
                strong_checksum=self.checksum.strong_checksum(block)[:self.strong_width],
            )
            offset += want

    @staticmethod
    def _read_block(source: DataSource, want: int) -> bytes:
        parts: List[bytes] = []
        remaining = want
        while remaining > 0:
            try:
                chunk = source.read_chunk(remaining)
            except OSError as e:
                raise ReadError(f"cannot read source: {e}") from e
            if not chunk:
                break
            parts.append(chunk)
            remaining -= len(chunk)
        return b''.join(parts)


# ============================================================================
# CHECKSUM INDEX CODEC - Self-describing flat byte stream
# ============================================================================

def _pack_record(record: ChecksumRecord, weak_width: int, strong_width: int) -> bytes:
    try:
        weak = record.weak_checksum.to_bytes(weak_width, 'little')
    except OverflowError as e:
        raise ValidationError(
            f"weak checksum 0x{record.weak_checksum:x} does not fit in {weak_width} bytes"
        ) from e
    if len(record.strong_checksum) < strong_width:
        raise ValidationError(
            f"strong checksum has {len(record.strong_checksum)} bytes, "
            f"index declares {strong_width}"
        )
    return weak + record.strong_checksum[:strong_width]


def write_checksum_index(
    stream: BinaryIO,
    file_size: int,
    weak_width: int,
    strong_width: int,
    records: Iterable[ChecksumRecord]
) -> int:
    """
    Write the index header and records to a binary stream.

    Records carry no length prefix; the end of the stream ends the records.

    Returns:
        Number of records written
    """
    if file_size < 0:
        raise ValidationError(f"file_size cannot be negative ({file_size})")
    _validate_positive("weak_width", weak_width)
    _validate_positive("strong_width", strong_width)

    stream.write(struct.pack(HEADER_FORMAT, file_size, weak_width, strong_width))
    count = 0
    for record in records:
        stream.write(_pack_record(record, weak_width, strong_width))
        count += 1
    return count


def encode_checksum_index(
    file_size: int,
    weak_width: int,
    strong_width: int,
    records: Iterable[ChecksumRecord]
) -> bytes:
    """
    Encode an index into bytes.

    Example:
        >>> data = encode_checksum_index(0, 4, 16, [])
        >>> len(data)
        16
    """
    buf = io.BytesIO()
    write_checksum_index(buf, file_size, weak_width, strong_width, records)
    return buf.getvalue()


def build_checksum_index(
    source: DataSource,
    block_size: int,
    checksum_type: Optional[ChecksumType] = None,
    strong_width: Optional[int] = None
) -> bytes:
    """
    Generate and encode the checksum index of a whole source.

    This is what the holder of the current file serves for a block size.
    """
    generator = ChecksumGenerator(block_size, checksum_type, strong_width)
    file_size = source.size()
    return encode_checksum_index(
        file_size,
        generator.weak_width,
        generator.strong_width,
        generator.generate(source, file_size),
    )


def _read_up_to(reader: BinaryIO, size: int) -> bytes:
    parts: List[bytes] = []
    remaining = size
    while remaining > 0:
        chunk = reader.read(remaining)
        if not chunk:
            break
        parts.append(chunk)
        remaining -= len(chunk)
    return b''.join(parts)


def decode_checksum_index(data: Union[bytes, bytearray, BinaryIO]) -> ChecksumIndex:
    """
    Decode an index stream produced by encode_checksum_index().

    Args:
        data: Encoded bytes or a readable binary stream

    Returns:
        ChecksumIndex with its BlockIndex lookup built

    Raises:
        DecodeError: Header missing/malformed or non-positive widths
        TruncatedStreamError: Record section not a multiple of the record size
    """
    reader: BinaryIO = io.BytesIO(bytes(data)) if isinstance(data, (bytes, bytearray)) else data

    header = _read_up_to(reader, HEADER_SIZE)
    if len(header) != HEADER_SIZE:
        raise DecodeError(f"index header needs {HEADER_SIZE} bytes, got {len(header)}")
    file_size, weak_width, strong_width = struct.unpack(HEADER_FORMAT, header)

    if file_size < 0:
        raise DecodeError(f"index declares negative file size ({file_size})")
    if weak_width <= 0 or strong_width <= 0:
        raise DecodeError(
            f"index widths must be positive (weak={weak_width}, strong={strong_width})"
        )

    record_size = weak_width + strong_width
    records: List[ChecksumRecord] = []
    while True:
        raw = _read_up_to(reader, record_size)
        if not raw:
            break
        if len(raw) != record_size:
            raise TruncatedStreamError(
                f"record {len(records)} truncated: {len(raw)} of {record_size} bytes"
            )
        records.append(ChecksumRecord(
            weak_checksum=int.from_bytes(raw[:weak_width], 'little'),
            strong_checksum=raw[weak_width:],
        ))

    logger.debug(f"Decoded index: file_size={file_size} records={len(records)} "
                 f"weak={weak_width} strong={strong_width}")
    return ChecksumIndex(
        file_size=file_size,
        weak_width=weak_width,
        strong_width=strong_width,
        records=tuple(records),
    )


# ============================================================================
# TRANSPORT - Requesters and retry policy
# ============================================================================

class Requester(Protocol):
    """
    Raw byte-range transport.

    fetch(start, end) returns exactly the bytes [start, end) of the
    reference file or raises TransportError. No retry or verification
    happens here; BlockSource layers those on top.
    """
    def fetch(self, start: int, end: int) -> bytes: ...


class DataSourceRequester:
    """
    Requester serving ranges from a DataSource held in-process.

    Useful when the reference copy is reachable as a file (mounted share,
    local mirror) and in tests.
    """

    def __init__(self, source: DataSource) -> None:
        self.source = source
        self._lock = threading.Lock()

    def fetch(self, start: int, end: int) -> bytes:
        with self._lock:
            try:
                data = self.source.read_at(start, end - start)
            except (OSError, ReadError) as e:
                raise TransportError(f"range {start}-{end}: {e}") from e
        if len(data) != end - start:
            raise TransportError(
                f"range {start}-{end}: got {len(data)} of {end - start} bytes"
            )
        return data


def _open_connection(parts: urllib.parse.SplitResult,
                     timeout: float) -> http.client.HTTPConnection:
    if parts.scheme == 'https':
        return http.client.HTTPSConnection(parts.netloc, timeout=timeout)
    if parts.scheme == 'http':
        return http.client.HTTPConnection(parts.netloc, timeout=timeout)
    raise ValidationError(f"unsupported URL scheme: {parts.scheme!r}")


def _http_get(url: str, headers: Dict[str, str], timeout: float,
              accept_status: Tuple[int, ...] = (200,)) -> Tuple[int, Dict[str, str], bytes]:
    """
    GET a URL on a fresh connection.

    Raises:
        TransportError: On socket/protocol errors or an unexpected status
    """
    parts = urllib.parse.urlsplit(url)
    target = parts.path or '/'
    if parts.query:
        target += '?' + parts.query

    conn = _open_connection(parts, timeout)
    try:
        conn.request('GET', target, headers=headers)
        response = conn.getresponse()
        body = response.read()
        response_headers = {k.lower(): v for k, v in response.getheaders()}
    except (OSError, http.client.HTTPException) as e:
        raise TransportError(f"GET {url}: {e}") from e
    finally:
        conn.close()

    if response.status not in accept_status:
        raise TransportError(f"GET {url}: HTTP {response.status} {response.reason}")
    return response.status, response_headers, body


class HttpRequester:
    """
    Requester issuing HTTP range requests against the reference file URL.

    Each fetch uses its own connection, so one instance can serve several
    fetch workers concurrently.

    Example:
        >>> requester = HttpRequester("http://localhost:8000/content")
        >>> requester.fetch(0, 4)
        b'The '
    """

    def __init__(self, url: str, timeout: Optional[float] = None) -> None:
        self.url = url
        self.timeout = Config.HTTP_TIMEOUT if timeout is None else timeout

    def fetch(self, start: int, end: int) -> bytes:
        length = end - start
        status, _, body = _http_get(
            self.url,
            {'Range': f"bytes={start}-{end - 1}"},
            self.timeout,
            accept_status=(200, 206),
        )
        if status == 200:
            # Server ignored the range and sent the whole file.
            body = body[start:end]
        if len(body) != length:
            raise TransportError(
                f"GET {self.url} bytes={start}-{end - 1}: got {len(body)} of {length} bytes"
            )
        logger.debug(f"Fetched {self.url} [{start}, {end})")
        return body


def call_with_retries(
    operation: Callable[[], T],
    description: str,
    max_attempts: Optional[int] = None,
    backoff_base: Optional[float] = None,
    backoff_max: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run operation, retrying TransportError with exponential backoff.

    The delay before attempt n+1 is min(backoff_base * 2**(n-1), backoff_max).
    Any other exception propagates immediately.

    Raises:
        TransportExhaustedError: If every attempt raised TransportError
    """
    attempts = Config.MAX_ATTEMPTS if max_attempts is None else max_attempts
    base = Config.RETRY_BACKOFF_BASE if backoff_base is None else backoff_base
    cap = Config.RETRY_BACKOFF_MAX if backoff_max is None else backoff_max
    _validate_positive("max_attempts", attempts)

    last_error: Optional[TransportError] = None
    for attempt in range(attempts):
        if attempt:
            delay = min(base * (2 ** (attempt - 1)), cap)
            logger.warning(
                f"{description}: attempt {attempt} failed ({last_error}), "
                f"retrying in {delay:.2f}s"
            )
            sleep(delay)
        try:
            return operation()
        except TransportError as e:
            last_error = e

    raise TransportExhaustedError(
        f"{description}: giving up after {attempts} attempts: {last_error}",
        attempts=attempts,
        last_error=last_error,
    ) from last_error


# ============================================================================
# BLOCK SOURCE - Verified, retried, bounded-concurrency block fetches
# ============================================================================

class BlockSource:
    """
    Fetch reference blocks through a Requester, verifying each one.

    A request covers a span of consecutive blocks (one block for
    fetch_block()); it is retried with backoff on TransportError and every
    block in it is strong-verified against the index. A mismatch raises
    ChecksumMismatchError without retrying and without returning data.

    fetch_blocks() runs up to `concurrency` span requests on a thread pool
    and keeps at most `max_outstanding_bytes` requested but not yet consumed.
    Fetches complete in any order; results are yielded in request order.

    Attributes:
        requester: Raw range transport
        summary: Geometry and checksums of the reference file
        concurrency: Concurrent in-flight requests
        max_outstanding_bytes: Back-pressure budget
        max_request_bytes: Largest coalesced span request
        max_attempts: Attempts per request

    Example:
        >>> source = BlockSource(HttpRequester(url), summary, concurrency=4)
        >>> for block_index, data in source.fetch_blocks([3, 4, 9]):
        ...     output.write(data)
    """

    def __init__(
        self,
        requester: Requester,
        summary: FileSummary,
        checksum_type: Optional[ChecksumType] = None,
        concurrency: Optional[int] = None,
        max_outstanding_bytes: Optional[int] = None,
        max_request_bytes: Optional[int] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.requester = requester
        self.summary = summary
        self.checksum = Checksum(checksum_type)
        self.concurrency = Config.CONCURRENCY if concurrency is None else concurrency
        self.max_outstanding_bytes = (Config.MAX_OUTSTANDING_BYTES
                                      if max_outstanding_bytes is None else max_outstanding_bytes)
        self.max_request_bytes = (Config.MAX_REQUEST_BYTES
                                  if max_request_bytes is None else max_request_bytes)
        self.max_attempts = Config.MAX_ATTEMPTS if max_attempts is None else max_attempts
        self._sleep = sleep

        _validate_positive("concurrency", self.concurrency)
        _validate_positive("max_outstanding_bytes", self.max_outstanding_bytes)
        _validate_positive("max_request_bytes", self.max_request_bytes)
        _validate_positive("max_attempts", self.max_attempts)
        if summary.index.strong_width > self.checksum.digest_length:
            raise ValidationError(
                f"index strong width {summary.index.strong_width} exceeds the "
                f"{self.checksum.checksum_type.value} digest length {self.checksum.digest_length}"
            )

        self._bytes_read = 0
        self._requests = 0
        self._counter_lock = threading.Lock()

    @property
    def bytes_read(self) -> int:
        """Total bytes received from the requester so far."""
        with self._counter_lock:
            return self._bytes_read

    @property
    def requests(self) -> int:
        """Number of successful range requests so far."""
        with self._counter_lock:
            return self._requests

    def _request(self, start: int, end: int) -> bytes:
        data = self.requester.fetch(start, end)
        if len(data) != end - start:
            raise TransportError(
                f"range {start}-{end}: got {len(data)} of {end - start} bytes"
            )
        with self._counter_lock:
            self._bytes_read += len(data)
            self._requests += 1
        return bytes(data)

    def _verify(self, block_index: int, data: bytes) -> None:
        expected = self.summary.lookup.strong_checksum_of(block_index)
        actual = self.checksum.strong_checksum(data)[:len(expected)]
        if actual != expected:
            raise ChecksumMismatchError(
                f"block {block_index}: strong checksum {actual.hex()} does not match "
                f"index {expected.hex()}",
                block_index=block_index,
            )

    def fetch_span(self, first: int, count: int) -> List[bytes]:
        """
        Fetch `count` consecutive blocks starting at `first` in one request.

        Returns:
            Verified block payloads, in block order

        Raises:
            OutOfRangeError: If the span leaves the block range
            TransportExhaustedError: If every attempt failed
            ChecksumMismatchError: If any block fails verification
        """
        _validate_positive("count", count)
        start, _ = self.summary.block_range(first)
        _, end = self.summary.block_range(first + count - 1)

        description = (f"block {first}" if count == 1
                       else f"blocks {first}-{first + count - 1}")
        data = call_with_retries(
            lambda: self._request(start, end),
            description,
            max_attempts=self.max_attempts,
            sleep=self._sleep,
        )

        blocks: List[bytes] = []
        for block_index in range(first, first + count):
            block_start, block_end = self.summary.block_range(block_index)
            block = data[block_start - start:block_end - start]
            self._verify(block_index, block)
            blocks.append(block)
        return blocks

    def fetch_block(self, block_index: int) -> bytes:
        """Fetch and verify a single block."""
        return self.fetch_span(block_index, 1)[0]

    def _spans(self, indices: Iterable[int]) -> Iterator[Tuple[int, int, int]]:
        """Group runs of consecutive indices into (first, count, nbytes) spans."""
        first = -1
        count = 0
        nbytes = 0
        for block_index in indices:
            length = self.summary.block_length(block_index)
            if count and block_index == first + count and nbytes + length <= self.max_request_bytes:
                count += 1
                nbytes += length
                continue
            if count:
                yield first, count, nbytes
            first, count, nbytes = block_index, 1, length
        if count:
            yield first, count, nbytes

    def fetch_blocks(self, indices: Iterable[int]) -> Iterator[Tuple[int, bytes]]:
        """
        Fetch many blocks concurrently, yielding (block_index, data) in order.

        The first failure propagates to the caller; queued requests are
        cancelled and running ones are allowed to drain.
        """
        pool = ThreadPoolExecutor(max_workers=self.concurrency,
                                  thread_name_prefix='blocksource')
        window: Deque[Tuple[int, int, Future]] = deque()
        outstanding = 0
        try:
            for first, count, nbytes in self._spans(indices):
                while window and outstanding + nbytes > self.max_outstanding_bytes:
                    done_first, done_bytes, future = window.popleft()
                    outstanding -= done_bytes
                    for offset, data in enumerate(future.result()):
                        yield done_first + offset, data
                window.append((first, nbytes, pool.submit(self.fetch_span, first, count)))
                outstanding += nbytes

            while window:
                done_first, done_bytes, future = window.popleft()
                outstanding -= done_bytes
                for offset, data in enumerate(future.result()):
                    yield done_first + offset, data
        finally:
            for _, _, future in window:
                future.cancel()
            pool.shutdown(wait=True)


# ============================================================================
# RECONSTRUCTION PLAN - Per-block copy/fetch instructions
# ============================================================================

@dataclass(frozen=True)
class CopyLocal:
    """
    Target block satisfied from the local file.

    Attributes:
        block_index: Target block this instruction produces
        offset: Offset of the matching window in the local file
        length: Number of bytes to copy
    """
    block_index: int
    offset: int
    length: int

    def __repr__(self) -> str:
        return f"CopyLocal(block={self.block_index}, offset={self.offset}, len={self.length})"


@dataclass(frozen=True)
class FetchRemote:
    """Target block that must be downloaded and verified."""
    block_index: int

    def __repr__(self) -> str:
        return f"FetchRemote(block={self.block_index})"


Instruction = Union[CopyLocal, FetchRemote]


@dataclass
class ReconstructionPlan:
    """
    One instruction per target block, in target block order.

    Concatenating the resolved bytes of all instructions yields exactly
    file_size bytes.
    """
    file_size: int
    block_size: int
    instructions: List[Instruction]

    @property
    def local_blocks(self) -> int:
        return sum(1 for i in self.instructions if isinstance(i, CopyLocal))

    @property
    def remote_blocks(self) -> int:
        return sum(1 for i in self.instructions if isinstance(i, FetchRemote))

    @property
    def local_bytes(self) -> int:
        return sum(i.length for i in self.instructions if isinstance(i, CopyLocal))

    @property
    def remote_bytes(self) -> int:
        return self.file_size - self.local_bytes

    @property
    def remote_indices(self) -> List[int]:
        return [i.block_index for i in self.instructions if isinstance(i, FetchRemote)]

    def __len__(self) -> int:
        return len(self.instructions)

    def __repr__(self) -> str:
        return (
            f"ReconstructionPlan(size={format_size(self.file_size)}, "
            f"local={self.local_blocks} blocks/{format_size(self.local_bytes)}, "
            f"remote={self.remote_blocks} blocks/{format_size(self.remote_bytes)})"
        )


@dataclass
class SyncStats:
    """
    Statistics from a patch operation.

    Attributes:
        hash_hits: Windows whose weak checksum had unsatisfied candidates
        false_alarms: Hash hits that failed strong verification
        local_blocks: Target blocks copied from the local file
        remote_blocks: Target blocks fetched remotely
        local_bytes: Bytes copied from the local file
        remote_bytes: Bytes of target blocks fetched remotely
        literal_bytes: Scan positions that matched nothing (never written)
        bytes_downloaded: Bytes received from the requester
        total_time_ms: Wall-clock time of the operation
    """
    hash_hits: int = 0
    false_alarms: int = 0
    local_blocks: int = 0
    remote_blocks: int = 0
    local_bytes: int = 0
    remote_bytes: int = 0
    literal_bytes: int = 0
    bytes_downloaded: int = 0
    total_time_ms: float = 0.0

    @property
    def efficiency(self) -> float:
        """Share of output bytes reused from the local file."""
        total = self.local_bytes + self.remote_bytes
        return self.local_bytes / total if total > 0 else 0.0

    @property
    def false_positive_rate(self) -> float:
        if self.hash_hits == 0:
            return 0.0
        return self.false_alarms / self.hash_hits

    def __repr__(self) -> str:
        return (
            f"SyncStats(local={self.local_blocks}, remote={self.remote_blocks}, "
            f"downloaded={self.bytes_downloaded}, hash_hits={self.hash_hits}, "
            f"false_alarms={self.false_alarms}, efficiency={self.efficiency:.1%})"
        )


# ============================================================================
# PATCH ENGINE - Rolling scan of the local file and ordered reconstruction
# ============================================================================

class PatchEngine:
    """
    Rebuild the reference file from a local copy plus remote blocks.

    build_plan() slides a window over the local file, keeping the weak
    checksum current in O(1) per byte. A window whose weak checksum has
    candidates is strong-hashed once; on a match every unsatisfied candidate
    with that strong checksum is satisfied from that local offset and the
    window jumps past the matched bytes, even when all of them were already
    satisfied. Otherwise it slides one byte. Misses are
    only counted: reconstruction is block-granular, so every block without a
    verified local match is fetched whole.

    A final block shorter than block_size cannot match a full-size window,
    so it gets a second pass with a window of its own length.

    execute() writes blocks strictly in block order: local blocks are read
    on demand, remote blocks arrive from BlockSource.fetch_blocks() in
    request order whatever order the fetches finished in. The write cursor
    only moves forward. Any fetch or verification error aborts the whole
    operation and the output must be discarded.

    Example:
        >>> engine = PatchEngine(local, BlockSource(requester, summary), summary, out)
        >>> stats = engine.patch()
        >>> print(f"Reused {stats.efficiency:.1%}")
    """

    def __init__(
        self,
        local: DataSource,
        source: BlockSource,
        summary: FileSummary,
        output: BinaryIO,
        checksum_type: Optional[ChecksumType] = None,
        scan_chunk_size: Optional[int] = None,
    ) -> None:
        if summary.index.weak_width != WEAK_CHECKSUM_WIDTH:
            raise ValidationError(
                f"weak checksum width {summary.index.weak_width} not supported, "
                f"expected {WEAK_CHECKSUM_WIDTH}"
            )
        self.local = local
        self.source = source
        self.summary = summary
        self.output = output
        self.checksum = Checksum(checksum_type or source.checksum.checksum_type)
        if summary.index.strong_width > self.checksum.digest_length:
            raise ValidationError(
                f"index strong width {summary.index.strong_width} exceeds the "
                f"{self.checksum.checksum_type.value} digest length {self.checksum.digest_length}"
            )
        self.scan_chunk_size = Config.SCAN_CHUNK_SIZE if scan_chunk_size is None else scan_chunk_size
        _validate_positive("scan_chunk_size", self.scan_chunk_size)
        self.stats = SyncStats()

    def build_plan(self) -> ReconstructionPlan:
        """Scan the local file and decide, per target block, copy or fetch."""
        self.stats = SyncStats()
        summary = self.summary
        satisfied: Dict[int, int] = {}

        if summary.block_count:
            self._scan(summary.block_size, satisfied)
            last = summary.block_count - 1
            last_length = summary.block_length(last)
            if (last_length < summary.block_size and last not in satisfied
                    and self.local.size() >= last_length):
                self._scan(last_length, satisfied)

        instructions: List[Instruction] = []
        for block_index in range(summary.block_count):
            if block_index in satisfied:
                instructions.append(CopyLocal(
                    block_index=block_index,
                    offset=satisfied[block_index],
                    length=summary.block_length(block_index),
                ))
            else:
                instructions.append(FetchRemote(block_index=block_index))

        plan = ReconstructionPlan(
            file_size=summary.file_size,
            block_size=summary.block_size,
            instructions=instructions,
        )
        logger.info(f"Plan: {plan}")
        return plan

    def _scan(self, window_len: int, satisfied: Dict[int, int]) -> None:
        local = self.local
        wanted = self.summary.block_count
        local.seek(0)

        buf = bytearray()
        base = 0   # file offset of buf[0]
        pos = 0    # file offset of the window start
        eof = False

        def ensure(end: int) -> bool:
            """Make buf cover [pos, end); False at EOF."""
            nonlocal buf, base, eof
            while base + len(buf) < end:
                if eof:
                    return False
                chunk = local.read_chunk(self.scan_chunk_size)
                if not chunk:
                    eof = True
                    return False
                if pos > base:
                    del buf[:pos - base]
                    base = pos
                buf += chunk
            return True

        s1 = s2 = 0
        fresh = True
        while len(satisfied) < wanted and ensure(pos + window_len):
            start = pos - base
            if fresh:
                s1, s2 = Checksum.checksum_components(
                    Checksum.rolling_checksum(buf, start, window_len)
                )
                fresh = False
            weak = Checksum.combine_checksum(s1, s2)

            if self._match_window(buf, start, pos, window_len, weak, satisfied):
                pos += window_len
                fresh = True
                continue

            self.stats.literal_bytes += 1
            if not ensure(pos + window_len + 1):
                break
            start = pos - base
            s1, s2 = Checksum.rolling_update(
                buf[start], buf[start + window_len], s1, s2, window_len
            )
            pos += 1

    def _match_window(self, buf: bytearray, start: int, offset: int, window_len: int,
                      weak: int, satisfied: Dict[int, int]) -> bool:
        lookup = self.summary.lookup
        candidates = [
            c for c in lookup.candidates_for(weak)
            if self.summary.block_length(c) == window_len
        ]
        if not candidates:
            return False

        self.stats.hash_hits += 1
        digest = self.checksum.strong_checksum(buf[start:start + window_len])
        matched = [
            c for c in candidates
            if digest[:len(lookup.strong_checksum_of(c))] == lookup.strong_checksum_of(c)
        ]
        if not matched:
            self.stats.false_alarms += 1
            return False

        # A window equal to already-satisfied blocks still skips to stay aligned.
        for block_index in matched:
            satisfied.setdefault(block_index, offset)
        return True

    def execute(self, plan: ReconstructionPlan) -> SyncStats:
        """
        Resolve every instruction and write the output in block order.

        Raises:
            ChecksumMismatchError: A fetched block failed verification
            TransportExhaustedError: A fetch ran out of attempts
            ReadError: The local file changed size since the scan
        """
        fetched = self.source.fetch_blocks(plan.remote_indices)
        try:
            for instruction in plan.instructions:
                if isinstance(instruction, CopyLocal):
                    data = self.local.read_at(instruction.offset, instruction.length)
                    if len(data) != instruction.length:
                        raise ReadError(
                            f"local file ended at offset {instruction.offset + len(data)}, "
                            f"block {instruction.block_index} needs {instruction.length} bytes"
                        )
                    self.stats.local_blocks += 1
                    self.stats.local_bytes += len(data)
                else:
                    block_index, data = next(fetched)
                    if block_index != instruction.block_index:
                        raise OutOfRangeError(
                            f"expected block {instruction.block_index}, got {block_index}"
                        )
                    self.stats.remote_blocks += 1
                    self.stats.remote_bytes += len(data)
                self.output.write(data)
        finally:
            fetched.close()

        self.output.flush()
        self.stats.bytes_downloaded = self.source.bytes_read
        return self.stats

    def patch(self) -> SyncStats:
        """Build the plan and execute it."""
        started = time.perf_counter()
        plan = self.build_plan()
        stats = self.execute(plan)
        stats.total_time_ms = (time.perf_counter() - started) * 1000
        if Config.COLLECT_STATS:
            logger.info(f"Patched: {stats}")
        logger.info(f"Downloaded {format_size(stats.bytes_downloaded)} "
                    f"for {format_size(self.summary.file_size)}")
        return stats


# ============================================================================
# CONTENT ENCODINGS - Compression of the checksum index in transit
# ============================================================================

class ContentEncoding(Enum):
    """HTTP content encodings understood for the checksum index response."""
    IDENTITY = "identity"
    DEFLATE = "deflate"  # zlib stream
    LZ4 = "lz4"          # lz4 frame
    ZSTD = "zstd"


# Client preference order for Accept-Encoding
PREFERRED_ENCODINGS: Tuple[ContentEncoding, ...] = (
    ContentEncoding.ZSTD,
    ContentEncoding.LZ4,
    ContentEncoding.DEFLATE,
)


class CompressionRegistry:
    """
    Compress and decompress index payloads by content encoding.

    Example:
        >>> packed = CompressionRegistry.compress(data, ContentEncoding.ZSTD)
        >>> CompressionRegistry.decompress(packed, ContentEncoding.ZSTD) == data
        True
    """
    _zstd_compressors: Dict[int, Any] = {}

    @classmethod
    def compress(cls, data: bytes, encoding: ContentEncoding, level: Optional[int] = None) -> bytes:
        if level is None:
            level = cls.get_compression_level(encoding)
        if encoding == ContentEncoding.IDENTITY:
            return data
        elif encoding == ContentEncoding.DEFLATE:
            return zlib.compress(data, level)
        elif encoding == ContentEncoding.LZ4:
            return cast(bytes, _lz4_frame.compress(data, compression_level=level))
        elif encoding == ContentEncoding.ZSTD:
            return cast(bytes, cls._get_zstd_compressor(level).compress(data))
        else:
            raise ValueError(f"Unsupported content encoding: {encoding}")

    @classmethod
    def decompress(cls, data: bytes, encoding: ContentEncoding) -> bytes:
        """
        Raises:
            DecodeError: If data is not a valid stream for the encoding
        """
        try:
            if encoding == ContentEncoding.IDENTITY:
                return data
            elif encoding == ContentEncoding.DEFLATE:
                return zlib.decompress(data)
            elif encoding == ContentEncoding.LZ4:
                return cast(bytes, _lz4_frame.decompress(data))
            elif encoding == ContentEncoding.ZSTD:
                # Streaming reader: frames written without a content size still decode.
                reader = _zstandard.ZstdDecompressor().stream_reader(io.BytesIO(data))
                return cast(bytes, reader.read())
        except (zlib.error, RuntimeError, _zstandard.ZstdError) as e:
            raise DecodeError(f"cannot decompress {encoding.value} index: {e}") from e
        raise ValueError(f"Unsupported content encoding: {encoding}")

    @classmethod
    def _get_zstd_compressor(cls, level: int) -> Any:
        if level not in cls._zstd_compressors:
            cls._zstd_compressors[level] = _zstandard.ZstdCompressor(level=level)
        return cls._zstd_compressors[level]

    @classmethod
    def get_compression_level(cls, encoding: ContentEncoding) -> int:
        levels = {
            ContentEncoding.IDENTITY: 0,
            ContentEncoding.DEFLATE: 6,
            ContentEncoding.LZ4: 1,   # lz4 uses 0-16, 1 is fast
            ContentEncoding.ZSTD: 3,  # zstd uses 1-22, 3 is balanced
        }
        return levels[encoding]

    @staticmethod
    def from_header(value: Optional[str]) -> ContentEncoding:
        """Map a Content-Encoding header value to a ContentEncoding."""
        token = (value or 'identity').strip().lower()
        for encoding in ContentEncoding:
            if encoding.value == token:
                return encoding
        raise DecodeError(f"unsupported Content-Encoding: {value!r}")

    @staticmethod
    def choose(accept_encoding: Optional[str]) -> ContentEncoding:
        """Pick the first encoding from an Accept-Encoding list that we support."""
        if not accept_encoding:
            return ContentEncoding.IDENTITY
        for item in accept_encoding.split(','):
            token, _, params = item.strip().partition(';')
            if params.strip().replace(' ', '') in ('q=0', 'q=0.0'):
                continue
            for encoding in PREFERRED_ENCODINGS:
                if encoding.value == token.strip().lower():
                    return encoding
        return ContentEncoding.IDENTITY


def _with_query(url: str, params: Dict[str, Any]) -> str:
    parts = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parts.query)
    query.extend((k, str(v)) for k, v in params.items())
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


def fetch_summary(
    checksum_url: str,
    block_size: int,
    timeout: Optional[float] = None,
    max_attempts: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> FileSummary:
    """
    Download and decode the checksum index for a block size.

    Transport failures are retried; a malformed index is not.

    Example:
        >>> summary = fetch_summary("http://localhost:8000/checksum", 4)
        >>> summary.block_count
        11
    """
    validate_block_size(block_size)
    url = _with_query(checksum_url, {BLOCK_SIZE_PARAM: block_size})
    timeout = Config.HTTP_TIMEOUT if timeout is None else timeout
    headers = {'Accept-Encoding': ', '.join(e.value for e in PREFERRED_ENCODINGS)}

    _, response_headers, body = call_with_retries(
        lambda: _http_get(url, headers, timeout),
        f"checksum index {url}",
        max_attempts=max_attempts,
        sleep=sleep,
    )
    encoding = CompressionRegistry.from_header(response_headers.get('content-encoding'))
    data = CompressionRegistry.decompress(body, encoding)
    logger.info(f"Fetched checksum index: {format_size(len(body))} ({encoding.value})")

    summary = FileSummary.from_index(decode_checksum_index(data), block_size)
    logger.info(f"Summary: {summary}")
    return summary


def make_patch_engine(
    local: DataSource,
    content_url: str,
    output: BinaryIO,
    summary: FileSummary,
    concurrency: Optional[int] = None,
    max_attempts: Optional[int] = None,
    checksum_type: Optional[ChecksumType] = None,
) -> PatchEngine:
    """Wire an HttpRequester under a BlockSource into a PatchEngine."""
    source = BlockSource(
        HttpRequester(content_url),
        summary,
        checksum_type=checksum_type,
        concurrency=concurrency,
        max_attempts=max_attempts,
    )
    return PatchEngine(local, source, summary, output, checksum_type=checksum_type)


def sync_file(
    local_path: str,
    base_url: str,
    output_path: str,
    block_size: Optional[int] = None,
    concurrency: Optional[int] = None,
    max_attempts: Optional[int] = None,
    checksum_type: Optional[ChecksumType] = None,
) -> SyncStats:
    """
    Bring output_path up to date with the file served at base_url.

    The result is written to a temporary file next to output_path and
    renamed over it only after the whole file has been reconstructed; on
    failure the temporary file is removed. A missing local file is treated
    as empty, which downloads everything.
    """
    block_size = Config.DEFAULT_BLOCK_SIZE if block_size is None else block_size
    base = base_url.rstrip('/')
    summary = fetch_summary(base + CHECKSUM_PATH, block_size, max_attempts=max_attempts)

    out_dir = os.path.dirname(os.path.abspath(output_path))
    fd, tmp_path = tempfile.mkstemp(prefix='.blocksync-', dir=out_dir)
    try:
        with os.fdopen(fd, 'wb') as out:
            if os.path.exists(local_path):
                with FileDataSource(local_path) as local:
                    engine = make_patch_engine(local, base + CONTENT_PATH, out, summary,
                                               concurrency, max_attempts, checksum_type)
                    stats = engine.patch()
            else:
                logger.info(f"{local_path} does not exist, downloading every block")
                engine = make_patch_engine(BytesDataSource(b''), base + CONTENT_PATH, out,
                                           summary, concurrency, max_attempts, checksum_type)
                stats = engine.patch()
        # mkstemp creates 0600; keep the permissions of the file being replaced.
        if os.path.exists(output_path):
            shutil.copymode(output_path, tmp_path)
        os.replace(tmp_path, output_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
    return stats


# ============================================================================
# REFERENCE SERVER - Serves one file's content ranges and checksum index
# ============================================================================

def _parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """
    Parse a single-range "bytes=" header into an inclusive (first, last).

    Returns None when no usable range was requested (serve the whole file).

    Raises:
        ValueError: If the range is unsatisfiable
    """
    if not header or not header.startswith('bytes=') or ',' in header:
        return None
    first_s, sep, last_s = header[len('bytes='):].strip().partition('-')
    if not sep:
        return None
    try:
        if first_s == '':
            suffix = int(last_s)
            if suffix <= 0:
                raise ValueError("empty suffix range")
            return max(0, size - suffix), size - 1
        first = int(first_s)
        last = int(last_s) if last_s else size - 1
    except ValueError:
        raise ValueError(f"malformed range {header!r}")
    if first >= size or last < first:
        raise ValueError(f"unsatisfiable range {header!r} for {size} bytes")
    return first, min(last, size - 1)


class ReferenceRequestHandler(BaseHTTPRequestHandler):
    """
    GET /content             the reference file, honouring Range
    GET /checksum?blockSize  the encoded checksum index for that block size
    """
    reference_path: ClassVar[str] = ''
    checksum_type: ClassVar[Optional[ChecksumType]] = None
    server_version = f"rsync-blocksync/{__version__}"

    def do_GET(self) -> None:
        parts = urllib.parse.urlsplit(self.path)
        if parts.path == CONTENT_PATH:
            self._send_content()
        elif parts.path == CHECKSUM_PATH:
            self._send_checksum(parts.query)
        else:
            self.send_error(404)

    def _send_content(self) -> None:
        try:
            size = os.path.getsize(self.reference_path)
        except OSError:
            self.send_error(404)
            return
        try:
            byte_range = _parse_range(self.headers.get('Range'), size)
        except ValueError:
            self.send_response(416)
            self.send_header('Content-Range', f"bytes */{size}")
            self.send_header('Content-Length', '0')
            self.end_headers()
            return

        first, last = byte_range if byte_range else (0, size - 1)
        with open(self.reference_path, 'rb') as f:
            f.seek(first)
            body = f.read(last - first + 1) if size else b''

        if byte_range:
            self.send_response(206)
            self.send_header('Content-Range', f"bytes {first}-{last}/{size}")
        else:
            self.send_response(200)
        self.send_header('Accept-Ranges', 'bytes')
        self.send_header('Content-Type', 'application/octet-stream')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_checksum(self, query: str) -> None:
        params = urllib.parse.parse_qs(query)
        try:
            block_size = int(params.get(BLOCK_SIZE_PARAM, [str(Config.DEFAULT_BLOCK_SIZE)])[0])
            validate_block_size(block_size)
        except (ValueError, ValidationError) as e:
            self.send_error(400, f"bad {BLOCK_SIZE_PARAM}: {e}")
            return

        try:
            with FileDataSource(self.reference_path) as source:
                body = build_checksum_index(source, block_size, self.checksum_type)
        except ReadError as e:
            logger.error(f"Cannot index {self.reference_path}: {e}")
            self.send_error(404)
            return

        encoding = CompressionRegistry.choose(self.headers.get('Accept-Encoding'))
        body = CompressionRegistry.compress(body, encoding)

        self.send_response(200)
        self.send_header('Content-Type', 'application/octet-stream')
        if encoding != ContentEncoding.IDENTITY:
            self.send_header('Content-Encoding', encoding.value)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug(f"{self.address_string()} - {format % args}")


def make_reference_server(
    path: str,
    host: str = '127.0.0.1',
    port: int = 8000,
    checksum_type: Optional[ChecksumType] = None,
) -> ThreadingHTTPServer:
    """
    Create (but do not start) a threaded HTTP server for one reference file.

    Port 0 picks a free port; read it back from server.server_address.

    Example:
        >>> server = make_reference_server("remote.txt", port=0)
        >>> threading.Thread(target=server.serve_forever, daemon=True).start()
    """
    if not os.path.isfile(path):
        raise ReadError(f"reference file not found: {path}")

    handler = type('BoundReferenceRequestHandler', (ReferenceRequestHandler,), {
        'reference_path': os.path.abspath(path),
        'checksum_type': checksum_type or Config.STRONG_CHECKSUM,
    })
    server = ThreadingHTTPServer((host, port), handler)
    server.daemon_threads = True
    return server


# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def _error_exit(e: BaseException, quiet: bool) -> int:
    """Print a CLI error and map it to an exit code."""
    if isinstance(e, KeyboardInterrupt):
        print(Colors.warning("\nOperation cancelled by user"), file=sys.stderr)
        return 130
    if isinstance(e, ValidationError):
        print(Colors.error(f"Validation error: {e}"), file=sys.stderr)
    elif isinstance(e, DecodeError):
        print(Colors.error(f"Malformed checksum index: {e}"), file=sys.stderr)
    elif isinstance(e, ChecksumMismatchError):
        print(Colors.error(f"Verification failed: {e}"), file=sys.stderr)
        print(Colors.info("  Hint: the remote file may have changed; retry the sync"),
              file=sys.stderr)
    elif isinstance(e, TransportExhaustedError):
        print(Colors.error(f"Transport failed: {e}"), file=sys.stderr)
    elif isinstance(e, BlockSyncError):
        print(Colors.error(str(e)), file=sys.stderr)
    else:
        print(Colors.error(f"Unexpected error: {type(e).__name__}: {e}"), file=sys.stderr)
        if not quiet:
            import traceback
            traceback.print_exc()
        return 1
    return cast(BlockSyncError, e).code


def cli_index(args: Any) -> int:
    """Write the checksum index of a file."""
    start_time = time.time()
    output = args.output or f"{args.file}.idx"
    try:
        with FileDataSource(args.file) as source:
            data = build_checksum_index(source, args.block_size, ChecksumType(args.strong))
        with open(output, 'wb') as f:
            f.write(data)

        if not args.quiet:
            index = decode_checksum_index(data)
            print(Colors.success(f"Index saved to: {output}"))
            print(f"  File size:    {index.file_size:,} bytes")
            print(f"  Blocks:       {len(index):,}")
            print(f"  Block size:   {args.block_size:,} bytes")
            print(f"  Strong:       {args.strong} ({index.strong_width} bytes)")
            print(f"  Index size:   {format_size(len(data))}")
            print(f"  Time:         {format_time(time.time() - start_time)}")
        return 0
    except (BlockSyncError, OSError, KeyboardInterrupt) as e:
        if isinstance(e, OSError):
            print(Colors.error(f"File I/O error: {e}"), file=sys.stderr)
            return 6
        return _error_exit(e, args.quiet)


def cli_inspect(args: Any) -> int:
    """Print the header and geometry of an index file."""
    try:
        with open(args.index, 'rb') as f:
            index = decode_checksum_index(f)
        print(f"File size:      {index.file_size:,} bytes")
        print(f"Weak width:     {index.weak_width} bytes")
        print(f"Strong width:   {index.strong_width} bytes")
        print(f"Records:        {len(index):,}")
        if args.block_size:
            summary = FileSummary.from_index(index, args.block_size)
            last = summary.block_count - 1
            print(f"Block size:     {summary.block_size:,} bytes")
            if last >= 0:
                print(f"Last block:     {summary.block_length(last):,} bytes")
            print(Colors.success("Index is consistent with the block size"))
        return 0
    except (BlockSyncError, OSError, KeyboardInterrupt) as e:
        if isinstance(e, OSError):
            print(Colors.error(f"File I/O error: {e}"), file=sys.stderr)
            return 6
        return _error_exit(e, args.quiet)


def cli_patch(args: Any) -> int:
    """Reconstruct the remote file from a local copy."""
    start_time = time.time()
    output = args.output or args.local
    base = args.url.rstrip('/')
    checksum_type = ChecksumType(args.strong)
    try:
        if args.dry_run:
            summary = fetch_summary(base + CHECKSUM_PATH, args.block_size,
                                    max_attempts=args.attempts)
            local: DataSource = (FileDataSource(args.local) if os.path.exists(args.local)
                                 else BytesDataSource(b''))
            with local:
                engine = make_patch_engine(local, base + CONTENT_PATH, io.BytesIO(), summary,
                                           args.concurrency, args.attempts, checksum_type)
                plan = engine.build_plan()
            for instruction in plan.instructions:
                print(f"  {instruction!r}")
            print(f"{plan!r}")
            return 0

        if not args.quiet:
            print(Colors.info(f"Patching {Colors.bold(args.local)} from {base}"))
        stats = sync_file(args.local, base, output, args.block_size,
                          concurrency=args.concurrency, max_attempts=args.attempts,
                          checksum_type=checksum_type)
        if not args.quiet:
            print(Colors.success(f"File reconstructed: {output}"))
            print(f"  Local blocks:   {stats.local_blocks:,} ({format_size(stats.local_bytes)})")
            print(f"  Remote blocks:  {stats.remote_blocks:,} ({format_size(stats.remote_bytes)})")
            print(f"  Downloaded:     {format_size(stats.bytes_downloaded)}")
            print(f"  Reused:         {stats.efficiency:.1%}")
            print(f"  Time:           {format_time(time.time() - start_time)}")
        return 0
    except (BlockSyncError, KeyboardInterrupt) as e:
        return _error_exit(e, args.quiet)
    except OSError as e:
        print(Colors.error(f"File I/O error: {e}"), file=sys.stderr)
        return 6


def cli_serve(args: Any) -> int:
    """Serve a reference file's content and checksum index."""
    try:
        server = make_reference_server(args.file, args.host, args.port, ChecksumType(args.strong))
    except (BlockSyncError, OSError) as e:
        if isinstance(e, OSError):
            print(Colors.error(f"Cannot listen: {e}"), file=sys.stderr)
            return 6
        return _error_exit(e, args.quiet)

    host, port = server.server_address[:2]
    if not args.quiet:
        print(Colors.info(f"Serving {Colors.bold(args.file)} on http://{host}:{port}"))
        print(f"  {CONTENT_PATH}   {CHECKSUM_PATH}?{BLOCK_SIZE_PARAM}=N")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Build the rsync-blocksync argument parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('-v', '--verbose', action='store_true', help='verbose logging')
    common.add_argument('-q', '--quiet', action='store_true', help='suppress non-error output')
    common.add_argument('--no-color', action='store_true', help='disable colored output')

    strong_choices = [t.value for t in ChecksumType]

    parser = argparse.ArgumentParser(
        prog='rsync-blocksync',
        description='Block-level delta synchronization of one file over HTTP range requests.',
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest='command', metavar='COMMAND')
    sub.required = True

    p = sub.add_parser('index', parents=[common], help='write the checksum index of a file')
    p.add_argument('file')
    p.add_argument('-b', '--block-size', type=int, default=Config.DEFAULT_BLOCK_SIZE)
    p.add_argument('-o', '--output', help='index path (default: FILE.idx)')
    p.add_argument('--strong', choices=strong_choices, default=Config.STRONG_CHECKSUM.value)
    p.set_defaults(func=cli_index)

    p = sub.add_parser('inspect', parents=[common], help='show an index file header')
    p.add_argument('index')
    p.add_argument('-b', '--block-size', type=int, default=0,
                   help='check the index against this block size')
    p.set_defaults(func=cli_inspect)

    p = sub.add_parser('patch', parents=[common], help='reconstruct a remote file locally')
    p.add_argument('local', help='local (old) copy; may be missing')
    p.add_argument('url', help='server base URL, e.g. http://localhost:8000')
    p.add_argument('-o', '--output', help='output path (default: overwrite LOCAL)')
    p.add_argument('-b', '--block-size', type=int, default=Config.DEFAULT_BLOCK_SIZE)
    p.add_argument('-j', '--concurrency', type=int, default=None)
    p.add_argument('--attempts', type=int, default=None, help='attempts per request')
    p.add_argument('--dry-run', action='store_true', help='print the plan only')
    p.add_argument('--strong', choices=strong_choices, default=Config.STRONG_CHECKSUM.value,
                   help='strong checksum the server indexes with')
    p.set_defaults(func=cli_patch)

    p = sub.add_parser('serve', parents=[common], help='serve a reference file')
    p.add_argument('file')
    p.add_argument('--host', default='127.0.0.1')
    p.add_argument('--port', type=int, default=8000)
    p.add_argument('--strong', choices=strong_choices, default=Config.STRONG_CHECKSUM.value)
    p.set_defaults(func=cli_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    args = create_parser().parse_args(argv)
    if args.no_color:
        Config.USE_COLORS = False
    if args.verbose:
        Config.VERBOSE_LOGGING = True
        logger.setLevel(logging.DEBUG)
    return cast(int, args.func(args))


# Entry point when run as script
if __name__ == "__main__":
    sys.exit(main())
