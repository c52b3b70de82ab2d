"""Content hashing and fixed-size chunk addressing.

This module provides:
- SHA-256 content digests used for deduplication
- Byte range computation for the chunked upload protocol
- Content-Range header formatting
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterator
from dataclasses import dataclass

HASH_HEX_LENGTH = 64


@dataclass(frozen=True)
class ByteRange:
    """A contiguous, inclusive byte range of a file."""

    index: int
    start: int
    end: int  # inclusive

    @property
    def size(self) -> int:
        """Return the number of bytes in this range."""
        return self.end - self.start + 1

    def content_range(self, total_size: int) -> str:
        """Format as a Content-Range header value."""
        return f"bytes {self.start}-{self.end}/{total_size}"

    def slice(self, data: bytes) -> bytes:
        """Return the bytes of ``data`` covered by this range."""
        return data[self.start : self.end + 1]


def compute_content_hash(data: bytes) -> str:
    """Compute SHA-256 hash of data.

    The digest must be taken over the exact bytes sent to the remote
    service so identical uploads always collide.

    Args:
        data: Raw bytes to hash.

    Returns:
        Hex-encoded SHA-256 hash string (64 characters).
    """
    return hashlib.sha256(data).hexdigest()


def is_content_hash(value: str) -> bool:
    """Check whether a string looks like a hex SHA-256 digest."""
    if len(value) != HASH_HEX_LENGTH:
        return False
    try:
        int(value, 16)
    except ValueError:
        return False
    return True


def count_chunks(total_size: int, chunk_size: int) -> int:
    """Number of chunks needed to cover ``total_size`` bytes."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if total_size <= 0:
        return 0
    return -(-total_size // chunk_size)


def chunk_range(index: int, total_size: int, chunk_size: int) -> ByteRange:
    """Byte range of chunk ``index``.

    Raises:
        IndexError: If the index is outside the file.
    """
    total_chunks = count_chunks(total_size, chunk_size)
    if index < 0 or index >= total_chunks:
        raise IndexError(f"Chunk {index} out of range (0..{total_chunks - 1})")
    start = index * chunk_size
    end = min(start + chunk_size, total_size) - 1
    return ByteRange(index=index, start=start, end=end)


def iter_chunk_ranges(total_size: int, chunk_size: int, start_index: int = 0) -> Iterator[ByteRange]:
    """Yield contiguous, non-overlapping ranges covering the file.

    Args:
        total_size: File size in bytes.
        chunk_size: Maximum bytes per chunk.
        start_index: First chunk to yield (for resumed sessions).

    Yields:
        ByteRange objects in increasing index order.
    """
    for index in range(start_index, count_chunks(total_size, chunk_size)):
        yield chunk_range(index, total_size, chunk_size)
