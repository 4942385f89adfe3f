"""Block framing for binary file transfers.

Block layout (big-endian)::

    +------------+-------------+-------------+-------------+-------------------+
    |  Preamble  | Block index | True length |   CRC-32    |      Payload      |
    |  4 bytes   |   4 bytes   |   4 bytes   |   4 bytes   |    4096 bytes     |
    +------------+-------------+-------------+-------------+-------------------+

- Preamble: 0x5A 0x5A 0xA5 0xA5
- True length: bytes of real data in the payload (4096 except the last block)
- CRC-32: computed over the true-length slice only, never the padding
- Payload: the data, zero-padded to 4096 bytes
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterator

from ..utils.crc import crc32

PREAMBLE = b"\x5A\x5A\xA5\xA5"
BLOCK_SIZE = 4096
BLOCK_HEADER = struct.Struct(">4sIII")
FRAMED_BLOCK_SIZE = BLOCK_HEADER.size + BLOCK_SIZE  # 4112


@dataclass(frozen=True)
class ChunkFrame:
    """One indexed, checksummed block of a transfer."""

    index: int
    length: int
    checksum: int
    payload: bytes  # always BLOCK_SIZE bytes

    @property
    def data(self) -> bytes:
        """The unpadded bytes carried by this block."""
        return self.payload[: self.length]

    def to_bytes(self) -> bytes:
        return (
            BLOCK_HEADER.pack(PREAMBLE, self.index, self.length, self.checksum)
            + self.payload
        )

    def __repr__(self) -> str:
        return (
            f"ChunkFrame(index={self.index}, length={self.length}, "
            f"checksum=0x{self.checksum:08X})"
        )


def make_frame(index: int, chunk: bytes) -> ChunkFrame:
    """Wrap up to ``BLOCK_SIZE`` bytes of data as block ``index``.

    Raises:
        ValueError: If the chunk is larger than one block.
    """
    if len(chunk) > BLOCK_SIZE:
        raise ValueError(
            f"Chunk must be at most {BLOCK_SIZE} bytes, got {len(chunk)}"
        )
    payload = chunk + b"\x00" * (BLOCK_SIZE - len(chunk))
    return ChunkFrame(
        index=index,
        length=len(chunk),
        checksum=crc32(chunk),
        payload=payload,
    )


def build_block(index: int, chunk: bytes) -> bytes:
    """Build the wire bytes for a single block."""
    return make_frame(index, chunk).to_bytes()


def frame_chunks(buffer: bytes) -> Iterator[ChunkFrame]:
    """Split ``buffer`` into framed blocks in ascending index order.

    Yields ``ceil(len(buffer) / BLOCK_SIZE)`` frames. Calling it again on
    the same buffer yields the same sequence.
    """
    view = memoryview(buffer)
    for index, offset in enumerate(range(0, len(buffer), BLOCK_SIZE)):
        yield make_frame(index, bytes(view[offset : offset + BLOCK_SIZE]))


def block_count(length: int) -> int:
    """Number of blocks needed to carry ``length`` bytes."""
    return -(-length // BLOCK_SIZE)


def parse_block(data: bytes) -> ChunkFrame | None:
    """Parse the wire bytes of one block.

    Returns:
        A ``ChunkFrame`` if the block is well formed, or ``None`` if it is
        short, the preamble is missing, the length is out of range or the
        checksum fails.
    """
    if len(data) < FRAMED_BLOCK_SIZE:
        return None

    preamble, index, length, checksum = BLOCK_HEADER.unpack_from(data)
    if preamble != PREAMBLE:
        return None
    if length > BLOCK_SIZE:
        return None

    payload = bytes(data[BLOCK_HEADER.size : FRAMED_BLOCK_SIZE])
    if crc32(payload[:length]) != checksum:
        return None

    return ChunkFrame(index=index, length=length, checksum=checksum, payload=payload)
