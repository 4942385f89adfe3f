"""Tests for transfer block framing."""

import struct

import pytest

from flashforge_gx_mcp.protocol.framing import (
    BLOCK_SIZE,
    FRAMED_BLOCK_SIZE,
    PREAMBLE,
    ChunkFrame,
    block_count,
    build_block,
    frame_chunks,
    make_frame,
    parse_block,
)
from flashforge_gx_mcp.utils.crc import crc32


def test_frame_count_and_lengths():
    """A buffer is split into ceil(L/4096) frames; the last carries the rest."""
    buffer = bytes(range(256)) * 40  # 10240 bytes
    frames = list(frame_chunks(buffer))
    assert len(frames) == 3 == block_count(len(buffer))
    assert [f.index for f in frames] == [0, 1, 2]
    assert [f.length for f in frames] == [4096, 4096, 2048]


def test_exact_multiple_has_no_short_frame():
    """A buffer that is a multiple of the block size ends on a full block."""
    frames = list(frame_chunks(b"\x07" * (BLOCK_SIZE * 2)))
    assert len(frames) == 2
    assert frames[-1].length == BLOCK_SIZE


def test_empty_buffer_has_no_frames():
    assert list(frame_chunks(b"")) == []


def test_scenario_5058_bytes():
    """A 5000-byte toolpath in a container (58 + 5000) takes two blocks."""
    frames = list(frame_chunks(b"G" * 5058))
    assert len(frames) == 2
    assert frames[0].length == 4096
    assert frames[1].length == 962


def test_scenario_5000_bytes():
    frames = list(frame_chunks(b"G" * 5000))
    assert [f.length for f in frames] == [4096, 904]


def test_last_frame_padding_and_checksum():
    """Padding is zeros and the CRC covers only the real bytes."""
    data = b"\xAB" * 100
    frame = make_frame(0, data)
    assert len(frame.payload) == BLOCK_SIZE
    assert frame.payload[100:] == b"\x00" * (BLOCK_SIZE - 100)
    assert frame.checksum == crc32(data)
    assert frame.checksum != crc32(frame.payload)
    assert frame.data == data


def test_checksums_match_slices():
    buffer = bytes((i * 7) & 0xFF for i in range(9000))
    for frame in frame_chunks(buffer):
        start = frame.index * BLOCK_SIZE
        assert frame.checksum == crc32(buffer[start : start + frame.length])


def test_restartable():
    """Framing the same buffer twice gives the same frames."""
    buffer = b"abc" * 3000
    assert list(frame_chunks(buffer)) == list(frame_chunks(buffer))


def test_block_wire_layout():
    """Preamble, then big-endian index, length and CRC, then the payload."""
    block = build_block(3, b"hello")
    assert len(block) == FRAMED_BLOCK_SIZE
    assert block[:4] == PREAMBLE == b"\x5a\x5a\xa5\xa5"
    index, length, checksum = struct.unpack(">III", block[4:16])
    assert index == 3
    assert length == 5
    assert checksum == crc32(b"hello")
    assert block[16:21] == b"hello"


def test_parse_block():
    block = build_block(1, b"G28\n")
    parsed = parse_block(block)
    assert parsed is not None
    assert parsed.index == 1
    assert parsed.data == b"G28\n"


def test_parse_block_bad_preamble():
    block = bytearray(build_block(0, b"x"))
    block[0] = 0x00
    assert parse_block(bytes(block)) is None


def test_parse_block_bad_checksum():
    block = bytearray(build_block(0, b"xyz"))
    block[16] ^= 0xFF
    assert parse_block(bytes(block)) is None


def test_parse_block_short():
    assert parse_block(PREAMBLE + b"\x00" * 10) is None


def test_oversized_chunk_rejected():
    with pytest.raises(ValueError):
        make_frame(0, b"\x00" * (BLOCK_SIZE + 1))


def test_frame_repr():
    r = repr(make_frame(2, b"a"))
    assert "index=2" in r
    assert isinstance(make_frame(0, b""), ChunkFrame)
