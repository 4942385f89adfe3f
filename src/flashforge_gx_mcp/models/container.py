"""GX ("xgcode 1.0") container encode/decode.

A container is a fixed 58-byte little-endian header, then the preview
thumbnail (an 80x60 BMP, optional), then the toolpath bytes::

    +-----------+-----------------------------+-----------+-----------+
    | Magic     | Offsets, estimates, tuning  | Thumbnail | Toolpath  |
    | 16 bytes  | 42 bytes                    | variable  | variable  |
    +-----------+-----------------------------+-----------+-----------+

Header fields after the magic::

    0x10  u32  bmp offset
    0x14  u32  gcode start offset
    0x18  u32  gcode end offset
    0x1C  u32  print time (seconds)
    0x20  u32  filament length (mm)
    0x24  u32  tuning
    0x28  8 x u16 tuning
    0x38  2 x u8  tuning

The tuning values are opaque but the printer rejects files where they
differ from what the vendor slicer writes, so they are emitted verbatim.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import FormatError

GX_MAGIC = "xgcode 1.0"
GX_MAGIC_BYTES = b"xgcode 1.0\n\x00\x00\x00\x00\x00"
HEADER_STRUCT = struct.Struct("<16s6I8H2B")
HEADER_SIZE = HEADER_STRUCT.size  # 58

DEFAULT_PRINT_SECONDS = 100
DEFAULT_FILAMENT_MM = 100

TUNING_U32_DEFAULT = 0
TUNING_U16_DEFAULTS = (1, 200, 20, 3, 60, 110, 220, 220)
TUNING_U8_DEFAULTS = (1, 1)

U32_MAX = 0xFFFFFFFF


def _check_u32(name: str, value: int) -> int:
    if not 0 <= value <= U32_MAX:
        raise ValueError(f"{name} must be between 0 and {U32_MAX}, got {value}")
    return value


@dataclass(frozen=True)
class ContainerHeader:
    """Fixed header of a GX container."""

    magic: str = GX_MAGIC
    bmp_offset: int = HEADER_SIZE
    gcode_start_offset: int = HEADER_SIZE
    gcode_end_offset: int = HEADER_SIZE
    print_seconds: int = DEFAULT_PRINT_SECONDS
    filament_mm: int = DEFAULT_FILAMENT_MM
    tuning_u32: int = TUNING_U32_DEFAULT
    tuning_u16: tuple[int, ...] = TUNING_U16_DEFAULTS
    tuning_u8: tuple[int, ...] = TUNING_U8_DEFAULTS

    @property
    def header_index(self) -> int:
        """Offset of the first byte after the fixed header."""
        return HEADER_SIZE

    def to_bytes(self) -> bytes:
        return HEADER_STRUCT.pack(
            GX_MAGIC_BYTES,
            self.bmp_offset,
            self.gcode_start_offset,
            self.gcode_end_offset,
            self.print_seconds,
            self.filament_mm,
            self.tuning_u32,
            *self.tuning_u16,
            *self.tuning_u8,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> ContainerHeader:
        """Read the fixed header fields from the start of ``data``.

        Raises:
            FormatError: If the data is too short or the magic is wrong.
        """
        if len(data) < HEADER_SIZE:
            raise FormatError(
                f"Data too small for GX header: {len(data)} bytes "
                f"(need at least {HEADER_SIZE})"
            )
        fields = HEADER_STRUCT.unpack_from(data)
        magic = fields[0].rstrip(b"\x00").decode("ascii", errors="replace").strip()
        if magic != GX_MAGIC:
            raise FormatError(f"Invalid GX magic: {magic!r} (expected {GX_MAGIC!r})")
        return cls(
            magic=magic,
            bmp_offset=fields[1],
            gcode_start_offset=fields[2],
            gcode_end_offset=fields[3],
            print_seconds=fields[4],
            filament_mm=fields[5],
            tuning_u32=fields[6],
            tuning_u16=tuple(fields[7:15]),
            tuning_u8=tuple(fields[15:17]),
        )

    def to_dict(self) -> dict:
        return {
            "magic": self.magic,
            "bmp_offset": self.bmp_offset,
            "gcode_start_offset": self.gcode_start_offset,
            "gcode_end_offset": self.gcode_end_offset,
            "print_seconds": self.print_seconds,
            "filament_mm": self.filament_mm,
            "tuning_u32": self.tuning_u32,
            "tuning_u16": list(self.tuning_u16),
            "tuning_u8": list(self.tuning_u8),
            "header_index": self.header_index,
        }


@dataclass(frozen=True)
class Container:
    """A decoded container: header plus the two payload sections."""

    header: ContainerHeader
    thumbnail: bytes = b""
    toolpath: bytes = field(default=b"", repr=False)

    def to_dict(self) -> dict:
        d = self.header.to_dict()
        d["thumbnail_length"] = len(self.thumbnail)
        d["toolpath_length"] = len(self.toolpath)
        return d


def decode_container(data: bytes) -> Container:
    """Decode a GX container from an in-memory buffer.

    Raises:
        FormatError: If the header is short or unrecognized, or its
            offsets point outside the buffer.
    """
    header = ContainerHeader.from_bytes(data)
    if not (
        HEADER_SIZE
        <= header.bmp_offset
        <= header.gcode_start_offset
        <= header.gcode_end_offset
        <= len(data)
    ):
        raise FormatError(
            f"Inconsistent GX offsets: bmp={header.bmp_offset} "
            f"gcode_start={header.gcode_start_offset} "
            f"gcode_end={header.gcode_end_offset} length={len(data)}"
        )
    return Container(
        header=header,
        thumbnail=bytes(data[header.bmp_offset : header.gcode_start_offset]),
        toolpath=bytes(data[header.gcode_start_offset :]),
    )


def encode_container(
    toolpath: bytes,
    thumbnail: bytes | None = None,
    print_seconds: int | None = DEFAULT_PRINT_SECONDS,
    filament_mm: int | None = DEFAULT_FILAMENT_MM,
) -> bytes:
    """Encode a toolpath and optional thumbnail as a GX container.

    Args:
        toolpath: Raw G-code bytes.
        thumbnail: Preview bitmap bytes (80x60 BMP), or None for none.
        print_seconds: Estimated print time. 0 or None means the default.
        filament_mm: Estimated filament length. 0 or None means the default.

    Returns:
        header + thumbnail + toolpath.

    Raises:
        ValueError: If an estimate does not fit in an unsigned 32-bit field.
    """
    print_seconds = _check_u32("print_seconds", print_seconds or DEFAULT_PRINT_SECONDS)
    filament_mm = _check_u32("filament_mm", filament_mm or DEFAULT_FILAMENT_MM)
    thumbnail = thumbnail or b""
    gcode_offset = HEADER_SIZE + len(thumbnail)
    header = ContainerHeader(
        bmp_offset=HEADER_SIZE,
        gcode_start_offset=gcode_offset,
        gcode_end_offset=gcode_offset,
        print_seconds=print_seconds or DEFAULT_PRINT_SECONDS,
        filament_mm=filament_mm or DEFAULT_FILAMENT_MM,
    )
    return header.to_bytes() + bytes(thumbnail) + bytes(toolpath)


def read_container(path: str | Path) -> Container:
    """Read and decode a .gx file."""
    return decode_container(Path(path).read_bytes())


def write_container(
    path: str | Path,
    toolpath: bytes,
    thumbnail: bytes | None = None,
    print_seconds: int | None = DEFAULT_PRINT_SECONDS,
    filament_mm: int | None = DEFAULT_FILAMENT_MM,
) -> Path:
    """Encode a container and write it to ``path``.

    Returns:
        The path written to.
    """
    path = Path(path)
    path.write_bytes(encode_container(toolpath, thumbnail, print_seconds, filament_mm))
    return path


def build_container_file(
    output: str | Path,
    gcode_path: str | Path,
    bmp_path: str | Path | None = None,
    print_seconds: int | None = DEFAULT_PRINT_SECONDS,
    filament_mm: int | None = DEFAULT_FILAMENT_MM,
) -> Path:
    """Build a .gx file from a G-code file and an optional bitmap file."""
    toolpath = Path(gcode_path).read_bytes()
    thumbnail = Path(bmp_path).read_bytes() if bmp_path else None
    return write_container(output, toolpath, thumbnail, print_seconds, filament_mm)


def extract_container(path: str | Path) -> tuple[Path, Path]:
    """Dump the thumbnail and toolpath of a .gx file to sibling files.

    Writes ``<path>.bmp`` and ``<path>.gcode``.

    Returns:
        The bitmap path and the G-code path.
    """
    path = Path(path)
    container = read_container(path)
    bmp_path = path.with_name(path.name + ".bmp")
    gcode_path = path.with_name(path.name + ".gcode")
    bmp_path.write_bytes(container.thumbnail)
    gcode_path.write_bytes(container.toolpath)
    return bmp_path, gcode_path
