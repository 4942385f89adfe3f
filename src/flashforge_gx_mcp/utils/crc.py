"""CRC-32 used by the binary block transfer.

The printer checks each block with the standard IEEE 802.3 CRC-32
(the one ``zlib`` implements), reported as an unsigned 32-bit value.
"""

from __future__ import annotations

import zlib


def crc32(data: bytes) -> int:
    """Return the unsigned CRC-32 of ``data``."""
    return zlib.crc32(data) & 0xFFFFFFFF
