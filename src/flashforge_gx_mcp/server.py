"""MCP server entry point for FlashForge-style networked printers.

Exposes container tools, printer tools and protocol reference resources
via the Model Context Protocol using the official Python MCP SDK with
stdio transport.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from mcp.server.fastmcp import FastMCP

from .config import settings
from .errors import GXError
from .models.container import (
    DEFAULT_FILAMENT_MM,
    DEFAULT_PRINT_SECONDS,
    HEADER_SIZE,
    TUNING_U16_DEFAULTS,
    TUNING_U8_DEFAULTS,
    build_container_file,
    extract_container,
    read_container,
)
from .protocol.commands import COMMAND_DESCRIPTIONS, normalize_remote_path
from .protocol.framing import BLOCK_SIZE, PREAMBLE
from .transport.discovery import scan_subnet
from .transport.tcp_connection import ProtocolConnection

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "flashforge-gx",
    instructions="MCP server for FlashForge-style networked 3D printers and .gx files",
)


def _resolve_host(host: str | None) -> str:
    host = host or settings.PRINTER_HOST
    if not host:
        raise ValueError(
            "No printer host given. Pass 'host' or set GX_PRINTER_HOST."
        )
    return host


@asynccontextmanager
async def _session(host: str | None, port: int | None) -> AsyncIterator[ProtocolConnection]:
    """Connect, yield the session, then release control and disconnect."""
    conn = ProtocolConnection()
    await conn.connect(
        _resolve_host(host),
        port or settings.PRINTER_PORT,
        retry_max=settings.RETRY_MAX,
        retry_delay=settings.RETRY_DELAY,
    )
    try:
        yield conn
    finally:
        try:
            await conn.close()
        except GXError as e:
            logger.warning("Error closing session: %s", e)


# ─── CONTAINER TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def read_container_header(path: str) -> dict[str, Any]:
    """Read the header of a .gx file.

    Args:
        path: Path to the .gx file.
    """
    try:
        return read_container(path).to_dict()
    except (GXError, OSError) as e:
        return {"error": str(e)}


@mcp.tool()
def dump_container(path: str) -> dict[str, Any]:
    """Extract the thumbnail and G-code of a .gx file into sibling files.

    Writes ``<path>.bmp`` and ``<path>.gcode``.

    Args:
        path: Path to the .gx file.
    """
    try:
        container = read_container(path)
        bmp_path, gcode_path = extract_container(path)
    except (GXError, OSError) as e:
        return {"error": str(e)}
    result = container.to_dict()
    result["bmp_path"] = str(bmp_path)
    result["gcode_path"] = str(gcode_path)
    return result


@mcp.tool()
def make_container(
    output_path: str,
    gcode_path: str,
    bmp_path: str | None = None,
    print_seconds: int = DEFAULT_PRINT_SECONDS,
    filament_mm: int = DEFAULT_FILAMENT_MM,
) -> dict[str, Any]:
    """Build a .gx file from G-code and an optional 80x60 bitmap.

    Args:
        output_path: Where to write the .gx file.
        gcode_path: Source G-code file.
        bmp_path: Optional preview bitmap.
        print_seconds: Estimated print time shown on the printer.
        filament_mm: Estimated filament length shown on the printer.
    """
    try:
        path = build_container_file(
            output_path, gcode_path, bmp_path, print_seconds, filament_mm
        )
    except (OSError, ValueError) as e:
        return {"error": str(e)}
    return {"path": str(path), "size": Path(path).stat().st_size}


# ─── PRINTER TOOLS ───────────────────────────────────────────────────

@mcp.tool()
async def scan_printers(subnet: str | None = None, port: int | None = None) -> dict[str, Any]:
    """Find hosts accepting connections on the printer control port.

    Args:
        subnet: First three octets to scan, e.g. "192.168.1". Defaults to
            this machine's subnet.
        port: Control port (default 8899).
    """
    found = await scan_subnet(subnet, port or settings.PRINTER_PORT)
    return {"found": found}


@mcp.tool()
async def printer_status(host: str | None = None, port: int | None = None) -> dict[str, Any]:
    """Query machine info, status, job progress and temperatures.

    Args:
        host: Printer address (default from GX_PRINTER_HOST).
        port: Control port (default 8899).
    """
    try:
        async with _session(host, port) as conn:
            status = await conn.get_status()
    except (GXError, ValueError) as e:
        return {"error": str(e)}
    return status.to_dict()


@mcp.tool()
async def print_file(
    gcode_path: str,
    filename: str | None = None,
    bmp_path: str | None = None,
    print_seconds: int = DEFAULT_PRINT_SECONDS,
    filament_mm: int = DEFAULT_FILAMENT_MM,
    host: str | None = None,
    port: int | None = None,
) -> dict[str, Any]:
    """Wrap a G-code file in a .gx container, upload it and start printing.

    Args:
        gcode_path: Source G-code file.
        filename: Name on the printer (default: the G-code file's stem).
        bmp_path: Optional preview bitmap.
        print_seconds: Estimated print time shown on the printer.
        filament_mm: Estimated filament length shown on the printer.
        host: Printer address (default from GX_PRINTER_HOST).
        port: Control port (default 8899).
    """
    try:
        toolpath = Path(gcode_path).read_bytes()
        thumbnail = Path(bmp_path).read_bytes() if bmp_path else None
    except OSError as e:
        return {"error": str(e)}

    try:
        remote_path = normalize_remote_path(filename or Path(gcode_path).stem)
    except ValueError as e:
        return {"error": str(e)}

    try:
        async with _session(host, port) as conn:
            result = await conn.print_job(
                remote_path, toolpath, thumbnail, print_seconds, filament_mm
            )
    except (GXError, ValueError) as e:
        return {"error": str(e), "spooled": remote_path}
    return result.to_dict()


@mcp.tool()
async def send_container(
    container_path: str,
    filename: str | None = None,
    host: str | None = None,
    port: int | None = None,
) -> dict[str, Any]:
    """Upload an existing .gx file unchanged and start printing it.

    Args:
        container_path: The .gx file to send.
        filename: Name on the printer (default: the file's name).
        host: Printer address (default from GX_PRINTER_HOST).
        port: Control port (default 8899).
    """
    try:
        buffer = Path(container_path).read_bytes()
    except OSError as e:
        return {"error": str(e)}

    try:
        async with _session(host, port) as conn:
            result = await conn.spool(filename or Path(container_path).name, buffer)
    except (GXError, ValueError) as e:
        return {"error": str(e)}
    return result.to_dict()


@mcp.tool()
async def set_printer_name(name: str, host: str | None = None, port: int | None = None) -> dict[str, Any]:
    """Change the name the printer shows on its display and network.

    Args:
        name: New device name.
        host: Printer address (default from GX_PRINTER_HOST).
        port: Control port (default 8899).
    """
    try:
        async with _session(host, port) as conn:
            lines = await conn.set_name(name)
    except (GXError, ValueError) as e:
        return {"error": str(e)}
    return {"name": name, "result": lines}


async def _round_trip(operation: str, host: str | None, port: int | None) -> dict[str, Any]:
    try:
        async with _session(host, port) as conn:
            lines = await getattr(conn, operation)()
    except (GXError, ValueError) as e:
        return {"error": str(e)}
    return {"result": lines}


@mcp.tool()
async def cancel_print(host: str | None = None, port: int | None = None) -> dict[str, Any]:
    """Cancel the active print."""
    return await _round_trip("cancel", host, port)


@mcp.tool()
async def pause_print(host: str | None = None, port: int | None = None) -> dict[str, Any]:
    """Pause the active print."""
    return await _round_trip("pause", host, port)


@mcp.tool()
async def resume_print(host: str | None = None, port: int | None = None) -> dict[str, Any]:
    """Resume a paused print."""
    return await _round_trip("resume", host, port)


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("gx://protocol/commands")
def resource_commands() -> str:
    """Command codes understood by the printer."""
    return json.dumps(
        {command.value: text for command, text in COMMAND_DESCRIPTIONS.items()},
        indent=2,
    )


@mcp.resource("gx://format/header")
def resource_header_layout() -> str:
    """Layout of the .gx container and the block transfer framing."""
    return json.dumps(
        {
            "header_size": HEADER_SIZE,
            "magic": "xgcode 1.0",
            "fields": [
                "magic[16]", "bmp_offset:u32", "gcode_start_offset:u32",
                "gcode_end_offset:u32", "print_seconds:u32", "filament_mm:u32",
                "tuning:u32", "tuning:u16[8]", "tuning:u8[2]",
            ],
            "tuning_u16_defaults": list(TUNING_U16_DEFAULTS),
            "tuning_u8_defaults": list(TUNING_U8_DEFAULTS),
            "block_preamble": PREAMBLE.hex(" "),
            "block_size": BLOCK_SIZE,
        },
        indent=2,
    )


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
