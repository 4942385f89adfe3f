"""Find printers on the local network.

Probes every host of a /24 subnet on the control port in parallel and
reports the ones that accept a TCP connection. No data is exchanged.
"""

from __future__ import annotations

import asyncio
import logging
import socket

from .tcp_connection import DEFAULT_PORT

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 2.0
# Any routable address works; a UDP connect sends nothing.
_ROUTE_PROBE_ADDR = ("10.255.255.255", 1)


def local_subnet() -> str | None:
    """Return the first three octets of this host's primary IPv4 address."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(_ROUTE_PROBE_ADDR)
        address = sock.getsockname()[0]
    except OSError as e:
        logger.debug("Could not determine local address: %s", e)
        return None
    finally:
        sock.close()

    if address.startswith("127.") or address == "0.0.0.0":
        return None
    return ".".join(address.split(".")[:3])


async def probe(host: str, port: int = DEFAULT_PORT, timeout: float = PROBE_TIMEOUT) -> bool:
    """Return True if ``host`` accepts a TCP connection on ``port``."""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def scan_subnet(
    subnet: str | None = None,
    port: int = DEFAULT_PORT,
    timeout: float = PROBE_TIMEOUT,
) -> list[str]:
    """Probe ``<subnet>.1`` to ``<subnet>.254`` and list responding hosts.

    Args:
        subnet: First three octets, e.g. ``"192.168.1"``. Defaults to the
            subnet of this host's primary address.
        port: Port to probe.
        timeout: Per-host connect timeout in seconds.

    Returns:
        Reachable addresses, sorted.
    """
    subnet = subnet or local_subnet()
    if not subnet:
        logger.warning("No subnet given and none could be detected")
        return []

    logger.info("Scanning %s.0/24 on port %d", subnet, port)
    hosts = [f"{subnet}.{n}" for n in range(1, 255)]
    results = await asyncio.gather(*(probe(h, port, timeout) for h in hosts))
    found = sorted(
        (h for h, ok in zip(hosts, results) if ok),
        key=lambda h: tuple(int(part) for part in h.split(".")),
    )
    logger.info("Found %d host(s): %s", len(found), found)
    return found
