"""Runtime defaults for the MCP entry point.

Values come from the environment (a ``.env`` file is honored) and are
only read, never written back.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from .transport.tcp_connection import (
    DEFAULT_PORT,
    DEFAULT_RETRY_DELAY,
    DEFAULT_RETRY_MAX,
)

load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    return int(value) if value.strip() else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name, "")
    return float(value) if value.strip() else default


@dataclass
class Settings:
    """Connection defaults used when a tool call leaves them out."""

    PRINTER_HOST: str = field(default_factory=lambda: os.environ.get("GX_PRINTER_HOST", ""))
    PRINTER_PORT: int = field(default_factory=lambda: _env_int("GX_PRINTER_PORT", DEFAULT_PORT))
    RETRY_MAX: int = field(default_factory=lambda: _env_int("GX_RETRY_MAX", DEFAULT_RETRY_MAX))
    RETRY_DELAY: float = field(
        default_factory=lambda: _env_float("GX_RETRY_DELAY", DEFAULT_RETRY_DELAY)
    )
    LOG_LEVEL: str = field(default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO"))


# Global settings instance
settings = Settings()
