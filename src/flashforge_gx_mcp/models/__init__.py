"""Data models for the GX container and printer status."""

from .container import (
    Container,
    ContainerHeader,
    decode_container,
    encode_container,
)
from .status import PrinterStatus, SpoolResult
