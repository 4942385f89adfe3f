"""Driver for FlashForge-style networked printers and the GX container format."""

__version__ = "0.1.0"
