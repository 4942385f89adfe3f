"""Exception hierarchy.

Every error derives from :class:`GXError`. Where a builtin exception
already names the failure (``ValueError`` for bad bytes,
``ConnectionError`` for socket trouble) it is kept as a second base, so
callers can catch either.
"""

from __future__ import annotations


class GXError(Exception):
    """Base class for all driver errors."""


class FormatError(GXError, ValueError):
    """Bytes are not a recognized GX container."""


class PrinterConnectionError(GXError, ConnectionError):
    """The TCP session was refused, timed out, reset or closed."""


class AlreadyConnectingError(PrinterConnectionError):
    """A connect was requested while another attempt is in progress."""

    def __init__(self, message: str = "already connecting") -> None:
        super().__init__(message)


class AlreadyConnectedError(PrinterConnectionError):
    """A connect was requested on a live session."""

    def __init__(self, message: str = "already connected") -> None:
        super().__init__(message)


class NotConnectedError(PrinterConnectionError):
    """A command was submitted while no session is established."""

    def __init__(self, message: str = "not connected") -> None:
        super().__init__(message)


class ProtocolError(GXError):
    """A reply could not be matched or did not have the expected shape."""


class TransferError(GXError):
    """A block of a file transfer failed after earlier blocks were sent.

    Blocks are never retried individually; the whole job has to be
    submitted again.
    """
