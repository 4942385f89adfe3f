"""Command codes and builders for the ASCII control protocol.

Every text command goes on the wire as ``~<code> [args]\\r\\n``. The
printer answers with one or more lines and finishes with a line
containing ``ok``.
"""

from __future__ import annotations

from enum import Enum

COMMAND_PREFIX = "~"
COMMAND_SUFFIX = "\r\n"

REMOTE_PREFIX = "0:/user/"
CONTAINER_EXTENSION = ".gx"
DEFAULT_REMOTE_NAME = "noname"


class Command(str, Enum):
    """Device command codes."""

    # print
    START_PRINT = "M23"  # arg = 0:/user/<filename>.gx
    RESUME = "M24"
    PAUSE = "M25"
    CANCEL = "M26"
    PRINT_STATUS = "M27"
    # file
    BEGIN_WRITE = "M28"  # args = <length> 0:/user/<filename>.gx
    END_WRITE = "M29"
    # machine
    SET_TEMP = "M104"  # args = T0 S<temp>
    GET_TEMP = "M105"
    ESTOP = "M112"
    GET_POSITION = "M114"
    GET_INFO = "M115"
    GET_STATUS = "M119"
    CONTROL = "M601"
    RELEASE = "M602"
    SET_NAME = "M610"
    SET_XY = "M612"
    GET_XY = "M650"


COMMAND_DESCRIPTIONS: dict[Command, str] = {
    Command.START_PRINT: "Start printing a stored file",
    Command.RESUME: "Resume a paused print",
    Command.PAUSE: "Pause the active print",
    Command.CANCEL: "Cancel the active print",
    Command.PRINT_STATUS: "Report print progress (byte current/total)",
    Command.BEGIN_WRITE: "Begin a binary file write",
    Command.END_WRITE: "End the binary file write",
    Command.SET_TEMP: "Set an extruder temperature",
    Command.GET_TEMP: "Report temperatures",
    Command.ESTOP: "Emergency stop",
    Command.GET_POSITION: "Report head position",
    Command.GET_INFO: "Report machine information",
    Command.GET_STATUS: "Report endstops and machine status",
    Command.CONTROL: "Acquire exclusive control",
    Command.RELEASE: "Release exclusive control",
    Command.SET_NAME: "Set the device name",
    Command.SET_XY: "Set XY calibration",
    Command.GET_XY: "Report XY calibration",
}

# Queries the vendor software issues before every file write
PRINT_PREFLIGHT: tuple[Command, ...] = (
    Command.GET_INFO,
    Command.GET_XY,
    Command.GET_INFO,
    Command.GET_POSITION,
    Command.PRINT_STATUS,
    Command.GET_STATUS,
    Command.GET_TEMP,
)


def format_command(command: Command | str, *args: object) -> str:
    """Render a command and its arguments as protocol text (no framing)."""
    code = command.value if isinstance(command, Command) else command
    return " ".join([code, *(str(a) for a in args)])


def build_command(command: Command | str, *args: object) -> bytes:
    """Build the wire bytes for a text command."""
    text = format_command(command, *args)
    if "\r" in text or "\n" in text:
        raise ValueError(f"Command text must be a single line, got {text!r}")
    return (COMMAND_PREFIX + text + COMMAND_SUFFIX).encode("ascii")


def build_session_start() -> bytes:
    """Build the command that opens a control session after TCP connect."""
    return build_command(Command.CONTROL, "S1")


def normalize_remote_path(filename: str | None) -> str:
    """Map a file name to its on-device path.

    The name gets a ``.gx`` extension (required for the printer to show
    the thumbnail) and is rooted under ``0:/user/``.

    Raises:
        ValueError: If the name is not single-line ASCII.
    """
    name = (filename or "").strip() or DEFAULT_REMOTE_NAME
    if not name.isascii() or "\r" in name or "\n" in name:
        raise ValueError(f"Remote file name must be single-line ASCII, got {name!r}")
    if not name.endswith(CONTAINER_EXTENSION):
        name += CONTAINER_EXTENSION
    if name.startswith(REMOTE_PREFIX):
        return name
    return REMOTE_PREFIX + name.lstrip("/")


def build_begin_write(length: int, remote_path: str) -> bytes:
    """Build a BeginWrite command announcing ``length`` bytes.

    Args:
        length: Exact byte length of the container about to be sent.
        remote_path: Normalized on-device path.
    """
    if length < 0:
        raise ValueError(f"Write length must be non-negative, got {length}")
    return build_command(Command.BEGIN_WRITE, length, remote_path)


def build_start_print(remote_path: str) -> bytes:
    """Build a StartPrint command for a stored file."""
    return build_command(Command.START_PRINT, remote_path)


def build_set_name(name: str) -> bytes:
    """Build a SetName command.

    Args:
        name: New device name, non-empty.
    """
    if not name or not name.strip():
        raise ValueError("Device name must not be empty")
    return build_command(Command.SET_NAME, name)
