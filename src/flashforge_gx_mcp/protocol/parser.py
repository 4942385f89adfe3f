"""Parsing of the printer's line-oriented text replies.

Most replies are a ``CMD Mxxx Received.`` echo followed by ``Key: value``
lines. A value is either a number, a run of ``name:number`` pairs, or
free text, and is returned as one of the tagged value types below so
callers match on the type instead of guessing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import NamedTuple, Union

from ..errors import ProtocolError


@dataclass(frozen=True)
class NumberValue:
    """A single numeric value."""

    value: float


@dataclass(frozen=True)
class MapValue:
    """A nested ``name:number`` mapping, e.g. ``X-max:1 Y-max:0``."""

    values: dict[str, float]


@dataclass(frozen=True)
class TextValue:
    """Opaque text."""

    text: str


TelemetryValue = Union[NumberValue, MapValue, TextValue]


class Temperature(NamedTuple):
    """Current and target temperature of one sensor."""

    current: float
    target: float | None


_SLASH_GAP = re.compile(r" +/")


def _to_float(text: str) -> float | None:
    try:
        return float(text)
    except ValueError:
        return None


def parse_map(text: str) -> dict[str, float] | None:
    """Parse ``name:number`` pairs separated by spaces.

    ``"X: 140 Y: 140"`` is accepted as well as ``"X:140 Y:140"``.
    Returns ``None`` if any pair is malformed or not numeric.
    """
    values: dict[str, float] = {}
    for pair in text.replace(": ", ":").split():
        name, sep, raw = pair.partition(":")
        if not sep or not name:
            return None
        number = _to_float(raw)
        if number is None:
            return None
        values[name] = number
    return values or None


def parse_value(text: str) -> TelemetryValue:
    """Classify a reply value as number, nested mapping, or text."""
    if text.find(":") > 0:
        values = parse_map(text)
        if values is not None:
            return MapValue(values)
        return TextValue(text)

    number = _to_float(text)
    if number is not None:
        return NumberValue(number)
    return TextValue(text)


def plain(value: TelemetryValue) -> float | dict[str, float] | str:
    """Unwrap a tagged value into plain Python data."""
    if isinstance(value, NumberValue):
        return value.value
    if isinstance(value, MapValue):
        return dict(value.values)
    return value.text


def _split_line(line: str) -> tuple[str, str] | None:
    index = line.find(":")
    if index < 0:
        return None
    value = line[index + 1 :]
    if value.startswith(" "):
        value = value[1:]
    return line[:index], value


def parse_keyed_block(lines: list[str]) -> dict[str, TelemetryValue]:
    """Parse ``Key: value`` lines into a mapping.

    Lines without a colon (such as the command echo) are skipped. A value
    that fails to parse as a number or mapping is kept as text.
    """
    block: dict[str, TelemetryValue] = {}
    for line in lines:
        parts = _split_line(line.strip("\r\n"))
        if parts is None:
            continue
        key, value = parts
        block[key] = parse_value(value)
    return block


def _is_echo(line: str) -> bool:
    return line.startswith("CMD ")


def _body(lines: list[str]) -> list[str]:
    return [line for line in lines if line.strip() and not _is_echo(line)]


def parse_info(lines: list[str]) -> tuple[dict[str, TelemetryValue], dict[str, float]]:
    """Parse a GetInfo (M115) reply.

    Returns:
        The keyed info block and the build volume / position line
        (``X: 140 Y: 140 Z: 140``) as a name to number mapping.
    """
    info_lines: list[str] = []
    position: dict[str, float] = {}
    for line in _body(lines):
        if line.startswith("X:"):
            position = parse_map(line) or {}
        else:
            info_lines.append(line)
    return parse_keyed_block(info_lines), position


def parse_machine_state(machine: dict[str, TelemetryValue]) -> str:
    """Reduce a GetStatus (M119) block to ``IDLE`` or ``PRINTING``."""
    status = machine.get("MachineStatus")
    if isinstance(status, TextValue) and status.text.strip() == "READY":
        return "IDLE"
    return "PRINTING"


def parse_progress(lines: list[str]) -> tuple[str, float]:
    """Parse a PrintStatus (M27) reply such as ``SD printing byte 12/100``.

    Returns:
        The raw progress line and the percentage rounded to one decimal.

    Raises:
        ProtocolError: If no ``current/total`` pair can be found.
    """
    body = _body(lines)
    if not body:
        raise ProtocolError(f"Empty print status reply: {lines!r}")

    line = body[0].strip()
    current, sep, total = line.split(" ")[-1].partition("/")
    done = _to_float(current)
    size = _to_float(total)
    if not sep or done is None or size is None:
        raise ProtocolError(f"Unrecognized print status line: {line!r}")
    if size == 0:
        return line, 0.0
    return line, round(done / size * 100, 1)


def parse_temperatures(lines: list[str]) -> dict[str, Temperature]:
    """Parse a GetTemp (M105) reply such as ``T0:22 /0 B:21 /0``."""
    body = _body(lines)
    if not body:
        raise ProtocolError(f"Empty temperature reply: {lines!r}")

    temperatures: dict[str, Temperature] = {}
    for token in _SLASH_GAP.sub("/", body[0].strip()).split():
        name, sep, reading = token.partition(":")
        if not sep:
            continue
        parts = [_to_float(v) for v in reading.split("/")]
        if not parts or parts[0] is None:
            raise ProtocolError(f"Unrecognized temperature reading: {token!r}")
        target = parts[1] if len(parts) > 1 else None
        temperatures[name] = Temperature(parts[0], target)
    return temperatures
