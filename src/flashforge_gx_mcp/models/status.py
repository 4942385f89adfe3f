"""Printer status and job result models."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..protocol.parser import Temperature, TelemetryValue, plain


@dataclass
class PrinterStatus:
    """Combined result of the four status queries."""

    info: dict[str, TelemetryValue] = field(default_factory=dict)
    position: dict[str, float] = field(default_factory=dict)
    machine: dict[str, TelemetryValue] = field(default_factory=dict)
    state: str = "offline"
    print_line: str = ""
    progress: float = 0.0
    temperatures: dict[str, Temperature] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "progress": self.progress,
            "print": self.print_line,
            "info": {k: plain(v) for k, v in self.info.items()},
            "position": dict(self.position),
            "status": {k: plain(v) for k, v in self.machine.items()},
            "temps": {
                name: [t.current, t.target] for name, t in self.temperatures.items()
            },
        }


@dataclass
class SpoolResult:
    """Outcome of a successful file spool."""

    spooled: str
    output: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"spooled": self.spooled, "output": list(self.output)}
