"""TCP control session with a FlashForge-style printer.

The printer listens on port 8899 and speaks a line protocol: the client
writes ``~Mxxx ...\\r\\n`` and the printer answers with text lines ending
in a line that contains ``ok``. File uploads are sent as raw framed
blocks (see :mod:`..protocol.framing`) between a BeginWrite and an
EndWrite command, and each block is acknowledged the same way.

The printer cannot tell replies apart, so only one request may be
outstanding at a time. Requests are queued and sent strictly in order,
the next one only after the current one has been answered.

Usage::

    conn = ProtocolConnection()
    await conn.connect("192.168.1.50")
    status = await conn.get_status()
    await conn.close()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from ..errors import (
    AlreadyConnectedError,
    AlreadyConnectingError,
    GXError,
    NotConnectedError,
    PrinterConnectionError,
    TransferError,
)
from ..models.container import (
    DEFAULT_FILAMENT_MM,
    DEFAULT_PRINT_SECONDS,
    encode_container,
)
from ..models.status import PrinterStatus, SpoolResult
from ..protocol.commands import (
    PRINT_PREFLIGHT,
    Command,
    build_begin_write,
    build_command,
    build_session_start,
    build_set_name,
    build_start_print,
    format_command,
    normalize_remote_path,
)
from ..protocol.framing import frame_chunks
from ..protocol.parser import (
    parse_info,
    parse_keyed_block,
    parse_machine_state,
    parse_progress,
    parse_temperatures,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8899
CONNECT_TIMEOUT = 1.0
IDLE_TIMEOUT = 5.0
DEFAULT_RETRY_MAX = 5
DEFAULT_RETRY_DELAY = 2.0
TERMINAL_TOKEN = "ok"


class ConnectionState(Enum):
    """Lifecycle of a session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class PendingCommand:
    """A queued request and the reply lines collected for it."""

    payload: bytes
    label: str
    future: asyncio.Future
    binary: bool = False
    lines: list[str] = field(default_factory=list)

    def succeed(self) -> None:
        if not self.future.done():
            self.future.set_result(list(self.lines))

    def fail(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)


class ProtocolConnection(asyncio.Protocol):
    """One control session with one printer.

    Instances are independent; each owns at most one socket at a time
    and can be reconnected after it drops.
    """

    def __init__(
        self,
        session_id: str | None = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        idle_timeout: float = IDLE_TIMEOUT,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self.host: str | None = None
        self.port: int | None = None
        self._state = ConnectionState.DISCONNECTED
        self._transport: asyncio.Transport | None = None
        self._idle_handle: asyncio.TimerHandle | None = None
        self._pump_handle: asyncio.Handle | None = None
        self._reset()

    def _reset(self) -> None:
        # Callbacks left over from a previous socket must not touch the new queue.
        for handle in (self._idle_handle, self._pump_handle):
            if handle is not None:
                handle.cancel()
        self._queue: deque[PendingCommand] = deque()
        self._in_flight: PendingCommand | None = None
        self._unmatched: list[str] = []
        self._buffer = bytearray()
        self._error: BaseException | None = None
        self._socket_error: BaseException | None = None
        self._ready: asyncio.Future | None = None
        self._closed: asyncio.Future | None = None
        self._idle_handle = None
        self._pump_handle = None
        self.status = PrinterStatus()

    # ─── STATE ───────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def is_connecting(self) -> bool:
        return self._state is ConnectionState.CONNECTING

    @property
    def is_disconnected(self) -> bool:
        return self._state is ConnectionState.DISCONNECTED

    @property
    def pending(self) -> int:
        """Number of requests queued or awaiting a reply."""
        return len(self._queue) + (1 if self._in_flight is not None else 0)

    # ─── CONNECT ─────────────────────────────────────────────────────

    async def connect(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        retry_max: int = DEFAULT_RETRY_MAX,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> ProtocolConnection:
        """Open a session, retrying failed attempts.

        Args:
            host: Printer address.
            port: Control port.
            retry_max: Total number of attempts.
            retry_delay: Seconds to wait between attempts.

        Raises:
            AlreadyConnectingError: If an attempt is already in progress.
            AlreadyConnectedError: If the session is already open.
            PrinterConnectionError: The last error once attempts run out.
        """
        attempts = max(1, retry_max or DEFAULT_RETRY_MAX)
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._connect(host, port)
                return self
            except (AlreadyConnectingError, AlreadyConnectedError):
                raise
            except PrinterConnectionError as e:
                if attempt >= attempts:
                    logger.warning(
                        "[%s] giving up on %s:%s after %d attempts: %s",
                        self.session_id, host, port, attempt, e,
                    )
                    raise
                logger.warning(
                    "[%s] connect to %s:%s failed (%s), retry %d/%d in %.1fs",
                    self.session_id, host, port, e, attempt, attempts - 1, retry_delay,
                )
                await asyncio.sleep(retry_delay)

    async def _connect(self, host: str, port: int) -> None:
        if self._state is ConnectionState.CONNECTING:
            raise AlreadyConnectingError()
        if self._state is ConnectionState.CONNECTED:
            raise AlreadyConnectedError()

        loop = asyncio.get_running_loop()
        self._reset()
        self.host = host
        self.port = port
        self._state = ConnectionState.CONNECTING
        self._ready = loop.create_future()
        self._closed = loop.create_future()
        logger.debug("[%s] connecting to %s:%s", self.session_id, host, port)

        try:
            await asyncio.wait_for(
                loop.create_connection(lambda: self, host, port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            self._state = ConnectionState.DISCONNECTED
            raise PrinterConnectionError(f"Connect to {host}:{port} timed out") from e
        except OSError as e:
            self._state = ConnectionState.DISCONNECTED
            raise PrinterConnectionError(f"Connect to {host}:{port} failed: {e}") from e
        except asyncio.CancelledError:
            self._state = ConnectionState.DISCONNECTED
            self._ready.cancel()
            if self._transport is not None:
                self._transport.abort()
            raise

        try:
            await self._ready
        except asyncio.CancelledError:
            self._ready.cancel()
            if self._transport is not None:
                self._socket_error = PrinterConnectionError("Connect cancelled")
                self._transport.abort()
            raise

    # ─── asyncio.Protocol ────────────────────────────────────────────

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport
        logger.debug("[%s] socket open, starting session", self.session_id)
        self._write(build_session_start())

    def data_received(self, data: bytes) -> None:
        self._touch()
        self._buffer.extend(data)
        while True:
            end = self._buffer.find(b"\n")
            if end < 0:
                break
            raw = bytes(self._buffer[:end])
            del self._buffer[: end + 1]
            self._on_line(raw.decode("ascii", errors="replace").rstrip("\r"))

    def eof_received(self) -> bool | None:
        logger.debug("[%s] remote end closed", self.session_id)
        return None

    def connection_lost(self, exc: Exception | None) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

        if exc is not None and self._socket_error is None:
            self._socket_error = PrinterConnectionError(f"Connection lost: {exc}")
            self._socket_error.__cause__ = exc
        error = self._socket_error or PrinterConnectionError("Connection closed")

        logger.info(
            "[%s] disconnected from %s:%s (%s)",
            self.session_id, self.host, self.port, error,
        )
        self._state = ConnectionState.DISCONNECTED
        self._transport = None
        self.status = PrinterStatus()
        if self._error is None:
            self._error = error

        command, self._in_flight = self._in_flight, None
        if command is not None:
            command.fail(error)
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)

        self._pump()

        if self._closed is not None and not self._closed.done():
            self._closed.set_result(None)

    # ─── REPLY MATCHING ──────────────────────────────────────────────

    def _on_line(self, line: str) -> None:
        logger.debug("[%s] <- %s", self.session_id, line)
        ok_index = line.find(TERMINAL_TOKEN)
        if ok_index < 0:
            self._accumulate(line)
            return

        new_session = False
        if self._state is ConnectionState.CONNECTING:
            self._state = ConnectionState.CONNECTED
            new_session = True
            logger.info("[%s] connected to %s:%s", self.session_id, self.host, self.port)
            if self._ready is not None and not self._ready.done():
                self._ready.set_result(None)
        elif ok_index > 0:
            self._accumulate(line)

        command, self._in_flight = self._in_flight, None
        if command is not None:
            command.succeed()
        elif not new_session:
            logger.warning(
                "[%s] reply with no matching command: %r %r",
                self.session_id, self._unmatched, line,
            )
        self._unmatched = []
        self._schedule_pump()

    def _accumulate(self, line: str) -> None:
        if self._in_flight is not None:
            self._in_flight.lines.append(line)
        else:
            self._unmatched.append(line)

    # ─── SEND QUEUE ──────────────────────────────────────────────────

    def _enqueue(self, payload: bytes, label: str, binary: bool = False) -> PendingCommand:
        command = PendingCommand(
            payload=payload,
            label=label,
            future=asyncio.get_running_loop().create_future(),
            binary=binary,
        )
        self._queue.append(command)
        self._schedule_pump()
        return command

    def _enqueue_command(self, command: Command, *args: object) -> PendingCommand:
        return self._enqueue(build_command(command, *args), format_command(command, *args))

    def _schedule_pump(self) -> None:
        if self._pump_handle is None and self._queue:
            self._pump_handle = asyncio.get_running_loop().call_soon(self._pump)

    def _pump(self) -> None:
        """Send the next queued request, or fail it if the session is gone."""
        self._pump_handle = None
        while self._queue and self._in_flight is None:
            command = self._queue.popleft()
            if self._state is not ConnectionState.CONNECTED and self._error is None:
                self._error = self._socket_error or NotConnectedError("disconnected")
            if self._error is not None:
                command.fail(self._error)
                continue

            transport = self._transport
            if transport is None or transport.is_closing():
                error_cls = TransferError if command.binary else PrinterConnectionError
                command.fail(error_cls(f"Cannot send {command.label}: transport is closing"))
                continue

            self._in_flight = command
            logger.debug("[%s] -> %s", self.session_id, command.label)
            self._write(command.payload)

    def _write(self, data: bytes) -> None:
        self._transport.write(data)
        self._touch()

    def _touch(self) -> None:
        """Restart the inactivity timer."""
        if self._idle_handle is not None:
            self._idle_handle.cancel()
        self._idle_handle = asyncio.get_running_loop().call_later(
            self.idle_timeout, self._on_idle
        )

    def _on_idle(self) -> None:
        self._idle_handle = None
        if self._transport is None:
            return
        logger.debug("[%s] idle for %.1fs, closing", self.session_id, self.idle_timeout)
        if self._socket_error is None:
            self._socket_error = PrinterConnectionError(
                f"Idle timeout after {self.idle_timeout:.1f}s"
            )
        self._transport.abort()

    async def _submit(self, payload: bytes, label: str, binary: bool = False) -> list[str]:
        if self._error is not None:
            raise self._error
        if self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError()
        return await self._enqueue(payload, label, binary).future

    async def send(self, command: str | bytes) -> list[str]:
        """Send one request and return the reply lines before ``ok``.

        Text is sent as a command (``~`` prefix, CRLF suffix). Bytes are
        sent verbatim, as for a framed transfer block.
        """
        if isinstance(command, (bytes, bytearray)):
            return await self._submit(bytes(command), f"<{len(command)} bytes>", binary=True)
        return await self._submit(build_command(command), command)

    async def _request(self, command: Command, *args: object) -> list[str]:
        return await self._submit(build_command(command, *args), format_command(command, *args))

    def abort(self, reason: str = "Aborted") -> None:
        """Flag the session as failed and drop the socket.

        The in-flight request and everything still queued fail with the
        same error; nothing further is written.
        """
        if self._error is None:
            self._error = PrinterConnectionError(reason)
        if self._socket_error is None:
            self._socket_error = self._error
        if self._transport is not None:
            self._transport.abort()
        else:
            self._pump()

    # ─── OPERATIONS ──────────────────────────────────────────────────

    async def get_status(self) -> PrinterStatus:
        """Query info, machine status, job progress and temperatures.

        The four queries run one after another; the first failure aborts
        the rest.
        """
        status = PrinterStatus()

        lines = await self._request(Command.GET_INFO)
        status.info, status.position = parse_info(lines)

        lines = await self._request(Command.GET_STATUS)
        status.machine = parse_keyed_block(lines)
        status.state = parse_machine_state(status.machine)

        lines = await self._request(Command.PRINT_STATUS)
        status.print_line, status.progress = parse_progress(lines)

        lines = await self._request(Command.GET_TEMP)
        status.temperatures = parse_temperatures(lines)

        self.status = status
        return status

    async def print_job(
        self,
        filename: str,
        toolpath: bytes,
        thumbnail: bytes | None = None,
        print_seconds: int | None = DEFAULT_PRINT_SECONDS,
        filament_mm: int | None = DEFAULT_FILAMENT_MM,
    ) -> SpoolResult:
        """Wrap a toolpath in a GX container, upload it and start printing."""
        container = encode_container(toolpath, thumbnail, print_seconds, filament_mm)
        return await self.spool(filename, container)

    async def spool(self, filename: str, container: bytes) -> SpoolResult:
        """Upload an encoded container and start printing it.

        Every step is queued at once so nothing else can interleave with
        the transfer. A failed step does not stop the remaining ones; the
        first failure is raised once the closing status poll has answered.

        Raises:
            NotConnectedError: If the session is not open.
            ValueError: If the file name cannot be sent. Nothing is queued.
            TransferError: If a block was not acknowledged.
            PrinterConnectionError: If the session dropped.
        """
        if self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError()

        remote_path = normalize_remote_path(filename)

        # Build every payload before queuing so a bad name sends nothing.
        payloads: list[tuple[bytes, str, bool]] = [
            (build_command(command), format_command(command), False)
            for command in PRINT_PREFLIGHT
        ]
        payloads.append((
            build_begin_write(len(container), remote_path),
            format_command(Command.BEGIN_WRITE, len(container), remote_path),
            False,
        ))
        payloads.extend(
            (frame.to_bytes(), f"block {frame.index}", True)
            for frame in frame_chunks(container)
        )
        payloads.append((build_command(Command.END_WRITE), format_command(Command.END_WRITE), False))
        payloads.append((
            build_start_print(remote_path),
            format_command(Command.START_PRINT, remote_path),
            False,
        ))

        logger.info(
            "[%s] spooling %d bytes to %s", self.session_id, len(container), remote_path
        )
        steps = [self._enqueue(*payload) for payload in payloads]
        final = self._enqueue_command(Command.PRINT_STATUS)

        output: list[str] = []
        first_error: GXError | None = None
        for step in steps:
            try:
                output.extend(await step.future)
            except GXError as e:
                error = e
                if step.binary and not isinstance(e, TransferError):
                    error = TransferError(f"{step.label} of {remote_path} failed: {e}")
                    error.__cause__ = e
                logger.warning("[%s] %s failed: %s", self.session_id, step.label, e)
                if first_error is None:
                    first_error = error

        try:
            await final.future
        except GXError:
            if first_error is not None:
                raise first_error
            raise

        if first_error is not None:
            raise first_error
        return SpoolResult(spooled=remote_path, output=output)

    async def set_name(self, name: str) -> list[str]:
        """Rename the printer."""
        return await self._submit(build_set_name(name), format_command(Command.SET_NAME, name))

    async def cancel(self) -> list[str]:
        return await self._request(Command.CANCEL)

    async def pause(self) -> list[str]:
        return await self._request(Command.PAUSE)

    async def resume(self) -> list[str]:
        return await self._request(Command.RESUME)

    async def control(self) -> list[str]:
        """Acquire exclusive control of the printer."""
        return await self._request(Command.CONTROL)

    async def release(self) -> list[str]:
        """Release exclusive control of the printer."""
        return await self._request(Command.RELEASE)

    async def close(self) -> None:
        """Release control, then close the socket.

        The socket is closed even if the release fails; the release error
        is raised afterwards.
        """
        try:
            await self.release()
        finally:
            await self._terminate()

    async def _terminate(self) -> None:
        transport = self._transport
        if transport is None:
            return
        transport.close()
        if self._closed is not None:
            await self._closed
