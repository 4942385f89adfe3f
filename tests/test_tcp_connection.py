"""Tests for the TCP control session against an in-process fake printer."""

import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from fake_printer import FakePrinter

from flashforge_gx_mcp.errors import (
    AlreadyConnectedError,
    AlreadyConnectingError,
    NotConnectedError,
    PrinterConnectionError,
    ProtocolError,
    TransferError,
)
from flashforge_gx_mcp.models.container import decode_container, encode_container
from flashforge_gx_mcp.protocol.parser import TextValue
from flashforge_gx_mcp.transport.tcp_connection import (
    ConnectionState,
    ProtocolConnection,
)

LOGGER_NAME = "flashforge_gx_mcp.transport.tcp_connection"


class ConnectionTestCase(unittest.IsolatedAsyncioTestCase):

    printer_kwargs: dict = {}

    async def asyncSetUp(self):
        self.printer = await FakePrinter(**self.printer_kwargs).start()
        self.conn = ProtocolConnection(session_id="test")

    async def asyncTearDown(self):
        if not self.conn.is_disconnected:
            self.conn.abort("test finished")
            await asyncio.sleep(0)
        await self.printer.stop()

    async def connect(self, **kwargs):
        kwargs.setdefault("retry_max", 1)
        return await self.conn.connect("127.0.0.1", self.printer.port, **kwargs)


class TestConnect(ConnectionTestCase):

    async def test_connect_sends_session_start(self):
        await self.connect()
        self.assertIs(self.conn.state, ConnectionState.CONNECTED)
        self.assertTrue(self.conn.is_connected)
        self.assertEqual(self.printer.received, ["M601 S1"])

    async def test_session_id_is_per_instance(self):
        self.assertEqual(self.conn.session_id, "test")
        self.assertNotEqual(
            ProtocolConnection().session_id, ProtocolConnection().session_id
        )

    async def test_second_connect_while_connecting(self):
        first = asyncio.create_task(self.connect())
        await asyncio.sleep(0)
        self.assertTrue(self.conn.is_connecting)

        with self.assertRaises(AlreadyConnectingError):
            await self.connect(retry_max=5)

        await first
        self.assertTrue(self.conn.is_connected)
        self.assertEqual(self.printer.connections, 1)

    async def test_connect_while_connected(self):
        await self.connect()
        with self.assertRaises(AlreadyConnectedError):
            await self.connect()
        self.assertTrue(self.conn.is_connected)

    async def test_connect_refused(self):
        port = self.printer.port
        await self.printer.stop()
        self.printer = await FakePrinter().start()
        with self.assertRaises(PrinterConnectionError):
            await self.conn.connect("127.0.0.1", port, retry_max=2, retry_delay=0.01)
        self.assertTrue(self.conn.is_disconnected)

    async def test_connect_retries_then_succeeds(self):
        attempts = AsyncMock(side_effect=[PrinterConnectionError("refused"), None])
        with patch.object(self.conn, "_connect", attempts):
            with self.assertLogs(LOGGER_NAME, level="WARNING"):
                result = await self.conn.connect("127.0.0.1", 1, retry_max=3, retry_delay=0.01)
        self.assertIs(result, self.conn)
        self.assertEqual(attempts.await_count, 2)

    async def test_connect_gives_up_after_retry_max(self):
        error = PrinterConnectionError("refused")
        attempts = AsyncMock(side_effect=error)
        with patch.object(self.conn, "_connect", attempts):
            with self.assertRaises(PrinterConnectionError) as ctx:
                await self.conn.connect("127.0.0.1", 1, retry_max=3, retry_delay=0.01)
        self.assertIs(ctx.exception, error)
        self.assertEqual(attempts.await_count, 3)

    async def test_idle_timeout_closes_session(self):
        self.conn = ProtocolConnection(idle_timeout=0.1)
        await self.connect()
        await asyncio.sleep(0.3)
        self.assertTrue(self.conn.is_disconnected)
        with self.assertRaises(PrinterConnectionError):
            await self.conn.send("M115")


class TestSilentPrinter(ConnectionTestCase):

    printer_kwargs = {"greet": False}

    async def test_no_acknowledgement_fails_connect(self):
        self.conn = ProtocolConnection(idle_timeout=0.1)
        with self.assertRaises(PrinterConnectionError):
            await self.connect()
        self.assertTrue(self.conn.is_disconnected)

    async def test_cancelled_connect_drops_socket(self):
        task = asyncio.ensure_future(self.connect())
        await self.printer.wait_for("M601 S1")
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.05)
        self.assertTrue(self.conn.is_disconnected)
        self.assertTrue(self.conn._ready.cancelled())


class TestCommandPipeline(ConnectionTestCase):

    async def test_send_returns_lines_before_ok(self):
        await self.connect()
        lines = await self.conn.send("M27")
        self.assertEqual(lines, ["CMD M27 Received.", "SD printing byte 25/200"])

    async def test_send_when_not_connected(self):
        with self.assertRaises(NotConnectedError):
            await self.conn.send("M115")

    async def test_replies_resolve_in_submission_order(self):
        await self.connect()
        order = []
        commands = ["M115", "M119", "M27", "M105", "M114"]

        async def submit(code):
            lines = await self.conn.send(code)
            order.append(code)
            return lines

        results = await asyncio.gather(*(submit(c) for c in commands))
        self.assertEqual(order, commands)
        self.assertEqual(self.printer.received[1:], commands)
        for code, lines in zip(commands, results):
            self.assertEqual(lines[0], f"CMD {code} Received.")

    async def test_next_command_waits_for_reply(self):
        """The second command is not written until the first is answered."""
        await self.connect()
        gate = self.printer.hold["M115"] = asyncio.Event()
        resolved = []

        def track(code):
            task = asyncio.ensure_future(self.conn.send(code))
            task.add_done_callback(lambda _: resolved.append(code))
            return task

        tasks = [track("M115"), track("M119"), track("M105")]
        await self.printer.wait_for("M115")
        await asyncio.sleep(0.1)
        self.assertEqual(self.printer.received, ["M601 S1", "M115"])
        self.assertEqual(self.conn.pending, 3)

        gate.set()
        await asyncio.gather(*tasks)
        self.assertEqual(resolved, ["M115", "M119", "M105"])
        self.assertEqual(self.printer.received, ["M601 S1", "M115", "M119", "M105"])

    async def test_unmatched_reply_is_logged(self):
        await self.connect()
        with self.assertLogs(LOGGER_NAME, level="WARNING") as logs:
            self.conn.data_received(b"stray line\r\nok\r\n")
        self.assertIn("no matching command", logs.output[0])
        self.assertTrue(self.conn.is_connected)

    async def test_reply_split_across_packets(self):
        await self.connect()
        self.printer.hold["M27"] = asyncio.Event()
        task = asyncio.ensure_future(self.conn.send("M27"))
        await self.printer.wait_for("M27")
        self.conn.data_received(b"CMD M27 Rec")
        self.conn.data_received(b"eived.\r\nSD printing byte 1/2\r")
        self.conn.data_received(b"\nok\r\n")
        self.assertEqual(await task, ["CMD M27 Received.", "SD printing byte 1/2"])


class TestConnectionLoss(ConnectionTestCase):

    printer_kwargs = {"close_on": "M115"}

    async def test_close_fails_in_flight_and_drains_queue(self):
        await self.connect()
        tasks = [asyncio.ensure_future(self.conn.send(c)) for c in ("M115", "M119", "M105")]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for result in results:
            self.assertIsInstance(result, PrinterConnectionError)
        self.assertIs(results[1], results[0])
        self.assertIs(results[2], results[0])
        self.assertEqual(self.printer.received, ["M601 S1", "M115"])
        self.assertTrue(self.conn.is_disconnected)

    async def test_reconnect_after_loss(self):
        await self.connect()
        with self.assertRaises(PrinterConnectionError):
            await self.conn.send("M115")
        self.printer.close_on = None
        await self.connect()
        self.assertTrue(self.conn.is_connected)
        self.assertEqual(len(await self.conn.send("M115")), 7)


class TestAbort(ConnectionTestCase):

    async def test_abort_fails_queue_without_writes(self):
        await self.connect()
        self.printer.hold["M115"] = asyncio.Event()
        tasks = [asyncio.ensure_future(self.conn.send(c)) for c in ("M115", "M119", "M105")]
        await self.printer.wait_for("M115")

        self.conn.abort("operator abort")
        results = await asyncio.gather(*tasks, return_exceptions=True)
        self.assertTrue(all(isinstance(r, PrinterConnectionError) for r in results))
        self.assertIn("operator abort", str(results[1]))
        self.assertEqual(self.printer.received, ["M601 S1", "M115"])


class TestOperations(ConnectionTestCase):

    async def test_get_status(self):
        await self.connect()
        status = await self.conn.get_status()

        self.assertEqual(self.printer.received[1:], ["M115", "M119", "M27", "M105"])
        self.assertEqual(status.info["Machine Name"], TextValue("Workshop"))
        self.assertEqual(status.position, {"X": 140.0, "Y": 140.0, "Z": 140.0})
        self.assertEqual(status.state, "IDLE")
        self.assertEqual(status.progress, 12.5)
        self.assertEqual(status.temperatures["T0"].current, 210.0)
        self.assertEqual(status.temperatures["T0"].target, 215.0)
        self.assertIs(self.conn.status, status)

        d = status.to_dict()
        self.assertEqual(d["temps"]["B"], [60.0, 60.0])
        self.assertEqual(d["status"]["Endstop"], {"X-max": 1.0, "Y-max": 0.0, "Z-min": 0.0})

    async def test_print_job(self):
        await self.connect()
        toolpath = b"G1 X1\n" * 900  # 5400 bytes
        result = await self.conn.print_job("part", toolpath, print_seconds=600)

        container = encode_container(toolpath, None, 600)
        self.assertEqual(result.spooled, "0:/user/part.gx")
        self.assertEqual(
            self.printer.received[1:],
            [
                "M115", "M650", "M115", "M114", "M27", "M119", "M105",
                f"M28 {len(container)} 0:/user/part.gx",
                "block", "block",
                "M29",
                "M23 0:/user/part.gx",
                "M27",
            ],
        )
        self.assertEqual([b.index for b in self.printer.blocks], [0, 1])
        sent = b"".join(b.data for b in self.printer.blocks)
        self.assertEqual(sent, container)
        self.assertEqual(decode_container(sent).toolpath, toolpath)
        self.assertIn("CMD M115 Received.", result.output)

    async def test_spool_prebuilt_container(self):
        await self.connect()
        container = encode_container(b"G28\n")
        result = await self.conn.spool("0:/user/ready.gx", container)
        self.assertEqual(result.spooled, "0:/user/ready.gx")
        self.assertEqual(len(self.printer.blocks), 1)
        self.assertEqual(self.printer.blocks[0].data, container)

    async def test_spool_rejects_bad_name_before_sending(self):
        await self.connect()
        for name in ("pärt", "part\r\nM112"):
            with self.subTest(name=name):
                with self.assertRaises(ValueError):
                    await self.conn.spool(name, encode_container(b"G28\n"))
        await asyncio.sleep(0.05)
        self.assertEqual(self.printer.received, ["M601 S1"])
        self.assertEqual(self.conn.pending, 0)
        self.assertTrue(self.conn.is_connected)

    async def test_reconnect_cancels_leftover_callbacks(self):
        await self.connect()
        await self.conn.close()
        loop = asyncio.get_running_loop()
        stale = MagicMock()
        pump = self.conn._pump_handle = loop.call_soon(stale)
        idle = self.conn._idle_handle = loop.call_later(60, stale)

        await self.connect()
        await asyncio.sleep(0)
        self.assertTrue(pump.cancelled())
        self.assertTrue(idle.cancelled())
        stale.assert_not_called()

    async def test_spool_requires_connection(self):
        with self.assertRaises(NotConnectedError):
            await self.conn.spool("part", encode_container(b"G28\n"))

    async def test_set_name(self):
        await self.connect()
        lines = await self.conn.set_name("Workshop 2")
        self.assertEqual(self.printer.received[-1], "M610 Workshop 2")
        self.assertEqual(lines, ["CMD M610 Received."])

    async def test_single_round_trips(self):
        await self.connect()
        await self.conn.cancel()
        await self.conn.pause()
        await self.conn.resume()
        await self.conn.control()
        self.assertEqual(self.printer.received[1:], ["M26", "M25", "M24", "M601"])

    async def test_close_releases_then_disconnects(self):
        await self.connect()
        await self.conn.close()
        self.assertEqual(self.printer.received[-1], "M602")
        self.assertTrue(self.conn.is_disconnected)

    async def test_close_when_never_connected(self):
        with self.assertRaises(NotConnectedError):
            await self.conn.close()


class TestStatusBadReply(ConnectionTestCase):

    printer_kwargs = {"replies": {"M27": ["CMD M27 Received.", "SD printing"]}}

    async def test_unparseable_reply_stops_status_query(self):
        await self.connect()
        with self.assertRaises(ProtocolError):
            await self.conn.get_status()
        await asyncio.sleep(0.05)
        self.assertEqual(self.printer.received[1:], ["M115", "M119", "M27"])
        self.assertTrue(self.conn.is_connected)


class TestStatusConnectionLoss(ConnectionTestCase):

    printer_kwargs = {"close_on": "M119"}

    async def test_lost_connection_stops_status_query(self):
        await self.connect()
        with self.assertRaises(PrinterConnectionError):
            await self.conn.get_status()
        await asyncio.sleep(0.05)
        self.assertEqual(self.printer.received[1:], ["M115", "M119"])
        self.assertTrue(self.conn.is_disconnected)


class TestTransferFailure(ConnectionTestCase):

    printer_kwargs = {"close_on": "block"}

    async def test_failed_block_fails_job(self):
        await self.connect()
        with self.assertRaises(TransferError) as ctx:
            await self.conn.print_job("part", b"G1 X1\n" * 900)
        self.assertIsInstance(ctx.exception.__cause__, PrinterConnectionError)
        self.assertIn("block 0", str(ctx.exception))
        self.assertEqual(self.printer.received.count("block"), 1)
        self.assertNotIn("M29", self.printer.received)
        self.assertTrue(self.conn.is_disconnected)


class TestReleaseFailure(ConnectionTestCase):

    printer_kwargs = {"close_on": "M602"}

    async def test_close_surfaces_release_error(self):
        await self.connect()
        with self.assertRaises(PrinterConnectionError):
            await self.conn.close()
        self.assertTrue(self.conn.is_disconnected)


class TestIndependentSessions(ConnectionTestCase):

    async def test_two_sessions_do_not_share_state(self):
        other_printer = await FakePrinter(close_on="M115").start()
        other = ProtocolConnection(session_id="other")
        try:
            await self.connect()
            await other.connect("127.0.0.1", other_printer.port, retry_max=1)

            with self.assertRaises(PrinterConnectionError):
                await other.send("M115")
            self.assertTrue(other.is_disconnected)
            self.assertEqual(len(await self.conn.send("M115")), 7)
        finally:
            await other_printer.stop()


if __name__ == "__main__":
    unittest.main()
