"""Tests for engine.latency -- fallback chain and latency series."""

import asyncio
import unittest

from engine.errors import ConnectivityError, RunCancelledError
from engine.latency import ConnectionClassEstimate, LatencyProber, TcpHandshakeProbe
from engine.progress import Phase


class ScriptedProbe:
    """Returns (or raises) scripted results in order, then *default*."""

    def __init__(self, name, results=(), default=None, delay=0.0):
        self.name = name
        self.results = list(results)
        self.default = default
        self.delay = delay
        self.calls = 0

    async def measure(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if self.results else self.default
        if result is None:
            raise ConnectionError(f"{self.name} unreachable")
        if isinstance(result, BaseException):
            raise result
        return result


class TestMeasureOnce(unittest.IsolatedAsyncioTestCase):
    async def test_first_success_wins(self):
        first = ScriptedProbe("first", default=ConnectionError("down"))
        second = ScriptedProbe("second", default=12.0)
        third = ScriptedProbe("third", default=99.0)
        prober = LatencyProber([first, second, third])

        self.assertEqual(await prober.measure_once(), 12.0)
        self.assertEqual(prober.last_strategy, "second")
        self.assertEqual(third.calls, 0)

    async def test_all_fail(self):
        prober = LatencyProber([ScriptedProbe("a"), ScriptedProbe("b")])
        with self.assertRaises(ConnectivityError):
            await prober.measure_once()

    async def test_no_strategies(self):
        with self.assertRaises(ConnectivityError):
            await LatencyProber([]).measure_once()

    async def test_slow_strategy_times_out(self):
        slow = ScriptedProbe("slow", default=1.0, delay=1.0)
        fast = ScriptedProbe("fast", default=30.0)
        prober = LatencyProber([slow, fast], timeout_ms=20)

        self.assertEqual(await prober.measure_once(), 30.0)
        self.assertEqual(prober.last_strategy, "fast")

    async def test_get_current_latency_returns_none(self):
        prober = LatencyProber([ScriptedProbe("down")])
        self.assertIsNone(await prober.get_current_latency())

    async def test_get_current_latency_value(self):
        prober = LatencyProber([ScriptedProbe("up", default=8.5)])
        self.assertEqual(await prober.get_current_latency(), 8.5)


class TestMeasureSeries(unittest.IsolatedAsyncioTestCase):
    async def test_two_of_five_failures(self):
        probe = ScriptedProbe(
            "scripted",
            results=[10.0, ConnectionError(), 20.0, ConnectionError(), 30.0],
        )
        result = await LatencyProber([probe]).measure_series(count=5, interval_ms=0)

        self.assertEqual(result.attempted, 5)
        self.assertEqual(result.count, 3)
        self.assertAlmostEqual(result.packet_loss, 40.0)
        self.assertAlmostEqual(result.avg, 20.0)
        self.assertAlmostEqual(result.jitter, 8.165, places=3)

    async def test_zero_successes_raise(self):
        prober = LatencyProber([ScriptedProbe("down")])
        with self.assertRaises(ConnectivityError):
            await prober.measure_series(count=3, interval_ms=0)

    async def test_progress_after_every_attempt(self):
        events = []
        probe = ScriptedProbe("scripted", results=[5.0, ConnectionError(), 6.0, 7.0])
        await LatencyProber([probe]).measure_series(
            count=4, interval_ms=0, on_progress=events.append,
        )

        self.assertEqual(len(events), 4)
        self.assertTrue(all(e.phase is Phase.LATENCY for e in events))
        percentages = [e.percentage for e in events]
        self.assertEqual(percentages, sorted(percentages))
        self.assertEqual(percentages[-1], 100.0)
        self.assertIsNone(events[1].latency)
        self.assertEqual(events[0].latency, 5.0)

    async def test_waits_interval_between_attempts(self):
        probe = ScriptedProbe("scripted", default=1.0)
        loop = asyncio.get_running_loop()
        start = loop.time()
        await LatencyProber([probe]).measure_series(count=3, interval_ms=50)
        # two gaps, none after the last attempt
        self.assertGreaterEqual(loop.time() - start, 0.09)

    async def test_cancel_before_start(self):
        cancel = asyncio.Event()
        cancel.set()
        probe = ScriptedProbe("scripted", default=1.0)
        with self.assertRaises(RunCancelledError):
            await LatencyProber([probe]).measure_series(count=3, interval_ms=0, cancel=cancel)
        self.assertEqual(probe.calls, 0)

    async def test_cancel_during_series(self):
        cancel = asyncio.Event()
        probe = ScriptedProbe("scripted", default=1.0)

        def on_progress(event):
            if event.percentage >= 40:
                cancel.set()

        with self.assertRaises(RunCancelledError):
            await LatencyProber([probe]).measure_series(
                count=5, interval_ms=10, on_progress=on_progress, cancel=cancel,
            )
        self.assertEqual(probe.calls, 2)

    async def test_invalid_count(self):
        with self.assertRaises(ValueError):
            await LatencyProber([ScriptedProbe("a", default=1.0)]).measure_series(count=0)


class TestConnectionClassEstimate(unittest.IsolatedAsyncioTestCase):
    async def test_known_class(self):
        self.assertEqual(await ConnectionClassEstimate("4G").measure(), 60.0)

    async def test_unknown_class_is_a_failed_probe(self):
        prober = LatencyProber([ConnectionClassEstimate("carrier-pigeon")])
        self.assertIsNone(await prober.get_current_latency())

    async def test_last_resort(self):
        prober = LatencyProber([ScriptedProbe("down"), ConnectionClassEstimate("wifi")])
        self.assertEqual(await prober.measure_once(), 30.0)
        self.assertEqual(prober.last_strategy, "connection-class")


class TestTcpHandshakeProbe(unittest.IsolatedAsyncioTestCase):
    async def test_local_handshake(self):
        async def handle(reader, writer):
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            latency = await TcpHandshakeProbe("127.0.0.1", port).measure()
        finally:
            server.close()
            await server.wait_closed()
        self.assertGreaterEqual(latency, 0.0)
        self.assertLess(latency, 1000.0)

    async def test_refused_connection(self):
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        prober = LatencyProber([TcpHandshakeProbe("127.0.0.1", port)], timeout_ms=1000)
        self.assertIsNone(await prober.get_current_latency())


if __name__ == "__main__":
    unittest.main()
