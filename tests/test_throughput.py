"""Tests for engine.throughput -- payload sizing and the parallel sampler."""

import asyncio
import time
import unittest

from engine.errors import RunCancelledError, TransferError
from engine.progress import Phase
from engine.throughput import (
    ConnectionStats,
    ThroughputConfig,
    ThroughputEngine,
    ThroughputResult,
    get_payload,
    select_payload,
)


class RateTransfer:
    """Delivers bytes at a steady *rate* (bytes/s) per connection."""

    def __init__(self, rate, fail_ids=()):
        self.rate = rate
        self.fail_ids = set(fail_ids)
        self.calls = []

    async def __call__(self, conn_id, size, on_bytes):
        self.calls.append((conn_id, size))
        if conn_id in self.fail_ids:
            raise ConnectionError(f"connection {conn_id} refused")
        start = time.perf_counter()
        sent = 0
        while sent < size:
            await asyncio.sleep(0.002)
            target = min(size, int(self.rate * (time.perf_counter() - start)))
            if target > sent:
                on_bytes(target - sent)
                sent = target
        return sent


class FailingTransfer:
    async def __call__(self, conn_id, size, on_bytes):
        raise ConnectionError("network unreachable")


def _config(**kwargs):
    defaults = dict(
        duration_ms=600,
        connection_count=2,
        overhead_compensation=0.08,
        progress_interval_ms=50,
        progressive=False,
    )
    defaults.update(kwargs)
    return ThroughputConfig(**defaults)


# 2 connections x 500 KB/s = 1 MB/s = 8 Mbps raw
PER_CONNECTION_RATE = 500_000
EXPECTED_MBPS = 8.0 * 1.08


class TestSelectPayload(unittest.TestCase):
    def test_no_estimate_uses_default(self):
        self.assertEqual(select_payload(None).name, "large")

    def test_buckets(self):
        cases = {
            0.0: "small",
            9.99: "small",
            10.0: "medium",
            25.0: "large",
            50.0: "xlarge",
            100.0: "xxlarge",
        }
        for estimate, name in cases.items():
            self.assertEqual(select_payload(estimate).name, name, estimate)

    def test_beyond_largest_bucket(self):
        self.assertEqual(select_payload(5000.0).name, "xxlarge")

    def test_below_smallest_bucket(self):
        self.assertEqual(select_payload(-1.0).name, "small")

    def test_sizes_increase(self):
        names = ["small", "medium", "large", "xlarge", "xxlarge"]
        sizes = [get_payload(n).size for n in names]
        self.assertEqual(sizes, sorted(sizes))

    def test_unknown_bucket(self):
        with self.assertRaises(KeyError):
            get_payload("jumbo")


class TestConnectionStats(unittest.TestCase):
    def test_calculate(self):
        stats = ConnectionStats(id=1, bytes_transferred=1_250_000, duration_ms=1000)
        stats.calculate()
        self.assertAlmostEqual(stats.speed_mbps, 10.0)

    def test_result_to_dict(self):
        d = ThroughputResult(speed=12.345, connections=[ConnectionStats(id=0)]).to_dict()
        self.assertEqual(d["speed_mbps"], 12.35)
        self.assertEqual(d["direction"], "download")
        self.assertEqual(len(d["per_connection"]), 1)
        self.assertFalse(d["simulated"])


class TestMeasure(unittest.IsolatedAsyncioTestCase):
    async def test_constant_rate(self):
        engine = ThroughputEngine(download=RateTransfer(PER_CONNECTION_RATE))
        result = await engine.measure_download(_config())

        self.assertEqual(result.direction, "download")
        self.assertEqual(result.connection_count, 2)
        self.assertEqual(result.payload, "large")
        self.assertIsNone(result.estimated_speed)
        self.assertAlmostEqual(result.avg_speed, EXPECTED_MBPS, delta=EXPECTED_MBPS * 0.15)
        self.assertAlmostEqual(result.speed, result.avg_speed)
        self.assertGreaterEqual(result.peak_speed, max(result.speed_history))
        self.assertAlmostEqual(result.peak_speed, EXPECTED_MBPS, delta=EXPECTED_MBPS * 0.25)
        self.assertGreater(result.stability, 50.0)
        self.assertFalse(result.simulated)

    async def test_peak_is_at_least_smoothed_history(self):
        engine = ThroughputEngine(download=RateTransfer(PER_CONNECTION_RATE))
        result = await engine.measure_download(_config(duration_ms=300))
        self.assertTrue(result.speed_history)
        self.assertEqual(result.peak_speed, max(result.speed_history))

    async def test_per_connection_stats(self):
        engine = ThroughputEngine(upload=RateTransfer(PER_CONNECTION_RATE))
        result = await engine.measure_upload(_config(connection_count=3))

        self.assertEqual(result.direction, "upload")
        self.assertEqual([c.id for c in result.connections], [0, 1, 2])
        self.assertEqual(
            sum(c.bytes_transferred for c in result.connections), result.bytes_transferred,
        )
        for conn in result.connections:
            self.assertGreater(conn.speed_mbps, 0.0)
            self.assertIsNone(conn.error)

    async def test_connection_count_clamped(self):
        engine = ThroughputEngine(download=RateTransfer(PER_CONNECTION_RATE))
        result = await engine.measure_download(_config(connection_count=0, duration_ms=200))
        self.assertEqual(result.connection_count, 1)

    async def test_partial_failure_tolerated(self):
        engine = ThroughputEngine(download=RateTransfer(PER_CONNECTION_RATE, fail_ids={0}))
        result = await engine.measure_download(_config(connection_count=3))

        self.assertEqual(result.failed_connections, 1)
        self.assertIn("refused", result.connections[0].error)
        self.assertGreater(result.speed, 0.0)

    async def test_all_connections_fail(self):
        engine = ThroughputEngine(download=FailingTransfer())
        with self.assertRaises(TransferError):
            await engine.measure_download(_config())

    async def test_simulated_fallback_is_flagged(self):
        engine = ThroughputEngine(upload=FailingTransfer())
        result = await engine.measure_upload(
            _config(duration_ms=300, allow_simulated_fallback=True)
        )
        self.assertTrue(result.simulated)
        self.assertTrue(result.to_dict()["simulated"])
        self.assertGreater(result.bytes_transferred, 0)

    async def test_missing_transfer(self):
        with self.assertRaises(TransferError):
            await ThroughputEngine().measure_upload(_config())

    async def test_invalid_duration(self):
        engine = ThroughputEngine(download=RateTransfer(PER_CONNECTION_RATE))
        with self.assertRaises(ValueError):
            await engine.measure_download(_config(duration_ms=0))

    async def test_transfers_finishing_early_end_the_run(self):
        class Tiny:
            async def __call__(self, conn_id, size, on_bytes):
                on_bytes(1000)
                return 1000

        loop = asyncio.get_running_loop()
        start = loop.time()
        result = await ThroughputEngine(download=Tiny()).measure_download(
            _config(duration_ms=5000)
        )
        self.assertLess(loop.time() - start, 1.0)
        self.assertEqual(result.bytes_transferred, 2000)


class TestProgressive(unittest.IsolatedAsyncioTestCase):
    async def test_probe_picks_bucket(self):
        transfer = RateTransfer(1_000_000)  # 8 Mbps on the single probe connection
        engine = ThroughputEngine(download=transfer)
        result = await engine.measure_download(
            _config(progressive=True, probe_duration_ms=200, duration_ms=300)
        )

        self.assertIsNotNone(result.estimated_speed)
        self.assertAlmostEqual(result.estimated_speed, 8.0, delta=2.0)
        self.assertEqual(result.payload, "small")
        # probe, then the measured connections
        self.assertEqual(transfer.calls[0][0], 0)
        self.assertEqual(len(transfer.calls), 3)
        self.assertTrue(all(size == get_payload("small").size for _, size in transfer.calls[1:]))

    async def test_failed_probe_uses_default_bucket(self):
        engine = ThroughputEngine(download=RateTransfer(PER_CONNECTION_RATE, fail_ids={0}))
        result = await engine.measure_download(
            _config(progressive=True, probe_duration_ms=100, duration_ms=300)
        )
        self.assertIsNone(result.estimated_speed)
        self.assertEqual(result.payload, "large")


class TestProgressAndCancel(unittest.IsolatedAsyncioTestCase):
    async def test_progress_is_monotonic(self):
        events = []
        engine = ThroughputEngine(download=RateTransfer(PER_CONNECTION_RATE))
        await engine.measure_download(_config(progressive=True, probe_duration_ms=100), events.append)

        self.assertTrue(events)
        self.assertTrue(all(e.phase is Phase.DOWNLOAD for e in events))
        percentages = [e.percentage for e in events]
        self.assertEqual(percentages, sorted(percentages))
        self.assertLessEqual(percentages[-1], 100.0)
        self.assertTrue(any(e.speed for e in events))

    async def test_cancel_mid_transfer(self):
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.15, cancel.set)
        engine = ThroughputEngine(download=RateTransfer(PER_CONNECTION_RATE))

        loop = asyncio.get_running_loop()
        start = loop.time()
        with self.assertRaises(RunCancelledError):
            await engine.measure_download(_config(duration_ms=5000), cancel=cancel)
        self.assertLess(loop.time() - start, 1.0)

    async def test_cancel_during_probe(self):
        cancel = asyncio.Event()
        cancel.set()
        engine = ThroughputEngine(download=RateTransfer(PER_CONNECTION_RATE))
        with self.assertRaises(RunCancelledError):
            await engine.measure_download(_config(progressive=True), cancel=cancel)


if __name__ == "__main__":
    unittest.main()
