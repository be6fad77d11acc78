"""Tests for engine.orchestrator -- phase sequencing, progress and cancellation."""

import asyncio
import unittest

from engine.config import TestConfig
from engine.errors import (
    ConnectivityError,
    MeasurementTimeoutError,
    RunCancelledError,
    TransferError,
)
from engine.latency import ConnectionClassEstimate, LatencyProber
from engine.orchestrator import PHASE_RANGES, TestOrchestrator
from engine.progress import Phase, ProgressEvent
from engine.quality import QualityLevel
from engine.servers import TestServer
from engine.throughput import ThroughputResult


class CyclingProbe:
    name = "cycling"

    def __init__(self, values):
        self.values = list(values)
        self.calls = 0

    async def measure(self):
        value = self.values[self.calls % len(self.values)]
        self.calls += 1
        if value is None:
            raise ConnectionError("no route to host")
        return value


class HangingProbe:
    name = "hanging"

    async def measure(self):
        await asyncio.sleep(10)


class FakeEngine:
    """Reports three progress steps per direction and returns fixed speeds."""

    def __init__(self, download=150.0, upload=80.0, delay=0.0, upload_error=None):
        self.speeds = {Phase.DOWNLOAD: download, Phase.UPLOAD: upload}
        self.delay = delay
        self.upload_error = upload_error
        self.configs = []

    async def measure_download(self, config=None, on_progress=None, cancel=None):
        return await self._measure(Phase.DOWNLOAD, config, on_progress)

    async def measure_upload(self, config=None, on_progress=None, cancel=None):
        if self.upload_error is not None:
            raise self.upload_error
        return await self._measure(Phase.UPLOAD, config, on_progress)

    async def _measure(self, phase, config, on_progress):
        self.configs.append(config)
        speed = self.speeds[phase]
        for pct in (25.0, 50.0, 100.0):
            if on_progress:
                on_progress(ProgressEvent(phase, pct, speed=speed))
            await asyncio.sleep(self.delay)
        return ThroughputResult(
            direction=phase.value, speed=speed, avg_speed=speed, peak_speed=speed,
        )


def _config(**kwargs):
    defaults = dict(
        latency_sample_count=3,
        latency_interval_ms=0,
        transition_delay_ms=0,
    )
    defaults.update(kwargs)
    return TestConfig(**defaults)


def _orchestrator(values=(10.0, 20.0, 30.0), engine=None, **kwargs):
    prober = LatencyProber([CyclingProbe(values)])
    return TestOrchestrator(prober, engine or FakeEngine(), _config(**kwargs))


class Recorder:
    def __init__(self, orchestrator):
        self.phases, self.progress, self.completed, self.errors = [], [], [], []
        orchestrator.on("phase", self.phases.append)
        orchestrator.on("progress", self.progress.append)
        orchestrator.on("complete", self.completed.append)
        orchestrator.on("error", self.errors.append)


class TestSuccessfulRun(unittest.IsolatedAsyncioTestCase):
    async def test_phase_sequence(self):
        orch = _orchestrator()
        rec = Recorder(orch)
        await orch.start_test()

        self.assertEqual(rec.phases, [
            Phase.INITIALIZING,
            Phase.LATENCY,
            Phase.TRANSITION,
            Phase.DOWNLOAD,
            Phase.UPLOAD,
            Phase.COMPLETED,
        ])
        self.assertEqual(orch.phase, Phase.COMPLETED)
        self.assertFalse(orch.running)

    async def test_result(self):
        orch = _orchestrator()
        rec = Recorder(orch)
        result = await orch.start_test()

        self.assertEqual(rec.completed, [result])
        self.assertIs(orch.result, result)
        self.assertAlmostEqual(result.latency.avg, 20.0)
        self.assertAlmostEqual(result.latency.jitter, 8.165, places=3)
        self.assertEqual(result.download.speed, 150.0)
        self.assertEqual(result.upload.speed, 80.0)
        self.assertEqual(result.quality.latency, QualityLevel.EXCELLENT)
        self.assertEqual(result.quality.jitter, QualityLevel.GOOD)
        self.assertEqual(result.config["latency_sample_count"], 3)
        self.assertEqual(rec.errors, [])

    async def test_to_dict(self):
        result = await _orchestrator().start_test()
        d = result.to_dict()
        for key in ("id", "timestamp", "latency", "download", "upload", "quality", "config"):
            self.assertIn(key, d)
        self.assertIsNone(d["server"])

    async def test_progress_ranges(self):
        orch = _orchestrator()
        rec = Recorder(orch)
        await orch.start_test()

        percentages = [e.percentage for e in rec.progress]
        self.assertEqual(percentages, sorted(percentages))
        self.assertEqual(percentages[-1], 100.0)
        for event in rec.progress:
            if event.phase in PHASE_RANGES:
                low, high = PHASE_RANGES[event.phase]
                self.assertGreaterEqual(event.percentage, low)
                self.assertLessEqual(event.percentage, high)
        download = [e.percentage for e in rec.progress if e.phase is Phase.DOWNLOAD]
        self.assertEqual(download, [30.0, 40.0, 50.0, 70.0])

    async def test_quality_method(self):
        result = await _orchestrator(quality_method="worst").start_test()
        self.assertEqual(result.quality.method, "worst")

    async def test_throughput_config_passed(self):
        engine = FakeEngine()
        await _orchestrator(
            engine=engine, parallel_connections=6, progressive_payload=False,
        ).start_test()

        self.assertEqual(len(engine.configs), 2)
        for cfg in engine.configs:
            self.assertEqual(cfg.connection_count, 6)
            self.assertFalse(cfg.progressive)

    async def test_server_selection(self):
        server = TestServer(id="1", name="Local", host="127.0.0.1")

        async def select(on_progress):
            on_progress(ProgressEvent(Phase.INITIALIZING, 50.0, "Pinging servers"))
            return server

        orch = TestOrchestrator(
            LatencyProber([CyclingProbe([10.0])]), FakeEngine(), _config(), select_server=select,
        )
        rec = Recorder(orch)
        result = await orch.start_test()

        self.assertIs(result.server, server)
        init = [e.percentage for e in rec.progress if e.phase is Phase.INITIALIZING]
        self.assertEqual(init, [0.0, 5.0])

    async def test_runs_again_after_completion(self):
        orch = _orchestrator()
        first = await orch.start_test()
        second = await orch.start_test()
        self.assertNotEqual(first.id, second.id)

    async def test_partial_latency_loss(self):
        result = await _orchestrator(
            values=(10.0, None), latency_sample_count=4,
        ).start_test()
        self.assertAlmostEqual(result.latency.packet_loss, 50.0)


class TestFailedRun(unittest.IsolatedAsyncioTestCase):
    async def test_component_error(self):
        error = TransferError("All 4 upload connections failed")
        orch = _orchestrator(engine=FakeEngine(upload_error=error))
        rec = Recorder(orch)

        with self.assertRaises(TransferError):
            await orch.start_test()

        self.assertEqual(orch.phase, Phase.ERROR)
        self.assertEqual(rec.errors, [error])
        self.assertEqual(rec.completed, [])
        self.assertIsNone(orch.result)
        self.assertFalse(orch.running)

    async def test_no_connectivity(self):
        orch = _orchestrator(values=(None,))
        rec = Recorder(orch)
        with self.assertRaises(ConnectivityError):
            await orch.start_test()
        self.assertEqual(rec.phases[-1], Phase.ERROR)
        self.assertEqual(len(rec.errors), 1)

    async def test_phase_timeout(self):
        async def hang(on_progress):
            await asyncio.sleep(5)

        orch = TestOrchestrator(
            LatencyProber([CyclingProbe([10.0])]),
            FakeEngine(),
            _config(latency_timeout_ms=50, phase_timeout_ms=50),
            select_server=hang,
        )
        rec = Recorder(orch)
        with self.assertRaises(MeasurementTimeoutError):
            await orch.start_test()
        self.assertEqual(orch.phase, Phase.ERROR)
        self.assertIsInstance(rec.errors[0], MeasurementTimeoutError)

    async def test_latency_limit_covers_whole_fallback_chain(self):
        # 2 samples x 3 hanging strategies x 50 ms outlast a one-strategy limit
        prober = LatencyProber(
            [HangingProbe(), HangingProbe(), HangingProbe(), ConnectionClassEstimate("wifi")]
        )
        orch = TestOrchestrator(
            prober,
            FakeEngine(),
            _config(latency_sample_count=2, latency_timeout_ms=50, phase_timeout_ms=150),
        )
        result = await orch.start_test()

        self.assertEqual(prober.last_strategy, "connection-class")
        self.assertEqual(result.latency.avg, 30.0)
        self.assertEqual(result.latency.packet_loss, 0.0)

    async def test_exhausted_chain_is_connectivity_error(self):
        orch = TestOrchestrator(
            LatencyProber([HangingProbe(), HangingProbe(), HangingProbe()]),
            FakeEngine(),
            _config(latency_sample_count=2, latency_timeout_ms=50, phase_timeout_ms=200),
        )
        with self.assertRaises(ConnectivityError):
            await orch.start_test()
        self.assertEqual(orch.phase, Phase.ERROR)


class TestCancellation(unittest.IsolatedAsyncioTestCase):
    async def test_cancel_during_download(self):
        orch = _orchestrator(engine=FakeEngine(delay=0.05))
        rec = Recorder(orch)

        def stop_on_download(event):
            if event.phase is Phase.DOWNLOAD and event.percentage > 30.0:
                orch.stop_test()

        orch.on("progress", stop_on_download)

        with self.assertRaises(RunCancelledError):
            await orch.start_test()

        self.assertEqual(orch.phase, Phase.CANCELLED)
        self.assertEqual(rec.phases[-1], Phase.CANCELLED)
        self.assertNotIn(Phase.UPLOAD, rec.phases)
        self.assertEqual(rec.completed, [])
        self.assertEqual(rec.errors, [])
        self.assertFalse(orch.running)

    async def test_cancel_during_transition(self):
        orch = _orchestrator(transition_delay_ms=5000)

        def stop_on_transition(phase):
            if phase is Phase.TRANSITION:
                asyncio.get_running_loop().call_soon(orch.stop_test)

        orch.on("phase", stop_on_transition)
        loop = asyncio.get_running_loop()
        start = loop.time()
        with self.assertRaises(RunCancelledError):
            await orch.start_test()
        self.assertLess(loop.time() - start, 1.0)
        self.assertEqual(orch.phase, Phase.CANCELLED)

    async def test_second_start_rejected(self):
        orch = _orchestrator(engine=FakeEngine(delay=0.05))
        task = asyncio.ensure_future(orch.start_test())
        await asyncio.sleep(0)

        self.assertTrue(orch.running)
        with self.assertRaises(RuntimeError):
            await orch.start_test()

        orch.stop_test()
        with self.assertRaises(RunCancelledError):
            await task

    def test_stop_when_idle_is_noop(self):
        orch = _orchestrator()
        orch.stop_test()
        self.assertEqual(orch.phase, Phase.IDLE)


if __name__ == "__main__":
    unittest.main()
