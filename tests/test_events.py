"""Tests for engine.events and engine.timer."""

import asyncio
import unittest

from engine.events import EventEmitter
from engine.timer import RepeatingTask


class TestEventEmitter(unittest.TestCase):
    def test_emit_in_registration_order(self):
        emitter = EventEmitter(("data",))
        calls = []
        emitter.on("data", lambda x: calls.append(("a", x)))
        emitter.on("data", lambda x: calls.append(("b", x)))
        emitter.emit("data", 1)
        self.assertEqual(calls, [("a", 1), ("b", 1)])

    def test_unsubscribe(self):
        emitter = EventEmitter(("data",))
        calls = []
        off = emitter.on("data", calls.append)
        off()
        off()  # second call is harmless
        emitter.emit("data", 1)
        self.assertEqual(calls, [])

    def test_unknown_event(self):
        with self.assertRaises(ValueError):
            EventEmitter(("data",)).on("progress", print)

    def test_failing_listener_is_isolated(self):
        emitter = EventEmitter(("data",))
        calls = []

        def broken(_):
            raise RuntimeError("boom")

        emitter.on("data", broken)
        emitter.on("data", calls.append)
        with self.assertLogs("engine.events", level="ERROR"):
            emitter.emit("data", 5)
        self.assertEqual(calls, [5])

    def test_events(self):
        self.assertEqual(EventEmitter(("a", "b")).events, ["a", "b"])


class TestRepeatingTask(unittest.IsolatedAsyncioTestCase):
    async def test_ticks_until_cancelled(self):
        calls = []

        async def tick():
            calls.append(1)

        task = RepeatingTask(tick, 0.02)
        task.start()
        self.assertTrue(task.running)
        await asyncio.sleep(0.15)
        await task.cancel()
        count = len(calls)

        self.assertGreaterEqual(count, 3)
        self.assertFalse(task.running)
        await asyncio.sleep(0.06)
        self.assertEqual(len(calls), count)

    async def test_first_tick_after_interval(self):
        calls = []

        async def tick():
            calls.append(1)

        task = RepeatingTask(tick, 0.5)
        task.start()
        await asyncio.sleep(0.05)
        await task.cancel()
        self.assertEqual(calls, [])

    async def test_failing_tick_keeps_schedule(self):
        calls = []

        async def tick():
            calls.append(1)
            raise RuntimeError("tick failed")

        task = RepeatingTask(tick, 0.02)
        with self.assertLogs("engine.timer", level="ERROR"):
            task.start()
            await asyncio.sleep(0.12)
            await task.cancel()
        self.assertGreaterEqual(len(calls), 2)

    async def test_ticks_never_overlap(self):
        active = 0
        peak = 0

        async def tick():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.05)
            active -= 1

        task = RepeatingTask(tick, 0.01)
        task.start()
        await asyncio.sleep(0.2)
        await task.cancel()
        self.assertEqual(peak, 1)

    async def test_cancel_from_inside_tick(self):
        holder = {}

        async def tick():
            await holder["task"].cancel()

        holder["task"] = task = RepeatingTask(tick, 0.01)
        task.start()
        await asyncio.sleep(0.08)
        self.assertFalse(task.running)
        self.assertEqual(task.ticks, 1)

    async def test_double_start(self):
        async def tick():
            pass

        task = RepeatingTask(tick, 1.0)
        task.start()
        try:
            with self.assertRaises(RuntimeError):
                task.start()
        finally:
            await task.cancel()

    def test_invalid_interval(self):
        async def tick():
            pass

        with self.assertRaises(ValueError):
            RepeatingTask(tick, 0)


if __name__ == "__main__":
    unittest.main()
