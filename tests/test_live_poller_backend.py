import asyncio
import unittest

from liveview.pilot_fixture_simulator import FixtureGateway
from liveview.pilot_poller import POLLER_IDLE, POLLER_PAUSED, POLLER_RUNNING, LivePoller


BASE_MS = 1765000000000


class LivePollerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.gateway = FixtureGateway()
        self.poller = LivePoller(self.gateway, target_id="t1", schedule=False, lookback_sec=60)

    async def asyncTearDown(self):
        await self.poller.aclose()

    def _live_calls(self):
        return [call for call in self.gateway.calls if call[0] == "get_live_results"]

    async def test_start_requires_a_target(self):
        poller = LivePoller(self.gateway, schedule=False)
        with self.assertRaises(ValueError):
            poller.start()
        self.assertEqual(poller.state, POLLER_IDLE)

    async def test_tick_does_nothing_unless_running(self):
        self.gateway.add_live_result("t1", "a1", BASE_MS, 10.0)

        self.assertIsNone(await self.poller.tick())
        self.assertEqual(self._live_calls(), [])

    async def test_running_tick_fetches_the_lookback_window(self):
        self.gateway.add_live_result("t1", "a1", BASE_MS, 10.0)
        self.poller.start()

        accepted = await self.poller.tick(now=1765000001.0)

        self.assertEqual(len(accepted), 1)
        self.assertEqual(self._live_calls(), [("get_live_results", "t1", 60)])
        snapshot = self.poller.snapshot()
        self.assertEqual(snapshot["state"], POLLER_RUNNING)
        self.assertEqual(snapshot["result_count"], 1)
        self.assertEqual(snapshot["poll_count"], 1)
        self.assertEqual(snapshot["last_update"], "2025-12-06T05:46:41.000Z")

    async def test_overlapping_windows_are_ingested_once(self):
        self.poller.start()
        self.gateway.add_live_result("t1", "a1", BASE_MS, 10.0)
        await self.poller.tick()
        self.gateway.add_live_result("t1", "a1", BASE_MS + 2000, 11.0)

        accepted = await self.poller.tick()

        self.assertEqual([item.timestamp_ms for item in accepted], [BASE_MS + 2000])
        self.assertEqual(len(self.poller.buffer), 2)

    async def test_pause_and_resume(self):
        self.poller.start()
        self.assertTrue(self.poller.pause())
        self.assertEqual(self.poller.state, POLLER_PAUSED)
        self.assertIsNone(await self.poller.tick())
        self.assertFalse(self.poller.pause())

        self.assertTrue(self.poller.resume())
        self.assertEqual(self.poller.state, POLLER_RUNNING)
        self.assertFalse(self.poller.resume())

    async def test_poll_error_keeps_buffer_and_sets_flag(self):
        self.poller.start()
        self.gateway.add_live_result("t1", "a1", BASE_MS, 10.0)
        await self.poller.tick()
        self.gateway.fail_next_live(message="upstream down")

        self.assertIsNone(await self.poller.tick())
        self.assertEqual(self.poller.error, "HTTP 503: upstream down")
        self.assertEqual(len(self.poller.buffer), 1)
        self.assertEqual(self.poller.state, POLLER_RUNNING)

        await self.poller.tick()
        self.assertIsNone(self.poller.error)

    async def test_tick_is_skipped_while_previous_poll_in_flight(self):
        self.poller.start()
        self.gateway.add_live_result("t1", "a1", BASE_MS, 10.0)
        self.gateway.live_gate = asyncio.Event()

        first = asyncio.ensure_future(self.poller.tick())
        await asyncio.sleep(0)
        second = await self.poller.tick()
        self.gateway.live_gate.set()
        accepted = await first

        self.assertIsNone(second)
        self.assertEqual(self.poller.skipped_ticks, 1)
        self.assertEqual(len(accepted), 1)
        self.assertEqual(len(self._live_calls()), 1)

    async def test_late_response_for_previous_target_is_dropped(self):
        self.poller.start()
        self.gateway.add_live_result("t1", "a1", BASE_MS, 10.0)
        self.gateway.add_live_result("t2", "b1", BASE_MS, 20.0)
        self.gateway.live_gate = asyncio.Event()

        late = asyncio.ensure_future(self.poller.tick())
        await asyncio.sleep(0)
        self.poller.change_target("t2")
        self.gateway.live_gate.set()

        self.assertIsNone(await late)
        self.assertEqual(len(self.poller.buffer), 0)

        accepted = await self.poller.tick()
        self.assertEqual([item.agent_id for item in accepted], ["b1"])

    async def test_change_target_resets_buffer_colors_and_visibility(self):
        self.poller.start()
        self.gateway.add_live_result("t1", "a1", BASE_MS, 10.0)
        self.gateway.add_live_result("t1", "a2", BASE_MS, 10.0)
        await self.poller.tick()
        self.poller.toggle_agent("a2")

        self.poller.change_target("t2")
        snapshot = self.poller.snapshot()

        self.assertEqual(snapshot["target_id"], "t2")
        self.assertEqual(snapshot["series_points"], [])
        self.assertEqual(snapshot["agent_descriptors"], [])
        self.assertEqual(snapshot["visibility"], [])
        self.assertIsNone(snapshot["last_update"])
        self.assertEqual(snapshot["state"], POLLER_RUNNING)

    async def test_stop_returns_to_idle_and_clears(self):
        self.poller.start()
        self.gateway.add_live_result("t1", "a1", BASE_MS, 10.0)
        await self.poller.tick()

        self.poller.stop()

        self.assertEqual(self.poller.state, POLLER_IDLE)
        self.assertEqual(len(self.poller.buffer), 0)

    async def test_listener_receives_snapshots(self):
        received = []
        self.poller.subscribe(received.append)
        self.poller.start()
        self.gateway.add_live_result("t1", "a1", BASE_MS, 10.0)

        await self.poller.tick()

        self.assertEqual(received[-1]["result_count"], 1)
        self.assertEqual(received[-1]["agent_descriptors"][0]["id"], "a1")

    async def test_failing_listener_does_not_break_the_poll(self):
        def broken(_snapshot):
            raise RuntimeError("listener bug")

        self.poller.subscribe(broken)
        self.poller.start()
        self.gateway.add_live_result("t1", "a1", BASE_MS, 10.0)

        with self.assertLogs("pilot.poller", level="ERROR"):
            accepted = await self.poller.tick()
        self.assertEqual(len(accepted), 1)

    async def test_raw_rows_with_a_malformed_entry_are_ingested_safely(self):
        async def raw_results(target_id, lookback_seconds):
            return [
                {"agent_id": "a1", "time": BASE_MS, "success": True, "latency_ms": 10.0},
                {"agent_id": "a2", "time": "garbage", "success": True},
            ]

        self.gateway.get_live_results = raw_results
        self.poller.start()

        with self.assertLogs("pilot.buffer", level="WARNING"):
            accepted = await self.poller.tick()

        self.assertEqual([item.agent_id for item in accepted], ["a1"])
        self.assertIsNone(self.poller.error)
        self.assertEqual(await self.poller.tick(), [])
        self.assertEqual(len(self.poller.buffer), 1)

    async def test_ingest_failure_is_recorded_as_poll_error(self):
        def broken_ingest(results):
            raise RuntimeError("ingest exploded")

        self.poller.buffer.ingest = broken_ingest
        self.poller.start()

        with self.assertLogs("pilot.poller", level="ERROR"):
            self.assertIsNone(await self.poller.tick())
        self.assertEqual(self.poller.error, "ingest exploded")
        self.assertEqual(self.poller.state, POLLER_RUNNING)

    async def test_toggle_sees_agents_that_arrived_since_last_snapshot(self):
        self.poller.start()
        self.gateway.add_live_result("t1", "a1", BASE_MS, 10.0)
        self.gateway.add_live_result("t1", "a2", BASE_MS, 10.0)
        await self.poller.tick()
        self.poller.snapshot()
        self.gateway.add_live_result("t1", "a3", BASE_MS + 2000, 10.0)
        await self.poller.tick()

        self.poller.toggle_agent("a1")
        selection = self.poller.toggle_agent("a2")

        self.assertEqual(selection, ["a1", "a2"])
        self.assertEqual(self.poller.snapshot()["visible_agent_ids"], ["a1", "a2"])

    async def test_toggle_uses_known_agents(self):
        self.poller.start()
        self.gateway.add_live_result("t1", "a1", BASE_MS, 10.0)
        self.gateway.add_live_result("t1", "a2", BASE_MS, 10.0)
        await self.poller.tick()

        self.assertEqual(self.poller.toggle_agent("a1"), ["a1"])
        self.assertEqual(self.poller.snapshot()["visible_agent_ids"], ["a1"])
        self.assertEqual(self.poller.toggle_agent("a2"), [])
        self.assertEqual(self.poller.snapshot()["visible_agent_ids"], ["a1", "a2"])


class ScheduledLivePollerTests(unittest.IsolatedAsyncioTestCase):
    async def test_timer_polls_repeatedly_until_closed(self):
        gateway = FixtureGateway()
        gateway.add_live_result("t1", "a1", BASE_MS, 10.0)
        poller = LivePoller(gateway, target_id="t1", poll_interval_ms=10)

        poller.start()
        await asyncio.sleep(0.08)
        await poller.aclose()
        polls = poller.poll_count
        await asyncio.sleep(0.03)

        self.assertGreaterEqual(polls, 2)
        self.assertEqual(poller.poll_count, polls)
        self.assertEqual(poller.state, POLLER_IDLE)

    async def test_start_and_resume_poll_immediately(self):
        gateway = FixtureGateway()
        gateway.add_live_result("t1", "a1", BASE_MS, 10.0)
        poller = LivePoller(gateway, target_id="t1", poll_interval_ms=10000)

        poller.start()
        await asyncio.sleep(0.05)
        self.assertEqual(poller.poll_count, 1)

        poller.pause()
        poller.resume()
        await asyncio.sleep(0.05)
        self.assertEqual(poller.poll_count, 2)

        await poller.aclose()

    async def test_pause_stops_the_timer(self):
        gateway = FixtureGateway()
        poller = LivePoller(gateway, target_id="t1", poll_interval_ms=10)

        poller.start()
        await asyncio.sleep(0.03)
        poller.pause()
        await asyncio.sleep(0)
        calls = len(gateway.calls)
        await asyncio.sleep(0.03)

        self.assertEqual(len(gateway.calls), calls)
        await poller.aclose()


if __name__ == "__main__":
    unittest.main()
