import unittest

from liveview.pilot_buffer import DedupBuffer
from liveview.pilot_models import ProbeResult, parse_probe_result, parse_timestamp_ms


def _row(agent_id, time, latency_ms=10.0, success=True):
    return {
        "agent_id": agent_id,
        "agent_name": f"name-{agent_id}",
        "time": time,
        "success": success,
        "latency_ms": latency_ms,
    }


class DedupBufferTests(unittest.TestCase):
    def test_ingesting_same_batch_twice_keeps_one_copy(self):
        buffer = DedupBuffer()
        batch = [
            _row("a1", "2025-12-06T05:46:40.100Z"),
            _row("a2", "2025-12-06T05:46:40.100Z"),
            _row("a1", "2025-12-06T05:46:42.100Z"),
        ]

        first = buffer.ingest(batch)
        records_after_first = buffer.records
        second = buffer.ingest(batch)

        self.assertEqual(len(first), 3)
        self.assertEqual(second, [])
        self.assertEqual(buffer.records, records_after_first)
        self.assertEqual(len({record.key for record in buffer.records}), len(buffer))
        self.assertEqual(buffer.duplicate_count, 3)

    def test_ingest_returns_only_new_arrivals(self):
        buffer = DedupBuffer()
        buffer.ingest([_row("a1", 1765000000000)])

        accepted = buffer.ingest([_row("a1", 1765000000000), _row("a1", 1765000002000)])

        self.assertEqual([item.timestamp_ms for item in accepted], [1765000002000])
        self.assertEqual(len(buffer), 2)

    def test_duplicates_inside_one_batch_are_collapsed(self):
        buffer = DedupBuffer()
        accepted = buffer.ingest([_row("a1", 1765000000000, 5.0), _row("a1", 1765000000000, 7.0)])

        self.assertEqual(len(accepted), 1)
        self.assertEqual(buffer.records[0].latency_ms, 5.0)

    def test_same_instant_from_two_formats_is_one_observation(self):
        buffer = DedupBuffer()
        buffer.ingest([_row("a1", "2025-12-06T05:46:40.123456789Z")])
        accepted = buffer.ingest([_row("a1", parse_timestamp_ms("2025-12-06T05:46:40.123Z"))])

        self.assertEqual(accepted, [])

    def test_reset_clears_records_and_keys(self):
        buffer = DedupBuffer()
        buffer.ingest([_row("a1", 1765000000000)])
        version = buffer.version

        buffer.reset()
        accepted = buffer.ingest([_row("a1", 1765000000000)])

        self.assertGreater(buffer.version, version)
        self.assertEqual(len(accepted), 1)
        self.assertEqual(len(buffer), 1)

    def test_malformed_row_does_not_lose_the_rest_of_the_batch(self):
        buffer = DedupBuffer()
        good = _row("a1", 1765000000000)
        bad = {"agent_id": "a2", "time": "garbage", "success": True}

        with self.assertLogs("pilot.buffer", level="WARNING"):
            accepted = buffer.ingest([good, bad, _row("a3", 1765000000000)])

        self.assertEqual([item.agent_id for item in accepted], ["a1", "a3"])
        self.assertEqual(len(buffer), 2)
        self.assertEqual(buffer.rejected_count, 1)
        self.assertEqual(buffer.ingest([good]), [])
        self.assertEqual(len(buffer), 2)

    def test_batch_of_only_malformed_rows_leaves_buffer_untouched(self):
        buffer = DedupBuffer()
        version = buffer.version

        with self.assertLogs("pilot.buffer", level="WARNING"):
            accepted = buffer.ingest([{"time": 1000}, "not a row"])

        self.assertEqual(accepted, [])
        self.assertEqual(buffer.version, version)
        self.assertEqual(len(buffer.ingest([_row("a1", 1000)])), 1)

    def test_version_only_moves_on_accepting_ingest(self):
        buffer = DedupBuffer()
        buffer.ingest([_row("a1", 1765000000000)])
        version = buffer.version

        buffer.ingest([_row("a1", 1765000000000)])

        self.assertEqual(buffer.version, version)


class ProbeResultParsingTests(unittest.TestCase):
    def test_iso_and_epoch_millis_agree(self):
        self.assertEqual(parse_timestamp_ms("1970-01-01T00:00:01.500Z"), 1500)
        self.assertEqual(parse_timestamp_ms("1970-01-01T01:00:01.500+01:00"), 1500)
        self.assertEqual(parse_timestamp_ms(1500), 1500)
        self.assertEqual(parse_timestamp_ms("1500"), 1500)

    def test_naive_iso_is_read_as_utc(self):
        self.assertEqual(parse_timestamp_ms("1970-01-01T00:00:02"), 2000)

    def test_invalid_timestamp_is_rejected(self):
        with self.assertRaises(ValueError):
            parse_timestamp_ms("yesterday")
        with self.assertRaises(ValueError):
            parse_timestamp_ms(None)

    def test_missing_agent_is_rejected(self):
        with self.assertRaises(ValueError):
            parse_probe_result({"time": 1000, "success": True})

    def test_negative_latency_is_dropped(self):
        result = parse_probe_result(_row("a1", 1000, latency_ms=-3))
        self.assertIsNone(result.latency_ms)

    def test_probe_result_is_immutable(self):
        result = parse_probe_result(_row("a1", 1000))
        self.assertIsInstance(result, ProbeResult)
        with self.assertRaises(AttributeError):
            result.latency_ms = 1.0


if __name__ == "__main__":
    unittest.main()
