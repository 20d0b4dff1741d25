import asyncio
import copy
import json
import sys

from liveview.pilot_config import normalize_config
from liveview.pilot_gateway import FetchGateway, GatewayError, parse_command_payload, parse_live_payload
from liveview.pilot_session import LiveViewSession


class FixtureGateway(FetchGateway):
    """In-memory control plane used by the simulator and the tests.

    Live rows are kept per target and returned whole on every poll, the way the
    /live endpoint returns its look-back window. Command responses are
    scripted per attempt; entries may be dicts or exceptions to raise.
    """

    def __init__(self, agents=None):
        self.live = {}
        self.agents = list(agents or [])
        self.live_gate = None
        self.dispatch_error = None
        self.commands = {}
        self.calls = []
        self._live_failures = []
        self._next_script = []
        self._command_seq = 0

    def add_live_result(self, target_id, agent_id, time, latency_ms=None, success=True, agent_name=None, **extra):
        row = {
            "agent_id": agent_id,
            "agent_name": agent_name or agent_id,
            "agent_region": extra.pop("agent_region", ""),
            "agent_provider": extra.pop("agent_provider", ""),
            "time": time,
            "success": success,
            "latency_ms": latency_ms,
        }
        row.update(extra)
        self.live.setdefault(target_id, []).append(row)
        return row

    def fail_next_live(self, count=1, message="control plane unavailable"):
        for _ in range(count):
            self._live_failures.append(GatewayError(503, message))

    def script_next_command(self, responses):
        self._next_script = list(responses)

    async def get_live_results(self, target_id, lookback_seconds):
        self.calls.append(("get_live_results", target_id, lookback_seconds))
        if self.live_gate is not None:
            await self.live_gate.wait()
        if self._live_failures:
            raise self._live_failures.pop(0)
        rows = copy.deepcopy(self.live.get(target_id, []))
        return parse_live_payload({"target_id": target_id, "results": rows})

    async def dispatch_diagnostic(self, target_id, agent_ids):
        self.calls.append(("dispatch_diagnostic", target_id, list(agent_ids)))
        if self.dispatch_error is not None:
            raise GatewayError(500, self.dispatch_error)
        self._command_seq += 1
        command_id = f"cmd-{self._command_seq}"
        self.commands[command_id] = {
            "target_id": target_id,
            "agent_ids": list(agent_ids),
            "script": self._next_script,
            "polls": 0,
        }
        self._next_script = []
        return {"command_id": command_id, "message": "MTR command queued for agents"}

    async def get_command_status(self, command_id):
        self.calls.append(("get_command_status", command_id))
        command = self.commands.get(command_id)
        if command is None:
            raise GatewayError(404, "command not found")
        command["polls"] += 1
        index = command["polls"] - 1
        script = command["script"]
        entry = script[index] if index < len(script) else None
        if isinstance(entry, Exception):
            raise entry
        if entry is None:
            entry = {"command": {"status": "pending"}, "results": []}
        return parse_command_payload(copy.deepcopy(entry))

    async def list_agents(self):
        self.calls.append(("list_agents",))
        return copy.deepcopy(self.agents)


def mtr_result(agent_id, agent_name=None, reached=True, hops=None):
    hops = hops or [
        {"hop": 1, "ip": "10.0.0.1", "loss_pct": 0.0, "sent": 10, "avg_ms": 0.8, "best_ms": 0.5, "worst_ms": 1.2, "stddev_ms": 0.2},
        {"hop": 2, "ip": "192.0.2.10", "loss_pct": 0.0, "sent": 10, "avg_ms": 12.4, "best_ms": 11.9, "worst_ms": 14.0, "stddev_ms": 0.6},
    ]
    return {
        "agent_id": agent_id,
        "agent_name": agent_name or agent_id,
        "success": True,
        "payload": {"destination_reached": reached, "total_hops": len(hops), "hops": hops},
    }


async def _run_scenarios(checks):
    def check(condition, message):
        checks.append({"check": message, "ok": bool(condition)})

    config = normalize_config({"command_max_attempts": 30})
    gateway = FixtureGateway(agents=[{"id": "a1", "status": "active"}, {"id": "a2", "status": "active"}])
    session = LiveViewSession(gateway, config, schedule=False)
    now = 1765000000.0

    session.select_target("target-1")
    session.poller.start()
    await session.refresh_agents()

    # 1) Repeated windows do not duplicate results.
    gateway.add_live_result("target-1", "a1", 1765000000100, 12.5, agent_name="fra-1")
    gateway.add_live_result("target-1", "a2", 1765000000400, 30.0, agent_name="nyc-1")
    first = await session.poller.tick(now)
    second = await session.poller.tick(now + 2)
    check(len(first or []) == 2, "first poll accepts both results")
    check(second == [], "second poll of the same window accepts nothing")
    check(len(session.poller.buffer) == 2, "buffer holds each observation once")

    # 2) Failed probe leaves a gap, not a zero.
    gateway.add_live_result("target-1", "a2", 1765000001200, None, success=False, agent_name="nyc-1")
    await session.poller.tick(now + 4)
    snapshot = session.live_snapshot()
    last_point = snapshot["series_points"][-1]
    check(last_point.get("nyc_1") is None, "failed probe produces no value")

    # 3) Colours keep first-appearance order.
    colors = {item["id"]: item["color_index"] for item in snapshot["agent_descriptors"]}
    check(colors == {"a1": 0, "a2": 1}, "colours follow first appearance")

    # 4) Poll failure keeps the buffer and flags the error.
    gateway.fail_next_live()
    await session.poller.tick(now + 6)
    check(session.poller.error is not None, "poll failure surfaces an error flag")
    check(len(session.poller.buffer) == 3, "poll failure keeps buffered results")

    # 5) Visibility tri-state.
    check(session.poller.toggle_agent("a1") == ["a1"], "first toggle isolates the agent")
    check(session.poller.toggle_agent("a1") == [], "toggling the sole agent restores all")
    check(session.poller.toggle_agent("a2") == ["a2"], "next toggle isolates the other agent")

    # 6) MTR completes as soon as one agent answers.
    gateway.script_next_command(
        [
            {"command": {"status": "pending"}, "results": []},
            {"command": {"status": "pending"}, "results": [mtr_result("a1", "fra-1")]},
        ]
    )
    envelope = await session.trigger_mtr(["a1", "a2"])
    check(envelope["status"] == "pending", "dispatch enters pending")
    await session.dispatcher.poll_once()
    status = await session.dispatcher.poll_once()
    check(status == "completed", "first result completes the command")
    check(session.dispatcher.envelope.attempts == 2, "completion happens at attempt 2")
    check(len(session.dispatcher.envelope.results) == 1, "missing agent is not an error")

    # 7) MTR with no answers times out exactly at the cap.
    await session.trigger_mtr([])
    check(session.dispatcher.envelope.expected_agents == 2, "broadcast expects every active agent")
    statuses = []
    for _ in range(config["command_max_attempts"]):
        statuses.append(await session.dispatcher.poll_once())
    check(statuses[-2] == "pending", "still pending before the last attempt")
    check(statuses[-1] == "timeout", "timeout at the last attempt")

    # 8) Dispatch failure is terminal.
    gateway.dispatch_error = "failed to create MTR command"
    failed = await session.trigger_mtr([])
    check(failed["status"] == "error", "dispatch failure sets error")
    gateway.dispatch_error = None

    # 9) Switching target discards old data and late responses.
    gateway.live_gate = asyncio.Event()
    late_tick = asyncio.ensure_future(session.poller.tick(now + 8))
    await asyncio.sleep(0)
    session.select_target("target-2")
    gateway.live_gate.set()
    late_result = await late_tick
    check(late_result is None, "late response for the old target is dropped")
    check(len(session.poller.buffer) == 0, "buffer is empty after switching target")
    check(session.dispatcher.state == "idle", "command state resets with the target")

    await session.aclose()


def run_fixture():
    checks = []
    asyncio.run(_run_scenarios(checks))

    failed = [item for item in checks if not item["ok"]]
    summary = {
        "ok": len(failed) == 0,
        "checks": checks,
        "failed_count": len(failed),
    }
    print(json.dumps(summary, indent=2, ensure_ascii=False))
    return 0 if summary["ok"] else 1


if __name__ == "__main__":
    sys.exit(run_fixture())
