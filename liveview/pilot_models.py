import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple


COMMAND_IDLE = "idle"
COMMAND_PENDING = "pending"
COMMAND_COMPLETED = "completed"
COMMAND_TIMEOUT = "timeout"
COMMAND_ERROR = "error"
COMMAND_TERMINAL_STATUSES = (COMMAND_COMPLETED, COMMAND_TIMEOUT, COMMAND_ERROR)

_FRACTION_RE = re.compile(r"\.(\d+)")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _safe_float(value, default=None):
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_bool(value):
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "y", "on")


def parse_timestamp_ms(value):
    """Converts an ISO-8601 string or epoch milliseconds into epoch ms."""
    if value is None or isinstance(value, bool):
        raise ValueError("timestamp missing")

    if isinstance(value, (int, float)):
        return int(value)

    if isinstance(value, datetime):
        moment = value
    else:
        text = str(value).strip()
        if not text:
            raise ValueError("timestamp missing")
        if re.match(r"^-?\d+(\.\d+)?$", text):
            return int(float(text))

        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        # The control plane emits nanoseconds; fromisoformat wants at most six digits.
        text = _FRACTION_RE.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            moment = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"invalid timestamp: {value!r}") from exc

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def format_time_label(timestamp_ms):
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc).strftime("%H:%M:%S")


def format_iso(timestamp_ms):
    if timestamp_ms is None:
        return None
    moment = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class ProbeResult:
    agent_id: str
    agent_name: str
    timestamp_ms: int
    success: bool
    latency_ms: Optional[float] = None
    agent_region: str = ""
    agent_provider: str = ""
    packet_loss_pct: Optional[float] = None
    is_in_market: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        return (self.agent_id, self.timestamp_ms)

    def to_dict(self):
        return {
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "agent_region": self.agent_region,
            "agent_provider": self.agent_provider,
            "time": format_iso(self.timestamp_ms),
            "timestamp_ms": self.timestamp_ms,
            "success": self.success,
            "latency_ms": self.latency_ms,
            "packet_loss_pct": self.packet_loss_pct,
            "is_in_market": self.is_in_market,
        }


def parse_probe_result(raw):
    if isinstance(raw, ProbeResult):
        return raw
    if not isinstance(raw, dict):
        raise ValueError("probe result must be an object")

    agent_id = str(raw.get("agent_id") or "").strip()
    if not agent_id:
        raise ValueError("agent_id missing")

    timestamp_ms = parse_timestamp_ms(raw.get("time", raw.get("timestamp")))
    success = _to_bool(raw.get("success"))

    latency_ms = _safe_float(raw.get("latency_ms"), None)
    if latency_ms is not None and latency_ms < 0:
        latency_ms = None

    return ProbeResult(
        agent_id=agent_id,
        agent_name=str(raw.get("agent_name") or agent_id),
        timestamp_ms=timestamp_ms,
        success=success,
        latency_ms=latency_ms,
        agent_region=str(raw.get("agent_region") or ""),
        agent_provider=str(raw.get("agent_provider") or ""),
        packet_loss_pct=_safe_float(raw.get("packet_loss_pct"), None),
        is_in_market=_to_bool(raw.get("is_in_market")),
    )


@dataclass(frozen=True)
class AgentSeriesDescriptor:
    id: str
    name: str
    key: str
    color_index: int
    color: str

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "key": self.key,
            "color_index": self.color_index,
            "color": self.color,
        }


@dataclass
class CommandEnvelope:
    """State of one dispatched diagnostic command as the UI sees it.

    ``results`` holds the per-agent payloads in arrival order. Agents that
    never report simply have no entry.
    """

    command_id: Optional[str] = None
    target_id: Optional[str] = None
    dispatched_at: Optional[float] = None
    targeted_agent_ids: Tuple[str, ...] = ()
    expected_agents: int = 0
    status: str = COMMAND_IDLE
    results: list = field(default_factory=list)
    message: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    last_poll_error: Optional[str] = None

    @property
    def is_terminal(self):
        return self.status in COMMAND_TERMINAL_STATUSES

    def to_dict(self):
        return {
            "command_id": self.command_id,
            "target_id": self.target_id,
            "dispatched_at": self.dispatched_at,
            "targeted_agent_ids": list(self.targeted_agent_ids),
            "expected_agents": self.expected_agents,
            "status": self.status,
            "results": list(self.results),
            "result_count": len(self.results),
            "message": self.message,
            "error": self.error,
            "attempts": self.attempts,
            "last_poll_error": self.last_poll_error,
        }
