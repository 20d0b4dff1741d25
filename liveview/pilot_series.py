import re

from liveview.pilot_models import AgentSeriesDescriptor, format_iso, format_time_label


AGENT_COLORS = (
    "#6EDBE0",
    "#FC534E",
    "#F7B84B",
    "#4CAF50",
    "#9C27B0",
    "#FF9800",
    "#2196F3",
    "#E91E63",
)

LATENCY_BANDS = (
    (50.0, "healthy"),
    (100.0, "good"),
    (200.0, "elevated"),
)

_SERIES_KEY_RE = re.compile(r"[^a-zA-Z0-9]")


def bucket_ms(timestamp_ms):
    return (int(timestamp_ms) // 1000) * 1000


def series_key_for(agent_name):
    return _SERIES_KEY_RE.sub("_", str(agent_name or ""))


def latency_band(latency_ms):
    if latency_ms is None:
        return "none"
    for limit, band in LATENCY_BANDS:
        if latency_ms < limit:
            return band
    return "critical"


class SeriesReconciler:
    """Builds chart-ready multi-series data from a DedupBuffer.

    Colour assignment is cached per buffer lifetime so that agents keep their
    colour between passes. The output for a given buffer version is memoised,
    so repeated calls without new ingests return equal structures.
    """

    def __init__(self, palette=AGENT_COLORS):
        self.palette = tuple(palette)
        self._descriptors = {}
        self._order = []
        self._used_keys = set()
        self._memo_version = None
        self._memo = None

    @property
    def descriptors(self):
        return [self._descriptors[agent_id] for agent_id in self._order]

    def reset(self):
        self._descriptors = {}
        self._order = []
        self._used_keys = set()
        self._memo_version = None
        self._memo = None

    def _register(self, result):
        descriptor = self._descriptors.get(result.agent_id)
        if descriptor is not None:
            return descriptor

        base_key = series_key_for(result.agent_name) or series_key_for(result.agent_id)
        key = base_key
        suffix = 2
        while key in self._used_keys:
            key = f"{base_key}_{suffix}"
            suffix += 1

        color_index = len(self._order) % len(self.palette)
        descriptor = AgentSeriesDescriptor(
            id=result.agent_id,
            name=result.agent_name,
            key=key,
            color_index=color_index,
            color=self.palette[color_index],
        )
        self._descriptors[result.agent_id] = descriptor
        self._order.append(result.agent_id)
        self._used_keys.add(key)
        return descriptor

    def reconcile(self, buffer):
        if self._memo is not None and self._memo_version == buffer.version:
            return self._copy_memo()

        records = buffer.records
        for result in records:
            self._register(result)

        descriptors = self.descriptors
        keys = [descriptor.key for descriptor in descriptors]

        buckets = {}
        for result in records:
            bucket = bucket_ms(result.timestamp_ms)
            point = buckets.get(bucket)
            if point is None:
                point = {}
                buckets[bucket] = point
            # Failed probes leave a gap; zero would read as a real latency.
            if result.success and result.latency_ms is not None:
                point[self._descriptors[result.agent_id].key] = result.latency_ms

        series_points = []
        for bucket in sorted(buckets):
            values = buckets[bucket]
            point = {"time": bucket, "time_label": format_time_label(bucket)}
            for key in keys:
                point[key] = values.get(key)
            series_points.append(point)

        self._memo = {
            "series_points": series_points,
            "agent_descriptors": [descriptor.to_dict() for descriptor in descriptors],
        }
        self._memo_version = buffer.version
        return self._copy_memo()

    def _copy_memo(self):
        # Callers get their own point dicts; mutating them must not leak into the cache.
        return {
            "series_points": [dict(point) for point in self._memo["series_points"]],
            "agent_descriptors": [dict(item) for item in self._memo["agent_descriptors"]],
        }


def group_by_agent(records):
    grouped = {}
    for result in records:
        entry = grouped.get(result.agent_id)
        if entry is None:
            entry = {
                "agent_id": result.agent_id,
                "agent_name": result.agent_name,
                "agent_region": result.agent_region,
                "agent_provider": result.agent_provider,
                "results": [],
            }
            grouped[result.agent_id] = entry
        entry["results"].append(result)

    cards = []
    for entry in grouped.values():
        ordered = sorted(entry["results"], key=lambda item: item.timestamp_ms, reverse=True)
        success_count = sum(1 for item in ordered if item.success)
        latest = ordered[0]
        last_latency = latest.latency_ms if latest.success else None
        cards.append(
            {
                "agent_id": entry["agent_id"],
                "agent_name": entry["agent_name"],
                "agent_region": entry["agent_region"],
                "agent_provider": entry["agent_provider"],
                "last_seen": format_iso(latest.timestamp_ms),
                "last_latency_ms": last_latency,
                "latency_band": latency_band(last_latency),
                "success_ratio_pct": (success_count / len(ordered)) * 100.0,
                "results": [item.to_dict() for item in ordered],
            }
        )
    return cards


class VisibilityFilter:
    """Tri-state legend selection: empty means every agent is shown."""

    def __init__(self):
        self._selected = []

    @property
    def selected(self):
        return list(self._selected)

    @property
    def shows_all(self):
        return not self._selected

    def show_all(self):
        self._selected = []

    def is_visible(self, agent_id):
        return not self._selected or agent_id in self._selected

    def toggle(self, agent_id, known_ids=None):
        if not self._selected:
            self._selected = [agent_id]
        elif agent_id in self._selected:
            self._selected = [item for item in self._selected if item != agent_id]
        else:
            self._selected = self._selected + [agent_id]

        # Selecting every known agent is the same as "all"; keep a single spelling of it.
        if known_ids is not None and self._selected:
            known = set(known_ids)
            if len(known) > 1 and known.issubset(self._selected):
                self._selected = []
        return self.selected

    def visible_ids(self, descriptors):
        return [item["id"] for item in descriptors if self.is_visible(item["id"])]
