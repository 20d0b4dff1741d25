import logging

from liveview.pilot_models import parse_probe_result


log = logging.getLogger("pilot.buffer")


class DedupBuffer:
    """Duplicate-free collection of probe results for one selected target.

    Results are identified by ``(agent_id, timestamp_ms)``. Nothing is evicted;
    the buffer lives for one live session and is emptied by ``reset()`` when the
    target changes.
    """

    def __init__(self):
        self._records = []
        self._seen_keys = set()
        self.version = 0
        self.duplicate_count = 0
        self.rejected_count = 0

    def __len__(self):
        return len(self._records)

    @property
    def records(self):
        return tuple(self._records)

    def reset(self):
        self._records = []
        self._seen_keys = set()
        self.duplicate_count = 0
        self.rejected_count = 0
        self.version += 1

    def ingest(self, results):
        accepted = []
        batch_keys = set()
        for item in results or ():
            try:
                result = parse_probe_result(item)
            except ValueError as exc:
                self.rejected_count += 1
                log.warning("Malformed probe result skipped: %s (%r)", exc, item)
                continue
            key = result.key
            if key in self._seen_keys or key in batch_keys:
                self.duplicate_count += 1
                continue
            batch_keys.add(key)
            accepted.append(result)

        if accepted:
            self._seen_keys.update(batch_keys)
            self._records.extend(accepted)
            self.version += 1
        return accepted
