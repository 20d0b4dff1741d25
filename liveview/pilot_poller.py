import asyncio
import contextlib
import logging
import time

from liveview.pilot_buffer import DedupBuffer
from liveview.pilot_gateway import GatewayError
from liveview.pilot_models import format_iso
from liveview.pilot_series import SeriesReconciler, VisibilityFilter, group_by_agent


POLLER_IDLE = "idle"
POLLER_RUNNING = "running"
POLLER_PAUSED = "paused"


class LivePoller:
    """Fixed-period poll loop feeding a DedupBuffer for one selected target.

    ``tick()`` is the single transition that fetches and ingests. With
    ``schedule=True`` a timer task fires it every ``poll_interval_ms``; with
    ``schedule=False`` callers drive it by hand.
    """

    def __init__(
        self,
        gateway,
        target_id=None,
        poll_interval_ms=2000,
        lookback_sec=60,
        on_update=None,
        schedule=True,
        clock=time.time,
    ):
        self.log = logging.getLogger("pilot.poller")
        self.gateway = gateway
        self.target_id = target_id
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.lookback_sec = max(1, int(lookback_sec))
        self.schedule = bool(schedule)
        self.clock = clock

        self.buffer = DedupBuffer()
        self.reconciler = SeriesReconciler()
        self.visibility = VisibilityFilter()

        self.state = POLLER_IDLE
        self.last_update = None
        self.error = None
        self.poll_count = 0
        self.skipped_ticks = 0

        self._listeners = []
        if on_update is not None:
            self._listeners.append(on_update)

        self._epoch = 0
        self._busy = False
        self._timer = None
        self._inflight = None

    @classmethod
    def from_config(cls, gateway, config, **kwargs):
        return cls(
            gateway,
            poll_interval_ms=config.get("live_poll_interval_ms", 2000),
            lookback_sec=config.get("live_lookback_sec", 60),
            **kwargs,
        )

    def subscribe(self, listener):
        self._listeners.append(listener)

    def unsubscribe(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def is_running(self):
        return self.state == POLLER_RUNNING

    async def tick(self, now=None):
        if self.state != POLLER_RUNNING or self.target_id is None:
            return None
        if self._busy:
            self.skipped_ticks += 1
            self.log.debug("Previous live poll still in flight for %s; tick skipped", self.target_id)
            return None

        target_id = self.target_id
        epoch = self._epoch
        self._busy = True
        try:
            results = await self.gateway.get_live_results(target_id, self.lookback_sec)
        except GatewayError as exc:
            if epoch == self._epoch:
                self._record_error(target_id, str(exc))
            return None
        except Exception as exc:
            if epoch == self._epoch:
                self.log.exception("Unexpected live poll failure for %s", target_id)
                self._record_error(target_id, str(exc) or type(exc).__name__)
            return None
        finally:
            if epoch == self._epoch:
                self._busy = False

        if epoch != self._epoch or target_id != self.target_id:
            self.log.debug("Discarding late live response for %s", target_id)
            return None

        try:
            accepted = self.buffer.ingest(results)
        except Exception as exc:
            self.log.exception("Live results for %s could not be ingested", target_id)
            self._record_error(target_id, str(exc) or type(exc).__name__)
            return None
        self.poll_count += 1
        self.last_update = float(now if now is not None else self.clock())
        self.error = None
        if accepted:
            self.log.debug("Live poll for %s accepted %d new results", target_id, len(accepted))
        self._notify()
        return accepted

    def _record_error(self, target_id, message):
        self.error = message
        self.log.warning("Live poll failed for %s: %s", target_id, message)
        self._notify()

    def _launch_cycle(self):
        if self._busy:
            self.skipped_ticks += 1
            self.log.debug("Previous live poll still in flight for %s; tick skipped", self.target_id)
            return
        self._inflight = asyncio.ensure_future(self.tick())

    async def _timer_loop(self):
        interval = self.poll_interval_ms / 1000.0
        while self.state == POLLER_RUNNING:
            self._launch_cycle()
            await asyncio.sleep(interval)

    def _start_timer(self):
        self._cancel_timer()
        if self.schedule:
            self._timer = asyncio.ensure_future(self._timer_loop())

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _cancel_inflight(self):
        if self._inflight is not None:
            if not self._inflight.done():
                self._inflight.cancel()
            self._inflight = None

    def start(self):
        if self.target_id is None:
            raise ValueError("no target selected")
        if self.state == POLLER_RUNNING:
            return False
        self.state = POLLER_RUNNING
        self.log.info("Live view started for target %s", self.target_id)
        self._start_timer()
        self._notify()
        return True

    def pause(self):
        if self.state != POLLER_RUNNING:
            return False
        self._cancel_timer()
        self.state = POLLER_PAUSED
        self.log.info("Live view paused for target %s", self.target_id)
        self._notify()
        return True

    def resume(self):
        if self.state != POLLER_PAUSED:
            return False
        self.state = POLLER_RUNNING
        self.log.info("Live view resumed for target %s", self.target_id)
        self._start_timer()
        self._notify()
        return True

    def _reset_session(self):
        self._epoch += 1
        self._busy = False
        self._cancel_inflight()
        self.buffer.reset()
        self.reconciler.reset()
        self.visibility.show_all()
        self.last_update = None
        self.error = None

    def change_target(self, target_id):
        previous = self.target_id
        self._reset_session()
        self.target_id = target_id
        self.log.info("Live view target changed: %s -> %s", previous, target_id)
        if self.state == POLLER_RUNNING:
            self._start_timer()
        self._notify()

    def stop(self):
        self._cancel_timer()
        self._reset_session()
        was_idle = self.state == POLLER_IDLE
        self.state = POLLER_IDLE
        if not was_idle:
            self.log.info("Live view stopped for target %s", self.target_id)
        self._notify()

    async def aclose(self):
        timer = self._timer
        inflight = self._inflight
        self._cancel_timer()
        self._cancel_inflight()
        for task in (timer, inflight):
            if task is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._epoch += 1
        self._busy = False
        self.state = POLLER_IDLE
        self._listeners = []

    def known_agent_ids(self):
        # Descriptors only cover what has been reconciled; bring them up to the buffer first.
        self.reconciler.reconcile(self.buffer)
        return [descriptor.id for descriptor in self.reconciler.descriptors]

    def toggle_agent(self, agent_id):
        selected = self.visibility.toggle(agent_id, known_ids=self.known_agent_ids())
        self._notify()
        return selected

    def show_all_agents(self):
        self.visibility.show_all()
        self._notify()

    def snapshot(self):
        reconciled = self.reconciler.reconcile(self.buffer)
        descriptors = reconciled["agent_descriptors"]
        return {
            "target_id": self.target_id,
            "state": self.state,
            "series_points": reconciled["series_points"],
            "agent_descriptors": descriptors,
            "visibility": self.visibility.selected,
            "visible_agent_ids": self.visibility.visible_ids(descriptors),
            "results_by_agent": group_by_agent(self.buffer.records),
            "result_count": len(self.buffer),
            "last_update": format_iso(int(self.last_update * 1000)) if self.last_update is not None else None,
            "error": self.error,
            "poll_count": self.poll_count,
            "skipped_ticks": self.skipped_ticks,
        }

    def _notify(self):
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                self.log.exception("Buffer listener failed")
