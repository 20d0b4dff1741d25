import asyncio
import logging
import time

from liveview.pilot_commands import CommandDispatcher
from liveview.pilot_gateway import GatewayError
from liveview.pilot_poller import LivePoller


def _is_active_agent(agent):
    status = str(agent.get("status") or "active").strip().lower()
    return status in ("active", "online", "healthy")


class LiveViewSession:
    """One operator view: a live poller and an MTR dispatcher for one target.

    Both loops are owned here and torn down together by ``aclose()``. They
    share no mutable state; listeners receive plain dict snapshots.
    """

    def __init__(self, gateway, config, schedule=True, clock=time.time, sleep=asyncio.sleep):
        self.log = logging.getLogger("pilot.session")
        self.gateway = gateway
        self.config = config
        self.listed_agent_count = None

        self.poller = LivePoller.from_config(gateway, config, schedule=schedule, clock=clock)
        self.dispatcher = CommandDispatcher.from_config(
            gateway,
            config,
            schedule=schedule,
            active_agents=self.known_agent_count,
            sleep=sleep,
            clock=clock,
        )
        self._closed = False

    @property
    def target_id(self):
        return self.poller.target_id

    def known_agent_count(self):
        if self.listed_agent_count is not None:
            return self.listed_agent_count
        return len(self.poller.known_agent_ids())

    def subscribe_buffer(self, listener):
        self.poller.subscribe(listener)

    def subscribe_command(self, listener):
        self.dispatcher.subscribe(listener)

    def select_target(self, target_id):
        target_id = str(target_id or "").strip()
        if not target_id:
            raise ValueError("target_id is required")
        self.dispatcher.clear()
        self.poller.change_target(target_id)
        return self.poller.snapshot()

    async def refresh_agents(self):
        try:
            agents = await self.gateway.list_agents()
        except GatewayError as exc:
            self.log.warning("Could not refresh agent list: %s", exc)
            return self.listed_agent_count
        self.listed_agent_count = sum(1 for agent in agents if _is_active_agent(agent))
        self.log.info("Active agents known to the control plane: %d", self.listed_agent_count)
        return self.listed_agent_count

    async def trigger_mtr(self, agent_ids=()):
        if self.poller.target_id is None:
            raise ValueError("no target selected")
        envelope = await self.dispatcher.dispatch(self.poller.target_id, agent_ids)
        return envelope.to_dict()

    def live_snapshot(self):
        return self.poller.snapshot()

    def command_snapshot(self):
        payload = self.dispatcher.envelope.to_dict()
        payload["state"] = self.dispatcher.state
        return payload

    async def aclose(self):
        if self._closed:
            return
        self._closed = True
        await self.poller.aclose()
        await self.dispatcher.aclose()
        await self.gateway.close()
        self.log.info("Live view session closed")
