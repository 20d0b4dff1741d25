import asyncio
import contextlib
import logging
import time

from liveview.pilot_models import (
    COMMAND_COMPLETED,
    COMMAND_ERROR,
    COMMAND_IDLE,
    COMMAND_PENDING,
    COMMAND_TIMEOUT,
    CommandEnvelope,
)


DISPATCHING = "dispatching"
TIMEOUT_MESSAGE = "MTR request timed out"


class CommandDispatcher:
    """Dispatches MTR commands and supervises the result polling chain.

    After a successful dispatch the chain waits ``poll_interval_ms`` and polls,
    repeating up to ``max_attempts`` times. The first poll that reports the
    command completed, or that carries any result, ends the chain. Agents that
    never answer are not an error.
    """

    def __init__(
        self,
        gateway,
        poll_interval_ms=2000,
        max_attempts=30,
        on_change=None,
        active_agents=None,
        schedule=True,
        sleep=asyncio.sleep,
        clock=time.time,
    ):
        self.log = logging.getLogger("pilot.commands")
        self.gateway = gateway
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.max_attempts = max(1, int(max_attempts))
        self.schedule = bool(schedule)
        self.sleep = sleep
        self.clock = clock
        self.active_agents = active_agents

        self.envelope = CommandEnvelope()
        self.dispatching = False

        self._listeners = []
        if on_change is not None:
            self._listeners.append(on_change)
        self._chain = None

    @classmethod
    def from_config(cls, gateway, config, **kwargs):
        return cls(
            gateway,
            poll_interval_ms=config.get("command_poll_interval_ms", 2000),
            max_attempts=config.get("command_max_attempts", 30),
            **kwargs,
        )

    @property
    def state(self):
        if self.dispatching:
            return DISPATCHING
        return self.envelope.status

    def subscribe(self, listener):
        self._listeners.append(listener)

    def unsubscribe(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _active_agent_count(self):
        provider = self.active_agents
        if provider is None:
            return 0
        if callable(provider):
            provider = provider()
        try:
            return max(0, int(provider))
        except (TypeError, ValueError):
            return 0

    def _cancel_chain(self):
        if self._chain is not None:
            if not self._chain.done():
                self._chain.cancel()
            self._chain = None

    async def dispatch(self, target_id, agent_ids=()):
        self._cancel_chain()
        agent_ids = tuple(str(item).strip() for item in (agent_ids or ()) if str(item).strip())
        expected = len(agent_ids) if agent_ids else self._active_agent_count()

        envelope = CommandEnvelope(
            target_id=target_id,
            dispatched_at=self.clock(),
            targeted_agent_ids=agent_ids,
            expected_agents=expected,
        )
        self.envelope = envelope
        self.dispatching = True
        self._notify()

        try:
            response = await self.gateway.dispatch_diagnostic(target_id, list(agent_ids))
            command_id = str((response or {}).get("command_id") or "").strip()
            if not command_id:
                raise ValueError("dispatch response carries no command_id")
        except Exception as exc:
            if envelope is not self.envelope:
                return envelope
            self.dispatching = False
            envelope.status = COMMAND_ERROR
            envelope.error = str(exc) or type(exc).__name__
            self.log.warning("MTR dispatch for target %s failed: %s", target_id, envelope.error)
            self._notify()
            return envelope

        if envelope is not self.envelope:
            self.log.debug("Dispatch for target %s superseded before it returned", target_id)
            return envelope

        self.dispatching = False
        envelope.command_id = command_id
        envelope.message = response.get("message") or None
        envelope.status = COMMAND_PENDING
        self.log.info(
            "MTR command %s queued for target %s (%s)",
            envelope.command_id,
            target_id,
            f"{len(agent_ids)} agents" if agent_ids else f"all agents, expecting {expected}",
        )
        self._notify()

        if self.schedule:
            self._chain = asyncio.ensure_future(self._run_chain(envelope))
        return envelope

    async def _run_chain(self, envelope):
        interval = self.poll_interval_ms / 1000.0
        while envelope is self.envelope and envelope.status == COMMAND_PENDING:
            await self.sleep(interval)
            await self.poll_once(envelope)

    async def poll_once(self, envelope=None):
        envelope = envelope or self.envelope
        if envelope is not self.envelope or envelope.status != COMMAND_PENDING:
            return envelope.status

        envelope.attempts += 1
        attempt = envelope.attempts
        try:
            status = await self.gateway.get_command_status(envelope.command_id)
        except Exception as exc:
            status = None
            if envelope is self.envelope:
                envelope.last_poll_error = str(exc) or type(exc).__name__
                self.log.warning(
                    "MTR poll error for %s (attempt %d/%d): %s",
                    envelope.command_id,
                    attempt,
                    self.max_attempts,
                    envelope.last_poll_error,
                )

        if envelope is not self.envelope or envelope.status != COMMAND_PENDING:
            return envelope.status

        if status is not None:
            envelope.last_poll_error = None
            results = list(status.get("results") or [])
            if status.get("status") == COMMAND_COMPLETED or results:
                envelope.results = results
                envelope.status = COMMAND_COMPLETED
                self.log.info(
                    "MTR command %s completed at attempt %d with %d/%d results",
                    envelope.command_id,
                    attempt,
                    len(results),
                    envelope.expected_agents,
                )
                self._notify()
                return envelope.status

        if attempt >= self.max_attempts:
            envelope.status = COMMAND_TIMEOUT
            envelope.message = TIMEOUT_MESSAGE
            self.log.warning(
                "MTR command %s timed out after %d attempts",
                envelope.command_id,
                attempt,
            )

        self._notify()
        return envelope.status

    async def wait(self):
        chain = self._chain
        if chain is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await chain
        return self.envelope

    def clear(self):
        self._cancel_chain()
        was_dispatching = self.dispatching
        self.dispatching = False
        if was_dispatching or self.envelope.status != COMMAND_IDLE:
            # A dispatch still awaiting the gateway sees a new envelope and drops its reply.
            self.envelope = CommandEnvelope()
            self._notify()

    async def aclose(self):
        chain = self._chain
        self._cancel_chain()
        if chain is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await chain
        self.envelope = CommandEnvelope()
        self.dispatching = False
        self._listeners = []

    def _notify(self):
        if not self._listeners:
            return
        payload = self.envelope.to_dict()
        payload["state"] = self.state
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                self.log.exception("Command listener failed")
