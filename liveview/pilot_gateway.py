import asyncio
import logging
from urllib.parse import quote

import aiohttp

from liveview.pilot_models import parse_probe_result


log = logging.getLogger("pilot.gateway")


class GatewayError(Exception):
    def __init__(self, status, message):
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self):
        if self.status is None:
            return self.message
        return f"HTTP {self.status}: {self.message}"


def parse_live_payload(payload):
    """Turns a /live response body into ProbeResults, dropping malformed rows."""
    if not isinstance(payload, dict):
        raise GatewayError(None, "live response is not a JSON object")
    rows = payload.get("results") or []
    if not isinstance(rows, list):
        raise GatewayError(None, "live response 'results' is not a list")

    results = []
    for row in rows:
        try:
            results.append(parse_probe_result(row))
        except ValueError as exc:
            log.warning("Malformed probe result dropped: %s (%r)", exc, row)
    return results


def parse_command_payload(payload):
    if not isinstance(payload, dict):
        raise GatewayError(None, "command response is not a JSON object")
    command = payload.get("command") or {}
    status = ""
    if isinstance(command, dict):
        status = str(command.get("status") or "").strip().lower()
    if not status:
        status = str(payload.get("status") or "").strip().lower()
    results = payload.get("results") or []
    if not isinstance(results, list):
        results = []
    return {"status": status, "results": results}


class FetchGateway:
    """Request/response contract the live view and the dispatcher consume.

    Every method is a coroutine and signals failure by raising GatewayError.
    """

    async def get_live_results(self, target_id, lookback_seconds):
        raise NotImplementedError

    async def dispatch_diagnostic(self, target_id, agent_ids):
        raise NotImplementedError

    async def get_command_status(self, command_id):
        raise NotImplementedError

    async def list_agents(self):
        raise NotImplementedError

    async def close(self):
        return None


class HttpFetchGateway(FetchGateway):
    def __init__(self, base_url, api_prefix="/api/v1", timeout_sec=10.0, session=None):
        self.base_url = f"{str(base_url).rstrip('/')}{api_prefix or ''}"
        self.timeout_sec = float(timeout_sec)
        self.session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, config):
        return cls(
            config["control_plane_url"],
            api_prefix=config.get("api_prefix", "/api/v1"),
            timeout_sec=config.get("request_timeout_sec", 10),
        )

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_sec),
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self.session

    async def close(self):
        if self.session is not None and self._owns_session and not self.session.closed:
            await self.session.close()
        self.session = None

    async def _request(self, method, path, params=None, body=None):
        url = f"{self.base_url}{path}"
        session = self._ensure_session()
        try:
            async with session.request(method, url, params=params, json=body) as response:
                if response.status >= 400:
                    message = response.reason or "request failed"
                    try:
                        error_body = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        error_body = None
                    if isinstance(error_body, dict):
                        message = str(error_body.get("error") or error_body.get("message") or message)
                    raise GatewayError(response.status, message)
                if response.status == 204:
                    return None
                return await response.json(content_type=None)
        except GatewayError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise GatewayError(None, f"{method} {path} failed: {exc or type(exc).__name__}") from exc

    async def get_live_results(self, target_id, lookback_seconds):
        payload = await self._request(
            "GET",
            f"/targets/{quote(str(target_id), safe='')}/live",
            params={"seconds": str(int(lookback_seconds))},
        )
        return parse_live_payload(payload)

    async def dispatch_diagnostic(self, target_id, agent_ids):
        payload = await self._request(
            "POST",
            f"/targets/{quote(str(target_id), safe='')}/mtr",
            body={"agent_ids": list(agent_ids or [])},
        )
        if not isinstance(payload, dict) or not payload.get("command_id"):
            raise GatewayError(None, "dispatch response carries no command_id")
        return {
            "command_id": str(payload["command_id"]),
            "message": str(payload.get("message") or ""),
        }

    async def get_command_status(self, command_id):
        payload = await self._request("GET", f"/commands/{quote(str(command_id), safe='')}")
        return parse_command_payload(payload)

    async def list_agents(self):
        payload = await self._request("GET", "/agents")
        if isinstance(payload, dict):
            payload = payload.get("agents") or []
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]
