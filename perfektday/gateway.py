"""
deCONZ REST gateway client.
Applies attribute changes to a light group, reads back group state and opens
the Zigbee network for pairing.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Union

from aiohttp import ClientError, ClientSession, ClientTimeout

from .errors import GatewayError

logger = logging.getLogger(__name__)


class DeconzGateway:
    """Client for a deCONZ lighting bridge addressing one light group."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 80,
        api_key: str = "",
        group_id: str = "0",
        timeout: float = 5.0,
        session: Optional[ClientSession] = None,
    ):
        """Initialize the gateway client.

        Args:
            host: deCONZ host
            port: deCONZ REST port
            api_key: deCONZ API key
            group_id: Light group addressed when no group is given
            timeout: Total timeout per request in seconds
            session: Optional shared aiohttp session (created lazily otherwise)
        """
        self.host = host
        self.port = port
        self.api_key = api_key
        self.group_id = str(group_id)
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}/api/{self.api_key}"

    def _group_url(self, group: Optional[str]) -> str:
        return f"{self.base_url}/groups/{group if group is not None else self.group_id}"

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            GatewayError: on connection failure, timeout, HTTP error status, a
                body that is not JSON or a deCONZ error entry in the response
        """
        logger.debug(f"deCONZ {method} {url} {kwargs.get('json', kwargs.get('data', ''))}")
        session = self._get_session()
        try:
            async with session.request(method, url, **kwargs) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise GatewayError(f"deCONZ {method} {url} returned {resp.status}: {text}")
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise GatewayError(f"deCONZ {method} {url} returned a non-JSON body: {e}") from e
        except (ClientError, asyncio.TimeoutError) as e:
            raise GatewayError(f"deCONZ {method} {url} failed: {e}") from e

        if isinstance(data, list):
            errors = [entry["error"] for entry in data if isinstance(entry, dict) and "error" in entry]
            if errors:
                raise GatewayError(f"deCONZ {method} {url} reported errors: {errors}")

        logger.debug(f"deCONZ response: {data}")
        return data

    async def set_attribute(self, name: str, value: Any, group: Optional[str] = None) -> None:
        """Set a single action attribute (e.g. "ct", "bri") on the group."""
        await self._request("PUT", f"{self._group_url(group)}/action", json={name: value})

    async def set_raw(self, body: Union[str, Dict[str, Any]], group: Optional[str] = None) -> None:
        """Send a raw action body to the group.

        Args:
            body: JSON text or a dict, sent unchanged as the action body
            group: Group id, defaults to the configured group
        """
        if isinstance(body, str):
            try:
                json.loads(body)
            except json.JSONDecodeError as e:
                raise GatewayError(f"Raw action body is not valid JSON: {e}") from e
            await self._request(
                "PUT",
                f"{self._group_url(group)}/action",
                data=body,
                headers={"Content-Type": "application/json"},
            )
        else:
            await self._request("PUT", f"{self._group_url(group)}/action", json=body)

    async def get_attribute(self, name: str, group: Optional[str] = None) -> Any:
        """Return the group's current value for an action attribute."""
        data = await self._request("GET", self._group_url(group))
        try:
            return data["action"][name]
        except (KeyError, TypeError) as e:
            raise GatewayError(f"Group state has no action attribute '{name}'") from e

    async def enable_pairing(self, duration: int) -> None:
        """Open the Zigbee network for new devices for ``duration`` seconds."""
        logger.info(f"Enabling deCONZ pairing for {duration}s")
        await self._request("PUT", f"{self.base_url}/config", json={"permitjoin": int(duration)})

    async def flash_fixture(self, group: Optional[str] = None) -> None:
        """Flash the group once so it can be identified."""
        await self.set_raw({"alert": "select"}, group)
