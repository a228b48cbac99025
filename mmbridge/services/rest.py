"""Mattermost REST API client.

Reuses a single aiohttp.ClientSession for every call; each request carries
the bearer token and a bounded total timeout.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from mmbridge.errors import TransportError

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v4"


class MattermostREST:
    """Thin JSON-over-HTTP wrapper around the Mattermost v4 API."""

    def __init__(self, server_url: str, token: str, timeout: float = 10.0) -> None:
        self.server_url = server_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._http: aiohttp.ClientSession | None = None

    @property
    def websocket_url(self) -> str:
        """``ws(s)://<server>/api/v4/websocket`` for the configured server."""
        if self.server_url.startswith("https://"):
            base = "wss://" + self.server_url[len("https://"):]
        elif self.server_url.startswith("http://"):
            base = "ws://" + self.server_url[len("http://"):]
        else:
            base = self.server_url
        return f"{base}{API_PREFIX}/websocket"

    @property
    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    async def get_http(self) -> aiohttp.ClientSession:
        """Get or create the shared HTTP session.

        Only connecting is bounded at the session level; REST calls pass
        their own total timeout so the long-lived websocket is not cut off.
        """
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.timeout)
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.closed:
            await self._http.close()
            self._http = None

    async def request(
        self,
        method: str,
        path: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        """Make a Mattermost REST API request and decode the JSON body.

        Args:
            method: HTTP method.
            path: API path below /api/v4, e.g. "/users/me".
            json_data: Optional JSON request body.
            params: Optional query parameters.

        Returns:
            The decoded JSON response ({} for an empty body).

        Raises:
            TransportError: on a non-2xx status, a timeout, a connection
                failure or an undecodable body.
        """
        http = await self.get_http()
        url = f"{self.server_url}{API_PREFIX}{path}"
        headers = dict(self.auth_headers)
        if json_data is not None:
            headers["Content-Type"] = "application/json"

        try:
            async with http.request(
                method, url, headers=headers, json=json_data, params=params,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                text = await resp.text()
                if resp.status >= 300:
                    raise TransportError(
                        f"{method} {path} -> {resp.status}: {text[:200]}",
                        status=resp.status,
                    )
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"{method} {path} timed out after {self.timeout:.0f}s"
            ) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        if not text:
            return {}
        try:
            return json.loads(text)
        except ValueError as e:
            raise TransportError(f"{method} {path} returned invalid JSON: {e}") from e

    async def get_me(self) -> dict[str, Any]:
        """The authenticated (bot) user."""
        me = await self.request("GET", "/users/me")
        if not isinstance(me, dict) or not me.get("id"):
            raise TransportError("GET /users/me returned no user id")
        return me
