"""Shared pytest fixtures for the mmbridge test suite.

Provides:
- Config factory with safe defaults (no real credentials)
- A fake Mattermost server (REST + websocket) on aiohttp's test server
- Command line for the fake assistant CLI used by supervisor tests
"""

from __future__ import annotations

import asyncio
import itertools
import json
import sys
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from aiohttp import WSCloseCode, web

from mmbridge.config import Config

TOKEN = "test-token-0123456789abcdef"
BOT_USER_ID = "bot-user-id"
HUMAN_USER_ID = "human-user-id"
TEAM_ID = "team-id-1"
CHANNEL_ID = "channel-id-1"

FAKE_ASSISTANT = Path(__file__).parent / "fake_assistant.py"


def assistant_argv(*extra: str) -> list[str]:
    """argv for the fake assistant (unbuffered Python)."""
    return [sys.executable, "-u", str(FAKE_ASSISTANT), *extra]


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it is true or ``timeout`` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


def _make_config(**overrides) -> Config:
    """Create a test Config with safe defaults (no real credentials)."""
    defaults = dict(
        server_url="http://127.0.0.1:1",
        token=TOKEN,
        team_name="Dev Team",
        channel_name="assistant",
        channel_id="",
        max_reconnect_attempts=0,
        reconnect_base_delay=0.05,
        reconnect_max_delay=0.2,
        http_timeout=5.0,
        assistant_command=sys.executable,
        assistant_args=["-u", str(FAKE_ASSISTANT)],
        response_timeout=5.0,
        idle_window=0.2,
        max_restart_attempts=3,
        restart_base_delay=0.05,
        restart_max_delay=0.2,
        supervision_interval=0.2,
        env_file="",
    )
    defaults.update(overrides)
    return Config(**defaults)


class FakeMattermost:
    """Just enough of the Mattermost v4 API for the bridge."""

    def __init__(self) -> None:
        self.teams: list[dict[str, Any]] = [
            {"id": "team-id-0", "name": "other", "display_name": "Other"},
            {"id": TEAM_ID, "name": "dev-team", "display_name": "Dev Team"},
        ]
        self.channels: dict[str, list[dict[str, Any]]] = {
            TEAM_ID: [
                {"id": "channel-id-0", "name": "town-square", "display_name": "Town Square"},
                {"id": CHANNEL_ID, "name": "assistant", "display_name": "Assistant"},
            ],
        }
        self.posts: list[dict[str, Any]] = []
        self.post_status = 201
        # Thread replies to reject with a 500 before accepting again
        self.failing_replies = 0
        self.accept_websockets = True
        self.requests: list[tuple[str, str]] = []
        self.ws_connects = 0
        self.sockets: list[web.WebSocketResponse] = []
        self._ids = itertools.count(1)

        self.app = web.Application()
        self.app.router.add_get("/api/v4/users/me", self._me)
        self.app.router.add_get("/api/v4/users/me/teams", self._teams)
        self.app.router.add_get(
            "/api/v4/users/me/teams/{team_id}/channels", self._channels
        )
        self.app.router.add_post("/api/v4/posts", self._create_post)
        self.app.router.add_get("/api/v4/websocket", self._websocket)
        self.app.on_shutdown.append(self._close_sockets)
        self.url = ""

    @property
    def replies(self) -> list[dict[str, Any]]:
        return [p for p in self.posts if p.get("root_id")]

    def _authorized(self, request: web.Request) -> bool:
        return request.headers.get("Authorization") == f"Bearer {TOKEN}"

    async def _me(self, request: web.Request) -> web.Response:
        self.requests.append(("GET", request.path))
        if not self._authorized(request):
            return web.json_response({"message": "unauthorized"}, status=401)
        return web.json_response({"id": BOT_USER_ID, "username": "bridge-bot"})

    async def _teams(self, request: web.Request) -> web.Response:
        self.requests.append(("GET", request.path))
        return web.json_response(self.teams)

    async def _channels(self, request: web.Request) -> web.Response:
        self.requests.append(("GET", request.path))
        return web.json_response(self.channels.get(request.match_info["team_id"], []))

    async def _create_post(self, request: web.Request) -> web.Response:
        self.requests.append(("POST", request.path))
        body = await request.json()
        status = self.post_status
        if body.get("root_id") and self.failing_replies > 0:
            self.failing_replies -= 1
            status = 500
        if status >= 300:
            return web.json_response({"message": "post failed"}, status=status)
        post = dict(body, id=f"post-{next(self._ids)}", user_id=BOT_USER_ID)
        self.posts.append(post)
        return web.json_response(post, status=status)

    async def _websocket(self, request: web.Request) -> web.StreamResponse:
        if not self._authorized(request):
            return web.json_response({"message": "unauthorized"}, status=401)
        if not self.accept_websockets:
            return web.json_response({"message": "unavailable"}, status=503)
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.ws_connects += 1
        self.sockets.append(ws)
        await ws.send_json({"event": "hello", "data": {"server_version": "9.0.0"}, "seq": 0})
        try:
            async for _ in ws:
                pass
        finally:
            if ws in self.sockets:
                self.sockets.remove(ws)
        return ws

    async def _close_sockets(self, app: web.Application) -> None:
        for ws in list(self.sockets):
            await ws.close(code=WSCloseCode.GOING_AWAY)

    async def send_frame(self, frame: dict[str, Any] | str) -> None:
        raw = frame if isinstance(frame, str) else json.dumps(frame)
        for ws in list(self.sockets):
            await ws.send_str(raw)

    async def send_post(
        self,
        message: str,
        root_id: str = "",
        user_id: str = HUMAN_USER_ID,
        channel_id: str = CHANNEL_ID,
    ) -> None:
        post = {
            "id": f"incoming-{next(self._ids)}",
            "channel_id": channel_id,
            "root_id": root_id,
            "user_id": user_id,
            "message": message,
        }
        await self.send_frame(
            {"event": "posted", "data": {"post": json.dumps(post)}, "seq": 1}
        )

    async def drop_sockets(self) -> None:
        """Close every open websocket, as a server restart would."""
        await self._close_sockets(self.app)


@pytest.fixture
def config():
    """Default test config."""
    return _make_config()


@pytest_asyncio.fixture
async def mattermost(aiohttp_server):
    """Fake Mattermost server; ``mattermost.url`` is its base URL."""
    fake = FakeMattermost()
    server = await aiohttp_server(fake.app)
    fake.url = str(server.make_url("")).rstrip("/")
    yield fake
