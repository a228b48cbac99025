"""Team and channel name resolution.

Names are matched case-insensitively against both the short name and the
display name. Results are cached for the life of the process; channel ids
do not change while the bot runs.
"""

from __future__ import annotations

import logging
from typing import Any

from mmbridge.errors import NotFound, TransportError
from mmbridge.services.rest import MattermostREST

logger = logging.getLogger(__name__)


def _matches(entry: Any, name: str) -> bool:
    if not isinstance(entry, dict):
        return False
    wanted = name.strip().lower()
    short = entry.get("name") or ""
    display = entry.get("display_name") or ""
    return wanted in (str(short).lower(), str(display).lower())


class DirectoryResolver:
    """Resolves human-readable team/channel names to ids."""

    def __init__(self, rest: MattermostREST) -> None:
        self.rest = rest
        self._teams: dict[str, str] = {}
        self._channels: dict[tuple[str, str], str] = {}

    async def resolve_team(self, name: str) -> str:
        """Find the id of a team the bot belongs to.

        Raises:
            NotFound: if no team matches.
            TransportError: on HTTP failure or timeout.
        """
        key = name.strip().lower()
        if key in self._teams:
            return self._teams[key]

        teams = await self.rest.request("GET", "/users/me/teams")
        if not isinstance(teams, list):
            raise TransportError("GET /users/me/teams did not return a list")

        for team in teams:
            if _matches(team, name) and team.get("id"):
                self._teams[key] = team["id"]
                logger.info("Resolved team '%s' to ID: %s", name, team["id"])
                return team["id"]

        raise NotFound(f'Team "{name}" not found')

    async def resolve_channel(self, team_id: str, name: str) -> str:
        """Find the id of a channel in a team that the bot can see.

        Raises:
            NotFound: if no channel matches.
            TransportError: on HTTP failure or timeout.
        """
        key = (team_id, name.strip().lower())
        if key in self._channels:
            return self._channels[key]

        channels = await self.rest.request(
            "GET", f"/users/me/teams/{team_id}/channels"
        )
        if not isinstance(channels, list):
            raise TransportError(
                f"GET /users/me/teams/{team_id}/channels did not return a list"
            )

        for channel in channels:
            if _matches(channel, name) and channel.get("id"):
                self._channels[key] = channel["id"]
                logger.info("Resolved channel '%s' to ID: %s", name, channel["id"])
                return channel["id"]

        raise NotFound(f'Channel "{name}" not found in team {team_id}')
