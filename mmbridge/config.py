"""Bridge configuration from environment variables and a .notify-env file.

Environment variables win; the env file (``MM_BRIDGE_ENV``, default
``~/.claude/hooks/.notify-env``) only fills values the environment leaves
unset. The file uses the usual ``KEY=value`` format with ``#`` comments.
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping
from urllib.parse import urlparse

from mmbridge.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILE = "~/.claude/hooks/.notify-env"
MIN_TOKEN_LENGTH = 20
MAX_HTTP_TIMEOUT = 10.0

_TRUE = frozenset({"1", "true", "yes", "on"})

# Environment variable -> (field name, parser)
_ENV_FIELDS: dict[str, tuple[str, str]] = {
    "MM_BOT_ENABLED": ("enabled", "bool"),
    "MM_ADDRESS": ("server_url", "str"),
    "MM_TOKEN": ("token", "str"),
    "MM_TEAM": ("team_name", "str"),
    "MM_CHANNEL": ("channel_name", "str"),
    "MM_CHANNEL_ID": ("channel_id", "str"),
    "MAX_RECONNECT_ATTEMPTS": ("max_reconnect_attempts", "int"),
    "RECONNECT_BASE_DELAY": ("reconnect_base_delay", "float"),
    "RECONNECT_MAX_DELAY": ("reconnect_max_delay", "float"),
    "HTTP_TIMEOUT": ("http_timeout", "float"),
    "ASSISTANT_COMMAND": ("assistant_command", "str"),
    "ASSISTANT_ARGS": ("assistant_args", "args"),
    "ASSISTANT_PERMISSION_MODE": ("permission_mode", "str"),
    "ASSISTANT_FULL_PERMISSIONS": ("full_permissions", "bool"),
    "ASSISTANT_PROFILE": ("profile", "str"),
    "ASSISTANT_CWD": ("assistant_cwd", "str"),
    "ASSISTANT_END_MARKER": ("end_marker", "str"),
    "RESPONSE_TIMEOUT": ("response_timeout", "float"),
    "RESPONSE_IDLE_WINDOW": ("idle_window", "float"),
    "MAX_RESTART_ATTEMPTS": ("max_restart_attempts", "int"),
    "RESTART_BASE_DELAY": ("restart_base_delay", "float"),
    "RESTART_MAX_DELAY": ("restart_max_delay", "float"),
    "OUTPUT_BUFFER_CAP": ("output_buffer_cap", "int"),
    "MAX_QUEUE_SIZE": ("max_queue_size", "int"),
    "SUPERVISION_INTERVAL": ("supervision_interval", "float"),
    "ANNOUNCEMENT_MESSAGE": ("announcement", "str"),
    "PROMPT": ("prompt", "str"),
    "IDE_ADDRESS": ("ide_address", "str"),
}


@dataclass
class Config:
    """Bridge configuration."""

    enabled: bool = True

    # Mattermost
    server_url: str = ""
    token: str = ""
    team_name: str = ""
    channel_name: str = ""
    channel_id: str = ""  # skips name resolution when set

    # Realtime transport
    max_reconnect_attempts: int = 0  # 0 = retry forever
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    http_timeout: float = 10.0

    # Assistant process
    assistant_command: str = "claude"
    assistant_args: list[str] = field(default_factory=list)
    permission_mode: str = ""
    full_permissions: bool = False
    profile: str = ""
    assistant_cwd: str = ""
    end_marker: str = ""
    response_timeout: float = 30.0
    idle_window: float = 1.5
    max_restart_attempts: int = 5
    restart_base_delay: float = 2.0
    restart_max_delay: float = 30.0
    output_buffer_cap: int = 1024 * 1024
    max_queue_size: int = 100
    supervision_interval: float = 5.0

    # Startup announcement
    announcement: str = ""
    prompt: str = ""
    ide_address: str = ""

    # .notify-env path actually loaded, if any
    env_file: str = ""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        """Load configuration from environment variables, falling back to the env file.

        Raises:
            ConfigError: if a numeric or boolean value cannot be parsed.
        """
        if environ is None:
            environ = os.environ

        values: dict[str, str] = {}
        env_file = os.path.expanduser(environ.get("MM_BRIDGE_ENV", DEFAULT_ENV_FILE))
        if env_file and Path(env_file).is_file():
            values.update(load_env_file(env_file))
            logger.info("Loaded config from %s", env_file)
        else:
            env_file = ""

        # Environment variables take precedence over the file
        for key in _ENV_FIELDS:
            if environ.get(key, "") != "":
                values[key] = environ[key]

        config = cls(env_file=env_file)
        for key, (name, kind) in _ENV_FIELDS.items():
            raw = values.get(key)
            if raw is None or raw == "":
                continue
            setattr(config, name, _parse(key, raw.strip(), kind))
        return config

    def validate(self) -> None:
        """Check required values and ranges.

        Raises:
            ConfigError: describing every problem found.
        """
        problems: list[str] = []

        if not self.server_url:
            problems.append("MM_ADDRESS is required")
        else:
            parsed = urlparse(self.server_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                problems.append(
                    "MM_ADDRESS must be a valid URL with http:// or https:// protocol"
                )

        if not self.token.strip():
            problems.append("MM_TOKEN is required")
        elif len(self.token.strip()) < MIN_TOKEN_LENGTH:
            problems.append(
                "MM_TOKEN appears to be too short - should be a valid Mattermost token"
            )

        if not self.channel_id:
            if not self.team_name:
                problems.append("MM_TEAM is required unless MM_CHANNEL_ID is set")
            if not self.channel_name:
                problems.append("MM_CHANNEL is required unless MM_CHANNEL_ID is set")

        if not self.assistant_command.strip():
            problems.append("ASSISTANT_COMMAND must not be empty")

        for name in (
            "reconnect_base_delay",
            "reconnect_max_delay",
            "http_timeout",
            "response_timeout",
            "idle_window",
            "restart_base_delay",
            "restart_max_delay",
            "supervision_interval",
        ):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be positive")

        for name in ("output_buffer_cap", "max_queue_size"):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be positive")

        for name in ("max_reconnect_attempts", "max_restart_attempts"):
            if getattr(self, name) < 0:
                problems.append(f"{name} must not be negative")

        if problems:
            raise ConfigError("; ".join(problems))

        if self.http_timeout > MAX_HTTP_TIMEOUT:
            logger.warning(
                "HTTP_TIMEOUT %.1fs is above the %.0fs limit, clamping",
                self.http_timeout, MAX_HTTP_TIMEOUT,
            )
            self.http_timeout = MAX_HTTP_TIMEOUT

        self.server_url = self.server_url.rstrip("/")
        self.token = self.token.strip()

    def assistant_argv(self) -> list[str]:
        """Full command line for the assistant CLI."""
        argv = shlex.split(self.assistant_command) + list(self.assistant_args)
        if self.permission_mode:
            argv += ["--permission-mode", self.permission_mode]
        if self.full_permissions:
            argv.append("--dangerously-skip-permissions")
        if self.profile:
            argv += ["--profile", self.profile]
        return argv


def load_env_file(path: str) -> dict[str, str]:
    """Load a .notify-env file."""
    env: dict[str, str] = {}
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):]
            if "=" in line:
                key, val = line.split("=", 1)
                env[key.strip()] = val.strip().strip('"').strip("'")
    return env


def _parse(key: str, raw: str, kind: str) -> object:
    if kind == "str":
        return raw
    if kind == "bool":
        return raw.lower() in _TRUE
    if kind == "args":
        try:
            return shlex.split(raw)
        except ValueError as e:
            raise ConfigError(f"{key} is not a valid argument list: {e}") from e
    try:
        return int(raw) if kind == "int" else float(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from e
