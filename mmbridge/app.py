"""Bridge application: wires the services together and runs them.

Startup is an explicit sequence, each step with an early exit:

1. Resolve the bot's own identity, the team and the channel.
2. Post the announcement and take ownership of its thread.
3. Start the assistant supervisor.
4. Start the supervision worker and the websocket transport.

After that every admitted post flows gate -> sanitizer -> supervisor ->
publisher, until SIGINT/SIGTERM or a fatal transport error.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import platform
import signal
from datetime import datetime
from typing import Any, Coroutine

from mmbridge.backoff import Backoff
from mmbridge.config import Config
from mmbridge.errors import (
    BridgeError,
    NotFound,
    PublishError,
    TransportError,
    new_error_id,
)
from mmbridge.events import IncomingPost, PostedEvent, WireEvent
from mmbridge.services.directory import DirectoryResolver
from mmbridge.services.publisher import ReplyPublisher
from mmbridge.services.rest import MattermostREST
from mmbridge.services.sanitizer import is_safe, sanitize
from mmbridge.services.supervisor import AssistantSupervisor
from mmbridge.services.thread_gate import ThreadGate
from mmbridge.workers.supervision import supervision_worker
from mmbridge.workers.transport import TransportClient

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT = 10.0

USAGE_HINT = "Reply in this thread to talk to the assistant."

# Reply text for turn failures, keyed by error code
_ERROR_REPLIES = {
    "PROCESS_TERMINATED": "The assistant stopped while answering. It is being restarted, please send your message again.",
    "TIMEOUT": "The assistant did not answer in time. Please try again.",
    "UNAVAILABLE": "The assistant is unavailable right now.",
}

EMPTY_REPLY = "The assistant returned an empty reply."


def build_announcement(config: Config, now: datetime | None = None) -> str:
    """Text of the thread-starting post.

    ANNOUNCEMENT_MESSAGE wins when set; otherwise a markdown summary of the
    session is generated.
    """
    if config.announcement:
        return f"{config.announcement}\n\n{USAGE_HINT}"

    now = now or datetime.now()
    lines = ["**Assistant session started**", ""]
    if config.prompt:
        lines.append(f"- **Prompt:** {config.prompt}")
    if config.ide_address:
        lines.append(f"- **IDE Address:** {config.ide_address}")
    lines.append(f"- **Started at:** {now.strftime('%Y-%m-%d %H:%M:%S')}")
    lines.append(f"- **Platform:** {platform.system()} {platform.machine()}")
    lines.append(f"- **Working Directory:** {config.assistant_cwd or os.getcwd()}")
    lines.extend(["", USAGE_HINT])
    return "\n".join(lines)


class Bridge:
    """One bot instance: one owned thread, one assistant process."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.rest = MattermostREST(config.server_url, config.token, timeout=config.http_timeout)
        self.directory = DirectoryResolver(self.rest)
        self.publisher = ReplyPublisher(self.rest)
        self.supervisor = AssistantSupervisor(
            config.assistant_argv(),
            cwd=config.assistant_cwd or None,
            response_timeout=config.response_timeout,
            idle_window=config.idle_window,
            end_marker=config.end_marker,
            max_restart_attempts=config.max_restart_attempts,
            restart_backoff=Backoff(
                base=config.restart_base_delay, cap=config.restart_max_delay
            ),
            buffer_cap=config.output_buffer_cap,
            max_queue_size=config.max_queue_size,
        )
        self.transport = TransportClient(
            self.rest,
            self.on_event,
            backoff=Backoff(
                base=config.reconnect_base_delay,
                cap=config.reconnect_max_delay,
                max_attempts=config.max_reconnect_attempts,
            ),
        )

        self.bot_user_id = ""
        self.channel_id = ""
        self.gate: ThreadGate | None = None

        self._stop = asyncio.Event()
        self._stopping = False
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._transport_task: asyncio.Task[None] | None = None
        self._supervision_task: asyncio.Task[None] | None = None

    # --- Startup ---

    async def start(self) -> None:
        """Run the startup sequence up to (and including) starting the workers.

        Raises:
            NotFound: if the team or channel does not exist.
            TransportError: if Mattermost cannot be reached during startup.
            PublishError: if the announcement cannot be posted.
        """
        me = await self.rest.get_me()
        self.bot_user_id = me["id"]
        logger.info("Authenticated as %s (%s)", me.get("username", "?"), self.bot_user_id)

        if self.config.channel_id:
            self.channel_id = self.config.channel_id
            logger.info("Using configured channel ID: %s", self.channel_id)
        else:
            team_id = await self.directory.resolve_team(self.config.team_name)
            self.channel_id = await self.directory.resolve_channel(
                team_id, self.config.channel_name
            )

        self.gate = ThreadGate(self.channel_id, self.bot_user_id)
        thread_id = await self.publisher.announce(
            self.channel_id, build_announcement(self.config)
        )
        self.gate.own(thread_id)
        logger.info("Announcement posted, listening on thread %s", thread_id)

        await self.supervisor.start()
        self._supervision_task = asyncio.create_task(
            supervision_worker(self.supervisor, self.config.supervision_interval),
            name="supervision",
        )
        self._transport_task = asyncio.create_task(self.transport.run(), name="transport")

    async def run(self) -> int:
        """Start, then serve until stopped. Returns the process exit code."""
        try:
            await self.start()
        except (NotFound, TransportError, PublishError) as e:
            logger.error("Startup failed: %s: %s", e.code, e.message)
            await self.shutdown()
            return 1

        stop_waiter = asyncio.create_task(self._stop.wait())
        try:
            done, _ = await asyncio.wait(
                {self._transport_task, stop_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_waiter.cancel()

        exit_code = 0
        if self._transport_task in done and not self._transport_task.cancelled():
            error = self._transport_task.exception()
            if error is not None:
                logger.error("Transport stopped: %s", error)
                exit_code = 1
        await self.shutdown()
        return exit_code

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Shutdown requested")
            self._stop.set()

    async def shutdown(self) -> None:
        """Stop the transport and workers, then the assistant."""
        self._stopping = True
        await self.transport.close()
        for task in (self._transport_task, self._supervision_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        await self.supervisor.stop()
        if self._background_tasks:
            _, pending = await asyncio.wait(
                set(self._background_tasks), timeout=SHUTDOWN_TIMEOUT
            )
            for task in pending:
                task.cancel()
        await self.rest.close()
        logger.info("Bridge stopped")

    # --- Event routing ---

    def on_event(self, event: WireEvent) -> None:
        """Transport callback. Never awaits; the reply is delivered by a task."""
        if not isinstance(event, PostedEvent) or self._stopping:
            return
        post = event.post
        if self.gate is None or not self.gate.admit(post):
            return

        text = sanitize(post.message)
        if not text:
            logger.info("Dropped post %s: empty after sanitizing", post.id)
            return
        if not is_safe(text):
            logger.warning("Dropped post %s: unsafe content", post.id)
            return

        future = self.supervisor.submit(text)
        self._track_task(self._deliver(post, future))

    async def _deliver(self, post: IncomingPost, future: asyncio.Future[str]) -> None:
        # Admitted posts are replies in the owned thread
        thread_id = post.root_id
        try:
            reply = await future
        except BridgeError as e:
            if self._stopping:
                return
            await self._post_error(thread_id, e)
            return

        if not reply:
            logger.warning("Assistant returned an empty reply to post %s", post.id)
            await self._notify(thread_id, EMPTY_REPLY)
            return
        try:
            await self.publisher.publish(self.channel_id, thread_id, reply)
        except PublishError as e:
            error_id = new_error_id()
            logger.error(
                "[%s] Failed to publish reply to post %s: %s", error_id, post.id, e.message,
                extra={"error_id": error_id},
            )
            await self._notify(
                thread_id, f"Failed to post the assistant's reply (error id {error_id})."
            )

    async def _post_error(self, thread_id: str, error: BridgeError) -> None:
        text = _ERROR_REPLIES.get(error.code)
        if text is None:
            return
        await self._notify(thread_id, text)

    async def _notify(self, thread_id: str, text: str) -> None:
        """Best-effort plain-text notice; failures are only logged."""
        try:
            await self.publisher.publish(self.channel_id, thread_id, text)
        except PublishError as e:
            logger.warning("Failed to post notice: %s", e.message)

    def _track_task(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        """Create a tracked background task that logs exceptions on completion."""
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)

        def _on_done(t: asyncio.Task[None]) -> None:
            self._background_tasks.discard(t)
            if not t.cancelled() and t.exception():
                error_id = new_error_id()
                logger.error(
                    "[%s] Background task failed: %s", error_id, t.exception(),
                    extra={"error_id": error_id},
                )

        task.add_done_callback(_on_done)
        return task


async def run_bridge(config: Config) -> int:
    """Run a bridge with SIGINT/SIGTERM wired to a graceful shutdown."""
    bridge = Bridge(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, bridge.request_stop)
    try:
        return await bridge.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)
