"""Assistant process supervisor.

Owns exactly one long-running assistant CLI child process and a FIFO queue
of user turns. A single worker task writes one turn at a time to the
child's stdin and waits for the reply on stdout:

  - With an end-of-response marker configured, the reply is everything
    before the first stdout line equal to the marker.
  - Without one, output counts as a complete reply once it is non-empty,
    contains a newline, and no more output has arrived for the idle window.

Both modes are bounded by the response timeout. If the child dies it is
restarted with exponential backoff. A restart only counts as a success once
the new child has answered a turn or stayed up for ``stable_after`` seconds;
after too many restarts without that the supervisor reports itself
unavailable until ``reset()``.

Uses asyncio.create_subprocess_exec so the event loop never blocks on the
child.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import shlex
from collections import deque
from dataclasses import dataclass
from typing import Any

from mmbridge.backoff import Backoff
from mmbridge.errors import (
    BridgeError,
    ProcessTerminated,
    ResponseTimeout,
    Unavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
DEFAULT_BUFFER_CAP = 1024 * 1024
STDERR_TAIL = 500
STABLE_AFTER = 10.0


class OutputBuffer:
    """Byte buffer that drops its oldest half whenever it grows past ``cap``."""

    def __init__(self, cap: int = DEFAULT_BUFFER_CAP) -> None:
        self.cap = cap
        self._data = bytearray()
        self.discarded = 0

    def __len__(self) -> int:
        return len(self._data)

    def append(self, chunk: bytes) -> None:
        self._data += chunk
        while len(self._data) > self.cap:
            drop = max(len(self._data) // 2, 1)
            del self._data[:drop]
            self.discarded += drop
            logger.warning("Output buffer over %d bytes, discarded %d oldest", self.cap, drop)

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")

    def clear(self) -> None:
        self._data.clear()

    def take(self) -> str:
        text = self.text()
        self.clear()
        return text

    def take_until_line(self, marker: str) -> str | None:
        """Split off everything before the first complete line equal to marker.

        The marker line itself is consumed; whatever follows stays buffered.
        Returns None while no complete marker line has arrived.
        """
        lines = self.text().splitlines(keepends=True)
        for idx, line in enumerate(lines):
            if line.endswith("\n") and line.strip() == marker:
                reply = "".join(lines[:idx])
                rest = "".join(lines[idx + 1:])
                self._data = bytearray(rest.encode("utf-8"))
                return reply
        return None

    def tail(self, size: int = STDERR_TAIL) -> str:
        return self._data[-size:].decode("utf-8", errors="replace")


@dataclass
class Turn:
    """One user message awaiting exactly one assistant reply."""

    seq: int
    text: str
    future: asyncio.Future[str]
    queued_at: float
    sent_at: float | None = None


class AssistantProcess:
    """A spawned assistant child and its output buffers."""

    def __init__(self, proc: asyncio.subprocess.Process, buffer_cap: int) -> None:
        self.proc = proc
        self.stdout = OutputBuffer(buffer_cap)
        self.stderr = OutputBuffer(buffer_cap)
        self.changed = asyncio.Event()
        self.exited = asyncio.Event()
        self.stdout_closed = False
        self.last_output_at = 0.0
        self._stdout_reader = asyncio.create_task(self._pump(proc.stdout, self.stdout, True))
        self._stderr_reader = asyncio.create_task(self._pump(proc.stderr, self.stderr, False))

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> int | None:
        return self.proc.returncode

    @property
    def alive(self) -> bool:
        return (
            not self.exited.is_set()
            and not self.stdout_closed
            and self.proc.returncode is None
        )

    @property
    def ready(self) -> bool:
        """Stdout and stdin are attached and the process is still running."""
        return self.alive and self.proc.stdout is not None and self.proc.stdin is not None

    async def _pump(
        self, stream: asyncio.StreamReader | None, buffer: OutputBuffer, is_stdout: bool
    ) -> None:
        if stream is None:
            return
        loop = asyncio.get_running_loop()
        try:
            while True:
                chunk = await stream.read(READ_CHUNK)
                if not chunk:
                    break
                buffer.append(chunk)
                if is_stdout:
                    self.last_output_at = loop.time()
                    self.changed.set()
        finally:
            if is_stdout:
                self.stdout_closed = True
                self.changed.set()

    async def write_line(self, line: str) -> None:
        if self.proc.stdin is None:
            raise ProcessTerminated("assistant stdin is not attached")
        self.proc.stdin.write(line.encode("utf-8") + b"\n")
        await self.proc.stdin.drain()

    async def wait_closed(self) -> int | None:
        """Wait until the process has exited or closed its stdout.

        A process that closes stdout but keeps running can no longer answer,
        so it is killed.
        """
        waiter = asyncio.create_task(self.proc.wait())
        try:
            done, _ = await asyncio.wait(
                {waiter, self._stdout_reader}, return_when=asyncio.FIRST_COMPLETED
            )
            if waiter not in done:
                try:
                    await asyncio.wait_for(asyncio.shield(waiter), timeout=1.0)
                except asyncio.TimeoutError:
                    logger.warning("Assistant pid=%s closed stdout, killing it", self.pid)
                    with contextlib.suppress(ProcessLookupError):
                        self.proc.kill()
                    await waiter
            try:
                await asyncio.wait_for(
                    asyncio.gather(self._stdout_reader, self._stderr_reader, return_exceptions=True),
                    timeout=1.0,
                )
            except asyncio.TimeoutError:
                # A grandchild may still hold the pipes open.
                pass
        finally:
            if not waiter.done():
                waiter.cancel()
            self.stdout_closed = True
            self.exited.set()
            self.changed.set()
        return self.proc.returncode

    async def terminate(self, grace: float = 5.0) -> None:
        """SIGTERM, then SIGKILL if the process outlives the grace period."""
        if self.proc.returncode is None:
            if self.proc.stdin is not None:
                with contextlib.suppress(Exception):
                    self.proc.stdin.close()
            with contextlib.suppress(ProcessLookupError):
                self.proc.terminate()
            try:
                await asyncio.wait_for(self.proc.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Assistant pid=%s ignored SIGTERM, killing", self.pid)
                with contextlib.suppress(ProcessLookupError):
                    self.proc.kill()
                await self.proc.wait()
        for reader in (self._stdout_reader, self._stderr_reader):
            if not reader.done():
                reader.cancel()


@dataclass
class SupervisorStats:
    spawned: int = 0
    restarts: int = 0
    replied: int = 0
    failed: int = 0


class AssistantSupervisor:
    """Single assistant process plus its FIFO turn queue.

    All state (process handle, queue, in-flight turn) is owned here and only
    changed through ``submit``/``send``, the worker task and the lifecycle
    methods. Spawning is serialized by a lock, so at most one child is ever
    alive.
    """

    def __init__(
        self,
        argv: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        response_timeout: float = 30.0,
        idle_window: float = 1.5,
        end_marker: str = "",
        max_restart_attempts: int = 5,
        restart_backoff: Backoff | None = None,
        buffer_cap: int = DEFAULT_BUFFER_CAP,
        max_queue_size: int = 100,
        terminate_grace: float = 5.0,
        stable_after: float = STABLE_AFTER,
    ) -> None:
        if not argv:
            raise ValueError("assistant argv must not be empty")
        self.argv = list(argv)
        self.cwd = cwd or None
        self.env = env
        self.response_timeout = response_timeout
        self.idle_window = idle_window
        self.end_marker = end_marker
        self.backoff = restart_backoff or Backoff(base=2.0, cap=30.0)
        self.backoff.max_attempts = max_restart_attempts
        self.buffer_cap = buffer_cap
        self.max_queue_size = max_queue_size
        self.terminate_grace = terminate_grace
        self.stable_after = stable_after
        self.stats = SupervisorStats()

        self._process: AssistantProcess | None = None
        self._queue: deque[Turn] = deque()
        self._in_flight: Turn | None = None
        self._seq = itertools.count(1)
        self._wakeup = asyncio.Event()
        self._spawn_lock = asyncio.Lock()
        self._worker: asyncio.Task[None] | None = None
        self._restart_task: asyncio.Task[None] | None = None
        self._watchers: set[asyncio.Task[None]] = set()
        self._started = False
        self._stopping = False
        self._exhausted = False

    # --- Introspection ---

    @property
    def pid(self) -> int | None:
        if self._process is not None and self._process.alive:
            return self._process.pid
        return None

    @property
    def ready(self) -> bool:
        return self._process is not None and self._process.ready

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def restart_pending(self) -> bool:
        return self._restart_task is not None and not self._restart_task.done()

    def status(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "ready": self.ready,
            "queued": len(self._queue),
            "in_flight": self._in_flight.seq if self._in_flight else None,
            "restart_attempt": self.backoff.attempt,
            "exhausted": self._exhausted,
            "spawned": self.stats.spawned,
            "restarts": self.stats.restarts,
        }

    # --- Lifecycle ---

    async def start(self) -> None:
        """Spawn the first process and start the worker."""
        if self._started:
            return
        self._started = True
        self._stopping = False
        self._worker = asyncio.create_task(self._run_worker(), name="assistant-worker")
        if not await self._spawn():
            self._schedule_restart()

    async def stop(self) -> None:
        """Stop the worker, terminate the child, reject whatever is pending."""
        if not self._started:
            return
        self._stopping = True
        self._started = False
        self._wakeup.set()
        in_flight = self._in_flight

        for task in (self._restart_task, self._worker):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._restart_task = None
        self._worker = None

        if in_flight is not None:
            self._fail(in_flight, Unavailable("assistant supervisor stopped"))
        self._in_flight = None
        self._reject_pending("assistant supervisor stopped")

        process, self._process = self._process, None
        if process is not None:
            await process.terminate(self.terminate_grace)
        for watcher in list(self._watchers):
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
        self._watchers.clear()
        logger.info("Assistant supervisor stopped")

    async def reset(self) -> None:
        """Leave the exhausted state and try spawning again."""
        logger.info("Assistant supervisor reset")
        self._exhausted = False
        self.backoff.reset()
        if not self._started:
            await self.start()
            return
        if self._process is None or not self._process.alive:
            if not await self._spawn():
                self._schedule_restart()

    def check(self) -> bool:
        """Periodic liveness check. Returns True when a live process is attached.

        Restarts a dead worker and schedules a process restart if the child
        is gone and nothing else has noticed yet.
        """
        if not self._started or self._stopping or self._exhausted:
            return False

        if self._worker is None or self._worker.done():
            if self._worker is not None and not self._worker.cancelled() and self._worker.exception():
                logger.error("Assistant worker died: %s", self._worker.exception())
            logger.warning("Supervision check: restarting assistant worker")
            self._worker = asyncio.create_task(self._run_worker(), name="assistant-worker")

        if self._process is None or not self._process.alive:
            if not self.restart_pending:
                logger.warning("Supervision check: assistant not running, scheduling restart")
                self._schedule_restart()
            return False
        return True

    async def _spawn(self) -> bool:
        async with self._spawn_lock:
            if self._process is not None and self._process.alive:
                return True
            try:
                proc = await asyncio.create_subprocess_exec(
                    *self.argv,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self.cwd,
                    env=self.env,
                )
            except OSError as e:
                logger.error("Failed to spawn assistant %s: %s", self.argv[0], e)
                return False

            process = AssistantProcess(proc, self.buffer_cap)
            self._process = process
            self.stats.spawned += 1
            watcher = asyncio.create_task(self._watch(process))
            self._watchers.add(watcher)
            watcher.add_done_callback(self._watchers.discard)
            logger.info("Spawned assistant pid=%s: %s", proc.pid, shlex.join(self.argv))
            self._wakeup.set()
            return True

    async def _watch(self, process: AssistantProcess) -> None:
        closed = asyncio.ensure_future(process.wait_closed())
        try:
            done, _ = await asyncio.wait({closed}, timeout=self.stable_after)
            if not done:
                self._mark_stable(process)
            code = await closed
        finally:
            if not closed.done():
                closed.cancel()
        if process is not self._process:
            return
        if self._stopping:
            logger.info("Assistant pid=%s exited (code=%s)", process.pid, code)
            return
        logger.warning(
            "Assistant pid=%s exited unexpectedly (code=%s); stderr: %s",
            process.pid, code, process.stderr.tail().strip() or "-",
        )
        self._wakeup.set()
        self._schedule_restart()

    def _mark_stable(self, process: AssistantProcess) -> None:
        """Forget earlier failed restarts once ``process`` has proven healthy."""
        if process is not self._process or not process.alive or self.backoff.attempt == 0:
            return
        logger.info("Assistant pid=%s is stable, restart backoff reset", process.pid)
        self.backoff.reset()

    def _schedule_restart(self) -> None:
        if self._stopping or self._exhausted or self.restart_pending:
            return
        self._restart_task = asyncio.create_task(self._restart(), name="assistant-restart")

    async def _restart(self) -> None:
        while not self._stopping:
            if self.backoff.exhausted:
                self._exhaust()
                return
            delay = self.backoff.next_delay()
            logger.info(
                "Restarting assistant in %.1fs (attempt %d/%d)",
                delay, self.backoff.attempt, self.backoff.max_attempts,
            )
            await asyncio.sleep(delay)
            if await self._spawn():
                self.stats.restarts += 1
                logger.info("Assistant restarted (pid=%s)", self.pid)
                return

    def _exhaust(self) -> None:
        self._exhausted = True
        logger.error(
            "Assistant restart attempts exhausted (%d); unavailable until reset",
            self.backoff.max_attempts,
        )
        self._reject_pending("assistant process unavailable")
        self._wakeup.set()

    # --- Turns ---

    def submit(self, text: str) -> asyncio.Future[str]:
        """Queue a turn and return the future for its reply. Never blocks.

        The future fails with ValidationError for empty text and with
        Unavailable when the supervisor is exhausted, stopped or full.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        seq = next(self._seq)

        if not isinstance(text, str) or not text.strip():
            future.set_exception(ValidationError("turn text is empty"))
            return future
        if self._exhausted:
            logger.warning("Turn %d rejected: assistant unavailable", seq)
            future.set_exception(Unavailable("assistant process unavailable"))
            return future
        if not self._started or self._stopping:
            logger.warning("Turn %d rejected: supervisor not running", seq)
            future.set_exception(Unavailable("assistant supervisor is not running"))
            return future
        if len(self._queue) >= self.max_queue_size:
            logger.warning("Turn %d rejected: queue full (%d)", seq, self.max_queue_size)
            future.set_exception(Unavailable("turn queue is full"))
            return future

        self._queue.append(Turn(seq=seq, text=text, future=future, queued_at=loop.time()))
        logger.info("Turn %d queued (depth=%d)", seq, len(self._queue))
        self._wakeup.set()
        return future

    async def send(self, text: str) -> str:
        """Queue a turn and wait for the assistant's reply."""
        return await self.submit(text)

    async def _run_worker(self) -> None:
        while not self._stopping:
            self._wakeup.clear()
            if not self._queue:
                await self._wakeup.wait()
                continue
            if self._exhausted:
                self._reject_pending("assistant process unavailable")
                continue
            process = self._process
            if process is None or not process.ready:
                await self._wakeup.wait()
                continue

            turn = self._queue.popleft()
            if turn.future.done():
                # Caller gave up before the turn was sent
                continue

            self._in_flight = turn
            try:
                reply = await self._exchange(process, turn)
            except BridgeError as e:
                self._fail(turn, e)
            else:
                if not turn.future.done():
                    turn.future.set_result(reply)
                self.stats.replied += 1
                self._mark_stable(process)
                loop = asyncio.get_running_loop()
                logger.info(
                    "Turn %d replied (%d chars, %.1fs)",
                    turn.seq, len(reply), loop.time() - (turn.sent_at or turn.queued_at),
                )
            finally:
                self._in_flight = None

    async def _exchange(self, process: AssistantProcess, turn: Turn) -> str:
        line = " ".join(turn.text.split("\n")).replace("\r", "")
        process.stdout.clear()
        try:
            await process.write_line(line)
        except (OSError, RuntimeError) as e:
            raise ProcessTerminated(f"write to assistant failed: {e}") from e
        turn.sent_at = asyncio.get_running_loop().time()
        logger.info("Turn %d sent to pid=%s", turn.seq, process.pid)
        return await self._await_reply(process)

    async def _await_reply(self, process: AssistantProcess) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.response_timeout
        while True:
            process.changed.clear()
            wait = deadline - loop.time()

            if self.end_marker:
                reply = process.stdout.take_until_line(self.end_marker)
                if reply is not None:
                    return reply.strip()
            else:
                text = process.stdout.text()
                if "\n" in text and text.strip():
                    quiet_for = loop.time() - process.last_output_at
                    if quiet_for >= self.idle_window:
                        return process.stdout.take().strip()
                    wait = min(wait, self.idle_window - quiet_for)

            if not process.alive:
                raise ProcessTerminated(
                    f"assistant exited (code={process.returncode}) before replying"
                )
            if deadline - loop.time() <= 0:
                raise ResponseTimeout(
                    f"no reply from assistant within {self.response_timeout:.0f}s"
                )

            try:
                await asyncio.wait_for(process.changed.wait(), timeout=max(wait, 0.0))
            except asyncio.TimeoutError:
                pass

    def _fail(self, turn: Turn, error: BridgeError) -> None:
        self.stats.failed += 1
        logger.warning("Turn %d failed: %s: %s", turn.seq, error.code, error.message)
        if not turn.future.done():
            turn.future.set_exception(error)

    def _reject_pending(self, message: str) -> None:
        while self._queue:
            self._fail(self._queue.popleft(), Unavailable(message))
