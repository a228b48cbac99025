"""Tests for the assistant process supervisor.

These spawn tests/fake_assistant.py as the child process.
"""

from __future__ import annotations

import asyncio
import os
import sys

import pytest
import pytest_asyncio

from conftest import assistant_argv, wait_until
from mmbridge.backoff import Backoff
from mmbridge.errors import ProcessTerminated, ResponseTimeout, Unavailable, ValidationError
from mmbridge.services.supervisor import READ_CHUNK, AssistantSupervisor, OutputBuffer

MISSING_COMMAND = "/nonexistent/assistant-cli"
EXITS_AT_ONCE = [sys.executable, "-c", "import sys; sys.exit(1)"]


@pytest_asyncio.fixture
async def make_supervisor():
    """Factory for supervisors that are stopped after the test."""
    created: list[AssistantSupervisor] = []

    def _make(argv=None, **kwargs) -> AssistantSupervisor:
        kwargs.setdefault("response_timeout", 5.0)
        kwargs.setdefault("idle_window", 0.2)
        kwargs.setdefault("restart_backoff", Backoff(base=0.05, cap=0.2))
        supervisor = AssistantSupervisor(argv or assistant_argv(), **kwargs)
        created.append(supervisor)
        return supervisor

    yield _make
    for supervisor in created:
        await supervisor.stop()


# --- OutputBuffer ---


def test_buffer_discards_oldest_half_past_cap():
    buffer = OutputBuffer(cap=100)
    for i in range(30):
        buffer.append(f"{i:09d}\n".encode())
    assert len(buffer) <= 100
    assert buffer.discarded > 0
    assert buffer.text().endswith("000000029\n")


def test_buffer_never_exceeds_cap_plus_chunk():
    buffer = OutputBuffer(cap=1000)
    for _ in range(50):
        buffer.append(b"x" * READ_CHUNK)
        assert len(buffer) <= buffer.cap + READ_CHUNK


def test_buffer_take_until_line():
    buffer = OutputBuffer()
    buffer.append(b"answer\nmore\n<<END")
    assert buffer.take_until_line("<<END>>") is None
    buffer.append(b">>\nleftover")
    assert buffer.take_until_line("<<END>>") == "answer\nmore\n"
    assert buffer.text() == "leftover"


# --- Turns ---


@pytest.mark.asyncio
async def test_send_returns_reply(make_supervisor):
    supervisor = make_supervisor()
    await supervisor.start()
    assert await supervisor.send("What time is it?") == "echo: What time is it?"
    assert supervisor.stats.replied == 1


@pytest.mark.asyncio
async def test_multiline_reply(make_supervisor):
    supervisor = make_supervisor()
    await supervisor.start()
    assert await supervisor.send("__multi__") == "first line\nsecond line"


@pytest.mark.asyncio
async def test_newlines_are_folded_into_one_line(make_supervisor):
    supervisor = make_supervisor()
    await supervisor.start()
    assert await supervisor.send("one\ntwo\r\nthree") == "echo: one two three"


@pytest.mark.asyncio
async def test_turns_are_fifo_and_one_at_a_time(make_supervisor):
    supervisor = make_supervisor()
    await supervisor.start()
    futures = [
        supervisor.submit("__slow__ 0.3"),
        supervisor.submit("second"),
        supervisor.submit("third"),
    ]
    assert supervisor.queue_depth == 3
    replies = await asyncio.gather(*futures)
    assert replies == ["slow: __slow__ 0.3", "echo: second", "echo: third"]


@pytest.mark.asyncio
async def test_output_before_turn_is_discarded(make_supervisor):
    supervisor = make_supervisor(env={**os.environ, "FAKE_BANNER": "Welcome banner"})
    await supervisor.start()
    await wait_until(lambda: supervisor._process is not None and len(supervisor._process.stdout) > 0)
    assert await supervisor.send("hi") == "echo: hi"


@pytest.mark.asyncio
async def test_end_marker_mode(make_supervisor):
    supervisor = make_supervisor(
        env={**os.environ, "FAKE_END_MARKER": "<<END>>"},
        end_marker="<<END>>",
        # The idle heuristic alone would never answer within the timeout
        idle_window=30.0,
        response_timeout=5.0,
    )
    await supervisor.start()
    assert await supervisor.send("__multi__") == "first line\nsecond line"
    assert await supervisor.send("again") == "echo: again"


@pytest.mark.asyncio
async def test_end_marker_with_nothing_before_it(make_supervisor):
    supervisor = make_supervisor(
        env={**os.environ, "FAKE_END_MARKER": "<<END>>"}, end_marker="<<END>>"
    )
    await supervisor.start()
    assert await supervisor.send("__empty__") == ""


@pytest.mark.asyncio
async def test_response_timeout(make_supervisor):
    supervisor = make_supervisor(response_timeout=0.5)
    await supervisor.start()
    with pytest.raises(ResponseTimeout):
        await supervisor.send("__hang__")
    # The process is still usable afterwards
    assert await supervisor.send("next") == "echo: next"


@pytest.mark.asyncio
async def test_output_without_newline_is_not_a_reply(make_supervisor):
    supervisor = make_supervisor(response_timeout=0.8)
    await supervisor.start()
    with pytest.raises(ResponseTimeout):
        await supervisor.send("__partial__")


@pytest.mark.asyncio
async def test_empty_turn_is_rejected(make_supervisor):
    supervisor = make_supervisor()
    await supervisor.start()
    with pytest.raises(ValidationError):
        await supervisor.send("   ")


@pytest.mark.asyncio
async def test_submit_before_start_is_unavailable(make_supervisor):
    supervisor = make_supervisor()
    with pytest.raises(Unavailable):
        await supervisor.send("hello")


# --- Failure and restart ---


@pytest.mark.asyncio
async def test_death_mid_turn_then_restart(make_supervisor):
    supervisor = make_supervisor()
    await supervisor.start()
    first_pid = supervisor.pid

    dying = supervisor.submit("__die__")
    queued = supervisor.submit("after restart")

    with pytest.raises(ProcessTerminated):
        await dying
    # The queued turn waits for the replacement process
    assert await queued == "echo: after restart"
    assert supervisor.pid is not None and supervisor.pid != first_pid
    assert supervisor.stats.restarts == 1
    assert supervisor.stats.spawned == 2


@pytest.mark.asyncio
async def test_spawn_failure_exhausts_restarts(make_supervisor):
    supervisor = make_supervisor([MISSING_COMMAND], max_restart_attempts=2)
    await supervisor.start()
    pending = supervisor.submit("hello")

    with pytest.raises(Unavailable):
        await asyncio.wait_for(pending, timeout=5.0)
    await wait_until(lambda: supervisor.exhausted)

    with pytest.raises(Unavailable):
        await supervisor.send("later")
    assert supervisor.stats.spawned == 0


@pytest.mark.asyncio
async def test_reset_after_exhaustion(make_supervisor):
    supervisor = make_supervisor([MISSING_COMMAND], max_restart_attempts=1)
    await supervisor.start()
    await wait_until(lambda: supervisor.exhausted)

    supervisor.argv = assistant_argv()
    await supervisor.reset()
    assert not supervisor.exhausted
    assert await supervisor.send("back") == "echo: back"


@pytest.mark.asyncio
async def test_child_exiting_at_once_exhausts_restarts(make_supervisor):
    supervisor = make_supervisor(EXITS_AT_ONCE, max_restart_attempts=3)
    await supervisor.start()
    await wait_until(lambda: supervisor.exhausted)

    # The first spawn plus one per allowed restart
    assert supervisor.stats.spawned == 4
    with pytest.raises(Unavailable):
        await supervisor.send("hello")


@pytest.mark.asyncio
async def test_stable_child_resets_restart_backoff(make_supervisor):
    supervisor = make_supervisor(stable_after=0.2)
    supervisor.backoff.attempt = 2
    await supervisor.start()
    await wait_until(lambda: supervisor.backoff.attempt == 0)
    assert supervisor.pid is not None


@pytest.mark.asyncio
async def test_reply_resets_restart_backoff(make_supervisor):
    supervisor = make_supervisor()
    await supervisor.start()
    supervisor.backoff.attempt = 2
    assert await supervisor.send("hi") == "echo: hi"
    assert supervisor.backoff.attempt == 0


@pytest.mark.asyncio
async def test_queue_full_is_unavailable(make_supervisor):
    # The command never starts, so turns stay queued
    supervisor = make_supervisor(
        [MISSING_COMMAND], max_queue_size=2, restart_backoff=Backoff(base=10.0, cap=10.0)
    )
    await supervisor.start()
    first = supervisor.submit("one")
    second = supervisor.submit("two")
    with pytest.raises(Unavailable, match="queue is full"):
        await supervisor.submit("three")
    assert supervisor.queue_depth == 2

    await supervisor.stop()
    for future in (first, second):
        with pytest.raises(Unavailable):
            await future


@pytest.mark.asyncio
async def test_stop_rejects_in_flight_turn(make_supervisor):
    supervisor = make_supervisor(response_timeout=30.0, terminate_grace=1.0)
    await supervisor.start()
    in_flight = supervisor.submit("__hang__")
    await wait_until(lambda: supervisor.status()["in_flight"] is not None)

    await supervisor.stop()
    with pytest.raises(Unavailable):
        await in_flight
    assert supervisor.pid is None


@pytest.mark.asyncio
async def test_check_reports_health(make_supervisor):
    supervisor = make_supervisor()
    assert not supervisor.check()
    await supervisor.start()
    assert supervisor.check()

    await supervisor.stop()
    assert not supervisor.check()


@pytest.mark.asyncio
async def test_check_restarts_killed_process(make_supervisor):
    supervisor = make_supervisor()
    await supervisor.start()
    old_pid = supervisor.pid
    supervisor._process.proc.kill()

    await wait_until(lambda: supervisor.pid is not None and supervisor.pid != old_pid)
    assert supervisor.check()
    assert await supervisor.send("still here") == "echo: still here"
