"""Owned-thread gate.

After the startup announcement is posted, its id becomes the one thread this
bot reads from and writes to. Every incoming post is checked against it.
"""

from __future__ import annotations

import logging

from mmbridge.events import IncomingPost

logger = logging.getLogger(__name__)


def rejection_reason(
    post: IncomingPost,
    channel_id: str,
    thread_id: str | None,
    bot_user_id: str,
) -> str | None:
    """Why a post is out of scope, or None if it should be forwarded.

    Pure function of the post's channel, parent thread and author.
    """
    if thread_id is None:
        return "no owned thread yet"
    if post.channel_id != channel_id:
        return "other channel"
    if not post.root_id:
        return "top-level post"
    if post.root_id != thread_id:
        return "other thread"
    if post.user_id == bot_user_id:
        return "own post"
    return None


class ThreadGate:
    """Two-state gate: Unowned until ``own()`` is called, then Owned for good."""

    def __init__(self, channel_id: str, bot_user_id: str) -> None:
        self.channel_id = channel_id
        self.bot_user_id = bot_user_id
        self._thread_id: str | None = None

    @property
    def thread_id(self) -> str | None:
        return self._thread_id

    @property
    def owned(self) -> bool:
        return self._thread_id is not None

    def own(self, thread_id: str) -> None:
        """Record the announcement post as the owned thread.

        Raises:
            RuntimeError: if a thread is already owned.
            ValueError: if thread_id is empty.
        """
        if self._thread_id is not None:
            raise RuntimeError(f"thread already owned: {self._thread_id}")
        if not thread_id:
            raise ValueError("thread id must not be empty")
        self._thread_id = thread_id
        logger.info("Owning thread %s in channel %s", thread_id, self.channel_id)

    def admit(self, post: IncomingPost) -> bool:
        reason = rejection_reason(post, self.channel_id, self._thread_id, self.bot_user_id)
        if reason:
            logger.info("Rejected post %s: %s", post.id, reason)
            return False
        logger.info("Admitted post %s from %s", post.id, post.user_id)
        return True
