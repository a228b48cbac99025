"""Posts replies (and the startup announcement) back to Mattermost.

No automatic retries: a failed publish is surfaced to the caller as
PublishError and the caller decides whether to send a fallback notice.
"""

from __future__ import annotations

import logging

from mmbridge.errors import PublishError, TransportError
from mmbridge.services.rest import MattermostREST

logger = logging.getLogger(__name__)

# Mattermost rejects posts above 16383 characters.
MAX_MESSAGE_LENGTH = 16000
TRUNCATED_SUFFIX = "\n...(truncated)"


def truncate_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    if len(text) > limit:
        return text[:limit] + TRUNCATED_SUFFIX
    return text


class ReplyPublisher:
    """Creates posts through ``POST /api/v4/posts``."""

    def __init__(self, rest: MattermostREST) -> None:
        self.rest = rest

    async def publish(self, channel_id: str, thread_id: str | None, text: str) -> str:
        """Post a message, as a thread reply when thread_id is given.

        Returns:
            The new post's id.

        Raises:
            PublishError: on a non-2xx response, timeout or missing post id.
        """
        body = {"channel_id": channel_id, "message": truncate_message(text)}
        if thread_id:
            body["root_id"] = thread_id
        try:
            post = await self.rest.request("POST", "/posts", json_data=body)
        except TransportError as e:
            raise PublishError(e.message, status=e.status) from e

        post_id = post.get("id") if isinstance(post, dict) else None
        if not post_id:
            raise PublishError("post created without an id")
        logger.debug("Published post %s (thread=%s, %d chars)", post_id, thread_id, len(text))
        return post_id

    async def announce(self, channel_id: str, text: str) -> str:
        """Post a top-level message; its id starts a new thread."""
        return await self.publish(channel_id, None, text)
