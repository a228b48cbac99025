"""Realtime websocket frames parsed into tagged event variants.

Mattermost sends JSON frames such as::

    {"event": "hello", "data": {"server_version": "..."}, "seq": 0}
    {"event": "posted", "data": {"post": "<json-encoded post>", ...}, "seq": 3}

Anything that does not match a known shape is turned into ``Unrecognized``
or rejected with ``ValidationError`` here, before it reaches routing logic.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

from mmbridge.errors import ValidationError

MAX_POST_LENGTH = 10000


@dataclass(frozen=True, slots=True)
class IncomingPost:
    """A post as received over the websocket. Never persisted."""

    id: str
    channel_id: str
    root_id: str | None
    user_id: str
    message: str

    @property
    def is_reply(self) -> bool:
        return bool(self.root_id)

    @classmethod
    def from_dict(cls, data: Any) -> IncomingPost:
        """Validate a decoded post payload.

        Raises:
            ValidationError: if a required field is missing or mistyped, or
                the message is longer than MAX_POST_LENGTH.
        """
        if not isinstance(data, dict):
            raise ValidationError("post is not an object")

        post_id = data.get("id")
        channel_id = data.get("channel_id")
        if not isinstance(post_id, str) or not post_id.strip():
            raise ValidationError("post has no id")
        if not isinstance(channel_id, str) or not channel_id.strip():
            raise ValidationError(f"post {post_id} has no channel_id")

        message = data.get("message", "")
        root_id = data.get("root_id", "")
        user_id = data.get("user_id", "")
        for name, value in (("message", message), ("root_id", root_id), ("user_id", user_id)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"post {post_id} field '{name}' is not a string")

        message = message or ""
        if len(message) > MAX_POST_LENGTH:
            raise ValidationError(
                f"post {post_id} message exceeds {MAX_POST_LENGTH} characters"
            )

        return cls(
            id=post_id,
            channel_id=channel_id,
            root_id=root_id or None,
            user_id=user_id or "",
            message=message,
        )


@dataclass(frozen=True, slots=True)
class HelloEvent:
    """Handshake complete."""

    server_version: str = ""


@dataclass(frozen=True, slots=True)
class PostedEvent:
    post: IncomingPost


@dataclass(frozen=True, slots=True)
class Unrecognized:
    """Any well-formed frame whose event type the bridge does not act on."""

    event: str
    data: dict[str, Any] = field(default_factory=dict)


WireEvent = Union[HelloEvent, PostedEvent, Unrecognized]


def parse_frame(raw: str | bytes) -> WireEvent:
    """Parse one websocket text frame.

    Raises:
        ValidationError: on invalid JSON, a frame without an event name, or
            a ``posted`` frame whose post payload is malformed.
    """
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"frame is not valid JSON: {e}") from e

    if not isinstance(frame, dict):
        raise ValidationError("frame is not an object")

    event = frame.get("event")
    if not isinstance(event, str) or not event.strip():
        # Replies to our own actions carry "status"/"seq_reply" and no event.
        if "seq_reply" in frame:
            return Unrecognized(event="", data=frame)
        raise ValidationError("frame has no event name")

    data = frame.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError(f"'{event}' frame data is not an object")

    if event == "hello":
        version = data.get("server_version", "")
        return HelloEvent(server_version=version if isinstance(version, str) else "")

    if event == "posted":
        raw_post = data.get("post")
        if not isinstance(raw_post, str) or not raw_post.strip():
            raise ValidationError("'posted' frame has no post payload")
        try:
            post = json.loads(raw_post)
        except ValueError as e:
            raise ValidationError(f"post payload is not valid JSON: {e}") from e
        return PostedEvent(post=IncomingPost.from_dict(post))

    return Unrecognized(event=event, data=data)
