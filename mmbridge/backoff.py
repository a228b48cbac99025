"""Exponential backoff policy shared by the websocket transport and the
assistant process supervisor."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Backoff:
    """Delay schedule ``min(base * 2**attempt, cap)``.

    ``next_delay()`` returns the delay for the current attempt and advances
    the counter; ``reset()`` puts it back to the base after a success.
    ``max_attempts`` of 0 means unlimited.
    """

    base: float = 1.0
    cap: float = 30.0
    max_attempts: int = 0
    attempt: int = 0

    def peek(self) -> float:
        """Delay the next call to next_delay() would return."""
        # Clamp the exponent so long outages don't overflow the float math.
        exponent = min(self.attempt, 62)
        return min(self.base * (2 ** exponent), self.cap)

    def next_delay(self) -> float:
        delay = self.peek()
        self.attempt += 1
        return delay

    @property
    def exhausted(self) -> bool:
        return self.max_attempts > 0 and self.attempt >= self.max_attempts

    def reset(self) -> None:
        self.attempt = 0
