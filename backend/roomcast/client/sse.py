"""Server-Sent Events decoding and reconnect policy for the client.

``SSEDecoder`` consumes the stream line by line (as produced by
``httpx.Response.aiter_lines``) and yields one ``ServerSentEvent`` per blank
line, following the EventSource field rules: ``data`` lines are joined with
newlines, ``id`` updates ``last_event_id``, comments (``:``) are ignored.

``ReconnectPolicy`` is the explicit backoff schedule used between stream
attempts: ``base * factor ** attempt`` capped at ``cap`` seconds, with
proportional jitter, and an optional attempt limit.
"""
import json
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


@dataclass(frozen=True)
class ServerSentEvent:
    data: str
    event: str = "message"
    id: Optional[str] = None
    retry: Optional[int] = None

    def json(self) -> Dict[str, Any]:
        return json.loads(self.data)


class SSEDecoder:
    """Incremental line-oriented SSE parser."""

    def __init__(self) -> None:
        self._data: List[str] = []
        self._event: Optional[str] = None
        self._id: Optional[str] = None
        self._retry: Optional[int] = None
        self.last_event_id: Optional[str] = None

    def decode(self, line: str) -> Optional[ServerSentEvent]:
        """Feed one line (without its terminator).

        Returns:
            A complete event when *line* is the blank line ending one,
            otherwise None.
        """
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            if "\0" not in value:
                self._id = value
        elif name == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _dispatch(self) -> Optional[ServerSentEvent]:
        if self._id is not None:
            self.last_event_id = self._id
        if not self._data:
            self._event = None
            self._id = None
            self._retry = None
            return None
        event = ServerSentEvent(
            data="\n".join(self._data),
            event=self._event or "message",
            id=self._id,
            retry=self._retry,
        )
        self._data = []
        self._event = None
        self._id = None
        self._retry = None
        return event


@dataclass
class ReconnectPolicy:
    """Bounded exponential backoff with jitter.

    Attributes:
        base: Delay before the first retry, in seconds.
        factor: Multiplier per failed attempt.
        cap: Upper bound on any single delay.
        jitter: Fraction of the delay that is randomised (0 disables).
        max_attempts: Consecutive failures allowed before giving up
            (None retries forever).
    """
    base: float = 1.0
    factor: float = 2.0
    cap: float = 30.0
    jitter: float = 0.5
    max_attempts: Optional[int] = None
    rng: Callable[[], float] = field(default=random.random, repr=False)

    def __post_init__(self) -> None:
        if self.base <= 0 or self.cap < self.base:
            raise ValueError("backoff requires 0 < base <= cap")
        if self.factor < 1:
            raise ValueError("backoff factor must be >= 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number *attempt* (0-based)."""
        # Past ~64 doublings every delay is capped; avoids float overflow.
        raw = self.cap if attempt > 64 else min(self.cap, self.base * self.factor ** attempt)
        return raw * (1 - self.jitter * self.rng())

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts
