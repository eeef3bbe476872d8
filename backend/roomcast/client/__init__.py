"""Python client for Roomcast.

Provides:
    - ChatApiClient: Typed async wrapper over the HTTP API (httpx).
    - ChatSession: Session controller with immutable state, SSE listening,
      bounded exponential reconnect and gap-fill.
    - ReconnectPolicy, SSEDecoder: Stream plumbing used by ChatSession.
"""
from .api import ChatApiClient, ChatApiError
from .session import ChatSession
from .sse import ReconnectPolicy, ServerSentEvent, SSEDecoder
from .state import ConnectionStatus, SessionState

__all__ = [
    "ChatApiClient",
    "ChatApiError",
    "ChatSession",
    "ConnectionStatus",
    "ReconnectPolicy",
    "ServerSentEvent",
    "SSEDecoder",
    "SessionState",
]
