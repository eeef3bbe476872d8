"""Realtime fan-out.

Provides:
    - ChangeFeed: Room-scoped publish/subscribe over committed store changes.
    - EventBridge: Per-connection SSE framing of change-feed events.
"""
