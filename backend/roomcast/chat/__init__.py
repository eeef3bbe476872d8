"""Chat core: message log, read watermarks, unread counts, typing, rooms.

Provides:
    - MessageStore: Ordered, durable message log with read watermarks.
    - UnreadService: Unread counters derived from watermarks.
    - TypingTracker: Typing presence with read-time expiry.
    - RoomService: Room create/invite/leave/list.
"""
