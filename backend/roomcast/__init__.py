"""Roomcast: real-time delivery core for room-based chat."""
