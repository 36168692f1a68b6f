"""Adapters package - event plumbing between the engine and the server."""
from __future__ import annotations

__all__ = [
    "EventBus",
    "EventDispatcher",
]

from endlesscode.adapters.event_bus import EventBus, EventDispatcher
