"""Relay event bus."""

from thinkbot.events.bus import EventBus

__all__ = ["EventBus"]
