"""Event delivery for mu-chat."""

from mu_chat.events.bus import WILDCARD, EventBus, Handler

__all__ = ["EventBus", "Handler", "WILDCARD"]
