"""In-process event bus for post-commit presentation hooks.

The chat/presentation layer subscribes handlers; services emit after their
unit of work commits.  Each handler runs as its own fire-and-forget task, so
a slow or failing handler never blocks or fails a settlement.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from tipledger.core.async_tasks import fire_and_forget

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict[str, Any]], Awaitable[None]]

EVENT_TYPES = (
    "tip.sent",
    "tip.refunded",
    "group_tip.created",
    "group_tip.claimed",
    "group_tip.finalized",
    "group_tip.refunded",
    "match.offered",
    "match.settled",
    "match.closed",
)

_subscribers: dict[str, list[Handler]] = defaultdict(list)


def subscribe(event_type: str, handler: Handler) -> None:
    """Register ``handler(event_type, payload)``.  ``"*"`` receives every event."""
    if event_type != "*" and event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")
    _subscribers[event_type].append(handler)


def unsubscribe(event_type: str, handler: Handler) -> None:
    handlers = _subscribers.get(event_type, [])
    if handler in handlers:
        handlers.remove(handler)


def clear_subscribers() -> None:
    _subscribers.clear()


def emit(event_type: str, payload: dict[str, Any]) -> int:
    """Dispatch to every subscriber in the background.  Returns handler count."""
    envelope = {**payload, "emitted_at": datetime.now(timezone.utc).isoformat()}
    handlers = [*_subscribers.get(event_type, []), *_subscribers.get("*", [])]
    for handler in handlers:
        fire_and_forget(
            handler(event_type, envelope),
            task_name=f"event:{event_type}:{getattr(handler, '__name__', 'handler')}",
        )
    if handlers:
        logger.debug("Emitted %s to %d handler(s)", event_type, len(handlers))
    return len(handlers)
