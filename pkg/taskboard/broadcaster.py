"""
Live update broadcaster: fans authoritative task mutations out to every
subscriber of a project's channel.

Delivery is at-most-once and best effort. Nothing is stored, acknowledged or
retried; a subscriber that is gone at publish time simply misses the event
and recovers with a full reload on reconnect.
"""
import logging
import threading
import uuid
from typing import Callable, Dict, Optional, Tuple, Union

from .schema import EventKind, LiveUpdateEvent, Task

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "project:"

Handler = Callable[[LiveUpdateEvent], None]


def project_channel(project_id: str) -> str:
    """Channel name for one project's live updates."""
    return f"{CHANNEL_PREFIX}{project_id}"


def channel_project(channel: str) -> str:
    """Inverse of project_channel()."""
    if not channel.startswith(CHANNEL_PREFIX):
        raise ValueError(f"Not a project channel: {channel}")
    return channel[len(CHANNEL_PREFIX):]


class LiveUpdateBroadcaster:
    """Routes published task events to per-project subscribers."""

    def __init__(self):
        self._lock = threading.Lock()
        # channel -> {token: handler}
        self._channels: Dict[str, Dict[str, Handler]] = {}
        # token -> channel, for unsubscribe
        self._tokens: Dict[str, str] = {}

    def subscribe(self, channel: str, handler: Handler) -> str:
        """Register a handler on a channel. Returns an unsubscribe token."""
        token = uuid.uuid4().hex
        with self._lock:
            self._channels.setdefault(channel, {})[token] = handler
            self._tokens[token] = channel
        logger.debug(f"Subscribed {token[:8]} to {channel}")
        return token

    def unsubscribe(self, token: str) -> bool:
        """Remove a subscription. Returns False if the token is unknown."""
        with self._lock:
            channel = self._tokens.pop(token, None)
            if channel is None:
                return False
            handlers = self._channels.get(channel, {})
            handlers.pop(token, None)
            if not handlers:
                self._channels.pop(channel, None)
        logger.debug(f"Unsubscribed {token[:8]} from {channel}")
        return True

    def is_subscribed(self, token: str) -> bool:
        with self._lock:
            return token in self._tokens

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._channels.get(channel, {}))

    def publish(self, channel: str, kind: EventKind, payload: Union[Task, str]) -> int:
        """
        Deliver an event to every current subscriber of channel.

        Must only be called after the mutation is durably applied. Returns
        the number of handlers that accepted the event. Handler failures
        are dropped.
        """
        event = LiveUpdateEvent(project_id=channel_project(channel), kind=kind, payload=payload)
        with self._lock:
            targets: Tuple[Tuple[str, Handler], ...] = tuple(self._channels.get(channel, {}).items())

        delivered = 0
        for token, handler in targets:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.debug(f"Dropped {kind.wire_name} for subscriber {token[:8]}: {e}")
        return delivered

    def publish_event(self, event: LiveUpdateEvent) -> int:
        return self.publish(project_channel(event.project_id), event.kind, event.payload)

    def close_channel(self, channel: str) -> Optional[int]:
        """Drop every subscription on a channel, e.g. after the project is deleted."""
        with self._lock:
            handlers = self._channels.pop(channel, None)
            if handlers is None:
                return None
            for token in handlers:
                self._tokens.pop(token, None)
        return len(handlers)
