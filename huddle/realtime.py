"""In-process fan-out of channel messages to websocket subscribers."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger("uvicorn.error")

MESSAGE_CREATED = "message.created"
MESSAGE_UPDATED = "message.updated"
MESSAGE_DELETED = "message.deleted"


@dataclass(eq=False)
class Subscription:
    channel_id: str
    user_id: str
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)


class ChannelHub:
    """Registry of live subscriptions keyed by channel id.

    Publishing happens from request worker threads while subscriptions live on
    an event loop, so deliveries are scheduled with ``call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, set[Subscription]] = defaultdict(set)

    def subscribe(self, channel_id: str, user_id: str) -> Subscription:
        """Register a subscriber; must be called from the subscriber's loop."""
        subscription = Subscription(
            channel_id=channel_id,
            user_id=user_id,
            loop=asyncio.get_running_loop(),
        )
        with self._lock:
            self._subscriptions[channel_id].add(subscription)
        logger.debug("User %s subscribed to channel %s", user_id, channel_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.channel_id)
            if not subscribers:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscriptions[subscription.channel_id]
        logger.debug(
            "User %s unsubscribed from channel %s",
            subscription.user_id,
            subscription.channel_id,
        )

    def subscriber_count(self, channel_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(channel_id, ()))

    def publish(self, channel_id: str, payload: dict[str, Any]) -> int:
        """Queue ``payload`` for every subscriber of the channel.

        Returns the number of subscribers the payload was handed to.
        """
        with self._lock:
            subscribers = list(self._subscriptions.get(channel_id, ()))
        delivered = 0
        for subscription in subscribers:
            try:
                subscription.loop.call_soon_threadsafe(
                    subscription.queue.put_nowait, payload
                )
            except RuntimeError:
                # Loop already closed; the connection is gone.
                self.unsubscribe(subscription)
                continue
            delivered += 1
        return delivered


hub = ChannelHub()


def message_created(message: dict[str, Any]) -> dict[str, Any]:
    return {"type": MESSAGE_CREATED, "message": message}


def message_updated(message: dict[str, Any]) -> dict[str, Any]:
    return {"type": MESSAGE_UPDATED, "message": message}


def message_deleted(message: dict[str, Any]) -> dict[str, Any]:
    return {"type": MESSAGE_DELETED, "message": message}
