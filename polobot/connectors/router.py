"""
Topic router for the multiplexed push channel.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict

from ..errors import DecodeError, SubscriptionError
from ..types import StreamEvent


@dataclass
class Route:
    """Handler registered for one topic."""
    topic: str
    handler: Callable[[Any], Any]
    decoder: Callable[[StreamEvent], Any]


class TopicRouter:
    """
    Routes push channel events to the handler registered for their topic.

    Events for topics without a handler are dropped silently; an event that
    does not decode is dropped and counted without affecting other topics.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.routes: Dict[str, Route] = {}

        # Statistics
        self.events_dispatched = 0
        self.dropped_events = 0
        self.malformed_events = 0
        self.malformed_frames = 0
        self.handler_errors = 0

    def register(self, topic: str, handler: Callable[[Any], Any], decoder: Callable[[StreamEvent], Any]) -> None:
        """
        Register the handler of a topic.

        Raises:
            SubscriptionError: The topic already has a handler
        """
        if topic in self.routes:
            raise SubscriptionError(f"Topic already subscribed: {topic}")
        self.routes[topic] = Route(topic, handler, decoder)

    def deregister(self, topic: str) -> None:
        self.routes.pop(topic, None)

    def is_registered(self, topic: str) -> bool:
        return topic in self.routes

    async def dispatch(self, event: StreamEvent) -> None:
        """Decode an event and hand it to its topic handler."""
        route = self.routes.get(event.topic)
        if route is None:
            self.dropped_events += 1
            return

        try:
            update = route.decoder(event)
        except DecodeError as e:
            self.malformed_events += 1
            self.logger.warning(f"Dropping malformed event on {event.topic}: {e}")
            return

        try:
            result = route.handler(update)
            if inspect.isawaitable(result):
                await result
            self.events_dispatched += 1
        except Exception as e:
            self.handler_errors += 1
            self.logger.error(f"Handler for {event.topic} failed: {e}")

    def record_dropped_event(self) -> None:
        """Count an event whose subscription is no longer known."""
        self.dropped_events += 1

    def record_malformed_frame(self) -> None:
        """Count a frame that could not be parsed at all."""
        self.malformed_frames += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get router statistics."""
        return {
            'topics': list(self.routes),
            'events_dispatched': self.events_dispatched,
            'dropped_events': self.dropped_events,
            'malformed_events': self.malformed_events,
            'malformed_frames': self.malformed_frames,
            'handler_errors': self.handler_errors,
        }
