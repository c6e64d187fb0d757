"""Helpers for handing work from foreign threads to the event bus and tracking subscriptions."""
import asyncio
import logging
from concurrent.futures import Future
from typing import Callable, Dict, List, Optional, Tuple, Type

from parley.app.event_bus import EventBus
from parley.app.events.base_event import BaseEvent

logger = logging.getLogger(__name__)


class ThreadSafeEventPublisher:
    """Publishes events onto the bus from any thread.

    Uses asyncio.run_coroutine_threadsafe against the loop that runs the bus, so
    capture and recognizer threads never touch session state themselves.

    Attributes:
        event_bus: EventBus instance for publishing.
        event_loop: Loop that owns the bus worker.
    """

    def __init__(self, event_bus: EventBus, event_loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.event_bus: EventBus = event_bus
        self.event_loop: Optional[asyncio.AbstractEventLoop] = event_loop

    def _get_event_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        if self.event_loop and not self.event_loop.is_closed():
            return self.event_loop

        try:
            loop = asyncio.get_running_loop()
            self.event_loop = loop
            return loop
        except RuntimeError:
            return None

    def publish(self, event: BaseEvent) -> Optional[Future]:
        """Schedule ``event`` for publication on the bus loop.

        Returns:
            The concurrent future for the publish, or None if no loop is available.
        """
        loop = self._get_event_loop()
        if not loop:
            logger.error(f"Cannot publish event {type(event).__name__}: no running event loop")
            return None
        try:
            future = asyncio.run_coroutine_threadsafe(self.event_bus.publish(event), loop)
        except RuntimeError as e:
            logger.debug(f"Event loop closed while publishing {type(event).__name__}: {e}")
            return None
        future.add_done_callback(self._handle_publish_result)
        return future

    @staticmethod
    def _handle_publish_result(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Error in threaded event publish: {error}", exc_info=error)


class EventSubscriptionManager:
    """Tracks the subscriptions a component makes so they can be removed together.

    Attributes:
        event_bus: EventBus instance.
        component_name: Name of component for logging.
        subscriptions: (event type, handler) pairs in registration order.
    """

    def __init__(self, event_bus: EventBus, component_name: str) -> None:
        self.event_bus: EventBus = event_bus
        self.component_name: str = component_name
        self.subscriptions: List[Tuple[Type[BaseEvent], Callable]] = []

    def subscribe(self, event_type: Type[BaseEvent], handler: Callable) -> None:
        self.event_bus.subscribe(event_type=event_type, handler=handler)
        self.subscriptions.append((event_type, handler))
        logger.debug(f"{self.component_name}: Subscribed to {event_type.__name__} with handler {handler.__name__}")

    def unsubscribe_all(self) -> int:
        """Remove every tracked subscription from the bus.

        Returns:
            Number of handlers actually removed.
        """
        removed = 0
        for event_type, handler in self.subscriptions:
            if self.event_bus.unsubscribe(event_type, handler):
                removed += 1
        logger.debug(f"{self.component_name}: Removed {removed}/{len(self.subscriptions)} subscriptions")
        self.subscriptions.clear()
        return removed

    def subscribed_types(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for event_type, _ in self.subscriptions:
            counts[event_type.__name__] = counts.get(event_type.__name__, 0) + 1
        return counts
