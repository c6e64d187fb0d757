import asyncio
import inspect
import itertools
import logging
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Type

from parley.app.events.base_event import BaseEvent, EventPriority

logger = logging.getLogger(__name__)


class EventBus:
    """Serialized control context for the translation session.

    A single worker task drains an asyncio priority queue and awaits each matching
    subscriber in turn, so no two handlers ever run concurrently. Every producer
    (capture thread, recognizer thread, transport receive task, timers) hands its
    work to the session by publishing an event here instead of touching shared
    state directly.

    Events are ordered by priority, then by a monotonically increasing insertion
    counter, which keeps equal-priority events in publish order. When the queue
    grows past ``max_queue_size`` NORMAL and LOW events are dropped while CRITICAL
    and HIGH events are still accepted.

    Attributes:
        _subscribers: Event type to handler list mapping.
        _event_queue: Priority queue of (priority, sequence, event) tuples.
        _worker_task: Background task processing the queue.
        _is_shutting_down: Set once stop_worker() begins.
        _max_queue_size: Queue depth at which backpressure starts.
        _events_dropped: Count of events dropped by backpressure.
    """

    def __init__(self, max_queue_size: int = 500, slow_handler_threshold: float = 0.1) -> None:
        """Initialize the event bus.

        Args:
            max_queue_size: Queue depth at which NORMAL/LOW events start being dropped.
            slow_handler_threshold: Handler duration in seconds that triggers a warning.
        """
        self._subscribers: Dict[Type[BaseEvent], List[Callable[[BaseEvent], Any]]] = defaultdict(list)
        self._event_queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._worker_task: Optional[asyncio.Task] = None
        self._is_shutting_down: bool = False
        self._counter: itertools.count = itertools.count()
        self._subscribers_lock: threading.RLock = threading.RLock()

        self._max_queue_size: int = max_queue_size
        self._slow_handler_threshold: float = slow_handler_threshold
        self._events_dropped: int = 0
        self._events_processed: int = 0

    async def publish(self, event: BaseEvent) -> None:
        """Queue an event for the worker.

        Rejects non-BaseEvent objects and anything published during shutdown.
        Applies backpressure to NORMAL and LOW events when the queue is full.

        Args:
            event: BaseEvent subclass instance to deliver to subscribers.
        """
        if self._is_shutting_down:
            logger.debug(f"Bus shutting down, {type(event).__name__} not queued")
            return

        if not isinstance(event, BaseEvent):
            logger.error(f"Only BaseEvent instances can be published, got {type(event).__name__}")
            return

        depth = self._event_queue.qsize()
        if depth >= self._max_queue_size and not self._admit_when_full(event, depth):
            return

        await self._event_queue.put((event.priority, next(self._counter), event))

        if depth == int(self._max_queue_size * 0.75):
            logger.warning(f"Event queue is three quarters full ({depth}/{self._max_queue_size})")

    def _admit_when_full(self, event: BaseEvent, depth: int) -> bool:
        """Backpressure decision for a full queue. Only CRITICAL and HIGH events get through."""
        name = type(event).__name__
        if event.priority >= EventPriority.NORMAL:
            self._events_dropped += 1
            logger.warning(f"Dropped {name} at depth {depth} ({self._events_dropped} dropped so far)")
            return False
        logger.error(f"Queue over capacity ({depth}/{self._max_queue_size}), admitting {name} anyway")
        return True

    def subscribe(self, event_type: Type[BaseEvent], handler: Callable[[BaseEvent], Any]) -> None:
        """Register a sync or async handler for an event type (matched with isinstance).

        Thread-safe, so components may subscribe from any thread.

        Args:
            event_type: BaseEvent subclass to subscribe to.
            handler: Callable accepting a single event parameter.
        """
        if not inspect.isclass(event_type) or not issubclass(event_type, BaseEvent):
            logger.error(f"Subscription target {event_type!r} is not a BaseEvent subclass")
            return

        if not callable(handler):
            logger.error(f"Handler for {event_type.__name__} is not callable: {handler!r}")
            return

        logger.debug(f"{getattr(handler, '__name__', handler)} subscribed to {event_type.__name__}")
        with self._subscribers_lock:
            self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: Type[BaseEvent], handler: Callable[[BaseEvent], Any]) -> bool:
        """Remove a previously registered handler.

        Returns:
            True if the handler was registered and has been removed.
        """
        with self._subscribers_lock:
            handlers = self._subscribers.get(event_type)
            if not handlers or handler not in handlers:
                return False
            handlers.remove(handler)
            if not handlers:
                del self._subscribers[event_type]
        logger.debug(f"Unsubscribed handler {getattr(handler, '__name__', handler)} from {event_type.__name__}")
        return True

    async def _dispatch(self, event: BaseEvent) -> None:
        event_type = type(event)
        with self._subscribers_lock:
            handlers_to_call = [
                handler
                for subscribed_type, handlers in self._subscribers.items()
                if isinstance(event, subscribed_type)
                for handler in handlers
            ]

        if not handlers_to_call:
            logger.debug(f"{event_type.__name__} has no subscribers")
            return

        for handler in handlers_to_call:
            handler_name = getattr(handler, "__name__", str(handler))
            try:
                handler_start = time.monotonic()
                result = handler(event)
                if inspect.isawaitable(result):
                    await result

                handler_time = time.monotonic() - handler_start
                if handler_time > self._slow_handler_threshold:
                    logger.warning(f"{handler_name} took {handler_time:.3f}s on {event_type.__name__}")
            except Exception as e:
                logger.error(f"{handler_name} failed on {event_type.__name__}: {e}", exc_info=True)

    async def _process_events(self) -> None:
        """Worker loop: dequeue one event at a time and await its handlers."""
        logger.debug("Bus worker loop running")

        while not self._is_shutting_down:
            try:
                _, _, event = await self._event_queue.get()
                try:
                    await self._dispatch(event)
                    self._events_processed += 1
                finally:
                    self._event_queue.task_done()

                # Yield so producers on the same loop can enqueue between events
                await asyncio.sleep(0)

            except asyncio.CancelledError:
                logger.debug("Bus worker loop cancelled")
                break
            except Exception as e:
                logger.critical(f"Bus worker loop failed: {e}", exc_info=True)
                if not self._is_shutting_down:
                    await asyncio.sleep(0.1)

    async def start_worker(self) -> None:
        """Start the worker task if it is not already running."""
        if self._is_shutting_down:
            logger.debug("Bus is shutting down, worker not started")
            return

        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._process_events())
            logger.debug("Bus worker task created")
        else:
            logger.debug("Bus worker task already running")

    def is_worker_task(self) -> bool:
        """True when called from inside a handler run by the bus worker."""
        if self._worker_task is None:
            return False
        try:
            return asyncio.current_task() is self._worker_task
        except RuntimeError:
            return False

    async def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event has been handled.

        Args:
            timeout: Maximum seconds to wait, or None to wait indefinitely.

        Returns:
            True if the queue drained, False on timeout.
        """
        try:
            await asyncio.wait_for(self._event_queue.join(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def stop_worker(self, drain_timeout: float = 2.0) -> None:
        """Drain the queue (bounded by ``drain_timeout``), cancel the worker and drop subscribers."""
        if await self.join(timeout=drain_timeout):
            logger.debug("Queue drained before shutdown")
        else:
            logger.warning(f"Shutdown drain timed out, discarding {self._event_queue.qsize()} queued events")

        self._is_shutting_down = True

        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                logger.debug("Bus worker task stopped")

        with self._subscribers_lock:
            logger.debug(f"Dropping subscribers for {len(self._subscribers)} event types")
            self._subscribers.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of queue depth, drop and processing counters, and subscriber counts."""
        worker_status = "running"
        if self._worker_task is None:
            worker_status = "not_created"
        elif self._worker_task.done():
            worker_status = "cancelled" if self._worker_task.cancelled() else "stopped"

        with self._subscribers_lock:
            subscribers = {event.__name__: len(handlers) for event, handlers in self._subscribers.items()}

        queue_size = self._event_queue.qsize()
        return {
            "queue_size": queue_size,
            "max_queue_size": self._max_queue_size,
            "queue_utilization": f"{(queue_size / self._max_queue_size * 100):.1f}%",
            "events_dropped": self._events_dropped,
            "events_processed": self._events_processed,
            "subscribers": subscribers,
            "worker_status": worker_status,
            "is_shutting_down": self._is_shutting_down,
        }
