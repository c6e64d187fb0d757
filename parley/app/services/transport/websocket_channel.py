import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed

from parley.app.config.app_config import TransportConfig
from parley.app.errors import ReconnectExhaustedError
from parley.app.event_bus import EventBus
from parley.app.events.transport_events import (
    ReconnectScheduledEvent,
    TransportMessageEvent,
    TransportStateChangedEvent,
)
from parley.app.services.session.session_models import ConnectionState

logger = logging.getLogger(__name__)

GOING_AWAY = 1001

SleepFunc = Callable[[float], Awaitable[None]]


class WebSocketChannel:
    """One logical duplex connection to the realtime endpoint.

    A background task owns the socket: it opens the connection, runs the
    receive loop and the keepalive ping side by side, and reconnects with
    exponential backoff (``base ** attempt`` seconds, attempt counted from 1)
    after an open failure or an abnormal close. Once the attempts run out
    the channel reports a terminal error and stays down until
    ``connect`` is called again. A successful open resets the counter.

    Received messages and state changes are published on the event bus in the
    order they happen, so the session sees remote messages in delivery order.

    Attributes:
        state: Last reported connection state.
        reconnect_attempts: Attempts made since the last successful open.
        reconnect_delays: Backoff delays waited so far, oldest first.
    """

    def __init__(
        self,
        event_bus: EventBus,
        config: TransportConfig,
        connector: Optional[Callable[..., Awaitable[Any]]] = None,
        sleep: SleepFunc = asyncio.sleep,
        keepalive_sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._event_bus = event_bus
        self._config = config
        self._connector = connector or websocket_connect
        self._sleep = sleep
        self._keepalive_sleep = keepalive_sleep

        self._url: Optional[str] = None
        self._headers: Dict[str, str] = {}
        self._ws: Optional[Any] = None
        self._task: Optional[asyncio.Task] = None
        self._fault: Optional[asyncio.Event] = None
        self._send_lock = asyncio.Lock()
        self._closing = False
        self._sequence = 0

        self.state: ConnectionState = ConnectionState.disconnected()
        self.reconnect_attempts = 0
        self.reconnect_delays: List[float] = []

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self.state.is_connected

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def connect(self, url: str, headers: Dict[str, str]) -> None:
        """Start the connection task. Returns immediately; progress is reported as state events."""
        if self.is_running:
            logger.debug("Channel already running, ignoring connect")
            return

        self._url = url
        self._headers = dict(headers)
        self._closing = False
        self.reconnect_attempts = 0
        self._task = asyncio.create_task(self._run(), name="websocket-channel")

    async def disconnect(self) -> None:
        """Close the connection on purpose. No reconnect follows."""
        self._closing = True

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close(code=GOING_AWAY, reason="client disconnect")
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"Error while closing socket: {e}")

        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self.reconnect_attempts = 0
        if self.state != ConnectionState.disconnected():
            await self._set_state(ConnectionState.disconnected())
        logger.info("Channel disconnected")

    async def send(self, message: Dict[str, Any]) -> bool:
        """Serialize and send one message.

        Returns:
            False if the channel is down or the send failed. A failed send is
            treated like a receive failure and triggers the reconnect path.
        """
        ws = self._ws
        if ws is None or not self.state.is_connected:
            logger.warning(f"Dropping '{message.get('type')}' message: channel not connected")
            return False

        payload = json.dumps(message)
        async with self._send_lock:
            try:
                await ws.send(payload)
            except (ConnectionClosed, OSError) as e:
                logger.error(f"Send failed: {e}")
                if self._fault is not None:
                    self._fault.set()
                return False
        return True

    async def _set_state(self, state: ConnectionState, terminal: bool = False) -> None:
        self.state = state
        await self._event_bus.publish(
            TransportStateChangedEvent(state=state, terminal=terminal, reconnect_attempt=self.reconnect_attempts)
        )

    async def _run(self) -> None:
        while not self._closing:
            await self._set_state(ConnectionState.connecting())
            try:
                ws = await self._connector(
                    self._url,
                    additional_headers=self._headers,
                    ping_interval=None,
                    max_size=None,
                    open_timeout=self._config.open_timeout_seconds,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Connection attempt failed: {e}")
                if not await self._schedule_reconnect(f"Connection failed: {e}"):
                    return
                continue

            if self._closing:
                await ws.close(code=GOING_AWAY)
                return

            self._ws = ws
            self.reconnect_attempts = 0
            logger.info("Channel connected")
            await self._set_state(ConnectionState.connected())

            close_code = await self._serve(ws)
            if self._ws is ws:
                self._ws = None
            if self._closing:
                return

            if close_code == GOING_AWAY:
                logger.info("Remote closed the connection (going away)")
                await self._set_state(ConnectionState.disconnected())
                return

            logger.warning(f"Connection lost (close code {close_code})")
            if not await self._schedule_reconnect("Connection lost"):
                return

    async def _schedule_reconnect(self, reason: str) -> bool:
        """Wait out the next backoff delay.

        Returns:
            False when no further attempt will be made.
        """
        if self._closing:
            return False

        if self.reconnect_attempts >= self._config.max_reconnect_attempts:
            error = ReconnectExhaustedError(self.reconnect_attempts)
            logger.error(error.message)
            await self._set_state(ConnectionState.error(error.message), terminal=True)
            return False

        self.reconnect_attempts += 1
        delay = self._config.reconnect_backoff_base**self.reconnect_attempts
        self.reconnect_delays.append(delay)
        logger.info(
            f"Reconnecting in {delay:.0f}s (attempt {self.reconnect_attempts}/{self._config.max_reconnect_attempts})"
        )
        await self._set_state(ConnectionState.error(f"{reason}, reconnecting in {delay:.0f}s"))
        await self._event_bus.publish(ReconnectScheduledEvent(attempt=self.reconnect_attempts, delay_seconds=delay))
        await self._sleep(delay)
        return not self._closing

    async def _serve(self, ws: Any) -> Optional[int]:
        """Run receive and keepalive until either fails or a send fault is raised."""
        self._fault = asyncio.Event()
        tasks = [
            asyncio.create_task(self._receive_loop(ws), name="websocket-receive"),
            asyncio.create_task(self._keepalive_loop(ws), name="websocket-keepalive"),
            asyncio.create_task(self._fault.wait(), name="websocket-fault"),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._fault = None

        if not self._closing:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"Error closing failed socket: {e}")
        return getattr(ws, "close_code", None)

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for message in ws:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                sequence = self._sequence
                self._sequence += 1
                await self._event_bus.publish(TransportMessageEvent(raw=message, sequence=sequence))
        except ConnectionClosed as e:
            logger.warning(f"Receive loop ended: {e}")
        except OSError as e:
            logger.error(f"Receive failed: {e}")

    async def _keepalive_loop(self, ws: Any) -> None:
        interval = self._config.keepalive_interval_seconds
        timeout = self._config.keepalive_timeout_seconds
        while True:
            await self._keepalive_sleep(interval)
            try:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=timeout)
            except asyncio.TimeoutError:
                logger.error(f"Keepalive timed out after {timeout}s")
                return
            except (ConnectionClosed, OSError) as e:
                logger.warning(f"Keepalive failed: {e}")
                return
            logger.debug("Keepalive acknowledged")
