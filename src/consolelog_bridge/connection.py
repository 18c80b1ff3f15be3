"""Connection manager: reliable delivery of console messages to the collector.

This module owns the persistent websocket to the local collector and every
guarantee built on top of it:

- Lifecycle: ``Disconnected -> Connecting -> Open -> Disconnected`` (looping
  through reconnect backoff) and a terminal ``ShuttingDown`` reachable from
  any state.
- Outbound queue: bounded FIFO, oldest entry dropped on overflow. Enqueue arms
  a short coalescing timer; a flush drains the queue into a single frame
  (the message itself, or a batch frame when more than one is queued).
- Acknowledgements: every sent message is pending until the collector acks
  its id. Stale entries are re-sent as a batch up to a retry limit, then
  dropped. Delivery is at-least-once; duplicates are left to the collector.
- Liveness: a ping every heartbeat interval; no pong for more than three
  intervals forces the connection closed, which schedules one reconnect.
- Persistence: queue and pending prefixes are snapshotted to session storage
  when the coalescing timer fires (and on exit), and restored on construction.

Everything runs on one asyncio event loop. Timers are loop ``TimerHandle``s so
`ConnectionManager.shutdown` can cancel all of them synchronously.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from itertools import islice
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol, Set

import websockets
from pydantic import ValidationError

from .codec import decode_frame, encode_frame
from .context import BridgeContext
from .errors import CollectorConnectionError, PersistenceError, ProtocolParseError
from .models.frames import (
    AckFrame,
    BatchFrame,
    CommandFrame,
    ConnectionState,
    ConsoleMessage,
    Frame,
    IdentifyFrame,
    PendingAck,
    PingFrame,
    PongFrame,
)
from .persistence import SessionStore, Snapshot

logger = logging.getLogger(__name__)

HEARTBEAT_SILENCE_FACTOR = 3
# Exponent clamp: the multiplier reaches any sane cap long before this.
_MAX_BACKOFF_EXPONENT = 64

__all__ = ["ConnectionManager", "Connector", "Transport", "reconnect_delay"]


class Transport(Protocol):
    """The subset of a websocket client connection the manager relies on."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str], Awaitable[Transport]]


async def _websocket_connector(url: str) -> Transport:
    # Liveness is handled by the ping/pong frames of the collector protocol.
    return await websockets.connect(url, ping_interval=None)


def _now_ms() -> float:
    return time.time() * 1000.0


def reconnect_delay(
    attempt: int, base_ms: float, cap_ms: float, multiplier: float = 1.5
) -> float:
    """Backoff delay in milliseconds for the given 1-based attempt.

    ``min(base * multiplier ** (attempt - 1), cap)``. With base 1000 and cap
    30000 attempts 1..5 give 1000, 1500, 2250, 3375, 5062.5.
    """
    exponent = min(max(attempt, 1) - 1, _MAX_BACKOFF_EXPONENT)
    return min(base_ms * multiplier**exponent, cap_ms)


class ConnectionManager:
    """Reliable-delivery client for the collector websocket.

    All public methods must be called from the event loop thread.
    """

    def __init__(
        self,
        context: BridgeContext,
        *,
        connector: Optional[Connector] = None,
        store: Optional[SessionStore] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Create the manager and restore any persisted session state.

        Args:
            context: Session context (settings and capture switch).
            connector: Coroutine function opening a transport for a URL.
                Defaults to `websockets.connect`.
            store: Session snapshot store. Defaults to ``QUEUE_FILE``.
            clock: Millisecond clock. Defaults to wall-clock milliseconds.
        """
        settings = context.settings
        self._context = context
        self._settings = settings
        self._url = settings.collector_url
        self._connector: Connector = connector or _websocket_connector
        self._store = store if store is not None else SessionStore(settings.QUEUE_FILE)
        self._clock = clock or _now_ms

        self._queue: Deque[ConsoleMessage] = deque(maxlen=settings.MAX_QUEUE_SIZE)
        self._pending: Dict[int, PendingAck] = {}
        self._last_id = 0
        self._dirty = False

        self._state = ConnectionState.DISCONNECTED
        self._ws: Optional[Transport] = None
        self._send_lock = asyncio.Lock()
        self._reconnect_attempts = 0
        self._current_backoff_ms: float = float(settings.RECONNECT_DELAY_MS)
        self._last_pong = self._clock()

        self._batch_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._heartbeat_handle: Optional[asyncio.TimerHandle] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._close_task: Optional[asyncio.Task[None]] = None

        self.restore()

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN and self._ws is not None

    @property
    def queue(self) -> List[ConsoleMessage]:
        return list(self._queue)

    @property
    def pending(self) -> Dict[int, PendingAck]:
        return dict(self._pending)

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def current_backoff_ms(self) -> float:
        return self._current_backoff_ms

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_handle is not None

    def execution_count(self, location_key: str) -> int:
        """Next execution count (1, 2, 3...) for ``location_key`` in this session."""
        return self._context.next_execution_count(location_key)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """Open the collector connection.

        No-op unless the manager is disconnected. On success sends the
        identify frame, starts heartbeat and retry timers, flushes the queue
        and retries stale pending messages. On failure schedules a reconnect.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            return
        self._state = ConnectionState.CONNECTING
        try:
            ws = await self._open_transport()
        except CollectorConnectionError as e:
            if self._state is ConnectionState.CONNECTING:
                self._state = ConnectionState.DISCONNECTED
            logger.debug("Collector connect failed: %s", e)
            self._schedule_reconnect()
            return
        if self._state is ConnectionState.SHUTTING_DOWN:
            self._close_task = asyncio.ensure_future(self._close_transport(ws))
            return
        self._on_open(ws)

    async def _open_transport(self) -> Transport:
        try:
            return await self._connector(self._url)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise CollectorConnectionError(f"{self._url}: {e}") from e

    def _on_open(self, ws: Transport) -> None:
        self._ws = ws
        self._state = ConnectionState.OPEN
        self._reconnect_attempts = 0
        self._current_backoff_ms = float(self._settings.RECONNECT_DELAY_MS)
        self._last_pong = self._clock()
        self._cancel_handle("_reconnect_handle")
        logger.info("Connected to collector %s", self._url)

        self._transmit(
            IdentifyFrame(
                projectId=self._context.project_id,
                projectPath=self._context.project_path,
                url=self._settings.APP_ORIGIN,
                timestamp=int(self._clock()),
            )
        )
        self._reader_task = self._spawn(self._read_loop(ws))
        self._start_heartbeat()
        self._start_retry_scan()
        self.flush()
        self.retry_stale()

    async def _read_loop(self, ws: Transport) -> None:
        reason = "closed by collector"
        try:
            async for raw in ws:
                self.handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except (websockets.exceptions.ConnectionClosed, OSError) as e:
            reason = f"receive failed: {e}"
        self._handle_disconnect(ws, reason)

    def _handle_disconnect(self, ws: Optional[Transport], reason: str) -> None:
        """Single exit path for a lost connection; ignores stale connections."""
        if ws is None or ws is not self._ws:
            return
        self._ws = None
        self._cancel_handle("_heartbeat_handle")
        self._cancel_handle("_retry_handle")
        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        if self._state is ConnectionState.SHUTTING_DOWN:
            return
        self._state = ConnectionState.DISCONNECTED
        logger.warning("Collector connection lost (%s)", reason)
        self._schedule_reconnect()

    def _force_close(self, reason: str) -> None:
        ws = self._ws
        if ws is None:
            return
        self._handle_disconnect(ws, reason)
        self._spawn(self._close_transport(ws))

    async def _close_transport(self, ws: Transport) -> None:
        try:
            await ws.close()
        except Exception as e:  # noqa: BLE001 - closing is best effort
            logger.debug("Error closing collector connection: %s", e)

    def _schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None or self._state is ConnectionState.SHUTTING_DOWN:
            return
        loop = self._running_loop()
        if loop is None:
            return
        self._reconnect_attempts += 1
        delay_ms = reconnect_delay(
            self._reconnect_attempts,
            self._settings.RECONNECT_DELAY_MS,
            self._settings.MAX_RECONNECT_DELAY_MS,
            self._settings.RECONNECT_MULTIPLIER,
        )
        self._current_backoff_ms = delay_ms
        logger.warning(
            "Reconnecting to collector in %.0f ms (attempt %d)", delay_ms, self._reconnect_attempts
        )
        self._reconnect_handle = loop.call_later(delay_ms / 1000.0, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        self._spawn(self.connect())

    def shutdown(self, clear_persisted: bool = True) -> None:
        """Terminal shutdown.

        Cancels every timer and background task, starts closing the socket,
        and clears in-memory and persisted queue/pending state. No reconnect
        happens afterwards. Idempotent.

        Args:
            clear_persisted: Also remove the session snapshot. Pass False after
                an explicit `persist` so a later session can resend it.
        """
        if self._state is ConnectionState.SHUTTING_DOWN:
            return
        self._state = ConnectionState.SHUTTING_DOWN
        for name in ("_batch_handle", "_reconnect_handle", "_heartbeat_handle", "_retry_handle"):
            self._cancel_handle(name)

        current = asyncio.current_task() if self._running_loop() is not None else None
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._reader_task = None

        ws = self._ws
        self._ws = None
        if ws is not None and self._running_loop() is not None:
            self._close_task = asyncio.ensure_future(self._close_transport(ws))

        self._queue.clear()
        self._pending.clear()
        if clear_persisted:
            try:
                self._store.clear()
            except PersistenceError as e:
                logger.debug("Could not clear persisted queue: %s", e)
        logger.info("Connection manager shut down")

    async def wait_closed(self) -> None:
        """Wait for the socket close started by `shutdown` to finish."""
        if self._close_task is not None:
            await asyncio.gather(self._close_task, return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Outbound
    # ------------------------------------------------------------------ #

    def enqueue(self, message: ConsoleMessage) -> Optional[ConsoleMessage]:
        """Queue a message for delivery.

        Assigns the next id and a timestamp, drops the oldest queued message
        when the queue is full and arms the coalescing timer if it is not
        already armed. The snapshot is written when that timer fires, or
        immediately when no event loop is running.

        Returns:
            The queued copy (with id and timestamp), or None after shutdown.
        """
        if self._state is ConnectionState.SHUTTING_DOWN:
            logger.debug("Dropping message enqueued after shutdown")
            return None
        self._last_id += 1
        queued = message.model_copy(update={"id": self._last_id, "timestamp": int(self._clock())})
        if self._queue.maxlen is not None and len(self._queue) >= self._queue.maxlen:
            logger.debug("Queue full; dropping oldest message id=%s", self._queue[0].id)
        self._queue.append(queued)
        self._dirty = True

        loop = self._running_loop()
        if loop is None:
            self.persist()
        elif self._batch_handle is None:
            self._batch_handle = loop.call_later(
                self._settings.BATCH_DELAY_MS / 1000.0, self.flush
            )
        return queued

    def flush(self) -> None:
        """Drain the queue into one outbound frame if the connection is open.

        Writes the snapshot when anything changed since the last write, even
        if nothing could be sent.
        """
        self._cancel_handle("_batch_handle")
        if not self._queue or not self.is_open:
            if self._dirty:
                self.persist()
            return
        batch = list(self._queue)
        self._queue.clear()
        now = self._clock()
        for msg in batch:
            if msg.id is not None:
                self._pending[msg.id] = PendingAck(message=msg, sentAt=now, retryCount=0)
        frame: Frame
        if len(batch) == 1:
            frame = batch[0]
        else:
            frame = BatchFrame(messages=batch, timestamp=int(now))
        self._transmit(frame)
        self.persist()

    def retry_stale(self) -> List[int]:
        """Re-send pending messages older than the message timeout.

        Each stale entry is handled once per pass: below the retry limit its
        count is incremented and ``sentAt`` refreshed, at the limit it is
        dropped. Retried messages go out together as one batch frame.

        Returns:
            Ids of the messages re-sent in this pass.
        """
        if not self.is_open:
            return []
        now = self._clock()
        timeout = self._settings.MESSAGE_TIMEOUT_MS
        max_retries = self._settings.MAX_RETRIES
        to_retry: List[ConsoleMessage] = []
        for msg_id, pending in list(self._pending.items()):
            if now - pending.sentAt <= timeout:
                continue
            if pending.retryCount >= max_retries:
                del self._pending[msg_id]
                logger.debug("Dropping message id=%s after %d retries", msg_id, pending.retryCount)
                continue
            self._pending[msg_id] = PendingAck(
                message=pending.message, sentAt=now, retryCount=pending.retryCount + 1
            )
            to_retry.append(pending.message)
        if to_retry:
            logger.debug("Retrying %d unacknowledged message(s)", len(to_retry))
            self._transmit(BatchFrame(messages=to_retry, timestamp=int(now)))
        return [m.id for m in to_retry if m.id is not None]

    def _transmit(self, frame: Frame) -> None:
        ws = self._ws
        if ws is None:
            return
        self._spawn(self._send_text(ws, encode_frame(frame)))

    async def _send_text(self, ws: Transport, text: str) -> None:
        async with self._send_lock:
            if ws is not self._ws:
                # Connection replaced or closed; pending entries cover the loss.
                return
            try:
                await ws.send(text)
            except (websockets.exceptions.ConnectionClosed, OSError) as e:
                self._handle_disconnect(ws, f"send failed: {e}")

    # ------------------------------------------------------------------ #
    # Inbound
    # ------------------------------------------------------------------ #

    def handle_frame(self, raw: str | bytes) -> None:
        """Dispatch one inbound frame; malformed frames are discarded."""
        try:
            frame = decode_frame(raw)
        except ProtocolParseError as e:
            logger.debug("Discarding inbound frame: %s", e)
            return

        if isinstance(frame, PongFrame):
            self._last_pong = self._clock()
        elif isinstance(frame, AckFrame):
            self._pending.pop(frame.messageId, None)
        elif isinstance(frame, CommandFrame):
            self._handle_command(frame.command)
        elif isinstance(frame, PingFrame):
            self._transmit(PongFrame())
        else:
            logger.debug("Ignoring unexpected inbound %s frame", frame.type)

    def _handle_command(self, command: str) -> None:
        if command == "ping":
            self._transmit(PongFrame())
        elif command == "shutdown":
            logger.info("Collector requested shutdown")
            self.shutdown()
        elif command == "disable":
            self._context.enabled = False
            logger.info("Capture disabled by collector")
        elif command == "enable":
            self._context.enabled = True
            logger.info("Capture enabled by collector")

    # ------------------------------------------------------------------ #
    # Timers
    # ------------------------------------------------------------------ #

    def _start_heartbeat(self) -> None:
        self._cancel_handle("_heartbeat_handle")
        loop = self._running_loop()
        if loop is not None:
            self._heartbeat_handle = loop.call_later(
                self._settings.HEARTBEAT_INTERVAL_MS / 1000.0, self._heartbeat_tick
            )

    def _heartbeat_tick(self) -> None:
        self._heartbeat_handle = None
        if not self.is_open:
            return
        now = self._clock()
        silence = now - self._last_pong
        if silence > self._settings.HEARTBEAT_INTERVAL_MS * HEARTBEAT_SILENCE_FACTOR:
            logger.warning("No pong from collector for %.0f ms; closing connection", silence)
            self._force_close("heartbeat timeout")
            return
        self._transmit(PingFrame(timestamp=int(now)))
        self._start_heartbeat()

    def _start_retry_scan(self) -> None:
        self._cancel_handle("_retry_handle")
        loop = self._running_loop()
        if loop is not None:
            self._retry_handle = loop.call_later(
                self._settings.RETRY_SCAN_INTERVAL_MS / 1000.0, self._retry_tick
            )

    def _retry_tick(self) -> None:
        self._retry_handle = None
        if not self.is_open:
            return
        self.retry_stale()
        self._start_retry_scan()

    def _cancel_handle(self, name: str) -> None:
        handle: Optional[asyncio.TimerHandle] = getattr(self, name)
        if handle is not None:
            handle.cancel()
            setattr(self, name, None)

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    def persist(self) -> None:
        """Snapshot bounded prefixes of queue and pending to session storage."""
        if self._state is ConnectionState.SHUTTING_DOWN:
            return
        self._dirty = False
        limit = self._settings.PERSIST_LIMIT
        snapshot = Snapshot(
            queue=[
                m.model_dump(mode="json", exclude_none=True) for m in islice(self._queue, limit)
            ],
            pending=[
                {
                    "id": msg_id,
                    "message": p.message.model_dump(mode="json", exclude_none=True),
                    "retries": p.retryCount,
                }
                for msg_id, p in islice(self._pending.items(), limit)
            ],
        )
        try:
            self._store.save(snapshot)
        except PersistenceError as e:
            logger.debug("Persisting queue failed: %s", e)

    def restore(self) -> None:
        """Load persisted queue and pending entries.

        Restored pending entries are timestamped now (retry counts kept). The
        id counter moves past the largest restored id.
        """
        try:
            snapshot = self._store.load()
        except PersistenceError as e:
            logger.debug("Ignoring unreadable persisted queue: %s", e)
            return
        if snapshot is None:
            return
        now = self._clock()
        max_id = self._last_id
        for raw in snapshot.queue:
            try:
                msg = ConsoleMessage.model_validate(raw)
            except ValidationError:
                continue
            self._queue.append(msg)
            max_id = max(max_id, msg.id or 0)
        for raw in snapshot.pending:
            try:
                msg = ConsoleMessage.model_validate(raw.get("message"))
                msg_id = int(raw.get("id", msg.id))
                retries = int(raw.get("retries") or 0)
            except (ValidationError, TypeError, ValueError, AttributeError):
                continue
            self._pending[msg_id] = PendingAck(message=msg, sentAt=now, retryCount=retries)
            max_id = max(max_id, msg_id)
        self._last_id = max_id
        for index, msg in enumerate(self._queue):
            if msg.id is None:
                self._last_id += 1
                self._queue[index] = msg.model_copy(update={"id": self._last_id})
        if self._queue or self._pending:
            logger.info(
                "Restored %d queued and %d pending message(s)", len(self._queue), len(self._pending)
            )

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
