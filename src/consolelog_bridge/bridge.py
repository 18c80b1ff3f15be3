"""Capture entry point wiring resolution and delivery together.

`ConsoleBridge` is what an instrumented runtime talks to. A captured console
call goes through:

1. ``capture`` (synchronous, never blocks the caller): filter, render message
   text and fingerprint, spawn a processing task.
2. The processing task: raw frame parse -> mapped resolution (when the frame
   carries a reference) -> drop when the location is still unknown -> build
   the console message -> hand it to the connection manager.

The bridge owns one `ConnectionManager` and one `LocationResolver` for the
lifetime of a session and is usable as an async context manager.
"""
from __future__ import annotations

import asyncio
import atexit
import logging
import time
from typing import Any, Callable, Optional, Sequence, Set

import httpx

from .config import Settings, get_settings
from .connection import ConnectionManager, Connector
from .context import BridgeContext
from .errors import ResolutionError
from .formatting import format_arguments, generate_fingerprint
from .models.frames import ConnectionState, ConsoleContext, ConsoleMessage, Location
from .persistence import SessionStore
from .resolution import LocationResolver, ReferenceKind, classify_reference

logger = logging.getLogger(__name__)

# Messages the bridge itself prints carry this tag and are never captured.
SELF_DIAGNOSTIC_TAG = "[ConsoleLog"

__all__ = ["ConsoleBridge", "SELF_DIAGNOSTIC_TAG"]


class ConsoleBridge:
    """One instrumentation session: capture, resolve and deliver console calls."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        connector: Optional[Connector] = None,
        store: Optional[SessionStore] = None,
        clock: Optional[Callable[[], float]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.context = BridgeContext(self.settings)
        self._clock = clock or (lambda: time.time() * 1000.0)
        self.connection = ConnectionManager(
            self.context, connector=connector, store=store, clock=self._clock
        )
        self.resolver = LocationResolver(self.settings, client=http_client)
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._warmup_handle: Optional[asyncio.TimerHandle] = None
        self._closed = False

    async def __aenter__(self) -> "ConsoleBridge":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()

    async def start(self) -> None:
        """Connect to the collector and schedule the chunk index warm-up."""
        atexit.register(self.connection.persist)
        await self.connection.connect()
        loop = asyncio.get_running_loop()
        self._warmup_handle = loop.call_later(
            self.settings.INDEX_WARMUP_DELAY_MS / 1000.0, self._warm_index
        )

    def _warm_index(self) -> None:
        self._warmup_handle = None
        self._spawn(self._scan_known_assets())

    async def _scan_known_assets(self) -> None:
        try:
            await self.resolver.ensure_index()
        except ResolutionError as e:
            logger.debug("Chunk index warm-up skipped: %s", e)

    def capture(
        self,
        method: str,
        args: Sequence[Any],
        stack_text: Optional[str] = None,
        *,
        page_url: Optional[str] = None,
    ) -> Optional[asyncio.Task[Optional[ConsoleMessage]]]:
        """Capture one console call.

        Must be called from the event loop thread. Returns immediately; the
        returned task (None when the call is filtered) resolves to the queued
        message, or None if the location could not be resolved.

        Args:
            method: Console method name (``log``, ``warn``, ...).
            args: Positional arguments of the call.
            stack_text: Stack trace captured at the call site.
            page_url: Page the call happened on; defaults to the app origin.
        """
        if self._closed or not self.context.enabled:
            return None
        if self.connection.state is ConnectionState.SHUTTING_DOWN:
            return None
        if args and isinstance(args[0], str) and SELF_DIAGNOSTIC_TAG in args[0]:
            return None
        message = format_arguments(args)
        fingerprint = generate_fingerprint(method, args)
        return self._spawn(
            self._process(method, message, fingerprint, stack_text, page_url)
        )

    async def _process(
        self,
        method: str,
        message: str,
        fingerprint: str,
        stack_text: Optional[str],
        page_url: Optional[str],
    ) -> Optional[ConsoleMessage]:
        location = await self.locate(stack_text)
        if location.is_unknown:
            logger.debug("Dropping %s call with unresolvable location", method)
            return None
        key = location.key
        console_message = ConsoleMessage(
            method=method,
            message=message,
            location=location,
            locationKey=key,
            fingerprint=fingerprint,
            executionCount=self.connection.execution_count(key),
            framework=self.context.framework,
            context=ConsoleContext(
                projectId=self.context.project_id,
                url=page_url or self.settings.APP_ORIGIN,
                timestamp=int(self._clock()),
            ),
        )
        return self.connection.enqueue(console_message)

    async def locate(self, stack_text: Optional[str]) -> Location:
        """Resolve a stack trace to the best available location."""
        location = self.resolver.resolve_raw(stack_text)
        if not location.url:
            return location
        reference = classify_reference(location.url, self.settings.APP_ORIGIN)
        if reference.kind is ReferenceKind.STATIC_ASSET:
            self.resolver.register_asset(location.url)
        return await self.resolver.resolve_mapped(location)

    async def drain(self) -> None:
        """Wait for in-flight capture tasks, then flush the queue."""
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.connection.flush()

    async def shutdown(self, clear_persisted: bool = True) -> None:
        """Stop capturing, cancel background work and close the connection."""
        if self._closed:
            return
        self._closed = True
        if self._warmup_handle is not None:
            self._warmup_handle.cancel()
            self._warmup_handle = None
        for task in list(self._tasks):
            task.cancel()
        atexit.unregister(self.connection.persist)
        self.connection.shutdown(clear_persisted=clear_persisted)
        await self.connection.wait_closed()
        await self.resolver.close()

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
