from __future__ import annotations

import asyncio
import base64
import json
from typing import Any, Dict, List

import httpx
import pytest

from consolelog_bridge.bridge import ConsoleBridge
from consolelog_bridge.config import Settings
from consolelog_bridge.models.frames import ConnectionState
from consolelog_bridge.persistence import SessionStore

pytestmark = pytest.mark.asyncio

PAGE_URL = "http://localhost:3000/_next/static/chunks/app/page.js"
PAYLOAD = {
    "version": 3,
    "sources": ["webpack://_N_E/./src/app/page.tsx"],
    "mappings": "AAAA;AACA,UAAK",
}
STACK = f"Error\n    at shim (x)\n    at handleClick ({PAGE_URL}:2:12)"


class _Socket:
    def __init__(self) -> None:
        self.sent: List[str] = []
        self.closed = False
        self._inbound: asyncio.Queue = asyncio.Queue()

    async def send(self, text: str) -> None:
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True
        self._inbound.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbound.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def frames(self) -> List[Dict[str, Any]]:
        return [json.loads(s) for s in self.sent]


def _asset_handler(request: httpx.Request) -> httpx.Response:
    if str(request.url) != PAGE_URL:
        return httpx.Response(404)
    b64 = base64.b64encode(json.dumps(PAYLOAD).encode()).decode()
    body = f"render();\n//# sourceMappingURL=data:application/json;base64,{b64}\n"
    return httpx.Response(200, text=body)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        CONSOLELOG_PROJECT_ID="demo",
        CONSOLELOG_FRAMEWORK="nextjs",
        QUEUE_FILE=str(tmp_path / "queue.json"),
    )


def _bridge(settings: Settings, socket: _Socket) -> ConsoleBridge:
    async def connector(url: str) -> _Socket:
        return socket

    return ConsoleBridge(
        settings,
        connector=connector,
        store=SessionStore(settings.QUEUE_FILE),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_asset_handler)),
    )


async def _drain(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def test_capture_resolves_and_delivers(settings):
    socket = _Socket()
    bridge = _bridge(settings, socket)
    await bridge.start()

    msg = await bridge.capture("log", ["total", 3], STACK)
    assert msg is not None
    assert msg.id == 1
    assert msg.message == "total 3"
    assert msg.fingerprint == "log:total,{number}"
    assert msg.location.file == "src/app/page.tsx"
    assert msg.locationKey == "src/app/page.tsx:2:5"
    assert msg.executionCount == 1
    assert msg.framework == "nextjs"
    assert msg.context.projectId == "demo"
    assert msg.context.url == "http://localhost:3000"
    assert PAGE_URL in bridge.resolver.known_assets

    await bridge.drain()
    await _drain()
    frame = socket.frames()[-1]
    assert frame["type"] == "console"
    assert frame["location"]["sourceMapped"] is True
    await bridge.shutdown()
    assert socket.closed


async def test_execution_count_grows_per_location(settings):
    socket = _Socket()
    bridge = _bridge(settings, socket)
    await bridge.start()
    first = await bridge.capture("log", ["a"], STACK)
    second = await bridge.capture("log", ["b"], STACK, page_url="http://localhost:3000/cart")
    assert (first.executionCount, second.executionCount) == (1, 2)
    assert second.context.url == "http://localhost:3000/cart"
    await bridge.shutdown()


async def test_unresolvable_calls_are_dropped(settings):
    socket = _Socket()
    bridge = _bridge(settings, socket)
    await bridge.start()
    assert await bridge.capture("log", ["lost"], "Error\nno frames here\nnone") is None
    await bridge.drain()
    await _drain()
    assert [f["type"] for f in socket.frames()] == ["identify"]
    assert bridge.connection.pending == {}
    await bridge.shutdown()


async def test_capture_filters(settings):
    socket = _Socket()
    bridge = _bridge(settings, socket)
    await bridge.start()
    assert bridge.capture("log", ["[ConsoleLog.nvim] connected"], STACK) is None
    bridge.context.enabled = False
    assert bridge.capture("log", ["x"], STACK) is None
    bridge.context.enabled = True
    await bridge.shutdown()
    assert bridge.capture("log", ["x"], STACK) is None


async def test_collector_disable_command_stops_capture(settings):
    socket = _Socket()
    bridge = _bridge(settings, socket)
    await bridge.start()
    socket._inbound.put_nowait(json.dumps({"type": "command", "command": "disable"}))
    await _drain()
    assert bridge.capture("log", ["x"], STACK) is None
    await bridge.shutdown()


async def test_start_registers_persist_hook(settings, monkeypatch):
    registered = []
    monkeypatch.setattr("atexit.register", lambda fn: registered.append(fn))
    monkeypatch.setattr("atexit.unregister", lambda fn: registered.remove(fn))
    socket = _Socket()
    bridge = _bridge(settings, socket)
    await bridge.start()
    assert registered == [bridge.connection.persist]
    await bridge.shutdown()
    assert registered == []


async def test_async_context_manager(settings):
    socket = _Socket()
    async with _bridge(settings, socket) as bridge:
        assert bridge.connection.state is ConnectionState.OPEN
    assert bridge.connection.state is ConnectionState.SHUTTING_DOWN
    assert socket.closed


async def test_index_warmup_after_start(tmp_path):
    settings = Settings(
        ASSET_URLS=[PAGE_URL],
        INDEX_WARMUP_DELAY_MS=1,
        QUEUE_FILE=str(tmp_path / "queue.json"),
    )
    socket = _Socket()
    bridge = _bridge(settings, socket)
    await bridge.start()
    await asyncio.sleep(0.05)
    assert bridge.resolver.index_built
    await bridge.shutdown()


async def test_virtual_frame_resolves_through_asset_seen_after_warmup(tmp_path):
    settings = Settings(INDEX_WARMUP_DELAY_MS=1, QUEUE_FILE=str(tmp_path / "queue.json"))
    socket = _Socket()
    bridge = _bridge(settings, socket)
    await bridge.start()
    await asyncio.sleep(0.05)
    assert bridge.resolver.index_built
    assert bridge.resolver.known_assets == []

    # a generic frame makes the page chunk known
    first = await bridge.capture("log", ["first"], STACK)
    assert first is not None and first.location.sourceMapped
    assert bridge.resolver.known_assets == [PAGE_URL]

    virtual_stack = (
        "Error\n    at shim (x)\n"
        "    at Page (webpack-internal:///(app-pages-browser)/./src/app/page.tsx:2:10)"
    )
    second = await bridge.capture("log", ["second"], virtual_stack)
    assert second is not None
    assert second.location.sourceMapped
    assert second.location.file == "src/app/page.tsx"
    assert second.locationKey == "src/app/page.tsx:2:5"
    await bridge.shutdown()
