from __future__ import annotations

import asyncio
import base64
import json
from collections import Counter
from typing import Dict, List, Optional

import httpx
import pytest

from consolelog_bridge.config import Settings
from consolelog_bridge.models.frames import Location
from consolelog_bridge.resolution.resolver import LocationResolver, extract_payloads

pytestmark = pytest.mark.asyncio

PAGE_URL = "http://localhost:3000/_next/static/chunks/app/page.js"
MAIN_URL = "http://localhost:3000/_next/static/chunks/main.js"
VIRTUAL_URL = "webpack-internal:///(app-pages-browser)/./src/app/page.tsx"


def _asset(*payloads: Dict) -> str:
    lines = ["(function(){console.log('bundle')})();"]
    for payload in payloads:
        b64 = base64.b64encode(json.dumps(payload).encode()).decode()
        lines.append(f"//# sourceMappingURL=data:application/json;charset=utf-8;base64,{b64}")
    return "\n".join(lines) + "\n"


PAGE_PAYLOAD = {
    "version": 3,
    "sources": ["webpack://_N_E/./src/app/page.tsx"],
    "mappings": "AAAA;AACA,UAAK",
}


class _Server:
    def __init__(self, routes: Dict[str, str], fail: Optional[List[str]] = None):
        self.routes = routes
        self.fail = set(fail or [])
        self.hits: Counter = Counter()

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.hits[url] += 1
        if url in self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        if url not in self.routes:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, text=self.routes[url])

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def _resolver(server: _Server, **overrides) -> LocationResolver:
    return LocationResolver(Settings(**overrides), client=server.client())


def _generic(line: int, column: int, url: str = PAGE_URL) -> Location:
    return Location(file="page.js", line=line, column=column, confidence=0.8, url=url)


def _virtual(line: int, column: int, url: str = VIRTUAL_URL) -> Location:
    return Location(
        file=url.split("/./", 1)[1],
        line=line,
        column=column,
        confidence=0.9,
        url=url,
        context="app-pages-browser",
    )


async def test_static_asset_is_mapped_to_original_source():
    server = _Server({PAGE_URL: _asset(PAGE_PAYLOAD)})
    resolver = _resolver(server)
    result = await resolver.resolve_mapped(_generic(2, 12))
    assert result.file == "src/app/page.tsx"
    assert (result.line, result.column) == (2, 5)
    assert result.confidence == 0.95
    assert result.sourceMapped
    assert result.url == PAGE_URL
    await resolver.close()


async def test_payload_lookups_are_cached():
    server = _Server({PAGE_URL: _asset(PAGE_PAYLOAD)})
    resolver = _resolver(server)
    first = await resolver.resolve_mapped(_generic(2, 12))
    second = await resolver.resolve_mapped(_generic(2, 3))
    assert first.column == 5
    assert second.column == 0
    assert server.hits[PAGE_URL] == 1

    resolver.clear_cache()
    await resolver.resolve_mapped(_generic(2, 12))
    assert server.hits[PAGE_URL] == 2
    await resolver.close()


async def test_missing_asset_returns_input_unchanged_and_caches_miss():
    server = _Server({})
    resolver = _resolver(server)
    loc = _generic(2, 12)
    assert await resolver.resolve_mapped(loc) == loc
    assert await resolver.resolve_mapped(loc) == loc
    assert server.hits[PAGE_URL] == 1
    await resolver.close()


async def test_transport_errors_are_retried_once_then_fail_open():
    server = _Server({}, fail=[PAGE_URL])
    resolver = _resolver(server)
    loc = _generic(2, 12)
    assert await resolver.resolve_mapped(loc) == loc
    assert server.hits[PAGE_URL] == 2
    assert await resolver.resolve_mapped(loc) == loc
    assert server.hits[PAGE_URL] == 2
    await resolver.close()


async def test_external_and_unmapped_locations_pass_through():
    server = _Server({PAGE_URL: _asset(PAGE_PAYLOAD)})
    resolver = _resolver(server)
    external = _generic(1, 1, url="https://cdn.example.com/lib/analytics.js")
    assert await resolver.resolve_mapped(external) == external
    no_url = Location(file="page.js", line=1, column=0, confidence=0.8)
    assert await resolver.resolve_mapped(no_url) == no_url
    # no record on generated line 7
    beyond = _generic(7, 0)
    assert await resolver.resolve_mapped(beyond) == beyond
    assert server.hits.get("https://cdn.example.com/lib/analytics.js", 0) == 0
    await resolver.close()


async def test_unresolvable_sources_pass_through():
    out_of_range = {"version": 3, "sources": [], "mappings": "AAAA"}
    dependency = {"version": 3, "sources": ["webpack://_N_E/./node_modules/x/index.js"], "mappings": "AAAA"}
    other_url = "http://localhost:3000/_next/static/chunks/vendor.js"
    server = _Server({PAGE_URL: _asset(out_of_range), other_url: _asset(dependency)})
    resolver = _resolver(server)
    loc = _generic(1, 4)
    assert await resolver.resolve_mapped(loc) == loc
    vendor = _generic(1, 4, url=other_url)
    assert await resolver.resolve_mapped(vendor) == vendor
    await resolver.close()


async def test_virtual_module_resolves_through_chunk_index():
    server = _Server({MAIN_URL: _asset(), PAGE_URL: _asset(PAGE_PAYLOAD)})
    resolver = _resolver(server, ASSET_URLS=[MAIN_URL, PAGE_URL])
    result = await resolver.resolve_mapped(_virtual(2, 10))
    assert result.file == "src/app/page.tsx"
    assert (result.line, result.column) == (2, 5)
    assert result.sourceMapped
    assert result.context == "app-pages-browser"
    assert resolver.index_built
    await resolver.close()


async def test_chunk_index_build_is_shared_by_concurrent_callers():
    server = _Server({MAIN_URL: _asset(), PAGE_URL: _asset(PAGE_PAYLOAD)})
    resolver = _resolver(server, ASSET_URLS=[MAIN_URL, PAGE_URL])
    results = await asyncio.gather(*(resolver.resolve_mapped(_virtual(2, c)) for c in (0, 10, 20)))
    assert [r.column for r in results] == [0, 5, 5]
    assert server.hits[MAIN_URL] == 1
    assert server.hits[PAGE_URL] == 1
    await resolver.close()


class _GatedServer(_Server):
    """Holds every response until ``gate`` is set."""

    def __init__(self, routes: Dict[str, str]):
        super().__init__(routes)
        self.gate = asyncio.Event()

    async def handler(self, request: httpx.Request) -> httpx.Response:  # type: ignore[override]
        await self.gate.wait()
        return super().handler(request)


async def test_clearing_cache_during_index_scan_fails_open():
    server = _GatedServer({PAGE_URL: _asset(PAGE_PAYLOAD)})
    resolver = _resolver(server, ASSET_URLS=[PAGE_URL])
    loc = _virtual(2, 10)
    lookup = asyncio.ensure_future(resolver.resolve_mapped(loc))
    await asyncio.sleep(0.01)
    resolver.clear_cache()
    assert await lookup == loc

    server.gate.set()
    result = await resolver.resolve_mapped(loc)
    assert result.sourceMapped
    assert (result.line, result.column) == (2, 5)
    await resolver.close()


async def test_cancelled_lookup_leaves_shared_scan_running():
    server = _GatedServer({PAGE_URL: _asset(PAGE_PAYLOAD)})
    resolver = _resolver(server, ASSET_URLS=[PAGE_URL])
    first = asyncio.ensure_future(resolver.resolve_mapped(_virtual(2, 10)))
    second = asyncio.ensure_future(resolver.resolve_mapped(_virtual(2, 10)))
    await asyncio.sleep(0.01)
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first

    server.gate.set()
    result = await second
    assert result.sourceMapped
    assert server.hits[PAGE_URL] == 1
    await resolver.close()


async def test_asset_registered_after_index_scan_is_indexed():
    server = _Server({PAGE_URL: _asset(PAGE_PAYLOAD)})
    resolver = _resolver(server)
    assert await resolver.ensure_index() == {}

    resolver.register_asset(PAGE_URL)
    result = await resolver.resolve_mapped(_virtual(2, 10))
    assert result.sourceMapped
    assert (result.file, result.line, result.column) == ("src/app/page.tsx", 2, 5)
    # already scanned assets are not fetched again
    await resolver.resolve_mapped(_virtual(2, 0))
    assert server.hits[PAGE_URL] == 1
    await resolver.close()


async def test_chunk_index_falls_back_to_file_name_match():
    payload = {"version": 3, "sources": ["webpack://_N_E/./components/Button.tsx"], "mappings": "AAAA"}
    server = _Server({PAGE_URL: _asset(payload)})
    resolver = _resolver(server, ASSET_URLS=[PAGE_URL])
    url = "webpack-internal:///(app-pages-browser)/./src/components/Button.tsx"
    result = await resolver.resolve_mapped(_virtual(1, 3, url=url))
    assert result.file == "components/Button.tsx"
    assert result.sourceMapped
    await resolver.close()


async def test_virtual_module_without_indexed_chunk_passes_through():
    server = _Server({MAIN_URL: _asset()})
    resolver = _resolver(server, ASSET_URLS=[MAIN_URL])
    loc = _virtual(2, 10)
    assert await resolver.resolve_mapped(loc) == loc
    await resolver.close()


async def test_register_asset_filters_urls():
    resolver = LocationResolver(Settings(ASSET_URLS=[]))
    resolver.register_asset(PAGE_URL)
    resolver.register_asset(PAGE_URL)
    resolver.register_asset("http://localhost:3000/_next/static/css/app.css")
    resolver.register_asset("http://localhost:3000/node_modules/react/index.js")
    resolver.register_asset("")
    assert resolver.known_assets == [PAGE_URL]
    await resolver.close()


async def test_resolve_raw_delegates_to_frame_parser():
    resolver = LocationResolver(Settings())
    stack = f"Error\n    at shim (x)\n    at Page ({PAGE_URL}:3:7)"
    loc = resolver.resolve_raw(stack)
    assert (loc.file, loc.line, loc.column) == ("page.js", 3, 7)
    await resolver.close()


async def test_extract_payloads_skips_undecodable_entries():
    code = _asset(PAGE_PAYLOAD, {"version": 3, "sources": ["src/b.ts"], "mappings": ""})
    code += "//# sourceMappingURL=data:application/json;base64,bm90IGpzb24=\n"
    payloads = extract_payloads(code)
    assert [p.sources for p in payloads] == [PAGE_PAYLOAD["sources"], ["src/b.ts"]]
