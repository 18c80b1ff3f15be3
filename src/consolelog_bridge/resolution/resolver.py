"""Location resolver: raw stack frames -> original source coordinates.

Resolution runs in two stages:

1. `LocationResolver.resolve_raw` (synchronous) parses the captured stack text
   into a raw Location using the frame grammar in ``stack_frames``.
2. `LocationResolver.resolve_mapped` (asynchronous, never raises) classifies
   the frame reference, locates the asset that carries an embedded mapping
   payload, decodes its table and maps the generated position back to the
   original file, line and column.

Key behaviors:
- Chunk index: built by scanning known assets for embedded payloads and
  indexing them by every normalized source path they declare. Each asset is
  scanned at most once per session; assets registered after a scan are picked
  up by the next lookup. Concurrent callers share a single in-flight scan.
- Cache: payload lookups are cached per (fetch URL, target file), including
  misses, so a failing asset is fetched once per session.
- Fail-open: any network, decode or lookup failure returns the input Location
  unchanged.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import httpx
from pydantic import BaseModel, Field, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import Settings
from ..errors import ResolutionError
from ..models.frames import Location
from .paths import normalize_source_path
from .stack_frames import DEFAULT_SKIP_LEADING, ReferenceKind, classify_reference, resolve_raw
from .vlq import MappingTable, decode_mappings

logger = logging.getLogger(__name__)

MAPPED_CONFIDENCE = 0.95

EMBEDDED_PAYLOAD = re.compile(
    r"//# sourceMappingURL=data:application/json;(?:charset=utf-8;)?base64,([A-Za-z0-9+/=]+)"
)
_SCRIPT_ASSET = re.compile(r"\.(jsx?|tsx?)")

__all__ = [
    "MAPPED_CONFIDENCE",
    "SourceMapPayload",
    "ChunkEntry",
    "LocationResolver",
    "extract_payloads",
]


class SourceMapPayload(BaseModel):
    """The subset of an embedded mapping payload the resolver needs."""

    version: int = 3
    sources: List[str] = Field(default_factory=list)
    mappings: str = ""


@dataclass
class ChunkEntry:
    asset_url: str
    payload: SourceMapPayload
    _table: Optional[MappingTable] = field(default=None, init=False, repr=False)

    @property
    def table(self) -> MappingTable:
        if self._table is None:
            self._table = decode_mappings(self.payload.mappings)
        return self._table


def extract_payloads(code: str) -> List[SourceMapPayload]:
    """Return every embedded payload in ``code`` that decodes and validates.

    Payloads that are not valid base64 or JSON are skipped individually.
    """
    payloads: List[SourceMapPayload] = []
    for match in EMBEDDED_PAYLOAD.finditer(code):
        try:
            raw = base64.b64decode(match.group(1))
            payloads.append(SourceMapPayload.model_validate_json(raw))
        except (binascii.Error, ValidationError, ValueError) as e:
            logger.debug("Skipping undecodable embedded payload: %s", e)
    return payloads


def _lookup_chunk(index: Dict[str, List[ChunkEntry]], normalized: str) -> Optional[ChunkEntry]:
    entries = index.get(normalized)
    if entries:
        return entries[0]
    file_name = normalized.rsplit("/", 1)[-1]
    for source, entries in index.items():
        if (source == file_name or source.endswith("/" + file_name)) and entries:
            return entries[0]
    return None


class LocationResolver:
    """Resolves raw frame locations to original source locations.

    One instance is owned by a bridge session; its caches and chunk index live
    as long as that session.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the resolver.

        Args:
            settings: Bridge settings (app origin, known assets, source roots,
                fetch timeout).
            client: Optional HTTP client. When omitted the resolver creates
                and owns one, closed by `close`.
        """
        self._app_origin = settings.APP_ORIGIN
        self._source_roots: List[str] = list(settings.SOURCE_ROOTS)
        self._timeout = settings.FETCH_TIMEOUT
        self._client = client
        self._owns_client = client is None
        self._known_assets: Dict[str, None] = {}
        for url in settings.ASSET_URLS:
            self.register_asset(url)

        self._payload_cache: Dict[Tuple[str, Optional[str]], Optional[ChunkEntry]] = {}
        self._chunk_index: Dict[str, List[ChunkEntry]] = {}
        self._scanned_assets: Set[str] = set()
        self._index_task: Optional[asyncio.Task[Dict[str, List[ChunkEntry]]]] = None

    # ------------------------------------------------------------------ #
    # Asset discovery
    # ------------------------------------------------------------------ #

    def register_asset(self, url: str) -> None:
        """Record an asset URL the running application loaded."""
        if not url or "node_modules" in url or not _SCRIPT_ASSET.search(url):
            return
        self._known_assets.setdefault(url, None)

    @property
    def known_assets(self) -> List[str]:
        return list(self._known_assets)

    @property
    def index_built(self) -> bool:
        return self._index_task is not None and self._index_task.done()

    # ------------------------------------------------------------------ #
    # Stage 1
    # ------------------------------------------------------------------ #

    def resolve_raw(self, stack_text: Optional[str], skip_leading: int = DEFAULT_SKIP_LEADING) -> Location:
        return resolve_raw(stack_text, skip_leading=skip_leading)

    # ------------------------------------------------------------------ #
    # Stage 2
    # ------------------------------------------------------------------ #

    async def resolve_mapped(self, location: Location) -> Location:
        """Map ``location`` through its asset's mapping table.

        Never raises for resolution failures; returns ``location`` unchanged
        when the reference is external, no payload is found, no record covers
        the position, or the mapped source is unresolvable.
        """
        if location.sourceMapped or not location.url:
            return location
        try:
            resolved = await self._resolve(location, location.url)
        except ResolutionError as e:
            logger.debug("Resolution failed for %s: %s", location.url, e)
            return location
        except Exception as e:  # pragma: no cover - fail open on unexpected errors
            logger.debug("Unexpected resolution error for %s: %s", location.url, e, exc_info=True)
            return location
        return resolved or location

    async def _resolve(self, location: Location, url: str) -> Optional[Location]:
        reference = classify_reference(url, self._app_origin)
        if reference.kind is ReferenceKind.EXTERNAL:
            return None

        entry: Optional[ChunkEntry] = None
        if reference.kind is ReferenceKind.VIRTUAL_MODULE:
            if not reference.target_file:
                return None
            entry = await self.find_chunk_for_source(reference.target_file)
            if entry is None:
                return None
            key = (entry.asset_url, reference.target_file)
            self._payload_cache.setdefault(key, entry)
            entry = self._payload_cache[key]
        elif reference.fetch_url:
            entry = await self._load_payload(reference.fetch_url, reference.target_file)
        if entry is None:
            return None

        record = entry.table.lookup(location.line, location.column)
        if record is None or record.originalLine is None or record.sourceIndex is None:
            return None
        sources = entry.payload.sources
        if not 0 <= record.sourceIndex < len(sources):
            raise ResolutionError(
                f"source index {record.sourceIndex} out of range ({len(sources)} sources)"
            )
        file = normalize_source_path(sources[record.sourceIndex], self._source_roots)
        if not file:
            return None
        return Location(
            file=file,
            line=record.originalLine,
            column=record.originalColumn or 0,
            confidence=MAPPED_CONFIDENCE,
            sourceMapped=True,
            url=url,
            context=location.context,
        )

    # ------------------------------------------------------------------ #
    # Payload retrieval
    # ------------------------------------------------------------------ #

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
            self._owns_client = True
        return self._client

    @retry(
        reraise=True,
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=0.5),
        retry=retry_if_exception_type(httpx.TransportError),
    )
    async def _fetch_text(self, url: str) -> Optional[str]:
        """GET ``url``; None for non-2xx. Transport errors are retried once."""
        response = await self._get_client().get(url)
        if not response.is_success:
            logger.debug("Asset fetch %s returned HTTP %s", url, response.status_code)
            return None
        return response.text

    async def _fetch_or_raise(self, url: str) -> Optional[str]:
        try:
            return await self._fetch_text(url)
        except httpx.HTTPError as e:
            raise ResolutionError(f"fetch failed for {url}: {e}") from e

    async def _load_payload(self, fetch_url: str, target_file: Optional[str]) -> Optional[ChunkEntry]:
        """Fetch ``fetch_url`` and take its first embedded payload, cached per key.

        Misses (no payload, non-2xx, transport failure) are cached as None.
        """
        key = (fetch_url, target_file)
        if key in self._payload_cache:
            return self._payload_cache[key]
        try:
            code = await self._fetch_or_raise(fetch_url)
        except ResolutionError:
            self._payload_cache[key] = None
            raise
        entry: Optional[ChunkEntry] = None
        if code is not None:
            payloads = extract_payloads(code)
            if payloads:
                entry = ChunkEntry(fetch_url, payloads[0])
        self._payload_cache[key] = entry
        return entry

    # ------------------------------------------------------------------ #
    # Chunk index
    # ------------------------------------------------------------------ #

    def _unscanned_assets(self) -> List[str]:
        return [url for url in self._known_assets if url not in self._scanned_assets]

    async def ensure_index(self) -> Dict[str, List[ChunkEntry]]:
        """Scan known assets not yet indexed and return the chunk index.

        Concurrent callers share the same in-flight scan. A scan discarded by
        `clear_cache` surfaces as `ResolutionError`.

        Raises:
            ResolutionError: If the scan this call waited on was discarded.
        """
        task = self._index_task
        if task is None or (task.done() and self._unscanned_assets()):
            task = asyncio.ensure_future(self._scan_assets(self._unscanned_assets()))
            self._index_task = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Only a cancelled scan is discarded; a cancelled caller re-raises.
            if task.cancelled():
                raise ResolutionError("chunk index scan was discarded") from None
            raise

    async def _scan_assets(self, assets: List[str]) -> Dict[str, List[ChunkEntry]]:
        index = self._chunk_index
        self._scanned_assets.update(assets)
        for asset_url in assets:
            try:
                code = await self._fetch_or_raise(asset_url)
            except ResolutionError as e:
                logger.debug("Chunk index: %s", e)
                continue
            if code is None:
                continue
            for payload in extract_payloads(code):
                entry = ChunkEntry(asset_url, payload)
                for source in payload.sources:
                    normalized = normalize_source_path(source, self._source_roots)
                    if normalized:
                        index.setdefault(normalized, []).append(entry)
        logger.debug("Chunk index scanned: assets=%d sources=%d", len(assets), len(index))
        return index

    async def find_chunk_for_source(self, target_file: str) -> Optional[ChunkEntry]:
        """Find the asset entry declaring ``target_file``.

        Exact normalized path first, then any indexed source ending with the
        same file name. A miss while registered assets are still unscanned
        scans them and looks again.
        """
        normalized = normalize_source_path(target_file, self._source_roots)
        if not normalized:
            return None
        entry = _lookup_chunk(await self.ensure_index(), normalized)
        if entry is None and self._unscanned_assets():
            entry = _lookup_chunk(await self.ensure_index(), normalized)
        return entry

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def clear_cache(self) -> None:
        """Forget cached payloads and the chunk index (next lookup rebuilds it).

        Lookups waiting on an in-flight scan fail open with the input location.
        """
        if self._index_task is not None and not self._index_task.done():
            self._index_task.cancel()
        self._payload_cache.clear()
        self._chunk_index = {}
        self._scanned_assets = set()
        self._index_task = None

    async def close(self) -> None:
        """Cancel an in-flight index build and close an owned HTTP client."""
        if self._index_task is not None and not self._index_task.done():
            self._index_task.cancel()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
