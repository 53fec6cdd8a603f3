"""Source map acquisition and caching.

Design goals:
- One explicit cache object per store (no module-level state); cleared on close.
- Bounded: FIFO eviction by insertion order by default. LRU is an opt-in policy
  (`eviction="lru"`); FIFO does not reorder on access.
- Coalesced: concurrent lookups for the same uncached URL share one in-flight
  load, and every waiter gets the same outcome (map or failure). The load is
  cancelled once its last waiter gives up, so no fetch starts after the
  caller's deadline.
- Never raises for fetch/parse problems: those come back as `ResolutionFailure`.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import logging
import re
from collections import OrderedDict
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote_to_bytes, urljoin, urlsplit

from .config import EVICTION_LRU, SourceIntelConfig
from .errors import FailureKind, ResolutionFailure, SourceMapParseError, fetch_failure, parse_failure, require_url
from .fetcher import FetcherLike, FetchResult, call_fetcher
from .redaction import redact_url_brief
from .sourcemap import SourceMap, parse_source_map

_LOGGER = logging.getLogger("mcp.source_intel.store")

_DIRECTIVE_RE = re.compile(r"^\s*(?://|/\*)\s*[#@]\s*sourceMappingURL\s*=\s*(\S+?)\s*(?:\*/)?\s*$")
_TAIL_BYTES = 4096
_MAP_HEADERS = ("sourcemap", "x-sourcemap")


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: SourceMap
    insertion_order: int


class MapCache:
    """Bounded map cache keyed by generated-file URL."""

    def __init__(self, capacity: int, *, policy: str = "fifo") -> None:
        self.capacity = max(1, int(capacity))
        self.policy = policy
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._counter = itertools.count()
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    def values(self) -> Iterator[SourceMap]:
        return (entry.value for entry in list(self._entries.values()))

    def get(self, key: str) -> SourceMap | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.policy == EVICTION_LRU:
            self._entries.move_to_end(key)
        return entry.value

    def put(self, key: str, value: SourceMap) -> str | None:
        """Insert `value`; returns the evicted key, if any."""
        if key in self._entries:
            # Replacing a map counts as a fresh insertion.
            del self._entries[key]
        evicted: str | None = None
        if len(self._entries) >= self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
        self._entries[key] = CacheEntry(key=key, value=value, insertion_order=next(self._counter))
        return evicted

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()


def extract_source_mapping_url(text: str) -> str | None:
    """Find the trailing `sourceMappingURL` directive, scanning from the end backward.

    The tail is checked first; the full file is scanned only when the tail has none.
    """
    if not text:
        return None
    tail = text[-_TAIL_BYTES:]
    chunks = [tail] if len(text) <= _TAIL_BYTES else [tail, text]
    for chunk in chunks:
        for line in reversed(chunk.splitlines()):
            m = _DIRECTIVE_RE.match(line)
            if m:
                return m.group(1)
    return None


def resolve_map_reference(generated_url: str, reference: str) -> str:
    ref = (reference or "").strip()
    if ref.startswith("data:"):
        return ref
    return urljoin(generated_url, ref)


def conventional_map_url(generated_url: str) -> str:
    parts = urlsplit(generated_url)
    base = generated_url.split("#", 1)[0]
    if parts.query:
        base = base.split("?", 1)[0]
    return base + ".map"


def decode_data_url(url: str) -> bytes:
    header, sep, payload = url.partition(",")
    if not sep or not header.startswith("data:"):
        raise ValueError("malformed data URL")
    if header.endswith(";base64"):
        return base64.b64decode(payload + "=" * (-len(payload) % 4))
    return unquote_to_bytes(payload)


class SourceMapStore:
    def __init__(
        self,
        fetcher: FetcherLike,
        config: SourceIntelConfig | None = None,
        *,
        cache: MapCache | None = None,
    ) -> None:
        self.config = config or SourceIntelConfig()
        self.fetcher = fetcher
        self.cache = cache if cache is not None else MapCache(self.config.cache_size, policy=self.config.eviction)
        self._inflight: dict[str, asyncio.Future[SourceMap | ResolutionFailure]] = {}
        self._waiters: dict[str, int] = {}
        self._map_urls: dict[str, str] = {}
        self.hits = 0
        self.misses = 0
        self.fetches = 0
        self.coalesced = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    def register_map_url(self, generated_url: str, map_url: str) -> None:
        """Remember a map location learned elsewhere (e.g. a `SourceMap` response header)."""
        generated_url = require_url(generated_url, tool="sourcemap", action="register")
        self._map_urls[generated_url] = resolve_map_reference(generated_url, map_url)

    async def get_map(self, generated_url: str, *, timeout: float | None = None) -> SourceMap | ResolutionFailure:
        generated_url = require_url(generated_url, tool="sourcemap", action="get_map")

        cached = self.cache.get(generated_url)
        if cached is not None:
            self.hits += 1
            _LOGGER.debug("cache_hit url=%s", redact_url_brief(generated_url))
            return cached

        task = self._inflight.get(generated_url)
        if task is None or task.done():
            self.misses += 1
            task = asyncio.ensure_future(self._load(generated_url))
            self._inflight[generated_url] = task
            task.add_done_callback(lambda t, key=generated_url: self._forget_inflight(key, t))
        else:
            self.coalesced += 1

        self._waiters[generated_url] = self._waiters.get(generated_url, 0) + 1
        try:
            if timeout is not None:
                return await asyncio.wait_for(asyncio.shield(task), timeout=max(0.0, float(timeout)))
            return await asyncio.shield(task)
        except asyncio.TimeoutError:
            _LOGGER.warning("deadline_exceeded url=%s", redact_url_brief(generated_url))
            return fetch_failure(f"deadline of {timeout}s exceeded", url=generated_url)
        finally:
            self._release_waiter(generated_url, task)

    def peek(self, generated_url: str) -> SourceMap | None:
        return self.cache.get(generated_url)

    def invalidate(self, generated_url: str) -> bool:
        return self.cache.invalidate(generated_url)

    def clear(self) -> None:
        self.cache.clear()
        self._map_urls.clear()

    def source_content(self, file: str) -> str | None:
        for source_map in self.cache.values():
            content = source_map.content_for(file)
            if content is not None:
                return content
        return None

    def source_files(self) -> list[str]:
        files: dict[str, None] = {}
        for source_map in self.cache.values():
            for idx in sorted(source_map.sources_content):
                files.setdefault(source_map.sources[idx], None)
        return list(files)

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self.cache),
            "capacity": self.cache.capacity,
            "policy": self.cache.policy,
            "hits": self.hits,
            "misses": self.misses,
            "fetches": self.fetches,
            "coalesced": self.coalesced,
            "evictions": self.cache.evictions,
            "inflight": len(self._inflight),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Loading
    # ─────────────────────────────────────────────────────────────────────────

    def _forget_inflight(self, key: str, task: asyncio.Future[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def _release_waiter(self, key: str, task: asyncio.Future[Any]) -> None:
        left = self._waiters.get(key, 0) - 1
        if left > 0:
            self._waiters[key] = left
            return
        self._waiters.pop(key, None)
        if not task.done():
            # Last waiter left before the load finished.
            _LOGGER.info("load_cancelled url=%s", redact_url_brief(key))
            task.cancel()

    async def _fetch(self, url: str) -> FetchResult:
        if url.startswith("data:"):
            try:
                return FetchResult.success(decode_data_url(url))
            except ValueError as exc:
                return FetchResult.failure(f"invalid data URL: {exc}")
        self.fetches += 1
        return await call_fetcher(self.fetcher, url, timeout=self.config.fetch_timeout)

    def _parse(self, body: bytes, generated_url: str, map_url: str) -> SourceMap | ResolutionFailure:
        try:
            return parse_source_map(body, generated_url, map_url=map_url)
        except SourceMapParseError as exc:
            _LOGGER.warning("map_parse_error url=%s error=%s", redact_url_brief(map_url), exc)
            return parse_failure(str(exc), url=map_url)

    def _store(self, generated_url: str, source_map: SourceMap) -> SourceMap:
        evicted = self.cache.put(generated_url, source_map)
        if evicted is not None:
            _LOGGER.info("cache_evict url=%s policy=%s", redact_url_brief(evicted), self.cache.policy)
        _LOGGER.info(
            "map_loaded url=%s sources=%d segments=%d",
            redact_url_brief(generated_url),
            len(source_map.sources),
            len(source_map.mappings),
        )
        return source_map

    async def _load_from(self, generated_url: str, map_url: str) -> SourceMap | ResolutionFailure:
        res = await self._fetch(map_url)
        if not res.ok:
            return fetch_failure(res.reason or "map fetch failed", url=map_url)
        return self._parse(res.body, generated_url, map_url)

    async def _load(self, generated_url: str) -> SourceMap | ResolutionFailure:
        registered = self._map_urls.get(generated_url)
        if registered:
            outcome = await self._load_from(generated_url, registered)
            if isinstance(outcome, SourceMap):
                return self._store(generated_url, outcome)
            return outcome

        # Convention first: `<bundle>.js.map` next to the bundle.
        convention_url = conventional_map_url(generated_url)
        outcome = await self._load_from(generated_url, convention_url)
        if isinstance(outcome, SourceMap):
            return self._store(generated_url, outcome)
        convention_failure = outcome

        script = await self._fetch(generated_url)
        if not script.ok:
            return fetch_failure(script.reason or "script fetch failed", url=generated_url)

        reference = None
        headers = {str(k).lower(): str(v) for k, v in (script.headers or {}).items()}
        for header in _MAP_HEADERS:
            value = headers.get(header)
            if value:
                reference = value
                break
        if reference is None:
            reference = extract_source_mapping_url(script.text())
        if reference is None:
            # No directive: a malformed conventional map is the real problem.
            if convention_failure.kind == FailureKind.PARSE:
                return convention_failure
            return fetch_failure("no source map reference found", url=generated_url)

        # References are relative to where the script was finally served from.
        map_url = resolve_map_reference(script.url or generated_url, reference)
        if map_url == convention_url:
            return convention_failure
        outcome = await self._load_from(generated_url, map_url)
        if isinstance(outcome, SourceMap):
            return self._store(generated_url, outcome)
        return outcome
