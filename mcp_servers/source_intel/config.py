from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_CACHE_SIZE = 50
DEFAULT_CONTEXT_LINES = 3
DEFAULT_NETWORK_WINDOW_MS = 5000

EVICTION_FIFO = "fifo"
EVICTION_LRU = "lru"


def _env_int(name: str, default: int, *, min_v: int, max_v: int) -> int:
    raw = os.environ.get(name)
    try:
        value = int(float(str(raw).strip())) if raw not in (None, "") else int(default)
    except ValueError:
        value = int(default)
    return max(min_v, min(value, max_v))


def _env_float(name: str, default: float, *, min_v: float, max_v: float) -> float:
    raw = os.environ.get(name)
    try:
        value = float(str(raw).strip()) if raw not in (None, "") else float(default)
    except ValueError:
        value = float(default)
    return max(min_v, min(value, max_v))


@dataclass
class SourceIntelConfig:
    cache_size: int = DEFAULT_CACHE_SIZE
    eviction: str = EVICTION_FIFO
    fetch_timeout: float = 10.0
    context_lines: int = DEFAULT_CONTEXT_LINES
    slow_resolution_ms: int = 100
    network_window_ms: int = DEFAULT_NETWORK_WINDOW_MS
    allow_hosts: list[str] = field(default_factory=list)
    http_timeout: float = 10.0
    http_max_bytes: int = 20_000_000
    http_max_redirects: int = 5

    @staticmethod
    def normalize_eviction(raw: str | None) -> str:
        policy = (raw or "").strip().lower()
        if policy in {"lru", "recent", "least-recently-used"}:
            return EVICTION_LRU
        # FIFO is the documented default; unknown values fall back to it.
        return EVICTION_FIFO

    @classmethod
    def from_env(cls) -> SourceIntelConfig:
        allow_raw = os.environ.get("MCP_ALLOW_HOSTS", "")
        allow_hosts = [host.strip().lower() for host in allow_raw.split(",") if host.strip() and host.strip() != "*"]
        return cls(
            cache_size=_env_int("MCP_SOURCEMAP_CACHE_SIZE", DEFAULT_CACHE_SIZE, min_v=1, max_v=10_000),
            eviction=cls.normalize_eviction(os.environ.get("MCP_SOURCEMAP_EVICTION")),
            fetch_timeout=_env_float("MCP_SOURCEMAP_FETCH_TIMEOUT", 10.0, min_v=0.1, max_v=600.0),
            context_lines=_env_int("MCP_SOURCEMAP_CONTEXT_LINES", DEFAULT_CONTEXT_LINES, min_v=0, max_v=50),
            slow_resolution_ms=_env_int("MCP_SOURCEMAP_SLOW_MS", 100, min_v=1, max_v=600_000),
            network_window_ms=_env_int(
                "MCP_ERROR_NETWORK_WINDOW_MS", DEFAULT_NETWORK_WINDOW_MS, min_v=0, max_v=3_600_000
            ),
            allow_hosts=allow_hosts,
            http_timeout=_env_float("MCP_HTTP_TIMEOUT", 10.0, min_v=0.1, max_v=600.0),
            http_max_bytes=_env_int("MCP_HTTP_MAX_BYTES", 20_000_000, min_v=1024, max_v=500_000_000),
            http_max_redirects=_env_int("MCP_HTTP_MAX_REDIRECTS", 5, min_v=0, max_v=20),
        )

    def is_host_allowed(self, host: str) -> bool:
        host = (host or "").strip().lower().rstrip(".")
        if not self.allow_hosts:
            return True
        for raw_allowed in self.allow_hosts:
            allowed = (raw_allowed or "").strip().lower().lstrip(".").rstrip(".")
            if not allowed:
                continue
            if host == allowed:
                return True
            if host.endswith("." + allowed):
                return True
        return False
