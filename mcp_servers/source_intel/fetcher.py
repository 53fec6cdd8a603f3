"""Artifact fetcher capability.

The engine performs no network I/O of its own. Callers inject anything that
can turn a URL into bytes:

- an object with a `fetch(url)` method, or a plain callable `fetch(url)`;
- sync or async (coroutines are awaited, sync callables run in a worker thread
  so the event loop keeps serving other lookups);
- returning a `FetchResult`, a dict `{"ok": ..., "body": ..., "reason": ...}`,
  raw `bytes`/`str` (treated as success), or `None` (treated as not found).

Exceptions raised by the fetcher are converted into failed results.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, Union

from .redaction import redact_url_brief

_LOGGER = logging.getLogger("mcp.source_intel.fetcher")


@dataclass(frozen=True)
class FetchResult:
    ok: bool
    body: bytes = b""
    reason: str | None = None
    headers: dict[str, str] | None = None
    # Final URL after redirects, when the fetcher knows it.
    url: str | None = None

    @classmethod
    def success(
        cls,
        body: bytes | str,
        headers: dict[str, str] | None = None,
        *,
        url: str | None = None,
    ) -> FetchResult:
        raw = body.encode("utf-8") if isinstance(body, str) else bytes(body)
        return cls(ok=True, body=raw, headers=headers, url=url)

    @classmethod
    def failure(cls, reason: str) -> FetchResult:
        return cls(ok=False, reason=str(reason or "fetch failed"))

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class Fetcher(Protocol):
    def fetch(self, url: str) -> Any: ...


FetcherLike = Union[Fetcher, Callable[[str], Any], Callable[[str], Awaitable[Any]]]


def normalize_result(raw: Any) -> FetchResult:
    if isinstance(raw, FetchResult):
        return raw
    if raw is None:
        return FetchResult.failure("not found")
    if isinstance(raw, (bytes, bytearray, memoryview, str)):
        return FetchResult.success(bytes(raw) if not isinstance(raw, str) else raw)
    if isinstance(raw, dict):
        if raw.get("ok"):
            body = raw.get("body")
            if body is None:
                body = b""
            if not isinstance(body, (bytes, bytearray, str)):
                return FetchResult.failure(f"unsupported body type: {type(body).__name__}")
            headers = raw.get("headers") if isinstance(raw.get("headers"), dict) else None
            final_url = raw.get("url") if isinstance(raw.get("url"), str) else None
            return FetchResult.success(
                bytes(body) if not isinstance(body, str) else body, headers=headers, url=final_url
            )
        return FetchResult.failure(str(raw.get("reason") or raw.get("error") or "fetch failed"))
    return FetchResult.failure(f"unsupported fetch result: {type(raw).__name__}")


def _resolve_callable(fetcher: FetcherLike) -> Callable[[str], Any]:
    method = getattr(fetcher, "fetch", None)
    if callable(method):
        return method
    if callable(fetcher):
        return fetcher
    raise TypeError("fetcher must be callable or expose fetch(url)")


async def call_fetcher(fetcher: FetcherLike, url: str, *, timeout: float | None = None) -> FetchResult:
    """Fetch `url` through any supported fetcher shape, never raising for fetch problems.

    Cancellation of the calling task still propagates.
    """
    fn = _resolve_callable(fetcher)

    async def _invoke() -> Any:
        if inspect.iscoroutinefunction(fn):
            return await fn(url)
        out = await asyncio.to_thread(fn, url)
        if inspect.isawaitable(out):
            return await out
        return out

    try:
        if timeout is not None:
            raw = await asyncio.wait_for(_invoke(), timeout=max(0.0, float(timeout)))
        else:
            raw = await _invoke()
    except asyncio.TimeoutError:
        _LOGGER.warning("fetch_timeout url=%s timeout=%.2fs", redact_url_brief(url), timeout or 0.0)
        return FetchResult.failure(f"timeout after {timeout:.2f}s")
    except Exception as exc:  # noqa: BLE001
        _LOGGER.warning("fetch_error url=%s error=%s", redact_url_brief(url), exc)
        return FetchResult.failure(f"{type(exc).__name__}: {exc}")
    return normalize_result(raw)
