"""Stack trace parsing and source-mapped reconstruction.

Every input line becomes exactly one frame, in input order:
- V8:        `at fn (https://cdn/app.js:1:2345)` / `at https://cdn/app.js:1:2345`
- Gecko/JSC: `fn@https://cdn/app.js:1:2345` / `@https://cdn/app.js:1:2345`
- anything else (the `Error: ...` header, `at fn (native)`, eval frames)
  is kept as an opaque frame with the raw text only.

Stack text positions are 1-based (line and column); the decoded map is
0-based, so frames are shifted by one before lookup.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from .config import SourceIntelConfig
from .errors import ResolutionFailure, resolution_miss
from .fetcher import FetcherLike, FetchResult, call_fetcher
from .redaction import redact_url_brief
from .resolver import ResolvedLocation, attach_snippet, resolve
from .sourcemap import SourceMap
from .store import SourceMapStore

_LOGGER = logging.getLogger("mcp.source_intel.stack_trace")

_V8_NAMED_RE = re.compile(r"^\s*at\s+(?:async\s+)?(?P<fn>.+?)\s+\((?P<url>.+?):(?P<line>\d+):(?P<col>\d+)\)\s*$")
_V8_ANON_RE = re.compile(r"^\s*at\s+(?:async\s+)?(?P<url>[^\s()]+?):(?P<line>\d+):(?P<col>\d+)\s*$")
_GECKO_RE = re.compile(r"^\s*(?P<fn>[^@\s]*)@(?P<url>\S+?):(?P<line>\d+):(?P<col>\d+)\s*$")
_HEADER_RE = re.compile(r"^\s*(?:Uncaught\s+)?(?P<name>[A-Za-z_$][\w$.]*(?:Error|Exception)|Error)(?::\s*(?P<msg>.*))?$")


@dataclass
class StackFrame:
    raw: str
    function_name: str | None = None
    file_url: str | None = None
    line: int | None = None
    column: int | None = None
    resolved: ResolvedLocation | None = None
    failure: ResolutionFailure | None = None

    @property
    def parsed(self) -> bool:
        return self.file_url is not None and self.line is not None and self.column is not None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"raw": self.raw, "parsed": self.parsed}
        if self.parsed:
            out.update(
                {
                    "functionName": self.function_name,
                    "fileUrl": self.file_url,
                    "line": self.line,
                    "column": self.column,
                    "resolved": self.resolved.to_dict() if self.resolved else None,
                }
            )
            if self.failure is not None:
                out["failure"] = self.failure.to_dict()
        return out


@dataclass
class ResolvedTrace:
    frames: list[StackFrame] = field(default_factory=list)
    resolved_count: int = 0
    total_count: int = 0
    error_name: str | None = None
    error_message: str | None = None

    @property
    def message(self) -> str:
        return f"Resolved {self.resolved_count} of {self.total_count} stack frames to original source"

    def files(self) -> set[str]:
        """Generated URLs and original files referenced by any frame."""
        out: set[str] = set()
        for frame in self.frames:
            if frame.file_url:
                out.add(frame.file_url)
            if frame.resolved is not None:
                out.add(frame.resolved.file)
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "frames": [f.to_dict() for f in self.frames],
            "resolvedCount": self.resolved_count,
            "totalCount": self.total_count,
            "message": self.message,
            **({"errorName": self.error_name} if self.error_name else {}),
            **({"errorMessage": self.error_message} if self.error_message is not None else {}),
        }


def _looks_like_url(url: str) -> bool:
    if not url or any(ch.isspace() for ch in url):
        return False
    return "<anonymous>" not in url and url not in {"native", "unknown location"}


def parse_frame(line: str) -> StackFrame:
    for pattern in (_V8_NAMED_RE, _V8_ANON_RE, _GECKO_RE):
        m = pattern.match(line)
        if not m:
            continue
        url = m.group("url")
        if not _looks_like_url(url):
            continue
        fn = m.groupdict().get("fn") or None
        if fn and fn.startswith("new "):
            fn = fn[4:].strip() or None
        return StackFrame(
            raw=line,
            function_name=fn,
            file_url=url,
            line=int(m.group("line")),
            column=int(m.group("col")),
        )
    return StackFrame(raw=line)


def parse_stack_trace(raw_text: str) -> list[StackFrame]:
    return [parse_frame(line) for line in raw_text.splitlines()]


def parse_error_header(raw_text: str) -> tuple[str | None, str | None]:
    """Extract (error name, message) from the first line, e.g. `TypeError: x is undefined`."""
    for line in raw_text.splitlines():
        if not line.strip():
            continue
        m = _HEADER_RE.match(line.strip())
        if m:
            return m.group("name"), (m.group("msg") or "").strip()
        return None, None
    return None, None


def format_frame(frame: StackFrame) -> str:
    loc = frame.resolved
    if loc is None or loc.partial:
        return frame.raw
    fn = frame.function_name or loc.name
    position = f"{loc.file}:{int(loc.line) + 1}:{int(loc.column) + 1}"  # type: ignore[arg-type]
    indent = frame.raw[: len(frame.raw) - len(frame.raw.lstrip())] or "    "
    return f"{indent}at {fn} ({position})" if fn else f"{indent}at {position}"


def format_trace(trace: ResolvedTrace) -> str:
    return "\n".join(format_frame(f) for f in trace.frames)


class _SourceFetches:
    """Original-source fetches shared by all frames of one trace."""

    def __init__(self, fetcher: FetcherLike, timeout: float) -> None:
        self._fetcher = fetcher
        self._timeout = timeout
        self._pending: dict[str, asyncio.Future[FetchResult]] = {}

    async def fetch(self, url: str) -> FetchResult:
        pending = self._pending.get(url)
        if pending is None:
            pending = asyncio.ensure_future(call_fetcher(self._fetcher, url, timeout=self._timeout))
            self._pending[url] = pending
        return await asyncio.shield(pending)

    def cancel(self) -> None:
        for pending in self._pending.values():
            if not pending.done():
                pending.cancel()


class StackTraceReconstructor:
    def __init__(
        self,
        store: SourceMapStore,
        config: SourceIntelConfig | None = None,
        *,
        content_fetcher: FetcherLike | None = None,
    ) -> None:
        self.store = store
        self.config = config or store.config
        self.content_fetcher = content_fetcher

    async def resolve_frame(
        self,
        frame: StackFrame,
        *,
        deadline: float | None = None,
        sources: FetcherLike | None = None,
    ) -> StackFrame:
        if not frame.parsed:
            return frame
        loop = asyncio.get_running_loop()
        remaining = None if deadline is None else max(0.0, deadline - loop.time())

        outcome = await self.store.get_map(frame.file_url, timeout=remaining)  # type: ignore[arg-type]
        if not isinstance(outcome, SourceMap):
            frame.failure = outcome
            return frame

        location = resolve(
            outcome,
            max(0, int(frame.line) - 1),  # type: ignore[arg-type]
            max(0, int(frame.column) - 1),  # type: ignore[arg-type]
            context_lines=self.config.context_lines,
        )
        if location is None:
            frame.failure = resolution_miss(f"no mapping for line {frame.line} column {frame.column}", url=frame.file_url)
            return frame

        fetcher = sources if sources is not None else self.content_fetcher
        if location.snippet is None and fetcher is not None:
            if deadline is None:
                remaining = self.config.fetch_timeout
            else:
                remaining = max(0.0, deadline - loop.time())
            location = await attach_snippet(
                location,
                outcome,
                fetcher,
                context_lines=self.config.context_lines,
                timeout=remaining,
            )
        frame.resolved = location
        return frame

    async def resolve_trace(self, raw_text: str, *, timeout: float | None = None) -> ResolvedTrace:
        started = time.monotonic()
        frames = parse_stack_trace(raw_text)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + max(0.0, float(timeout))
        sources = (
            _SourceFetches(self.content_fetcher, self.config.fetch_timeout) if self.content_fetcher is not None else None
        )

        # gather() returns results positionally, so completion order never leaks into the trace.
        try:
            frames = list(
                await asyncio.gather(*(self.resolve_frame(f, deadline=deadline, sources=sources) for f in frames))
            )
        finally:
            if sources is not None:
                sources.cancel()

        error_name, error_message = parse_error_header(raw_text)
        trace = ResolvedTrace(
            frames=frames,
            resolved_count=sum(1 for f in frames if f.resolved is not None),
            total_count=sum(1 for f in frames if f.parsed),
            error_name=error_name,
            error_message=error_message,
        )
        elapsed_ms = (time.monotonic() - started) * 1000
        if elapsed_ms > self.config.slow_resolution_ms:
            _LOGGER.warning(
                "slow_trace_resolution elapsed_ms=%.0f frames=%d files=%s",
                elapsed_ms,
                trace.total_count,
                sorted(redact_url_brief(f.file_url) for f in frames if f.file_url)[:5],
            )
        return trace
