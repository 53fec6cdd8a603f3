"""Source intelligence facade consumed by the tool layer.

Owns one `SourceMapStore` (and its cache) per instance. Results are plain
dicts with camelCase keys; invalid input raises `SourceToolError`, while
fetch/parse/resolution problems come back as `{"resolved": False, ...}` or a
failure dict.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any
from urllib.parse import urljoin

from .bundle_graph import ManifestFormat, ModuleGraph, ModuleNode
from .bundle_graph import analyze_bundle_size as _analyze_bundle_size
from .bundle_graph import find_module as _find_module
from .bundle_graph import parse_manifest
from .config import SourceIntelConfig
from .error_context import build_context
from .errors import (
    FailureKind,
    ManifestParseError,
    ResolutionFailure,
    SourceToolError,
    fetch_failure,
    parse_failure,
    require_position,
    require_url,
    resolution_miss,
)
from .fetcher import FetcherLike, call_fetcher
from .http_client import HttpFetcher
from .redaction import redact_url_brief
from .resolver import attach_snippet, resolve
from .sourcemap import SourceMap
from .stack_trace import ResolvedTrace, StackTraceReconstructor, format_trace
from .store import SourceMapStore
from .symbols import extract_exports, extract_imports, extract_types, is_identifier
from .symbols import find_definition as _find_definition

_LOGGER = logging.getLogger("mcp.source_intel.engine")

MANIFEST_PATHS = (
    "stats.json",
    ".vite/manifest.json",
    "manifest.json",
    "build/stats.json",
    "asset-manifest.json",
)

_LANGUAGES = {
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "vue": "vue",
    "svelte": "svelte",
    "css": "css",
    "scss": "scss",
    "py": "python",
    "rb": "ruby",
    "go": "go",
    "rs": "rust",
    "java": "java",
    "cpp": "cpp",
    "c": "c",
    "cs": "csharp",
}


def detect_language(path: str) -> str:
    name = str(path or "").split("?", 1)[0].rsplit("/", 1)[-1]
    if "." not in name:
        return "unknown"
    return _LANGUAGES.get(name.rsplit(".", 1)[-1].lower(), "unknown")


def _failure_dict(failure: ResolutionFailure) -> dict[str, Any]:
    return {"resolved": False, "failure": failure.to_dict(), "reason": failure.reason}


class SourceIntelligence:
    def __init__(self, fetcher: FetcherLike | None = None, config: SourceIntelConfig | None = None) -> None:
        self.config = config or SourceIntelConfig.from_env()
        self.fetcher = fetcher if fetcher is not None else HttpFetcher(self.config)
        self.store = SourceMapStore(self.fetcher, self.config)
        self.traces = StackTraceReconstructor(self.store, self.config, content_fetcher=self.fetcher)
        self._manifests: dict[str, ModuleGraph] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Locations and traces
    # ─────────────────────────────────────────────────────────────────────────

    async def resolve_location(
        self,
        url: str,
        line: int,
        column: int,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Resolve a generated position (1-based line, 0-based column)."""
        url = require_url(url, tool="source", action="resolve_location")
        line = require_position(line, name="line", tool="source", action="resolve_location", minimum=1)
        column = require_position(column, name="column", tool="source", action="resolve_location")

        started = time.monotonic()
        outcome = await self.store.get_map(url, timeout=timeout)
        if not isinstance(outcome, SourceMap):
            return _failure_dict(outcome)

        location = resolve(outcome, line - 1, column, context_lines=self.config.context_lines)
        if location is None:
            return _failure_dict(resolution_miss(f"no mapping for line {line} column {column}", url=url))
        if location.snippet is None:
            location = await attach_snippet(
                location,
                outcome,
                self.fetcher,
                context_lines=self.config.context_lines,
                timeout=self.config.fetch_timeout,
            )

        elapsed_ms = (time.monotonic() - started) * 1000
        if elapsed_ms > self.config.slow_resolution_ms:
            _LOGGER.warning("slow_resolution elapsed_ms=%.0f url=%s", elapsed_ms, redact_url_brief(url))
        return {"resolved": True, "location": location.to_dict(), "generated": {"url": url, "line": line, "column": column}}

    async def resolve_trace(self, raw_text: str, *, timeout: float | None = None) -> ResolvedTrace:
        if not isinstance(raw_text, str):
            raise SourceToolError(
                tool="source",
                action="resolve_stack_trace",
                reason="stack trace must be a string",
                suggestion="Pass error.stack text as captured from the page",
                details={"type": type(raw_text).__name__},
            )
        return await self.traces.resolve_trace(raw_text, timeout=timeout)

    async def resolve_stack_trace(self, raw_text: str, *, timeout: float | None = None) -> dict[str, Any]:
        trace = await self.resolve_trace(raw_text, timeout=timeout)
        return {**trace.to_dict(), "formatted": format_trace(trace)}

    def get_source_content(self, file: str, line_range: tuple[int, int] | None = None) -> dict[str, Any] | None:
        """Original file text from any cached map; `line_range` is 1-based and inclusive."""
        if not isinstance(file, str) or not file.strip():
            raise SourceToolError(
                tool="source",
                action="get_source_content",
                reason="file must be a non-empty string",
                suggestion="Use a file path reported by resolve_location or list_source_files",
                details={"file": file},
            )
        content = self.store.source_content(file)
        if content is None:
            return None
        lines = content.split("\n")
        out: dict[str, Any] = {
            "file": file,
            "language": detect_language(file),
            "totalLines": len(lines),
        }
        if line_range is None:
            out["content"] = content
            return out

        start, end = line_range
        start = require_position(start, name="start line", tool="source", action="get_source_content", minimum=1)
        end = require_position(end, name="end line", tool="source", action="get_source_content", minimum=start)
        end = min(end, len(lines))
        out["content"] = "\n".join(lines[start - 1 : end])
        out["lineRange"] = {"start": start, "end": end}
        return out

    def list_source_files(self) -> list[str]:
        return self.store.source_files()

    def find_definition(self, function_name: str, file: str | None = None) -> dict[str, Any] | None:
        """Search embedded original sources for a function, class or variable declaration.

        `file` narrows the search to source paths containing it.
        """
        if not isinstance(function_name, str) or not is_identifier(function_name.strip()):
            raise SourceToolError(
                tool="source",
                action="find_definition",
                reason="function_name must be a JavaScript identifier",
                suggestion="Pass a bare name such as handleSubmit, without parentheses",
                details={"functionName": function_name},
            )
        function_name = function_name.strip()
        for path in self.store.source_files():
            if file and file not in path:
                continue
            content = self.store.source_content(path)
            if content is None:
                continue
            found = _find_definition(content, function_name)
            if found is None:
                continue
            return {
                "file": path,
                "line": found.line,
                "column": found.column,
                "code": found.code,
                "exports": [s.name for s in extract_exports(content)],
            }
        return None

    def get_symbols(self, file: str) -> dict[str, Any] | None:
        if not isinstance(file, str) or not file.strip():
            raise SourceToolError(
                tool="source",
                action="get_symbols",
                reason="file must be a non-empty string",
                suggestion="Use a file path reported by list_source_files",
                details={"file": file},
            )
        content = self.store.source_content(file)
        if content is None:
            return None
        return {
            "file": file,
            "language": detect_language(file),
            "exports": [s.to_dict() for s in extract_exports(content)],
            "imports": [s.to_dict() for s in extract_imports(content)],
            "types": [s.to_dict() for s in extract_types(content)],
        }

    async def map_bundle(self, url: str, *, sample: int = 20, timeout: float | None = None) -> dict[str, Any]:
        """Original sources behind a bundle plus its first `sample` mapped segments."""
        url = require_url(url, tool="source", action="map_bundle")
        sample = require_position(sample, name="sample", tool="source", action="map_bundle")
        outcome = await self.store.get_map(url, timeout=timeout)
        if not isinstance(outcome, SourceMap):
            return _failure_dict(outcome)

        mappings: list[dict[str, Any]] = []
        for seg in outcome.mappings:
            if len(mappings) >= sample:
                break
            if not seg.has_original:
                continue
            mappings.append(
                {
                    "source": outcome.sources[seg.source_index],  # type: ignore[index]
                    "generatedLine": seg.generated_line + 1,
                    "generatedColumn": seg.generated_column,
                    "originalLine": int(seg.original_line) + 1,  # type: ignore[arg-type]
                    "originalColumn": seg.original_column,
                }
            )
        return {
            "resolved": True,
            "bundle": url,
            "sources": list(outcome.sources),
            "mappings": mappings,
            **outcome.summary(),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Bundles
    # ─────────────────────────────────────────────────────────────────────────

    async def get_bundle_manifest(
        self,
        base_url: str,
        *,
        format: str | None = None,
        measure_sizes: bool = False,
        refresh: bool = False,
    ) -> ModuleGraph | ResolutionFailure:
        """Probe conventional manifest locations under `base_url`.

        The first document that parses wins. Vite manifests carry no sizes;
        with `measure_sizes` each emitted file is fetched to fill them in.
        """
        base_url = require_url(base_url, tool="bundle", action="get_bundle_manifest")
        if not base_url.endswith("/"):
            base_url += "/"
        if not refresh and base_url in self._manifests:
            return self._manifests[base_url]

        last_failure: ResolutionFailure | None = None
        for path in MANIFEST_PATHS:
            url = urljoin(base_url, path)
            res = await call_fetcher(self.fetcher, url, timeout=self.config.fetch_timeout)
            if not res.ok:
                if last_failure is None or last_failure.kind != FailureKind.PARSE:
                    last_failure = fetch_failure(res.reason or "manifest fetch failed", url=url)
                continue
            try:
                graph = parse_manifest(res.body, format)
            except ManifestParseError as exc:
                _LOGGER.warning("manifest_parse_error url=%s error=%s", redact_url_brief(url), exc)
                last_failure = parse_failure(str(exc), url=url)
                continue

            if measure_sizes and graph.format == ManifestFormat.VITE and not graph.sizes_known:
                await self._measure_sizes(graph, base_url)
            _LOGGER.info("manifest_loaded url=%s format=%s modules=%d", redact_url_brief(url), graph.format, len(graph))
            self._manifests[base_url] = graph
            return graph

        return last_failure or fetch_failure("no bundle manifest found", url=base_url)

    async def _measure_sizes(self, graph: ModuleGraph, base_url: str) -> None:
        nodes = [node for node in graph.nodes.values() if node.file]

        async def _size(node: ModuleNode) -> None:
            res = await call_fetcher(self.fetcher, urljoin(base_url, node.file or ""), timeout=self.config.fetch_timeout)
            if res.ok:
                node.size = len(res.body)

        await asyncio.gather(*(_size(node) for node in nodes))
        graph.sizes_known = any(node.size for node in nodes)

    def find_module(self, graph: ModuleGraph, path_or_id: str) -> dict[str, Any] | None:
        if not isinstance(path_or_id, str) or not path_or_id.strip():
            raise SourceToolError(
                tool="bundle",
                action="find_module",
                reason="path_or_id must be a non-empty string",
                suggestion="Pass a module id or a source path such as src/app.ts",
                details={"pathOrId": path_or_id},
            )
        node = _find_module(graph, path_or_id)
        return node.to_dict() if node is not None else None

    def analyze_bundle_size(self, graph: ModuleGraph, threshold_bytes: int = 100 * 1024) -> dict[str, Any]:
        threshold_bytes = require_position(
            threshold_bytes, name="threshold_bytes", tool="bundle", action="analyze_bundle_size"
        )
        return _analyze_bundle_size(graph, threshold_bytes)

    # ─────────────────────────────────────────────────────────────────────────
    # Errors
    # ─────────────────────────────────────────────────────────────────────────

    async def build_error_context(
        self,
        stack_text: str | None,
        console_log: list[Any] | None = None,
        network_traces: list[Any] | None = None,
        state_snapshot: dict[str, Any] | None = None,
        *,
        error_timestamp: float | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        trace = await self.resolve_trace(stack_text, timeout=timeout) if stack_text else None
        context = build_context(
            trace,
            console_log,
            network_traces,
            state_snapshot,
            error_timestamp=error_timestamp,
            window_ms=self.config.network_window_ms,
        )
        return context.to_dict()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        return {"sourceMaps": self.store.stats(), "manifests": len(self._manifests)}

    def close(self) -> None:
        self.store.clear()
        self._manifests.clear()
        _LOGGER.debug("source_intel_closed")
