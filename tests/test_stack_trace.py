from __future__ import annotations

import asyncio
import json

import pytest

_APP_MAP = json.dumps(
    {
        "version": 3,
        "sources": ["src/app.ts"],
        "names": ["handleClick"],
        "mappings": "AAAA,KAAKA",
        "sourcesContent": ["function handleClick() {\n  throw new Error('boom');\n}\n"],
    }
)


class _Fetcher:
    def __init__(self, routes: dict[str, object] | None = None) -> None:
        self.routes = dict(routes or {})
        self.calls: list[str] = []

    async def fetch(self, url: str) -> object:
        self.calls.append(url)
        await asyncio.sleep(0)
        return self.routes.get(url)


def _reconstructor(fetcher: _Fetcher):
    from mcp_servers.source_intel.config import SourceIntelConfig
    from mcp_servers.source_intel.stack_trace import StackTraceReconstructor
    from mcp_servers.source_intel.store import SourceMapStore

    return StackTraceReconstructor(SourceMapStore(fetcher, SourceIntelConfig()))


@pytest.mark.parametrize(
    ("line", "fn", "url", "pos"),
    [
        ("    at handleClick (https://cdn.test/app.js:1:6)", "handleClick", "https://cdn.test/app.js", (1, 6)),
        ("    at async loadUser (https://cdn.test/app.js:3:10)", "loadUser", "https://cdn.test/app.js", (3, 10)),
        ("    at new Widget (https://cdn.test/app.js:2:1)", "Widget", "https://cdn.test/app.js", (2, 1)),
        ("    at https://cdn.test/app.js:9:42", None, "https://cdn.test/app.js", (9, 42)),
        ("handleClick@https://cdn.test/app.js:1:6", "handleClick", "https://cdn.test/app.js", (1, 6)),
        ("@https://cdn.test/app.js:4:2", None, "https://cdn.test/app.js", (4, 2)),
        (
            "load@https://cdn.test/node_modules/@scope/pkg/index.js:2:3",
            "load",
            "https://cdn.test/node_modules/@scope/pkg/index.js",
            (2, 3),
        ),
        ("    at Object.<anonymous> (https://cdn.test/a.js:5:7)", "Object.<anonymous>", "https://cdn.test/a.js", (5, 7)),
    ],
)
def test_parse_frame_recognizes_engine_formats(line: str, fn: str | None, url: str, pos: tuple[int, int]) -> None:
    from mcp_servers.source_intel.stack_trace import parse_frame

    frame = parse_frame(line)
    assert frame.parsed
    assert frame.function_name == fn
    assert frame.file_url == url
    assert (frame.line, frame.column) == pos
    assert frame.raw == line


@pytest.mark.parametrize(
    "line",
    [
        "TypeError: Cannot read properties of undefined (reading 'x')",
        "    at Array.map (native)",
        "    at eval (eval at <anonymous> (https://cdn.test/app.js:1:1), <anonymous>:1:1)",
        "",
        "some random text",
    ],
)
def test_parse_frame_keeps_unrecognized_lines_opaque(line: str) -> None:
    from mcp_servers.source_intel.stack_trace import parse_frame

    frame = parse_frame(line)
    assert not frame.parsed
    assert frame.raw == line
    assert frame.to_dict() == {"raw": line, "parsed": False}


def test_parse_error_header() -> None:
    from mcp_servers.source_intel.stack_trace import parse_error_header

    assert parse_error_header("Uncaught TypeError: x is undefined\n    at f (a.js:1:1)") == ("TypeError", "x is undefined")
    assert parse_error_header("\nError\n    at f (a.js:1:1)") == ("Error", "")
    assert parse_error_header("    at f (https://cdn.test/a.js:1:1)") == (None, None)


def test_trace_without_maps_keeps_every_frame() -> None:
    raw = "Error: boom\n    at f (https://cdn.test/a.js:1:10)\n    at g (https://cdn.test/b.js:2:5)"
    trace = asyncio.run(_reconstructor(_Fetcher()).resolve_trace(raw))

    assert len(trace.frames) == 3
    assert trace.resolved_count == 0
    assert trace.total_count == 2
    assert [f.raw for f in trace.frames] == raw.splitlines()
    assert trace.frames[1].failure is not None
    assert trace.error_name == "Error"
    assert trace.error_message == "boom"
    assert trace.message == "Resolved 0 of 2 stack frames to original source"


def test_trace_resolves_mapped_frames_in_input_order() -> None:
    from mcp_servers.source_intel.errors import FailureKind

    fetcher = _Fetcher({"https://cdn.test/app.js.map": _APP_MAP})
    raw = "\n".join(
        [
            "Error: boom",
            "    at handleClick (https://cdn.test/app.js:1:6)",
            "    at vendor (https://cdn.test/vendor.js:1:1)",
            "    at https://cdn.test/app.js:1:1",
            "    at https://cdn.test/app.js:7:1",
        ]
    )
    trace = asyncio.run(_reconstructor(fetcher).resolve_trace(raw))

    assert [f.raw for f in trace.frames] == raw.splitlines()
    assert trace.total_count == 4
    assert trace.resolved_count == 2

    first = trace.frames[1].resolved
    assert first is not None
    # 1-based column 6 in the stack text is generated column 5
    assert (first.file, first.line, first.column, first.name) == ("src/app.ts", 0, 5, "handleClick")
    assert first.snippet is not None

    assert trace.frames[2].failure is not None
    assert trace.frames[2].failure.kind == FailureKind.FETCH
    assert trace.frames[3].resolved is not None
    assert trace.frames[4].failure is not None
    assert trace.frames[4].failure.kind == FailureKind.MISS

    # one map load shared by three frames of the same bundle
    assert fetcher.calls.count("https://cdn.test/app.js.map") == 1


def test_trace_to_dict_and_files() -> None:
    fetcher = _Fetcher({"https://cdn.test/app.js.map": _APP_MAP})
    raw = "TypeError: x\n    at handleClick (https://cdn.test/app.js:1:6)"
    trace = asyncio.run(_reconstructor(fetcher).resolve_trace(raw))

    out = trace.to_dict()
    assert out["resolvedCount"] == 1
    assert out["totalCount"] == 1
    assert out["errorName"] == "TypeError"
    frame = out["frames"][1]
    assert frame["parsed"] is True
    assert frame["resolved"]["file"] == "src/app.ts"
    assert frame["resolved"]["line"] == 1
    assert trace.files() == {"https://cdn.test/app.js", "src/app.ts"}


def test_format_trace_rewrites_resolved_frames_only() -> None:
    from mcp_servers.source_intel.stack_trace import format_trace

    fetcher = _Fetcher({"https://cdn.test/app.js.map": _APP_MAP})
    raw = "Error: boom\n    at handleClick (https://cdn.test/app.js:1:6)\n    at x (https://cdn.test/other.js:1:1)"
    trace = asyncio.run(_reconstructor(fetcher).resolve_trace(raw))

    lines = format_trace(trace).splitlines()
    assert lines[0] == "Error: boom"
    assert lines[1] == "    at handleClick (src/app.ts:1:6)"
    assert lines[2] == "    at x (https://cdn.test/other.js:1:1)"


def test_trace_timeout_degrades_to_failures() -> None:
    from mcp_servers.source_intel.config import SourceIntelConfig
    from mcp_servers.source_intel.stack_trace import StackTraceReconstructor
    from mcp_servers.source_intel.store import SourceMapStore

    class _Slow:
        async def fetch(self, url: str) -> str:
            await asyncio.sleep(0.5)
            return _APP_MAP

    reconstructor = StackTraceReconstructor(SourceMapStore(_Slow(), SourceIntelConfig()))
    raw = "Error: slow\n    at f (https://cdn.test/app.js:1:6)"
    trace = asyncio.run(reconstructor.resolve_trace(raw, timeout=0.01))
    assert len(trace.frames) == 2
    assert trace.resolved_count == 0
    assert trace.frames[1].failure is not None


def _map_without_content() -> str:
    doc = json.loads(_APP_MAP)
    doc.pop("sourcesContent")
    return json.dumps(doc)


def test_hanging_source_fetch_does_not_block_trace() -> None:
    from mcp_servers.source_intel.config import SourceIntelConfig
    from mcp_servers.source_intel.stack_trace import StackTraceReconstructor
    from mcp_servers.source_intel.store import SourceMapStore

    class _Hangs:
        def __init__(self) -> None:
            self.calls: list[str] = []

        async def fetch(self, url: str) -> object:
            self.calls.append(url)
            if url.endswith(".map"):
                return _map_without_content()
            await asyncio.sleep(3600)
            return None

    fetcher = _Hangs()
    config = SourceIntelConfig(fetch_timeout=0.2)
    reconstructor = StackTraceReconstructor(SourceMapStore(fetcher, config), config, content_fetcher=fetcher)
    raw = "Error: x\n    at f (https://cdn.test/app.js:1:1)"

    async def _run() -> object:
        return await asyncio.wait_for(reconstructor.resolve_trace(raw), 2.0)

    trace = asyncio.run(_run())
    assert trace.resolved_count == 1
    assert trace.frames[1].resolved is not None
    assert trace.frames[1].resolved.snippet is None
    assert "https://cdn.test/src/app.ts" in fetcher.calls


def test_original_source_fetched_once_per_trace() -> None:
    from mcp_servers.source_intel.config import SourceIntelConfig
    from mcp_servers.source_intel.stack_trace import StackTraceReconstructor
    from mcp_servers.source_intel.store import SourceMapStore

    fetcher = _Fetcher(
        {
            "https://cdn.test/app.js.map": _map_without_content(),
            "https://cdn.test/src/app.ts": "function handleClick() {\n  throw new Error('boom');\n}\n",
        }
    )
    config = SourceIntelConfig()
    reconstructor = StackTraceReconstructor(SourceMapStore(fetcher, config), config, content_fetcher=fetcher)
    raw = (
        "Error: boom\n"
        "    at handleClick (https://cdn.test/app.js:1:6)\n"
        "    at https://cdn.test/app.js:1:1\n"
        "    at handleClick (https://cdn.test/app.js:1:6)"
    )

    trace = asyncio.run(reconstructor.resolve_trace(raw))
    assert trace.resolved_count == 3
    assert all(f.resolved is not None and f.resolved.snippet for f in trace.frames[1:])
    assert fetcher.calls.count("https://cdn.test/src/app.ts") == 1
    assert fetcher.calls.count("https://cdn.test/app.js.map") == 1
