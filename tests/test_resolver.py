from __future__ import annotations

import asyncio

_FIXTURE = {
    "version": 3,
    "sources": ["src/a.ts", "src/b.ts"],
    "names": ["render", "mount"],
    "mappings": "AAAAA,KAAKC,SCCA;ADAA,QCCA",
    "sourcesContent": ["line0\nline1\nline2\nline3\nline4\nline5\nline6\nline7", "b0\nb1\nb2"],
}


def _source_map(doc: dict | None = None, *, map_url: str | None = None):
    from mcp_servers.source_intel.sourcemap import parse_source_map

    return parse_source_map(doc or _FIXTURE, "https://cdn.test/app.js", map_url=map_url)


def test_resolve_floor_segment_single_mapping() -> None:
    from mcp_servers.source_intel.resolver import resolve

    sm = _source_map({"version": 3, "sources": ["a.js"], "names": [], "mappings": "AAAA"})
    loc = resolve(sm, 0, 5)
    assert loc is not None
    assert (loc.file, loc.line, loc.column) == ("a.js", 0, 0)
    assert not loc.partial


def test_resolve_exact_positions_round_trip() -> None:
    from mcp_servers.source_intel.resolver import resolve

    sm = _source_map()
    for seg in sm.mappings:
        if not seg.has_original:
            continue
        loc = resolve(sm, seg.generated_line, seg.generated_column)
        assert loc is not None
        assert loc.file == sm.sources[seg.source_index]
        assert loc.line == seg.original_line
        assert loc.column == seg.original_column


def test_resolve_picks_closest_preceding_segment() -> None:
    from mcp_servers.source_intel.resolver import resolve

    sm = _source_map()
    loc = resolve(sm, 0, 7)  # between columns 5 and 14
    assert loc is not None
    assert (loc.file, loc.line, loc.column, loc.name) == ("src/a.ts", 0, 5, "mount")

    loc = resolve(sm, 0, 999)
    assert loc is not None
    assert loc.file == "src/b.ts"


def test_resolve_returns_none_without_covering_segment() -> None:
    from mcp_servers.source_intel.resolver import resolve

    sm = _source_map({"version": 3, "sources": ["a.js"], "names": [], "mappings": "KAAA;;"})
    assert resolve(sm, 0, 2) is None
    assert resolve(sm, 1, 0) is None
    assert resolve(sm, 50, 0) is None


def test_resolve_generated_only_segment_is_partial() -> None:
    from mcp_servers.source_intel.resolver import resolve

    sm = _source_map({"version": 3, "sources": ["a.js"], "names": [], "mappings": "AAAA,K"})
    loc = resolve(sm, 0, 7)
    assert loc is not None
    assert loc.partial
    assert loc.file == "a.js"
    assert loc.line is None and loc.column is None
    assert loc.to_dict()["partial"] is True

    lone = _source_map({"version": 3, "sources": ["a.js"], "names": [], "mappings": "K"})
    assert resolve(lone, 0, 7) is None


def test_resolve_attaches_embedded_snippet() -> None:
    from mcp_servers.source_intel.resolver import resolve

    sm = _source_map()
    loc = resolve(sm, 1, 0, context_lines=3)  # -> src/a.ts line 1
    assert loc is not None
    assert loc.line == 1
    assert loc.snippet_start == 0
    assert loc.snippet == "line0\nline1\nline2\nline3\nline4"

    out = loc.to_dict()
    assert out["line"] == 2
    assert out["column"] == 5
    assert out["contentStartLine"] == 1


def test_extract_snippet_clamps_to_file_bounds() -> None:
    from mcp_servers.source_intel.resolver import extract_snippet

    text = "\n".join(f"l{i}" for i in range(10))
    assert extract_snippet(text, 9, 2) == ("l7\nl8\nl9", 7)
    assert extract_snippet(text, 4, 0) == ("l4", 4)
    assert extract_snippet(text, 10, 2) is None


def test_attach_snippet_fetches_original_source() -> None:
    from mcp_servers.source_intel.resolver import attach_snippet, resolve

    doc = dict(_FIXTURE)
    doc.pop("sourcesContent")
    sm = _source_map(doc, map_url="https://cdn.test/maps/app.js.map")
    loc = resolve(sm, 0, 0)
    assert loc is not None and loc.snippet is None

    calls: list[str] = []

    async def fetch(url: str) -> bytes:
        calls.append(url)
        return b"first\nsecond\nthird"

    out = asyncio.run(attach_snippet(loc, sm, fetch, context_lines=1))
    assert calls == ["https://cdn.test/maps/src/a.ts"]
    assert out.snippet == "first\nsecond"
    assert out.snippet_start == 0


def test_attach_snippet_keeps_location_on_fetch_failure() -> None:
    from mcp_servers.source_intel.resolver import attach_snippet, resolve

    doc = dict(_FIXTURE)
    doc.pop("sourcesContent")
    sm = _source_map(doc, map_url="https://cdn.test/app.js.map")
    loc = resolve(sm, 0, 0)

    def fetch(url: str) -> bytes:
        raise ConnectionError("offline")

    out = asyncio.run(attach_snippet(loc, sm, fetch))
    assert out == loc


def test_generated_positions_for_original_line() -> None:
    from mcp_servers.source_intel.resolver import generated_positions_for

    sm = _source_map()
    assert generated_positions_for(sm, "src/a.ts", 0) == [(0, 0), (0, 5)]
    assert generated_positions_for(sm, "src/a.ts", 1) == [(1, 0)]
    assert generated_positions_for(sm, "missing.ts", 0) == []
