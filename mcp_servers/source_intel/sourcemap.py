"""Decoded source map model and the v3 JSON parser.

A `SourceMap` is immutable once built: the store replaces it wholesale on
re-fetch, never patches it. Segments are kept sorted by generated position so
the resolver can binary-search them.
"""

from __future__ import annotations

import bisect
import json
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin

from .errors import SourceMapParseError
from .vlq import Segment, VlqDecodeError, decode

_XSSI_PREFIX = ")]}'"

__all__ = ["Segment", "SourceMap", "parse_source_map", "load_json_document"]


@dataclass(frozen=True)
class SourceMap:
    generated_url: str
    sources: tuple[str, ...]
    mappings: tuple[Segment, ...]
    names: tuple[str, ...] = ()
    sources_content: dict[int, str] = field(default_factory=dict)
    file: str | None = None
    source_root: str | None = None
    map_url: str | None = None
    _keys: tuple[tuple[int, int], ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for seg in self.mappings:
            if seg.source_index is not None and not (0 <= seg.source_index < len(self.sources)):
                raise SourceMapParseError(f"source index {seg.source_index} out of range")
            if seg.name_index is not None and not (0 <= seg.name_index < len(self.names)):
                raise SourceMapParseError(f"name index {seg.name_index} out of range")
        object.__setattr__(self, "_keys", tuple((s.generated_line, s.generated_column) for s in self.mappings))

    def floor_index(self, line: int, column: int) -> int | None:
        """Index of the greatest segment at or before (line, column) on the same line."""
        idx = bisect.bisect_right(self._keys, (line, column)) - 1
        if idx < 0 or self._keys[idx][0] != line:
            return None
        return idx

    def line_segments(self, line: int) -> tuple[Segment, ...]:
        lo = bisect.bisect_left(self._keys, (line, -1))
        hi = bisect.bisect_left(self._keys, (line + 1, -1))
        return self.mappings[lo:hi]

    def source_index(self, file: str) -> int | None:
        try:
            return self.sources.index(file)
        except ValueError:
            return None

    def content_for(self, file: str) -> str | None:
        idx = self.source_index(file)
        if idx is None:
            return None
        return self.sources_content.get(idx)

    def source_url(self, file: str) -> str:
        """Absolute URL for an original source, resolved against the map location."""
        base = self.map_url if self.map_url and not self.map_url.startswith("data:") else self.generated_url
        return urljoin(base, file)

    def summary(self) -> dict[str, Any]:
        return {
            "generatedUrl": self.generated_url,
            "sourceCount": len(self.sources),
            "segments": len(self.mappings),
            "names": len(self.names),
            "embeddedContent": len(self.sources_content),
        }


def load_json_document(raw: bytes | str, *, what: str) -> Any:
    """Decode JSON text, tolerating a BOM and the `)]}'` anti-XSSI prefix."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
    text = text.lstrip("\ufeff")
    if text.startswith(_XSSI_PREFIX):
        text = text.split("\n", 1)[1] if "\n" in text else ""
    try:
        return json.loads(text)
    except ValueError as exc:
        raise SourceMapParseError(f"{what} is not valid JSON: {exc}") from exc


def _join_root(source_root: str | None, source: str) -> str:
    if not source_root or "://" in source or source.startswith("/"):
        return source
    return (source_root if source_root.endswith("/") else source_root + "/") + source


def _parse_regular(obj: dict[str, Any]) -> tuple[list[str], list[str], list[Segment], dict[int, str]]:
    sources_raw = obj.get("sources", [])
    names_raw = obj.get("names", [])
    mappings_raw = obj.get("mappings", "")
    if not isinstance(sources_raw, list) or any(s is not None and not isinstance(s, str) for s in sources_raw):
        raise SourceMapParseError("'sources' must be a list of strings")
    if not isinstance(names_raw, list) or any(not isinstance(n, str) for n in names_raw):
        raise SourceMapParseError("'names' must be a list of strings")
    if not isinstance(mappings_raw, str):
        raise SourceMapParseError("'mappings' must be a string")

    source_root = obj.get("sourceRoot") if isinstance(obj.get("sourceRoot"), str) else None
    sources = [_join_root(source_root, s or "") for s in sources_raw]

    content: dict[int, str] = {}
    content_raw = obj.get("sourcesContent")
    if isinstance(content_raw, list):
        for i, text in enumerate(content_raw[: len(sources)]):
            if isinstance(text, str):
                content[i] = text

    try:
        segments = decode(mappings_raw)
    except VlqDecodeError as exc:
        raise SourceMapParseError(f"invalid mappings: {exc}") from exc
    return sources, list(names_raw), segments, content


def _parse_sections(sections: Any) -> tuple[list[str], list[str], list[Segment], dict[int, str]]:
    """Flatten an index map: each section's segments are shifted by its offset."""
    if not isinstance(sections, list):
        raise SourceMapParseError("'sections' must be a list")
    sources: list[str] = []
    names: list[str] = []
    segments: list[Segment] = []
    content: dict[int, str] = {}
    source_ids: dict[str, int] = {}
    name_ids: dict[str, int] = {}

    for section in sections:
        if not isinstance(section, dict) or not isinstance(section.get("map"), dict):
            raise SourceMapParseError("index map sections must embed a 'map' object")
        offset = section.get("offset") or {}
        line_off = offset.get("line", 0) if isinstance(offset, dict) else 0
        col_off = offset.get("column", 0) if isinstance(offset, dict) else 0
        if not isinstance(line_off, int) or not isinstance(col_off, int):
            raise SourceMapParseError("section offset must be integers")

        sub_sources, sub_names, sub_segments, sub_content = _parse_regular(section["map"])
        src_remap: list[int] = []
        for i, src in enumerate(sub_sources):
            if src not in source_ids:
                source_ids[src] = len(sources)
                sources.append(src)
            src_remap.append(source_ids[src])
            if i in sub_content:
                content.setdefault(source_ids[src], sub_content[i])
        name_remap: list[int] = []
        for name in sub_names:
            if name not in name_ids:
                name_ids[name] = len(names)
                names.append(name)
            name_remap.append(name_ids[name])

        for seg in sub_segments:
            gen_col = seg.generated_column + (col_off if seg.generated_line == 0 else 0)
            if seg.source_index is not None and not (0 <= seg.source_index < len(src_remap)):
                raise SourceMapParseError(f"source index {seg.source_index} out of range")
            if seg.name_index is not None and not (0 <= seg.name_index < len(name_remap)):
                raise SourceMapParseError(f"name index {seg.name_index} out of range")
            segments.append(
                Segment(
                    seg.generated_line + line_off,
                    gen_col,
                    src_remap[seg.source_index] if seg.source_index is not None else None,
                    seg.original_line,
                    seg.original_column,
                    name_remap[seg.name_index] if seg.name_index is not None else None,
                )
            )
    return sources, names, segments, content


def parse_source_map(raw: bytes | str | dict[str, Any], generated_url: str, *, map_url: str | None = None) -> SourceMap:
    """Parse a v3 source map (regular or index map). Raises `SourceMapParseError`."""
    obj = raw if isinstance(raw, dict) else load_json_document(raw, what="source map")
    if not isinstance(obj, dict):
        raise SourceMapParseError("source map must be a JSON object")
    version = obj.get("version")
    if version != 3:
        raise SourceMapParseError(f"unsupported source map version: {version!r}")

    if "sections" in obj:
        sources, names, segments, content = _parse_sections(obj.get("sections"))
    else:
        sources, names, segments, content = _parse_regular(obj)

    segments.sort(key=lambda s: (s.generated_line, s.generated_column))
    return SourceMap(
        generated_url=generated_url,
        sources=tuple(sources),
        mappings=tuple(segments),
        names=tuple(names),
        sources_content=content,
        file=obj.get("file") if isinstance(obj.get("file"), str) else None,
        source_root=obj.get("sourceRoot") if isinstance(obj.get("sourceRoot"), str) else None,
        map_url=map_url,
    )
