"""Coordinate resolution: generated (line, column) -> original location.

All coordinates in this module are 0-based, as stored in the decoded map.
Public dict output (`ResolvedLocation.to_dict`) switches to the convention the
tool layer reports: 1-based line, 0-based column.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .fetcher import FetcherLike, call_fetcher
from .sourcemap import SourceMap


@dataclass(frozen=True)
class ResolvedLocation:
    file: str
    line: int | None = None
    column: int | None = None
    name: str | None = None
    snippet: str | None = None
    snippet_start: int | None = None

    @property
    def partial(self) -> bool:
        return self.line is None or self.column is None

    def with_snippet(self, snippet: str | None, start: int | None) -> ResolvedLocation:
        return ResolvedLocation(self.file, self.line, self.column, self.name, snippet, start)

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "line": self.line + 1 if self.line is not None else None,
            "column": self.column,
            "partial": self.partial,
            **({"name": self.name} if self.name else {}),
            **({"content": self.snippet, "contentStartLine": (self.snippet_start or 0) + 1} if self.snippet else {}),
        }


def extract_snippet(text: str, line: int, context_lines: int) -> tuple[str, int] | None:
    """Return `context_lines` lines on each side of `line`, plus the first line's index."""
    lines = text.split("\n")
    if line < 0 or line >= len(lines):
        return None
    start = max(0, line - context_lines)
    end = min(len(lines), line + context_lines + 1)
    return "\n".join(lines[start:end]), start


def resolve(source_map: SourceMap, line: int, column: int, *, context_lines: int = 3) -> ResolvedLocation | None:
    """Map a generated position to its original location.

    Picks the closest mapping at or before `column` on `line`. Returns None when
    the line has no covering segment. A generated-only segment yields a partial
    location (file known, line/column absent).
    """
    idx = source_map.floor_index(line, column)
    if idx is None:
        return None
    seg = source_map.mappings[idx]

    if not seg.has_original:
        # Attribute the unmapped region to the nearest mapped segment before it on this line.
        j = idx - 1
        while j >= 0 and source_map.mappings[j].generated_line == line:
            prev = source_map.mappings[j]
            if prev.source_index is not None:
                return ResolvedLocation(file=source_map.sources[prev.source_index])
            j -= 1
        return None

    file = source_map.sources[seg.source_index]  # type: ignore[index]
    name = source_map.names[seg.name_index] if seg.name_index is not None else None
    location = ResolvedLocation(file=file, line=seg.original_line, column=seg.original_column, name=name)

    content = source_map.sources_content.get(seg.source_index)  # type: ignore[arg-type]
    if content is not None and context_lines >= 0:
        window = extract_snippet(content, int(seg.original_line), context_lines)  # type: ignore[arg-type]
        if window is not None:
            location = location.with_snippet(*window)
    return location


async def attach_snippet(
    location: ResolvedLocation,
    source_map: SourceMap,
    fetcher: FetcherLike | None,
    *,
    context_lines: int = 3,
    timeout: float | None = None,
) -> ResolvedLocation:
    """Fill in the snippet by fetching the original file when it is not embedded.

    Any failure leaves the location unchanged.
    """
    if location.snippet is not None or location.line is None or fetcher is None:
        return location
    url = source_map.source_url(location.file)
    if "://" not in url:
        return location
    result = await call_fetcher(fetcher, url, timeout=timeout)
    if not result.ok:
        return location
    window = extract_snippet(result.text(), location.line, context_lines)
    if window is None:
        return location
    return location.with_snippet(*window)


def generated_positions_for(source_map: SourceMap, file: str, original_line: int) -> list[tuple[int, int]]:
    """All generated (line, column) positions mapped from `file:original_line`."""
    idx = source_map.source_index(file)
    if idx is None:
        return []
    return [
        (seg.generated_line, seg.generated_column)
        for seg in source_map.mappings
        if seg.source_index == idx and seg.original_line == original_line
    ]
