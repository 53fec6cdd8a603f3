"""Error taxonomy for source resolution.

Two families live here:
- `ResolutionFailure`: a *value* describing why one unit (location, frame,
  manifest) could not be resolved. Returned, never raised, so batch operations
  keep their partial progress.
- Exceptions: `SourceToolError` for invalid caller input (a contract violation),
  plus the parser errors raised by the pure parsing layers and converted to
  `ResolutionFailure` at the store/facade boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class FailureKind:
    FETCH = "FetchFailure"
    PARSE = "ParseError"
    MISS = "ResolutionMiss"
    PARTIAL = "PartialResolution"


@dataclass(frozen=True)
class ResolutionFailure:
    kind: str
    reason: str
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "reason": self.reason,
            **({"url": self.url} if self.url else {}),
        }


def fetch_failure(reason: str, url: str | None = None) -> ResolutionFailure:
    return ResolutionFailure(kind=FailureKind.FETCH, reason=str(reason or "fetch failed"), url=url)


def parse_failure(reason: str, url: str | None = None) -> ResolutionFailure:
    return ResolutionFailure(kind=FailureKind.PARSE, reason=str(reason or "parse failed"), url=url)


def resolution_miss(reason: str, url: str | None = None) -> ResolutionFailure:
    return ResolutionFailure(kind=FailureKind.MISS, reason=str(reason or "no mapping"), url=url)


class SourceMapParseError(ValueError):
    """Malformed or unsupported source map."""


class ManifestParseError(ValueError):
    """Bundler manifest that matches none of the supported shapes."""


@dataclass
class SourceToolError(ValueError):
    """Structured input-validation error, surfaced immediately to the caller."""

    tool: str
    action: str
    reason: str
    suggestion: str
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"[{self.tool}] {self.action} failed: {self.reason}. Suggestion: {self.suggestion}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "tool": self.tool,
            "action": self.action,
            "reason": self.reason,
            "suggestion": self.suggestion,
            "details": self.details,
        }


def require_url(url: Any, *, tool: str, action: str) -> str:
    if not isinstance(url, str) or not url.strip():
        raise SourceToolError(
            tool=tool,
            action=action,
            reason="url must be a non-empty string",
            suggestion="Pass the URL of the generated (minified) script",
            details={"url": url},
        )
    return url.strip()


def require_position(value: Any, *, name: str, tool: str, action: str, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise SourceToolError(
            tool=tool,
            action=action,
            reason=f"{name} must be an integer >= {minimum}",
            suggestion=f"Pass a non-negative {name} as reported by the browser",
            details={name: value},
        )
    return value
