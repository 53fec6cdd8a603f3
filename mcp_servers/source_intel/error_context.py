"""Error context aggregation.

Pure composition over inputs gathered by other collaborators (console
buffer, network trace, state snapshot): no fetching, no resolution. Missing
inputs produce empty or omitted fields, never exceptions.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .config import DEFAULT_NETWORK_WINDOW_MS
from .redaction import redact_url
from .stack_trace import ResolvedTrace, parse_frame

SIMILARITY_THRESHOLD = 0.5

_ERROR_LEVELS = {"error", "assert", "pageerror", "exception"}
_WARNING_LEVELS = {"warning", "warn"}


@dataclass(frozen=True)
class ConsoleEntry:
    level: str
    text: str
    timestamp: float | None = None
    location: str | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> ConsoleEntry | None:
        if isinstance(raw, ConsoleEntry):
            return raw
        if not isinstance(raw, Mapping):
            return None
        level = str(raw.get("type") or raw.get("level") or "log").strip().lower()
        text = raw.get("text") if raw.get("text") is not None else raw.get("message")
        ts = raw.get("timestamp", raw.get("ts"))
        loc = raw.get("location")
        if isinstance(loc, Mapping) and loc.get("url"):
            loc = f"{loc.get('url')}:{loc.get('lineNumber', 0)}:{loc.get('columnNumber', 0)}"
        return cls(
            level=level,
            text=str(text or ""),
            timestamp=float(ts) if isinstance(ts, (int, float)) and not isinstance(ts, bool) else None,
            location=str(loc) if isinstance(loc, str) and loc else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.level,
            "message": self.text,
            **({"timestamp": self.timestamp} if self.timestamp is not None else {}),
            **({"location": self.location} if self.location else {}),
        }


@dataclass(frozen=True)
class NetworkEntry:
    url: str
    method: str = "GET"
    timestamp: float | None = None
    status: int | None = None
    duration: float | None = None
    stack: tuple[str, ...] = ()
    initiator_url: str | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> NetworkEntry | None:
        if isinstance(raw, NetworkEntry):
            return raw
        if not isinstance(raw, Mapping) or not isinstance(raw.get("url"), str):
            return None
        stack_raw = raw.get("stackTrace") or raw.get("stack") or ()
        if isinstance(stack_raw, str):
            stack_raw = stack_raw.splitlines()
        initiator = raw.get("initiator") if isinstance(raw.get("initiator"), Mapping) else {}
        ts = raw.get("timestamp", raw.get("ts"))
        status = raw.get("status")
        duration = raw.get("duration")
        return cls(
            url=raw["url"],
            method=str(raw.get("method") or "GET").upper(),
            timestamp=float(ts) if isinstance(ts, (int, float)) and not isinstance(ts, bool) else None,
            status=int(status) if isinstance(status, int) and not isinstance(status, bool) else None,
            duration=float(duration) if isinstance(duration, (int, float)) and not isinstance(duration, bool) else None,
            stack=tuple(str(s) for s in stack_raw if isinstance(s, str)),
            initiator_url=initiator.get("url") if isinstance(initiator.get("url"), str) else None,
        )

    def stack_files(self) -> set[str]:
        files = {f.file_url for f in (parse_frame(line) for line in self.stack) if f.file_url}
        if self.initiator_url:
            files.add(self.initiator_url)
        return files

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": redact_url(self.url),
            "method": self.method,
            **({"timestamp": self.timestamp} if self.timestamp is not None else {}),
            **({"status": self.status} if self.status is not None else {}),
            **({"duration": self.duration} if self.duration is not None else {}),
        }


@dataclass(frozen=True)
class ErrorClassification:
    category: str
    confidence: str
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {"category": self.category, "confidence": self.confidence, "rootCause": self.description}


@dataclass
class ErrorContext:
    error_name: str | None = None
    error_message: str | None = None
    error_timestamp: float | None = None
    stack: ResolvedTrace | None = None
    errors: list[ConsoleEntry] = field(default_factory=list)
    warnings: list[ConsoleEntry] = field(default_factory=list)
    other_console: int = 0
    network: list[NetworkEntry] = field(default_factory=list)
    state: dict[str, Any] | None = None
    classification: ErrorClassification | None = None
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            **({"errorName": self.error_name} if self.error_name else {}),
            **({"errorMessage": self.error_message} if self.error_message is not None else {}),
            **({"errorTimestamp": self.error_timestamp} if self.error_timestamp is not None else {}),
            **({"stack": self.stack.to_dict()} if self.stack is not None else {}),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "otherConsole": self.other_console,
            "network": [n.to_dict() for n in self.network],
            **({"state": self.state} if self.state is not None else {}),
            **({"classification": self.classification.to_dict()} if self.classification else {}),
            "recommendations": list(self.recommendations),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Message heuristics
# ─────────────────────────────────────────────────────────────────────────────


def error_pattern(message: str) -> str:
    """Normalize dynamic parts (numbers, hex, quoted strings, `at ...` tails) for grouping."""
    text = str(message or "")
    text = re.sub(r"0x[0-9a-fA-F]+", "0xHEX", text)
    text = re.sub(r"\d+", "N", text)
    text = re.sub(r"'[^']*'", "'STRING'", text)
    text = re.sub(r'"[^"]*"', '"STRING"', text)
    text = re.sub(r"\bat\s+.*$", "", text, flags=re.MULTILINE)
    return text.strip()


def message_similarity(a: str, b: str) -> float:
    """Word-set Jaccard similarity in [0, 1]."""
    words_a = {w for w in str(a or "").lower().split() if w}
    words_b = {w for w in str(b or "").lower().split() if w}
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def classify_error(message: str, *, error_name: str | None = None, related_errors: int = 0) -> ErrorClassification:
    text = str(message or "")
    lower = text.lower()
    name = (error_name or "").lower()

    if any(k in lower for k in ("failed to fetch", "networkerror", "network", "xhr", "ajax", "cors", "fetch")):
        return ErrorClassification(
            "network",
            "high",
            f"Network request failure: {text}. Check connectivity, API endpoints, and CORS configuration.",
        )
    if name == "syntaxerror" or "unexpected token" in lower:
        return ErrorClassification(
            "syntax",
            "high",
            f"Syntax error: {text}. A script or JSON payload could not be parsed.",
        )
    if name == "referenceerror" or "is not defined" in lower:
        return ErrorClassification(
            "reference",
            "high",
            f"Reference error: {text}. Variable or function not in scope; check imports and declarations.",
        )
    if name == "typeerror" or any(k in lower for k in ("is not a function", "undefined", "null", "cannot read")):
        return ErrorClassification(
            "type",
            "high",
            f"Type error: {text}. A property or method was accessed on an undefined/null value.",
        )
    if "render" in lower or "component" in lower:
        return ErrorClassification(
            "render",
            "medium",
            f"Component rendering error: {text}. Check component props, state, and lifecycle.",
        )
    if related_errors > 2:
        return ErrorClassification(
            "cascade",
            "medium",
            f"Cascading failure: {text} was followed by {related_errors} related errors. Fix the first one.",
        )
    return ErrorClassification("unknown", "low", f"Error occurred: {text}. Review the resolved stack trace.")


def recommendations_for(classification: ErrorClassification, trace: ResolvedTrace | None) -> list[str]:
    out = ["Review the resolved stack trace to identify the exact location"]
    if classification.category == "network":
        out += [
            "Check the related network requests for failed statuses",
            "Verify API endpoint URLs and request format",
            "Check CORS headers if the request is cross-origin",
        ]
    elif classification.category == "type":
        out += [
            "Add null checks before accessing properties",
            "Use optional chaining (?.) for safer property access",
            "Verify data is loaded before it is used",
        ]
    elif classification.category == "reference":
        out += ["Check imports, declarations, and bundler externals for the missing name"]
    elif classification.category == "syntax":
        out += ["Inspect the response body that failed to parse (content-type, truncation)"]
    if trace is not None and trace.total_count and trace.resolved_count == 0:
        out.append("Enable source maps in your build configuration for better debugging")
    return out


def group_similar(errors: Iterable[Any], message: str) -> list[dict[str, Any]]:
    """Group console/page errors that share `message`'s pattern or exceed the similarity threshold."""
    target = error_pattern(message)
    groups: dict[str, dict[str, Any]] = {}
    for raw in errors:
        entry = ConsoleEntry.from_raw(raw)
        if entry is None or not entry.text:
            continue
        pattern = error_pattern(entry.text)
        group = groups.get(pattern)
        if group is None:
            group = {
                "message": entry.text,
                "pattern": pattern,
                "count": 0,
                "firstSeen": entry.timestamp,
                "lastSeen": entry.timestamp,
            }
            groups[pattern] = group
        group["count"] += 1
        if entry.timestamp is not None:
            if group["firstSeen"] is None or entry.timestamp < group["firstSeen"]:
                group["firstSeen"] = entry.timestamp
            if group["lastSeen"] is None or entry.timestamp > group["lastSeen"]:
                group["lastSeen"] = entry.timestamp

    out: list[dict[str, Any]] = []
    for pattern, group in groups.items():
        similarity = 1.0 if pattern == target else message_similarity(target, pattern)
        if similarity > SIMILARITY_THRESHOLD or pattern == target:
            out.append({**group, "similarity": round(similarity, 2)})
    out.sort(key=lambda g: (-g["count"], g["pattern"]))
    return out


# ─────────────────────────────────────────────────────────────────────────────
# Aggregation
# ─────────────────────────────────────────────────────────────────────────────


def _related_network(
    entries: list[NetworkEntry],
    *,
    error_ts: float | None,
    window_ms: float,
    trace_files: set[str],
) -> list[NetworkEntry]:
    out: list[NetworkEntry] = []
    for entry in entries:
        if error_ts is not None:
            if entry.timestamp is None or not (error_ts - window_ms <= entry.timestamp <= error_ts):
                continue
        files = entry.stack_files()
        if files and trace_files and not (files & trace_files):
            continue
        out.append(entry)
    out.sort(key=lambda e: e.timestamp if e.timestamp is not None else 0.0)
    return out


def build_context(
    resolved_trace: ResolvedTrace | None,
    console_log: Iterable[Any] | None = None,
    related_network_traces: Iterable[Any] | None = None,
    state_snapshot: dict[str, Any] | None = None,
    *,
    error_timestamp: float | None = None,
    window_ms: float = DEFAULT_NETWORK_WINDOW_MS,
) -> ErrorContext:
    """Compose a diagnostic record around a resolved trace.

    Network entries are kept when they happened within `window_ms` before the
    error and, when their initiating stack is known, touch a file in the trace.
    Without an explicit `error_timestamp` the latest console error is used; with
    neither, no time filter applies.
    """
    console = [e for e in (ConsoleEntry.from_raw(r) for r in (console_log or ())) if e is not None]
    errors = [e for e in console if e.level in _ERROR_LEVELS]
    warnings = [e for e in console if e.level in _WARNING_LEVELS]

    error_ts = error_timestamp
    if error_ts is None:
        stamps = [e.timestamp for e in errors if e.timestamp is not None]
        error_ts = max(stamps) if stamps else None

    network = [n for n in (NetworkEntry.from_raw(r) for r in (related_network_traces or ())) if n is not None]
    trace_files = resolved_trace.files() if resolved_trace is not None else set()
    related = _related_network(network, error_ts=error_ts, window_ms=float(window_ms), trace_files=trace_files)

    error_name = resolved_trace.error_name if resolved_trace is not None else None
    error_message = resolved_trace.error_message if resolved_trace is not None else None
    if error_message is None and errors:
        error_message = errors[-1].text

    classification = None
    recommendations: list[str] = []
    if error_message:
        classification = classify_error(error_message, error_name=error_name, related_errors=max(0, len(errors) - 1))
        recommendations = recommendations_for(classification, resolved_trace)

    return ErrorContext(
        error_name=error_name,
        error_message=error_message,
        error_timestamp=error_ts,
        stack=resolved_trace,
        errors=errors,
        warnings=warnings,
        other_console=len(console) - len(errors) - len(warnings),
        network=related,
        state=dict(state_snapshot) if isinstance(state_snapshot, Mapping) else None,
        classification=classification,
        recommendations=recommendations,
    )
