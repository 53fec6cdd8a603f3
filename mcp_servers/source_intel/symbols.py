"""Line-oriented symbol scan over original (pre-bundle) JS/TS source.

This is a regex pass, not a parser: it recognizes the declaration forms that
fit on one line, which covers typical module-level code. Line numbers in
results are 1-based.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

DEFINITION_CONTEXT_LINES = 5

_IDENT_RE = re.compile(r"^[A-Za-z_$][\w$]*$")

_EXPORT_DECL_RE = re.compile(
    r"^\s*export\s+(?:declare\s+)?(?:async\s+)?(?P<kind>function\*?|class|(?:const\s+)?enum|const|let|var|type|interface)\s+"
    r"(?P<name>[A-Za-z_$][\w$]*)"
)
_EXPORT_DEFAULT_RE = re.compile(r"^\s*export\s+default\s+(?:async\s+)?(?:(?:function\*?|class)\s+)?(?P<name>[A-Za-z_$][\w$]*)?")
_DEFAULT_KEYWORDS = {"function", "class", "extends"}
_EXPORT_LIST_RE = re.compile(r"^\s*export\s+(?:type\s+)?\{(?P<names>[^}]*)\}")

_IMPORT_RE = re.compile(
    r"^\s*import\s+(?:type\s+)?(?P<clause>.+?)\s+from\s+['\"](?P<source>[^'\"]+)['\"]"
)

_TYPE_RES = (
    ("type", re.compile(r"^\s*(?:export\s+)?(?:declare\s+)?type\s+(?P<name>[A-Za-z_$][\w$]*)\s*(?:<[^=]*>)?\s*=")),
    ("interface", re.compile(r"^\s*(?:export\s+)?(?:declare\s+)?interface\s+(?P<name>[A-Za-z_$][\w$]*)")),
    ("enum", re.compile(r"^\s*(?:export\s+)?(?:declare\s+)?(?:const\s+)?enum\s+(?P<name>[A-Za-z_$][\w$]*)")),
)


@dataclass(frozen=True)
class Symbol:
    name: str
    kind: str
    line: int
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "type": self.kind, "line": self.line}
        if self.source is not None:
            out["from"] = self.source
        return out


@dataclass(frozen=True)
class Definition:
    line: int
    column: int
    code: str


def is_identifier(name: str) -> bool:
    return bool(_IDENT_RE.match(name or ""))


def _split_names(raw: str, *, exported: bool) -> list[str]:
    """`a, b as c` -> the exported names (`a`, `c`) or the imported ones (`a`, `b`)."""
    out: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if part.startswith("type "):
            part = part[5:].strip()
        if not part:
            continue
        local, _, alias = part.partition(" as ")
        name = (alias if exported and alias else local).strip()
        if name:
            out.append(name)
    return out


def extract_exports(text: str) -> list[Symbol]:
    symbols: list[Symbol] = []
    for idx, line in enumerate(text.split("\n"), start=1):
        m = _EXPORT_DECL_RE.match(line)
        if m:
            kind = m.group("kind").rstrip("*")
            symbols.append(Symbol(m.group("name"), "enum" if kind.endswith("enum") else kind, idx))
            continue
        m = _EXPORT_DEFAULT_RE.match(line)
        if m:
            name = m.group("name")
            if name in _DEFAULT_KEYWORDS:
                name = None
            symbols.append(Symbol(name or "default", "default", idx))
            continue
        m = _EXPORT_LIST_RE.match(line)
        if m:
            symbols.extend(Symbol(name, "named", idx) for name in _split_names(m.group("names"), exported=True))
    return symbols


def extract_imports(text: str) -> list[Symbol]:
    symbols: list[Symbol] = []
    for idx, line in enumerate(text.split("\n"), start=1):
        m = _IMPORT_RE.match(line)
        if not m:
            continue
        source = m.group("source")
        clause = m.group("clause").strip()
        named = ""
        if "{" in clause:
            clause, _, rest = clause.partition("{")
            named = rest.split("}", 1)[0]
        for part in clause.split(","):
            part = part.strip()
            if part.startswith("* as "):
                symbols.append(Symbol(part[5:].strip(), "namespace", idx, source))
            elif part:
                symbols.append(Symbol(part, "default", idx, source))
        symbols.extend(Symbol(name, "named", idx, source) for name in _split_names(named, exported=False))
    return symbols


def extract_types(text: str) -> list[Symbol]:
    symbols: list[Symbol] = []
    for idx, line in enumerate(text.split("\n"), start=1):
        for kind, pattern in _TYPE_RES:
            m = pattern.match(line)
            if m:
                symbols.append(Symbol(m.group("name"), kind, idx))
                break
    return symbols


def find_definition(text: str, name: str) -> Definition | None:
    """First function, class or variable declaration of `name`, with the lines that follow it."""
    if not is_identifier(name):
        return None
    ident = re.escape(name)
    patterns = (
        re.compile(rf"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\*?\s+(?P<name>{ident})\s*[<(]"),
        re.compile(rf"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(?P<name>{ident})(?![\w$])"),
        re.compile(rf"^\s*(?:export\s+)?(?:const|let|var)\s+(?P<name>{ident})\s*(?::[^=]+)?="),
    )
    lines = text.split("\n")
    for idx, line in enumerate(lines):
        for pattern in patterns:
            m = pattern.match(line)
            if m:
                code = "\n".join(lines[idx : idx + DEFINITION_CONTEXT_LINES + 1])
                return Definition(line=idx + 1, column=m.start("name"), code=code)
    return None
