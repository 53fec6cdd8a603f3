"""Bundler manifest parsing and module-graph queries.

Two manifest shapes are supported, each with its own parser, probed in a
fixed order (webpack stats first, then the Vite/Rollup manifest). A caller
format hint only moves its parser to the front; the structure still decides.

Edges point from a module to what it imports. Graphs may contain cycles, so
every traversal is guarded by a visited set.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .errors import ManifestParseError, SourceMapParseError
from .sourcemap import load_json_document

_LOGGER = logging.getLogger("mcp.source_intel.bundle_graph")

JS_EXTENSIONS = {"js", "mjs", "cjs", "jsx", "ts", "tsx", "vue", "svelte"}
CSS_EXTENSIONS = {"css", "scss", "sass", "less", "styl"}

KB = 1024


class ManifestFormat:
    WEBPACK = "webpack"
    VITE = "vite"


@dataclass
class ModuleNode:
    id: str
    path: str
    size: int = 0
    dependencies: set[str] = field(default_factory=set)
    dynamic_dependencies: set[str] = field(default_factory=set)
    chunks: list[str] = field(default_factory=list)
    is_entry: bool = False
    file: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "size": self.size,
            "sizeKB": format_kb(self.size),
            "dependencies": sorted(self.dependencies),
            **({"dynamicDependencies": sorted(self.dynamic_dependencies)} if self.dynamic_dependencies else {}),
            "chunks": list(self.chunks),
            **({"entry": True} if self.is_entry else {}),
            **({"file": self.file} if self.file else {}),
        }


@dataclass
class ModuleGraph:
    format: str
    nodes: dict[str, ModuleNode] = field(default_factory=dict)
    chunks: dict[str, list[str]] = field(default_factory=dict)
    entrypoints: dict[str, list[str]] = field(default_factory=dict)
    version: str | None = None
    sizes_known: bool = True

    def __contains__(self, module_id: object) -> bool:
        return module_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, module_id: str) -> ModuleNode | None:
        return self.nodes.get(str(module_id))

    def edges(self, module_id: str, *, include_dynamic: bool = True) -> set[str]:
        node = self.nodes.get(module_id)
        if node is None:
            return set()
        out = set(node.dependencies)
        if include_dynamic:
            out |= node.dynamic_dependencies
        return out

    def reverse_edges(self, *, include_dynamic: bool = True) -> dict[str, set[str]]:
        rev: dict[str, set[str]] = {mid: set() for mid in self.nodes}
        for mid in self.nodes:
            for dep in self.edges(mid, include_dynamic=include_dynamic):
                if dep in rev:
                    rev[dep].add(mid)
        return rev

    def total_size(self) -> int:
        return sum(n.size for n in self.nodes.values())

    def summary(self) -> dict[str, Any]:
        return {
            "type": self.format,
            "version": self.version or "unknown",
            "totalModules": len(self.nodes),
            "totalChunks": len(self.chunks),
            "totalSize": self.total_size(),
            "sizesKnown": self.sizes_known,
            "entrypoints": sorted(self.entrypoints),
            "largestModules": [n.to_dict() for n in largest_modules(self, 10)],
        }


def format_kb(size: int) -> str:
    return f"{size / KB:.2f}"


def format_mb(size: int) -> str:
    return f"{size / KB / KB:.2f}"


def file_type(path: str) -> str:
    name = (path or "").split("?", 1)[0].rsplit("/", 1)[-1]
    ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    if ext in JS_EXTENSIONS:
        return "js"
    if ext in CSS_EXTENSIONS:
        return "css"
    return "other"


# ─────────────────────────────────────────────────────────────────────────────
# Parsers
# ─────────────────────────────────────────────────────────────────────────────


def _size_of(raw: Any, *, where: str) -> int:
    if raw is None:
        return 0
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw < 0:
        raise ManifestParseError(f"invalid size for {where}: {raw!r}")
    return int(raw)


def _str_id(raw: Any) -> str | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float, str)):
        s = str(raw).strip()
        return s or None
    return None


def _webpack_modules(stats: dict[str, Any]) -> list[dict[str, Any]]:
    modules = stats.get("modules")
    if isinstance(modules, list):
        return modules
    # Multi-compiler stats: modules live under children[].
    children = stats.get("children")
    if isinstance(children, list):
        out: list[dict[str, Any]] = []
        for child in children:
            if isinstance(child, dict) and isinstance(child.get("modules"), list):
                out.extend(child["modules"])
        if out:
            return out
    # Stats emitted with chunkModules only.
    chunks = stats.get("chunks")
    if isinstance(chunks, list):
        out = []
        for chunk in chunks:
            if isinstance(chunk, dict) and isinstance(chunk.get("modules"), list):
                out.extend(chunk["modules"])
        if out:
            return out
    raise ManifestParseError("webpack stats: no 'modules' array")


def parse_webpack_stats(stats: Any) -> ModuleGraph:
    if not isinstance(stats, dict):
        raise ManifestParseError("webpack stats must be an object")
    raw_modules = _webpack_modules(stats)
    if not raw_modules:
        raise ManifestParseError("webpack stats: empty 'modules' array")

    graph = ModuleGraph(format=ManifestFormat.WEBPACK, version=_str_id(stats.get("version")))
    by_name: dict[str, str] = {}
    pending_reasons: list[tuple[str, list[Any]]] = []
    pending_deps: list[tuple[str, list[Any]]] = []

    for raw in raw_modules:
        if not isinstance(raw, dict):
            raise ManifestParseError("webpack stats: module entries must be objects")
        name = raw.get("name") if isinstance(raw.get("name"), str) else None
        identifier = raw.get("identifier") if isinstance(raw.get("identifier"), str) else None
        mid = _str_id(raw.get("id")) or name or identifier
        if not mid:
            raise ManifestParseError("webpack stats: module without id or name")
        path = name or identifier or mid
        node = graph.nodes.get(mid)
        if node is None:
            node = ModuleNode(id=mid, path=path, size=_size_of(raw.get("size"), where=f"module {mid}"))
            graph.nodes[mid] = node
        chunks = raw.get("chunks")
        if isinstance(chunks, list):
            for c in chunks:
                cid = _str_id(c)
                if cid and cid not in node.chunks:
                    node.chunks.append(cid)
        for alias in (name, identifier):
            if alias:
                by_name.setdefault(alias, mid)
        if isinstance(raw.get("reasons"), list):
            pending_reasons.append((mid, raw["reasons"]))
        if isinstance(raw.get("dependencies"), list):
            pending_deps.append((mid, raw["dependencies"]))

    def _lookup(ref: Any) -> str | None:
        if isinstance(ref, dict):
            for key in ("moduleId", "resolvedModuleId", "id"):
                rid = _str_id(ref.get(key))
                if rid and rid in graph.nodes:
                    return rid
            for key in ("moduleName", "resolvedModule", "module", "name"):
                nm = ref.get(key)
                if isinstance(nm, str) and nm in by_name:
                    return by_name[nm]
            return None
        rid = _str_id(ref)
        if rid and rid in graph.nodes:
            return rid
        if isinstance(ref, str) and ref in by_name:
            return by_name[ref]
        return None

    # reasons: "who imports me" -> edge importer -> me.
    for mid, reasons in pending_reasons:
        for reason in reasons:
            if isinstance(reason, dict) and str(reason.get("type") or "").startswith("entry"):
                graph.nodes[mid].is_entry = True
            importer = _lookup(reason)
            if importer is None or importer == mid:
                continue
            rtype = str(reason.get("type") or "") if isinstance(reason, dict) else ""
            target = graph.nodes[importer]
            if "import()" in rtype or "dynamic" in rtype:
                target.dynamic_dependencies.add(mid)
            else:
                target.dependencies.add(mid)

    for mid, deps in pending_deps:
        for dep in deps:
            target_id = _lookup(dep)
            if target_id is not None and target_id != mid:
                graph.nodes[mid].dependencies.add(target_id)

    for node in graph.nodes.values():
        for cid in node.chunks:
            graph.chunks.setdefault(cid, []).append(node.id)

    entrypoints = stats.get("entrypoints")
    if isinstance(entrypoints, dict):
        for name, info in entrypoints.items():
            chunk_ids = info.get("chunks") if isinstance(info, dict) else None
            graph.entrypoints[str(name)] = [c for c in (_str_id(x) for x in chunk_ids or []) if c]
    return graph


def parse_vite_manifest(manifest: Any) -> ModuleGraph:
    if not isinstance(manifest, dict) or not manifest:
        raise ManifestParseError("vite manifest must be a non-empty object")
    graph = ModuleGraph(format=ManifestFormat.VITE)
    sizes_seen = False

    for key, info in manifest.items():
        if not isinstance(info, dict) or not isinstance(info.get("file"), str):
            raise ManifestParseError(f"vite manifest: entry {key!r} has no 'file'")
        size_raw = info.get("size")
        sizes_seen = sizes_seen or size_raw is not None
        node = ModuleNode(
            id=str(key),
            path=str(info.get("src") or key),
            size=_size_of(size_raw, where=f"entry {key}"),
            is_entry=bool(info.get("isEntry")),
            file=info["file"],
            chunks=[info["file"]],
        )
        graph.nodes[node.id] = node
        graph.chunks.setdefault(info["file"], []).append(node.id)
        if node.is_entry:
            graph.entrypoints[node.id] = [info["file"], *[c for c in info.get("css") or [] if isinstance(c, str)]]

    for key, info in manifest.items():
        node = graph.nodes[str(key)]
        for field_name, target in (("imports", node.dependencies), ("dynamicImports", node.dynamic_dependencies)):
            refs = info.get(field_name) or []
            if not isinstance(refs, list):
                raise ManifestParseError(f"vite manifest: '{field_name}' of {key!r} must be a list")
            for ref in refs:
                if isinstance(ref, str) and ref in graph.nodes and ref != node.id:
                    target.add(ref)

    graph.sizes_known = sizes_seen
    return graph


_PARSERS: tuple[tuple[str, Callable[[Any], ModuleGraph]], ...] = (
    (ManifestFormat.WEBPACK, parse_webpack_stats),
    (ManifestFormat.VITE, parse_vite_manifest),
)


def parse_manifest(raw: bytes | str | dict[str, Any], format: str | None = None) -> ModuleGraph:
    """Parse a bundler manifest, probing each supported shape in priority order.

    Raises `ManifestParseError` when no parser accepts the structure.
    """
    if isinstance(raw, dict):
        obj: Any = raw
    else:
        try:
            obj = load_json_document(raw, what="manifest")
        except SourceMapParseError as exc:
            raise ManifestParseError(str(exc)) from exc

    hint = (format or "").strip().lower()
    if hint == "rollup":
        hint = ManifestFormat.VITE
    ordered = sorted(_PARSERS, key=lambda p: 0 if p[0] == hint else 1)

    errors: list[str] = []
    for name, parser in ordered:
        try:
            graph = parser(obj)
        except ManifestParseError as exc:
            errors.append(f"{name}: {exc}")
            continue
        _LOGGER.debug("manifest_parsed format=%s modules=%d", name, len(graph))
        return graph
    raise ManifestParseError("unrecognized manifest (" + "; ".join(errors) + ")")


# ─────────────────────────────────────────────────────────────────────────────
# Queries
# ─────────────────────────────────────────────────────────────────────────────


def largest_modules(graph: ModuleGraph, n: int) -> list[ModuleNode]:
    """Top `n` modules by size, ties broken by path."""
    ranked = sorted(graph.nodes.values(), key=lambda m: (-m.size, m.path))
    return ranked[: max(0, int(n))]


def _walk(start: str, neighbours: Callable[[str], Iterable[str]]) -> set[str]:
    seen: set[str] = {start}
    queue: deque[str] = deque([start])
    while queue:
        current = queue.popleft()
        for nxt in neighbours(current):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    seen.discard(start)
    return seen


def dependents_of(graph: ModuleGraph, module_id: str, *, include_dynamic: bool = True) -> set[str]:
    """Every module that (transitively) imports `module_id`."""
    module_id = str(module_id)
    if module_id not in graph.nodes:
        return set()
    rev = graph.reverse_edges(include_dynamic=include_dynamic)
    return _walk(module_id, lambda mid: rev.get(mid, ()))


def dependencies_of(graph: ModuleGraph, module_id: str, *, include_dynamic: bool = True) -> set[str]:
    """Every module `module_id` (transitively) imports."""
    module_id = str(module_id)
    if module_id not in graph.nodes:
        return set()
    return _walk(module_id, lambda mid: graph.edges(mid, include_dynamic=include_dynamic))


def _normalize_path(path: str) -> str:
    p = (path or "").strip().replace("\\", "/")
    for prefix in ("webpack:///", "webpack://", "./", "/"):
        if p.startswith(prefix):
            p = p[len(prefix) :]
    return p


def find_module(graph: ModuleGraph, path_or_id: str) -> ModuleNode | None:
    """Look up by id, then exact path, then suffix, then substring (shortest path wins)."""
    query = str(path_or_id or "").strip()
    if not query:
        return None
    if query in graph.nodes:
        return graph.nodes[query]

    wanted = _normalize_path(query)
    candidates = sorted(graph.nodes.values(), key=lambda m: (len(m.path), m.path))
    for node in candidates:
        if _normalize_path(node.path) == wanted:
            return node
    for node in candidates:
        p = _normalize_path(node.path)
        if p.endswith("/" + wanted) or wanted.endswith("/" + p):
            return node
    for node in candidates:
        p = _normalize_path(node.path)
        if wanted in p or (p and p in wanted):
            return node
    return None


def analyze_bundle_size(graph: ModuleGraph, threshold_bytes: int) -> dict[str, Any]:
    """Size breakdown plus optimization hints for modules above `threshold_bytes`."""
    total = graph.total_size()
    by_type: dict[str, dict[str, Any]] = {t: {"count": 0, "size": 0} for t in ("js", "css", "other")}
    for node in graph.nodes.values():
        bucket = by_type[file_type(node.file or node.path)]
        bucket["count"] += 1
        bucket["size"] += node.size
    for bucket in by_type.values():
        bucket["sizeKB"] = format_kb(bucket["size"])

    large = [
        {
            "id": node.id,
            "path": node.path,
            "size": node.size,
            "sizeKB": format_kb(node.size),
            "type": file_type(node.file or node.path),
            "percentage": f"{(node.size / total * 100) if total else 0.0:.2f}%",
        }
        for node in largest_modules(graph, len(graph))
        if node.size > threshold_bytes
    ]
    shared = sorted((n for n in graph.nodes.values() if len(n.chunks) > 1), key=lambda m: m.path)

    recommendations: list[str] = []
    if not graph.sizes_known:
        recommendations.append("Manifest carries no module sizes; fetch emitted assets to measure them.")
    if large:
        recommendations.append(
            f"Found {len(large)} module(s) exceeding {format_kb(threshold_bytes)}KB. Consider code splitting."
        )
    if by_type["js"]["size"] > 500 * KB:
        recommendations.append(
            f"Total JavaScript size is {format_kb(by_type['js']['size'])}KB. Consider lazy loading non-critical modules."
        )
    if len(graph.chunks) < 3 and total > 200 * KB:
        recommendations.append(
            f"Only {len(graph.chunks)} chunk(s) detected. Consider code splitting for better caching."
        )
    if len(shared) > 5:
        recommendations.append(
            f"{len(shared)} modules appear in multiple chunks. Consider a shared chunk or tree shaking."
        )
    if by_type["css"]["size"] > 100 * KB:
        recommendations.append(
            f"CSS size is {format_kb(by_type['css']['size'])}KB. Consider critical CSS extraction."
        )

    return {
        "total": total,
        "totalKB": format_kb(total),
        "totalMB": format_mb(total),
        "thresholdBytes": int(threshold_bytes),
        "byType": by_type,
        "large": large,
        "sharedModules": [n.id for n in shared],
        "recommendations": recommendations,
    }
