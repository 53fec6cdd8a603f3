from __future__ import annotations

import json

import pytest

_WEBPACK_STATS = {
    "version": "5.88.0",
    "modules": [
        {
            "id": 0,
            "name": "./src/index.js",
            "size": 1200,
            "chunks": ["main"],
            "reasons": [{"type": "entry", "moduleId": None, "moduleName": None}],
        },
        {
            "id": 1,
            "name": "./src/app.js",
            "size": 4000,
            "chunks": ["main"],
            "reasons": [{"type": "harmony import specifier", "moduleId": 0, "moduleName": "./src/index.js"}],
        },
        {
            "id": 2,
            "name": "./node_modules/lodash/lodash.js",
            "size": 540000,
            "chunks": ["main", "vendors"],
            "reasons": [{"type": "cjs require", "moduleId": 1, "moduleName": "./src/app.js"}],
        },
        {
            "id": 3,
            "name": "./src/settings.js",
            "size": 900,
            "chunks": ["settings"],
            "reasons": [{"type": "import()", "moduleId": 1, "moduleName": "./src/app.js"}],
        },
        {
            "id": 4,
            "name": "./src/styles.css",
            "size": 300,
            "chunks": ["main"],
            "reasons": [{"type": "harmony side effect evaluation", "moduleName": "./src/index.js"}],
        },
    ],
    "entrypoints": {"main": {"chunks": ["main"]}},
}

_VITE_MANIFEST = {
    "index.html": {
        "file": "assets/index-abc.js",
        "src": "index.html",
        "isEntry": True,
        "imports": ["_vendor-123.js"],
        "dynamicImports": ["src/pages/About.vue"],
        "css": ["assets/index-def.css"],
    },
    "_vendor-123.js": {"file": "assets/vendor-123.js"},
    "src/pages/About.vue": {
        "file": "assets/About-456.js",
        "src": "src/pages/About.vue",
        "isDynamicEntry": True,
        "imports": ["_vendor-123.js"],
    },
}


def test_largest_module_from_minimal_webpack_stats() -> None:
    from mcp_servers.source_intel.bundle_graph import largest_modules, parse_manifest

    graph = parse_manifest(json.dumps({"modules": [{"id": 1, "size": 500}, {"id": 2, "size": 1500}]}))
    top = largest_modules(graph, 1)
    assert [m.id for m in top] == ["2"]
    assert graph.format == "webpack"


def test_parse_webpack_stats_builds_edges_from_reasons() -> None:
    from mcp_servers.source_intel.bundle_graph import parse_webpack_stats

    graph = parse_webpack_stats(_WEBPACK_STATS)
    assert len(graph) == 5
    assert graph.version == "5.88.0"
    assert graph.get("0").is_entry
    assert graph.edges("0") == {"1", "4"}
    assert graph.get("1").dependencies == {"2"}
    assert graph.get("1").dynamic_dependencies == {"3"}
    assert graph.edges("1", include_dynamic=False) == {"2"}
    assert sorted(graph.chunks) == ["main", "settings", "vendors"]
    assert graph.entrypoints == {"main": ["main"]}


def test_parse_webpack_stats_from_children_and_dependencies() -> None:
    from mcp_servers.source_intel.bundle_graph import parse_webpack_stats

    stats = {
        "children": [
            {
                "modules": [
                    {"id": "a", "name": "./a.js", "size": 10, "dependencies": [{"moduleId": "b"}]},
                    {"id": "b", "name": "./b.js", "size": 20},
                ]
            }
        ]
    }
    graph = parse_webpack_stats(stats)
    assert graph.edges("a") == {"b"}
    assert graph.total_size() == 30


def test_parse_vite_manifest() -> None:
    from mcp_servers.source_intel.bundle_graph import parse_manifest

    graph = parse_manifest(_VITE_MANIFEST)
    assert graph.format == "vite"
    assert not graph.sizes_known
    index = graph.get("index.html")
    assert index.is_entry
    assert index.file == "assets/index-abc.js"
    assert index.dependencies == {"_vendor-123.js"}
    assert index.dynamic_dependencies == {"src/pages/About.vue"}
    assert graph.entrypoints["index.html"] == ["assets/index-abc.js", "assets/index-def.css"]


def test_parse_manifest_honours_format_hint() -> None:
    from mcp_servers.source_intel.bundle_graph import parse_manifest

    assert parse_manifest(json.dumps(_VITE_MANIFEST), "rollup").format == "vite"
    assert parse_manifest(_WEBPACK_STATS, "webpack").format == "webpack"


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        "{}",
        json.dumps({"modules": [{"id": 1, "size": "big"}]}),
        json.dumps({"entry": {"src": "a.js"}}),
    ],
)
def test_parse_manifest_rejects_unknown_shapes(raw: str) -> None:
    from mcp_servers.source_intel.bundle_graph import parse_manifest
    from mcp_servers.source_intel.errors import ManifestParseError

    with pytest.raises(ManifestParseError):
        parse_manifest(raw)


def test_dependents_of_terminates_on_cycles() -> None:
    from mcp_servers.source_intel.bundle_graph import dependencies_of, dependents_of, parse_manifest

    graph = parse_manifest({"A": {"file": "a.js", "imports": ["B"]}, "B": {"file": "b.js", "imports": ["A"]}})
    assert dependents_of(graph, "A") == {"B"}
    assert dependencies_of(graph, "A") == {"B"}
    assert dependents_of(graph, "missing") == set()


def test_dependents_and_dependencies_are_transitive() -> None:
    from mcp_servers.source_intel.bundle_graph import dependencies_of, dependents_of, parse_webpack_stats

    graph = parse_webpack_stats(_WEBPACK_STATS)
    assert dependents_of(graph, "2") == {"0", "1"}
    assert dependencies_of(graph, "0") == {"1", "2", "3", "4"}
    assert dependencies_of(graph, "0", include_dynamic=False) == {"1", "2", "4"}


@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ("2", "2"),
        ("./src/app.js", "1"),
        ("src/app.js", "1"),
        ("/project/src/settings.js", "3"),
        ("lodash", "2"),
        ("does/not/exist.ts", None),
    ],
)
def test_find_module(query: str, expected: str | None) -> None:
    from mcp_servers.source_intel.bundle_graph import find_module, parse_webpack_stats

    node = find_module(parse_webpack_stats(_WEBPACK_STATS), query)
    assert (node.id if node else None) == expected


def test_analyze_bundle_size() -> None:
    from mcp_servers.source_intel.bundle_graph import analyze_bundle_size, parse_webpack_stats

    report = analyze_bundle_size(parse_webpack_stats(_WEBPACK_STATS), 100 * 1024)
    assert report["total"] == 546400
    assert [m["id"] for m in report["large"]] == ["2"]
    assert report["byType"]["css"]["count"] == 1
    assert report["byType"]["js"]["size"] == 546100
    assert report["sharedModules"] == ["2"]
    assert any("code splitting" in r for r in report["recommendations"])
    assert any("lazy loading" in r for r in report["recommendations"])


def test_analyze_bundle_size_flags_unknown_sizes() -> None:
    from mcp_servers.source_intel.bundle_graph import analyze_bundle_size, parse_manifest

    report = analyze_bundle_size(parse_manifest(_VITE_MANIFEST), 1024)
    assert report["total"] == 0
    assert report["large"] == []
    assert any("no module sizes" in r for r in report["recommendations"])


def test_summary_and_node_dict() -> None:
    from mcp_servers.source_intel.bundle_graph import parse_webpack_stats

    graph = parse_webpack_stats(_WEBPACK_STATS)
    summary = graph.summary()
    assert summary["type"] == "webpack"
    assert summary["totalModules"] == 5
    assert summary["largestModules"][0]["path"] == "./node_modules/lodash/lodash.js"
    node = graph.get("1").to_dict()
    assert node["dependencies"] == ["2"]
    assert node["dynamicDependencies"] == ["3"]
