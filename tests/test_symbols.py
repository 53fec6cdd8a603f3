from __future__ import annotations

import pytest

_MODULE = """import React, { useState as useLocalState, useEffect } from "react";
import * as path from 'path';
import type { Props } from './types';
import './side-effect.css';

export interface ButtonProps {
  label: string;
}
type Handler<T> = (value: T) => void;
export const enum Mode { Light, Dark }

export function render(root) {
  return root;
}
export default class App extends React.Component {}
export { helper, util as tools };
const helper = () => 1;
export async function loadUser(id) {}
"""


def test_extract_exports() -> None:
    from mcp_servers.source_intel.symbols import extract_exports

    out = [(s.name, s.kind, s.line) for s in extract_exports(_MODULE)]
    assert out == [
        ("ButtonProps", "interface", 6),
        ("Mode", "enum", 10),
        ("render", "function", 12),
        ("App", "default", 15),
        ("helper", "named", 16),
        ("tools", "named", 16),
        ("loadUser", "function", 18),
    ]


def test_extract_exports_anonymous_default() -> None:
    from mcp_servers.source_intel.symbols import extract_exports

    assert [s.name for s in extract_exports("export default function () {}")] == ["default"]
    assert [s.name for s in extract_exports("export default {\n  name: 'x',\n};")] == ["default"]


def test_extract_imports() -> None:
    from mcp_servers.source_intel.symbols import extract_imports

    out = [s.to_dict() for s in extract_imports(_MODULE)]
    assert out == [
        {"name": "React", "type": "default", "line": 1, "from": "react"},
        {"name": "useState", "type": "named", "line": 1, "from": "react"},
        {"name": "useEffect", "type": "named", "line": 1, "from": "react"},
        {"name": "path", "type": "namespace", "line": 2, "from": "path"},
        {"name": "Props", "type": "named", "line": 3, "from": "./types"},
    ]


def test_extract_types() -> None:
    from mcp_servers.source_intel.symbols import extract_types

    out = [(s.name, s.kind, s.line) for s in extract_types(_MODULE)]
    assert out == [("ButtonProps", "interface", 6), ("Handler", "type", 9), ("Mode", "enum", 10)]


@pytest.mark.parametrize(
    ("name", "line", "column"),
    [("render", 12, 16), ("App", 15, 21), ("helper", 17, 6), ("loadUser", 18, 22)],
)
def test_find_definition(name: str, line: int, column: int) -> None:
    from mcp_servers.source_intel.symbols import find_definition

    found = find_definition(_MODULE, name)
    assert found is not None
    assert (found.line, found.column) == (line, column)
    assert name in found.code.splitlines()[0]


def test_find_definition_misses() -> None:
    from mcp_servers.source_intel.symbols import find_definition

    assert find_definition(_MODULE, "nothing") is None
    # a call site is not a definition
    assert find_definition("render(root);\n", "render") is None
    assert find_definition(_MODULE, "render(") is None


def test_find_definition_includes_following_lines() -> None:
    from mcp_servers.source_intel.symbols import DEFINITION_CONTEXT_LINES, find_definition

    text = "function f() {\n" + "\n".join(f"  step{i}();" for i in range(10)) + "\n}"
    found = find_definition(text, "f")
    assert found is not None
    assert len(found.code.splitlines()) == DEFINITION_CONTEXT_LINES + 1
