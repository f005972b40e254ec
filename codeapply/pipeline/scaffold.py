"""Entry-point synthesis for fresh generations that did not ship an App."""

from __future__ import annotations

import posixpath
from typing import Iterable


APP_PATH = "src/App.jsx"
APP_PATHS = ("src/App.jsx", "src/App.tsx")
INDEX_CSS_PATH = "src/index.css"

COMPONENT_EXTENSIONS = (".jsx", ".tsx")
ENTRY_STEMS = ("App", "main", "index")
MAIN_COMPONENT_HINTS = ("header", "hero", "layout", "main", "home")

INDEX_CSS = """@tailwind base;
@tailwind components;
@tailwind utilities;

:root {
  font-family: Inter, system-ui, Avenir, Helvetica, Arial, sans-serif;
  line-height: 1.5;
  font-weight: 400;
  color-scheme: dark;
  color: rgba(255, 255, 255, 0.87);
  background-color: #0a0a0a;
}

* {
  box-sizing: border-box;
}

body {
  margin: 0;
  min-width: 320px;
  min-height: 100vh;
}
"""


def component_name(path: str) -> str:
    stem = posixpath.splitext(posixpath.basename(path))[0]
    return stem[:1].upper() + stem[1:]


def component_files(paths: Iterable[str]) -> list[str]:
    """Generated component files (normalized paths), entry files excluded."""
    components: list[str] = []
    for path in paths:
        if not path.endswith(COMPONENT_EXTENSIONS):
            continue
        stem = posixpath.splitext(posixpath.basename(path))[0]
        if stem in ENTRY_STEMS:
            continue
        if path not in components:
            components.append(path)
    return components


def pick_main_component(components: list[str]) -> str | None:
    for path in components:
        name = posixpath.basename(path).lower()
        if any(hint in name for hint in MAIN_COMPONENT_HINTS):
            return path
    return components[0] if components else None


def import_path(path: str) -> str:
    """Import specifier for a component, relative to src/App.jsx."""
    relative = posixpath.relpath(posixpath.splitext(path)[0], "src")
    return relative if relative.startswith("../") else f"./{relative}"


def build_app(paths: Iterable[str]) -> str:
    """Source for an App.jsx that imports every component and renders the main one."""
    components = component_files(paths)
    main = pick_main_component(components)

    used: set[str] = set()
    imports: list[str] = []
    names: dict[str, str] = {}
    for path in components:
        name = component_name(path)
        if name in used:
            continue
        used.add(name)
        names[path] = name
        imports.append(f"import {name} from '{import_path(path)}';")

    if main is not None:
        body = f"      <{names[main]} />"
    else:
        body = (
            '      <div className="text-center">\n'
            '        <h1 className="text-4xl font-bold mb-4">Welcome to your React App</h1>\n'
            '        <p className="text-gray-400">Your components have been created but need to be added here.</p>\n'
            "      </div>"
        )

    lines = ["import React from 'react';", *imports, "", "function App() {", "  return (",
             '    <div className="min-h-screen bg-gray-900 text-white p-8">', body]
    if components:
        lines.append(f"      {{/* Generated components: {', '.join(components)} */}}")
    lines += ["    </div>", "  );", "}", "", "export default App;", ""]
    return "\n".join(lines)


def needs_app(paths: Iterable[str]) -> bool:
    present = set(paths)
    return not any(p in present for p in APP_PATHS)


def needs_index_css(paths: Iterable[str]) -> bool:
    return INDEX_CSS_PATH not in set(paths)
