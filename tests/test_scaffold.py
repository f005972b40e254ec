"""Tests for App.jsx synthesis."""

from __future__ import annotations

from codeapply.pipeline.scaffold import (
    build_app,
    component_files,
    import_path,
    needs_app,
    needs_index_css,
    pick_main_component,
)


class TestComponentSelection:
    def test_entry_files_and_non_components_excluded(self):
        paths = ["src/App.jsx", "src/main.jsx", "src/index.css", "src/Button.jsx", "src/components/Card.tsx"]
        assert component_files(paths) == ["src/Button.jsx", "src/components/Card.tsx"]

    def test_main_component_by_name(self):
        components = ["src/components/Card.jsx", "src/components/HeroSection.jsx"]
        assert pick_main_component(components) == "src/components/HeroSection.jsx"

    def test_main_component_falls_back_to_first(self):
        assert pick_main_component(["src/Button.jsx", "src/Card.jsx"]) == "src/Button.jsx"
        assert pick_main_component([]) is None

    def test_import_paths_relative_to_src(self):
        assert import_path("src/Button.jsx") == "./Button"
        assert import_path("src/components/Nav.tsx") == "./components/Nav"


class TestBuildApp:
    def test_imports_and_renders_main_component(self):
        source = build_app(["src/Button.jsx", "src/components/Header.jsx"])

        assert "import Button from './Button';" in source
        assert "import Header from './components/Header';" in source
        assert "<Header />" in source
        assert "export default App;" in source

    def test_placeholder_without_components(self):
        source = build_app(["src/styles.css"])
        assert "Welcome to your React App" in source


class TestNeeds:
    def test_needs_app(self):
        assert needs_app(["src/Button.jsx"])
        assert not needs_app(["src/App.tsx"])

    def test_needs_index_css(self):
        assert needs_index_css(["src/App.jsx"])
        assert not needs_index_css(["src/index.css"])
