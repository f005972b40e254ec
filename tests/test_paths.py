"""Tests for path normalization and content sanitizing."""

from __future__ import annotations

import pytest

from codeapply.pipeline.paths import is_protected, normalize_path, sanitize_content


class TestNormalizePath:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Foo.jsx", "src/Foo.jsx"),
            ("/Foo.jsx", "src/Foo.jsx"),
            ("components/Nav.jsx", "src/components/Nav.jsx"),
            ("src/App.jsx", "src/App.jsx"),
            ("/src/App.jsx", "src/App.jsx"),
            ("public/logo.png", "public/logo.png"),
            ("index.html", "index.html"),
            ("package.json", "package.json"),
            ("tailwind.config.js", "tailwind.config.js"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_path(raw) == expected

    def test_custom_protected_list(self):
        assert normalize_path("eslint.config.js", protected=["eslint.config.js"]) == "eslint.config.js"


class TestIsProtected:
    def test_basename_match(self):
        assert is_protected("package.json")
        assert is_protected("nested/vite.config.js")
        assert not is_protected("src/App.jsx")


class TestSanitizeContent:
    def test_strips_relative_css_imports_from_scripts(self):
        source = "import React from 'react';\nimport './App.css';\nexport default App;\n"
        assert sanitize_content("src/App.jsx", source) == "import React from 'react';\nexport default App;\n"

    def test_keeps_css_imports_in_non_script_files(self):
        source = "import './App.css';"
        assert sanitize_content("src/notes.md", source) == source

    def test_rewrites_oversized_shadows_in_css(self):
        css = ".a { @apply shadow-3xl; } .b { @apply shadow-5xl; } .c { @apply shadow-xl; }"
        assert sanitize_content("src/index.css", css) == (
            ".a { @apply shadow-2xl; } .b { @apply shadow-2xl; } .c { @apply shadow-xl; }"
        )

    def test_shadows_untouched_in_scripts(self):
        source = '<div className="shadow-3xl" />'
        assert sanitize_content("src/A.jsx", source) == source
