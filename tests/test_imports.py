"""Tests for import scanning and package inference."""

from __future__ import annotations

import pytest

from codeapply.parsing.imports import (
    candidate_paths,
    extract_specifiers,
    find_missing_imports,
    infer_packages,
    is_valid_package_name,
    package_name,
)


class TestPackageName:
    """Tests for reducing specifiers to npm package names."""

    @pytest.mark.parametrize(
        "specifier",
        [
            "./Button",
            "../utils/format",
            "/abs/path",
            "@/components/ui/button",
            "~/lib/api",
            "react",
            "react-dom",
            "react-dom/client",
            "fs",
            "child_process",
            "node:path",
        ],
    )
    def test_excluded_specifiers(self, specifier):
        assert package_name(specifier) is None

    def test_scoped_package_reduced_to_scope_and_name(self):
        assert package_name("@heroicons/react/24/outline") == "@heroicons/react"

    def test_subpath_reduced_to_first_segment(self):
        assert package_name("lodash/debounce") == "lodash"


class TestIsValidPackageName:
    @pytest.mark.parametrize("name", ["lodash", "@heroicons/react", "framer-motion", "lodash@4.17.21", "date-fns@^3"])
    def test_valid(self, name):
        assert is_valid_package_name(name)

    @pytest.mark.parametrize(
        "name",
        ["lodash; touch /tmp/x", "react router", "$(whoami)", "a`b`", "../evil", "@scope/", ""],
    )
    def test_invalid(self, name):
        assert not is_valid_package_name(name)


class TestExtractSpecifiers:
    def test_all_import_forms(self):
        source = """
import React, { useState } from 'react';
import * as Icons from "lucide-react";
import {
  motion,
  AnimatePresence,
} from 'framer-motion';
import 'swiper/css';
export { format } from "date-fns";
const axios = require('axios');
const Chart = React.lazy(() => import('./Chart'));
"""
        assert extract_specifiers(source) == [
            "react",
            "lucide-react",
            "framer-motion",
            "swiper/css",
            "date-fns",
            "axios",
            "./Chart",
        ]


class TestInferPackages:
    def test_only_script_files_are_scanned(self):
        files = [
            ("src/App.jsx", "import axios from 'axios';"),
            ("src/index.css", "@import 'tailwindcss';"),
            ("README.md", "import nope from 'nope';"),
        ]
        assert infer_packages(files) == ["axios"]

    def test_deduplicates_across_files(self):
        files = [
            ("src/A.tsx", "import { z } from 'zod';\nimport { Link } from 'react-router-dom';"),
            ("src/B.ts", "import { z } from 'zod';"),
        ]
        assert infer_packages(files) == ["zod", "react-router-dom"]


class TestMissingImports:
    """Tests for relative-import target resolution."""

    def test_candidate_paths(self):
        assert candidate_paths("src/App.jsx", "./components/Hero")[:4] == [
            "src/components/Hero.jsx",
            "src/components/Hero.js",
            "src/components/Hero.tsx",
            "src/components/Hero.ts",
        ]
        assert "src/components/Hero/index.jsx" in candidate_paths("src/App.jsx", "./components/Hero")

    def test_present_and_missing(self):
        source = (
            "import Hero from './components/Hero';\n"
            "import Footer from './components/Footer';\n"
            "import './index.css';\n"
        )
        missing = find_missing_imports("src/App.jsx", source, {"src/components/Hero.jsx"})
        assert missing == ["./components/Footer"]

    def test_index_file_counts_as_present(self):
        source = "import Nav from './Nav';"
        assert find_missing_imports("src/App.jsx", source, {"src/Nav/index.tsx"}) == []
