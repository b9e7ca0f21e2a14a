from __future__ import annotations

import pytest

from src.code_apply.file_stream import FileStreamParser
from src.code_apply.response_parser import (
    is_config_file,
    normalize_file_path,
    parse_generated_response,
    parsed_from_stream,
)


def test_normalize_file_path():
    assert normalize_file_path("/App.jsx") == "src/App.jsx"
    assert normalize_file_path("components/Nav.jsx") == "src/components/Nav.jsx"
    assert normalize_file_path("src/App.jsx") == "src/App.jsx"
    assert normalize_file_path("public/logo.svg") == "public/logo.svg"
    assert normalize_file_path("index.html") == "index.html"
    assert normalize_file_path("package.json") == "package.json"
    with pytest.raises(ValueError):
        normalize_file_path("../secrets")
    with pytest.raises(ValueError):
        normalize_file_path("  ")


def test_is_config_file():
    assert is_config_file("vite.config.js")
    assert not is_config_file("src/vite.config.js")
    assert not is_config_file("src/App.jsx")


def test_parse_full_response():
    text = """
<explanation>Adds a header.</explanation>
<structure>src/ App.jsx Header.jsx</structure>
<file path="App.jsx">import Header from './Header'
import axios from 'axios'
export default function App() { return <Header /> }</file>
<file path="src/Header.jsx">import { motion } from 'framer-motion'
export default () => null</file>
<file path="vite.config.js">export default {}</file>
<package>lodash</package>
<packages>
date-fns, zod
</packages>
<command>npm run lint</command>
"""

    parsed = parse_generated_response(text, known_files={"src/App.jsx"})

    assert [f.path for f in parsed.files] == ["src/App.jsx", "src/Header.jsx"]
    assert parsed.files[0].change_type == "modified"
    assert parsed.files[1].change_type == "created"
    assert parsed.skipped_files == ["vite.config.js"]
    assert parsed.packages == ["axios", "framer-motion", "lodash", "date-fns", "zod"]
    assert parsed.commands == ["npm run lint"]
    assert parsed.explanation == "Adds a header."
    assert parsed.structure == "src/ App.jsx Header.jsx"


def test_import_detection_can_be_disabled():
    parsed = parse_generated_response(
        '<file path="src/a.js">import x from "axios"</file>', detect_imports=False
    )
    assert parsed.packages == []


def test_truncated_block_is_not_applied(caplog):
    parser = FileStreamParser(normalize_path=normalize_file_path)
    parser.feed('<file path="src/ok.js">ok</file><file path="src/cut.js">half')

    with caplog.at_level("WARNING"):
        parsed = parsed_from_stream(parser)

    assert [f.path for f in parsed.files] == ["src/ok.js"]
    assert "truncated" in caplog.text
