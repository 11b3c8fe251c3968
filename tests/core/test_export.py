"""Tests for export helpers (titles, filenames, print wrapper)."""

from __future__ import annotations

from datetime import datetime

from docharvest.core.export import (
    build_print_html,
    fallback_title,
    heading_title,
    inline_images,
    is_placeholder_title,
    normalize_export_title,
    sanitize_filename,
)


class TestSanitizeFilename:
    def test_strips_unsafe_characters(self) -> None:
        assert sanitize_filename('Plan: "Q3" <draft>?') == "Plan Q3 draft"

    def test_slashes_become_underscores(self) -> None:
        assert sanitize_filename("a/b\\c") == "a_b_c"

    def test_leading_dots_and_whitespace(self) -> None:
        assert sanitize_filename("..hidden   name ") == "hidden name"

    def test_empty_falls_back(self) -> None:
        assert sanitize_filename("") == "document"
        assert sanitize_filename(None) == "document"
        assert sanitize_filename("???") == "document"

    def test_length_is_capped(self) -> None:
        assert len(sanitize_filename("x" * 500)) == 200


class TestTitles:
    def test_platform_suffixes_are_removed(self) -> None:
        assert normalize_export_title("Roadmap - Feishu Docs") == "Roadmap"
        assert normalize_export_title("Roadmap | Lark Doc") == "Roadmap"
        assert normalize_export_title("周报 - 飞书云文档") == "周报"
        assert normalize_export_title("Plain") == "Plain"
        assert normalize_export_title(None) == ""

    def test_markdown_heading(self) -> None:
        content = "intro\n# First Heading\n## Sub\n# Second"
        assert heading_title(content, "markdown") == "First Heading"

    def test_html_heading(self) -> None:
        content = "<div><p>x</p><h1> Report <b>2024</b></h1><h1>Other</h1></div>"
        assert heading_title(content, "html") == "Report 2024"
        assert heading_title(content, "pdf") == "Report 2024"

    def test_no_heading(self) -> None:
        assert heading_title("## only level two", "markdown") is None
        assert heading_title("<p>none</p>", "html") is None
        assert heading_title("", "markdown") is None
        assert heading_title(None, "html") is None

    def test_placeholders(self) -> None:
        assert is_placeholder_title("Untitled") is True
        assert is_placeholder_title("  ") is True
        assert is_placeholder_title(None) is True
        assert is_placeholder_title("Notes") is False

    def test_fallback_title(self) -> None:
        now = datetime.fromtimestamp(1_700_000_000.5)
        assert fallback_title(now) == "Doc 1700000000500"


class TestPrintHtml:
    def test_inline_images(self) -> None:
        content = '<img src="images/a.png"><img src="images/b.png">'
        images = [
            {"filename": "a.png", "base64": "data:image/png;base64,AAA"},
            {"filename": "b.png"},
        ]
        assert inline_images(content, images) == '<img src="data:image/png;base64,AAA"><img src="images/b.png">'

    def test_wrapper_escapes_title(self) -> None:
        document = build_print_html("<p>body</p>", "A & B <C>")
        assert "<title>A &amp; B &lt;C&gt;</title>" in document
        assert '<article class="document-body">\n<p>body</p>\n</article>' in document
        assert document.startswith("<!DOCTYPE html>")
