"""
Export helpers: title refinement, filename sanitizing and the print wrapper
used when rendering extracted HTML to PDF.
"""

from __future__ import annotations

import html
import re
from datetime import datetime
from typing import Any, Iterable

from lxml import html as lxml_html
from lxml.etree import ParserError

PLACEHOLDER_TITLES = {"", "untitled"}

_MARKDOWN_HEADING = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_UNSAFE_FILENAME = re.compile(r"[<>:\"|?*#%&{}$!@`+=~^]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_PLATFORM_SUFFIXES = (
    re.compile(r"\s*[-|｜]\s*(feishu|lark)\s*docs?$", re.IGNORECASE),
    re.compile(r"\s*[-|｜]\s*飞书(云)?文档$"),
    re.compile(r"\s*[-|｜]\s*文档$"),
)

MAX_FILENAME_LENGTH = 200


def sanitize_filename(name: str | None) -> str:
    """Make ``name`` safe to use as a file name on common filesystems."""
    if not name:
        return "document"

    safe = re.sub(r"[\\/]", "_", name)
    safe = _UNSAFE_FILENAME.sub("", safe)
    safe = _CONTROL_CHARS.sub("", safe)
    safe = re.sub(r"^\.+", "", safe)
    safe = re.sub(r"\s+", " ", safe).strip()

    if not safe:
        return "document"
    return safe[:MAX_FILENAME_LENGTH]


def normalize_export_title(title: str | None) -> str:
    """Strip hosting-platform suffixes such as ``" - Feishu Docs"``."""
    if not title:
        return ""
    for pattern in _PLATFORM_SUFFIXES:
        title = pattern.sub("", title)
    return title.strip()


def heading_title(content: str | None, output_format: str | None) -> str | None:
    """Return the first top-level heading of extracted content.

    HTML output (``html`` / ``pdf``) is searched for the first ``<h1>``;
    anything else is treated as Markdown and searched for a ``# `` line.
    """
    if not content:
        return None

    if output_format in ("html", "pdf"):
        try:
            tree = lxml_html.fromstring(content)
        except (ParserError, ValueError):
            return None
        headings = tree.xpath("//h1")
        if not headings:
            return None
        text = headings[0].text_content().strip()
        return text or None

    match = _MARKDOWN_HEADING.search(content)
    if match:
        return match.group(1).strip() or None
    return None


def is_placeholder_title(title: str | None) -> bool:
    return (title or "").strip().lower() in PLACEHOLDER_TITLES


def fallback_title(now: datetime | None = None) -> str:
    """Generated label used when neither content nor page provide a title."""
    now = now or datetime.now()
    return f"Doc {int(now.timestamp() * 1000)}"


def inline_images(content: str, images: Iterable[dict[str, Any]]) -> str:
    """Replace ``images/<filename>`` references with embedded data URIs."""
    for image in images:
        data = image.get("base64")
        filename = image.get("filename")
        if data and filename:
            content = content.replace(f"images/{filename}", data)
    return content


PRINT_STYLES = """\
*{margin:0;padding:0;box-sizing:border-box}
body{font-family:-apple-system,BlinkMacSystemFont,'Segoe UI','PingFang SC','Microsoft YaHei',Helvetica,Arial,sans-serif;color:#1a1a1a;line-height:1.8}
.document-body{padding:1.5cm 2cm}
.document-body h1{font-size:26px;font-weight:800;margin:0 0 20px 0;border-bottom:2px solid #e5e7eb;padding-bottom:10px}
.document-body h2{font-size:21px;font-weight:700;margin:28px 0 14px 0}
.document-body h3{font-size:17px;font-weight:600;margin:22px 0 10px 0}
.document-body p{margin:0 0 10px 0}
.document-body ul,.document-body ol{margin:0 0 14px 0;padding-left:24px}
.document-body blockquote{margin:14px 0;padding:10px 18px;border-left:4px solid #6366f1;background:#f8fafc}
.document-body pre{margin:14px 0;padding:14px 18px;background:#f3f4f6;border:1px solid #d1d5db;border-radius:6px;font-size:12px;white-space:pre-wrap}
.document-body img{max-width:100%;height:auto}
.document-body table{width:100%;border-collapse:collapse;margin:14px 0;font-size:12px}
.document-body table td,.document-body table th{border:1px solid #d1d5db;padding:6px 10px}
@page{margin:0;size:A4}
@media print{
  *{-webkit-print-color-adjust:exact!important;print-color-adjust:exact!important}
  .document-body img,.document-body tr{page-break-inside:avoid}
  .document-body h1,.document-body h2,.document-body h3{page-break-after:avoid}
}
"""


def build_print_html(content: str, title: str) -> str:
    """Wrap extracted HTML in a standalone, print-styled document."""
    return (
        "<!DOCTYPE html>\n"
        "<html>\n<head>\n<meta charset=\"UTF-8\">\n"
        f"<title>{html.escape(title)}</title>\n"
        f"<style>\n{PRINT_STYLES}</style>\n"
        "</head>\n<body>\n<article class=\"document-body\">\n"
        f"{content}\n"
        "</article>\n</body>\n</html>"
    )
