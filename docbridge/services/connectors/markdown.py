"""
DocBridge - HTML to Markdown
============================

HTML cleanup and markdown conversion used by the Google Drive export path
and the URL importer.
"""

import re
from typing import Iterable, Optional

import html2text
from bs4 import BeautifulSoup

BOILERPLATE_TAGS = ["script", "style", "nav", "header", "footer", "aside", "iframe", "noscript"]


def html_to_markdown(html: str, include_links: bool = True, include_images: bool = True) -> str:
    """Convert HTML to markdown without line wrapping."""
    h = html2text.HTML2Text()
    h.body_width = 0  # Don't wrap lines
    h.ignore_links = not include_links
    h.ignore_images = not include_images
    h.ignore_tables = False
    h.unicode_snob = True
    return normalize_markdown(h.handle(html))


def normalize_markdown(text: str) -> str:
    """Collapse runs of blank lines and trim trailing whitespace."""
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def strip_boilerplate(soup: BeautifulSoup, extra_selectors: Optional[Iterable[str]] = None) -> BeautifulSoup:
    """Remove script, navigation and other non-content elements in place."""
    for element in soup(BOILERPLATE_TAGS):
        element.decompose()

    for selector in extra_selectors or []:
        for element in soup.select(selector):
            element.decompose()

    return soup
