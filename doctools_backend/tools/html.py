from __future__ import annotations

import re
from dataclasses import dataclass

from bs4 import BeautifulSoup
from bs4.element import Tag


_STRIPPED_TAGS = ("script", "iframe", "frame", "object", "embed")
_URL_ATTRS = ("src", "srcset", "href", "data", "poster")

_CSS_IMPORT_RE = re.compile(r"@import\s+[^;]*;?", re.IGNORECASE)
_CSS_URL_RE = re.compile(r"url\(\s*(['\"]?)(.*?)\1\s*\)", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class PreparedHtml:
    html: str
    removed_elements: int


def _is_remote(url: str) -> bool:
    lowered = url.strip().lower()
    return lowered.startswith(("http://", "https://", "//", "file:", "javascript:"))


def _clean_css(css: str) -> tuple[str, int]:
    """Drop ``@import`` rules and blank remote ``url(...)`` references."""
    removed = 0

    def _url(m: re.Match) -> str:
        nonlocal removed
        if _is_remote(m.group(2)):
            removed += 1
            return "none"
        return m.group(0)

    css, imports = _CSS_IMPORT_RE.subn("", css)
    css = _CSS_URL_RE.sub(_url, css)
    return css, removed + imports


def prepare_html(html_text: str) -> PreparedHtml:
    """Make an uploaded HTML document safe to print in headless Chromium.

    Rules:
    - drop active content (scripts, frames, plugins);
    - drop inline event handlers (``on*`` attributes);
    - neutralize remote or file: URLs, in attributes and in CSS, so rendering
      never reaches the network or the server's filesystem. Inline ``data:``
      URLs are kept.
    """
    soup = BeautifulSoup(html_text or "", "html.parser")
    removed = 0

    for tag in soup.find_all(list(_STRIPPED_TAGS)):
        if isinstance(tag, Tag):
            tag.decompose()
            removed += 1

    for style in soup.find_all("style"):
        if isinstance(style, Tag):
            css, count = _clean_css(style.get_text())
            if count:
                style.string = css
                removed += count

    for tag in soup.find_all(True):
        if not isinstance(tag, Tag):
            continue
        for attr in list(tag.attrs):
            if attr.lower().startswith("on"):
                del tag[attr]
        inline = tag.get("style")
        if isinstance(inline, str):
            css, count = _clean_css(inline)
            if count:
                tag["style"] = css
                removed += count
        for attr in _URL_ATTRS:
            # Hyperlinks are not fetched while printing.
            if tag.name == "a" and attr == "href":
                continue
            value = tag.get(attr)
            if isinstance(value, str) and _is_remote(value):
                del tag[attr]
                removed += 1

    return PreparedHtml(html=str(soup), removed_elements=removed)
