from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from bs4 import BeautifulSoup, Comment
from bs4.element import Tag
from markdownify import markdownify

logger = logging.getLogger(__name__)

# Dropped with their content; nothing inside them matters for extraction
_REMOVE_TAGS = (
    "script", "noscript", "iframe", "object", "embed", "applet", "svg", "style", "img",
    "button", "input", "textarea", "select", "form", "picture", "source", "video",
    "audio", "canvas",
)

_KEEP_LINK_REL = {"canonical", "alternate"}
_KEEP_META = {"description", "og:url", "og:title", "og:description"}

_NOISE_ATTRS = {
    "style", "class", "role", "tabindex", "loading", "decoding", "fetchpriority",
    "draggable", "hidden", "contenteditable", "spellcheck", "autocapitalize",
    "autocomplete", "autocorrect",
}


@dataclass
class CleanupResult:
    cleaned_html: str
    original_size: int
    cleaned_size: int
    elements_removed: int


def _is_noise_attr(name: str) -> bool:
    k = name.lower()
    return k in _NOISE_ATTRS or k.startswith(("data-", "aria-", "on"))


def clean(raw_html: str, base_url: str = "") -> CleanupResult:
    """
    Strip a rendered page down to links, key meta and text structure.

    Every <a href> survives, as do canonical/alternate links and the
    description/og meta tags. Scripts, media, form controls, comments and
    presentational attributes go.
    """
    original_size = len(raw_html or "")
    if not raw_html:
        return CleanupResult("", 0, 0, 0)

    try:
        soup = BeautifulSoup(raw_html, "lxml")
    except Exception:
        soup = BeautifulSoup(raw_html, "html.parser")

    removed = 0
    for c in list(soup.find_all(string=lambda t: isinstance(t, Comment))):
        c.extract()
        removed += 1

    for tag in list(soup.find_all(_REMOVE_TAGS)):
        if isinstance(tag, Tag) and not tag.decomposed:
            tag.decompose()
            removed += 1

    for link in list(soup.find_all("link")):
        rel = " ".join(link.get("rel") or []).lower().strip()
        if rel not in _KEEP_LINK_REL:
            link.decompose()
            removed += 1

    for meta in list(soup.find_all("meta")):
        name = (meta.get("name") or "").lower()
        prop = (meta.get("property") or "").lower()
        if meta.get("charset") or name in _KEEP_META or prop in _KEEP_META:
            continue
        meta.decompose()
        removed += 1

    for el in soup.find_all(True):
        if not isinstance(el, Tag) or not el.attrs:
            continue
        for attr in [a for a in el.attrs if _is_noise_attr(a)]:
            del el.attrs[attr]

    cleaned = str(soup)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    cleaned = re.sub(r"[^\S\n]{2,}", " ", cleaned)
    cleaned = re.sub(r"[ \t]+$", "", cleaned, flags=re.M)

    logger.debug("cleaned %s: %d -> %d chars, %d elements removed", base_url, original_size, len(cleaned), removed)
    return CleanupResult(
        cleaned_html=cleaned,
        original_size=original_size,
        cleaned_size=len(cleaned),
        elements_removed=removed,
    )


def markdown_excerpt(cleaned_html: str, limit: int = 2000) -> str:
    """First `limit` chars of the page as markdown, boilerplate lines dropped."""
    if not cleaned_html:
        return ""
    md = markdownify(cleaned_html, heading_style="atx").strip()
    lines = []
    blank = False
    for ln in (x.rstrip() for x in md.splitlines()):
        if ln.lower().startswith(("cookie", "privacy policy", "terms of", "subscribe")):
            continue
        if not ln.strip():
            if not blank:
                lines.append("")
            blank = True
            continue
        lines.append(ln)
        blank = False
    return "\n".join(lines).strip()[:limit]
