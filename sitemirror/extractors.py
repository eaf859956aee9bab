"""Find resource references in HTML and CSS, and rewrite them in place."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urldefrag, urljoin, urlsplit

from bs4 import BeautifulSoup

from sitemirror.rewrite import is_non_navigational

# (selector, attribute) pairs that hold references to other resources
REFERENCE_ATTRIBUTES: tuple[tuple[str, str], ...] = (
    ("a[href]", "href"),
    ("img[src]", "src"),
    ("img[srcset]", "srcset"),
    ("source[src]", "src"),
    ("source[srcset]", "srcset"),
    ("script[src]", "src"),
    ("video[poster]", "poster"),
    ("link[rel~=stylesheet][href]", "href"),
    ("link[rel~=icon][href]", "href"),
    ("link[rel~=apple-touch-icon][href]", "href"),
    ("link[rel~=canonical][href]", "href"),
    ("link[rel~=alternate][href]", "href"),
)
MULTI_VALUE_ATTRIBUTES = frozenset({"srcset"})

# Attributes that break once a resource is served from disk
STALE_ATTRIBUTES = ("integrity", "crossorigin", "referrerpolicy")

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(r"(@import\s+)([\"'])([^\"']+)\2", re.IGNORECASE)


@dataclass(frozen=True)
class DiscoveredReference:
    """A reference as written in a document, and where it was found."""

    source_url: str  # what raw is resolved against (document URL or <base href>)
    raw: str
    context: str  # selector/attribute or CSS construct

    @property
    def url(self) -> str:
        """Absolute URL without fragment."""
        return urldefrag(urljoin(self.source_url, self.raw))[0]


def _is_reference(raw: str | None) -> bool:
    return bool(raw and raw.strip()) and not is_non_navigational(raw)


def parse_srcset(srcset: str) -> list[tuple[str, str]]:
    """Split a srcset value into [(url, descriptor)], descriptor '' when missing."""
    entries: list[tuple[str, str]] = []
    for part in srcset.split(","):
        bits = part.strip().split(None, 1)
        if not bits:
            continue
        entries.append((bits[0], bits[1].strip() if len(bits) > 1 else ""))
    return entries


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        return urljoin(fallback, tag["href"])
    return fallback


def find_css_references(text: str, base_url: str, context: str = "css") -> set[DiscoveredReference]:
    """References in url(...) and @import "..." of a stylesheet or style attribute."""
    refs: set[DiscoveredReference] = set()
    for m in CSS_URL_RE.finditer(text):
        raw = m.group(2).strip()
        if _is_reference(raw):
            refs.add(DiscoveredReference(base_url, raw, f"{context}:url()"))
    for m in CSS_IMPORT_RE.finditer(text):
        raw = m.group(3).strip()
        if _is_reference(raw):
            refs.add(DiscoveredReference(base_url, raw, f"{context}:@import"))
    return refs


def find_html_references(soup: BeautifulSoup, url: str) -> set[DiscoveredReference]:
    """All references from the fixed attribute table plus inline CSS. Honors <base href>."""
    base = effective_base_url(soup, url)
    refs: set[DiscoveredReference] = set()
    for selector, attr in REFERENCE_ATTRIBUTES:
        for tag in soup.select(selector):
            value = tag.get(attr)
            if not isinstance(value, str):
                continue
            if attr in MULTI_VALUE_ATTRIBUTES:
                candidates = [u for u, _ in parse_srcset(value)]
            else:
                candidates = [value]
            for raw in candidates:
                if _is_reference(raw):
                    refs.add(DiscoveredReference(base, raw.strip(), selector))
    for style in soup.find_all("style"):
        refs |= find_css_references(style.string or "", base, "style")
    for tag in soup.select("[style]"):
        refs |= find_css_references(tag.get("style") or "", base, "[style]")
    return refs


def crawlable_urls(refs: set[DiscoveredReference]) -> list[str]:
    """Distinct absolute http(s) URLs of refs, sorted for stable job order."""
    urls = {r.url for r in refs}
    return sorted(u for u in urls if urlsplit(u).scheme.lower() in ("http", "https"))


def rewrite_css(text: str, mapper: Callable[[str], str]) -> str:
    """Replace every url(...) and @import target with mapper(raw)."""

    def repl_url(m: re.Match) -> str:
        q = m.group(1) or ""
        raw = m.group(2).strip()
        return f"url({q}{mapper(raw)}{q})"

    def repl_import(m: re.Match) -> str:
        return f"{m.group(1)}{m.group(2)}{mapper(m.group(3).strip())}{m.group(2)}"

    text = CSS_URL_RE.sub(repl_url, text)
    return CSS_IMPORT_RE.sub(repl_import, text)


def remove_base(soup: BeautifulSoup) -> None:
    """Drop <base href>: mirror-relative references must resolve against the file itself."""
    for tag in soup.find_all("base", href=True):
        tag.decompose()


def rewrite_html(soup: BeautifulSoup, mapper: Callable[[str], str]) -> int:
    """Apply mapper to every reference in soup; returns number of values changed."""
    changed = 0
    for selector, attr in REFERENCE_ATTRIBUTES:
        for tag in soup.select(selector):
            value = tag.get(attr)
            if not isinstance(value, str):
                continue
            if attr in MULTI_VALUE_ATTRIBUTES:
                parts = [
                    f"{mapper(u) if _is_reference(u) else u} {d}".strip()
                    for u, d in parse_srcset(value)
                ]
                new_value = ", ".join(parts)
            elif _is_reference(value):
                new_value = mapper(value.strip())
            else:
                continue
            if new_value != value:
                tag[attr] = new_value
                for stale in STALE_ATTRIBUTES:
                    if stale in tag.attrs:
                        del tag.attrs[stale]
                changed += 1
    for style in soup.find_all("style"):
        if style.string:
            new_text = rewrite_css(style.string, mapper)
            if new_text != style.string:
                style.string.replace_with(new_text)
                changed += 1
    for tag in soup.select("[style]"):
        css = tag.get("style") or ""
        new_css = rewrite_css(css, mapper)
        if new_css != css:
            tag["style"] = new_css
            changed += 1
    return changed
