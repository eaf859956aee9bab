"""MIME type detection and classification into parse strategies."""

from __future__ import annotations

import mimetypes
import re
from enum import Enum
from typing import Mapping
from urllib.parse import urlsplit

from sitemirror.errors import UnsupportedMimeTypeError


class MimeKind(str, Enum):
    """How the pipeline treats a MIME type."""

    HTML = "html"
    CSS = "css"
    PASS_THROUGH = "pass-through"  # stored as-is, never parsed for references
    UNSUPPORTED = "unsupported"


DEFAULT_KINDS: dict[str, MimeKind] = {
    "text/html": MimeKind.HTML,
    "application/xhtml+xml": MimeKind.HTML,
    "text/css": MimeKind.CSS,
}

# Content that needs no parsing: scripts, images, fonts, documents, feeds, data
PASS_THROUGH_TYPES = (
    "application/javascript",
    "text/javascript",
    "text/plain",
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/gif",
    "image/webp",
    "image/svg+xml",
    "image/avif",
    "image/apng",
    "image/bmp",
    "image/tiff",
    "image/x-icon",
    "image/vnd.microsoft.icon",
    "text/xml",
    "application/xml",
    "application/json",
    "application/vnd.oasis.opendocument.text",
    "application/pdf",
    "application/epub+zip",
    "application/x-font-ttf",
    "font/ttf",
    "font/otf",
    "font/woff",
    "font/woff2",
    "application/vnd.ms-fontobject",
    "application/rss+xml",
    "application/atom+xml",
    "application/rdf+xml",
    "application/x-rss+xml",
    "application/x-www-form-urlencoded",
    "application/x-shockwave-flash",
)
DEFAULT_KINDS.update({t: MimeKind.PASS_THROUGH for t in PASS_THROUGH_TYPES})

# Extension fallback only; built-in table so results do not depend on the host system
_MIME_DB = mimetypes.MimeTypes()
_EXTRA_EXTENSIONS = {
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".eot": "application/vnd.ms-fontobject",
    ".webp": "image/webp",
    ".avif": "image/avif",
    ".ico": "image/x-icon",
    ".svg": "image/svg+xml",
    ".js": "application/javascript",
    ".mjs": "application/javascript",
}

_HTML_SNIFF_RE = re.compile(rb"^\s*(<!--.*?-->\s*)*<(!doctype\s+html|html|head|body)[\s>]", re.IGNORECASE | re.DOTALL)


def mime_without_encoding(content_type: str | None) -> str | None:
    """'text/html; charset=utf-8' -> 'text/html'. None/blank -> None."""
    if not content_type:
        return None
    mime = content_type.split(";", 1)[0].strip().lower()
    return mime or None


def charset_of(content_type: str | None, default: str = "utf-8") -> str:
    """Charset parameter of a Content-Type header, or default."""
    if content_type:
        m = re.search(r"charset\s*=\s*[\"']?([\w.:-]+)", content_type, re.IGNORECASE)
        if m:
            return m.group(1)
    return default


def mime_from_url(url: str) -> str | None:
    path = urlsplit(url).path.lower()
    dot = path.rfind(".")
    if dot == -1 or "/" in path[dot:]:
        return None
    ext = path[dot:]
    if ext in _EXTRA_EXTENSIONS:
        return _EXTRA_EXTENSIONS[ext]
    mime, _ = _MIME_DB.guess_type(f"file{ext}", strict=False)
    return mime


# Server-side page extensions: the file name is kept even though the type is unknown
SERVER_PAGE_EXTENSIONS = {".html", ".htm", ".php", ".asp", ".aspx", ".jsp", ".jspx", ".cfm", ".cgi"}


def has_known_extension(name: str) -> bool:
    """True if name ends in an extension that identifies a file (not a directory-like page)."""
    dot = name.rfind(".")
    if dot <= 0:
        return False
    ext = name[dot:].lower()
    return (
        ext in SERVER_PAGE_EXTENSIONS
        or ext in _EXTRA_EXTENSIONS
        or ext in _MIME_DB.types_map[True]
        or ext in _MIME_DB.types_map[False]
    )


def is_textual(mime: str | None) -> bool:
    """True for types safe to decode and run text patches on."""
    if not mime:
        return False
    return (
        mime.startswith("text/")
        or mime.endswith(("+xml", "/xml", "+json", "/json", "javascript"))
    )


def guess_mime_type(content_type: str | None, content: bytes, url: str) -> str | None:
    """
    MIME type from the Content-Type header, else sniffed from content (HTML),
    else from the URL's file extension. None if nothing matched.
    """
    mime = mime_without_encoding(content_type)
    if mime:
        return mime
    if content and _HTML_SNIFF_RE.match(content[:1024]):
        return "text/html"
    return mime_from_url(url)


class MimeRegistry:
    """Lookup table MIME type -> MimeKind, built once from defaults plus overrides."""

    def __init__(self, overrides: Mapping[str, MimeKind | str] | None = None) -> None:
        table = dict(DEFAULT_KINDS)
        for mime, kind in (overrides or {}).items():
            table[mime.strip().lower()] = MimeKind(kind)
        self._table = table

    def kind(self, mime: str | None) -> MimeKind:
        if not mime:
            return MimeKind.UNSUPPORTED
        return self._table.get(mime.lower(), MimeKind.UNSUPPORTED)

    def classify(self, mime: str | None, url: str | None = None) -> MimeKind:
        """Like kind(), but raises UnsupportedMimeTypeError instead of returning UNSUPPORTED."""
        kind = self.kind(mime)
        if kind is MimeKind.UNSUPPORTED:
            raise UnsupportedMimeTypeError(mime, url)
        return kind
