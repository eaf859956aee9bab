"""Mirror paths and mirror-relative references between mirrored resources."""

from __future__ import annotations

import hashlib
import posixpath
import re
from dataclasses import dataclass
from urllib.parse import quote, unquote, urljoin, urlsplit

from sitemirror.errors import InvalidUrlError, OutOfScopeReferenceError, RewriteError
from sitemirror.mime import has_known_extension
from sitemirror.urls import NormalizeOptions, Scope, normalize

# References that never address another resource
NON_NAVIGATIONAL_PREFIXES = ("#", "mailto:", "javascript:", "data:", "tel:", "blob:", "about:")

INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
MAX_SEGMENT_LENGTH = 200

# Characters left unescaped in a relative reference
_SAFE_PATH_CHARS = "/._-~!$&'()*+,;=@"


@dataclass(frozen=True)
class RewritePolicy:
    """
    keep_fragment: re-append '#fragment' to rewritten references.
    subtree: directory every mirror path is placed under ('' for none).
    include_query: a query string gives the file a distinct hashed name.
    keep_external: out-of-scope references are left pointing at the live URL
        instead of failing with OutOfScopeReferenceError.
    """

    keep_fragment: bool = True
    subtree: str = ""
    include_query: bool = True
    keep_external: bool = False
    index_file: str = "index.html"


def is_non_navigational(reference: str) -> bool:
    return reference.strip().lower().startswith(NON_NAVIGATIONAL_PREFIXES)


def short_hash(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()[:8]


def sanitize_segment(segment: str) -> str:
    """Percent-decode one URL path segment and make it a safe file/dir name."""
    name = INVALID_FILENAME_CHARS_RE.sub("_", unquote(segment))
    if name in ("", ".", ".."):
        name = "_"
    return name[:MAX_SEGMENT_LENGTH]


def mirror_path(key: str, policy: RewritePolicy | None = None) -> str:
    """
    POSIX path (relative to the output root) where the resource for key is stored.

    https://site.example/            -> site.example/index.html
    https://site.example/wiki/A      -> site.example/wiki/A/index.html
    https://site.example/s/b.css     -> site.example/s/b.css
    https://site.example/load.php?x  -> site.example/load_<hash>.php
    """
    policy = policy or RewritePolicy()
    parts = urlsplit(key)
    host = (parts.hostname or "unknown").lower()
    if parts.port:
        host = f"{host}:{parts.port}"

    path = parts.path or "/"
    raw = path.split("/")[1:]
    is_dir = path.endswith("/")
    segments = [sanitize_segment(s) for s in (raw[:-1] if is_dir else raw)]

    if not is_dir and segments and has_known_extension(segments[-1]):
        filename = segments.pop()
    else:
        filename = policy.index_file

    if policy.include_query and parts.query:
        stem, dot, ext = filename.rpartition(".")
        suffix = short_hash(parts.query)
        filename = f"{stem}_{suffix}.{ext}" if dot and stem else f"{filename}_{suffix}"

    prefix = [sanitize_segment(s) for s in policy.subtree.split("/") if s]
    return "/".join([*prefix, sanitize_segment(host), *segments, filename])


def relative_reference(target_path: str, source_path: str) -> str:
    """URL-quoted reference that, resolved against source_path, addresses target_path."""
    start = posixpath.dirname(source_path) or "."
    rel = posixpath.relpath(target_path, start)
    return quote(rel, safe=_SAFE_PATH_CHARS)


class Rewriter:
    """Turns references found in one mirrored resource into paths to another."""

    def __init__(
        self,
        scope: Scope,
        normalize_options: NormalizeOptions | None = None,
        policy: RewritePolicy | None = None,
    ) -> None:
        self.scope = scope
        self.normalize_options = normalize_options or NormalizeOptions()
        self.policy = policy or RewritePolicy()

    def resolve(self, reference: str, source_url: str) -> str:
        """Absolute, normalized key for reference as seen from source_url."""
        return normalize(urljoin(source_url, reference.strip()), self.normalize_options)

    def mirror_path(self, key: str) -> str:
        return mirror_path(key, self.policy)

    def relative_path(self, target_key: str, source_key: str) -> str:
        if not self.scope.domain_allowed(target_key):
            raise OutOfScopeReferenceError(target_key, target_key)
        return relative_reference(self.mirror_path(target_key), self.mirror_path(source_key))

    def rewrite(self, reference: str, source_url: str, source_key: str) -> str:
        """
        Mirror-relative form of reference. Non-navigational references come
        back untouched, as do out-of-scope ones when keep_external is set.
        """
        ref = reference.strip()
        if not ref or is_non_navigational(ref):
            return reference
        absolute = urljoin(source_url, ref)
        if urlsplit(absolute).scheme.lower() not in ("http", "https"):
            return reference
        try:
            target = normalize(absolute, self.normalize_options)
        except InvalidUrlError as e:
            raise RewriteError(f"Cannot resolve reference {ref!r} from {source_url}: {e}") from e

        if not self.scope.domain_allowed(target):
            if self.policy.keep_external:
                return absolute
            raise OutOfScopeReferenceError(ref, target)

        rel = relative_reference(self.mirror_path(target), self.mirror_path(source_key))
        fragment = urlsplit(ref).fragment
        if self.policy.keep_fragment and fragment:
            rel = f"{rel}#{fragment}"
        return rel
