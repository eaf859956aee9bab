"""URL normalization and crawl scope (domain and path rules)."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Sequence
from urllib.parse import SplitResult, urlsplit, urlunsplit

from sitemirror.errors import InvalidUrlError

DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class NormalizeOptions:
    """Policy for turning a URL into a cache/dedup key."""

    enforce_https: bool = True
    remove_trailing_slash: bool = True
    remove_hash: bool = True
    search_parameters: Literal["keep", "remove"] = "keep"
    sort_query_parameters: bool = True

    def __post_init__(self) -> None:
        if self.search_parameters not in ("keep", "remove"):
            raise ValueError(f"search_parameters must be 'keep' or 'remove', not {self.search_parameters!r}")


def _split(url: str) -> SplitResult:
    if not isinstance(url, str) or not url.strip():
        raise InvalidUrlError(f"Invalid URL: {url!r}")
    try:
        parts = urlsplit(url.strip())
        # Accessing .port validates it (raises ValueError on garbage)
        parts.port
    except ValueError as e:
        raise InvalidUrlError(f"Invalid URL {url!r}: {e}") from e
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise InvalidUrlError(f"Unsupported URL scheme in {url!r}")
    if not parts.hostname:
        raise InvalidUrlError(f"URL has no host: {url!r}")
    return parts


def remove_dot_segments(path: str) -> str:
    """Resolve '.' and '..' segments; '..' never climbs above the root."""
    segments = path.split("/")
    out: list[str] = []
    for seg in segments:
        if seg == ".":
            continue
        if seg == "..":
            if len(out) > 1:
                out.pop()
            continue
        out.append(seg)
    if segments and segments[-1] in (".", ".."):
        out.append("")
    result = "/".join(out)
    return result if result.startswith("/") else "/" + result


def _sort_query(query: str) -> str:
    pairs = [p for p in query.split("&") if p]
    # Stable on name only: repeated names keep their relative order
    pairs.sort(key=lambda p: p.split("=", 1)[0])
    return "&".join(pairs)


def normalize(url: str, options: NormalizeOptions | None = None) -> str:
    """
    Canonicalize url into a stable cache/dedup key.

    Deterministic and idempotent: normalize(normalize(u)) == normalize(u).
    Raises InvalidUrlError for anything that is not an absolute http(s) URL.
    """
    options = options or NormalizeOptions()
    parts = _split(url)
    scheme = parts.scheme.lower()
    host = parts.hostname.lower()  # type: ignore[union-attr]
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port == DEFAULT_PORTS[scheme]:
        port = None
    if options.enforce_https and scheme != "https":
        scheme = "https"
    if port == DEFAULT_PORTS[scheme]:
        port = None

    netloc = host if port is None else f"{host}:{port}"
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo += f":{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    path = remove_dot_segments(parts.path or "/")
    if options.remove_trailing_slash and len(path) > 1:
        path = path.rstrip("/") or "/"

    query = parts.query
    if options.search_parameters == "remove":
        query = ""
    elif options.sort_query_parameters and query:
        query = _sort_query(query)

    fragment = "" if options.remove_hash else parts.fragment
    return urlunsplit((scheme, netloc, path, query, fragment))


def host_of(url: str) -> str:
    """Lowercased host of url ('' when there is none)."""
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def _as_tuple(rules: str | Sequence[str | re.Pattern[str]]) -> tuple:
    if isinstance(rules, (str, re.Pattern)):
        return (rules,)
    return tuple(rules)


def _compile_all(patterns: Sequence[str | re.Pattern[str]]) -> tuple[re.Pattern[str], ...]:
    return tuple(p if isinstance(p, re.Pattern) else re.compile(p) for p in patterns)


def _domain_matches(host: str, rule: str | re.Pattern[str]) -> bool:
    if isinstance(rule, re.Pattern):
        return rule.fullmatch(host) is not None
    rule = rule.lower().lstrip(".")
    return host == rule or host.endswith("." + rule)


@dataclass(frozen=True)
class Scope:
    """
    Which URLs belong to the mirror.

    Domain rules are either plain names (match the host and its subdomains) or
    compiled patterns (must fullmatch the host). Path rules are regexes searched
    against path plus query. An empty allow-list allows every host.
    """

    allowed_domains: Sequence[str | re.Pattern[str]] = ()
    disallowed_domains: Sequence[str | re.Pattern[str]] = ()
    disallowed_paths: Sequence[str | re.Pattern[str]] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "allowed_domains", _as_tuple(self.allowed_domains))
        object.__setattr__(self, "disallowed_domains", _as_tuple(self.disallowed_domains))
        object.__setattr__(self, "disallowed_paths", _compile_all(_as_tuple(self.disallowed_paths)))

    def domain_allowed(self, url: str) -> bool:
        host = host_of(url)
        if not host:
            return False
        if any(_domain_matches(host, rule) for rule in self.disallowed_domains):
            return False
        if not self.allowed_domains:
            return True
        return any(_domain_matches(host, rule) for rule in self.allowed_domains)

    def path_allowed(self, url: str) -> bool:
        parts = urlsplit(url)
        target = parts.path or "/"
        if parts.query:
            target = f"{target}?{parts.query}"
        return not any(p.search(target) for p in self.disallowed_paths)

    def contains(self, url: str) -> bool:
        return self.domain_allowed(url) and self.path_allowed(url)
