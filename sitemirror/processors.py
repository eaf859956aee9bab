"""
Stage middleware. Each factory closes over the collaborators it needs (cache,
tracker, patcher, rewriter ...) and returns a ``Middleware`` for the engine.

Request: normalize_uri, is_domain_valid, is_path_valid, [robots_allowed],
         is_already_requested
Fetch:   fetch_resource
Parse:   guess_mime, parse_resource
Write:   is_already_written, handle_redirected, rewrite_references, write_data
"""

from __future__ import annotations

import codecs
from pathlib import Path
from typing import Callable, Sequence
from urllib.parse import urldefrag

from bs4 import BeautifulSoup

from sitemirror.cache import Cache
from sitemirror.engine import PROCEED, Filtered, Job, Middleware, NewJob, Outcome, Proceed, Stage
from sitemirror.errors import InvalidUrlError, RewriteError
from sitemirror.extractors import (
    crawlable_urls,
    find_css_references,
    find_html_references,
    remove_base,
    rewrite_css,
    rewrite_html,
)
from sitemirror.fetcher import Fetcher
from sitemirror.mime import MimeKind, MimeRegistry, charset_of, guess_mime_type, is_textual
from sitemirror.patcher import DataPatcher
from sitemirror.rewrite import Rewriter
from sitemirror.robots import RobotsChecker
from sitemirror.storage import output_path, redirect_stub, write_binary
from sitemirror.tracker import REQUEST_SEEN, WRITE_SEEN, RequestTracker
from sitemirror.urls import NormalizeOptions, Scope, host_of, normalize

# Cosmetic DOM cleanup, run on HTML at parse time and again before writing
Cleanup = Callable[[BeautifulSoup, Job], None]

HTML_PARSER = "lxml"
PARSED_KINDS = (MimeKind.HTML, MimeKind.CSS)


def decode_text(data: bytes, content_type: str | None) -> str:
    """Decode with the header charset (utf-8 when missing or unknown); never raises."""
    encoding = charset_of(content_type)
    try:
        codecs.lookup(encoding)
    except LookupError:
        encoding = "utf-8"
    return data.decode(encoding, errors="replace")


def _parse_html(text: str, job: Job, cleanups: Sequence[Cleanup]) -> BeautifulSoup:
    soup = BeautifulSoup(text, HTML_PARSER)
    for cleanup in cleanups:
        cleanup(soup, job)
    return soup


# Request stage


def normalize_uri(options: NormalizeOptions) -> Middleware:
    def _normalize_uri(job: Job) -> Outcome:
        job.data.cache_key = normalize(job.data.uri, options)
        if job.data.cache_key != job.data.uri:
            job.log(f"normalized to {job.data.cache_key}")
        return PROCEED

    return _normalize_uri


def is_domain_valid(scope: Scope) -> Middleware:
    def _is_domain_valid(job: Job) -> Outcome:
        if not scope.domain_allowed(job.key):
            return Filtered(f"domain not allowed: {host_of(job.key)}")
        return PROCEED

    return _is_domain_valid


def is_path_valid(scope: Scope) -> Middleware:
    def _is_path_valid(job: Job) -> Outcome:
        if not scope.path_allowed(job.key):
            return Filtered("path disallowed")
        return PROCEED

    return _is_path_valid


def robots_allowed(checker: RobotsChecker) -> Middleware:
    def _robots_allowed(job: Job) -> Outcome:
        if not checker.can_fetch(job.key):
            return Filtered("disallowed by robots.txt")
        return PROCEED

    return _robots_allowed


def is_already_requested(tracker: RequestTracker) -> Middleware:
    def _is_already_requested(job: Job) -> Outcome:
        if not tracker.admit(REQUEST_SEEN, job.key):
            return Filtered("already requested")
        return PROCEED

    return _is_already_requested


# Fetch stage


def fetch_resource(fetcher: Fetcher, cache: Cache, options: NormalizeOptions | None = None) -> Middleware:
    """
    Fetch the URL as it was discovered, cached under the job's key. A
    redirect that normalizes back onto the same key (/docs -> /docs/) is
    followed by the fetcher; any other redirect spawns a request for its target.
    """

    def key_of(url: str) -> str | None:
        try:
            return normalize(url, options)
        except InvalidUrlError:
            return None

    def _fetch_resource(job: Job) -> Outcome:
        key = job.key
        hit = key in cache
        entry = fetcher.fetch(urldefrag(job.data.uri)[0], key, key_of)
        status = entry.metadata.status
        job.log(f"cache hit ({status})" if hit else f"fetched ({status})")
        if entry.metadata.redirected and entry.metadata.location:
            job.data.redirect = entry.metadata.location
            job.log(f"redirects to {entry.metadata.location}")
            return Proceed(spawn=(NewJob(Stage.REQUEST, entry.metadata.location),))
        return PROCEED

    return _fetch_resource


# Parse stage


def guess_mime(cache: Cache, registry: MimeRegistry) -> Middleware:
    """Sets job.data.mime_type; unsupported types fail the job."""

    def _guess_mime(job: Job) -> Outcome:
        entry = cache.entry(job.key)
        if entry.metadata.redirected:
            job.data.redirect = entry.metadata.location
            job.data.mime_type = "text/html"
            return PROCEED
        mime = guess_mime_type(entry.metadata.content_type, entry.data, job.key)
        registry.classify(mime, job.key)
        job.data.mime_type = mime
        job.log(f"content type {mime}")
        return PROCEED

    return _guess_mime


def parse_resource(
    cache: Cache,
    registry: MimeRegistry,
    patcher: DataPatcher,
    cleanups: Sequence[Cleanup] = (),
) -> Middleware:
    """
    Patch textual content and, for HTML and CSS, collect references. Every
    crawlable reference is handed back as a new request job.
    """

    def _parse_resource(job: Job) -> Outcome:
        if job.data.redirect:
            return PROCEED
        entry = cache.entry(job.key)
        mime = job.data.mime_type
        kind = registry.kind(mime)
        if kind not in PARSED_KINDS and not is_textual(mime):
            return PROCEED

        original = decode_text(entry.data, entry.metadata.content_type)
        text = patcher.patch(job.key, original, job.log)
        if kind in PARSED_KINDS or text != original:
            job.data.text = text
        if kind is MimeKind.HTML:
            soup = _parse_html(text, job, cleanups)
            refs = find_html_references(soup, job.data.uri)
        elif kind is MimeKind.CSS:
            refs = find_css_references(text, job.data.uri)
        else:
            return PROCEED

        job.data.references = refs
        urls = crawlable_urls(refs)
        job.log(f"found {len(refs)} reference(s), {len(urls)} to request")
        return Proceed(spawn=tuple(NewJob(Stage.REQUEST, u) for u in urls))

    return _parse_resource


# Write stage


def is_already_written(tracker: RequestTracker) -> Middleware:
    def _is_already_written(job: Job) -> Outcome:
        if not tracker.admit(WRITE_SEEN, job.key):
            return Filtered("already written")
        return PROCEED

    return _is_already_written


def handle_redirected(rewriter: Rewriter) -> Middleware:
    """A redirected entry is written as a stub page pointing at the local copy of its target."""

    def _handle_redirected(job: Job) -> Outcome:
        location = job.data.redirect
        if not location:
            return PROCEED
        if rewriter.mirror_path(rewriter.resolve(location, job.key)) == rewriter.mirror_path(job.key):
            raise RewriteError(f"{job.key} redirects to itself ({location})")
        target = rewriter.rewrite(location, job.key, job.key)
        job.data.output = redirect_stub(target)
        job.log(f"redirect stub -> {target}")
        return PROCEED

    return _handle_redirected


def rewrite_references(
    cache: Cache,
    registry: MimeRegistry,
    rewriter: Rewriter,
    cleanups: Sequence[Cleanup] = (),
) -> Middleware:
    """Replace every reference found at parse time with its mirror-relative path."""

    def _rewrite_references(job: Job) -> Outcome:
        if job.data.output is not None:
            return PROCEED
        kind = registry.kind(job.data.mime_type)
        if kind not in PARSED_KINDS:
            return PROCEED
        text = job.data.text
        if text is None:
            entry = cache.entry(job.key)
            text = decode_text(entry.data, entry.metadata.content_type)

        mapping: dict[str, str] = {}
        problems: list[str] = []
        for ref in sorted(job.data.references, key=lambda r: (r.raw, r.context)):
            if ref.raw in mapping:
                continue
            try:
                mapping[ref.raw] = rewriter.rewrite(ref.raw, ref.source_url, job.key)
            except RewriteError as e:
                problems.append(str(e))
        if problems:
            summary = "; ".join(problems[:5])
            more = f" (+{len(problems) - 5} more)" if len(problems) > 5 else ""
            raise RewriteError(f"{len(problems)} unresolvable reference(s): {summary}{more}")

        def mapper(raw: str) -> str:
            return mapping.get(raw, raw)

        if kind is MimeKind.HTML:
            soup = _parse_html(text, job, cleanups)
            remove_base(soup)
            changed = rewrite_html(soup, mapper)
            job.data.output = soup.encode("utf-8")
        else:
            rewritten = rewrite_css(text, mapper)
            changed = sum(1 for raw, new in mapping.items() if raw != new)
            job.data.output = rewritten.encode("utf-8")
        job.log(f"rewrote {changed} reference(s)")
        return PROCEED

    return _rewrite_references


def write_data(cache: Cache, rewriter: Rewriter, out_dir: Path) -> Middleware:
    """Persist job output (or patched text, or the cached bytes) at the mirror path."""

    def _write_data(job: Job) -> Outcome:
        data = job.data.output
        if data is None and job.data.text is not None:
            data = job.data.text.encode("utf-8")
        if data is None:
            data = cache.entry(job.key).data
        path = output_path(out_dir, rewriter.mirror_path(job.key))
        write_binary(path, data)
        job.log(f"wrote {path}")
        return PROCEED

    return _write_data


# Default chains


def request_middleware(
    scope: Scope,
    tracker: RequestTracker,
    options: NormalizeOptions,
    robots: RobotsChecker | None = None,
) -> list[Middleware]:
    chain = [normalize_uri(options), is_domain_valid(scope), is_path_valid(scope)]
    if robots is not None:
        chain.append(robots_allowed(robots))
    chain.append(is_already_requested(tracker))
    return chain


def fetch_middleware(fetcher: Fetcher, cache: Cache, options: NormalizeOptions | None = None) -> list[Middleware]:
    return [fetch_resource(fetcher, cache, options)]


def parse_middleware(
    cache: Cache,
    registry: MimeRegistry,
    patcher: DataPatcher,
    cleanups: Sequence[Cleanup] = (),
) -> list[Middleware]:
    return [guess_mime(cache, registry), parse_resource(cache, registry, patcher, cleanups)]


def write_middleware(
    cache: Cache,
    tracker: RequestTracker,
    registry: MimeRegistry,
    rewriter: Rewriter,
    out_dir: Path,
    cleanups: Sequence[Cleanup] = (),
) -> list[Middleware]:
    return [
        is_already_written(tracker),
        handle_redirected(rewriter),
        rewrite_references(cache, registry, rewriter, cleanups),
        write_data(cache, rewriter, out_dir),
    ]
