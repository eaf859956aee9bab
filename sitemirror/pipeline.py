"""Wires a MirrorConfig into a ready-to-run QueueEngine."""

from __future__ import annotations

import logging

import httpx

from sitemirror.cache import Cache, FileCache
from sitemirror.config import MirrorConfig
from sitemirror.engine import Listener, QueueEngine, RunReport, Stage
from sitemirror.errors import ConfigError
from sitemirror.fetcher import DEFAULT_USER_AGENT, Fetcher
from sitemirror.mime import MimeRegistry
from sitemirror.patcher import DataPatcher
from sitemirror.processors import fetch_middleware, parse_middleware, request_middleware, write_middleware
from sitemirror.rewrite import Rewriter
from sitemirror.robots import RobotsChecker
from sitemirror.storage import RunLog
from sitemirror.tracker import RequestTracker

logger = logging.getLogger("sitemirror.pipeline")


class Mirror:
    """
    One mirroring run. Collaborators can be injected (e.g. a pre-filled cache,
    or an httpx transport in tests); anything not given is built from config.
    """

    def __init__(
        self,
        config: MirrorConfig,
        *,
        cache: Cache | None = None,
        tracker: RequestTracker | None = None,
        patcher: DataPatcher | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        if cache is None:
            cache = FileCache(config.cache_dir) if config.cache_dir else Cache()
        self.cache = cache
        self.tracker = tracker or RequestTracker()
        self.patcher = patcher or DataPatcher(config.patch_rules)
        self.registry = MimeRegistry(config.mime_overrides)
        self.scope = config.scope()
        self.rewriter = Rewriter(self.scope, config.normalize, config.rewrite)
        self.fetcher = Fetcher(
            self.cache,
            timeout=config.fetch.timeout,
            headers=config.fetch.headers,
            delay=config.fetch.delay,
            retries=config.fetch.retries,
            transport=transport,
        )
        self.robots: RobotsChecker | None = None
        if config.respect_robots:
            user_agent = {k.lower(): v for k, v in config.fetch.headers.items()}.get("user-agent", DEFAULT_USER_AGENT)
            self.robots = RobotsChecker(self.fetcher, user_agent)

        middleware = {
            Stage.REQUEST: request_middleware(self.scope, self.tracker, config.normalize, self.robots),
            Stage.FETCH: fetch_middleware(self.fetcher, self.cache, config.normalize),
            Stage.PARSE: parse_middleware(self.cache, self.registry, self.patcher, config.cleanups),
            Stage.WRITE: write_middleware(
                self.cache, self.tracker, self.registry, self.rewriter, config.output_dir, config.cleanups
            ),
        }
        run_log = RunLog(config.run_log) if config.run_log else None
        self.engine = QueueEngine(middleware, config.concurrency, run_log)

    def subscribe(self, listener: Listener) -> None:
        self.engine.subscribe(listener)

    def run(self) -> RunReport:
        """Mirror every entry URL and what they reference; blocks until done."""
        if not self.config.entry_urls:
            raise ConfigError("No entry URLs to mirror")
        logger.info(
            "Mirroring %s into %s (%s)",
            ", ".join(self.config.entry_urls),
            self.config.output_dir,
            ", ".join(f"{s.value}={n}" for s, n in self.config.concurrency.items()),
        )
        try:
            report = self.engine.run(self.config.entry_urls)
        finally:
            self.fetcher.close()
        logger.info(
            "Finished: %d completed, %d filtered, %d failed",
            len(report.completed),
            len(report.filtered),
            len(report.failed),
        )
        return report

    def shutdown(self, drain: bool = True) -> None:
        self.engine.shutdown(drain)
