"""robots.txt checks for the request stage (off unless respect_robots is set)."""

from __future__ import annotations

import logging
import threading
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

from sitemirror.errors import FetchError
from sitemirror.fetcher import DEFAULT_USER_AGENT, Fetcher

logger = logging.getLogger("sitemirror.robots")


class RobotsChecker:
    """One parsed robots.txt per origin; an unreachable robots.txt allows everything."""

    def __init__(self, fetcher: Fetcher, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self._fetcher = fetcher
        self._user_agent = user_agent
        # RobotFileParser on success, None when fetch failed (treat as allow-all)
        self._parsers: dict[tuple[str, str], RobotFileParser | None] = {}
        self._lock = threading.Lock()

    def _get_parser(self, url: str) -> RobotFileParser | None:
        parts = urlsplit(url)
        key = (parts.scheme or "https", parts.netloc)
        with self._lock:
            if key in self._parsers:
                return self._parsers[key]
        robots_url = f"{key[0]}://{key[1]}/robots.txt"
        parser: RobotFileParser | None = None
        try:
            resp = self._fetcher.get(robots_url)
            if resp.status_code < 400:
                parser = RobotFileParser(robots_url)
                parser.parse(resp.text.splitlines())
            elif resp.status_code in (401, 403):
                parser = RobotFileParser(robots_url)
                parser.disallow_all = True
        except FetchError as e:
            logger.info("robots.txt unreachable for %s: %s", key[1], e)
        with self._lock:
            return self._parsers.setdefault(key, parser)

    def can_fetch(self, url: str) -> bool:
        parser = self._get_parser(url)
        if parser is None:
            return True
        return parser.can_fetch(self._user_agent, url)
