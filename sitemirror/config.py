"""Run configuration: the MirrorConfig dataclass and a JSON loader for it."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from sitemirror.engine import Stage
from sitemirror.errors import ConfigError
from sitemirror.fetcher import DEFAULT_TIMEOUT
from sitemirror.mime import MimeKind
from sitemirror.patcher import PatchRule
from sitemirror.processors import Cleanup
from sitemirror.rewrite import RewritePolicy
from sitemirror.urls import NormalizeOptions, Scope, host_of

# Cap workers per stage; scale with CPU.
MAX_WORKERS = 12
MIN_WORKERS = 1


def default_workers() -> int:
    """Suggested number of workers from CPU count."""
    n = os.cpu_count()
    if n is None or n < 1:
        return MIN_WORKERS
    return max(MIN_WORKERS, min(n, MAX_WORKERS))


def default_concurrency() -> dict[Stage, int]:
    """Fetch is I/O bound and gets the full worker count; the other stages half."""
    n = default_workers()
    half = max(MIN_WORKERS, n // 2)
    return {Stage.REQUEST: half, Stage.FETCH: n, Stage.PARSE: half, Stage.WRITE: half}


@dataclass
class FetchSettings:
    timeout: float = DEFAULT_TIMEOUT
    delay: float = 0.0  # seconds between requests, per fetch worker
    retries: int = 0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class MirrorConfig:
    """Everything a run needs. Site-specific rules live here, not in the pipeline."""

    entry_urls: list[str]
    output_dir: Path = Path("mirror")
    allowed_domains: list[str | re.Pattern[str]] = field(default_factory=list)
    disallowed_domains: list[str | re.Pattern[str]] = field(default_factory=list)
    disallowed_paths: list[str | re.Pattern[str]] = field(default_factory=list)
    normalize: NormalizeOptions = field(default_factory=NormalizeOptions)
    rewrite: RewritePolicy = field(default_factory=RewritePolicy)
    patch_rules: list[PatchRule] = field(default_factory=list)
    mime_overrides: dict[str, MimeKind | str] = field(default_factory=dict)
    concurrency: dict[Stage, int] = field(default_factory=default_concurrency)
    cleanups: list[Cleanup] = field(default_factory=list)
    fetch: FetchSettings = field(default_factory=FetchSettings)
    cache_dir: Path | None = None
    run_log: Path | None = None
    respect_robots: bool = False

    def __post_init__(self) -> None:
        self.entry_urls = [u.strip() for u in self.entry_urls if u and u.strip()]
        self.output_dir = Path(self.output_dir)
        if self.cache_dir is not None:
            self.cache_dir = Path(self.cache_dir)
        if self.run_log is not None:
            self.run_log = Path(self.run_log)
        concurrency = default_concurrency()
        for stage, n in self.concurrency.items():
            stage = Stage(stage)
            if not isinstance(n, int) or n < 1:
                raise ConfigError(f"{stage.value} concurrency must be a positive integer, got {n!r}")
            concurrency[stage] = n
        self.concurrency = concurrency
        if self.fetch.retries < 0:
            raise ConfigError(f"retries must be >= 0, got {self.fetch.retries}")
        if self.fetch.delay < 0:
            raise ConfigError(f"delay must be >= 0, got {self.fetch.delay}")

    def scope(self) -> Scope:
        """Crawl scope. Without an explicit allow-list, the entry URLs' hosts are allowed."""
        allowed = self.allowed_domains or sorted({h for h in map(host_of, self.entry_urls) if h})
        return Scope(allowed, self.disallowed_domains, self.disallowed_paths)


def _dataclass_from(cls: type, data: Any, name: str) -> Any:
    if not isinstance(data, Mapping):
        raise ConfigError(f"'{name}' must be an object")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in '{name}': {', '.join(unknown)}")
    try:
        return cls(**data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid '{name}': {e}") from e


def _patch_rules(data: Any) -> list[PatchRule]:
    if not isinstance(data, list):
        raise ConfigError("'patch_rules' must be a list")
    rules = []
    for i, item in enumerate(data):
        if not isinstance(item, Mapping) or not {"includes", "search", "replace"} <= set(item):
            raise ConfigError(f"patch_rules[{i}] needs 'includes', 'search' and 'replace'")
        includes = item["includes"]
        if isinstance(includes, str):
            includes = [includes]
        try:
            rules.append(PatchRule.create(includes, item["search"], item["replace"]))
        except re.error as e:
            raise ConfigError(f"patch_rules[{i}]: bad pattern: {e}") from e
    return rules


def _string_list(data: Any, name: str) -> list[str]:
    if isinstance(data, str):
        return [data]
    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        raise ConfigError(f"'{name}' must be a list of strings")
    return list(data)


def config_from_dict(data: Mapping[str, Any]) -> MirrorConfig:
    """Build a MirrorConfig from plain JSON-style data. Raises ConfigError."""
    known = {f.name for f in fields(MirrorConfig)} - {"cleanups"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")
    kwargs = dict(data)
    if not isinstance(kwargs.get("entry_urls", []), list):
        raise ConfigError("'entry_urls' must be a list of URLs")
    kwargs.setdefault("entry_urls", [])
    for name in ("allowed_domains", "disallowed_domains", "disallowed_paths"):
        if name in kwargs:
            kwargs[name] = _string_list(kwargs[name], name)
    if "normalize" in kwargs:
        kwargs["normalize"] = _dataclass_from(NormalizeOptions, kwargs["normalize"], "normalize")
    if "rewrite" in kwargs:
        kwargs["rewrite"] = _dataclass_from(RewritePolicy, kwargs["rewrite"], "rewrite")
    if "fetch" in kwargs:
        kwargs["fetch"] = _dataclass_from(FetchSettings, kwargs["fetch"], "fetch")
    if "patch_rules" in kwargs:
        kwargs["patch_rules"] = _patch_rules(kwargs["patch_rules"])
    if "disallowed_paths" in kwargs:
        try:
            kwargs["disallowed_paths"] = [re.compile(p) for p in kwargs["disallowed_paths"]]
        except (re.error, TypeError) as e:
            raise ConfigError(f"Invalid 'disallowed_paths': {e}") from e
    if "mime_overrides" in kwargs:
        try:
            kwargs["mime_overrides"] = {m: MimeKind(k) for m, k in dict(kwargs["mime_overrides"]).items()}
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid 'mime_overrides': {e}") from e
    if "concurrency" in kwargs:
        try:
            kwargs["concurrency"] = {Stage(s): n for s, n in dict(kwargs["concurrency"]).items()}
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid 'concurrency': {e}") from e
    try:
        return MirrorConfig(**kwargs)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config: {e}") from e


def load_config(path: Path) -> MirrorConfig:
    """Read a MirrorConfig from a JSON file."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a JSON object")
    return config_from_dict(data)
