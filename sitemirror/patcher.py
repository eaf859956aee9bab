"""URL-scoped regex rewrite rules applied to fetched text before parsing and writing."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Union

Replacement = Union[str, Callable[[re.Match], str]]


def _compile(pattern: str | re.Pattern[str]) -> re.Pattern[str]:
    return pattern if isinstance(pattern, re.Pattern) else re.compile(pattern)


@dataclass(frozen=True)
class PatchRule:
    """
    includes: URL patterns (regex, searched); a plain URL matches itself.
    search/replace: passed to re.sub, so replace may use group references.
    """

    includes: tuple[re.Pattern[str], ...]
    search: re.Pattern[str]
    replace: Replacement

    @classmethod
    def create(
        cls,
        includes: Iterable[str | re.Pattern[str]],
        search: str | re.Pattern[str],
        replace: Replacement,
    ) -> "PatchRule":
        return cls(tuple(_compile(p) for p in includes), _compile(search), replace)

    def applies_to(self, url: str) -> bool:
        return any(p.search(url) for p in self.includes)


class DataPatcher:
    """Ordered rule list. Rules never change once added."""

    def __init__(self, rules: Iterable[PatchRule] = ()) -> None:
        self._rules: list[PatchRule] = list(rules)
        self._lock = threading.Lock()

    def add_rule(
        self,
        includes: Iterable[str | re.Pattern[str]],
        search: str | re.Pattern[str],
        replace: Replacement,
    ) -> "DataPatcher":
        with self._lock:
            self._rules.append(PatchRule.create(includes, search, replace))
        return self

    @property
    def rules(self) -> tuple[PatchRule, ...]:
        with self._lock:
            return tuple(self._rules)

    def patch(self, url: str, content: str, log: Callable[[str], None] | None = None) -> str:
        """Apply every matching rule in registration order. Text only."""
        for i, rule in enumerate(self.rules):
            if not rule.applies_to(url):
                continue
            content, n = rule.search.subn(rule.replace, content)
            if log is not None:
                log(f"patch rule #{i} ({rule.search.pattern!r}) applied: {n} replacement(s)")
        return content
