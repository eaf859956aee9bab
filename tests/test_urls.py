import re

import pytest

from sitemirror.errors import InvalidUrlError, ValidationError
from sitemirror.urls import NormalizeOptions, Scope, normalize


def test_normalize_documented_example():
    assert normalize("HTTP://Example.com/a/?x=1#frag") == "https://example.com/a?x=1"


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://example.com", "https://example.com/"),
        ("https://example.com:443/x", "https://example.com/x"),
        ("http://example.com:80/x", "https://example.com/x"),
        ("http://example.com:8080/", "https://example.com:8080/"),
        ("https://example.com/a/./b/../c", "https://example.com/a/c"),
        ("https://example.com/../../a", "https://example.com/a"),
        ("https://example.com/?b=2&a=1&b=1", "https://example.com/?a=1&b=2&b=1"),
        ("https://example.com/p?#", "https://example.com/p"),
    ],
)
def test_normalize_canonical_forms(url, expected):
    assert normalize(url) == expected


@pytest.mark.parametrize(
    "url",
    [
        "HTTP://Example.com/a/?x=1#frag",
        "https://example.com/a/./b/../c/",
        "http://example.com:80/?z=1&a=2",
        "https://sub.example.com/wiki/Main_Page#History",
    ],
)
def test_normalize_is_idempotent(url):
    once = normalize(url)
    assert normalize(once) == once


def test_options_are_honored():
    opts = NormalizeOptions(
        enforce_https=False,
        remove_trailing_slash=False,
        remove_hash=False,
        search_parameters="remove",
    )
    assert normalize("http://example.com/a/?x=1#top", opts) == "http://example.com/a/#top"


def test_query_order_kept_when_sorting_disabled():
    opts = NormalizeOptions(sort_query_parameters=False)
    assert normalize("https://example.com/?b=1&a=2", opts) == "https://example.com/?b=1&a=2"


def test_search_parameters_is_validated():
    with pytest.raises(ValueError):
        NormalizeOptions(search_parameters="drop")


@pytest.mark.parametrize("url", ["", "   ", "not a url", "ftp://example.com/file", "https://", "mailto:a@b.c"])
def test_invalid_urls_raise(url):
    with pytest.raises(InvalidUrlError) as exc:
        normalize(url)
    assert isinstance(exc.value, ValidationError)


def test_scope_names_match_subdomains():
    scope = Scope(allowed_domains=["site.example"])
    assert scope.domain_allowed("https://site.example/")
    assert scope.domain_allowed("https://static.site.example/x.png")
    assert not scope.domain_allowed("https://othersite.example/")
    assert not scope.domain_allowed("https://example.org/")


def test_scope_patterns_must_match_whole_host():
    scope = Scope(allowed_domains=[re.compile(r"cdn\d\.example\.org")])
    assert scope.domain_allowed("https://cdn1.example.org/a.js")
    assert not scope.domain_allowed("https://cdn1.example.org.evil.example/a.js")


def test_scope_disallowed_domain_wins():
    scope = Scope(allowed_domains=["site.example"], disallowed_domains=["ads.site.example"])
    assert scope.domain_allowed("https://www.site.example/")
    assert not scope.domain_allowed("https://ads.site.example/banner")


def test_scope_empty_allow_list_allows_everything():
    assert Scope().domain_allowed("https://anything.example/")


def test_scope_accepts_a_single_rule():
    scope = Scope(allowed_domains="site.example", disallowed_paths=r"^/private")
    assert scope.allowed_domains == ("site.example",)
    assert scope.domain_allowed("https://www.site.example/")
    assert not scope.domain_allowed("https://s.example/")
    assert not scope.path_allowed("https://site.example/private/x")


def test_scope_paths_are_searched_against_path_and_query():
    scope = Scope(disallowed_paths=[r"^/wiki/Special:", r"action=edit"])
    assert not scope.path_allowed("https://site.example/wiki/Special:Random")
    assert not scope.path_allowed("https://site.example/index.php?action=edit&title=A")
    assert scope.path_allowed("https://site.example/wiki/Main_Page")
    assert scope.contains("https://site.example/wiki/Main_Page")
