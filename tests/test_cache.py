import logging
import threading

import pytest

from sitemirror.cache import Cache, FileCache, Metadata
from sitemirror.errors import CacheConsistencyError, NotFoundError


def test_set_then_get():
    cache = Cache()
    meta = Metadata(status=200, headers={"Content-Type": "text/css"})
    assert cache.set("https://site.example/a.css", b"body{}", meta)
    data, got = cache.get("https://site.example/a.css")
    assert data == b"body{}"
    assert got.status == 200
    assert "https://site.example/a.css" in cache
    assert len(cache) == 1
    assert list(cache.keys()) == ["https://site.example/a.css"]


def test_headers_are_case_insensitive():
    meta = Metadata(status=200, headers={"Content-Type": "text/html; charset=utf-8"})
    assert meta.headers["CONTENT-TYPE"] == "text/html; charset=utf-8"
    assert meta.content_type == "text/html; charset=utf-8"


def test_duplicate_set_keeps_first_entry_and_warns(caplog):
    cache = Cache()
    cache.set("k", b"first", Metadata(status=200))
    with caplog.at_level(logging.WARNING, logger="sitemirror.cache"):
        assert cache.set("k", b"second", Metadata(status=500)) is False
    data, meta = cache.get("k")
    assert data == b"first"
    assert meta.status == 200
    assert "already populated" in caplog.text


def test_missing_key_raises_not_found():
    cache = Cache()
    with pytest.raises(NotFoundError) as exc:
        cache.get("https://site.example/missing")
    assert isinstance(exc.value, CacheConsistencyError)
    assert isinstance(exc.value, KeyError)
    assert "https://site.example/missing" in str(exc.value)


def test_concurrent_sets_have_one_winner():
    cache = Cache()
    results = []
    barrier = threading.Barrier(8)

    def writer(i):
        barrier.wait()
        results.append(cache.set("k", str(i).encode(), Metadata(status=200)))

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1
    assert len(cache) == 1


def test_file_cache_persists_across_instances(tmp_path):
    meta = Metadata(
        status=301,
        headers=[("Location", "/home"), ("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")],
        url="https://site.example/",
        redirected=True,
        location="https://site.example/home",
    )
    FileCache(tmp_path).set("https://site.example/", b"", meta)

    reopened = FileCache(tmp_path)
    assert "https://site.example/" in reopened
    entry = reopened.entry("https://site.example/")
    assert entry.data == b""
    assert entry.metadata.redirected
    assert entry.metadata.location == "https://site.example/home"
    assert entry.metadata.headers.get_list("set-cookie") == ["a=1", "b=2"]
    assert reopened.set("https://site.example/", b"x", Metadata(status=200)) is False
