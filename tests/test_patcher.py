import re

from sitemirror.patcher import DataPatcher, PatchRule


def test_rules_apply_in_order_to_matching_urls_only():
    patcher = (
        DataPatcher()
        .add_rule([r"site\.example/wiki/"], "foo", "bar")
        .add_rule([r"site\.example/wiki/"], "bar", "baz")
        .add_rule([r"other\.example"], "baz", "nope")
    )
    logs = []
    out = patcher.patch("https://site.example/wiki/A", "foo foo", logs.append)
    assert out == "baz baz"
    assert len(logs) == 2
    assert "2 replacement(s)" in logs[0]


def test_plain_url_matches_itself():
    patcher = DataPatcher().add_rule(["https://site.example/page"], r"<script>.*?</script>", "")
    assert patcher.patch("https://site.example/page", "a<script>x()</script>b") == "ab"
    assert patcher.patch("https://site.example/other", "a<script>x()</script>b") == "a<script>x()</script>b"


def test_group_references_and_callables():
    patcher = DataPatcher(
        [
            PatchRule.create([r"."], re.compile(r"(\d+)px"), r"\1em"),
            PatchRule.create([r"."], "EM", lambda m: m.group(0).lower()),
        ]
    )
    assert patcher.patch("https://site.example/a.css", "12px EM") == "12em em"
    assert len(patcher.rules) == 2


def test_patching_patched_content_changes_nothing():
    patcher = DataPatcher().add_rule([r"."], r"http://cdn\.example/", "https://cdn.example/")
    once = patcher.patch("https://site.example/", '<img src="http://cdn.example/a.png">')
    logs = []
    assert patcher.patch("https://site.example/", once, logs.append) == once
    assert "0 replacement(s)" in logs[0]
