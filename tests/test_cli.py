from pathlib import Path

import pytest

from sitemirror import _deps
from sitemirror.cli import build_parser, config_from_args, main
from sitemirror.engine import Stage


def _config(*argv):
    return config_from_args(build_parser().parse_args(list(argv)))


def test_defaults_keep_external_links():
    config = _config("https://site.example/")
    assert config.entry_urls == ["https://site.example/"]
    assert config.output_dir == Path("mirror")
    assert config.rewrite.keep_external


def test_options_override():
    config = _config(
        "https://site.example/",
        "--out-dir", "out",
        "--allow-domain", "site.example",
        "--allow-domain", "cdn.example",
        "--deny-path", "^/private",
        "--workers", "2",
        "--fetch-workers", "5",
        "--delay", "0.25",
        "--retries", "1",
        "--strict-external",
        "--respect-robots",
    )
    assert config.output_dir == Path("out")
    assert config.allowed_domains == ["site.example", "cdn.example"]
    assert config.concurrency == {Stage.REQUEST: 2, Stage.FETCH: 5, Stage.PARSE: 2, Stage.WRITE: 2}
    assert config.fetch.delay == 0.25
    assert config.fetch.retries == 1
    assert not config.rewrite.keep_external
    assert config.respect_robots
    assert not config.scope().path_allowed("https://site.example/private/a")


def test_config_file_with_cli_urls(tmp_path):
    path = tmp_path / "c.json"
    path.write_text('{"entry_urls": ["https://a.example/"], "rewrite": {"keep_external": false}}', encoding="utf-8")
    config = _config("--config", str(path), "https://b.example/")
    assert config.entry_urls == ["https://b.example/"]
    assert not config.rewrite.keep_external


def test_main_requires_a_url(capsys):
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 2
    assert "At least one URL" in capsys.readouterr().err


def test_main_reports_bad_config(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--config", str(tmp_path / "missing.json")])
    assert exc.value.code == 2
    assert "Cannot read config" in capsys.readouterr().err


def test_missing_stack_exits_with_hint(monkeypatch, capsys):
    monkeypatch.setattr(_deps, "REQUIRED", {**_deps.REQUIRED, "no_such_module_xyz": "no-such-dist"})
    monkeypatch.setenv(_deps.AUTO_INSTALL_ENV, "0")
    assert _deps.missing_required() == ["no-such-dist"]
    with pytest.raises(SystemExit) as exc:
        _deps.check_required()
    assert exc.value.code == 1
    assert "no-such-dist" in capsys.readouterr().err


def test_installed_stack_passes_check():
    assert _deps.missing_required() == []
    _deps.check_required()
