import threading

import pytest

from sitemirror.engine import (
    PROCEED,
    Failed,
    Filtered,
    JobOutcome,
    NewJob,
    Proceed,
    QueueEngine,
    Stage,
)
from sitemirror.storage import RunLog

ALL_ONE = {stage: 1 for stage in Stage}


def _visit(name, seen, lock):
    def middleware(job):
        with lock:
            seen.append((name, job.data.uri))
        return PROCEED

    return middleware


def test_jobs_flow_through_every_stage_in_order():
    seen, lock = [], threading.Lock()
    engine = QueueEngine({stage: [_visit(stage.value, seen, lock)] for stage in Stage})
    report = engine.run(["a", "b"])
    assert sorted(r.uri for r in report.completed) == ["a", "b"]
    assert all(r.stage is Stage.WRITE for r in report.completed)
    for uri in ("a", "b"):
        assert [name for name, u in seen if u == uri] == ["request", "fetch", "parse", "write"]


def test_empty_run_finishes():
    report = QueueEngine().run([])
    assert len(report) == 0


def test_stage_without_middleware_promotes_directly():
    report = QueueEngine(concurrency=ALL_ONE).run(["a"])
    assert [r.uri for r in report.completed] == ["a"]


def test_filtered_and_failed_jobs_are_isolated():
    def request(job):
        if job.data.uri == "skip":
            return Filtered("not wanted")
        return PROCEED

    def parse(job):
        if job.data.uri == "boom":
            raise ValueError("bad content")
        if job.data.uri == "fail":
            return Failed(RuntimeError("explicit"))
        return PROCEED

    after_failure = []

    def record(job):
        after_failure.append(job)
        return PROCEED

    engine = QueueEngine({Stage.REQUEST: [request], Stage.PARSE: [parse, record]})
    report = engine.run(["ok", "skip", "boom", "fail"])

    assert [r.uri for r in report.completed] == ["ok"]
    (filtered,) = report.filtered
    assert (filtered.uri, filtered.stage, filtered.reason) == ("skip", Stage.REQUEST, "not wanted")
    failed = {r.uri: r for r in report.failed}
    assert set(failed) == {"boom", "fail"}
    assert failed["boom"].stage is Stage.PARSE
    assert failed["boom"].reason == "ValueError: bad content"
    assert failed["fail"].reason == "RuntimeError: explicit"
    # failing middleware stops the chain
    assert [job.data.uri for job in after_failure] == ["ok"]


def test_returning_something_else_fails_the_job():
    engine = QueueEngine({Stage.FETCH: [lambda job: None]})
    (record,) = engine.run(["a"]).failed
    assert record.outcome is JobOutcome.FAILED
    assert "TypeError" in record.reason


def test_spawned_jobs_are_created_by_the_engine():
    def parse(job):
        depth = job.data.extra.get("depth", 0)
        if depth >= 2:
            return PROCEED
        children = tuple(
            NewJob(Stage.REQUEST, f"{job.data.uri}/{i}", {"depth": depth + 1}) for i in range(2)
        )
        return Proceed(spawn=children)

    report = QueueEngine({Stage.PARSE: [parse]}).run(["root"])
    assert len(report.completed) == 1 + 2 + 4
    assert {r.uri for r in report.completed} >= {"root/0/1", "root/1/0"}


def test_spawn_data_fills_job_fields():
    captured = []

    def parse(job):
        if job.data.uri == "root":
            return Proceed(spawn=(NewJob(Stage.WRITE, "direct", {"mime_type": "text/css"}),))
        return PROCEED

    def write(job):
        captured.append((job.data.uri, job.data.mime_type))
        return PROCEED

    QueueEngine({Stage.PARSE: [parse], Stage.WRITE: [write]}).run(["root"])
    assert ("direct", "text/css") in captured


def test_job_logs_end_up_in_report():
    def fetch(job):
        job.log("fetched")
        return PROCEED

    (record,) = QueueEngine({Stage.FETCH: [fetch]}).run(["a"]).completed
    assert record.logs == ("[fetch] fetched",)


def test_events():
    events, lock = [], threading.Lock()

    def listener(event):
        with lock:
            events.append((event.kind, event.stage, event.job.data.uri))

    def broken_listener(event):
        raise RuntimeError("listener bug")

    engine = QueueEngine({Stage.REQUEST: [lambda job: Filtered("no") if job.data.uri == "x" else PROCEED]})
    engine.subscribe(broken_listener)
    engine.subscribe(listener)
    report = engine.run(["a", "x"])

    assert len(report.completed) == 1
    assert ("created", Stage.REQUEST, "a") in events
    assert ("filtered", Stage.REQUEST, "x") in events
    assert ("completed", Stage.WRITE, "a") in events
    kinds_for_a = [k for k, _, uri in events if uri == "a"]
    assert kinds_for_a == ["created", "promoted", "promoted", "promoted", "completed"]


def test_concurrency_is_validated_and_frozen_after_start():
    engine = QueueEngine()
    with pytest.raises(ValueError):
        engine.set_concurrency(Stage.FETCH, 0)
    engine.run([])
    with pytest.raises(RuntimeError):
        engine.set_concurrency(Stage.FETCH, 2)
    with pytest.raises(RuntimeError):
        engine.configure(Stage.FETCH, [])
    with pytest.raises(RuntimeError):
        engine.start([])


def test_concurrency_given_at_construction():
    engine = QueueEngine(concurrency={Stage.FETCH: 3, Stage.WRITE: 2})
    assert engine._concurrency[Stage.FETCH] == 3
    assert engine._concurrency[Stage.WRITE] == 2
    with pytest.raises(ValueError):
        QueueEngine(concurrency={Stage.PARSE: 0})


def test_join_before_start_raises():
    with pytest.raises(RuntimeError):
        QueueEngine().join()


def test_run_log_has_a_line_per_terminal_job(tmp_path):
    path = tmp_path / "run.log"
    engine = QueueEngine(
        {Stage.REQUEST: [lambda job: Filtered("dup") if job.data.uri == "b" else PROCEED]},
        run_log=RunLog(path),
    )
    engine.run(["a", "b"])
    lines = sorted(line.split("\t")[1:] for line in path.read_text(encoding="utf-8").splitlines())
    assert lines == [["request", "filtered", "b", "dup"], ["write", "completed", "a", ""]]


def _blocking_fetch(started, release):
    def fetch(job):
        started.set()
        assert release.wait(5)
        return PROCEED

    return fetch


def test_shutdown_without_drain_drops_queued_jobs():
    started, release = threading.Event(), threading.Event()
    engine = QueueEngine({Stage.FETCH: [_blocking_fetch(started, release)]}, concurrency=ALL_ONE)
    engine.start(["a", "b", "c"])
    assert started.wait(5)
    engine.shutdown(drain=False)
    release.set()
    report = engine.join()

    assert report.completed == []
    assert sorted(r.uri for r in report.filtered) == ["a", "b", "c"]
    assert all(r.reason == "shutdown" for r in report.filtered)


def test_shutdown_with_drain_finishes_work_but_drops_spawns():
    started, release = threading.Event(), threading.Event()

    def parse(job):
        return Proceed(spawn=(NewJob(Stage.REQUEST, job.data.uri + "/child"),))

    engine = QueueEngine(
        {Stage.FETCH: [_blocking_fetch(started, release)], Stage.PARSE: [parse]},
        concurrency=ALL_ONE,
    )
    engine.start(["a"])
    assert started.wait(5)
    engine.shutdown(drain=True)
    release.set()
    report = engine.join()

    assert [r.uri for r in report.completed] == ["a"]
    assert [(r.uri, r.reason) for r in report.filtered] == [("a/child", "shutdown")]
