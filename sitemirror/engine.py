"""
Queue engine: four stages (request -> fetch -> parse -> write), each a pool of
worker threads pulling jobs from its own queue and running them through the
stage's ordered middleware chain.

A middleware is a plain callable ``(job) -> outcome``:

- ``Proceed(spawn=...)`` continues with the next middleware; when the chain is
  exhausted the job is promoted to the next stage (or completed after write).
- ``Filtered(reason)`` drops the job deliberately.
- ``Failed(error)``, or any exception raised, fails the job. No retry.

Middleware never touches queues. Jobs for other URLs are requested by
returning ``NewJob`` descriptors in ``Proceed.spawn``; the engine creates them.
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from queue import Queue
from typing import Any, Callable, Iterable, Mapping, Sequence, Union

from sitemirror.storage import RunLog

logger = logging.getLogger("sitemirror.engine")


class Stage(str, Enum):
    REQUEST = "request"
    FETCH = "fetch"
    PARSE = "parse"
    WRITE = "write"

    @property
    def next(self) -> "Stage | None":
        order = list(Stage)
        i = order.index(self)
        return order[i + 1] if i + 1 < len(order) else None


@dataclass
class JobData:
    uri: str
    cache_key: str | None = None
    mime_type: str | None = None
    references: set = field(default_factory=set)
    redirect: str | None = None  # location of a redirected cache entry
    text: str | None = None  # patched textual content, set by the parse stage
    output: bytes | None = None  # final bytes to persist, set by the write stage
    extra: dict[str, Any] = field(default_factory=dict)


_JOB_DATA_FIELDS = frozenset(f.name for f in dataclasses.fields(JobData))


@dataclass
class Job:
    id: int
    stage: Stage
    data: JobData
    logs: list[str] = field(default_factory=list)

    def log(self, message: str) -> None:
        self.logs.append(f"[{self.stage.value}] {message}")

    @property
    def key(self) -> str:
        """Dedup/cache key once normalized, the raw URI before that."""
        return self.data.cache_key or self.data.uri


@dataclass(frozen=True)
class NewJob:
    """Request to create a job in another stage."""

    stage: Stage
    uri: str
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Proceed:
    spawn: tuple[NewJob, ...] = ()


@dataclass(frozen=True)
class Filtered:
    reason: str


@dataclass(frozen=True)
class Failed:
    error: BaseException


Outcome = Union[Proceed, Filtered, Failed]
Middleware = Callable[[Job], Outcome]

PROCEED = Proceed()


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    FILTERED = "filtered"
    FAILED = "failed"


@dataclass(frozen=True)
class JobRecord:
    """Terminal state of one job."""

    id: int
    stage: Stage
    uri: str
    key: str
    outcome: JobOutcome
    reason: str
    logs: tuple[str, ...]


@dataclass
class RunReport:
    records: list[JobRecord] = field(default_factory=list)

    def by_outcome(self, outcome: JobOutcome) -> list[JobRecord]:
        return [r for r in self.records if r.outcome is outcome]

    @property
    def completed(self) -> list[JobRecord]:
        return self.by_outcome(JobOutcome.COMPLETED)

    @property
    def filtered(self) -> list[JobRecord]:
        return self.by_outcome(JobOutcome.FILTERED)

    @property
    def failed(self) -> list[JobRecord]:
        return self.by_outcome(JobOutcome.FAILED)

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class JobEvent:
    kind: str  # created | promoted | completed | filtered | failed
    stage: Stage
    job: Job
    reason: str = ""


Listener = Callable[[JobEvent], None]

DEFAULT_CONCURRENCY = {Stage.REQUEST: 4, Stage.FETCH: 8, Stage.PARSE: 4, Stage.WRITE: 4}


def describe_error(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


def _middleware_name(middleware: Middleware) -> str:
    return getattr(middleware, "__name__", None) or type(middleware).__name__


class QueueEngine:
    """Runs jobs through the stages until every queue is drained."""

    def __init__(
        self,
        middleware: Mapping[Stage, Sequence[Middleware]] | None = None,
        concurrency: Mapping[Stage, int] | None = None,
        run_log: RunLog | None = None,
    ) -> None:
        middleware = middleware or {}
        self._middleware: dict[Stage, list[Middleware]] = {s: list(middleware.get(s, ())) for s in Stage}
        self._started = False
        self._closing = False  # no new jobs accepted
        self._dropping = False  # queued jobs are discarded
        self._concurrency: dict[Stage, int] = dict(DEFAULT_CONCURRENCY)
        for stage, n in (concurrency or {}).items():
            self.set_concurrency(stage, n)
        self._run_log = run_log
        self._queues: dict[Stage, Queue[Job | None]] = {s: Queue() for s in Stage}
        self._listeners: list[Listener] = []
        self._ids = itertools.count(1)
        self._records: list[JobRecord] = []
        self._records_lock = threading.Lock()
        self._pending = 0
        self._pending_lock = threading.Lock()
        self._executors: list[ThreadPoolExecutor] = []
        self._futures: list[Future] = []

    # Configuration

    def configure(self, stage: Stage, middleware: Iterable[Middleware]) -> None:
        if self._started:
            raise RuntimeError("Cannot reconfigure a running engine")
        self._middleware[stage] = list(middleware)

    def set_concurrency(self, stage: Stage, workers: int) -> None:
        if self._started:
            raise RuntimeError("Cannot change concurrency of a running engine")
        if workers < 1:
            raise ValueError(f"{stage.value} concurrency must be at least 1, got {workers}")
        self._concurrency[stage] = workers

    def subscribe(self, listener: Listener) -> None:
        """listener(JobEvent) is called from worker threads for every job transition."""
        self._listeners.append(listener)

    # Job lifecycle

    def add_job(self, stage: Stage, uri: str, **data: Any) -> Job:
        """Create a job in stage. After shutdown the job is recorded as filtered instead."""
        known = {k: v for k, v in data.items() if k in _JOB_DATA_FIELDS and k != "uri"}
        extra = {k: v for k, v in data.items() if k not in _JOB_DATA_FIELDS}
        job_data = JobData(uri=uri, **known)
        job_data.extra.update(extra)
        job = Job(id=next(self._ids), stage=stage, data=job_data)
        if self._closing:
            self._emit(JobEvent("created", stage, job))
            self._finish(job, JobOutcome.FILTERED, "shutdown")
            return job
        with self._pending_lock:
            self._pending += 1
        self._emit(JobEvent("created", stage, job))
        self._queues[stage].put(job)
        return job

    def start(self, entry_urls: Iterable[str] = ()) -> None:
        """Queue entry_urls as request jobs and start every stage's workers."""
        if self._started:
            raise RuntimeError("Engine already started")
        for url in entry_urls:
            self.add_job(Stage.REQUEST, url)
        self._started = True
        for stage in Stage:
            workers = self._concurrency[stage]
            executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"sitemirror-{stage.value}")
            self._executors.append(executor)
            self._futures.extend(executor.submit(self._worker, stage) for _ in range(workers))
        with self._pending_lock:
            if self._pending == 0:
                self._stop_workers()

    def join(self) -> RunReport:
        """Wait until all stages are drained (or shut down) and return the report."""
        if not self._started:
            raise RuntimeError("Engine not started")
        try:
            for fut in self._futures:
                fut.result()
        finally:
            for executor in self._executors:
                executor.shutdown(wait=True)
        return self.report()

    def run(self, entry_urls: Iterable[str] = ()) -> RunReport:
        self.start(entry_urls)
        return self.join()

    def shutdown(self, drain: bool = True) -> None:
        """
        Stop accepting new jobs. With drain, queued and in-flight jobs still run
        to the end of the pipeline; without it, queued jobs are discarded and
        in-flight jobs stop at the end of their current stage.
        """
        self._closing = True
        if not drain:
            self._dropping = True
        logger.info("Shutdown requested (drain=%s)", drain)

    def report(self) -> RunReport:
        with self._records_lock:
            return RunReport(list(self._records))

    # Workers

    def _worker(self, stage: Stage) -> None:
        queue = self._queues[stage]
        while True:
            job = queue.get()
            if job is None:
                return
            try:
                if self._dropping:
                    self._finish(job, JobOutcome.FILTERED, "shutdown")
                else:
                    self._process(job)
            except Exception as e:
                logger.exception("Internal error on job %s (%s)", job.id, job.data.uri)
                self._finish(job, JobOutcome.FAILED, describe_error(e))
            finally:
                self._job_done()

    def _process(self, job: Job) -> None:
        spawned: list[NewJob] = []
        terminal: tuple[JobOutcome, str] | None = None
        for middleware in self._middleware[job.stage]:
            try:
                outcome = middleware(job)
            except Exception as e:
                outcome = Failed(e)
            if isinstance(outcome, Proceed):
                spawned.extend(outcome.spawn)
                continue
            if isinstance(outcome, Filtered):
                terminal = (JobOutcome.FILTERED, outcome.reason)
            elif isinstance(outcome, Failed):
                terminal = (JobOutcome.FAILED, describe_error(outcome.error))
            else:
                error = TypeError(f"Middleware {_middleware_name(middleware)} returned {outcome!r}")
                terminal = (JobOutcome.FAILED, describe_error(error))
            break

        if terminal is not None:
            self._finish(job, *terminal)
        elif job.stage.next is None:
            self._finish(job, JobOutcome.COMPLETED, "")
        else:
            self._promote(job, job.stage.next)

        for new in spawned:
            self.add_job(new.stage, new.uri, **dict(new.data))

    def _promote(self, job: Job, stage: Stage) -> None:
        if self._dropping:
            self._finish(job, JobOutcome.FILTERED, "shutdown")
            return
        job.stage = stage
        with self._pending_lock:
            self._pending += 1
        self._emit(JobEvent("promoted", stage, job))
        self._queues[stage].put(job)

    def _finish(self, job: Job, outcome: JobOutcome, reason: str) -> None:
        if reason:
            job.log(f"{outcome.value}: {reason}")
        record = JobRecord(
            id=job.id,
            stage=job.stage,
            uri=job.data.uri,
            key=job.key,
            outcome=outcome,
            reason=reason,
            logs=tuple(job.logs),
        )
        with self._records_lock:
            self._records.append(record)
        if self._run_log is not None:
            self._run_log.record(job.stage.value, outcome.value, job.key, reason)
        if outcome is JobOutcome.FAILED:
            logger.warning("%s job failed for %s: %s", job.stage.value, job.key, reason)
        elif outcome is JobOutcome.FILTERED:
            logger.debug("%s job filtered for %s: %s", job.stage.value, job.key, reason)
        else:
            logger.info("Mirrored %s", job.key)
        self._emit(JobEvent(outcome.value, job.stage, job, reason))

    def _job_done(self) -> None:
        with self._pending_lock:
            self._pending -= 1
            if self._pending == 0:
                self._stop_workers()

    def _stop_workers(self) -> None:
        """Send one sentinel per worker. Caller holds _pending_lock."""
        self._closing = True
        for stage, queue in self._queues.items():
            for _ in range(self._concurrency[stage]):
                queue.put(None)

    def _emit(self, event: JobEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Job event listener failed on %s event", event.kind)
