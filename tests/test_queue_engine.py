from dataclasses import dataclass
from datetime import timedelta

import pytest
from sqlalchemy import select, update

import db
from starterkit.core.time_utils import utcnow
from starterkit.jobs.queue import (
    STATE_AVAILABLE,
    STATE_COMPLETED,
    STATE_DISCARDED,
    STATE_RETRYABLE,
    STATE_RUNNING,
    STATE_SCHEDULED,
    InsertOpts,
    JobArgs,
    QueueConfig,
    QueueEngine,
    QueueJob,
    Worker,
    Workers,
)


@dataclass
class EchoArgs(JobArgs):
    kind = "echo"

    value: str


@dataclass
class UniqueArgs(JobArgs):
    kind = "unique_echo"

    value: str

    def insert_opts(self):
        return InsertOpts(unique_by_args=True, max_attempts=2)


class RecordingWorker(Worker):
    args_class = EchoArgs

    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.calls = []

    def work(self, job):
        self.calls.append((job.args.value, job.attempt))
        if len(self.calls) <= self.fail_times:
            raise RuntimeError(f"boom {len(self.calls)}")


class UniqueWorker(Worker):
    args_class = UniqueArgs

    def work(self, job):
        raise RuntimeError("always fails")


def make_engine(*workers, **kw):
    registry = Workers()
    for w in workers:
        registry.add(w)
    kw.setdefault("retry_backoff", timedelta(0))
    engine = QueueEngine(db.engine, registry, {"default": QueueConfig(max_workers=2)}, **kw)
    engine.migrate()
    return engine


def job_row(job_id):
    with db.SessionLocal() as s:
        return s.execute(select(QueueJob).where(QueueJob.id == job_id)).scalar_one()


def test_insert_and_work_completes_job():
    worker = RecordingWorker()
    engine = make_engine(worker)
    result = engine.insert(EchoArgs(value="hi"))
    assert job_row(result.job_id).state == STATE_AVAILABLE

    assert engine.work_available() == 1
    assert worker.calls == [("hi", 1)]
    row = job_row(result.job_id)
    assert row.state == STATE_COMPLETED
    assert row.finalized_at is not None


def test_failed_job_retries_then_succeeds():
    worker = RecordingWorker(fail_times=1)
    engine = make_engine(worker)
    result = engine.insert(EchoArgs(value="x"))

    engine.work_available()
    assert worker.calls == [("x", 1), ("x", 2)]
    row = job_row(result.job_id)
    assert row.state == STATE_COMPLETED
    assert row.attempt == 2
    assert len(row.errors) == 1
    assert "boom 1" in row.errors[0]["error"]


def test_job_discarded_after_max_attempts():
    worker = RecordingWorker(fail_times=10)
    engine = make_engine(worker, default_max_attempts=3)
    result = engine.insert(EchoArgs(value="x"))

    engine.work_available()
    assert len(worker.calls) == 3
    row = job_row(result.job_id)
    assert row.state == STATE_DISCARDED
    assert row.max_attempts == 3
    assert len(row.errors) == 3


def test_retry_is_delayed_by_backoff():
    worker = RecordingWorker(fail_times=1)
    engine = make_engine(worker, retry_backoff=timedelta(minutes=5))
    result = engine.insert(EchoArgs(value="x"))

    assert engine.work_available() == 1
    row = job_row(result.job_id)
    assert row.state == STATE_RETRYABLE
    assert row.scheduled_at > utcnow() + timedelta(minutes=4)
    # not due yet
    assert engine.work_available() == 0


def test_backoff_grows_and_is_capped():
    engine = make_engine(retry_backoff=timedelta(seconds=5))
    assert engine.backoff(1) == timedelta(seconds=5)
    assert engine.backoff(2) == timedelta(seconds=10)
    assert engine.backoff(3) == timedelta(seconds=20)
    assert engine.backoff(30) == timedelta(hours=1)


def test_unknown_kind_is_discarded():
    engine = make_engine()
    result = engine.insert(EchoArgs(value="nobody listens"))
    engine.work_available()
    row = job_row(result.job_id)
    assert row.state == STATE_DISCARDED
    assert "no worker registered" in row.errors[0]["error"]


def test_scheduled_job_waits_until_due():
    worker = RecordingWorker()
    engine = make_engine(worker)
    result = engine.insert(EchoArgs(value="later"), InsertOpts(scheduled_at=utcnow() + timedelta(hours=1)))
    assert job_row(result.job_id).state == STATE_SCHEDULED
    assert engine.work_available() == 0

    with db.engine.begin() as conn:
        conn.execute(
            update(QueueJob.__table__)
            .where(QueueJob.id == result.job_id)
            .values(scheduled_at=utcnow() - timedelta(seconds=1))
        )
    assert engine.work_available() == 1
    assert worker.calls == [("later", 1)]


def test_unique_insert_skips_duplicates():
    engine = make_engine(UniqueWorker())
    first = engine.insert(UniqueArgs(value="evt_1"))
    second = engine.insert(UniqueArgs(value="evt_1"))
    other = engine.insert(UniqueArgs(value="evt_2"))

    assert first.unique_skipped_as_duplicate is False
    assert second.unique_skipped_as_duplicate is True
    assert second.job_id == first.job_id
    assert other.job_id != first.job_id


def test_unique_insert_revives_discarded_job():
    engine = make_engine(UniqueWorker())
    first = engine.insert(UniqueArgs(value="evt_1"))
    engine.work_available()
    assert job_row(first.job_id).state == STATE_DISCARDED

    again = engine.insert(UniqueArgs(value="evt_1"))
    assert again.unique_skipped_as_duplicate is False
    assert again.job_id == first.job_id
    row = job_row(first.job_id)
    assert row.state == STATE_AVAILABLE
    assert row.attempt == 0
    assert row.errors is None


def test_rescue_stuck_jobs():
    engine = make_engine(RecordingWorker(), rescue_stuck_jobs_after=timedelta(minutes=10))
    stuck = engine.insert(EchoArgs(value="stuck"))
    exhausted = engine.insert(EchoArgs(value="exhausted"), InsertOpts(max_attempts=1))
    long_ago = utcnow() - timedelta(hours=1)
    with db.engine.begin() as conn:
        conn.execute(
            update(QueueJob.__table__)
            .where(QueueJob.id.in_([stuck.job_id, exhausted.job_id]))
            .values(state=STATE_RUNNING, attempt=1, attempted_at=long_ago)
        )

    assert engine.rescue_stuck_jobs() == 2
    assert job_row(stuck.job_id).state == STATE_RETRYABLE
    assert job_row(exhausted.job_id).state == STATE_DISCARDED


def test_queue_stats_counts_by_state():
    engine = make_engine(RecordingWorker())
    engine.insert(EchoArgs(value="a"))
    engine.insert(EchoArgs(value="b"))
    engine.work_available(limit=1)
    stats = engine.queue_stats()
    assert stats["default"] == {"available": 1, "completed": 1}


def test_workers_registry_rejects_duplicate_kinds():
    registry = Workers()
    registry.add(RecordingWorker())
    with pytest.raises(ValueError):
        registry.add(RecordingWorker())
    assert registry.kinds() == ["echo"]


def test_job_args_round_trip_ignores_unknown_keys():
    args = EchoArgs.from_dict({"value": "v", "extra": 1})
    assert args == EchoArgs(value="v")
    assert args.to_dict() == {"value": "v"}
