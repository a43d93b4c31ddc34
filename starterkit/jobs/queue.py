"""Postgres-backed job queue.

Jobs live in the ``queue_jobs`` table, which the engine owns and migrates itself
(independently of the application's Alembic history). Each named queue gets one
fetcher thread that claims due rows with ``FOR UPDATE SKIP LOCKED`` and hands them
to a bounded thread pool; a maintenance thread rescues jobs whose worker died.

Job states::

    scheduled -> available -> running -> completed
                     ^            |
                     |            +-> retryable --(backoff)--> running ...
                     |            +-> discarded (attempts exhausted / unknown kind)
                     +-- revived by a unique insert of a discarded/cancelled job
"""
from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, ClassVar, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    SmallInteger,
    String,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from starterkit.core.time_utils import utcnow

logger = logging.getLogger(__name__)

QUEUE_DEFAULT = "default"

STATE_SCHEDULED = "scheduled"
STATE_AVAILABLE = "available"
STATE_RUNNING = "running"
STATE_RETRYABLE = "retryable"
STATE_COMPLETED = "completed"
STATE_DISCARDED = "discarded"
STATE_CANCELLED = "cancelled"

# A unique job blocks duplicates in every state except these
_REVIVABLE_STATES = (STATE_DISCARDED, STATE_CANCELLED)
_FETCHABLE_STATES = (STATE_AVAILABLE, STATE_SCHEDULED, STATE_RETRYABLE)

MAX_BACKOFF = timedelta(hours=1)
MAX_RECORDED_ERRORS = 20

queue_metadata = MetaData()
QueueBase = declarative_base(metadata=queue_metadata)


class QueueJob(QueueBase):
    __tablename__ = "queue_jobs"
    __table_args__ = (
        Index("ix_queue_jobs_fetch", "queue", "state", "priority", "scheduled_at", "id"),
        Index("ix_queue_jobs_state_attempted", "state", "attempted_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(100), nullable=False)
    queue = Column(String(100), nullable=False, default=QUEUE_DEFAULT)
    args = Column(JSON, nullable=False)
    state = Column(String(20), nullable=False, default=STATE_AVAILABLE)
    priority = Column(SmallInteger, nullable=False, default=1)
    attempt = Column(SmallInteger, nullable=False, default=0)
    max_attempts = Column(SmallInteger, nullable=False)
    unique_key = Column(String(64), nullable=True, unique=True)
    errors = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    scheduled_at = Column(DateTime, nullable=False, default=utcnow)
    attempted_at = Column(DateTime, nullable=True)
    finalized_at = Column(DateTime, nullable=True)


@dataclass
class InsertOpts:
    queue: str = QUEUE_DEFAULT
    max_attempts: Optional[int] = None  # None -> engine default
    priority: int = 1
    unique_by_args: bool = False
    scheduled_at: Optional[datetime] = None


class JobArgs:
    """Base for job-argument dataclasses.

    Subclasses set ``kind`` (stable, used for routing and storage) and may
    override ``insert_opts``. Fields must be JSON-serializable.
    """

    kind: ClassVar[str] = ""

    def insert_opts(self) -> InsertOpts:
        return InsertOpts()

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in names})


A = TypeVar("A", bound=JobArgs)


@dataclass
class Job(Generic[A]):
    id: int
    kind: str
    queue: str
    attempt: int
    max_attempts: int
    args: A
    deadline: datetime

    def deadline_exceeded(self) -> bool:
        return utcnow() > self.deadline


class Worker(Generic[A]):
    """Processes jobs of one kind. Raising from ``work`` schedules a retry."""

    args_class: ClassVar[Type[JobArgs]]

    def work(self, job: Job[A]) -> None:
        raise NotImplementedError


class Workers:
    def __init__(self):
        self._by_kind: Dict[str, Worker] = {}

    def add(self, worker: Worker) -> None:
        kind = worker.args_class.kind
        if not kind:
            raise ValueError(f"{type(worker).__name__}: args class has no kind")
        if kind in self._by_kind:
            raise ValueError(f"worker for kind {kind!r} already registered")
        self._by_kind[kind] = worker

    def get(self, kind: str) -> Optional[Worker]:
        return self._by_kind.get(kind)

    def kinds(self) -> List[str]:
        return sorted(self._by_kind)


@dataclass
class QueueConfig:
    max_workers: int


@dataclass
class InsertManyParams:
    args: JobArgs
    opts: Optional[InsertOpts] = None


@dataclass
class InsertResult:
    job_id: int
    kind: str
    queue: str
    unique_skipped_as_duplicate: bool = False


def unique_key_for(kind: str, args: Dict[str, Any]) -> str:
    canonical = json.dumps({"kind": kind, "args": args}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class QueueEngine:
    def __init__(
        self,
        engine: Engine,
        workers: Workers,
        queues: Dict[str, QueueConfig],
        default_max_attempts: int = 3,
        retry_backoff: timedelta = timedelta(seconds=5),
        job_timeout: timedelta = timedelta(seconds=30),
        rescue_stuck_jobs_after: timedelta = timedelta(hours=1),
        fetch_poll_interval: float = 1.0,
    ):
        self.engine = engine
        self.workers = workers
        self.queues = dict(queues)
        self.default_max_attempts = max(1, int(default_max_attempts))
        self.retry_backoff = retry_backoff
        self.job_timeout = job_timeout
        self.rescue_stuck_jobs_after = rescue_stuck_jobs_after
        self.fetch_poll_interval = fetch_poll_interval
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        self._in_flight: Dict[str, int] = {}
        self._lock = threading.Lock()

    # ---- schema -------------------------------------------------------------

    def migrate(self) -> None:
        queue_metadata.create_all(bind=self.engine, checkfirst=True)

    # ---- insertion ----------------------------------------------------------

    def _resolve_opts(self, args: JobArgs, opts: Optional[InsertOpts]) -> InsertOpts:
        resolved = opts if opts is not None else args.insert_opts()
        if resolved.max_attempts is None:
            resolved = dataclasses.replace(resolved, max_attempts=self.default_max_attempts)
        return resolved

    def _insert_one(self, session: Session, args: JobArgs, opts: Optional[InsertOpts]) -> InsertResult:
        if not args.kind:
            raise ValueError(f"{type(args).__name__} has no kind")
        o = self._resolve_opts(args, opts)
        payload = args.to_dict()
        now = utcnow()
        scheduled_at = o.scheduled_at or now
        state = STATE_SCHEDULED if scheduled_at > now else STATE_AVAILABLE
        unique_key = unique_key_for(args.kind, payload) if o.unique_by_args else None

        if unique_key is not None:
            existing = session.execute(
                select(QueueJob).where(QueueJob.unique_key == unique_key).with_for_update()
            ).scalar_one_or_none()
            if existing is not None:
                if existing.state not in _REVIVABLE_STATES:
                    return InsertResult(existing.id, existing.kind, existing.queue, True)
                existing.state = state
                existing.queue = o.queue
                existing.priority = o.priority
                existing.attempt = 0
                existing.max_attempts = o.max_attempts
                existing.args = payload
                existing.errors = None
                existing.scheduled_at = scheduled_at
                existing.attempted_at = None
                existing.finalized_at = None
                session.flush()
                return InsertResult(existing.id, existing.kind, existing.queue)

        row = QueueJob(
            kind=args.kind,
            queue=o.queue,
            args=payload,
            state=state,
            priority=o.priority,
            attempt=0,
            max_attempts=o.max_attempts,
            unique_key=unique_key,
            created_at=now,
            scheduled_at=scheduled_at,
        )
        session.add(row)
        session.flush()
        return InsertResult(row.id, row.kind, row.queue)

    def insert(self, args: JobArgs, opts: Optional[InsertOpts] = None) -> InsertResult:
        return self.insert_many([InsertManyParams(args, opts)])[0]

    def insert_many(self, params: List[InsertManyParams]) -> List[InsertResult]:
        """Insert all jobs in one transaction."""
        with self._sessions() as session:
            try:
                results = [self._insert_one(session, p.args, p.opts) for p in params]
                session.commit()
            except IntegrityError:
                # Lost a race on unique_key; the other insert wins
                session.rollback()
                if len(params) != 1:
                    raise
                existing = session.execute(
                    select(QueueJob).where(
                        QueueJob.unique_key == unique_key_for(params[0].args.kind, params[0].args.to_dict())
                    )
                ).scalar_one()
                return [InsertResult(existing.id, existing.kind, existing.queue, True)]
        for r in results:
            logger.debug(
                "job.inserted",
                extra={"job_id": r.job_id, "kind": r.kind, "queue": r.queue, "duplicate": r.unique_skipped_as_duplicate},
            )
        return results

    # ---- fetching & execution ----------------------------------------------

    def _fetch(self, queue: str, limit: int) -> List[Job]:
        now = utcnow()
        with self._sessions() as session:
            rows = (
                session.execute(
                    select(QueueJob)
                    .where(
                        QueueJob.queue == queue,
                        QueueJob.state.in_(_FETCHABLE_STATES),
                        QueueJob.scheduled_at <= now,
                    )
                    .order_by(QueueJob.priority, QueueJob.scheduled_at, QueueJob.id)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            jobs = []
            for row in rows:
                row.state = STATE_RUNNING
                row.attempt = int(row.attempt or 0) + 1
                row.attempted_at = now
                jobs.append(row)
            session.commit()

        claimed = []
        for row in jobs:
            worker = self.workers.get(row.kind)
            args = worker.args_class.from_dict(row.args) if worker is not None else row.args
            claimed.append(
                Job(
                    id=row.id,
                    kind=row.kind,
                    queue=row.queue,
                    attempt=row.attempt,
                    max_attempts=row.max_attempts,
                    args=args,
                    deadline=now + self.job_timeout,
                )
            )
        return claimed

    def _finalize(self, job: Job, error: Optional[BaseException], discard: bool = False) -> None:
        now = utcnow()
        values: Dict[str, Any]
        if error is None:
            values = {"state": STATE_COMPLETED, "finalized_at": now}
        else:
            with self._sessions() as session:
                prior = session.execute(select(QueueJob.errors).where(QueueJob.id == job.id)).scalar_one_or_none()
            errors = list(prior or [])
            errors.append(
                {
                    "attempt": job.attempt,
                    "at": now.isoformat(),
                    "error": f"{type(error).__name__}: {error}",
                    "trace": "".join(traceback.format_exception(type(error), error, error.__traceback__))[-4000:],
                }
            )
            errors = errors[-MAX_RECORDED_ERRORS:]
            if discard or job.attempt >= job.max_attempts:
                values = {"state": STATE_DISCARDED, "finalized_at": now, "errors": errors}
            else:
                values = {
                    "state": STATE_RETRYABLE,
                    "scheduled_at": now + self.backoff(job.attempt),
                    "errors": errors,
                }
        with self._sessions() as session:
            session.execute(update(QueueJob).where(QueueJob.id == job.id).values(**values))
            session.commit()

    def backoff(self, attempt: int) -> timedelta:
        delay = self.retry_backoff * (2 ** max(0, attempt - 1))
        return min(delay, MAX_BACKOFF)

    def _execute(self, job: Job) -> Optional[BaseException]:
        worker = self.workers.get(job.kind)
        if worker is None:
            err = LookupError(f"no worker registered for kind {job.kind!r}")
            logger.error("job.unknown_kind", extra={"job_id": job.id, "kind": job.kind})
            self._finalize(job, err, discard=True)
            return err

        ctx = {"job_id": job.id, "kind": job.kind, "queue": job.queue, "attempt": job.attempt}
        started = time.monotonic()
        try:
            worker.work(job)
        except Exception as e:
            logger.warning("job.failed", extra={**ctx, "error": str(e)}, exc_info=True)
            self._finalize(job, e)
            return e
        elapsed = time.monotonic() - started
        if elapsed > self.job_timeout.total_seconds():
            logger.warning("job.overran_timeout", extra={**ctx, "elapsed_s": round(elapsed, 3)})
        self._finalize(job, None)
        logger.info("job.completed", extra={**ctx, "elapsed_s": round(elapsed, 3)})
        return None

    def work_available(self, queue: Optional[str] = None, limit: Optional[int] = None) -> int:
        """Run due jobs inline on the calling thread; returns how many ran."""
        queues = [queue] if queue else list(self.queues)
        ran = 0
        for q in queues:
            while limit is None or ran < limit:
                batch = self._fetch(q, 1)
                if not batch:
                    break
                self._execute(batch[0])
                ran += 1
        return ran

    # ---- maintenance --------------------------------------------------------

    def rescue_stuck_jobs(self) -> int:
        """Requeue (or discard) jobs left ``running`` past the rescue horizon."""
        now = utcnow()
        cutoff = now - self.rescue_stuck_jobs_after
        with self._sessions() as session:
            stuck = (
                session.execute(
                    select(QueueJob)
                    .where(QueueJob.state == STATE_RUNNING, QueueJob.attempted_at < cutoff)
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            for row in stuck:
                if row.attempt >= row.max_attempts:
                    row.state = STATE_DISCARDED
                    row.finalized_at = now
                else:
                    row.state = STATE_RETRYABLE
                    row.scheduled_at = now
            session.commit()
        if stuck:
            logger.warning("jobs.rescued", extra={"count": len(stuck)})
        return len(stuck)

    def queue_stats(self) -> Dict[str, Dict[str, int]]:
        with self._sessions() as session:
            rows = session.execute(
                select(QueueJob.queue, QueueJob.state, func.count()).group_by(QueueJob.queue, QueueJob.state)
            ).all()
        stats: Dict[str, Dict[str, int]] = {q: {} for q in self.queues}
        for q, state, count in rows:
            stats.setdefault(q, {})[state] = int(count)
        return stats

    # ---- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for name, cfg in self.queues.items():
            self._executors[name] = ThreadPoolExecutor(
                max_workers=max(1, cfg.max_workers), thread_name_prefix=f"jobs-{name}"
            )
            self._in_flight[name] = 0
            t = threading.Thread(target=self._fetch_loop, args=(name, cfg), name=f"jobs-fetch-{name}", daemon=True)
            self._threads.append(t)
        self._threads.append(threading.Thread(target=self._maintenance_loop, name="jobs-maintenance", daemon=True))
        for t in self._threads:
            t.start()
        logger.info("job engine started", extra={"queues": {n: c.max_workers for n, c in self.queues.items()}})

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop fetching, then wait for in-flight jobs to finish."""
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout)
        for executor in self._executors.values():
            executor.shutdown(wait=True)
        self._threads.clear()
        self._executors.clear()
        logger.info("job engine stopped")

    def _done(self, queue: str, _future) -> None:
        with self._lock:
            self._in_flight[queue] -= 1

    def _fetch_loop(self, queue: str, cfg: QueueConfig) -> None:
        executor = self._executors[queue]
        while not self._stop.is_set():
            with self._lock:
                free = cfg.max_workers - self._in_flight[queue]
            claimed: List[Job] = []
            if free > 0:
                try:
                    claimed = self._fetch(queue, free)
                except Exception:
                    logger.exception("job fetch failed", extra={"queue": queue})
            for job in claimed:
                with self._lock:
                    self._in_flight[queue] += 1
                future = executor.submit(self._execute, job)
                future.add_done_callback(lambda f, q=queue: self._done(q, f))
            # Poll again right away while the queue keeps filling every free slot
            if not claimed or len(claimed) < free:
                self._stop.wait(self.fetch_poll_interval)

    def _maintenance_loop(self) -> None:
        interval = min(60.0, max(1.0, self.rescue_stuck_jobs_after.total_seconds() / 4))
        while not self._stop.wait(interval):
            try:
                self.rescue_stuck_jobs()
            except Exception:
                logger.exception("stuck job rescue failed")
