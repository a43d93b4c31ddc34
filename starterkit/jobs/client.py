import logging
import os
from typing import List, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from starterkit.jobs.args import QUEUE_EMAIL, QUEUE_WEBHOOKS
from starterkit.jobs.config import JobsConfig, load_exports_config
from starterkit.jobs.queue import (
    QUEUE_DEFAULT,
    InsertManyParams,
    InsertOpts,
    InsertResult,
    JobArgs,
    QueueConfig,
    QueueEngine,
)

logger = logging.getLogger("jobs")

EMAIL_QUEUE_WORKERS = 5
WEBHOOK_QUEUE_WORKERS = 3


class JobClientError(Exception):
    """Job system infrastructure failed to come up."""


class JobsUnavailableError(RuntimeError):
    """Raised on enqueue when the job system is disabled or not initialized."""

    def __init__(self, message: str = "job system not initialized or disabled"):
        super().__init__(message)


def get_env(key: str, fallback: str) -> str:
    value = os.environ.get(key)
    return value if value else fallback


def build_database_url() -> str:
    """Connection URL from PG* vars, then DB_* vars, then local dev defaults."""
    host = get_env("PGHOST", get_env("DB_HOST", "localhost"))
    port = get_env("PGPORT", get_env("DB_PORT", "5432"))
    user = get_env("PGUSER", get_env("DB_USER", "devuser"))
    password = get_env("PGPASSWORD", get_env("DB_PASSWORD", "devpass"))
    name = get_env("PGDATABASE", get_env("DB_NAME", "starter_kit_db"))
    sslmode = get_env("DB_SSLMODE", "disable")
    return f"postgres://{user}:{password}@{host}:{port}/{name}?sslmode={sslmode}"


def sqlalchemy_url(url: str) -> str:
    """Map a libpq-style ``postgres://`` URL onto the psycopg2 dialect."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg2://" + url[len(prefix):]
    return url


class JobClient:
    """Owns the queue engine for one process.

    Built once by the application's composition root and handed to whatever
    enqueues jobs. While the job system is disabled, or before ``initialize``
    succeeds, ``is_available()`` is False, ``start``/``stop`` do nothing and
    ``insert``/``insert_many`` raise ``JobsUnavailableError``.
    """

    def __init__(self, config: Optional[JobsConfig] = None):
        self.config = config
        self._queue: Optional[QueueEngine] = None
        self._db_engine: Optional[Engine] = None
        self._owns_db_engine = False
        self._started = False

    def initialize(self, session_factory, email, storage, engine: Optional[Engine] = None) -> None:
        """Connect, migrate the queue schema and register every worker.

        ``engine`` is shared with the application when given; otherwise one is
        created from the environment and disposed again on ``stop``.
        """
        if self.config is None or not self.config.enabled:
            logger.info("Job system disabled (JOBS_ENABLED != true)")
            return

        if self._queue is not None:
            logger.warning("Job client re-initialized; shutting down previous engine")
            self.stop()

        # Imported here: the worker modules pull in the ORM models and services
        from starterkit.jobs.workers import build_workers

        owns = engine is None
        try:
            if owns:
                engine = create_engine(sqlalchemy_url(build_database_url()), pool_pre_ping=True)
            queues = {
                QUEUE_DEFAULT: QueueConfig(max_workers=self.config.worker_count),
                QUEUE_EMAIL: QueueConfig(max_workers=EMAIL_QUEUE_WORKERS),
                QUEUE_WEBHOOKS: QueueConfig(max_workers=WEBHOOK_QUEUE_WORKERS),
            }
            queue = QueueEngine(
                engine,
                build_workers(session_factory, email, storage, load_exports_config()),
                queues,
                default_max_attempts=self.config.max_retries,
                retry_backoff=self.config.retry_backoff,
                job_timeout=self.config.job_timeout,
                rescue_stuck_jobs_after=self.config.rescue_stuck_jobs_after,
            )
            queue.migrate()
        except Exception as e:
            if owns and engine is not None:
                engine.dispose()
            raise JobClientError(f"failed to initialize job system: {e}") from e

        self._queue = queue
        self._db_engine = engine
        self._owns_db_engine = owns
        logger.info(
            "Job system initialized",
            extra={"workers": self.config.worker_count, "kinds": queue.workers.kinds()},
        )

    def start(self) -> None:
        if self._queue is None:
            return
        self._queue.start()
        self._started = True
        logger.info("Job workers started")

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._queue is None:
            return
        if self._started:
            self._queue.stop(timeout=timeout)
            self._started = False
        if self._owns_db_engine and self._db_engine is not None:
            self._db_engine.dispose()
        self._queue = None
        self._db_engine = None
        self._owns_db_engine = False
        logger.info("Job system stopped")

    def is_available(self) -> bool:
        return self._queue is not None

    def get_engine(self) -> Optional[QueueEngine]:
        return self._queue

    def insert(self, args: JobArgs, opts: Optional[InsertOpts] = None) -> InsertResult:
        if self._queue is None:
            raise JobsUnavailableError()
        return self._queue.insert(args, opts)

    def insert_many(self, params: List[InsertManyParams]) -> List[InsertResult]:
        if self._queue is None:
            raise JobsUnavailableError()
        return self._queue.insert_many(params)
