import logging
import threading
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from starterkit.api import billing, health
from starterkit.core.logging_utils import configure_logging
from starterkit.core.settings import settings
from starterkit.jobs.client import JobClient
from starterkit.jobs.config import load_config, load_exports_config, load_metrics_retention_config
from starterkit.jobs.export_cleanup import start_export_cleanup
from starterkit.jobs.retention import start_periodic_retention
from starterkit.services.email_utils import EmailService
from starterkit.services.s3_storage import S3StorageService
import db

load_dotenv()

# Configure logging (console + rotating file; JSON by default)
configure_logging(settings)
logger = logging.getLogger("app")

# Seconds to wait for in-flight jobs on shutdown
SHUTDOWN_TIMEOUT = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    email = EmailService.from_settings(settings)
    storage = S3StorageService.from_settings(settings)

    jobs = JobClient(load_config())
    jobs.initialize(db.SessionLocal, email, storage, engine=db.engine)
    jobs.start()

    stop_sweepers = threading.Event()
    start_periodic_retention(db.SessionLocal, load_metrics_retention_config(), stop_sweepers)
    start_export_cleanup(db.SessionLocal, storage, load_exports_config().cleanup_interval, stop_sweepers)

    # Injected into routes through request.app.state
    app.state.jobs = jobs
    app.state.email = email
    app.state.s3_service = storage
    logger.info("app.startup", extra={"jobs_available": jobs.is_available()})
    try:
        yield
    finally:
        stop_sweepers.set()
        jobs.stop(timeout=SHUTDOWN_TIMEOUT)
        logger.info("app.shutdown")


app = FastAPI(lifespan=lifespan)
app.include_router(billing.router)
app.include_router(health.router)
