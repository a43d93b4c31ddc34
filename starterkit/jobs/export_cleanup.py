import logging
import os
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Union

from sqlalchemy.orm import Session

from starterkit.core.time_utils import utcnow
from starterkit.jobs.periodic import run_periodically
from starterkit.models.export import EXPORT_STATUS_EXPIRED, STORAGE_S3, DataExport

logger = logging.getLogger("jobs.export_cleanup")

# Files survive this long past expires_at before they are removed
CLEANUP_GRACE = timedelta(hours=24)
STARTUP_DELAY = timedelta(seconds=30)


class StorageUnavailableError(RuntimeError):
    pass


@dataclass
class CleanupResult:
    total: int = 0
    cleaned: int = 0
    errors: int = 0


def delete_export_file(export: DataExport, storage) -> None:
    """Remove the stored archive; an object or file that is already gone counts as deleted."""
    if export.storage_type == STORAGE_S3:
        if storage is None or not storage.is_available():
            raise StorageUnavailableError("S3 storage is not configured")
        storage.delete_file_with_key(export.file_path)
        return
    try:
        os.remove(export.file_path)
    except FileNotFoundError:
        pass


def _clear_file_pointer(export: DataExport) -> None:
    # file_path and status always change together
    export.file_path = None
    export.storage_type = ""
    export.status = EXPORT_STATUS_EXPIRED


def run_export_cleanup(session_factory, storage) -> CleanupResult:
    """Delete archives whose export expired more than a day ago.

    Per-export failures are logged and counted; they never abort the run.
    Rows stored on S3 are left untouched while S3 is unavailable so a later
    run can still delete the object.
    """
    grace_cutoff = utcnow() - CLEANUP_GRACE
    result = CleanupResult()
    with session_factory() as db:
        expired = (
            db.query(DataExport)
            .filter(
                DataExport.expires_at < grace_cutoff,
                DataExport.file_path.isnot(None),
                DataExport.file_path != "",
            )
            .all()
        )
        result.total = len(expired)
        if not expired:
            logger.debug("no expired exports to clean up")
            return result

        logger.info("cleaning up expired exports", extra={"count": len(expired)})
        for export in expired:
            ctx = {"export_id": export.id, "storage_type": export.storage_type, "file_path": export.file_path}
            try:
                delete_export_file(export, storage)
            except Exception as e:
                logger.warning(f"failed to delete export file: {e}", extra=ctx)
                result.errors += 1
                continue

            try:
                _clear_file_pointer(export)
                db.commit()
            except Exception as e:
                db.rollback()
                logger.warning(f"failed to update export record: {e}", extra=ctx)
                result.errors += 1
                continue

            result.cleaned += 1
            logger.debug("cleaned up expired export", extra=ctx)

    logger.info(
        "export cleanup completed",
        extra={"cleaned": result.cleaned, "errors": result.errors, "total": result.total},
    )
    return result


def start_export_cleanup(
    session_factory,
    storage,
    interval: Union[timedelta, float],
    stop_event: threading.Event,
    initial_delay: Union[timedelta, float] = STARTUP_DELAY,
) -> threading.Thread:
    thread = run_periodically(
        stop_event,
        lambda: run_export_cleanup(session_factory, storage),
        interval,
        initial_delay=initial_delay,
        name="export-cleanup",
    )
    logger.info("export cleanup job started", extra={"interval": str(interval)})
    return thread


def cleanup_export_file(db: Session, export: DataExport, storage) -> None:
    """Delete one export's archive right away (e.g. when the account is deleted)."""
    if not export.file_path:
        return
    delete_export_file(export, storage)
    _clear_file_pointer(export)
    db.commit()
