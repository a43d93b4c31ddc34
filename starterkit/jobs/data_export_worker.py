import logging
from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from starterkit.core.settings import settings
from starterkit.core.time_utils import utcnow
from starterkit.jobs.args import DataExportArgs
from starterkit.jobs.config import ExportsConfig, load_exports_config
from starterkit.jobs.queue import Job, Worker
from starterkit.models.export import (
    EXPORT_STATUS_COMPLETED,
    EXPORT_STATUS_FAILED,
    EXPORT_STATUS_PENDING,
    EXPORT_STATUS_PROCESSING,
    STORAGE_LOCAL,
    STORAGE_S3,
    DataExport,
)
from starterkit.services.email_utils import SendParams
from starterkit.services.export_service import (
    build_export_archive,
    compile_user_data,
    format_bytes,
    write_local_archive,
)

logger = logging.getLogger("jobs.data_export")

EXPORT_TTL = timedelta(days=7)
EXPORT_TTL_LABEL = "7 days"
LOCAL_DOWNLOAD_URL = "/api/users/me/export/download"
S3_KEY_PREFIX = "exports"


class ExportStepError(Exception):
    """A data-export step failed.

    ``row_message`` is what the export row records: the readable step message
    plus the exception class of the cause.
    """

    def __init__(self, user_message: str, cause: Exception):
        super().__init__(f"{user_message}: {cause}")
        self.user_message = user_message
        self.row_message = f"{user_message}: {type(cause).__name__}"


def get_exports_dir(config: Optional[ExportsConfig] = None) -> str:
    return (config or load_exports_config()).exports_dir


def _set_export(db: Session, export_id: int, **values) -> None:
    db.query(DataExport).filter(DataExport.id == export_id).update(values, synchronize_session=False)
    db.commit()


def _mark_failed(db: Session, export_id: int, message: str) -> None:
    try:
        _set_export(db, export_id, status=EXPORT_STATUS_FAILED, error_message=message)
    except Exception:
        db.rollback()
        logger.exception("could not mark export failed", extra={"export_id": export_id})


class DataExportWorker(Worker):
    """Builds a user's data-export zip, stores it and marks the export completed.

    Status flow on the ``data_exports`` row: pending -> processing -> completed,
    or failed (with ``error_message``) when any step before the final update
    fails. Local archives are written atomically, so a retried attempt never
    finds a half-written zip from an earlier one.
    """

    args_class = DataExportArgs

    def __init__(self, session_factory, email=None, storage=None, exports: Optional[ExportsConfig] = None):
        self.session_factory = session_factory
        self.email = email
        self.storage = storage
        self.exports = exports or load_exports_config()

    def work(self, job: Job[DataExportArgs]) -> None:
        a = job.args
        ctx = {"user_id": a.user_id, "export_id": a.export_id, "attempt": job.attempt}
        logger.info("starting data export generation", extra=ctx)

        db = self.session_factory()
        try:
            _set_export(db, a.export_id, status=EXPORT_STATUS_PROCESSING, error_message=None)
            try:
                content = self._build(db, a.user_id)
                file_path, storage_type, download_url = self._store(a.user_id, a.export_id, content)
            except ExportStepError as e:
                db.rollback()
                _mark_failed(db, a.export_id, e.row_message)
                logger.error(f"data export failed: {e}", extra=ctx)
                raise

            now = utcnow()
            _set_export(
                db,
                a.export_id,
                status=EXPORT_STATUS_COMPLETED,
                file_path=file_path,
                storage_type=storage_type,
                download_url=download_url,
                file_size=len(content),
                completed_at=now,
                expires_at=now + EXPORT_TTL,
            )
        finally:
            db.close()

        self._notify(a.email, len(content), ctx)
        logger.info("data export completed", extra={**ctx, "size_bytes": len(content)})

    def _build(self, db: Session, user_id: int) -> bytes:
        try:
            data = compile_user_data(db, user_id)
        except Exception as e:
            raise ExportStepError("Data compilation failed", e) from e
        try:
            return build_export_archive(user_id, data)
        except Exception as e:
            raise ExportStepError("ZIP creation failed", e) from e

    def _use_s3(self) -> bool:
        return self.exports.storage == STORAGE_S3 and self.storage is not None and self.storage.is_available()

    def _store(self, user_id: int, export_id: int, content: bytes) -> Tuple[str, str, str]:
        """Persist the archive; returns (file_path, storage_type, download_url).

        The name depends only on the export, so a retried attempt overwrites the
        archive of an earlier one instead of leaving it behind.
        """
        filename = f"user_data_{user_id}_{export_id}.zip"
        if self._use_s3():
            key = f"{S3_KEY_PREFIX}/{user_id}/{filename}"
            try:
                self.storage.upload_file(content, key, content_type="application/zip")
                url = self.storage.generate_presigned_url(key, expiration=int(EXPORT_TTL.total_seconds()))
            except Exception as e:
                raise ExportStepError("File upload failed", e) from e
            return key, STORAGE_S3, url

        if self.exports.storage == STORAGE_S3:
            logger.warning("DATA_EXPORT_STORAGE=s3 but S3 is not configured; storing export locally")
        try:
            path = write_local_archive(self.exports.exports_dir, filename, content)
        except OSError as e:
            raise ExportStepError("File write failed", e) from e
        return path, STORAGE_LOCAL, LOCAL_DOWNLOAD_URL

    def _notify(self, to: str, size: int, ctx: dict) -> None:
        # The export already succeeded; a failed notice must not retry the job
        if self.email is None or not self.email.is_available() or not to:
            return
        try:
            self.email.send_blocking(
                SendParams(
                    to=to,
                    template_name="data_export_ready",
                    subject="Your Data Export is Ready",
                    data={
                        "DownloadLink": f"{(settings.FRONTEND_URL or '').rstrip('/')}/settings/privacy",
                        "ExpiresIn": EXPORT_TTL_LABEL,
                        "FileSize": format_bytes(size),
                    },
                )
            )
        except Exception as e:
            logger.warning(f"failed to send export ready email: {e}", extra=ctx)


class ExportInProgressError(Exception):
    pass


def request_data_export(db: Session, user, jobs) -> DataExport:
    """Create a pending export for ``user`` and enqueue its generation job.

    Raises ExportInProgressError while a previous export is pending or
    processing. When the job system is unavailable the new row is marked failed
    and JobsUnavailableError propagates.
    """
    active = (
        db.query(DataExport)
        .filter(
            DataExport.user_id == user.id,
            DataExport.status.in_((EXPORT_STATUS_PENDING, EXPORT_STATUS_PROCESSING)),
        )
        .first()
    )
    if active is not None:
        raise ExportInProgressError(f"export {active.id} is already {active.status}")

    export = DataExport(user_id=user.id, status=EXPORT_STATUS_PENDING, storage_type=STORAGE_LOCAL)
    db.add(export)
    db.commit()
    db.refresh(export)

    try:
        jobs.insert(DataExportArgs(user_id=user.id, email=user.email, export_id=export.id))
    except Exception as e:
        export.status = EXPORT_STATUS_FAILED
        export.error_message = "Export could not be queued"
        db.commit()
        logger.warning(f"data export not queued: {e}", extra={"user_id": user.id, "export_id": export.id})
        raise
    return export
