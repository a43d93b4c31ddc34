import threading
from datetime import timedelta

import pytest

import db
from starterkit.core.time_utils import utcnow
from starterkit.jobs import export_cleanup
from starterkit.jobs.export_cleanup import (
    StorageUnavailableError,
    cleanup_export_file,
    run_export_cleanup,
)
from starterkit.jobs.periodic import run_periodically
from starterkit.models.export import DataExport


def add_export(db_session, user_id, file_path, expires_at, storage_type="local", status="completed"):
    export = DataExport(
        user_id=user_id,
        status=status,
        storage_type=storage_type,
        file_path=file_path,
        expires_at=expires_at,
    )
    db_session.add(export)
    db_session.commit()
    return export.id


def load_export(export_id):
    with db.SessionLocal() as s:
        return s.get(DataExport, export_id)


def test_expired_local_export_is_removed(tmp_path, db_session, make_user, fake_storage):
    user = make_user()
    archive = tmp_path / "user_data_1.zip"
    archive.write_bytes(b"zip")
    export_id = add_export(db_session, user.id, str(archive), utcnow() - timedelta(hours=30))

    result = run_export_cleanup(db.SessionLocal, fake_storage)

    assert (result.total, result.cleaned, result.errors) == (1, 1, 0)
    assert not archive.exists()
    export = load_export(export_id)
    assert export.file_path is None
    assert export.status == "expired"
    assert export.storage_type == ""


def test_missing_local_file_still_clears_row(tmp_path, db_session, make_user, fake_storage):
    user = make_user()
    export_id = add_export(db_session, user.id, str(tmp_path / "gone.zip"), utcnow() - timedelta(days=3))

    result = run_export_cleanup(db.SessionLocal, fake_storage)
    assert result.cleaned == 1
    assert load_export(export_id).file_path is None


def test_exports_within_grace_period_are_kept(tmp_path, db_session, make_user, fake_storage):
    user = make_user()
    archive = tmp_path / "recent.zip"
    archive.write_bytes(b"zip")
    # expired, but less than a day ago
    add_export(db_session, user.id, str(archive), utcnow() - timedelta(hours=2))
    add_export(db_session, user.id, str(tmp_path / "future.zip"), utcnow() + timedelta(days=5))
    add_export(db_session, user.id, None, utcnow() - timedelta(days=10), status="expired")

    result = run_export_cleanup(db.SessionLocal, fake_storage)
    assert (result.total, result.cleaned, result.errors) == (0, 0, 0)
    assert archive.exists()


def test_s3_export_deleted_through_storage(db_session, make_user, fake_storage):
    user = make_user()
    key = f"exports/{user.id}/user_data.zip"
    fake_storage.objects[key] = b"zip"
    export_id = add_export(db_session, user.id, key, utcnow() - timedelta(days=2), storage_type="s3")

    result = run_export_cleanup(db.SessionLocal, fake_storage)
    assert result.cleaned == 1
    assert fake_storage.deleted == [key]
    assert load_export(export_id).status == "expired"


def test_s3_export_skipped_when_storage_unavailable(db_session, make_user, fake_storage):
    user = make_user()
    fake_storage.available = False
    export_id = add_export(db_session, user.id, "exports/1/a.zip", utcnow() - timedelta(days=2), storage_type="s3")

    result = run_export_cleanup(db.SessionLocal, fake_storage)
    assert (result.total, result.cleaned, result.errors) == (1, 0, 1)
    export = load_export(export_id)
    # left in place for a later run
    assert export.file_path == "exports/1/a.zip"
    assert export.status == "completed"


def test_one_failure_does_not_stop_the_run(tmp_path, db_session, make_user):
    user = make_user()
    archive = tmp_path / "ok.zip"
    archive.write_bytes(b"zip")
    old = utcnow() - timedelta(days=2)
    add_export(db_session, user.id, "exports/1/a.zip", old, storage_type="s3")
    add_export(db_session, user.id, str(archive), old)

    result = run_export_cleanup(db.SessionLocal, None)
    assert (result.total, result.cleaned, result.errors) == (2, 1, 1)
    assert not archive.exists()


def test_cleanup_export_file_immediately(tmp_path, db_session, make_user, fake_storage):
    user = make_user()
    archive = tmp_path / "now.zip"
    archive.write_bytes(b"zip")
    export_id = add_export(db_session, user.id, str(archive), utcnow() + timedelta(days=7))
    export = db_session.get(DataExport, export_id)

    cleanup_export_file(db_session, export, fake_storage)
    assert not archive.exists()
    assert load_export(export_id).status == "expired"

    # nothing left to delete: a second call is a no-op
    cleanup_export_file(db_session, export, fake_storage)


def test_cleanup_export_file_requires_s3(db_session, make_user):
    user = make_user()
    export_id = add_export(db_session, user.id, "exports/x.zip", utcnow(), storage_type="s3")
    export = db_session.get(DataExport, export_id)
    with pytest.raises(StorageUnavailableError):
        cleanup_export_file(db_session, export, None)


def test_run_periodically_runs_and_stops():
    stop = threading.Event()
    calls = []
    ticked = threading.Event()

    def tick():
        calls.append(1)
        if len(calls) >= 2:
            ticked.set()
        raise RuntimeError("errors do not stop the loop")

    thread = run_periodically(stop, tick, interval=0.01, name="test-tick")
    assert ticked.wait(5)
    stop.set()
    thread.join(5)
    assert not thread.is_alive()


def test_stop_during_initial_delay_skips_run():
    stop = threading.Event()
    calls = []
    thread = run_periodically(stop, lambda: calls.append(1), interval=60, initial_delay=60)
    stop.set()
    thread.join(5)
    assert not thread.is_alive()
    assert calls == []


def test_start_export_cleanup_uses_initial_delay(monkeypatch, fake_storage):
    ran = threading.Event()
    monkeypatch.setattr(export_cleanup, "run_export_cleanup", lambda sf, storage: ran.set())
    stop = threading.Event()
    thread = export_cleanup.start_export_cleanup(db.SessionLocal, fake_storage, 3600, stop, initial_delay=0.01)
    assert ran.wait(5)
    stop.set()
    thread.join(5)
    assert not thread.is_alive()
