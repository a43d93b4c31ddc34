import os

# Must be set before db/settings are imported: in-memory SQLite, console-only logs,
# and no host .env leaking SMTP/S3/Stripe settings into the tests.
os.environ.setdefault("TEST_SQLITE", "1")
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("SMTP_HOST", "")
os.environ.setdefault("AWS_S3_BUCKET", "")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "")

import pytest  # noqa: E402

import starterkit.models  # noqa: E402,F401  registers every table on Base
from db import SessionLocal, engine  # noqa: E402
from starterkit.jobs.queue import queue_metadata  # noqa: E402
from starterkit.models.user import Base, User  # noqa: E402

Base.metadata.create_all(bind=engine)
queue_metadata.create_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_tables():
    """Each test starts from empty tables; rows are deleted after the test."""
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
        for table in queue_metadata.sorted_tables:
            conn.execute(table.delete())


@pytest.fixture
def session_factory():
    return SessionLocal


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db_session):
    def _make(email="user@example.com", name="Test User", **kw):
        user = User(name=name, email=email, password="x", **kw)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


class FakeEmail:
    """Records sends instead of talking to SMTP."""

    def __init__(self, available=True, fail=False):
        self.available = available
        self.fail = fail
        self.sent = []

    def is_available(self):
        return self.available

    def send_blocking(self, params):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(params)


class FakeStorage:
    """Stands in for S3StorageService."""

    def __init__(self, available=True):
        self.available = available
        self.objects = {}
        self.deleted = []

    def is_available(self):
        return self.available

    def upload_file(self, file_data, s3_key, content_type="application/octet-stream"):
        self.objects[s3_key] = file_data
        return s3_key

    def delete_file_with_key(self, s3_key):
        self.objects.pop(s3_key, None)
        self.deleted.append(s3_key)

    def generate_presigned_url(self, s3_key, expiration=3600):
        return f"https://bucket.example/{s3_key}?expires={expiration}"


@pytest.fixture
def fake_email():
    return FakeEmail()


@pytest.fixture
def fake_storage():
    return FakeStorage()
