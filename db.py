import os

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from starterkit.jobs.client import build_database_url, sqlalchemy_url

# PG*/DB_* may live in .env; read it before the engine URL is built
load_dotenv()

# Allow tests to opt into an in-memory SQLite DB to avoid network hangs when
# Postgres is not available. Set environment variable TEST_SQLITE=1 when running
# pytest to enable this.
if os.getenv("TEST_SQLITE") == "1":
    # Use StaticPool so the same in-memory DB is reused across connections.
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    # Same PG*/DB_* variables the job system reads, so both share one database
    engine = create_engine(sqlalchemy_url(build_database_url()), pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
