"""Engine and request-scoped sessions for the ledger store.

WHAT:
    One SQLAlchemy engine over DATABASE_URL, shared by the conversion
    ledger and the campaign routing table.

WHY:
    - Sessions live for one request and are never shared between requests
    - Duplicate webhook deliveries are resolved by the unique constraint on
      conversions.source_event_id, not by in-process locking

USAGE:
    @router.get("/conversions")
    def list_conversions(db: Session = Depends(get_db)):
        ...

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - alembic/env.py (reuses _get_database_url)
"""

import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# CONNECTION URL
# =============================================================================

def _get_database_url() -> str:
    """Resolve the store URL, falling back to backend/.env.

    Raises:
        RuntimeError: when neither the process env nor .env define it
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        from .utils.env import load_env_file
        load_env_file()
        url = os.getenv("DATABASE_URL")

    if not url:
        raise RuntimeError("DATABASE_URL is missing; export it or add it to backend/.env")

    # SQLAlchemy 2.x rejects the postgres:// scheme
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


DATABASE_URL = _get_database_url()

# Upper bound on how long one request waits for the store
DATABASE_TIMEOUT_SECONDS = int(os.getenv("DATABASE_TIMEOUT_SECONDS", "10"))


# =============================================================================
# ENGINE
# =============================================================================

if DATABASE_URL.startswith("sqlite"):
    # Local/test only; SQLite has no pool sizing
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False, "timeout": DATABASE_TIMEOUT_SECONDS},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,        # webhook bursts plus dashboard reads
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
        pool_timeout=DATABASE_TIMEOUT_SECONDS,
        connect_args={
            "connect_timeout": DATABASE_TIMEOUT_SECONDS,
            "options": f"-c statement_timeout={DATABASE_TIMEOUT_SECONDS * 1000}",
        },
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# =============================================================================
# DEPENDENCY
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request, closed afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
