"""Database session factory and configuration.

Provides database connectivity and session management for the DropDeck
backend. The lifecycle engine never uses the module-level SessionLocal
directly; it receives a session factory through its dependency bundle so
tests can point it at an isolated database.
"""

from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from config import settings


def build_engine(database_url: str) -> Engine:
    """Create an engine with pool settings appropriate for the backend.

    Pool settings only apply to server databases. SQLite connections are
    shared across worker threads, so same-thread checking is disabled and
    writers wait for the file lock instead of failing at once.
    """
    engine_kwargs = {
        "pool_pre_ping": True,  # Verify connections before using
        "echo": False,  # Set to True for SQL query logging
    }

    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 10

    return create_engine(database_url, **engine_kwargs)


engine = build_engine(settings.DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    """Dependency for FastAPI endpoints.

    Usage:
        @app.get("/exports")
        def list_exports(db: Session = Depends(get_db)):
            return db.query(ExportArtifact).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
