from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from docledger.core.config import get_settings
from docledger.core.errors import ExternalServiceError


def build_engine(database_url: str, timeout_seconds: float) -> Engine:
    """Engine whose statements give up after *timeout_seconds*.

    SQLite waits on a busy database for the timeout; PostgreSQL cancels any
    statement running longer. Either surfaces as ``OperationalError``.
    """
    timeout_ms = int(timeout_seconds * 1000)
    connect_args: dict[str, object] = {}
    is_sqlite = database_url.startswith("sqlite")

    if is_sqlite:
        # FastAPI runs sync handlers in a threadpool, so the connection must be usable across threads.
        connect_args = {"check_same_thread": False, "timeout": timeout_seconds}
    elif database_url.startswith("postgresql"):
        connect_args = {"options": f"-c statement_timeout={timeout_ms}"}

    engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={timeout_ms}")
            cursor.close()

    return engine


settings = get_settings()

engine = build_engine(settings.database_url, settings.storage_timeout_seconds) if settings.database_url else None
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine) if engine else None


def get_db() -> Generator[Session, None, None]:
    if SessionLocal is None:
        raise ExternalServiceError(
            "DATABASE_URL is not configured",
            errors=[{"rule": "storage_not_configured"}],
            status_code=503,
        )
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
