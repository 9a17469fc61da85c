import logging
import os
import re
import ssl
import time
import urllib.parse

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from config import DATABASE_URL as _CONFIGURED_DATABASE_URL
from config import TESTING

logger = logging.getLogger(__name__)

DATABASE_URL = _CONFIGURED_DATABASE_URL

if not DATABASE_URL:
    if TESTING:
        # In testing environment, use SQLite in-memory database as fallback
        DATABASE_URL = "sqlite:///:memory:"
        logger.warning("Using in-memory SQLite database for testing")
    else:
        raise ValueError("DATABASE_URL environment variable is not set")

ssl_mode = None

# Only apply PostgreSQL-specific modifications if we're actually using PostgreSQL
if not DATABASE_URL.startswith("sqlite"):
    # Heroku-style URLs use the legacy postgres:// scheme
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

    parsed = urllib.parse.urlparse(DATABASE_URL)
    query_params = urllib.parse.parse_qs(parsed.query)
    ssl_mode = query_params.get("sslmode", [None])[0]

    # Use the pure-python pg8000 driver (SSL is passed through connect_args)
    if DATABASE_URL.startswith("postgresql://"):
        pattern = r"postgresql://([^:]+):([^@]+)@([^:/]+):?(\d*)/?([^?]*)"
        match = re.match(pattern, DATABASE_URL)
        if match:
            username, password, host, port, dbname = match.groups()
            DATABASE_URL = (
                f"postgresql+pg8000://{username}:{password}@{host}:{port or '5432'}/{dbname}"
            )

if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL, echo=False, connect_args={"check_same_thread": False}
    )
else:
    connect_args = {}
    if ssl_mode != "disable" and not TESTING:
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        connect_args["ssl_context"] = ssl_context

    engine = create_engine(
        DATABASE_URL,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_timeout=int(os.getenv("DB_POOL_TIMEOUT_SECONDS", "30")),
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE_SECONDS", "300")),
        pool_pre_ping=True,
        echo=False,
        connect_args=connect_args,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def _install_slow_query_logging(_engine):
    threshold_ms = float(os.getenv("SLOW_DB_QUERY_THRESHOLD_MS", "200"))
    if threshold_ms <= 0:
        return

    slow_logger = logging.getLogger("db.slow_query")

    @event.listens_for(_engine, "before_cursor_execute")
    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        context._query_start_time = time.perf_counter()

    @event.listens_for(_engine, "after_cursor_execute")
    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start = getattr(context, "_query_start_time", None)
        if start is None:
            return
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        if elapsed_ms < threshold_ms:
            return

        stmt = " ".join(str(statement).split())
        if len(stmt) > 500:
            stmt = stmt[:500] + "..."
        slow_logger.warning("SLOW_DB_QUERY | ms=%.1f | stmt=%s", elapsed_ms, stmt)


_install_slow_query_logging(engine)


def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all tables"""
    import models  # noqa: F401  (registers mappers on Base)

    Base.metadata.create_all(bind=engine)
