"""
SQLAlchemy engine and tenant-scoped sessions for PostgreSQL
One engine serves every tenant; the schema is bound per session through
schema_translate_map, so the models carry no schema of their own.
"""
import logging
import os
from typing import Optional
from sqlalchemy import create_engine, event, pool, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from dotenv import load_dotenv

from nphies_poll.config import settings

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", settings.database_url)

# Poll runs hold a transaction per message; anything longer is a stuck statement
STATEMENT_TIMEOUT_MS = 30000
IDLE_IN_TRANSACTION_TIMEOUT = "60s"

engine = create_engine(
    DATABASE_URL,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_timeout=settings.db_pool_timeout,
    pool_recycle=settings.db_pool_recycle,
    pool_pre_ping=settings.db_pool_pre_ping,
    connect_args={
        "connect_timeout": settings.db_connect_args_connect_timeout,
        "options": f"-c statement_timeout={STATEMENT_TIMEOUT_MS}",
    },
    echo=settings.db_echo,
    poolclass=pool.QueuePool,
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,  # poll results are read after commit
)

logger.info(
    f"Database pool: size={settings.db_pool_size}, overflow={settings.db_max_overflow}, "
    f"recycle={settings.db_pool_recycle}s"
)


@event.listens_for(engine, "connect")
def set_idle_transaction_timeout(dbapi_conn, connection_record):
    """An abandoned message transaction must not pin locks on the poll tables."""
    try:
        with dbapi_conn.cursor() as cursor:
            cursor.execute(f"SET idle_in_transaction_session_timeout = '{IDLE_IN_TRANSACTION_TIMEOUT}'")
    except Exception as e:
        logger.warning(f"Could not set idle_in_transaction_session_timeout: {e}")


@event.listens_for(engine, "invalidate")
def log_invalidated_connection(dbapi_conn, connection_record, exception):
    if exception is None or is_server_disconnect(exception):
        logger.debug(f"Pooled connection dropped by server: {type(exception).__name__}")
    else:
        logger.warning(f"Connection invalidated: {exception}", exc_info=exception)


def get_tenant_session(schema_name: Optional[str] = None) -> Session:
    """
    Create a session whose unqualified tables resolve into ``schema_name``.

    Every poll service call threads the schema explicitly; there is no
    ambient tenant state.
    """
    schema_name = schema_name or settings.poll_default_schema
    scoped_engine = engine.execution_options(schema_translate_map={None: schema_name})
    return SessionLocal(bind=scoped_engine)


# SQLSTATE class 08 is "connection exception"; 57P01-57P03 are server
# shutdown / not accepting connections
CONNECTION_SQLSTATE_PREFIX = "08"
SHUTDOWN_SQLSTATES = ("57P01", "57P02", "57P03")
DISCONNECT_SIGNALS = (
    "server closed",
    "connection unexpectedly",
    "could not connect to server",
    "connection refused",
    "terminating connection",
)


def is_server_disconnect(error: BaseException) -> bool:
    message = str(error).lower()
    return any(signal in message for signal in DISCONNECT_SIGNALS)


def is_connection_error(error: Exception) -> bool:
    """
    True only when the database connection itself is gone.

    Statement timeouts, deadlocks and serialization failures are also raised
    as OperationalError but leave the connection usable; they are per-message
    failures, not connection loss.
    """
    if isinstance(error, DisconnectionError):
        return True
    if not isinstance(error, DBAPIError):
        return False
    if error.connection_invalidated:
        return True
    pgcode = getattr(error.orig, "pgcode", None)
    if pgcode:
        return pgcode.startswith(CONNECTION_SQLSTATE_PREFIX) or pgcode in SHUTDOWN_SQLSTATES
    return isinstance(error, OperationalError) and is_server_disconnect(error.orig or error)


def test_connection(retries: int = 2) -> bool:
    """
    SELECT 1 against the pool; a server-side disconnect is retried once
    since pre-ping replaces the dead connection on the next checkout.
    """
    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database connection test: OK")
            return True
        except (OperationalError, DisconnectionError) as e:
            if is_server_disconnect(e) and attempt < retries:
                logger.debug(f"Database connection test attempt {attempt}/{retries} hit a dropped connection")
                continue
            logger.error(f"Database connection test failed: {e}", exc_info=True)
            return False
    return False


def close_all_connections():
    logger.info("Disposing database connection pool")
    engine.dispose()


def health_check() -> dict:
    """Database section of the /health response."""
    try:
        healthy = test_connection()
        return {
            "status": "healthy" if healthy else "unhealthy",
            "connection_test": healthy,
            "pool": {
                "pool_size": engine.pool.size(),
                "checked_out": engine.pool.checkedout(),
            },
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        return {"status": "error", "error": str(e)}
