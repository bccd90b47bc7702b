import os
from dotenv import load_dotenv
from sqlalchemy import create_engine, event, text as _sa_text
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from contextvars import ContextVar
from typing import Optional


# Ensure local development loads environment from project root by default
try:
    load_dotenv(dotenv_path=os.getenv("ENV_FILE", ".env"), override=False)
except Exception:
    pass

# Choose SQLite automatically for pytest runs unless explicitly forced
_is_pytest = bool(os.getenv("PYTEST_CURRENT_TEST")) or os.getenv("TESTING") == "1" or bool(os.getenv("PYTEST_RUNNING"))
_force_pg_tests = os.getenv("FORCE_POSTGRES_TESTS") == "1"
if _is_pytest and not _force_pg_tests:
    DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///./test_hyvewyre.db")
else:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./hyvewyre.db")
    # Supabase/Render hand out postgres:// URLs; SQLAlchemy 2.x wants the driver spelled out
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg2://", 1)


class Base(DeclarativeBase):
    pass


pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "5"))
pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "10"))
pool_recycle = int(os.getenv("DB_POOL_RECYCLE_SECONDS", "900"))
pool_pre_ping = os.getenv("DB_POOL_PRE_PING", "0") == "1"

pg_statement_timeout_ms = int(os.getenv("PG_STATEMENT_TIMEOUT_MS", "12000"))
pg_lock_timeout_ms = int(os.getenv("PG_LOCK_TIMEOUT_MS", "3000"))
db_app_name = os.getenv("DB_APP_NAME", "hyvewyre")
db_connect_timeout = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))

_is_sqlite = DATABASE_URL.startswith("sqlite")
_connect_args = {"check_same_thread": False} if _is_sqlite else {}
if not _is_sqlite:
    _connect_args.update({
        "connect_timeout": db_connect_timeout,
        "application_name": db_app_name,
    })

_engine_kwargs = {} if _is_sqlite else {
    "pool_size": pool_size,
    "max_overflow": max_overflow,
    "pool_timeout": pool_timeout,
    "pool_recycle": pool_recycle,
    "pool_pre_ping": pool_pre_ping,
}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, **_engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Per-request tenant scoping for Supabase RLS policies using a session GUC.
# The FastAPI auth dependency sets CURRENT_TENANT_ID before DB use.
CURRENT_TENANT_ID: ContextVar[Optional[str]] = ContextVar("CURRENT_TENANT_ID", default=None)


def _apply_rls_settings(session, transaction, connection):
    if connection.dialect.name != "postgresql":
        return
    if os.getenv("ENABLE_PG_RLS", "0") != "1":
        return
    tenant_id = CURRENT_TENANT_ID.get()
    if tenant_id:
        connection.execute(_sa_text("SELECT set_config('app.tenant_id', :t, true)"), {"t": tenant_id})


event.listen(SessionLocal, "after_begin", _apply_rls_settings)


def _on_connect(dbapi_connection, connection_record):  # type: ignore
    if not DATABASE_URL.startswith("postgres"):
        return
    cur = dbapi_connection.cursor()
    try:
        cur.execute("SET statement_timeout TO %s", (pg_statement_timeout_ms,))
        cur.execute("SET lock_timeout TO %s", (pg_lock_timeout_ms,))
        cur.execute("SET application_name TO %s", (db_app_name,))
    finally:
        cur.close()


event.listen(engine, "connect", _on_connect)


def init_models() -> None:
    """Create tables straight from the ORM metadata (tests and local SQLite only)."""
    from . import models  # noqa: F401
    Base.metadata.create_all(engine)


if os.getenv("TESTING") == "1" and _is_sqlite and os.getenv("USE_ALEMBIC") != "1":
    init_models()
