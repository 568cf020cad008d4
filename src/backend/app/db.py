import os
from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase


# Ensure local development loads environment from project root by default
try:
    load_dotenv(dotenv_path=os.getenv("ENV_FILE", ".env"), override=False)
except Exception:
    pass

# Choose SQLite automatically for pytest runs unless explicitly forced
_is_pytest = bool(os.getenv("PYTEST_CURRENT_TEST")) or os.getenv("TESTING") == "1" or bool(os.getenv("PYTEST_RUNNING"))
_force_pg_tests = os.getenv("FORCE_POSTGRES_TESTS") == "1"
if _is_pytest and not _force_pg_tests:
    DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///./test_adhub.db")
else:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./adhub.db")
    # Normalize Heroku/Render style postgres URLs for SQLAlchemy 2.x
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
db_app_name = os.getenv("DB_APP_NAME", "adhub")
db_connect_timeout = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))

_is_sqlite = DATABASE_URL.startswith("sqlite")
_connect_args = {"check_same_thread": False} if _is_sqlite else {
    "connect_timeout": db_connect_timeout,
    "application_name": db_app_name,
}
_pool_args = {} if _is_sqlite else {
    "pool_size": pool_size,
    "max_overflow": max_overflow,
    "pool_timeout": pool_timeout,
    "pool_recycle": pool_recycle,
    "pool_pre_ping": pool_pre_ping,
}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, **_pool_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Only auto-create tables for ad-hoc local dev and tests when not using Alembic
try:
    if os.getenv("TESTING") == "1" and _is_sqlite and os.getenv("USE_ALEMBIC") != "1":
        from . import models  # noqa: F401
        Base.metadata.create_all(engine)
except Exception:
    pass


def _on_connect(dbapi_connection, connection_record):  # type: ignore
    try:
        if DATABASE_URL.startswith("postgres"):
            cur = dbapi_connection.cursor()
            try:
                cur.execute("SET statement_timeout TO %s", (pg_statement_timeout_ms,))
                cur.execute("SET application_name TO %s", (db_app_name,))
            finally:
                cur.close()
    except Exception:
        # Non-fatal; allow connection to proceed even if SET fails
        pass


event.listen(engine, "connect", _on_connect)
