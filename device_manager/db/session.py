import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

from device_manager.services.retry_coordinator import TRANSITION_LOCK_TIMEOUT_SECONDS, WRITER_LOCK_OPTION


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


DEVICE_MANAGER_DB_URL = _require_env("DEVICE_MANAGER_DB_URL")


def _install_sqlite_writer_lock(engine: Engine) -> None:
    # SQLite has no row locks; transition units begin with BEGIN IMMEDIATE so
    # they serialize the same way FOR UPDATE would. Reads use a deferred BEGIN
    # and never wait on the write lock.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(WRITER_LOCK_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def build_engine(db_url: str, lock_timeout_seconds: int = TRANSITION_LOCK_TIMEOUT_SECONDS) -> Engine:
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite":
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": lock_timeout_seconds},
            future=True,
        )
        _install_sqlite_writer_lock(engine)
        return engine

    return create_engine(
        url,
        isolation_level="READ COMMITTED",
        pool_pre_ping=True,
        future=True,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


engine_device = build_engine(DEVICE_MANAGER_DB_URL)

SessionLocalDevice = build_session_factory(engine_device)
