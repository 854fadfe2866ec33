from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from machine_driver.config import get_settings


Base = declarative_base()


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if _is_sqlite(database_url):
        connect_args["check_same_thread"] = False
        # the machine records live next to the key material, create the
        # directory on first use
        database = make_url(database_url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, connect_args=connect_args, future=True)


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def configure_sqlite_runtime() -> None:
    if not _is_sqlite(get_settings().database_url):
        return
    with engine.begin() as conn:
        conn.execute(text("PRAGMA journal_mode=WAL;"))
        conn.execute(text("PRAGMA busy_timeout=30000;"))
        conn.execute(text("PRAGMA foreign_keys=ON;"))


def init_db() -> None:
    # models must be imported so their tables are registered on Base
    from machine_driver import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope():
    """Commit on success, roll back and re-raise on any error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
