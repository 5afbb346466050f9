from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings

# Concurrent expense edits wait on the writer lock instead of failing at once.
SQLITE_BUSY_TIMEOUT_MS = 5000


def build_engine(database_url: str, **engine_kwargs) -> Engine:
    """
    Engine for the ledger store.

    SQLite connections get foreign keys switched on so the RESTRICT links from
    expenses to categories and payment methods, and the CASCADE from users,
    are enforced by the database rather than only by the services.
    """
    is_sqlite = database_url.startswith("sqlite")
    connect_args: dict[str, object] = dict(engine_kwargs.pop("connect_args", {}))
    if is_sqlite:
        connect_args.setdefault("check_same_thread", False)

    eng = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    if is_sqlite:
        event.listen(eng, "connect", enable_sqlite_pragmas)
    return eng


def enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
    cursor.close()


def make_sessionmaker(eng: Engine) -> sessionmaker:
    return sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)


engine = build_engine(get_settings().database_url)
SessionLocal = make_sessionmaker(engine)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
