from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from .config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # sessions run on the threadpool; writers wait on the file lock
        return {"connect_args": {"check_same_thread": False, "timeout": 15}}
    return {"pool_pre_ping": True}


engine = create_engine(settings.DB_URL, future=True, **_engine_kwargs(settings.DB_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


if engine.dialect.name == "sqlite":
    # Take over BEGIN from pysqlite so SAVEPOINT works and each transaction
    # holds the write lock from its first statement (SQLite has no row locks).
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def session_scope():
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
