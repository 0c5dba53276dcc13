from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from cohort_scheduler.config.settings import settings


def enable_sqlite_savepoints(engine: Engine) -> Engine:
    """
    Let pysqlite honour SAVEPOINT/ROLLBACK TO.

    The driver issues its own BEGIN lazily, which breaks nested transactions,
    so SQLAlchemy takes over transaction control.
    """

    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def build_engine(database_url: str, **overrides) -> Engine:
    """Create the engine with options suited to the target dialect."""
    if database_url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}, "echo": False}
        options.update(overrides)
        return enable_sqlite_savepoints(create_engine(database_url, **options))

    options = {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "isolation_level": "READ COMMITTED",
        "echo": False,
    }
    options.update(overrides)
    return create_engine(database_url, **options)


engine = build_engine(str(settings.DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def get_sync_session():
    """Dependency to get sync database session"""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
