"""Database session management"""
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import settings

DATABASE_URL = settings.database_url


def enable_sqlite_savepoints(engine: Engine, begin_statement: str = "BEGIN") -> None:
    """
    Let pysqlite honour SAVEPOINT / begin_nested().

    The driver opens transactions lazily and on its own schedule, which breaks
    nested transactions; take over BEGIN emission instead. File databases
    shared by several writers pass "BEGIN IMMEDIATE" so a transaction takes
    the write lock up front and waits on the busy timeout instead of failing
    on lock upgrade.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql(begin_statement)


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine with per-dialect settings"""
    if url.startswith("sqlite"):
        # SQLite specific settings for testing
        db_engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
        enable_sqlite_savepoints(db_engine)
        return db_engine

    # PostgreSQL settings for production
    return create_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        echo=echo,
    )


engine = build_engine(DATABASE_URL, echo=settings.database_echo)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory=SessionLocal):
    """Transactional scope for code running outside a request"""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
