from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy import event
from sqlalchemy.engine import Engine
import logging

from pulse.core.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """Create an engine tuned for the configured backend."""
    if database_url.startswith("sqlite"):
        # Worker threads each get their own connection; wait for the write lock
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    pg_engine = create_engine(
        database_url,
        echo=False,
        pool_size=5,
        max_overflow=10,  # Allow burst connections during batch fan-out
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Recycle connections every 5 min
        pool_timeout=30,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    )

    @event.listens_for(pg_engine, "connect")
    def set_statement_timeout(dbapi_connection, connection_record):
        """Cap query time so a stuck upsert cannot hold a worker thread forever."""
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("SET statement_timeout = '30s'")
        except Exception as e:
            logger.warning(f"Could not set statement timeout: {e}")
        finally:
            cursor.close()

    return pg_engine


engine = build_engine(settings.DATABASE_URL)


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables(target: Engine = engine):
    # Register table metadata before create_all
    import pulse.models  # noqa: F401

    SQLModel.metadata.create_all(target)
