from sqlmodel import create_engine, SQLModel, Session
import logging

from skygate.core.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str | None = None):
    """Create an engine for the state database (SQLite by default)."""
    url = database_url or settings.DATABASE_URL
    connect_args = {}
    if url.startswith("sqlite"):
        # Sessions may be opened from worker threads
        connect_args["check_same_thread"] = False
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


engine = build_engine()


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables(bind=None):
    # Import models so their tables are registered on the metadata
    from skygate.models.kv_entry import KeyValueEntry  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
    logger.info("State tables ready")
