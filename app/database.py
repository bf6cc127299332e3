"""Database engine and table initialization."""
import logging

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from app.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: str):
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(settings.DATABASE_URL)


def init_db() -> None:
    """Create the chats and messages tables if they do not exist."""
    from app.models.conversation import Conversation, Message  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.info("Database tables ready")
