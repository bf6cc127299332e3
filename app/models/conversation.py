"""Conversation and Message SQLModel definitions.

Models:
- Conversation: titled chat owned by one user (table "chats")
- Message: one turn in a conversation (table "messages")
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

DEFAULT_TITLE = "New Chat"
ROLES = ("user", "assistant")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(SQLModel, table=True):
    """
    Conversation entity.

    Ownership: each conversation belongs to exactly one user via user_id.
    The title starts as "New Chat" and is derived once from the first
    user message.
    """
    __tablename__ = "chats"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, nullable=False)
    title: str = Field(default=DEFAULT_TITLE, max_length=255)
    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )


class Message(SQLModel, table=True):
    """
    Message entity for conversations.

    Role: "user" or "assistant". Messages of one chat are ordered by
    created_at, then id.
    """
    __tablename__ = "messages"

    id: Optional[int] = Field(default=None, primary_key=True)
    chat_id: int = Field(foreign_key="chats.id", index=True, nullable=False)
    role: str = Field(max_length=20)  # "user" or "assistant"
    content: str = Field()
    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False
    )
