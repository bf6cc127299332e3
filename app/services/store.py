"""Conversation store adapter over the chats and messages tables.

Every operation opens its own short-lived session, so one store can be
shared by long-lived lifecycle controllers. No caching, no write buffering
and no retries: database failures surface as StoreError.
"""
from typing import Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, func, select

from app.core.exceptions import ConversationNotFoundError, StoreError
from app.models.conversation import DEFAULT_TITLE, ROLES, Conversation, Message

logger = logging.getLogger(__name__)


class ConversationStore:
    """CRUD boundary for conversations and messages."""

    def __init__(self, engine):
        self.engine = engine

    def list_conversations(self, user_id: str) -> list[Conversation]:
        """List a user's conversations, newest first."""
        _require(user_id, "user_id")
        statement = (
            select(Conversation)
            .where(Conversation.user_id == user_id)
            .order_by(Conversation.created_at.desc(), Conversation.id.desc())
        )
        try:
            with Session(self.engine) as session:
                return list(session.exec(statement).all())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list conversations: {e}") from e

    def get_conversation(self, conversation_id: int, user_id: str) -> Conversation:
        """
        Get a conversation owned by user_id.

        Raises:
            ConversationNotFoundError: If missing or owned by someone else
        """
        statement = select(Conversation).where(
            Conversation.id == conversation_id,
            Conversation.user_id == user_id,
        )
        try:
            with Session(self.engine) as session:
                conversation = session.exec(statement).first()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load conversation: {e}") from e

        if not conversation:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def create_conversation(self, user_id: str, title: str = DEFAULT_TITLE) -> Conversation:
        """Create a conversation for user_id."""
        _require(user_id, "user_id")
        _require(title, "title")
        conversation = Conversation(user_id=user_id, title=title)
        try:
            with Session(self.engine) as session:
                session.add(conversation)
                session.commit()
                session.refresh(conversation)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create conversation: {e}") from e

        logger.info(f"Conversation created: user={user_id}, conversation={conversation.id}")
        return conversation

    def rename_conversation(self, conversation_id: int, title: str) -> None:
        """
        Set a conversation's title.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
        """
        _require(title, "title")
        try:
            with Session(self.engine) as session:
                conversation = session.get(Conversation, conversation_id)
                if not conversation:
                    raise ConversationNotFoundError(conversation_id)
                conversation.title = title
                session.add(conversation)
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to rename conversation: {e}") from e

    def list_messages(self, conversation_id: int) -> list[Message]:
        """List a conversation's messages, oldest first."""
        statement = (
            select(Message)
            .where(Message.chat_id == conversation_id)
            .order_by(Message.created_at, Message.id)
        )
        try:
            with Session(self.engine) as session:
                return list(session.exec(statement).all())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list messages: {e}") from e

    def count_messages(self, conversation_id: int) -> int:
        statement = select(func.count()).select_from(Message).where(
            Message.chat_id == conversation_id
        )
        try:
            with Session(self.engine) as session:
                return session.exec(statement).one()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to count messages: {e}") from e

    def append_message(self, conversation_id: int, role: str, content: str) -> Message:
        """
        Store one message under a conversation.

        Args:
            conversation_id: Owning conversation
            role: "user" or "assistant"
            content: Message text

        Returns:
            Stored Message instance
        """
        if role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got {role!r}")
        _require(content, "content")

        message = Message(chat_id=conversation_id, role=role, content=content)
        try:
            with Session(self.engine) as session:
                session.add(message)
                session.commit()
                session.refresh(message)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to append message: {e}") from e
        return message


def _require(value: Optional[str], name: str) -> None:
    if value is None or not str(value).strip():
        raise ValueError(f"{name} is required")
