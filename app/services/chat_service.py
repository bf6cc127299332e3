"""Conversation lifecycle for the botany chat.

Handles:
- Session bootstrap (which conversation becomes active on sign-in)
- New conversation creation and title derivation
- Message append ordering with an optimistic local cache
- Per-conversation in-flight guard against double submits
"""
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Hashable, Iterator, NamedTuple, Optional
import logging
import threading
import time
import uuid

from app.core.exceptions import (
    ConversationBusyError,
    GenerationError,
    InvalidStateError,
    StoreError,
)
from app.core.prompts import APOLOGY_MESSAGE
from app.models.conversation import DEFAULT_TITLE, Conversation, Message
from app.services.generator import ResponseGenerator
from app.services.store import ConversationStore

logger = logging.getLogger(__name__)

TITLE_WORDS = 6
TITLE_ELLIPSIS = "..."

PENDING = "pending"
CONFIRMED = "confirmed"
LOCAL = "local"


class LifecycleState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"


@dataclass
class SessionState:
    """
    Browser-session scoped state.

    bootstrapped: the sign-in bootstrap check already ran this session.
    """
    bootstrapped: bool = False


@dataclass
class LocalMessage:
    """
    In-memory copy of a message.

    status is "pending" until the store acknowledges the write, then
    "confirmed". Messages that are never persisted (no active conversation,
    or the apology fallback) are "local".

    synthetic marks text the assistant never produced (the apology). It is
    left out of the history sent to the model, while other "local"
    messages such as guest turns are still part of that history.
    """
    role: str
    content: str
    status: str = PENDING
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    synthetic: bool = False

    @classmethod
    def from_record(cls, message: Message) -> "LocalMessage":
        return cls(
            role=message.role,
            content=message.content,
            status=CONFIRMED,
            id=message.id,
            created_at=message.created_at,
        )

    def as_turn(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class SentTurn(NamedTuple):
    """One exchange and the conversation it was written to."""
    user_message: LocalMessage
    assistant_message: LocalMessage
    conversation: Optional[Conversation]


def derive_title(text: str) -> str:
    """
    Build a conversation title from the first user message.

    First six whitespace-delimited words joined by single spaces, with
    "..." appended when the message had more than six words.
    """
    words = text.split()
    title = " ".join(words[:TITLE_WORDS])
    if len(words) > TITLE_WORDS:
        title += TITLE_ELLIPSIS
    return title


class InFlightGuard:
    """
    Per-conversation send token.

    Only one send may be in flight for a given key; a second caller gets
    ConversationBusyError instead of racing the first.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._busy: set[Hashable] = set()

    def is_busy(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._busy

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._lock:
            if key in self._busy:
                raise ConversationBusyError(f"A message is already being sent for {key}")
            self._busy.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._busy.discard(key)


class ConversationLifecycle:
    """
    Conversation lifecycle controller for one browser session.

    States: UNAUTHENTICATED -> BOOTSTRAPPING -> READY, back to
    UNAUTHENTICATED on sign-out.

    Requests of one session run in parallel worker threads, so every
    state change happens under a re-entrant lock. A send only takes the
    lock around cache updates and never while the reply is generated.
    """

    def __init__(
        self,
        store: ConversationStore,
        generator: ResponseGenerator,
        session_state: Optional[SessionState] = None,
        guard: Optional[InFlightGuard] = None,
    ):
        self.store = store
        self.generator = generator
        self.session_state = session_state or SessionState()
        self.guard = guard or InFlightGuard()

        self.state = LifecycleState.UNAUTHENTICATED
        self.user_id: Optional[str] = None
        self.active_conversation: Optional[Conversation] = None
        self.conversations: list[Conversation] = []
        self.messages: list[LocalMessage] = []
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def sign_in(self, user_id: str) -> None:
        """
        Sign a user in and run the session bootstrap.

        Signing in again as the same user is a no-op; signing in as a
        different user signs the previous one out first. A caller that
        waited on a concurrent sign-in of the same user finds the session
        READY and returns without bootstrapping again.
        """
        with self._lock:
            if self.state is LifecycleState.READY and self.user_id == user_id:
                return
            if self.user_id is not None and self.user_id != user_id:
                self.sign_out()

            self.user_id = user_id
            self.state = LifecycleState.BOOTSTRAPPING
            self.bootstrap()

    def bootstrap(self) -> None:
        """
        Decide which conversation becomes active.

        On the first run of a session: reuse the most recent conversation
        if it is still empty, otherwise start a new one. With no
        conversations at all nothing is created. Later runs only restore
        the active conversation.
        """
        with self._lock:
            if self.user_id is None:
                raise InvalidStateError("Cannot bootstrap without a signed-in user")

            self.conversations = self._safe_list_conversations()
            latest = self.conversations[0] if self.conversations else None

            if not self.session_state.bootstrapped:
                self.active_conversation = latest
                if latest is not None and self._safe_count_messages(latest.id) > 0:
                    try:
                        fresh = self.store.create_conversation(self.user_id)
                    except StoreError as e:
                        logger.warning(f"Bootstrap could not create conversation for user {self.user_id}: {str(e)}")
                    else:
                        self.conversations.insert(0, fresh)
                        self.active_conversation = fresh
                self.session_state.bootstrapped = True
            elif not self._is_listed(self.active_conversation):
                self.active_conversation = latest

            self.reload()
            self.state = LifecycleState.READY
            logger.info(
                f"Session ready: user={self.user_id}, "
                f"conversation={self.active_conversation.id if self.active_conversation else None}"
            )

    def sign_out(self) -> None:
        """Reset to UNAUTHENTICATED and clear the session flag."""
        with self._lock:
            logger.info(f"Session signed out: user={self.user_id}")
            self.state = LifecycleState.UNAUTHENTICATED
            self.session_state.bootstrapped = False
            self.user_id = None
            self.active_conversation = None
            self.conversations = []
            self.messages = []

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def refresh_conversations(self) -> list[Conversation]:
        with self._lock:
            self._require_ready()
            self.conversations = self._safe_list_conversations()
            return self.conversations

    def new_conversation(self) -> Conversation:
        """
        Start a fresh conversation and make it active.

        The outgoing conversation gets its title from its first user
        message if it has content and still carries the default title.

        Raises:
            InvalidStateError: If not signed in
            StoreError: If the new conversation cannot be created
        """
        with self._lock:
            self._require_ready()

            if self.active_conversation is not None and self.messages:
                first_user = next((m for m in self.messages if m.role == "user"), None)
                if first_user is not None and self.active_conversation.title == DEFAULT_TITLE:
                    self._retitle(self.active_conversation, derive_title(first_user.content))

            conversation = self.store.create_conversation(self.user_id)
            self.conversations.insert(0, conversation)
            self.active_conversation = conversation
            self.messages = []
            return conversation

    def select_conversation(self, conversation_id: int) -> Conversation:
        """
        Make an owned conversation active and load its messages.

        Raises:
            InvalidStateError: If not signed in
            ConversationNotFoundError: If not found or not owned by the user
        """
        with self._lock:
            self._require_ready()
            conversation = self.store.get_conversation(conversation_id, self.user_id)
            self.active_conversation = conversation
            self.reload()
            return conversation

    def reload(self) -> list[LocalMessage]:
        """Replace the local cache with the persisted messages."""
        with self._lock:
            if self.active_conversation is None:
                self.messages = []
                return self.messages
            try:
                records = self.store.list_messages(self.active_conversation.id)
            except StoreError as e:
                logger.warning(f"Could not load messages for conversation {self.active_conversation.id}: {str(e)}")
                records = []
            self.messages = [LocalMessage.from_record(m) for m in records]
            return self.messages

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def send_message(self, text: str) -> SentTurn:
        """
        Append a user message and the assistant's reply.

        The conversation and its message cache are taken when the send
        starts. Switching conversations while the reply is generated does
        not move the reply: it is written to the conversation the user
        message went to.

        Flow:
        1. Hold the in-flight guard for the active conversation
        2. Cache and persist the user message
        3. Derive the title on the first user message of a "New Chat"
        4. Generate the reply (apology text on generation failure)
        5. Cache and persist the assistant message

        Args:
            text: User message content

        Returns:
            SentTurn of (user_message, assistant_message, conversation)

        Raises:
            ValueError: If text is blank
            ConversationBusyError: If a send is already in flight
        """
        text = (text or "").strip()
        if not text:
            raise ValueError("Message cannot be empty")

        with self._lock:
            conversation = self.active_conversation
            messages = self.messages
        key = conversation.id if conversation is not None else ("session", id(self))

        with self.guard.hold(key):
            with self._lock:
                is_first_user = not any(m.role == "user" for m in messages)
                user_msg = LocalMessage(role="user", content=text)
                messages.append(user_msg)
            self._persist(conversation, user_msg)

            if (
                conversation is not None
                and is_first_user
                and conversation.title == DEFAULT_TITLE
            ):
                self._retitle(conversation, derive_title(text))

            with self._lock:
                history = [m.as_turn() for m in messages if not m.synthetic]
            try:
                reply = self.generator.generate(history)
            except GenerationError as e:
                logger.error(f"Generation failed for user {self.user_id}: {str(e)}")
                assistant_msg = LocalMessage(
                    role="assistant", content=APOLOGY_MESSAGE, status=LOCAL, synthetic=True
                )
                with self._lock:
                    messages.append(assistant_msg)
                return SentTurn(user_msg, assistant_msg, conversation)

            assistant_msg = LocalMessage(role="assistant", content=reply)
            with self._lock:
                messages.append(assistant_msg)
            self._persist(conversation, assistant_msg)

        return SentTurn(user_msg, assistant_msg, conversation)

    def latest_reply(self) -> Optional[LocalMessage]:
        with self._lock:
            return next((m for m in reversed(self.messages) if m.role == "assistant"), None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _persist(self, conversation: Optional[Conversation], message: LocalMessage) -> None:
        if conversation is None:
            message.status = LOCAL
            return
        try:
            record = self.store.append_message(conversation.id, message.role, message.content)
        except StoreError as e:
            # Stays pending until the next reload.
            logger.warning(
                f"Message not persisted: conversation={conversation.id}, "
                f"role={message.role}: {str(e)}"
            )
            return
        message.id = record.id
        message.created_at = record.created_at
        message.status = CONFIRMED

    def _retitle(self, conversation: Conversation, title: str) -> None:
        try:
            self.store.rename_conversation(conversation.id, title)
        except StoreError as e:
            logger.warning(f"Could not rename conversation {conversation.id}: {str(e)}")
            return
        with self._lock:
            conversation.title = title
            for listed in self.conversations:
                if listed.id == conversation.id:
                    listed.title = title

    def _safe_list_conversations(self) -> list[Conversation]:
        try:
            return self.store.list_conversations(self.user_id)
        except StoreError as e:
            logger.warning(f"Could not list conversations for user {self.user_id}: {str(e)}")
            return []

    def _safe_count_messages(self, conversation_id: int) -> int:
        try:
            return self.store.count_messages(conversation_id)
        except StoreError as e:
            logger.warning(f"Could not count messages for conversation {conversation_id}: {str(e)}")
            return 0

    def _is_listed(self, conversation: Optional[Conversation]) -> bool:
        return conversation is not None and any(
            c.id == conversation.id for c in self.conversations
        )

    def _require_ready(self) -> None:
        if self.state is not LifecycleState.READY:
            raise InvalidStateError(f"Operation requires a signed-in session (state={self.state.value})")


class ChatSessionRegistry:
    """
    Browser sessions keyed by the session cookie.

    Each session owns one ConversationLifecycle and its SessionState.
    Entries expire ttl_seconds after their last use, and once
    max_sessions are held the least recently used one is dropped.
    """

    def __init__(
        self,
        factory: Callable[[], ConversationLifecycle],
        ttl_seconds: float = 24 * 3600,
        max_sessions: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        self._factory = factory
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self._clock = clock
        # Oldest use first; each value is {"controller", "expires_at"}.
        self._sessions: "OrderedDict[str, Dict[str, object]]" = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def new_session_id() -> str:
        return uuid.uuid4().hex

    def get(self, session_id: str) -> ConversationLifecycle:
        """Get the session's controller, creating it on first use or after expiry."""
        now = self._clock()
        with self._lock:
            item = self._sessions.get(session_id)
            if item is not None and item["expires_at"] > now:
                item["expires_at"] = now + self.ttl_seconds
                self._sessions.move_to_end(session_id)
                return item["controller"]
            self._sessions.pop(session_id, None)

            self._sweep(now)
            while len(self._sessions) >= self.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.info(f"Session evicted at capacity: {evicted}")

            controller = self._factory()
            self._sessions[session_id] = {
                "controller": controller,
                "expires_at": now + self.ttl_seconds,
            }
            return controller

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def sweep_expired(self) -> int:
        """Drop expired sessions. Returns how many were removed."""
        with self._lock:
            return self._sweep(self._clock())

    def _sweep(self, now: float) -> int:
        # Every use resets the same ttl, so expiry follows insertion order.
        removed = 0
        while self._sessions:
            session_id, item = next(iter(self._sessions.items()))
            if item["expires_at"] > now:
                break
            del self._sessions[session_id]
            removed += 1
        if removed:
            logger.info(f"Expired {removed} chat sessions")
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
