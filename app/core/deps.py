"""Request dependencies: identity, session cookie and chat controllers."""
from functools import lru_cache
from typing import Optional
import logging

import jwt
from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.database import engine
from app.services.chat_service import ChatSessionRegistry, ConversationLifecycle
from app.services.generator import ResponseGenerator
from app.services.store import ConversationStore

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def decode_user_id(token: str) -> str:
    """
    Extract the user id (sub claim) from an identity provider JWT.

    Raises:
        HTTPException: 401 if the token is invalid or has no subject
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError as e:
        logger.warning(f"Rejected token: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return str(user_id)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Authenticated user id from the bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_user_id(credentials.credentials)


@lru_cache(maxsize=1)
def get_registry() -> ChatSessionRegistry:
    """Process-wide registry of browser sessions."""
    store = ConversationStore(engine)
    generator = ResponseGenerator()
    return ChatSessionRegistry(
        lambda: ConversationLifecycle(store, generator),
        ttl_seconds=settings.SESSION_TTL_SECONDS,
        max_sessions=settings.MAX_SESSIONS,
    )


def get_session_id(request: Request, response: Response) -> str:
    """Browser session id from the session cookie, issued when absent."""
    session_id = request.cookies.get(settings.SESSION_COOKIE)
    if not session_id:
        session_id = ChatSessionRegistry.new_session_id()
        response.set_cookie(settings.SESSION_COOKIE, session_id, httponly=True, samesite="lax")
    return session_id


def get_controller(
    session_id: str = Depends(get_session_id),
    registry: ChatSessionRegistry = Depends(get_registry),
) -> ConversationLifecycle:
    return registry.get(session_id)
