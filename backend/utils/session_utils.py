import json
import uuid
from datetime import datetime, timezone
from typing import Optional

import redis
from fastapi import HTTPException, Request

from core.errors import AuthError
from core.logging_config import get_logger

logger = get_logger(__name__)

SESSION_EXPIRE_HOURS = 24


def create_redis_client(redis_url: str) -> redis.Redis:
    # lazy connection, nothing is contacted until the first command
    return redis.from_url(
        redis_url,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30
    )


class SessionManager:
    """Session tokens stored in Redis as `session:<token>` with a TTL."""

    def __init__(self, client, expire_hours: int = SESSION_EXPIRE_HOURS):
        self.client = client
        self.expire_hours = expire_hours

    def create_session(self, user_data: dict) -> str:
        session_id = str(uuid.uuid4())
        session_data = {
            "user_id": user_data.get("user_id"),
            "email": user_data.get("email"),
            "created_at": datetime.now(timezone.utc).isoformat(),
            "last_activity": datetime.now(timezone.utc).isoformat()
        }
        self._persist_session(session_id, session_data)
        return session_id

    def get_session(self, session_id: Optional[str]) -> Optional[dict]:
        if not session_id:
            return None
        session_data = self.client.get(f"session:{session_id}")
        if session_data:
            return json.loads(session_data)
        return None

    def update_session_activity(self, session_id: str):
        session_data = self.get_session(session_id)
        if session_data:
            session_data["last_activity"] = datetime.now(timezone.utc).isoformat()
            self._persist_session(session_id, session_data)

    def destroy_session(self, session_id: str):
        self.client.delete(f"session:{session_id}")

    def _persist_session(self, session_id: str, session_data: dict):
        self.client.setex(
            f"session:{session_id}",
            self.expire_hours * 3600,
            json.dumps(session_data)
        )


class Authenticator:
    """verify(token) -> user id, the contract the answering pipeline consumes."""

    def __init__(self, sessions: SessionManager):
        self.sessions = sessions

    def verify(self, token: Optional[str]) -> int:
        if not token:
            raise AuthError("No token provided")
        try:
            session_data = self.sessions.get_session(token)
        except redis.RedisError as e:
            logger.error("Session store unavailable", extra={"error": str(e)})
            raise AuthError("Session store unavailable") from e
        if not session_data or session_data.get("user_id") is None:
            raise AuthError("Invalid or expired token")
        self.sessions.update_session_activity(token)
        return int(session_data["user_id"])


def token_from_request(request: Request) -> Optional[str]:
    """Bearer token from the Authorization header, else the `session_id` cookie."""
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get("session_id")


def get_current_user(request: Request) -> int:
    """FastAPI dependency: authenticated user id, 401 otherwise."""
    container = request.app.state.container
    try:
        return container.authenticator.verify(token_from_request(request))
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
