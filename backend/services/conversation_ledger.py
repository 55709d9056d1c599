"""
Append-only conversation log.

Each append is one transaction keyed by (conversation id, owner): the
ownership check and the INSERT commit together, so a message either lands
whole in the right conversation or not at all. Message ids are assigned by
the database and define the reading order.
"""
from __future__ import annotations

from typing import Callable, Dict, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from core.errors import ConversationAccessError, PersistenceError
from core.logging_config import get_logger
from core.metrics import chat_messages_total
from db import models
from db.database import Database

logger = get_logger(__name__)

ROLES = ("user", "assistant")
TITLE_LENGTH = 30

T = TypeVar("T")


def message_to_dict(message: models.ConversationMessage) -> Dict[str, object]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "timestamp": message.created_at.isoformat() if message.created_at else None,
    }


def conversation_to_dict(conversation: models.Conversation, with_messages: bool = True) -> Dict[str, object]:
    data: Dict[str, object] = {
        "id": conversation.id,
        "userId": conversation.user_id,
        "title": conversation.title,
        "createdAt": conversation.created_at.isoformat() if conversation.created_at else None,
    }
    if with_messages:
        data["messages"] = [message_to_dict(m) for m in conversation.messages]
    return data


class ConversationLedger:
    def __init__(self, database: Database, max_attempts: int = 2) -> None:
        self.database = database
        self.max_attempts = max_attempts

    def _with_retry(self, operation: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except SQLAlchemyError as exc:
                if attempt < self.max_attempts:
                    logger.warning("Ledger write failed, retrying", extra={
                        "operation": operation,
                        "attempt": attempt,
                        "error": str(exc),
                    })
                    continue
                logger.error("Ledger write failed", extra={"operation": operation, "error": str(exc)})
                raise PersistenceError(f"{operation} failed: {exc}") from exc

    def create(self, owner: int, first_message: str, conversation_id: Optional[str] = None) -> str:
        def _create() -> str:
            with self.database.transaction() as db:
                conversation = models.Conversation(
                    user_id=owner,
                    title=(first_message or "")[:TITLE_LENGTH] or "New chat",
                )
                if conversation_id:
                    conversation.id = conversation_id
                db.add(conversation)
                db.flush()
                db.add(models.ConversationMessage(
                    conversation_id=conversation.id, role="user", content=first_message or ""
                ))
                return conversation.id

        new_id = self._with_retry("create", _create)
        chat_messages_total.labels(role="user").inc()
        logger.info("Conversation created", extra={"conversation_id": new_id, "owner": owner})
        return new_id

    def append(
        self,
        conversation_id: str,
        owner: int,
        role: str,
        content: str,
        create_missing: bool = False,
    ) -> Dict[str, object]:
        if role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}")

        def _append() -> Dict[str, object]:
            with self.database.transaction() as db:
                conversation = (
                    db.query(models.Conversation)
                    .filter(models.Conversation.id == conversation_id)
                    .with_for_update()
                    .first()
                )
                if conversation is None:
                    if not create_missing:
                        raise ConversationAccessError(f"Conversation {conversation_id} not found")
                    conversation = models.Conversation(
                        id=conversation_id,
                        user_id=owner,
                        title=(content or "")[:TITLE_LENGTH] or "New chat",
                    )
                    db.add(conversation)
                    db.flush()
                elif conversation.user_id != owner:
                    raise ConversationAccessError(f"Conversation {conversation_id} not found")

                message = models.ConversationMessage(
                    conversation_id=conversation.id, role=role, content=content
                )
                db.add(message)
                db.flush()
                db.refresh(message)
                return message_to_dict(message)

        stored = self._with_retry("append", _append)
        chat_messages_total.labels(role=role).inc()
        return stored

    def get(self, conversation_id: str, owner: int) -> Dict[str, object]:
        db = self.database.session()
        try:
            conversation = (
                db.query(models.Conversation)
                .filter(models.Conversation.id == conversation_id, models.Conversation.user_id == owner)
                .first()
            )
            if conversation is None:
                raise ConversationAccessError(f"Conversation {conversation_id} not found")
            return conversation_to_dict(conversation)
        finally:
            db.close()

    def owner_of(self, conversation_id: str) -> Optional[int]:
        db = self.database.session()
        try:
            row = (
                db.query(models.Conversation.user_id)
                .filter(models.Conversation.id == conversation_id)
                .first()
            )
            return row[0] if row is not None else None
        finally:
            db.close()

    def messages(self, conversation_id: str, owner: int) -> List[Dict[str, object]]:
        return list(self.get(conversation_id, owner)["messages"])

    def list_for_owner(self, owner: int) -> List[Dict[str, object]]:
        db = self.database.session()
        try:
            conversations = (
                db.query(models.Conversation)
                .filter(models.Conversation.user_id == owner)
                .order_by(models.Conversation.created_at.desc(), models.Conversation.id)
                .all()
            )
            return [conversation_to_dict(c) for c in conversations]
        finally:
            db.close()
