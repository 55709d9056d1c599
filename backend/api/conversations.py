from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field

from api.deps import get_container
from core.errors import ConversationAccessError
from services.container import ServiceContainer
from utils.session_utils import get_current_user

router = APIRouter(prefix="/conversations", tags=["Conversations"])


class CreateConversationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_message: str = Field(default="", alias="firstMessage")


class AppendMessagePayload(BaseModel):
    role: Literal["user", "assistant"]
    content: str


@router.get("")
def list_conversations(user_id: int = Depends(get_current_user), container: ServiceContainer = Depends(get_container)):
    return container.ledger.list_for_owner(user_id)


@router.get("/{conversation_id}")
def get_conversation(
    conversation_id: str,
    user_id: int = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    try:
        return container.ledger.get(conversation_id, user_id)
    except ConversationAccessError:
        raise HTTPException(status_code=404, detail="Conversation not found!")


@router.post("", status_code=201)
async def create_conversation(
    payload: CreateConversationPayload,
    user_id: int = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    conversation_id = await run_in_threadpool(container.ledger.create, user_id, payload.first_message)
    conversation = await run_in_threadpool(container.ledger.get, conversation_id, user_id)
    for message in conversation["messages"]:
        await container.events.emit_message(conversation_id, message)
    return conversation


@router.post("/{conversation_id}")
async def append_message(
    conversation_id: str,
    payload: AppendMessagePayload,
    user_id: int = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    # ConversationAccessError and PersistenceError go to the app-level handler
    message = await run_in_threadpool(
        container.ledger.append, conversation_id, user_id, payload.role, payload.content
    )
    await container.events.emit_message(conversation_id, message)
    return {"success": True, "message": message}
