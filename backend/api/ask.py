import json
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.websockets import WebSocketState

from api.deps import get_container
from core.errors import ChannelClosed, ExtractionError
from core.logging_config import get_logger
from services.container import ServiceContainer
from services.frames import ErrorFrame, Frame, StreamRequest, dump_frame
from utils.session_utils import get_current_user

logger = get_logger(__name__)

router = APIRouter(tags=["Assistant"])


class AskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(min_length=1)
    uploaded_text: Optional[str] = Field(default=None, alias="uploadedText")


@router.post("/ask")
async def ask(
    payload: AskRequest,
    user_id: int = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    question = payload.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="Question must not be empty")
    result = await container.orchestrator.answer(user_id, question, payload.uploaded_text)
    return {"question": question, **result}


@router.post("/upload")
async def upload(
    file: UploadFile = File(...),
    user_id: int = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    """Extract text from an uploaded document; the file itself is not stored."""
    content = await file.read()
    try:
        text = container.extractor.extract(content, file.content_type, file.filename)
    except ExtractionError as e:
        raise HTTPException(status_code=422, detail=str(e))
    logger.info("Upload extracted", extra={"user_id": user_id, "upload_name": file.filename, "chars": len(text)})
    return {"message": "File uploaded & text extracted successfully", "extractedText": text}


class WebSocketSink:
    """Sends validated frames; a gone client surfaces as ChannelClosed."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, frame: Frame) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            raise ChannelClosed("websocket closed")
        try:
            await self.websocket.send_json(dump_frame(frame))
        except (WebSocketDisconnect, RuntimeError) as e:
            raise ChannelClosed(str(e)) from e


@router.websocket("/ws")
async def answer_stream(websocket: WebSocket):
    container: ServiceContainer = websocket.app.state.container
    await websocket.accept()
    sink = WebSocketSink(websocket)
    logger.info("Stream channel opened")
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                request = StreamRequest.model_validate(json.loads(raw))
            except (json.JSONDecodeError, ValidationError, TypeError) as e:
                logger.info("Malformed stream request", extra={"error": str(e)})
                await sink.send(ErrorFrame(message="Malformed request"))
                continue
            await container.orchestrator.stream(request, sink)
    except (WebSocketDisconnect, ChannelClosed):
        logger.info("Stream channel closed")
