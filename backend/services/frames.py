"""Streaming channel frames: the client request and the server's tagged union."""
from __future__ import annotations

import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class StreamRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str = ""
    token: Optional[str] = None
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


class QuestionEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    file_url: Optional[str] = Field(default=None, alias="fileUrl")

    @classmethod
    def parse(cls, question: str) -> "QuestionEnvelope":
        """A question is either plain text or a JSON object {text, fileUrl?}."""
        raw = (question or "").strip()
        if raw.startswith("{"):
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                data = None
            if isinstance(data, dict) and ("text" in data or "fileUrl" in data):
                return cls.model_validate(data)
        return cls(text=question or "")


class StartFrame(BaseModel):
    type: Literal["start"] = "start"
    question: str
    mode: str
    filter: Dict[str, Any] = Field(default_factory=dict)
    count: int = 0
    conversation_id: Optional[str] = Field(default=None, serialization_alias="conversationId")


class ChunkFrame(BaseModel):
    type: Literal["chunk"] = "chunk"
    data: str


class EndFrame(BaseModel):
    type: Literal["end"] = "end"


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    message: str


Frame = Annotated[Union[StartFrame, ChunkFrame, EndFrame, ErrorFrame], Field(discriminator="type")]

frame_adapter: TypeAdapter[Frame] = TypeAdapter(Frame)


def dump_frame(frame: Frame) -> Dict[str, Any]:
    return frame_adapter.dump_python(frame, mode="json", by_alias=True, exclude_none=True)
