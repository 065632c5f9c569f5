from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_serializer, field_validator


# Minimal OpenAI chat-completions schema (text-only)


class ChatMessage(BaseModel):
    # Free-form: roles the assembler does not know are ignored, not rejected.
    role: str = ""
    content: Union[str, List[Dict[str, Any]], None] = ""

    def text(self) -> str:
        """Collapse content (string or list of content parts) into a plain string."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        parts: List[str] = []
        for part in self.content:
            if part.get("type", "text") == "text" and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)


class ChatCompletionRequest(BaseModel):
    model: Optional[str] = ""
    messages: List[ChatMessage] = Field(default_factory=list)
    stream: Optional[bool] = False

    @field_validator("model", mode="after")
    @classmethod
    def _none_model(cls, v: Optional[str]) -> str:
        return v or ""

    @field_validator("stream", mode="after")
    @classmethod
    def _none_stream(cls, v: Optional[bool]) -> bool:
        return bool(v)


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ResponseMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str


class Choice(BaseModel):
    index: int = 0
    message: ResponseMessage
    finish_reason: Optional[str] = "stop"


class ChatCompletionResponse(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: List[Choice]
    usage: Usage = Field(default_factory=Usage)


# Streaming payloads


class Delta(BaseModel):
    role: Optional[Literal["assistant"]] = None
    content: Optional[str] = None


class ChunkChoice(BaseModel):
    index: int = 0
    delta: Delta = Field(default_factory=Delta)
    finish_reason: Optional[str] = None

    @field_serializer("delta")
    def _omit_empty_delta_fields(self, delta: Delta) -> Dict[str, Any]:
        return delta.model_dump(exclude_none=True)


class ChatCompletionChunk(BaseModel):
    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: List[ChunkChoice]


class ErrorBody(BaseModel):
    message: str
    type: str = "error"


class ErrorResponse(BaseModel):
    error: ErrorBody
