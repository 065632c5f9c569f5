import json
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


# Events emitted by `claude --output-format stream-json --verbose` (subset).
# Only "assistant" and "result" carry text; every other tag is skipped.


class ContentFragment(BaseModel):
    type: str = ""
    text: Optional[str] = None


class AssistantMessage(BaseModel):
    content: List[ContentFragment] = Field(default_factory=list)


class AssistantEvent(BaseModel):
    type: Literal["assistant"]
    message: AssistantMessage = Field(default_factory=AssistantMessage)

    def texts(self) -> List[str]:
        return [frag.text for frag in self.message.content if frag.text]


class ResultEvent(BaseModel):
    type: Literal["result"]
    result: Optional[str] = None
    subtype: Optional[str] = None
    is_error: Optional[bool] = False


StreamEvent = Annotated[Union[AssistantEvent, ResultEvent], Field(discriminator="type")]

_EVENT_ADAPTER: TypeAdapter = TypeAdapter(StreamEvent)


def parse_stream_event(line: str) -> Optional[Union[AssistantEvent, ResultEvent]]:
    """Parse one stream-json line; None for blank, malformed or uninteresting lines."""
    line = (line or "").strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except ValueError:
        return None
    if not isinstance(obj, dict) or obj.get("type") not in ("assistant", "result"):
        return None
    try:
        return _EVENT_ADAPTER.validate_python(obj)
    except ValidationError:
        return None
