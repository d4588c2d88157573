import json
import uuid
from enum import Enum

from pydantic import BaseModel, Field, field_serializer


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"

    @property
    def upstream(self) -> str:
        """Role sent to the model; tool turns fold into ``assistant``."""
        if self is MessageRole.USER:
            return "user"
        return "assistant"


class Message(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: MessageRole
    content: str = ""

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value


def escape_content(text: str) -> str:
    """Escape double quotes and newlines for embedding in a JSON string."""
    return text.replace('"', '\\"').replace("\n", "\\n")


def tool_result_envelope(tool_use_id: str, content: str, is_error: bool) -> str:
    """Single-line ``tool_result`` object sent back to the model after approval.

    Only quotes and newlines in *content* are escaped, matching what the
    model has been shown in earlier turns.
    """
    return (
        '{"type":"tool_result",'
        f'"tool_use_id":{json.dumps(tool_use_id)},'
        f'"content":"{escape_content(content)}",'
        f'"is_error":{"true" if is_error else "false"}}}'
    )
