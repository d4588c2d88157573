from pydantic import BaseModel, Field

from conduit.message import Message, MessageRole


class Session(BaseModel):
    session_id: str
    transcript: list[Message] = Field(default_factory=list)

    def append(self, role: MessageRole, content: str = "") -> Message:
        message = Message(role=role, content=content)
        self.transcript.append(message)
        return message

    def upstream_messages(self) -> list[dict]:
        """Transcript in the model's strict user/assistant alternation.

        Empty messages are skipped and consecutive turns that map to the
        same upstream role are joined with a blank line.
        """
        result: list[dict] = []
        for message in self.transcript:
            if not message.content:
                continue
            role = message.role.upstream
            if result and result[-1]["role"] == role:
                result[-1]["content"] += "\n\n" + message.content
            else:
                result.append({"role": role, "content": message.content})
        return result
