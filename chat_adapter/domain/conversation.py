from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Protocol
from datetime import datetime, timezone

from .models import ChatMessage, SamplingParameters


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    """统一序列化为带 Z 后缀的 UTC ISO-8601 字符串。"""

    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Conversation:
    """会话聚合根。

    messages 只能通过 ConversationManager.append_message 追加，
    顺序即对话顺序；metadata 对核心逻辑不透明（常见字段 title/tags）。
    """

    id: str
    model: str
    created_at: datetime
    updated_at: datetime
    parameters: SamplingParameters
    messages: List[ChatMessage] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "Conversation":
        return Conversation(
            id=self.id,
            model=self.model,
            created_at=self.created_at,
            updated_at=self.updated_at,
            parameters=SamplingParameters(**self.parameters.to_dict()),
            messages=[ChatMessage(m.role, m.content) for m in self.messages],
            metadata=dict(self.metadata),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "model": self.model,
            "created_at": format_ts(self.created_at),
            "updated_at": format_ts(self.updated_at),
            "parameters": self.parameters.to_dict(),
            "messages": [m.to_dict() for m in self.messages],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        messages = data.get("messages") or []
        if not isinstance(messages, list):
            raise ValueError("messages must be a list")
        return cls(
            id=str(data["id"]),
            model=data["model"],
            created_at=parse_ts(data["created_at"]),
            updated_at=parse_ts(data["updated_at"]),
            parameters=SamplingParameters.from_dict(data.get("parameters")),
            messages=[ChatMessage.from_dict(m) for m in messages],
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ConversationMetadata:
    """列表用的会话投影：不含 messages 与 parameters，只带消息数量。"""

    id: str
    model: str
    created_at: datetime
    updated_at: datetime
    message_count: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> Optional[str]:
        return self.metadata.get("title")

    @property
    def tags(self) -> List[str]:
        tags = self.metadata.get("tags") or []
        return [t for t in tags if isinstance(t, str)] if isinstance(tags, list) else []

    @classmethod
    def from_conversation(cls, conv: Conversation) -> "ConversationMetadata":
        return cls(
            id=conv.id,
            model=conv.model,
            created_at=conv.created_at,
            updated_at=conv.updated_at,
            message_count=len(conv.messages),
            metadata=dict(conv.metadata),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "model": self.model,
            "created_at": format_ts(self.created_at),
            "updated_at": format_ts(self.updated_at),
            "message_count": self.message_count,
            "metadata": self.metadata,
        }


class ConversationStore(Protocol):
    async def allocate_next_id(self) -> str:
        ...

    async def release_id(self, conversation_id: str) -> None:
        ...

    async def write(self, conversation: Conversation) -> None:
        ...

    async def read(self, conversation_id: str) -> Conversation:
        ...

    async def list(self) -> List[ConversationMetadata]:
        ...

    async def count(self) -> int:
        ...

    async def delete(self, conversation_id: str) -> bool:
        ...
