"""工具入参模型。

调用方传入的参数在进入核心逻辑前统一用 pydantic 校验，
任何不合法的输入都在持久化或远端调用之前被拒绝。
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chat_adapter.domain.conversation import parse_ts
from chat_adapter.domain.models import SamplingParameters


class ParametersArgs(BaseModel):
    """五个采样参数的可选覆盖值。"""

    model_config = ConfigDict(extra="forbid")

    temperature: Optional[float] = Field(default=None, ge=0, le=2, description="Controls randomness")
    max_tokens: Optional[int] = Field(default=None, gt=0, description="Maximum tokens to generate")
    top_p: Optional[float] = Field(default=None, ge=0, le=1, description="Nucleus sampling")
    frequency_penalty: Optional[float] = Field(default=None, ge=-2, le=2)
    presence_penalty: Optional[float] = Field(default=None, ge=-2, le=2)

    def to_sampling(self) -> SamplingParameters:
        return SamplingParameters(**self.model_dump())


class MetadataArgs(BaseModel):
    """会话元数据：识别 title/tags，其余字段原样透传。"""

    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    tags: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CreateConversationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    model: Optional[str] = Field(default=None, description="The model to use, defaults to configuration")
    system_prompt: Optional[str] = Field(default=None, description="Initial system message")
    parameters: ParametersArgs = Field(default_factory=ParametersArgs)
    metadata: MetadataArgs = Field(default_factory=MetadataArgs)


class ChatArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    conversation_id: str = Field(min_length=1, description="The ID of the conversation")
    message: str = Field(description="The user message to add")
    parameters: ParametersArgs = Field(default_factory=ParametersArgs)


class ListFilter(BaseModel):
    tags: Optional[List[str]] = Field(default=None, description="Filter by tags")
    created_after: Optional[datetime] = Field(default=None, description="Filter by creation date (ISO string)")
    created_before: Optional[datetime] = Field(default=None, description="Filter by creation date (ISO string)")

    @field_validator("created_after", "created_before", mode="before")
    @classmethod
    def parse_iso(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_ts(v)
        return v

    @field_validator("created_after", "created_before")
    @classmethod
    def ensure_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ListConversationsArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    filter: Optional[ListFilter] = None
    limit: Optional[int] = Field(default=None, gt=0, description="Max number of conversations to return")
    offset: Optional[int] = Field(default=None, ge=0, description="Pagination offset")


class ConversationIdArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    conversation_id: str = Field(min_length=1, description="The ID of the conversation")
