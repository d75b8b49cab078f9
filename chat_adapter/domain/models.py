"""统一的消息与请求数据模型。

本模块定义了会话层与 Provider 之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant）。
- SamplingParameters: 五个数值采样参数，逐字段可覆盖。
- ChatRequest: 发给底层 Provider 的完整流式请求。
- ChatStreamChunk: 从 Provider 流中解析出的单个增量。
"""

from dataclasses import dataclass, field, fields, asdict
from typing import Literal, Optional, Any, Dict, List, get_args


# 会话允许的消息角色
Role = Literal["system", "user", "assistant"]
ROLES = frozenset(get_args(Role))

SAMPLING_FIELDS = ("temperature", "max_tokens", "top_p", "frequency_penalty", "presence_penalty")


@dataclass
class ChatMessage:
    """一条对话消息，持久化时只保存 role 与 content。"""

    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        role = data["role"]
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role!r}")
        content = data.get("content")
        if not isinstance(content, str):
            raise ValueError("Message content must be a string")
        return cls(role=role, content=content)


@dataclass
class SamplingParameters:
    """五个采样参数。

    None 表示“本层未指定”，由 resolve() 逐字段向下一层回落：
    单轮覆盖 -> 会话级存储值 -> 进程默认值。
    """

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None

    def resolve(
        self,
        override: Optional["SamplingParameters"],
        defaults: "SamplingParameters",
    ) -> "SamplingParameters":
        resolved = {}
        for name in SAMPLING_FIELDS:
            value = getattr(override, name) if override is not None else None
            if value is None:
                value = getattr(self, name)
            if value is None:
                value = getattr(defaults, name)
            resolved[name] = value
        return SamplingParameters(**resolved)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SamplingParameters":
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError("parameters must be an object")
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})

    @classmethod
    def from_settings(cls, settings) -> "SamplingParameters":
        """读取配置中的进程级默认值。"""

        return cls(
            temperature=settings.default_temperature,
            max_tokens=settings.default_max_tokens,
            top_p=settings.default_top_p,
            frequency_penalty=settings.default_frequency_penalty,
            presence_penalty=settings.default_presence_penalty,
        )


@dataclass
class ChatRequest:
    """一次完整的流式聊天请求。

    会话层负责解析好所有参数后构造 ChatRequest，
    Provider 适配层负责把它转换成具体 API 的 JSON 请求体。
    """

    model: str
    messages: List[ChatMessage]
    parameters: SamplingParameters


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatStreamChunk:
    """流式对话的单个增量。

    content 为本次增量文本（可能为空串，例如只携带 finish_reason 的尾包）。
    """

    content: str
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    raw: Dict[str, Any] = field(default_factory=dict)
