"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 提供具体实现 (openai_client，兼容所有 OpenAI 风格的 Chat Completions 接口)。
"""

from typing import Optional

from chat_adapter.config.settings import settings as default_settings
from chat_adapter.domain.exceptions import ValidationError
from chat_adapter.providers.base import ProviderClient
from chat_adapter.providers.openai_client import OpenAIClient


def create_provider(name: Optional[str] = None, settings=None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认使用 OpenAI 兼容客户端。"""

    provider_name = (name or "openai").lower()
    if provider_name != "openai":
        raise ValidationError(f"Unknown provider: {name!r}", code="UNKNOWN_PROVIDER")
    return OpenAIClient(settings or default_settings)
