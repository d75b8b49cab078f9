"""Chat Adapter 顶层包。

为 LLM 客户端提供可持久化、可命名的多轮会话：
会话文件存储、进程内缓存、会话生命周期管理，
以及对远端 Chat Completions 接口的流式调用编排。
"""

from chat_adapter.api.service import ChatAdapterService, ToolContext, get_default_service

__all__ = ["ChatAdapterService", "ToolContext", "get_default_service"]
