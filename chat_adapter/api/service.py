"""对外工具服务模块。

提供传输层（如 MCP 工具注册）直接调用的五个操作：
create_conversation / chat / list_conversations / get_conversation / delete_conversation。
每个操作接收结构化参数和一个日志/进度上下文，要么返回完整结果，
要么抛出 domain.exceptions 中定义的某一种异常。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from chat_adapter.api.error_handler import handle_tool_error
from chat_adapter.api.schemas import (
    ChatArgs,
    ConversationIdArgs,
    CreateConversationRequest,
    ListConversationsArgs,
    ListFilter,
)
from chat_adapter.config.settings import settings as default_settings
from chat_adapter.domain.conversation import Conversation, ConversationMetadata
from chat_adapter.domain.exceptions import StorageError, ValidationError
from chat_adapter.engine.manager import ConversationManager, CreateConversationArgs
from chat_adapter.engine.orchestrator import CompletionOrchestrator, ProgressReporter
from chat_adapter.infrastructure.logging.logger import logger
from chat_adapter.infrastructure.storage.json_store import JsonConversationStore
from chat_adapter.providers import create_provider
from chat_adapter.providers.base import ProviderClient

ArgsT = TypeVar("ArgsT", bound=BaseModel)


@dataclass
class ToolContext:
    """每次工具调用附带的上下文：调用方日志与进度回调。"""

    log: logging.Logger = field(default_factory=lambda: logger)
    report_progress: Optional[ProgressReporter] = None


def _parse_args(model: Type[ArgsT], args: Union[ArgsT, Mapping[str, Any], None]) -> ArgsT:
    if isinstance(args, model):
        return args
    try:
        return model.model_validate(dict(args or {}))
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid arguments: {details}")
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid arguments: {e}")


def filter_conversations(items: List[ConversationMetadata], flt: Optional[ListFilter]) -> List[ConversationMetadata]:
    """按标签（任意一个命中即可）与创建时间开区间过滤。"""

    if flt is None:
        return items
    if flt.tags:
        wanted = set(flt.tags)
        items = [c for c in items if wanted.intersection(c.tags)]
    if flt.created_after is not None:
        items = [c for c in items if c.created_at > flt.created_after]
    if flt.created_before is not None:
        items = [c for c in items if c.created_at < flt.created_before]
    return items


class ChatAdapterService:
    def __init__(
        self,
        manager: ConversationManager,
        orchestrator: CompletionOrchestrator,
        settings=None,
    ):
        self._manager = manager
        self._orchestrator = orchestrator
        self._settings = settings or default_settings

    @classmethod
    def from_settings(cls, settings=None, provider: Optional[ProviderClient] = None) -> "ChatAdapterService":
        settings = settings or default_settings
        store = JsonConversationStore(root=settings.conversation_dir)
        manager = ConversationManager(store=store, settings=settings)
        provider = provider or create_provider(settings=settings)
        orchestrator = CompletionOrchestrator(manager=manager, provider=provider, settings=settings)
        return cls(manager=manager, orchestrator=orchestrator, settings=settings)

    @property
    def manager(self) -> ConversationManager:
        return self._manager

    @property
    def orchestrator(self) -> CompletionOrchestrator:
        return self._orchestrator

    async def create_conversation(
        self,
        args: Union[CreateConversationRequest, Mapping[str, Any], None] = None,
        ctx: Optional[ToolContext] = None,
    ) -> str:
        """创建新会话，返回 "Conversation created: <id>"。"""

        ctx = ctx or ToolContext()
        try:
            req = _parse_args(CreateConversationRequest, args)
            system_prompt = req.system_prompt
            if system_prompt is None:
                system_prompt = self._settings.default_system_prompt
            conv = await self._manager.create(
                CreateConversationArgs(
                    model=req.model,
                    system_prompt=system_prompt,
                    parameters=req.parameters.to_sampling(),
                    metadata=req.metadata.to_dict(),
                )
            )
        except Exception as e:
            raise handle_tool_error(ctx.log, "CreateConversation", e, "Failed to create conversation")
        return f"Conversation created: {conv.id}"

    async def chat(
        self,
        args: Union[ChatArgs, Mapping[str, Any]],
        ctx: Optional[ToolContext] = None,
    ) -> str:
        """向会话追加一条用户消息并返回助手回复全文。

        进度通过 ctx.report_progress 以 {"progress": n, "total": 100} 形式上报。
        """

        ctx = ctx or ToolContext()
        try:
            req = _parse_args(ChatArgs, args)
            return await self._orchestrator.chat(
                req.conversation_id,
                req.message,
                overrides=req.parameters.to_sampling(),
                report_progress=ctx.report_progress,
                log=ctx.log,
            )
        except Exception as e:
            raise handle_tool_error(ctx.log, "Chat", e, "Failed to process chat request")

    async def list_conversations(
        self,
        args: Union[ListConversationsArgs, Mapping[str, Any], None] = None,
        ctx: Optional[ToolContext] = None,
    ) -> List[ConversationMetadata]:
        """列出会话元数据：先过滤，再按 offset/limit 分页（按最近更新倒序）。"""

        ctx = ctx or ToolContext()
        try:
            req = _parse_args(ListConversationsArgs, args)
            items = filter_conversations(await self._manager.list(), req.filter)
        except Exception as e:
            raise handle_tool_error(ctx.log, "ListConversations", e, "Failed to list conversations")
        offset = req.offset or 0
        limit = req.limit if req.limit is not None else len(items)
        return items[offset:offset + limit]

    async def get_conversation(
        self,
        args: Union[ConversationIdArgs, Mapping[str, Any]],
        ctx: Optional[ToolContext] = None,
    ) -> Conversation:
        ctx = ctx or ToolContext()
        try:
            req = _parse_args(ConversationIdArgs, args)
            # 返回副本，调用方修改不会影响缓存
            return (await self._manager.get(req.conversation_id)).copy()
        except Exception as e:
            raise handle_tool_error(ctx.log, "GetConversation", e, "Failed to get conversation")

    async def delete_conversation(
        self,
        args: Union[ConversationIdArgs, Mapping[str, Any]],
        ctx: Optional[ToolContext] = None,
    ) -> str:
        """删除会话，返回 "Conversation deleted: <id>"。"""

        ctx = ctx or ToolContext()
        try:
            req = _parse_args(ConversationIdArgs, args)
            # 不存在的会话直接报 NotFoundError
            await self._manager.get(req.conversation_id)
            if not await self._manager.delete(req.conversation_id):
                raise StorageError(f"Failed to delete conversation: {req.conversation_id}", code="STORE_DELETE_ERROR")
        except Exception as e:
            raise handle_tool_error(ctx.log, "DeleteConversation", e, "Failed to delete conversation")
        return f"Conversation deleted: {req.conversation_id}"


_service: Optional[ChatAdapterService] = None


def get_default_service() -> ChatAdapterService:
    """获取基于全局配置的服务实例（单例）。"""
    global _service
    if _service is None:
        _service = ChatAdapterService.from_settings(default_settings)
    return _service
