"""会话生命周期管理。

ConversationManager 是会话增删改查的唯一入口，负责在缓存与磁盘之间协调：

- 写操作一律先落盘，确认成功后才更新缓存；落盘失败时让缓存条目失效，
  下次访问从磁盘重新加载，避免缓存与磁盘长期不一致。
- 消息历史只能通过 append_message 追加，且在按会话 ID 的锁内完成
  load -> append -> persist，避免同一会话的并发轮次互相覆盖。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from chat_adapter.domain.conversation import Conversation, ConversationMetadata, ConversationStore, utcnow
from chat_adapter.domain.exceptions import BusinessError, CreateError, StorageError, ValidationError
from chat_adapter.domain.models import ChatMessage, SamplingParameters
from chat_adapter.infrastructure.cache import ConversationCache
from chat_adapter.infrastructure.logging.logger import logger as default_logger


@dataclass
class CreateConversationArgs:
    """创建会话所需的已校验参数。"""

    model: Optional[str] = None
    system_prompt: Optional[str] = None
    parameters: SamplingParameters = field(default_factory=SamplingParameters)
    metadata: Dict[str, Any] = field(default_factory=dict)


class ConversationManager:
    def __init__(
        self,
        store: ConversationStore,
        settings,
        cache: Optional[ConversationCache] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._store = store
        self._settings = settings
        self._cache = cache if cache is not None else ConversationCache()
        self._logger = logger or default_logger
        self._defaults = SamplingParameters.from_settings(settings)

    @property
    def cache(self) -> ConversationCache:
        return self._cache

    @property
    def defaults(self) -> SamplingParameters:
        return self._defaults

    async def create(self, args: CreateConversationArgs) -> Conversation:
        model = args.model or self._settings.default_model
        now = utcnow()
        # 会话级参数：逐字段取入参，否则取固定默认值
        parameters = SamplingParameters().resolve(args.parameters, self._defaults)
        messages: List[ChatMessage] = []
        if args.system_prompt:
            messages.append(ChatMessage(role="system", content=args.system_prompt))

        try:
            conversation_id = await self._store.allocate_next_id()
        except BusinessError as e:
            self._log(logging.ERROR, f"Error creating conversation: {e.message}")
            raise CreateError(f"Failed to create conversation: {e.message}")

        conv = Conversation(
            id=conversation_id,
            model=model,
            created_at=now,
            updated_at=now,
            parameters=parameters,
            messages=messages,
            metadata=dict(args.metadata or {}),
        )
        try:
            await self._store.write(conv)
        except BusinessError as e:
            self._log(logging.ERROR, f"Error creating conversation: {e.message}", conversation_id=conversation_id)
            await self._release(conversation_id)
            raise CreateError(f"Failed to create conversation: {e.message}", conversation_id=conversation_id)

        self._cache.put(conv)
        self._log(logging.DEBUG, f"Created new conversation: {conv.id}", conversation_id=conv.id, model=model)
        await self._check_capacity()
        return conv

    async def get(self, conversation_id: str) -> Conversation:
        cached = self._cache.get(conversation_id)
        if cached is not None:
            return cached
        try:
            conv = await self._store.read(conversation_id)
        except BusinessError as e:
            self._log(
                logging.ERROR,
                f"Error loading conversation {conversation_id}: {e.message}",
                conversation_id=conversation_id,
            )
            raise
        self._cache.put(conv)
        return conv

    async def update(self, conversation: Conversation) -> None:
        # updated_at 单调不减，即使系统时钟回拨
        now = utcnow()
        if now < conversation.updated_at:
            now = conversation.updated_at
        conversation.updated_at = now
        try:
            await self._store.write(conversation)
        except BusinessError as e:
            self._cache.evict(conversation.id)
            self._log(
                logging.ERROR,
                f"Error updating conversation {conversation.id}: {e.message}",
                conversation_id=conversation.id,
            )
            raise StorageError(f"Failed to update conversation: {e.message}", conversation_id=conversation.id)
        self._cache.put(conversation)
        self._log(logging.DEBUG, f"Updated conversation: {conversation.id}", conversation_id=conversation.id)

    async def append_message(self, conversation_id: str, role: str, content: str) -> Conversation:
        if role not in ("user", "assistant"):
            raise ValidationError(f"Cannot append message with role {role!r}")
        if not isinstance(content, str):
            raise ValidationError("Message content must be a string")

        async with self._cache.lock_for(conversation_id):
            current = await self.get(conversation_id)
            # 在副本上修改，落盘失败时缓存中的原对象保持不变
            updated = current.copy()
            updated.messages.append(ChatMessage(role=role, content=content))
            await self.update(updated)
            return updated

    async def list(self) -> List[ConversationMetadata]:
        try:
            return await self._store.list()
        except BusinessError as e:
            self._log(logging.ERROR, f"Error listing conversations: {e.message}")
            raise StorageError(f"Failed to list conversations: {e.message}")

    async def delete(self, conversation_id: str) -> bool:
        # 与 append_message 串行：删除完成后不会再有追加把文件写回
        async with self._cache.lock_for(conversation_id):
            self._cache.evict(conversation_id)
            try:
                deleted = await self._store.delete(conversation_id)
            except BusinessError as e:
                self._log(
                    logging.ERROR,
                    f"Error deleting conversation {conversation_id}: {e.message}",
                    conversation_id=conversation_id,
                )
                return False
        self._cache.discard_lock(conversation_id)
        if deleted:
            self._log(logging.DEBUG, f"Deleted conversation: {conversation_id}", conversation_id=conversation_id)
        return deleted

    async def _release(self, conversation_id: str) -> None:
        try:
            await self._store.release_id(conversation_id)
        except BusinessError as e:
            self._log(
                logging.WARNING,
                f"Failed to release conversation ID {conversation_id}: {e.message}",
                conversation_id=conversation_id,
            )

    async def _check_capacity(self) -> None:
        """会话数量上限只做告警，不拒绝创建、不淘汰旧会话。"""

        limit = getattr(self._settings, "max_conversations", None)
        if not limit:
            return
        try:
            total = await self._store.count()
        except BusinessError as e:
            self._log(logging.WARNING, f"Could not count conversations: {e.message}")
            return
        if total > limit:
            self._log(
                logging.WARNING,
                f"Conversation count {total} exceeds configured maximum {limit}",
                total=total,
                max_conversations=limit,
            )

    def _log(self, level: int, message: str, **extra: Any) -> None:
        self._logger.log(level, message, extra={"extra": extra})
