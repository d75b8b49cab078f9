"""进程内会话缓存。

缓存只是加速器，不是权威数据源：进程重启后为空，首次访问时从磁盘重新加载。
同时维护按会话 ID 划分的 asyncio.Lock，用于串行化 load -> append -> persist。
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

from chat_adapter.domain.conversation import Conversation


class ConversationCache:
    def __init__(self) -> None:
        self._items: Dict[str, Conversation] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._items.get(conversation_id)

    def put(self, conversation: Conversation) -> None:
        self._items[conversation.id] = conversation

    def evict(self, conversation_id: str) -> bool:
        return self._items.pop(conversation_id, None) is not None

    def lock_for(self, conversation_id: str) -> asyncio.Lock:
        """同一会话 ID 在锁被丢弃前始终返回同一把锁。"""

        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    def discard_lock(self, conversation_id: str) -> None:
        """锁空闲时丢弃，已删除会话的锁不再常驻内存。"""

        lock = self._locks.get(conversation_id)
        if lock is not None and not lock.locked():
            del self._locks[conversation_id]

    def clear(self) -> None:
        self._items.clear()

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._items

    def __len__(self) -> int:
        return len(self._items)
