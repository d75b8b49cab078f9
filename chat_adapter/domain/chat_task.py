"""单轮对话的瞬时任务状态（不持久化）。"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import uuid4

from .conversation import utcnow


class ChatTaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ChatTask:
    """一次流式调用的生命周期：pending -> processing -> complete | error。

    handle 是消费流的 asyncio.Task，即取消句柄。
    """

    conversation_id: str
    timeout_seconds: float
    task_id: str = field(default_factory=lambda: f"task-{uuid4().hex}")
    status: ChatTaskStatus = ChatTaskStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    progress: int = 0
    handle: Optional[asyncio.Task] = None
    cancel_requested: bool = False

    @property
    def timeout_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.timeout_seconds)

    @property
    def done(self) -> bool:
        return self.status in (ChatTaskStatus.COMPLETE, ChatTaskStatus.ERROR)

    def mark_processing(self) -> None:
        self.status = ChatTaskStatus.PROCESSING

    def mark_complete(self, result: str) -> None:
        self.status = ChatTaskStatus.COMPLETE
        self.result = result

    def mark_error(self, error: str) -> None:
        self.status = ChatTaskStatus.ERROR
        self.error = error

    def cancel(self) -> bool:
        """请求取消；返回是否真的取消了一个仍在运行的流。"""

        if self.done:
            return False
        self.cancel_requested = True
        if self.handle is not None and not self.handle.done():
            return self.handle.cancel()
        return False
