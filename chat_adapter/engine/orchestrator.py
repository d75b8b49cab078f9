"""单轮对话编排。

每个 chat turn 恰好发起一次流式补全调用，顺序严格为：

1. 追加并持久化用户消息（失败则整轮失败，不会调用远端）。
2. 以完整历史发起流式调用，累积增量并上报进度。
3. 流结束后一次性追加并持久化助手消息。

超时或取消时丢弃已收到的全部增量，助手消息要么完整写入，要么完全不写。
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from contextlib import aclosing
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from chat_adapter.domain.chat_task import ChatTask
from chat_adapter.domain.exceptions import BusinessError, ChatCancelledError, ChatTimeoutError
from chat_adapter.domain.models import ChatRequest, ChatUsage, SamplingParameters
from chat_adapter.engine.manager import ConversationManager
from chat_adapter.infrastructure.logging.logger import logger as default_logger
from chat_adapter.providers.base import ProviderClient

ProgressReporter = Callable[[Dict[str, int]], Union[Awaitable[None], None]]

PROGRESS_TOTAL = 100
STREAM_PROGRESS_START = 30
STREAM_PROGRESS_END = 80
# 低于该值时每个 chunk 都上报，之后每 5 个刻度上报一次
DENSE_PROGRESS_LIMIT = 40
SPARSE_PROGRESS_STEP = 5


class CompletionOrchestrator:
    def __init__(
        self,
        manager: ConversationManager,
        provider: ProviderClient,
        settings,
        logger: Optional[logging.Logger] = None,
    ):
        self._manager = manager
        self._provider = provider
        self._settings = settings
        self._logger = logger or default_logger
        self._tasks: Dict[str, ChatTask] = {}

    @property
    def active_tasks(self) -> List[ChatTask]:
        return list(self._tasks.values())

    def cancel(self, conversation_id: str) -> int:
        """取消某会话上所有进行中的轮次，返回被取消的数量。

        已经持久化的用户消息不会回滚。
        """

        cancelled = 0
        for task in list(self._tasks.values()):
            if task.conversation_id == conversation_id and not task.done:
                task.cancel()
                cancelled += 1
        return cancelled

    async def chat(
        self,
        conversation_id: str,
        message: str,
        overrides: Optional[SamplingParameters] = None,
        report_progress: Optional[ProgressReporter] = None,
        log: Optional[logging.Logger] = None,
    ) -> str:
        log = log or self._logger
        task = ChatTask(conversation_id=conversation_id, timeout_seconds=self._settings.chat_timeout)
        deadline = time.monotonic() + task.timeout_seconds
        self._tasks[task.task_id] = task
        log_ctx: Dict[str, Any] = {"conversation_id": conversation_id, "task_id": task.task_id}
        try:
            await self._report(task, 0, report_progress)

            conv = await self._manager.append_message(conversation_id, "user", message)
            if task.cancel_requested:
                raise ChatCancelledError()
            task.mark_processing()

            params = conv.parameters.resolve(overrides, self._manager.defaults)
            req = ChatRequest(model=conv.model, messages=list(conv.messages), parameters=params)
            log.info(f"Starting chat request for conversation {conversation_id}", extra={"extra": {
                **log_ctx,
                "model": conv.model,
                "message_count": len(req.messages),
            }})

            task.handle = asyncio.ensure_future(self._consume(req, task, report_progress, log_ctx, log))
            try:
                text = await asyncio.wait_for(task.handle, timeout=max(deadline - time.monotonic(), 0))
            except asyncio.TimeoutError:
                raise ChatTimeoutError(
                    f"Chat completion timed out after {task.timeout_seconds:g}s",
                    conversation_id=conversation_id,
                )
            except asyncio.CancelledError:
                if task.cancel_requested:
                    raise ChatCancelledError(conversation_id=conversation_id)
                raise

            await self._report(task, STREAM_PROGRESS_END, report_progress)
            await self._manager.append_message(conversation_id, "assistant", text)
            task.mark_complete(text)
            await self._report(task, PROGRESS_TOTAL, report_progress)
            log.info("Completed chat request", extra={"extra": {**log_ctx, "response_chars": len(text)}})
            return text
        except BusinessError as e:
            task.mark_error(e.message)
            log.error(f"Chat request failed: {e.message}", extra={"extra": {**log_ctx, "code": e.code}})
            raise
        except asyncio.CancelledError:
            task.mark_error("cancelled")
            raise
        except Exception as e:
            task.mark_error(str(e))
            log.error(f"Chat request failed: {e}", extra={"extra": log_ctx})
            raise
        finally:
            if task.handle is not None and not task.handle.done():
                task.handle.cancel()
            self._tasks.pop(task.task_id, None)

    async def _consume(
        self,
        req: ChatRequest,
        task: ChatTask,
        report_progress: Optional[ProgressReporter],
        log_ctx: Dict[str, Any],
        log: logging.Logger,
    ) -> str:
        parts: List[str] = []
        usage: Optional[ChatUsage] = None
        counter = STREAM_PROGRESS_START
        async with aclosing(self._provider.chat_stream(req)) as stream:
            async for chunk in stream:
                parts.append(chunk.content)
                if chunk.usage is not None:
                    usage = chunk.usage
                if counter < STREAM_PROGRESS_END:
                    counter += 1
                    if counter < DENSE_PROGRESS_LIMIT or counter % SPARSE_PROGRESS_STEP == 0:
                        await self._report(task, counter, report_progress)
        if usage is not None:
            log.debug("Stream usage", extra={"extra": {
                **log_ctx,
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens,
            }})
        return "".join(parts)

    @staticmethod
    async def _report(task: ChatTask, progress: int, report_progress: Optional[ProgressReporter]) -> None:
        task.progress = progress
        if report_progress is None:
            return
        result = report_progress({"progress": progress, "total": PROGRESS_TOTAL})
        if inspect.isawaitable(result):
            await result
