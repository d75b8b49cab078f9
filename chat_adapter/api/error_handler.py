"""工具层统一错误处理。"""

import asyncio
import logging

from chat_adapter.domain.exceptions import BusinessError, ChatTimeoutError, StorageError


def handle_tool_error(log: logging.Logger, context: str, error: Exception, custom_message: str = "Error") -> BusinessError:
    """把任意异常整理成对外暴露的业务异常并返回，由调用方 raise。

    - 业务异常原样透传（NotFoundError / ChatTimeoutError 等）。
    - asyncio 的超时统一转换为 ChatTimeoutError（取消不经过这里，照常向上传播）。
    - 其他异常包装为 StorageError，并带上上下文信息。
    """

    message = getattr(error, "message", None) or str(error) or type(error).__name__
    log.error(f"{custom_message}: {message}", extra={"extra": {"context": context}})

    if isinstance(error, BusinessError):
        return error
    if isinstance(error, asyncio.TimeoutError):
        log.error("Request timed out", extra={"extra": {"context": context}})
        return ChatTimeoutError()
    return StorageError(f"{custom_message} in {context}: {message}", code="INTERNAL_ERROR", context=context)
