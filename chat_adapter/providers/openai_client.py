"""OpenAI 兼容 Provider 适配器。

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 OpenAI Chat Completions 流式请求（stream=true）。
3. 建连阶段的有限次重试，以及网络/API 异常的统一包装。
4. 将 SSE 的每一行 `data: {...}` 解析为 ChatStreamChunk。

重试只发生在拿到任何内容之前；一旦开始产出增量，就不会重新发起请求，
避免出现重复的半截回答。
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict

import httpx

from chat_adapter.domain.models import ChatRequest, ChatStreamChunk, ChatUsage
from chat_adapter.domain.exceptions import (
    ApiError,
    ChatTimeoutError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from chat_adapter.infrastructure.logging.logger import logger

# 建连阶段可重试的状态码
RETRYABLE_STATUS = frozenset({429, 502, 503, 504})


class OpenAIClient:
    """OpenAI 兼容接口的流式客户端。"""

    name = "openai"

    def __init__(self, settings, backoff_base: float = 0.5):
        # Settings 里包含 base_url、api_key、超时、重试次数等配置
        self._settings = settings
        self._backoff_base = backoff_base

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        """执行一次流式对话调用，逐步 yield ChatStreamChunk。"""

        api_key = getattr(self._settings, "openai_api_key", None)
        if not api_key:
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError("OPENAI_API_KEY not set", code="MISSING_API_KEY")
        payload = self._build_payload(req)
        base = (getattr(self._settings, "openai_base_url", None) or "https://api.openai.com/v1").rstrip("/")
        max_retries = int(getattr(self._settings, "max_retries", 3))
        timeout = httpx.Timeout(
            self._settings.chat_timeout,
            connect=self._settings.http_timeout,
        )
        received = False

        async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
            for attempt in range(max_retries + 1):
                try:
                    async with client.stream(
                        "POST",
                        f"{base}/chat/completions",
                        json=payload,
                        headers={
                            "Authorization": f"Bearer {api_key}",
                            "Content-Type": "application/json",
                        },
                    ) as resp:
                        if resp.status_code in RETRYABLE_STATUS and attempt < max_retries:
                            await resp.aread()
                            await self._backoff(attempt, f"HTTP {resp.status_code}")
                            continue
                        if resp.status_code == 429:
                            raise RateLimitError("OpenAI rate limit")
                        if resp.status_code >= 400:
                            body = (await resp.aread()).decode("utf-8", errors="replace")
                            raise ApiError(body or f"HTTP {resp.status_code}", http_status=resp.status_code)
                        async for line in resp.aiter_lines():
                            chunk = self._parse_line(line)
                            if chunk is None:
                                continue
                            received = True
                            yield chunk
                        return
                except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                    if received or attempt >= max_retries:
                        raise NetworkError(str(e) or type(e).__name__)
                    await self._backoff(attempt, type(e).__name__)
                except httpx.TimeoutException as e:
                    raise ChatTimeoutError(f"OpenAI API request timed out: {type(e).__name__}")
                except httpx.RequestError as e:
                    # 连接中断等：已经开始流式输出时不再重试
                    raise NetworkError(str(e) or type(e).__name__)

    async def _backoff(self, attempt: int, reason: str) -> None:
        delay = self._backoff_base * (2 ** attempt)
        logger.warning(
            f"Retrying chat completion connection: {reason}",
            extra={"extra": {"attempt": attempt + 1, "delay": delay}},
        )
        await asyncio.sleep(delay)

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        """将 ChatRequest 转成 OpenAI 所需的请求 JSON。"""

        params = req.parameters
        return {
            "model": req.model,
            "messages": [m.to_dict() for m in req.messages],
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
            "top_p": params.top_p,
            "frequency_penalty": params.frequency_penalty,
            "presence_penalty": params.presence_penalty,
            "stream": True,
        }

    def _parse_line(self, line: str) -> ChatStreamChunk | None:
        """解析 SSE 中的一行；空行、注释、[DONE] 与无法解析的行返回 None。"""

        if not line:
            return None
        data_str = line
        if data_str.startswith("data:"):
            data_str = data_str[5:].strip()
        else:
            data_str = data_str.strip()
        if not data_str or data_str == "[DONE]" or data_str.startswith(":"):
            return None
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        if data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise ApiError(message or "stream error")
        return self._parse_stream_chunk(data)

    @staticmethod
    def _parse_stream_chunk(data: Dict[str, Any]) -> ChatStreamChunk:
        choices = data.get("choices") or []
        first = choices[0] if choices else {}
        delta = first.get("delta") or {}
        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatStreamChunk(
            content=delta.get("content") or "",
            finish_reason=first.get("finish_reason"),
            usage=usage,
            raw=data,
        )
