import asyncio
from typing import List, Optional

import pytest

from chat_adapter.domain.models import ChatRequest, ChatStreamChunk
from chat_adapter.engine.manager import ConversationManager
from chat_adapter.engine.orchestrator import CompletionOrchestrator
from chat_adapter.infrastructure.storage.json_store import JsonConversationStore


class SettingsStub:
    openai_api_key = "sk-test-key-123456"
    openai_base_url = "https://api.example.test/v1"
    default_model = "default-model"
    default_system_prompt = "You are a helpful assistant."
    default_temperature = 0.7
    default_max_tokens = 1000
    default_top_p = 1.0
    default_frequency_penalty = 0.0
    default_presence_penalty = 0.0
    chat_timeout = 5.0
    max_retries = 3
    http_timeout = 1.0
    max_conversations = 1000


class StubProvider:
    """按给定片段产出增量的假 Provider，可选在某个位置抛错或挂起。"""

    name = "stub"

    def __init__(
        self,
        fragments: List[str],
        fail_after: Optional[int] = None,
        error: Optional[BaseException] = None,
        hang_after: Optional[int] = None,
    ):
        self.fragments = fragments
        self.fail_after = fail_after
        self.error = error
        self.hang_after = hang_after
        self.requests: List[ChatRequest] = []
        self.started = asyncio.Event()

    async def chat_stream(self, req: ChatRequest):
        self.requests.append(req)
        for i, text in enumerate(self.fragments):
            if self.fail_after is not None and i == self.fail_after:
                raise self.error
            if self.hang_after is not None and i == self.hang_after:
                self.started.set()
                await asyncio.Event().wait()
            yield ChatStreamChunk(content=text)
        self.started.set()


@pytest.fixture
def settings_stub():
    return SettingsStub()


@pytest.fixture
def store(tmp_path):
    return JsonConversationStore(root=tmp_path / "convos")


@pytest.fixture
def manager(store, settings_stub):
    return ConversationManager(store=store, settings=settings_stub)


def make_orchestrator(manager, provider, settings=None):
    return CompletionOrchestrator(manager=manager, provider=provider, settings=settings or SettingsStub())
