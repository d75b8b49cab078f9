"""会话编排层：ConversationManager 与 CompletionOrchestrator。"""

from chat_adapter.engine.manager import ConversationManager, CreateConversationArgs
from chat_adapter.engine.orchestrator import CompletionOrchestrator

__all__ = ["ConversationManager", "CreateConversationArgs", "CompletionOrchestrator"]
