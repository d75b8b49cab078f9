"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / SamplingParameters / ChatRequest 模型。
- conversation: 会话存储模型及 ConversationStore 抽象。
- chat_task: 单轮对话的瞬时任务状态。
- exceptions: 业务异常类型定义。
"""
