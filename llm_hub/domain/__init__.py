"""领域层模型与协议。

包含：
- models: Turn / StreamEvent / ModelParams / ClientConfig 等统一模型。
- conversation: 只追加的会话记忆 ConversationMemory。
- exceptions: 业务异常类型定义。
"""
