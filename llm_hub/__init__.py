"""llm_hub 顶层包。

统一的大模型 API 客户端：多 Provider 适配、流式解析与背压、
按 Provider 限流、错误归一化与会话记忆。
"""

from llm_hub.client import LlmClient, TurnStream
from llm_hub.domain.conversation import ConversationMemory, MemoryLimits
from llm_hub.domain.models import ClientConfig, ModelParams, RateLimitConfig, Turn

__all__ = [
    "ClientConfig",
    "ConversationMemory",
    "LlmClient",
    "MemoryLimits",
    "ModelParams",
    "RateLimitConfig",
    "Turn",
    "TurnStream",
]
