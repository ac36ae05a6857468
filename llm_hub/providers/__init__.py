"""LLM Provider 集成层。

该包下的模块负责：
- 定义 ProviderAdapter 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 流式响应的分帧解析 (framing)。
- 各 wire 格式族的具体实现 (openai_compat、anthropic、ollama)。
"""

from llm_hub.domain.exceptions import ConfigurationError
from llm_hub.domain.models import ClientConfig
from llm_hub.providers.anthropic import AnthropicAdapter
from llm_hub.providers.base import ProviderAdapter
from llm_hub.providers.ollama import OllamaAdapter
from llm_hub.providers.openai_compat import OpenAICompatAdapter
from llm_hub.providers.registry import ProviderKind, WireFormat, get_provider_spec


def create_adapter(config: ClientConfig) -> ProviderAdapter:
    """根据配置中的 provider 创建一个新的 adapter 实例（每个流一个）。"""

    try:
        spec = get_provider_spec(config.provider)
    except KeyError as e:
        raise ConfigurationError(code="UNKNOWN_PROVIDER", message=str(e.args[0])) from e
    if spec.wire_format == WireFormat.ANTHROPIC:
        return AnthropicAdapter(config, spec)
    if spec.wire_format == WireFormat.OLLAMA:
        return OllamaAdapter(config, spec)
    return OpenAICompatAdapter(config, spec)


__all__ = ["ProviderAdapter", "ProviderKind", "create_adapter"]
