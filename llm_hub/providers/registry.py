"""Provider 与模型配置。

本模块集中维护所有受支持的 Provider（封闭集合 ProviderKind）：

- 默认 base_url、环境变量前缀、认证方式对应的 wire 格式。
- 各 Provider 支持的 API 类型（ApiType）及自定义路径。
- 逻辑模型名与厂商模型名的映射：代码里使用统一的逻辑名（如 "chat"），
  具体用哪个底层模型由这里集中配置，便于后续升级或切换。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional

from llm_hub.domain.exceptions import UnsupportedFeature


class ProviderKind(str, Enum):
    SILICONFLOW = "siliconflow"
    DEEPSEEK = "deepseek"
    QIANFAN = "qianfan"
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    ZHIPUAI = "zhipuai"
    ALIBAILIAN = "alibailian"
    XAI = "xai"
    VOLCENGINE = "volcengine"
    TENCENT = "tencent"
    GOOGLE = "google"
    MOONSHOT = "moonshot"
    OLLAMA = "ollama"

    @classmethod
    def parse(cls, name: "str | ProviderKind") -> "ProviderKind":
        """根据名称解析 ProviderKind，不区分大小写；兼容 "glm"/"kimi" 等别名。"""

        if isinstance(name, ProviderKind):
            return name
        key = _ALIASES.get(name.strip().lower(), name.strip().lower())
        try:
            return cls(key)
        except ValueError:
            raise KeyError(f"Unknown provider: {name!r}") from None


_ALIASES = {
    "glm": "zhipuai",
    "bigmodel": "zhipuai",
    "kimi": "moonshot",
    "bailian": "alibailian",
    "dashscope": "alibailian",
    "gemini": "google",
    "claude": "anthropic",
}


class WireFormat(str, Enum):
    """Provider 的请求/流式响应格式族，决定使用哪个 adapter。"""

    OPENAI_COMPAT = "openai_compat"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"


class ApiType(str, Enum):
    CHAT = "chat"
    IMAGE_GENERATION = "image_generation"
    IMAGE_EDIT = "image_edit"
    EMBEDDING = "embedding"
    AUDIO_SPEECH = "audio_speech"
    AUDIO_TRANSCRIPTION = "audio_transcription"
    AUDIO_TRANSLATION = "audio_translation"
    LIST_MODELS = "list_models"

    @property
    def default_path(self) -> str:
        return _DEFAULT_PATHS[self]


_DEFAULT_PATHS = {
    ApiType.CHAT: "/chat/completions",
    ApiType.IMAGE_GENERATION: "/images/generations",
    ApiType.IMAGE_EDIT: "/images/edits",
    ApiType.EMBEDDING: "/embeddings",
    ApiType.AUDIO_SPEECH: "/audio/speech",
    ApiType.AUDIO_TRANSCRIPTION: "/audio/transcriptions",
    ApiType.AUDIO_TRANSLATION: "/audio/translations",
    ApiType.LIST_MODELS: "/models",
}


@dataclass(frozen=True)
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    max_tokens: int
    default_temperature: float


@dataclass(frozen=True)
class ProviderSpec:
    """某个 Provider 的整体配置。"""

    kind: ProviderKind
    base_url: str
    wire_format: WireFormat
    env_prefix: str
    supported_types: FrozenSet[ApiType] = frozenset({ApiType.CHAT})
    custom_paths: Mapping[ApiType, str] = field(default_factory=dict)
    supports_tools: bool = True
    requires_api_key: bool = True
    models: Mapping[str, ModelConfig] = field(default_factory=dict)

    def resolve_model(self, name: str) -> ModelConfig:
        """逻辑名映射为 ModelConfig；未登记的名称视为厂商模型 ID 直接透传。"""

        cfg = self.models.get(name)
        if cfg is not None:
            return cfg
        default = self.models.get("chat")
        return ModelConfig(
            logical_name=name,
            provider_model=name,
            max_tokens=default.max_tokens if default else 4096,
            default_temperature=default.default_temperature if default else 0.7,
        )


def _chat_model(provider_model: str, max_tokens: int = 8192, temperature: float = 0.7) -> Dict[str, ModelConfig]:
    return {
        "chat": ModelConfig(
            logical_name="chat",
            provider_model=provider_model,
            max_tokens=max_tokens,
            default_temperature=temperature,
        )
    }


_ALL_OPENAI_TYPES = frozenset(ApiType)

PROVIDER_REGISTRY: Mapping[ProviderKind, ProviderSpec] = {
    ProviderKind.SILICONFLOW: ProviderSpec(
        kind=ProviderKind.SILICONFLOW,
        base_url="https://api.siliconflow.cn/v1",
        wire_format=WireFormat.OPENAI_COMPAT,
        env_prefix="SILICONFLOW",
        supported_types=frozenset(
            {
                ApiType.CHAT,
                ApiType.IMAGE_GENERATION,
                ApiType.EMBEDDING,
                ApiType.AUDIO_SPEECH,
                ApiType.AUDIO_TRANSCRIPTION,
            }
        ),
        models=_chat_model("deepseek-ai/DeepSeek-V3"),
    ),
    ProviderKind.DEEPSEEK: ProviderSpec(
        kind=ProviderKind.DEEPSEEK,
        base_url="https://api.deepseek.com",
        wire_format=WireFormat.OPENAI_COMPAT,
        env_prefix="DEEPSEEK",
        models={
            **_chat_model("deepseek-chat"),
            "reasoner": ModelConfig(
                logical_name="reasoner",
                provider_model="deepseek-reasoner",
                max_tokens=8192,
                default_temperature=1.0,
            ),
        },
    ),
    ProviderKind.QIANFAN: ProviderSpec(
        kind=ProviderKind.QIANFAN,
        base_url="https://qianfan.baidubce.com/v2",
        wire_format=WireFormat.OPENAI_COMPAT,
        env_prefix="QIANFAN",
        models=_chat_model("ernie-4.0-8k"),
    ),
    ProviderKind.ANTHROPIC: ProviderSpec(
        kind=ProviderKind.ANTHROPIC,
        base_url="https://api.anthropic.com/v1",
        wire_format=WireFormat.ANTHROPIC,
        env_prefix="ANTHROPIC",
        custom_paths={ApiType.CHAT: "/messages"},
        models=_chat_model("claude-3-7-sonnet-latest", max_tokens=4096, temperature=1.0),
    ),
    ProviderKind.OPENAI: ProviderSpec(
        kind=ProviderKind.OPENAI,
        base_url="https://api.openai.com/v1",
        wire_format=WireFormat.OPENAI_COMPAT,
        env_prefix="OPENAI",
        supported_types=_ALL_OPENAI_TYPES,
        models=_chat_model("gpt-4o"),
    ),
    ProviderKind.ZHIPUAI: ProviderSpec(
        kind=ProviderKind.ZHIPUAI,
        base_url="https://open.bigmodel.cn/api/paas/v4",
        wire_format=WireFormat.OPENAI_COMPAT,
        env_prefix="ZHIPUAI",
        models=_chat_model("glm-4-plus"),
    ),
    ProviderKind.ALIBAILIAN: ProviderSpec(
        kind=ProviderKind.ALIBAILIAN,
        base_url="https://dashscope.aliyuncs.com/compatible-mode/v1",
        wire_format=WireFormat.OPENAI_COMPAT,
        env_prefix="ALIBAILIAN",
        models=_chat_model("qwen-plus"),
    ),
    ProviderKind.XAI: ProviderSpec(
        kind=ProviderKind.XAI,
        base_url="https://api.x.ai/v1",
        wire_format=WireFormat.OPENAI_COMPAT,
        env_prefix="XAI",
        models=_chat_model("grok-2-latest"),
    ),
    ProviderKind.VOLCENGINE: ProviderSpec(
        kind=ProviderKind.VOLCENGINE,
        base_url="https://ark.cn-beijing.volces.com/api/v3",
        wire_format=WireFormat.OPENAI_COMPAT,
        env_prefix="VOLCENGINE",
        models=_chat_model("doubao-1-5-pro-32k-250115"),
    ),
    ProviderKind.TENCENT: ProviderSpec(
        kind=ProviderKind.TENCENT,
        base_url="https://api.lkeap.cloud.tencent.com/v1",
        wire_format=WireFormat.OPENAI_COMPAT,
        env_prefix="TENCENT",
        supports_tools=False,
        models=_chat_model("deepseek-v3"),
    ),
    ProviderKind.GOOGLE: ProviderSpec(
        kind=ProviderKind.GOOGLE,
        base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        wire_format=WireFormat.OPENAI_COMPAT,
        env_prefix="GOOGLE",
        models=_chat_model("gemini-2.0-flash"),
    ),
    ProviderKind.MOONSHOT: ProviderSpec(
        kind=ProviderKind.MOONSHOT,
        base_url="https://api.moonshot.cn/v1",
        wire_format=WireFormat.OPENAI_COMPAT,
        env_prefix="KIMI",
        models=_chat_model("kimi-k2-turbo-preview"),
    ),
    ProviderKind.OLLAMA: ProviderSpec(
        kind=ProviderKind.OLLAMA,
        base_url="http://localhost:11434",
        wire_format=WireFormat.OLLAMA,
        env_prefix="OLLAMA",
        supported_types=frozenset({ApiType.CHAT, ApiType.LIST_MODELS}),
        custom_paths={ApiType.CHAT: "/api/chat", ApiType.LIST_MODELS: "/api/tags"},
        supports_tools=False,
        requires_api_key=False,
        models=_chat_model("llama3.2", max_tokens=2048, temperature=0.2),
    ),
}


def get_provider_spec(name: "str | ProviderKind") -> ProviderSpec:
    """根据名称获取 ProviderSpec，名称不区分大小写。"""

    return PROVIDER_REGISTRY[ProviderKind.parse(name)]


def endpoint_url(spec: ProviderSpec, api_type: ApiType, base_url: Optional[str] = None) -> str:
    """拼接某个 API 类型的完整 URL，Provider 不支持时抛出 UnsupportedFeature。"""

    if api_type not in spec.supported_types:
        raise UnsupportedFeature(
            code="UNSUPPORTED_API_TYPE",
            message=f"API type '{api_type.value}' is not supported by provider {spec.kind.value}",
            provider=spec.kind.value,
        )
    path = spec.custom_paths.get(api_type) or api_type.default_path
    base = (base_url or spec.base_url).rstrip("/")
    return f"{base}{path}"
