"""Provider 抽象接口。

上层 LlmClient 不直接依赖具体厂商的 API 格式，而是依赖此协议：

- 每个 wire 格式族实现一个 ProviderAdapter（如 OpenAICompatAdapter）。
- build_request: 将会话历史 + 模型参数转成 Provider 专属的 WireRequest。
- parse_chunk: 把原始网络 chunk 解析为归一化的 StreamEvent 列表，
  内部缓存不完整的帧，只输出完整事件。
- finish: 输入结束时调用，输出剩余事件（Done 或 ErrorEvent）。

Adapter 不做任何网络 I/O，除解析缓冲外没有状态；每个活跃流使用独立实例。
"""

from typing import Any, Dict, List, Protocol, Sequence

from llm_hub.domain.exceptions import ConfigurationError, ProtocolViolation, UnsupportedFeature
from llm_hub.domain.models import ClientConfig, ModelParams, StreamEvent, Turn, WireRequest, is_terminal
from llm_hub.providers.registry import ProviderSpec


class ProviderAdapter(Protocol):
    name: str

    def build_request(self, history: Sequence[Turn], params: ModelParams, stream: bool = True) -> WireRequest:
        ...

    def parse_chunk(self, raw: bytes) -> List[StreamEvent]:
        ...

    def finish(self) -> List[StreamEvent]:
        """输入流结束（EOF）时调用。"""

        ...


class TerminalGuard:
    """保证每个流恰好输出一个终止事件（Done 或 ErrorEvent），之后不再输出任何事件。"""

    def __init__(self):
        self.terminated = False

    def admit(self, events: List[StreamEvent]) -> List[StreamEvent]:
        if self.terminated:
            return []
        admitted: List[StreamEvent] = []
        for event in events:
            admitted.append(event)
            if is_terminal(event):
                self.terminated = True
                break
        return admitted


def require_credential(config: ClientConfig, spec: ProviderSpec) -> None:
    if spec.requires_api_key and not config.auth_credential:
        raise ConfigurationError(
            code="MISSING_API_KEY",
            message=f"{spec.env_prefix}_API_KEY not set",
            provider=spec.kind.value,
        )


def ensure_tools_supported(spec: ProviderSpec, params: ModelParams) -> None:
    if params.tools and not spec.supports_tools:
        raise UnsupportedFeature(
            code="TOOLS_UNSUPPORTED",
            message=f"provider {spec.kind.value} does not support tool calls",
            provider=spec.kind.value,
        )


def malformed(message: str) -> ProtocolViolation:
    return ProtocolViolation(code="MALFORMED_FRAME", message=message)


def get_typed(obj: Dict[str, Any], key: str, kind: type, default: Any = None) -> Any:
    """读取 obj[key] 并校验类型。

    缺失或为 null 时返回 default；类型不符时抛出 ProtocolViolation，
    由 Adapter 转成 ErrorEvent，保证事件里的字段类型与声明一致。
    """

    value = obj.get(key)
    if value is None:
        return default
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise malformed(f"'{key}' must be {kind.__name__}, got {type(value).__name__}")
    return value


def token_count(obj: Dict[str, Any], key: str) -> int:
    """解析 usage 中的 token 数，兼容整数值的 float 与数字字符串。"""

    value = obj.get(key)
    if value is None:
        return 0
    if isinstance(value, bool):
        raise malformed(f"'{key}' is not a token count: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise malformed(f"'{key}' is not a token count: {value!r}")
