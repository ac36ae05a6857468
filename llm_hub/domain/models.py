"""统一的对话、流式事件与客户端配置数据模型。

本模块定义了 llm_hub 内部在不同 Provider 之间共享的标准数据结构：

- Turn: 对话中的一条消息（system/user/assistant/tool），由若干 segment 组成。
- StreamEvent: Provider 流式输出经过归一化后的事件（ContentDelta / Done 等）。
- ModelParams: 一次请求的模型参数（温度、max_tokens、工具等）。
- ClientConfig: 单个 Provider 的已解析配置，构造后只读。
- WireRequest: ProviderAdapter 产出的、可直接交给 Transport 的请求。

所有 Provider 适配器都只依赖这些模型，并负责在各自的 API JSON 与这些模型之间做转换。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, Union
from uuid import uuid4


# 消息角色（与 OpenAI / Deepseek 等厂商的 role 字段对应）
Role = Literal["system", "user", "assistant", "tool"]


def _new_turn_id() -> str:
    return f"t-{uuid4().hex}"


# ---- Turn 内容片段 ----


@dataclass(frozen=True)
class TextSegment:
    """普通文本内容。"""

    text: str


@dataclass(frozen=True)
class ReasoningSegment:
    """推理模型（如 deepseek-reasoner）输出的思维链内容，不会回传给 Provider。"""

    text: str


@dataclass(frozen=True)
class ToolCallSegment:
    """模型发起的一次工具调用，arguments 为原始 JSON 字符串。"""

    id: str
    name: str
    arguments: str = ""

    def parsed_arguments(self) -> Dict[str, Any]:
        if not self.arguments:
            return {}
        try:
            value = json.loads(self.arguments)
        except json.JSONDecodeError:
            return {"_raw": self.arguments}
        return value if isinstance(value, dict) else {"_value": value}


Segment = Union[TextSegment, ReasoningSegment, ToolCallSegment]


@dataclass(frozen=True)
class Turn:
    """对话中的一条消息。

    - role: 消息角色。
    - segments: 有序内容片段。
    - finished: 流式 assistant 消息在收到终止事件前为 False；
      未完成的 Turn 永远不会被写入 ConversationMemory。
    - provider_metadata: Provider 相关的附加信息（模型名、usage、finish_reason 等）。
    - tool_call_id: role 为 "tool" 时关联的工具调用 ID。
    - seq: 由 ConversationMemory 在 append 时分配的单调递增序号，未入库时为 None。
    """

    role: Role
    segments: Tuple[Segment, ...] = ()
    finished: bool = True
    provider_metadata: Mapping[str, Any] = field(default_factory=dict)
    tool_call_id: Optional[str] = None
    id: str = field(default_factory=_new_turn_id)
    seq: Optional[int] = None

    @classmethod
    def user(cls, text: str, **meta: Any) -> "Turn":
        return cls(role="user", segments=(TextSegment(text),), provider_metadata=meta)

    @classmethod
    def system(cls, text: str) -> "Turn":
        return cls(role="system", segments=(TextSegment(text),))

    @classmethod
    def assistant(cls, text: str, **meta: Any) -> "Turn":
        return cls(role="assistant", segments=(TextSegment(text),), provider_metadata=meta)

    @classmethod
    def tool(cls, text: str, tool_call_id: str) -> "Turn":
        return cls(role="tool", segments=(TextSegment(text),), tool_call_id=tool_call_id)

    @property
    def text(self) -> str:
        """拼接所有文本片段（不含推理内容）。"""

        return "".join(s.text for s in self.segments if isinstance(s, TextSegment))

    @property
    def reasoning(self) -> str:
        return "".join(s.text for s in self.segments if isinstance(s, ReasoningSegment))

    @property
    def tool_calls(self) -> List[ToolCallSegment]:
        return [s for s in self.segments if isinstance(s, ToolCallSegment)]

    def with_seq(self, seq: int) -> "Turn":
        return replace(self, seq=seq)


# ---- 归一化流式事件 ----


class ErrorKind(str, Enum):
    """错误分类，StreamEvent 与异常共用同一套取值。"""

    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    TRANSPORT_ERROR = "transport_error"
    PROTOCOL_VIOLATION = "protocol_violation"
    UNSUPPORTED_FEATURE = "unsupported_feature"
    CANCELLED = "cancelled"
    INVALID_STATE = "invalid_state"
    API_ERROR = "api_error"
    CONFIGURATION_ERROR = "configuration_error"


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    """工具调用增量：同一 index 的多个增量拼接成一次完整调用。"""

    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


@dataclass(frozen=True)
class Usage:
    tokens_in: int = 0
    tokens_out: int = 0

    @property
    def total(self) -> int:
        return self.tokens_in + self.tokens_out


@dataclass(frozen=True)
class ErrorEvent:
    """终止事件：流出错。之后不会再有任何事件。"""

    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class Done:
    """终止事件：流正常结束。"""

    finish_reason: Optional[str] = None


StreamEvent = Union[ContentDelta, ReasoningDelta, ToolCallDelta, Usage, ErrorEvent, Done]


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, (Done, ErrorEvent))


# ---- 请求参数 ----


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass
class ToolDef:
    """一个可供 LLM 调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam]

    def json_schema(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in self.params.items():
            schema = param.schema or {"type": "string"}
            if param.description:
                schema = {**schema, "description": param.description}
            properties[name] = schema
            if param.required:
                required.append(name)
        return {"type": "object", "properties": properties, "required": required}


@dataclass
class ModelParams:
    """一次请求的模型参数。

    model 为空时使用 ClientConfig.model；model 既可以是逻辑名（如 "chat"，
    由 registry 映射为真实模型名），也可以直接是厂商模型 ID。
    """

    model: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    stop: Optional[List[str]] = None
    seed: Optional[int] = None
    tools: Optional[List[ToolDef]] = None
    tool_choice: Literal["auto", "none", "required"] = "auto"
    response_format: Literal["text", "json_object"] = "text"
    reasoning_effort: Optional[str] = None
    # 透传给 Provider 的额外字段
    extra: Dict[str, Any] = field(default_factory=dict)


# ---- 配置 ----


@dataclass(frozen=True)
class RateLimitConfig:
    """Provider 限流配额。rate 为 None 表示不限制；burst 默认等于 max(1, rate)。"""

    requests_per_sec: Optional[float] = None
    tokens_per_sec: Optional[float] = None
    request_burst: Optional[float] = None
    token_burst: Optional[float] = None

    @property
    def request_capacity(self) -> Optional[float]:
        if self.requests_per_sec is None:
            return None
        return self.request_burst or max(1.0, self.requests_per_sec)

    @property
    def token_capacity(self) -> Optional[float]:
        if self.tokens_per_sec is None:
            return None
        return self.token_burst or max(1.0, self.tokens_per_sec)


@dataclass(frozen=True)
class ClientConfig:
    """单个 Provider 的已解析配置，由外部 loader 构造，之后只读共享。"""

    provider: str
    base_url: str
    auth_credential: Optional[str] = None
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    timeout: float = 30.0
    model: str = "chat"
    stream_buffer_size: int = 64
    max_retries: int = 3
    retry_backoff_base: float = 0.5
    retry_backoff_max: float = 8.0
    # 限流等待预算（秒），超过后抛出 RateLimitExceeded；None 表示一直等待
    rate_limit_wait_budget: Optional[float] = 30.0
    context_max_turns: Optional[int] = None
    context_max_tokens: Optional[int] = None
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    # 取消流时等待 producer 退出与连接关闭的上限（秒）
    close_timeout: float = 5.0

    def __post_init__(self):
        if self.stream_buffer_size < 1:
            raise ValueError("stream_buffer_size must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")


@dataclass(frozen=True)
class WireRequest:
    """Provider 专属的 HTTP 请求描述，由 Transport 负责真正发送。"""

    method: str
    url: str
    headers: Mapping[str, str]
    body: Mapping[str, Any]
    stream: bool = True
    timeout: Optional[float] = None

    def body_bytes(self) -> bytes:
        return json.dumps(self.body, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
