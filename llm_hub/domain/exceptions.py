"""统一业务异常模型。

所有跨模块抛出的错误都继承自 BusinessError，便于调用方统一捕获；
每个子类对应一个 ErrorKind，与流式 ErrorEvent 的 kind 一一对应。

- RateLimitExceeded: 限流等待预算耗尽，或 Provider 返回 429。
- TransportError: 连接失败、超时等网络层错误（非流式场景可有限重试）。
- ProtocolViolation: Provider 输出格式非法，流立即终止。
- UnsupportedFeature: 请求能力与 Provider 不匹配，在构造请求时抛出，不发起网络调用。
- Cancelled: 调用方主动取消或客户端关闭；调用方不应把它当作可重试的失败。
"""

from typing import Dict, Type

from llm_hub.domain.models import ErrorEvent, ErrorKind


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "RATE_LIMIT"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、retry_after 等）。
    """

    kind: ErrorKind = ErrorKind.API_ERROR
    retryable: bool = False

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    def to_event(self) -> ErrorEvent:
        return ErrorEvent(kind=self.kind, message=self.message)


class RateLimitExceeded(BusinessError):
    """限流错误：内部等待预算耗尽，或 Provider 返回 429。"""

    kind = ErrorKind.RATE_LIMIT_EXCEEDED


class TransportError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""

    kind = ErrorKind.TRANSPORT_ERROR
    retryable = True


class ProtocolViolation(BusinessError):
    """Provider 返回了无法解析的数据。"""

    kind = ErrorKind.PROTOCOL_VIOLATION


class UnsupportedFeature(BusinessError):
    """Provider 不支持请求中的能力（如工具调用）。"""

    kind = ErrorKind.UNSUPPORTED_FEATURE


class Cancelled(BusinessError):
    """调用被取消（调用方放弃或客户端关闭）。"""

    kind = ErrorKind.CANCELLED


class InvalidState(BusinessError):
    """状态不合法，例如向 ConversationMemory 写入未完成的 Turn。"""

    kind = ErrorKind.INVALID_STATE


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""

    kind = ErrorKind.API_ERROR


class ConfigurationError(BusinessError):
    """参数或配置校验失败（缺少 API key 等）。"""

    kind = ErrorKind.CONFIGURATION_ERROR


_KIND_TO_ERROR: Dict[ErrorKind, Type[BusinessError]] = {
    ErrorKind.RATE_LIMIT_EXCEEDED: RateLimitExceeded,
    ErrorKind.TRANSPORT_ERROR: TransportError,
    ErrorKind.PROTOCOL_VIOLATION: ProtocolViolation,
    ErrorKind.UNSUPPORTED_FEATURE: UnsupportedFeature,
    ErrorKind.CANCELLED: Cancelled,
    ErrorKind.INVALID_STATE: InvalidState,
    ErrorKind.API_ERROR: ApiError,
    ErrorKind.CONFIGURATION_ERROR: ConfigurationError,
}


def error_from_event(event: ErrorEvent, **extra) -> BusinessError:
    """把流中的 ErrorEvent 转成对应的异常实例。"""

    cls = _KIND_TO_ERROR.get(event.kind, ApiError)
    return cls(code=event.kind.value.upper(), message=event.message, **extra)


def user_friendly_message(err: BusinessError) -> str:
    """将技术错误转换为面向用户的提示文本。"""

    if isinstance(err, TransportError):
        if "timeout" in err.message.lower() or "timed out" in err.message.lower():
            return "Request timed out, please check your network connection"
        return f"Network issue detected: {err.message}"
    if isinstance(err, RateLimitExceeded):
        retry_after = err.extra.get("retry_after")
        if retry_after:
            return f"API rate limit exceeded. Please wait {retry_after} seconds before retrying"
        return "API rate limit exceeded. Please retry later"
    if isinstance(err, ConfigurationError):
        return f"Configuration error: {err.message}. Please check your API keys and settings"
    if isinstance(err, ApiError):
        lowered = err.message.lower()
        if "invalid_api_key" in lowered or "authentication" in lowered or err.http_status in (401, 403):
            return "Invalid API key. Please verify your credentials"
        if "insufficient_quota" in lowered:
            return "API quota exhausted. Please check your account balance"
        return f"API operation failed: {err.message}"
    if isinstance(err, ProtocolViolation):
        return f"Data parsing failed: {err.message}"
    if isinstance(err, UnsupportedFeature):
        return f"Provider does not support this request: {err.message}"
    if isinstance(err, Cancelled):
        return "Request was cancelled"
    return err.message
