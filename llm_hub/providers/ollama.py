"""Ollama 本地模型适配器。

- URL: {base_url}/api/chat，默认 http://localhost:11434，无需 API key。
- 流式: 每行一个 JSON 对象（NDJSON），最后一个对象 done=true，
  携带 prompt_eval_count / eval_count 作为 token 统计。
- 非流式: 返回单个 done=true 的对象，解析方式相同。
"""

import json
from typing import Any, Dict, List, Sequence

from llm_hub.domain.exceptions import ProtocolViolation
from llm_hub.domain.models import (
    ClientConfig,
    ContentDelta,
    Done,
    ErrorEvent,
    ErrorKind,
    ModelParams,
    ReasoningDelta,
    StreamEvent,
    Turn,
    Usage,
    WireRequest,
)
from llm_hub.providers.base import TerminalGuard, ensure_tools_supported, get_typed, require_credential, token_count
from llm_hub.providers.framing import NdjsonDecoder
from llm_hub.providers.registry import ApiType, ProviderSpec, endpoint_url


class OllamaAdapter:
    def __init__(self, config: ClientConfig, spec: ProviderSpec):
        self.name = spec.kind.value
        self._config = config
        self._spec = spec
        self._decoder = NdjsonDecoder()
        self._guard = TerminalGuard()

    def build_request(self, history: Sequence[Turn], params: ModelParams, stream: bool = True) -> WireRequest:
        require_credential(self._config, self._spec)
        ensure_tools_supported(self._spec, params)
        model_cfg = self._spec.resolve_model(params.model or self._config.model)
        options: Dict[str, Any] = {
            "temperature": params.temperature if params.temperature is not None else model_cfg.default_temperature,
            "num_predict": params.max_tokens or model_cfg.max_tokens,
        }
        if params.top_p is not None:
            options["top_p"] = params.top_p
        if params.stop:
            options["stop"] = list(params.stop)
        if params.seed is not None:
            options["seed"] = params.seed
        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": [{"role": t.role, "content": t.text} for t in history],
            "stream": stream,
            "options": options,
        }
        if params.response_format == "json_object":
            payload["format"] = "json"
        payload.update(params.extra)

        headers = {"Content-Type": "application/json", **self._config.extra_headers}
        if self._config.auth_credential:
            headers["Authorization"] = f"Bearer {self._config.auth_credential}"
        return WireRequest(
            method="POST",
            url=endpoint_url(self._spec, ApiType.CHAT, self._config.base_url),
            headers=headers,
            body=payload,
            stream=stream,
            timeout=self._config.timeout,
        )

    def parse_chunk(self, raw: bytes) -> List[StreamEvent]:
        if self._guard.terminated:
            return []
        events: List[StreamEvent] = []
        for line in self._decoder.feed(raw):
            events.extend(self._parse_line(line))
        return self._guard.admit(events)

    def finish(self) -> List[StreamEvent]:
        if self._guard.terminated:
            return []
        events: List[StreamEvent] = []
        for line in self._decoder.flush():
            events.extend(self._parse_line(line))
        events.append(ErrorEvent(kind=ErrorKind.PROTOCOL_VIOLATION, message="stream ended before done=true"))
        return self._guard.admit(events)

    @staticmethod
    def _parse_line(line: str) -> List[StreamEvent]:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            return [ErrorEvent(kind=ErrorKind.PROTOCOL_VIOLATION, message=f"invalid JSON line: {line[:200]}")]
        if not isinstance(payload, dict):
            return [ErrorEvent(kind=ErrorKind.PROTOCOL_VIOLATION, message=f"unexpected line: {line[:200]}")]
        if payload.get("error"):
            return [ErrorEvent(kind=ErrorKind.API_ERROR, message=str(payload["error"]))]
        try:
            return _line_events(payload)
        except ProtocolViolation as e:
            return [e.to_event()]


def _line_events(payload: Dict[str, Any]) -> List[StreamEvent]:
    events: List[StreamEvent] = []
    message = get_typed(payload, "message", dict, {})
    thinking = get_typed(message, "thinking", str)
    if thinking:
        events.append(ReasoningDelta(thinking))
    content = get_typed(message, "content", str)
    if content:
        events.append(ContentDelta(content))
    if get_typed(payload, "done", bool, False):
        events.append(
            Usage(
                tokens_in=token_count(payload, "prompt_eval_count"),
                tokens_out=token_count(payload, "eval_count"),
            )
        )
        events.append(Done(finish_reason=get_typed(payload, "done_reason", str)))
    return events
