"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置（Pydantic Settings）。
全局参数使用 LLM_HUB_ 前缀的环境变量，例如 LLM_HUB_HTTP_TIMEOUT；
Provider 凭证沿用各厂商习惯的 {PREFIX}_API_KEY / {PREFIX}_API_BASE，
也可以写在 config.yaml 的 providers 段中：

    providers:
      deepseek:
        api_key: sk-xxxx
        requests_per_sec: 5
        tokens_per_sec: 20000

load_client_config 把这些来源解析成核心使用的只读 ClientConfig。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from llm_hub.domain.exceptions import ConfigurationError
from llm_hub.domain.models import ClientConfig, RateLimitConfig
from llm_hub.providers.registry import get_provider_spec

# 让 {PREFIX}_API_KEY 这类不属于 Settings 字段的变量也能从 .env 读到
load_dotenv(override=False)


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("LLM_HUB_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path.home() / ".llmhub" / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class ProviderSection(BaseModel):
    """config.yaml 中单个 Provider 的配置段。"""

    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model: Optional[str] = None
    requests_per_sec: Optional[float] = Field(default=None, gt=0)
    tokens_per_sec: Optional[float] = Field(default=None, gt=0)
    request_burst: Optional[float] = Field(default=None, gt=0)
    token_burst: Optional[float] = Field(default=None, gt=0)
    extra_headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 选择 ----
    default_provider: str = Field(default="deepseek", description="默认使用的 Provider 名称，例如 deepseek、openai")
    default_model: str = Field(default="chat", description="逻辑模型名，由 registry 映射为具体厂商模型")
    providers: Dict[str, ProviderSection] = Field(default_factory=dict, description="按 Provider 覆盖的配置")

    # ---- 网络与流式 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    stream_buffer_size: int = Field(default=64, ge=1, le=4096, description="流式事件缓冲区容量")
    close_timeout: float = Field(default=5.0, gt=0, description="取消流时等待连接关闭的上限（秒）")
    max_retries: int = Field(default=3, ge=0, le=10, description="非流式传输错误的最大重试次数")
    retry_backoff_base: float = Field(default=0.5, gt=0, description="指数退避基数（秒）")
    retry_backoff_max: float = Field(default=8.0, gt=0, description="单次退避上限（秒）")

    # ---- 限流 ----
    requests_per_sec: Optional[float] = Field(default=None, gt=0, description="默认每秒请求数上限")
    tokens_per_sec: Optional[float] = Field(default=None, gt=0, description="默认每秒 token 数上限")
    rate_limit_wait_budget: Optional[float] = Field(default=30.0, ge=0, description="限流最长等待（秒）")

    # ---- 上下文 ----
    context_max_turns: Optional[int] = Field(default=20, ge=1, description="构造请求时最多携带的历史条数")
    context_max_tokens: Optional[int] = Field(default=None, ge=1, description="构造请求时历史的估算 token 上限")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录，留空则不写文件")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_prefix="LLM_HUB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()


def load_client_config(provider: Optional[str] = None, cfg: Optional[Settings] = None) -> ClientConfig:
    """解析某个 Provider 的 ClientConfig。

    优先级：环境变量 {PREFIX}_API_KEY / {PREFIX}_API_BASE > config.yaml providers 段 > registry 默认值。

    Raises:
        ConfigurationError: Provider 未知，或需要 API key 但未配置。
    """

    cfg = cfg or settings
    name = provider or cfg.default_provider
    try:
        spec = get_provider_spec(name)
    except KeyError as e:
        raise ConfigurationError(code="UNKNOWN_PROVIDER", message=str(e.args[0])) from e

    section = cfg.providers.get(spec.kind.value) or cfg.providers.get(name.lower()) or ProviderSection()
    api_key = os.getenv(f"{spec.env_prefix}_API_KEY") or section.api_key
    base_url = os.getenv(f"{spec.env_prefix}_API_BASE") or section.base_url or spec.base_url
    if spec.requires_api_key and not api_key:
        raise ConfigurationError(
            code="MISSING_API_KEY",
            message=f"{spec.env_prefix}_API_KEY not set",
            provider=spec.kind.value,
        )

    rate_limit = RateLimitConfig(
        requests_per_sec=section.requests_per_sec or cfg.requests_per_sec,
        tokens_per_sec=section.tokens_per_sec or cfg.tokens_per_sec,
        request_burst=section.request_burst,
        token_burst=section.token_burst,
    )
    return ClientConfig(
        provider=spec.kind.value,
        base_url=base_url,
        auth_credential=api_key,
        rate_limit=rate_limit,
        timeout=cfg.http_timeout,
        model=section.model or cfg.default_model,
        stream_buffer_size=cfg.stream_buffer_size,
        max_retries=cfg.max_retries,
        retry_backoff_base=cfg.retry_backoff_base,
        retry_backoff_max=cfg.retry_backoff_max,
        rate_limit_wait_budget=cfg.rate_limit_wait_budget,
        context_max_turns=cfg.context_max_turns,
        context_max_tokens=cfg.context_max_tokens,
        extra_headers=dict(section.extra_headers),
        close_timeout=cfg.close_timeout,
    )
