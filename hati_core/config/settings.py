"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("HATI_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
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


class Settings(BaseSettings):
    """服务配置。"""

    # ---- 上游模型服务 ----
    openai_api_key: Optional[str] = Field(default=None, description="上游 API 密钥")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI 兼容接口的基础 URL",
    )
    chat_model: str = Field(default="chat", description="对话使用的逻辑模型名")
    tts_model: str = Field(default="speech", description="语音合成使用的逻辑模型名")
    image_model: str = Field(default="image", description="图片生成使用的逻辑模型名")
    http_timeout: float = Field(default=30.0, ge=1.0, description="连接超时时间（秒）")
    max_context_messages: int = Field(default=50, ge=1, le=500, description="最大上下文消息数")
    max_completion_tokens: int = Field(default=4096, ge=1, description="单次回答最大 token 数")
    tts_voice: str = Field(default="nova", description="默认发音人")
    tts_sample_rate: int = Field(default=24000, description="PCM16 音频采样率")

    # ---- 存储 ----
    storage_backend: Literal["json", "sql"] = Field(default="json", description="会话存储后端")
    storage_root: str = Field(default=".storage", description="JSON 存储根目录")
    database_url: str = Field(
        default="sqlite:///.storage/hati.db",
        description="SQL 存储连接串，生产环境使用 postgresql+psycopg://...",
    )

    # ---- 人设 ----
    persona_prompt_file: Optional[str] = Field(
        default=None,
        description="人设系统提示词文件路径，为空时使用内置提示词",
    )

    # ---- 登录与会话令牌 ----
    auth_enabled: bool = Field(default=True, description="是否要求请求携带会话令牌")
    app_password: str = Field(default="azura", description="登录口令")
    session_secret: str = Field(default="change-me", description="会话令牌签名密钥")
    session_ttl_seconds: int = Field(default=12 * 3600, ge=60, description="会话令牌有效期（秒）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- HTTP 服务 ----
    host: str = Field(default="127.0.0.1", description="监听地址")
    port: int = Field(default=8000, description="监听端口")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v!r}")
        return level

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
