"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CORE_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
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


class _YamlConfigSource(PydanticBaseSettingsSource):
    """把 config.yaml 作为 pydantic-settings 的一个配置源。"""

    def __init__(self, settings_cls: Type[BaseSettings]):
        super().__init__(settings_cls)
        self._data = {str(k).lower(): v for k, v in _load_config_from_yaml().items()}

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self._data.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        return {
            name: self._data[name]
            for name in self.settings_cls.model_fields
            if name in self._data
        }


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="glm",
        description="默认使用的 Provider 名称，例如 glm、kimi、openai",
    )
    default_model: str = Field(
        default="chat",
        description="逻辑模型名，由 registry 映射为具体厂商模型",
    )

    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: Optional[str] = Field(default=None, description="OpenAI API 基础URL（覆盖默认值）")
    deepseek_api_key: Optional[str] = Field(default=None, description="DeepSeek API 密钥")
    deepseek_base_url: Optional[str] = Field(default=None)
    volcengine_api_key: Optional[str] = Field(default=None, description="火山方舟 API 密钥")
    volcengine_base_url: Optional[str] = Field(default=None)
    aliyun_bailian_api_key: Optional[str] = Field(default=None, description="阿里云百炼 API 密钥")
    aliyun_bailian_base_url: Optional[str] = Field(default=None)
    kimi_api_key: Optional[str] = Field(default=None, description="Kimi API 密钥")
    kimi_base_url: Optional[str] = Field(default=None)
    glm_api_key: Optional[str] = Field(default=None, description="GLM API 密钥")
    glm_base_url: Optional[str] = Field(default=None)
    gemini_api_key: Optional[str] = Field(default=None, description="Google Gemini API 密钥")
    gemini_base_url: Optional[str] = Field(default=None)

    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 自动继续 ----
    auto_continue: bool = Field(default=True, description="响应被截断时是否自动继续")
    max_auto_continue: int = Field(
        default=3,
        ge=0,
        le=10,
        description="单轮回答内自动继续的最大次数",
    )
    continuation_anchor_chars: int = Field(
        default=200,
        ge=20,
        description="继续指令中附带的已生成末尾文字长度",
    )
    prompt_locale: str = Field(default="zh", description="继续指令模板语言")
    truncation_heuristic: bool = Field(
        default=True,
        description="缺少 finish_reason 时是否根据末尾字符推断截断",
    )

    # ---- 去重合并 ----
    merge_tail_window: int = Field(default=100, ge=1, description="匹配时取已有文本末尾的最大长度")
    merge_max_overlap: int = Field(default=80, ge=1, description="部分匹配的最大重叠长度")
    merge_min_overlap: int = Field(default=20, ge=2, description="部分匹配的最小重叠长度")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator(
        "openai_api_key",
        "deepseek_api_key",
        "volcengine_api_key",
        "aliyun_bailian_api_key",
        "kimi_api_key",
        "glm_api_key",
        "gemini_api_key",
    )
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @model_validator(mode="after")
    def validate_merge_windows(self) -> "Settings":
        if not self.merge_min_overlap <= self.merge_max_overlap <= self.merge_tail_window:
            raise ValueError("expected merge_min_overlap <= merge_max_overlap <= merge_tail_window")
        return self

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
            _YamlConfigSource(settings_cls),
            file_secret_settings,
        )


settings = Settings()
