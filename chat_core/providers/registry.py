"""Provider 与模型配置。

本模块将“逻辑模型名”与“具体厂商模型名”解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "chat"。
- provider_model：厂商实际提供的模型 ID，例如 "glm-4.6"。

上层只关心逻辑名，具体用哪个底层模型由这里集中配置；
未登记的模型名会原样透传给厂商。"""

from dataclasses import dataclass, field
from typing import Dict, Literal


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    max_tokens: int
    default_temperature: float


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。

    adapter 决定使用哪种线协议适配器；session_metadata 为 True 时，
    会把会话标识放进请求体的 metadata.session_id。
    """

    name: str
    base_url: str
    models: Dict[str, ModelConfig]
    adapter: Literal["openai", "gemini"] = "openai"
    session_metadata: bool = False
    extra_headers: Dict[str, str] = field(default_factory=dict)


def _chat_model(provider_model: str, max_tokens: int = 8192) -> Dict[str, ModelConfig]:
    return {
        "chat": ModelConfig(
            logical_name="chat",
            provider_model=provider_model,
            max_tokens=max_tokens,
            default_temperature=0.7,
        )
    }


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    models=_chat_model("gpt-4o-mini", 4096),
    session_metadata=True,
)

DEEPSEEK_CONFIG = ProviderConfig(
    name="deepseek",
    base_url="https://api.deepseek.com/v1",
    models=_chat_model("deepseek-chat"),
)

# 火山方舟（Volcengine Ark），OpenAI 兼容接口
VOLCENGINE_CONFIG = ProviderConfig(
    name="volcengine",
    base_url="https://ark.cn-beijing.volces.com/api/v3",
    models=_chat_model("deepseek-v3-1-250821"),
)

# 阿里云百炼兼容模式
ALIYUN_BAILIAN_CONFIG = ProviderConfig(
    name="aliyun_bailian",
    base_url="https://dashscope.aliyuncs.com/compatible-mode/v1",
    models=_chat_model("qwen-plus"),
)

KIMI_CONFIG = ProviderConfig(
    name="kimi",
    base_url="https://api.moonshot.cn/v1",
    models=_chat_model("kimi-k2-turbo-preview"),
)

# GLM / BigModel 配置（默认使用 glm-4.6 作为 chat 逻辑模型）
GLM_CONFIG = ProviderConfig(
    name="glm",
    base_url="https://open.bigmodel.cn/api/paas/v4",
    models=_chat_model("glm-4.6"),
)

GEMINI_CONFIG = ProviderConfig(
    name="gemini",
    base_url="https://generativelanguage.googleapis.com/v1beta",
    models=_chat_model("gemini-2.0-flash"),
    adapter="gemini",
)


PROVIDER_REGISTRY: Dict[str, ProviderConfig] = {
    cfg.name: cfg
    for cfg in (
        OPENAI_CONFIG,
        DEEPSEEK_CONFIG,
        VOLCENGINE_CONFIG,
        ALIYUN_BAILIAN_CONFIG,
        KIMI_CONFIG,
        GLM_CONFIG,
        GEMINI_CONFIG,
    )
}


def register_provider(config: ProviderConfig) -> None:
    """登记（或覆盖）一个 Provider 配置，名称统一为小写。"""

    PROVIDER_REGISTRY[config.name.lower()] = config


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


def resolve_model(config: ProviderConfig, model: str) -> tuple[str, int, float]:
    """把逻辑模型名解析为 (厂商模型, 默认 max_tokens, 默认 temperature)。"""

    model_cfg = config.models.get(model)
    if model_cfg is None:
        fallback = next(iter(config.models.values()), None)
        max_tokens = fallback.max_tokens if fallback else 4096
        temperature = fallback.default_temperature if fallback else 0.7
        return model, max_tokens, temperature
    return model_cfg.provider_model, model_cfg.max_tokens, model_cfg.default_temperature
