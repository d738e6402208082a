"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供各线协议的具体实现 (openai_compatible、gemini_client)。

具体厂商通过 ProviderConfig.adapter 选择适配器，而不是按类型分支判断。
"""

from typing import Any, Callable, Dict, Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ConfigurationError
from chat_core.providers.base import ProviderClient
from chat_core.providers.gemini_client import GeminiClient
from chat_core.providers.openai_compatible import OpenAICompatibleClient
from chat_core.providers.registry import ProviderConfig, get_provider_config, register_provider

ClientFactory = Callable[[ProviderConfig, Any], ProviderClient]

_ADAPTERS: Dict[str, ClientFactory] = {
    "openai": OpenAICompatibleClient,
    "gemini": GeminiClient,
}


def register_adapter(kind: str, factory: ClientFactory) -> None:
    """登记一种线协议适配器，ProviderConfig.adapter 取同名即可使用。"""

    _ADAPTERS[kind] = factory


def create_provider(name: Optional[str] = None, cfg: Any = None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    cfg = cfg or settings
    provider_name = (name or getattr(cfg, "default_provider", "glm")).lower()
    try:
        config = get_provider_config(provider_name)
    except KeyError:
        raise ConfigurationError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {provider_name!r}")
    factory = _ADAPTERS.get(config.adapter)
    if factory is None:
        raise ConfigurationError(code="UNKNOWN_ADAPTER", message=f"Unknown adapter: {config.adapter!r}")
    return factory(config, cfg)


__all__ = [
    "ProviderClient",
    "ProviderConfig",
    "create_provider",
    "register_adapter",
    "register_provider",
]
