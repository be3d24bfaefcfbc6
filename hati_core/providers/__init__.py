"""上游模型服务集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供具体实现 (openai_client)。
"""

from typing import Optional

from hati_core.config.settings import settings
from hati_core.providers.base import ProviderClient
from hati_core.providers.openai_client import OpenAIClient
from hati_core.providers.registry import get_provider_config


def create_provider(name: Optional[str] = None, cfg=None) -> ProviderClient:
    """根据名称创建 Provider 实例，名称未登记时抛出 KeyError。"""

    provider_cfg = get_provider_config(name or "openai")
    if provider_cfg.name == OpenAIClient.name:
        return OpenAIClient(cfg or settings)
    raise KeyError(f"No client for provider: {provider_cfg.name!r}")


__all__ = ["ProviderClient", "OpenAIClient", "create_provider"]
