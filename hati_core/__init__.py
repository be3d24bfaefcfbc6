"""Hati 顶层包。

该包提供人设对话服务的核心实现，包括配置加载、领域模型、上游 Provider 适配、
流式 relay、持久化存储、HTTP 接口以及消费事件流的客户端（文本与音频）。
"""

__version__ = "1.0.0"
