"""Helix Core 顶层包。

该包提供浏览器 AI 助手的流式编排引擎，
包括配置加载、领域模型、后端适配、会话管理、
流式编排、多后端对比、页面上下文缓存与宿主消息接口等能力。
"""

from helix_core.api.service import AssistantService, HostRequest, HostResponse, get_default_service

__all__ = ["AssistantService", "HostRequest", "HostResponse", "get_default_service"]
