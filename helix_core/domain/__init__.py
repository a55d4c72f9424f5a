"""领域层模型与协议。

包含：
- models: Intent / MediaPart / 后端配置 / 缓存条目等共享模型。
- conversation: 消息、对话状态、取消句柄以及 StateStore 抽象。
- exceptions: 业务异常类型与统一重试策略。
"""
