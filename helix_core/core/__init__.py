"""流式编排核心。

- credentials: 凭据读取接口。
- page_cache: 页面上下文缓存。
- resolver: 后端解析与页面上下文启发式。
- sessions: 本地会话生命周期。
- orchestrator: 单流状态机。
- fanout: 多后端并发对比。
- suggestions: 追问建议。
- monitor: 模型下载进度记录。
"""
