"""领域层模型与协议。

包含：
- models: Message / AIState / GatewaySessionInfo 等会话数据结构。
- app_settings: 随会话持久化的用户设置（pydantic 模型）。
- conversation: ConversationState 与 PersistenceAdapter 协议。
- exceptions: 业务异常类型定义。
"""
