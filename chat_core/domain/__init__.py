"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ChatRequest / ChatResult / ChatStreamChunk 模型。
- stream: 流式累积状态、结束信号与回调载荷。
- exceptions: 业务异常类型定义。
"""
