"""Chat Core 顶层包。

该包提供流式对话的重建与自动继续能力：
把各家 Provider 的流式增量解码为统一结构，在回答因长度限制被截断时
自动发起继续请求，并把继续片段去重拼接成一份完整的回答。
"""

from chat_core.api.service import ask, continue_manually, stream
from chat_core.domain.stream import SendOptions, StreamOutcome, StreamUpdate
from chat_core.streaming.session import StreamSession

__all__ = ["SendOptions", "StreamOutcome", "StreamSession", "StreamUpdate", "ask", "continue_manually", "stream"]
