"""流式重建与自动继续引擎。

- decoder: Provider 事件 -> ChunkDelta。
- merger: 继续片段的去重拼接。
- classifier: 判断片段是否被截断。
- composer: 构造继续请求。
- limiter: 继续次数限制。
- session: 把以上组件编排为一次完整的逻辑回答。
"""

from chat_core.streaming.classifier import InterruptionClassifier, Verdict
from chat_core.streaming.composer import ContinuationComposer
from chat_core.streaming.decoder import ChunkDecoder, map_finish_reason
from chat_core.streaming.limiter import AttemptLimiter
from chat_core.streaming.merger import OverlapMerger
from chat_core.streaming.session import SessionPhase, StreamSession

__all__ = [
    "AttemptLimiter",
    "ChunkDecoder",
    "ContinuationComposer",
    "InterruptionClassifier",
    "OverlapMerger",
    "SessionPhase",
    "StreamSession",
    "Verdict",
    "map_finish_reason",
]
