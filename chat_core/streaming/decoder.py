"""把 Provider 的流式事件解码为统一的 ChunkDelta。

解码是纯映射：缺失字段视为空片段；无法解析的事件记录日志后
按空片段处理，并给出 TerminalSignal.UNKNOWN，decode() 本身不会抛出异常。
"""

import logging
from typing import Any, Mapping, Optional

from chat_core.domain.exceptions import MalformedChunkError
from chat_core.domain.models import ChatResult, ChatStreamChunk
from chat_core.domain.stream import ChunkDelta, TerminalSignal
from chat_core.infrastructure.logging.logger import logger


# 各家 finish_reason 取值（统一转小写后比较）
_FINISH_REASONS = {
    # OpenAI 兼容 / Kimi / GLM / 火山方舟
    "stop": TerminalSignal.COMPLETED,
    "length": TerminalSignal.LENGTH_LIMITED,
    "tool_calls": TerminalSignal.TOOL_CALL,
    "function_call": TerminalSignal.TOOL_CALL,
    "content_filter": TerminalSignal.FILTERED,
    "sensitive": TerminalSignal.FILTERED,
    # Anthropic 风格
    "end_turn": TerminalSignal.COMPLETED,
    "stop_sequence": TerminalSignal.COMPLETED,
    "max_tokens": TerminalSignal.LENGTH_LIMITED,
    "tool_use": TerminalSignal.TOOL_CALL,
    # Gemini
    "max_output_tokens": TerminalSignal.LENGTH_LIMITED,
    "safety": TerminalSignal.FILTERED,
    "recitation": TerminalSignal.FILTERED,
    "blocklist": TerminalSignal.FILTERED,
    "prohibited_content": TerminalSignal.FILTERED,
    "spii": TerminalSignal.FILTERED,
}


def map_finish_reason(raw: Optional[str]) -> Optional[TerminalSignal]:
    """把厂商的 finish_reason 映射为 TerminalSignal；没有结束信号时返回 None。"""

    if raw is None:
        return None
    if not isinstance(raw, str):
        return TerminalSignal.UNKNOWN
    key = raw.strip().lower()
    if not key:
        return None
    return _FINISH_REASONS.get(key, TerminalSignal.UNKNOWN)


class ChunkDecoder:
    """ChunkDecoder：Provider 事件 -> ChunkDelta。

    支持两种输入：
    - 适配器产出的 ChatStreamChunk（取 index=0 的 choice）。
    - OpenAI 格式的原始 dict（例如直接来自 SSE 的 JSON）。
    """

    def decode(self, event: Any) -> ChunkDelta:
        try:
            return self._decode(event)
        except MalformedChunkError as exc:
            reason = exc.message
        except (AttributeError, TypeError) as exc:
            reason = f"unexpected event structure: {exc}"
        logger.log(
            logging.WARNING,
            "Malformed stream chunk",
            extra={"extra": {"code": "MALFORMED_CHUNK", "reason": reason}},
        )
        return ChunkDelta(terminal_signal=TerminalSignal.UNKNOWN)

    def decode_result(self, result: ChatResult) -> ChunkDelta:
        """非流式结果作为一个完整增量处理。"""

        if not result.choices:
            return ChunkDelta(terminal_signal=TerminalSignal.UNKNOWN)
        choice = result.choices[0]
        return ChunkDelta(
            content_fragment=choice.message.content or "",
            reasoning_fragment=choice.reasoning_content or "",
            terminal_signal=map_finish_reason(choice.finish_reason) or TerminalSignal.UNKNOWN,
        )

    def _decode(self, event: Any) -> ChunkDelta:
        if isinstance(event, ChatStreamChunk):
            if event.malformed:
                raise MalformedChunkError(code="MALFORMED_CHUNK", message=event.malformed)
            if not event.choices:
                return ChunkDelta()
            choice = event.choices[0]
            return ChunkDelta(
                content_fragment=_as_text(choice.delta.content),
                reasoning_fragment=_as_text(choice.delta.reasoning_content),
                terminal_signal=map_finish_reason(choice.finish_reason),
            )
        if isinstance(event, Mapping):
            return self._decode_mapping(event)
        raise MalformedChunkError(
            code="MALFORMED_CHUNK",
            message=f"unsupported event type: {type(event).__name__}",
        )

    @staticmethod
    def _decode_mapping(event: Mapping[str, Any]) -> ChunkDelta:
        choices = event.get("choices")
        if choices is None:
            return ChunkDelta()
        if not isinstance(choices, list):
            raise MalformedChunkError(code="MALFORMED_CHUNK", message="choices is not a list")
        if not choices:
            return ChunkDelta()
        choice = choices[0]
        if not isinstance(choice, Mapping):
            raise MalformedChunkError(code="MALFORMED_CHUNK", message="choice is not an object")
        delta = choice.get("delta") or choice.get("message") or {}
        if not isinstance(delta, Mapping):
            raise MalformedChunkError(code="MALFORMED_CHUNK", message="delta is not an object")
        return ChunkDelta(
            content_fragment=_as_text(delta.get("content")),
            reasoning_fragment=_as_text(delta.get("reasoning_content")),
            terminal_signal=map_finish_reason(choice.get("finish_reason")),
        )


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    raise MalformedChunkError(code="MALFORMED_CHUNK", message=f"fragment is {type(value).__name__}, not str")
