"""流式重建与自动继续相关的数据模型。

- TerminalSignal: 统一的结束信号分类（由各家 finish_reason 映射而来）。
- ChunkDelta: 单个增量解码后的规范形式，用完即弃。
- AccumulationState: 一次逻辑回答唯一的可变状态，每个会话独占一份。
- SendOptions / StreamUpdate / StreamOutcome: 面向调用方的选项与回调载荷。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from chat_core.domain.exceptions import ConfigurationError
from chat_core.domain.models import ChatMessage, ToolDef


class TerminalSignal(str, Enum):
    COMPLETED = "completed"
    LENGTH_LIMITED = "length-limited"
    TOOL_CALL = "tool-call"
    FILTERED = "filtered"
    UNKNOWN = "unknown"


class TerminalReason(str, Enum):
    """会话最终结束的原因，写入 StreamOutcome.terminal_reason。"""

    COMPLETED = "completed"
    TOOL_CALL = "tool-call"
    FILTERED = "filtered"
    LENGTH_LIMITED = "length-limited"
    TRUNCATED = "truncated"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class ChunkDelta:
    content_fragment: str = ""
    reasoning_fragment: str = ""
    terminal_signal: Optional[TerminalSignal] = None

    @property
    def is_empty(self) -> bool:
        return not (self.content_fragment or self.reasoning_fragment or self.terminal_signal)


@dataclass
class AccumulationState:
    """一次逻辑回答的累积状态。

    visible_text 只增不减，唯一的例外是继续片段拼接时由 OverlapMerger
    去掉的有限重复部分；reasoning_text 在每个继续片段开始时清空。
    """

    session_id: str
    attempt_limit: int
    visible_text: str = ""
    reasoning_text: str = ""
    attempt_count: int = 0
    terminated: bool = False
    last_terminal_signal: Optional[TerminalSignal] = None


@dataclass(frozen=True)
class ContinuationContext:
    """手动继续所需的上下文：原始对话与已累积的回答。"""

    messages: Tuple[ChatMessage, ...]
    accumulated_text: str
    session_token: str
    attempts_used: int = 0


def _check(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(code="INVALID_OPTIONS", message=message)


@dataclass
class SendOptions:
    """ask() / continue_manually() 的调用选项。

    值为 None 的字段在会话创建时回落到 settings 中的默认值。
    构造时即做校验，非法选项在发起任何请求前抛出 ConfigurationError。
    """

    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    tools: Optional[List[ToolDef]] = None
    tool_choice: Literal["auto", "none", "required"] = "auto"
    extra_params: Dict[str, Any] = field(default_factory=dict)
    streaming: bool = True
    auto_continue: Optional[bool] = None
    max_auto_continue: Optional[int] = None
    session_token: Optional[str] = None

    def __post_init__(self) -> None:
        _check(isinstance(self.streaming, bool), "streaming must be a bool")
        _check(
            self.auto_continue is None or isinstance(self.auto_continue, bool),
            "auto_continue must be a bool",
        )
        if self.max_auto_continue is not None:
            _check(
                isinstance(self.max_auto_continue, int) and not isinstance(self.max_auto_continue, bool),
                "max_auto_continue must be an integer",
            )
            _check(self.max_auto_continue >= 0, "max_auto_continue must not be negative")
        if self.temperature is not None:
            _check(0.0 <= self.temperature <= 2.0, "temperature must be within [0, 2]")
        if self.top_p is not None:
            _check(0.0 < self.top_p <= 1.0, "top_p must be within (0, 1]")
        if self.max_tokens is not None:
            _check(self.max_tokens > 0, "max_tokens must be positive")
        if self.session_token is not None:
            _check(
                isinstance(self.session_token, str) and bool(self.session_token.strip()),
                "session_token must be a non-empty string",
            )
        _check(self.tool_choice in ("auto", "none", "required"), "unsupported tool_choice")
        _check(isinstance(self.extra_params, dict), "extra_params must be a mapping")


@dataclass(frozen=True)
class StreamUpdate:
    """增量回调载荷，每个 chunk 一次，顺序与接收顺序一致。"""

    session_token: str
    content_fragment: str
    reasoning_fragment: str
    terminal_signal: Optional[TerminalSignal] = None
    # 0 表示首次请求，n 表示第 n 次继续
    attempt: int = 0
    visible_text: str = ""


@dataclass
class StreamOutcome:
    """最终回调载荷。"""

    session_token: str
    full_visible_text: str
    full_reasoning_text: str
    terminal_reason: TerminalReason
    attempts_used: int
    needs_manual_continue: bool = False
    continuation_context: Optional[ContinuationContext] = None
    error: Optional[BaseException] = None

    @property
    def cancelled(self) -> bool:
        return self.terminal_reason is TerminalReason.CANCELLED

    def raise_for_error(self) -> None:
        """若会话因调用失败而终止，重新抛出原始异常。"""

        if self.error is not None:
            raise self.error


@dataclass(frozen=True)
class StreamEvent:
    """StreamSession.events() 产出的事件。

    kind:
        - "delta": 一个增量，携带 StreamUpdate。
        - "final": 会话结束，携带 StreamOutcome。
    """

    kind: Literal["delta", "final"]
    update: Optional[StreamUpdate] = None
    outcome: Optional[StreamOutcome] = None
