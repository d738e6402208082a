"""判断一个片段结束时回答是否被截断。

显式的结束信号优先：只有 LENGTH_LIMITED 视为截断；COMPLETED / TOOL_CALL /
FILTERED 视为已结束。缺少可识别的信号时，根据末尾字符做启发式推断
（省略号、逗号、冒号、分号或空白结尾）。
"""

import re
from dataclasses import dataclass
from typing import Optional

from chat_core.domain.stream import TerminalSignal

# 末尾看起来"话没说完"的模式
_TRAILING_PATTERNS = (
    re.compile(r"(\.\.\.|…+)$"),
    re.compile(r"[，,：:；;、]$"),
    re.compile(r"\s$"),
)


@dataclass(frozen=True)
class Verdict:
    interrupted: bool
    # length_limit / completed / tool_call / filtered / trailing_pattern / no_signal / empty
    reason: str


class InterruptionClassifier:
    def __init__(self, use_heuristic: bool = True):
        self.use_heuristic = use_heuristic

    def classify(self, signal: Optional[TerminalSignal], visible_text: str) -> Verdict:
        if signal is TerminalSignal.LENGTH_LIMITED:
            return Verdict(True, "length_limit")
        if signal is TerminalSignal.COMPLETED:
            return Verdict(False, "completed")
        if signal is TerminalSignal.TOOL_CALL:
            return Verdict(False, "tool_call")
        if signal is TerminalSignal.FILTERED:
            return Verdict(False, "filtered")

        if not visible_text:
            return Verdict(False, "empty")
        if self.use_heuristic and self.looks_truncated(visible_text):
            return Verdict(True, "trailing_pattern")
        return Verdict(False, "no_signal")

    def is_interrupted(self, signal: Optional[TerminalSignal], visible_text: str) -> bool:
        return self.classify(signal, visible_text).interrupted

    @staticmethod
    def looks_truncated(text: str) -> bool:
        return any(p.search(text) for p in _TRAILING_PATTERNS)
