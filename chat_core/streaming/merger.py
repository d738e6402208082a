"""继续片段与已有文本的去重拼接。

长度截断后的继续请求经常会把上一段末尾的文字再输出一遍，
OverlapMerger 负责在拼接边界上把这段重复去掉：

1. 锚点匹配：取已有文本末尾至多 tail_window 个字符，在新片段中整体查找。
2. 部分匹配：从 max_overlap 到 min_overlap 逐步缩短末尾片段，
   只在新片段开头附近查找，取最长的命中。
3. 断词拼接：已有文本以半个词结尾、新片段以同一残片开头时（短于 min_overlap），
   去掉残片，并把残片后被拆开的单个空格一并去掉。
4. 都不命中则原样拼接。

匹配时空白字符会折叠为单个空格，但保留下来的文本始终取自原始片段。
"""

import re
from typing import List, Optional, Tuple

from chat_core.domain.exceptions import ConfigurationError

_WHITESPACE = re.compile(r"\s+")
_WORD_CHAR = re.compile(r"\w")
_SPLIT_SPACE = re.compile(r" (?=\w)")


def _normalize(text: str) -> Tuple[str, List[int]]:
    """折叠空白，返回 (规范化文本, ends)，ends[i] 为第 i 个字符在原文中的结束位置。"""

    chars: List[str] = []
    ends: List[int] = []
    pos = 0
    for m in _WHITESPACE.finditer(text):
        start, end = m.span()
        for i in range(pos, start):
            chars.append(text[i])
            ends.append(i + 1)
        chars.append(" ")
        ends.append(end)
        pos = end
    for i in range(pos, len(text)):
        chars.append(text[i])
        ends.append(i + 1)
    return "".join(chars), ends


class OverlapMerger:
    def __init__(
        self,
        tail_window: int = 100,
        max_overlap: int = 80,
        min_overlap: int = 20,
        min_fragment: int = 2,
        join_split_words: bool = True,
    ):
        if not 0 < min_fragment <= min_overlap <= max_overlap <= tail_window:
            raise ConfigurationError(
                code="INVALID_OPTIONS",
                message="expected 0 < min_fragment <= min_overlap <= max_overlap <= tail_window",
            )
        self.tail_window = tail_window
        self.max_overlap = max_overlap
        self.min_overlap = min_overlap
        self.min_fragment = min_fragment
        self.join_split_words = join_split_words

    @classmethod
    def from_settings(cls, cfg) -> "OverlapMerger":
        return cls(
            tail_window=getattr(cfg, "merge_tail_window", 100),
            max_overlap=getattr(cfg, "merge_max_overlap", 80),
            min_overlap=getattr(cfg, "merge_min_overlap", 20),
        )

    @property
    def settle_length(self) -> int:
        """新片段超过该长度后不再重新计算拼接边界，后续字符直接追加。"""

        return 2 * self.tail_window

    def merge(self, existing: str, segment: str) -> str:
        if not segment:
            return existing
        if not existing:
            return segment
        merged = self._merge_anchored(existing, segment)
        if merged is None:
            merged = self._merge_fragment(existing, segment)
        if merged is None:
            return existing + segment
        return merged

    def overlap(self, existing: str, segment: str) -> int:
        """新片段中被当作重复而丢弃的字符数。"""

        return len(existing) + len(segment) - len(self.merge(existing, segment))

    def _merge_anchored(self, existing: str, segment: str) -> Optional[str]:
        # 已有文本太短时匹配不可靠，跳过锚点与部分匹配
        if len(existing) < self.min_overlap:
            return None
        tail, _ = _normalize(existing[-self.tail_window:])
        norm_segment, ends = _normalize(segment)

        idx = norm_segment.find(tail)
        if idx >= 0:
            return existing + segment[ends[idx + len(tail) - 1]:]

        upper = min(self.max_overlap, len(tail))
        for size in range(upper, self.min_overlap - 1, -1):
            candidate = tail[-size:]
            idx = norm_segment.find(candidate, 0, self.tail_window + size)
            if idx >= 0:
                return existing + segment[ends[idx + size - 1]:]
        return None

    def _merge_fragment(self, existing: str, segment: str) -> Optional[str]:
        upper = min(self.min_overlap - 1, len(existing), len(segment))
        for size in range(upper, self.min_fragment - 1, -1):
            fragment = segment[:size]
            if not _WORD_CHAR.search(fragment) or not existing.endswith(fragment):
                continue
            rest = segment[size:]
            if self.join_split_words and _WORD_CHAR.match(existing[-1]) and _SPLIT_SPACE.match(rest):
                rest = rest[1:]
            return existing + rest
        return None
