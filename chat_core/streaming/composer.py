"""构造继续请求的消息列表。

继续请求 = 原始对话 + 已生成内容（assistant 消息）+ 一条继续指令（user 消息）。
继续指令要求模型从中断处接着写、不要重复，并附上已生成文本的末尾作为锚点。
"""

from typing import List, Sequence

from chat_core.domain.models import ChatMessage
from chat_core.domain.stream import AccumulationState
from chat_core.prompts import load_prompt


class ContinuationComposer:
    def __init__(self, anchor_chars: int = 200, locale: str = "zh", include_partial: bool = True):
        if anchor_chars <= 0:
            raise ValueError("anchor_chars must be positive")
        self.anchor_chars = anchor_chars
        self.locale = locale
        self.include_partial = include_partial

    @classmethod
    def from_settings(cls, cfg) -> "ContinuationComposer":
        return cls(
            anchor_chars=getattr(cfg, "continuation_anchor_chars", 200),
            locale=getattr(cfg, "prompt_locale", "zh"),
        )

    def compose(self, history: Sequence[ChatMessage], state: AccumulationState) -> List[ChatMessage]:
        """返回新的消息列表，history 本身不会被修改。"""

        messages = list(history)
        if self.include_partial and state.visible_text:
            messages.append(
                ChatMessage(
                    role="assistant",
                    content=state.visible_text,
                    meta={"partial": True, "session_id": state.session_id},
                )
            )
        messages.append(
            ChatMessage(
                role="user",
                content=self.instruction(state.visible_text),
                meta={"continuation": True, "attempt": state.attempt_count},
            )
        )
        return messages

    def instruction(self, accumulated_text: str) -> str:
        anchor = accumulated_text[-self.anchor_chars:]
        # 模板正文可能含有花括号，不用 str.format
        return load_prompt("continue_instruction", self.locale).replace("{anchor}", anchor)
