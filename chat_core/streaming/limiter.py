from chat_core.domain.exceptions import AttemptLimitExceeded
from chat_core.domain.stream import AccumulationState


class AttemptLimiter:
    """继续次数限制，计数直接记在会话的 AccumulationState 上。

    首次请求不计入次数，因此一个会话最多发出 attempt_limit + 1 次调用。
    """

    def __init__(self, state: AccumulationState):
        if state.attempt_limit < 0:
            raise ValueError("attempt_limit must not be negative")
        self._state = state

    @property
    def remaining(self) -> int:
        return max(self._state.attempt_limit - self._state.attempt_count, 0)

    def can_attempt(self) -> bool:
        return self._state.attempt_count < self._state.attempt_limit

    def record_attempt(self) -> int:
        if not self.can_attempt():
            raise AttemptLimitExceeded(
                code="ATTEMPT_LIMIT_EXCEEDED",
                message=f"continuation limit {self._state.attempt_limit} reached",
                session_id=self._state.session_id,
            )
        self._state.attempt_count += 1
        return self._state.attempt_count
