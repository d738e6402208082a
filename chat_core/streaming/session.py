"""StreamSession：一次"问到答完"的逻辑回答。

状态机：
    idle -> streaming -> {completed, interrupted}
    interrupted -> continuing -> streaming（允许继续且未达上限时）
    interrupted -> exhausted（关闭自动继续或次数用尽）
另有终止状态 cancelled（调用方中止）与 failed（调用失败）。

每个会话独占一份 AccumulationState，会话之间没有共享的可变状态。
增量按接收顺序逐个回调；上一段处理完并分类后才会发出下一次请求。
"""

import asyncio
import contextlib
import dataclasses
import inspect
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Union
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import CancellationError, ConfigurationError
from chat_core.domain.models import ChatMessage, ChatRequest
from chat_core.domain.stream import (
    AccumulationState,
    ChunkDelta,
    ContinuationContext,
    SendOptions,
    StreamEvent,
    StreamOutcome,
    StreamUpdate,
    TerminalReason,
    TerminalSignal,
)
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ProviderClient
from chat_core.streaming.classifier import InterruptionClassifier
from chat_core.streaming.composer import ContinuationComposer
from chat_core.streaming.decoder import ChunkDecoder
from chat_core.streaming.limiter import AttemptLimiter
from chat_core.streaming.merger import OverlapMerger

UpdateCallback = Callable[[StreamUpdate], Union[None, Awaitable[None]]]
FinishCallback = Callable[[StreamOutcome], Union[None, Awaitable[None]]]


class SessionPhase(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    INTERRUPTED = "interrupted"
    CONTINUING = "continuing"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    FAILED = "failed"


_REASON_BY_SIGNAL = {
    TerminalSignal.COMPLETED: TerminalReason.COMPLETED,
    TerminalSignal.TOOL_CALL: TerminalReason.TOOL_CALL,
    TerminalSignal.FILTERED: TerminalReason.FILTERED,
}


async def _invoke(callback: Optional[Callable[[Any], Any]], payload: Any) -> None:
    """回调可以是普通函数，也可以是协程函数。"""

    if callback is None:
        return
    result = callback(payload)
    if inspect.isawaitable(result):
        await result


class StreamSession:
    def __init__(
        self,
        provider: ProviderClient,
        messages: Sequence[ChatMessage],
        options: Optional[SendOptions] = None,
        *,
        cfg: Any = settings,
        decoder: Optional[ChunkDecoder] = None,
        merger: Optional[OverlapMerger] = None,
        classifier: Optional[InterruptionClassifier] = None,
        composer: Optional[ContinuationComposer] = None,
    ):
        if not messages:
            raise ConfigurationError(code="INVALID_OPTIONS", message="messages must not be empty")
        self._provider = provider
        self._options = options or SendOptions()
        self._settings = cfg
        # 原始对话只读保存，继续请求总是基于它重新构造
        self._history = tuple(messages)

        auto_continue = self._options.auto_continue
        if auto_continue is None:
            auto_continue = cfg.auto_continue
        limit = self._options.max_auto_continue
        if limit is None:
            limit = cfg.max_auto_continue
        self._auto_continue = auto_continue

        self.state = AccumulationState(
            session_id=self._options.session_token or f"s-{uuid4().hex}",
            attempt_limit=limit if auto_continue else 0,
        )
        self.phase = SessionPhase.IDLE
        self._limiter = AttemptLimiter(self.state)
        self._decoder = decoder or ChunkDecoder()
        self._merger = merger or OverlapMerger.from_settings(cfg)
        self._classifier = classifier or InterruptionClassifier(
            use_heuristic=getattr(cfg, "truncation_heuristic", True)
        )
        self._composer = composer or ContinuationComposer.from_settings(cfg)

        self._resume = False
        self._started = False
        self._cancel_requested = False
        self._segment_task: Optional[asyncio.Future] = None
        self._segment_base = ""
        self._segment_text = ""
        self._settled = False
        self._signal_reported = False

    @classmethod
    def resume(
        cls,
        provider: ProviderClient,
        context: ContinuationContext,
        options: Optional[SendOptions] = None,
        **kwargs: Any,
    ) -> "StreamSession":
        """基于 ContinuationContext 创建手动继续会话。

        首个请求就是继续请求，并计为一次尝试；每次手动继续最多一次尝试。
        """

        options = dataclasses.replace(
            options or SendOptions(),
            auto_continue=True,
            max_auto_continue=1,
            session_token=(options.session_token if options else None) or context.session_token,
        )
        session = cls(provider, context.messages, options, **kwargs)
        session.state.visible_text = context.accumulated_text
        session._resume = True
        return session

    @property
    def session_token(self) -> str:
        return self.state.session_id

    def cancel(self) -> None:
        """请求中止会话：不再处理后续增量，也不再发起继续请求。"""

        if self.state.terminated:
            return
        self._cancel_requested = True
        if self._segment_task is not None and not self._segment_task.done():
            self._segment_task.cancel()

    async def run(
        self,
        on_update: Optional[UpdateCallback] = None,
        on_finish: Optional[FinishCallback] = None,
    ) -> StreamOutcome:
        if self._started:
            raise RuntimeError("StreamSession.run() can only be called once")
        self._started = True
        log_ctx: Dict[str, Any] = {
            "session_id": self.state.session_id,
            "provider": self._provider.name,
            "attempt_limit": self.state.attempt_limit,
        }
        self._log(logging.INFO, "Session started", log_ctx, resume=self._resume, streaming=self._options.streaming)

        try:
            messages = self._next_messages(log_ctx) if self._resume else list(self._history)
            while True:
                signal = await self._run_segment(messages, on_update, log_ctx)
                verdict = self._classifier.classify(signal, self.state.visible_text)
                self._log(
                    logging.DEBUG,
                    "Segment classified",
                    log_ctx,
                    attempt=self.state.attempt_count,
                    signal=signal.value if signal else None,
                    reason=verdict.reason,
                    interrupted=verdict.interrupted,
                )
                if not verdict.interrupted:
                    outcome = self._finish(
                        SessionPhase.COMPLETED,
                        _REASON_BY_SIGNAL.get(signal, TerminalReason.COMPLETED),
                    )
                    break
                self.phase = SessionPhase.INTERRUPTED
                if self._auto_continue and self._limiter.can_attempt():
                    messages = self._next_messages(log_ctx)
                    continue
                outcome = self._exhausted(signal)
                break
        except asyncio.CancelledError:
            outcome = self._finish(SessionPhase.CANCELLED, TerminalReason.CANCELLED)
            self._log(logging.INFO, "Session cancelled", log_ctx, visible_chars=len(outcome.full_visible_text))
            await _invoke(on_finish, outcome)
            if not self._cancel_requested:
                # 外部取消了运行 run() 的任务，需要继续向上传播
                raise
            return outcome
        except CancellationError:
            outcome = self._finish(SessionPhase.CANCELLED, TerminalReason.CANCELLED)
            self._log(logging.INFO, "Session cancelled", log_ctx, visible_chars=len(outcome.full_visible_text))
        except Exception as e:
            outcome = self._finish(SessionPhase.FAILED, TerminalReason.ERROR, error=e)
            self._log(
                logging.ERROR,
                "Session failed",
                log_ctx,
                error=str(e),
                error_code=getattr(e, "code", type(e).__name__),
                attempts=self.state.attempt_count,
            )
        else:
            self._log(
                logging.INFO,
                "Session finished",
                log_ctx,
                terminal_reason=outcome.terminal_reason.value,
                attempts=outcome.attempts_used,
                needs_manual_continue=outcome.needs_manual_continue,
                visible_chars=len(outcome.full_visible_text),
            )

        await _invoke(on_finish, outcome)
        return outcome

    async def events(self) -> AsyncIterator[StreamEvent]:
        """以异步迭代器的形式运行会话，依次产出 delta 事件和一个 final 事件。

        迭代提前结束时会话会被取消。
        """

        queue: "asyncio.Queue[StreamEvent]" = asyncio.Queue()

        def on_update(update: StreamUpdate) -> None:
            queue.put_nowait(StreamEvent(kind="delta", update=update))

        def on_finish(outcome: StreamOutcome) -> None:
            queue.put_nowait(StreamEvent(kind="final", outcome=outcome))

        runner = asyncio.ensure_future(self.run(on_update, on_finish))
        try:
            while True:
                event = await queue.get()
                yield event
                if event.kind == "final":
                    break
        finally:
            if not runner.done():
                self.cancel()
            await asyncio.gather(runner, return_exceptions=True)

    # ---- 内部实现 ----

    def _next_messages(self, log_ctx: Dict[str, Any]) -> List[ChatMessage]:
        attempt = self._limiter.record_attempt()
        self.phase = SessionPhase.CONTINUING
        self._log(
            logging.INFO,
            "Auto continue",
            log_ctx,
            attempt=attempt,
            visible_chars=len(self.state.visible_text),
        )
        return self._composer.compose(self._history, self.state)

    def _build_request(self, messages: List[ChatMessage]) -> ChatRequest:
        opts = self._options
        return ChatRequest(
            provider=self._provider.name,
            model=opts.model or self._settings.default_model,
            messages=messages,
            temperature=opts.temperature,
            top_p=opts.top_p,
            max_tokens=opts.max_tokens,
            tools=opts.tools,
            tool_choice=opts.tool_choice,
            session_token=self.state.session_id,
            extra_params=dict(opts.extra_params),
        )

    async def _run_segment(
        self,
        messages: List[ChatMessage],
        on_update: Optional[UpdateCallback],
        log_ctx: Dict[str, Any],
    ) -> TerminalSignal:
        if self._cancel_requested:
            raise CancellationError(code="CANCELLED", message="session cancelled", session_id=self.state.session_id)
        self.phase = SessionPhase.STREAMING
        self.state.reasoning_text = ""
        self.state.last_terminal_signal = None
        self._segment_base = self.state.visible_text
        self._segment_text = ""
        self._settled = False

        request = self._build_request(messages)
        self._log(
            logging.INFO,
            "Provider call",
            log_ctx,
            attempt=self.state.attempt_count,
            model=request.model,
            messages=len(request.messages),
        )
        self._segment_task = asyncio.ensure_future(self._consume(request, on_update))
        try:
            signal = await self._segment_task
        finally:
            self._segment_task = None

        trimmed = len(self._segment_base) + len(self._segment_text) - len(self.state.visible_text)
        if self._segment_base and trimmed:
            self._log(logging.INFO, "Overlap trimmed", log_ctx, attempt=self.state.attempt_count, trimmed=trimmed)
        return signal

    async def _consume(self, request: ChatRequest, on_update: Optional[UpdateCallback]) -> TerminalSignal:
        signal: Optional[TerminalSignal] = None
        self._signal_reported = False
        if self._options.streaming:
            async with contextlib.aclosing(self._provider.chat_stream(request)) as events:
                async for event in events:
                    if self._cancel_requested:
                        raise CancellationError(code="CANCELLED", message="session cancelled")
                    signal = await self._apply(self._decoder.decode(event), signal, on_update)
        else:
            result = await self._provider.chat(request)
            signal = await self._apply(self._decoder.decode_result(result), signal, on_update)

        if self._settled:
            # 增量阶段固定了拼接边界，片段结束后按完整片段重新合并一次
            self.state.visible_text = self._merger.merge(self._segment_base, self._segment_text)

        if signal is None:
            # 流正常结束但没有给出结束原因
            signal = TerminalSignal.UNKNOWN
            self.state.last_terminal_signal = signal
        if not self._signal_reported:
            await self._emit(on_update, ChunkDelta(terminal_signal=signal))
        return signal

    async def _apply(
        self,
        delta: ChunkDelta,
        signal: Optional[TerminalSignal],
        on_update: Optional[UpdateCallback],
    ) -> Optional[TerminalSignal]:
        """把一个增量并入累积状态并回调，返回当前片段记录的结束信号。

        明确的结束信号随所在增量立即回调；UNKNOWN 只先记录，
        片段结束时仍没有明确信号才回调，保证每个请求只回调一次结束信号。
        """

        reported: Optional[TerminalSignal] = None
        incoming = delta.terminal_signal
        # 第一个明确的信号生效；UNKNOWN 可以被后到的明确信号覆盖
        if incoming is not None and (
            signal is None or (signal is TerminalSignal.UNKNOWN and incoming is not TerminalSignal.UNKNOWN)
        ):
            signal = incoming
            self.state.last_terminal_signal = incoming
            if incoming is not TerminalSignal.UNKNOWN:
                reported = incoming

        if delta.content_fragment:
            self._segment_text += delta.content_fragment
            if self._settled:
                self.state.visible_text += delta.content_fragment
            else:
                self.state.visible_text = self._merger.merge(self._segment_base, self._segment_text)
                self._settled = len(self._segment_text) > self._merger.settle_length
        if reported is not None and self._settled:
            self.state.visible_text = self._merger.merge(self._segment_base, self._segment_text)
        if delta.reasoning_fragment:
            self.state.reasoning_text += delta.reasoning_fragment

        if delta.content_fragment or delta.reasoning_fragment or reported is not None:
            await self._emit(
                on_update,
                ChunkDelta(delta.content_fragment, delta.reasoning_fragment, reported),
            )
        return signal

    async def _emit(self, on_update: Optional[UpdateCallback], delta: ChunkDelta) -> None:
        if self._cancel_requested:
            raise CancellationError(code="CANCELLED", message="session cancelled")
        if delta.terminal_signal is not None:
            self._signal_reported = True
        await _invoke(
            on_update,
            StreamUpdate(
                session_token=self.state.session_id,
                content_fragment=delta.content_fragment,
                reasoning_fragment=delta.reasoning_fragment,
                terminal_signal=delta.terminal_signal,
                attempt=self.state.attempt_count,
                visible_text=self.state.visible_text,
            ),
        )

    def _exhausted(self, signal: Optional[TerminalSignal]) -> StreamOutcome:
        reason = TerminalReason.LENGTH_LIMITED if signal is TerminalSignal.LENGTH_LIMITED else TerminalReason.TRUNCATED
        context = ContinuationContext(
            messages=self._history,
            accumulated_text=self.state.visible_text,
            session_token=self.state.session_id,
            attempts_used=self.state.attempt_count,
        )
        return self._finish(SessionPhase.EXHAUSTED, reason, needs_manual_continue=True, context=context)

    def _finish(
        self,
        phase: SessionPhase,
        reason: TerminalReason,
        *,
        error: Optional[BaseException] = None,
        needs_manual_continue: bool = False,
        context: Optional[ContinuationContext] = None,
    ) -> StreamOutcome:
        self.phase = phase
        self.state.terminated = True
        return StreamOutcome(
            session_token=self.state.session_id,
            full_visible_text=self.state.visible_text,
            full_reasoning_text=self.state.reasoning_text,
            terminal_reason=reason,
            attempts_used=self.state.attempt_count,
            needs_manual_continue=needs_manual_continue,
            continuation_context=context,
            error=error,
        )

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
