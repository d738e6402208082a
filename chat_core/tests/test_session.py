import asyncio
from types import SimpleNamespace

import pytest

from chat_core.domain.exceptions import ApiError, CancellationError, ConfigurationError
from chat_core.domain.models import ChatChoice, ChatMessage, ChatResult
from chat_core.domain.stream import SendOptions, TerminalReason, TerminalSignal
from chat_core.streaming.merger import OverlapMerger
from chat_core.streaming.session import SessionPhase, StreamSession


def _chunk(content="", finish=None, reasoning=""):
    return {
        "choices": [
            {
                "index": 0,
                "delta": {"content": content, "reasoning_content": reasoning},
                "finish_reason": finish,
            }
        ]
    }


class ScriptedProvider:
    """按顺序回放预设片段的 Provider，每次调用消耗一个片段。"""

    name = "fake"

    def __init__(self, segments):
        self._segments = list(segments)
        self.requests = []

    async def chat(self, req):
        self.requests.append(req)
        content, finish = self._segments.pop(0)
        msg = ChatMessage(role="assistant", content=content)
        return ChatResult(provider="fake", model=req.model, choices=[ChatChoice(index=0, message=msg, finish_reason=finish)])

    async def chat_stream(self, req):
        self.requests.append(req)
        for event in self._segments.pop(0):
            yield event


class BlockingProvider:
    """先产出一个增量，然后一直等待 release。"""

    name = "fake"

    def __init__(self):
        self.release = asyncio.Event()
        self.calls = 0

    async def chat(self, req):
        raise AssertionError("chat should not be called")

    async def chat_stream(self, req):
        self.calls += 1
        yield _chunk("partial ")
        await self.release.wait()
        yield _chunk("never seen", finish="stop")


STORY = [ChatMessage(role="user", content="Tell me a story")]

FOX_SEGMENTS = [
    [_chunk("Once upon "), _chunk("a ti"), _chunk(finish="length")],
    [_chunk("ti me there "), _chunk("was a fox."), _chunk(finish="stop")],
]


@pytest.mark.asyncio
async def test_auto_continue_merges_split_word():
    provider = ScriptedProvider(FOX_SEGMENTS)
    finals = []
    session = StreamSession(provider, STORY, SendOptions(auto_continue=True, max_auto_continue=1))
    outcome = await session.run(on_finish=finals.append)

    assert outcome.full_visible_text == "Once upon a time there was a fox."
    assert outcome.attempts_used == 1
    assert outcome.terminal_reason is TerminalReason.COMPLETED
    assert not outcome.needs_manual_continue
    assert finals == [outcome]
    assert len(provider.requests) == 2
    assert session.phase is SessionPhase.COMPLETED

    follow_up = provider.requests[1].messages
    assert [m.role for m in follow_up] == ["user", "assistant", "user"]
    assert follow_up[1].content == "Once upon a ti"
    assert provider.requests[0].session_token == provider.requests[1].session_token == outcome.session_token


@pytest.mark.asyncio
async def test_zero_limit_requests_manual_continue():
    provider = ScriptedProvider(FOX_SEGMENTS)
    outcome = await StreamSession(provider, STORY, SendOptions(max_auto_continue=0)).run()

    assert outcome.needs_manual_continue
    assert outcome.full_visible_text == "Once upon a ti"
    assert outcome.terminal_reason is TerminalReason.LENGTH_LIMITED
    assert outcome.attempts_used == 0
    assert len(provider.requests) == 1
    assert outcome.continuation_context.accumulated_text == "Once upon a ti"
    assert list(outcome.continuation_context.messages) == STORY


@pytest.mark.asyncio
async def test_completed_issues_single_call():
    provider = ScriptedProvider([[_chunk("Hello"), _chunk(" there.", finish="stop")]])
    outcome = await StreamSession(provider, STORY).run()

    assert len(provider.requests) == 1
    assert outcome.full_visible_text == "Hello there."
    assert not outcome.needs_manual_continue
    assert outcome.attempts_used == 0


@pytest.mark.asyncio
async def test_auto_continue_disabled():
    provider = ScriptedProvider(FOX_SEGMENTS)
    outcome = await StreamSession(provider, STORY, SendOptions(auto_continue=False, max_auto_continue=3)).run()

    assert outcome.needs_manual_continue
    assert len(provider.requests) == 1
    assert outcome.attempts_used == 0


@pytest.mark.asyncio
async def test_attempts_never_exceed_limit():
    segments = [[_chunk("part "), _chunk(finish="length")]] * 5
    provider = ScriptedProvider(segments)
    session = StreamSession(provider, STORY, SendOptions(max_auto_continue=3))
    outcome = await session.run()

    assert len(provider.requests) == 4
    assert outcome.attempts_used == 3
    assert session.state.attempt_count <= session.state.attempt_limit
    assert outcome.needs_manual_continue
    assert session.phase is SessionPhase.EXHAUSTED


@pytest.mark.asyncio
async def test_updates_in_order_and_reasoning_reset():
    provider = ScriptedProvider(
        [
            [_chunk(reasoning="think1"), _chunk("Hello,"), _chunk(finish="length")],
            [_chunk(reasoning="think2"), _chunk(" world."), _chunk(finish="stop")],
        ]
    )
    updates = []

    async def on_update(update):
        updates.append(update)

    outcome = await StreamSession(provider, STORY, SendOptions(max_auto_continue=2)).run(on_update)

    assert outcome.full_visible_text == "Hello, world."
    assert outcome.full_reasoning_text == "think2"
    assert [u.attempt for u in updates] == [0, 0, 0, 1, 1, 1]
    assert [u.reasoning_fragment for u in updates if u.reasoning_fragment] == ["think1", "think2"]
    assert [u.terminal_signal for u in updates if u.terminal_signal] == [
        TerminalSignal.LENGTH_LIMITED,
        TerminalSignal.COMPLETED,
    ]
    assert updates[-1].visible_text == "Hello, world."


@pytest.mark.asyncio
async def test_heuristic_continues_without_finish_reason():
    provider = ScriptedProvider([[_chunk("The list includes:")], [_chunk(" apples and pears.")]])
    updates = []
    outcome = await StreamSession(provider, STORY, SendOptions(max_auto_continue=1)).run(updates.append)

    assert len(provider.requests) == 2
    assert outcome.full_visible_text == "The list includes: apples and pears."
    # 缺少结束原因时每个片段补发一次 UNKNOWN
    assert [u.terminal_signal for u in updates if u.terminal_signal] == [TerminalSignal.UNKNOWN] * 2


@pytest.mark.asyncio
async def test_non_streaming_mode():
    provider = ScriptedProvider([("Hello", "length"), (" world.", "stop")])
    outcome = await StreamSession(provider, STORY, SendOptions(streaming=False, max_auto_continue=1)).run()

    assert outcome.full_visible_text == "Hello world."
    assert outcome.attempts_used == 1
    assert len(provider.requests) == 2


@pytest.mark.asyncio
async def test_cancel_mid_stream():
    provider = BlockingProvider()
    session = StreamSession(provider, STORY)
    updates, finals = [], []
    first = asyncio.Event()

    def on_update(update):
        updates.append(update)
        first.set()

    task = asyncio.create_task(session.run(on_update, finals.append))
    await first.wait()
    session.cancel()
    outcome = await task
    provider.release.set()
    await asyncio.sleep(0)

    assert outcome.terminal_reason is TerminalReason.CANCELLED
    assert outcome.cancelled
    assert outcome.error is None
    assert outcome.full_visible_text == "partial "
    assert len(updates) == 1
    assert finals == [outcome]
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_external_task_cancellation_still_reports():
    provider = BlockingProvider()
    session = StreamSession(provider, STORY)
    finals = []
    first = asyncio.Event()

    task = asyncio.create_task(session.run(lambda u: first.set(), finals.append))
    await first.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert finals[0].terminal_reason is TerminalReason.CANCELLED
    assert finals[0].full_visible_text == "partial "


@pytest.mark.asyncio
async def test_cancel_before_run():
    provider = ScriptedProvider(FOX_SEGMENTS)
    session = StreamSession(provider, STORY)
    session.cancel()
    outcome = await session.run()

    assert outcome.cancelled
    assert provider.requests == []


@pytest.mark.asyncio
async def test_transport_error_stops_session():
    class FailingProvider(ScriptedProvider):
        async def chat_stream(self, req):
            self.requests.append(req)
            yield _chunk("Half an ans")
            raise ApiError(code="API_ERROR", message="upstream 502", http_status=502)

    provider = FailingProvider([])
    finals = []
    outcome = await StreamSession(provider, STORY, SendOptions(max_auto_continue=3)).run(on_finish=finals.append)

    assert outcome.terminal_reason is TerminalReason.ERROR
    assert isinstance(outcome.error, ApiError)
    assert outcome.full_visible_text == "Half an ans"
    assert not outcome.needs_manual_continue
    assert len(provider.requests) == 1
    assert finals == [outcome]
    with pytest.raises(ApiError):
        outcome.raise_for_error()


@pytest.mark.asyncio
async def test_provider_cancellation_is_not_a_failure():
    class AbortingProvider(ScriptedProvider):
        async def chat_stream(self, req):
            self.requests.append(req)
            yield _chunk("Some text")
            raise CancellationError(code="CANCELLED", message="aborted by caller")

    outcome = await StreamSession(AbortingProvider([]), STORY).run()
    assert outcome.cancelled
    assert outcome.error is None
    assert outcome.full_visible_text == "Some text"


@pytest.mark.asyncio
async def test_events_iterator():
    provider = ScriptedProvider(FOX_SEGMENTS)
    session = StreamSession(provider, STORY, SendOptions(max_auto_continue=1))
    events = [e async for e in session.events()]

    assert events[-1].kind == "final"
    assert all(e.kind == "delta" for e in events[:-1])
    assert events[-1].outcome.full_visible_text == "Once upon a time there was a fox."


@pytest.mark.asyncio
async def test_closing_events_iterator_cancels_session():
    provider = BlockingProvider()
    session = StreamSession(provider, STORY)
    gen = session.events()
    first = await gen.__anext__()
    await gen.aclose()

    assert first.kind == "delta"
    assert session.phase is SessionPhase.CANCELLED


@pytest.mark.asyncio
async def test_manual_continue_resumes_context():
    first = await StreamSession(ScriptedProvider(FOX_SEGMENTS), STORY, SendOptions(max_auto_continue=0)).run()
    provider = ScriptedProvider([[_chunk("ti me there was a fox.", finish="stop")]])

    session = StreamSession.resume(provider, first.continuation_context)
    outcome = await session.run()

    assert outcome.full_visible_text == "Once upon a time there was a fox."
    assert outcome.attempts_used == 1
    assert outcome.session_token == first.session_token
    assert len(provider.requests) == 1
    assert provider.requests[0].messages[-1].meta.get("continuation") is True


@pytest.mark.asyncio
async def test_manual_continue_allows_single_attempt():
    first = await StreamSession(ScriptedProvider(FOX_SEGMENTS), STORY, SendOptions(max_auto_continue=0)).run()
    provider = ScriptedProvider([[_chunk(" still going"), _chunk(finish="length")]] * 3)

    outcome = await StreamSession.resume(provider, first.continuation_context, SendOptions(max_auto_continue=5)).run()

    assert len(provider.requests) == 1
    assert outcome.needs_manual_continue
    assert outcome.attempts_used == 1


@pytest.mark.asyncio
async def test_concurrent_sessions_are_isolated():
    a = ScriptedProvider([[_chunk("alpha", finish="stop")]])
    b = ScriptedProvider([[_chunk("beta", finish="stop")]])
    out_a, out_b = await asyncio.gather(StreamSession(a, STORY).run(), StreamSession(b, STORY).run())

    assert out_a.full_visible_text == "alpha"
    assert out_b.full_visible_text == "beta"
    assert out_a.session_token != out_b.session_token


@pytest.mark.asyncio
async def test_caller_session_token_is_forwarded():
    provider = ScriptedProvider([[_chunk("ok", finish="stop")]])
    outcome = await StreamSession(provider, STORY, SendOptions(session_token="conv-42")).run()

    assert outcome.session_token == "conv-42"
    assert provider.requests[0].session_token == "conv-42"


@pytest.mark.asyncio
async def test_run_only_once():
    session = StreamSession(ScriptedProvider([[_chunk("ok", finish="stop")]]), STORY)
    await session.run()
    with pytest.raises(RuntimeError):
        await session.run()


def test_invalid_options_rejected_before_any_call():
    with pytest.raises(ConfigurationError):
        SendOptions(max_auto_continue=-1)
    with pytest.raises(ConfigurationError):
        StreamSession(ScriptedProvider([]), [])


@pytest.mark.asyncio
async def test_long_repeated_tail_is_trimmed_after_segment_ends():
    first = " ".join(f"word{i}" for i in range(80))
    second = first[-260:] + " and then the story ends."
    pieces = [second[i:i + 10] for i in range(0, len(second), 10)]
    provider = ScriptedProvider([
        [_chunk(first, finish="length")],
        [_chunk(p) for p in pieces] + [_chunk(finish="stop")],
    ])
    updates = []
    outcome = await StreamSession(provider, STORY, SendOptions(max_auto_continue=1)).run(updates.append)

    assert outcome.full_visible_text == first + " and then the story ends."
    assert outcome.full_visible_text == OverlapMerger().merge(first, second)
    assert updates[-1].terminal_signal is TerminalSignal.COMPLETED
    assert updates[-1].visible_text == outcome.full_visible_text


@pytest.mark.asyncio
async def test_malformed_chunk_does_not_report_extra_signal():
    provider = ScriptedProvider([[{"choices": "nope"}, _chunk("Hello."), _chunk(finish="stop")]])
    updates = []
    outcome = await StreamSession(provider, STORY).run(updates.append)

    signals = [u.terminal_signal for u in updates if u.terminal_signal is not None]
    assert signals == [TerminalSignal.COMPLETED]
    assert outcome.terminal_reason is TerminalReason.COMPLETED
    assert outcome.full_visible_text == "Hello."


@pytest.mark.asyncio
async def test_provider_stream_closed_on_cancel():
    class ClosingProvider:
        name = "fake"

        def __init__(self):
            self.closed = False

        async def chat(self, req):
            raise AssertionError("chat should not be called")

        async def chat_stream(self, req):
            try:
                yield _chunk("one ")
                yield _chunk("two ")
                yield _chunk("three", finish="stop")
            finally:
                self.closed = True

    provider = ClosingProvider()
    session = StreamSession(provider, STORY)
    outcome = await session.run(lambda u: session.cancel())

    assert outcome.cancelled
    assert outcome.full_visible_text == "one "
    assert provider.closed


def test_inconsistent_merge_settings_rejected():
    cfg = SimpleNamespace(
        auto_continue=True,
        max_auto_continue=3,
        default_model="chat",
        merge_tail_window=50,
        merge_max_overlap=80,
        merge_min_overlap=20,
    )
    with pytest.raises(ConfigurationError) as exc:
        StreamSession(ScriptedProvider([]), STORY, cfg=cfg)
    assert exc.value.code == "INVALID_OPTIONS"
