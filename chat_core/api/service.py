"""对外 API 服务模块。

提供简化的函数接口供上层应用（UI、CLI）调用：

- ask(): 发起一次逻辑回答，必要时自动继续，直到答完或次数用尽。
- continue_manually(): 基于上一次的 ContinuationContext 手动再继续一次。
- stream(): 与 ask() 相同，但以异步迭代器的形式产出事件。

每次调用都会创建独立的 StreamSession，模块内不保存任何会话状态。
"""

import contextlib
from typing import Any, AsyncIterator, Iterable, List, Mapping, Optional, Union

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError, ConfigurationError
from chat_core.domain.models import ChatMessage
from chat_core.domain.stream import ContinuationContext, SendOptions, StreamEvent, StreamOutcome
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers import create_provider
from chat_core.providers.base import ProviderClient
from chat_core.streaming.session import FinishCallback, StreamSession, UpdateCallback

MessageLike = Union[ChatMessage, Mapping[str, Any]]

_ROLES = ("system", "user", "assistant")


def _coerce_messages(messages: Iterable[MessageLike]) -> List[ChatMessage]:
    """允许直接传入 {"role": ..., "content": ...} 形式的字典。"""

    result: List[ChatMessage] = []
    for m in messages:
        if isinstance(m, ChatMessage):
            result.append(m)
            continue
        role = m.get("role")
        content = m.get("content")
        if role not in _ROLES or not isinstance(content, str):
            raise ConfigurationError(code="INVALID_MESSAGE", message=f"Invalid message: {dict(m)!r}")
        result.append(ChatMessage(role=role, content=content))
    return result


def _resolve_provider(provider: Optional[ProviderClient], options: SendOptions) -> ProviderClient:
    if provider is not None:
        return provider
    return create_provider(options.provider, settings)


def _new_session(
    messages: Iterable[MessageLike],
    options: Optional[SendOptions],
    provider: Optional[ProviderClient],
) -> StreamSession:
    options = options or SendOptions()
    return StreamSession(_resolve_provider(provider, options), _coerce_messages(messages), options)


async def ask(
    messages: Iterable[MessageLike],
    options: Optional[SendOptions] = None,
    on_update: Optional[UpdateCallback] = None,
    on_finish: Optional[FinishCallback] = None,
    provider: Optional[ProviderClient] = None,
) -> StreamOutcome:
    """发起一次逻辑回答。

    Args:
        messages: 对话消息，ChatMessage 或等价的字典
        options: 调用选项，未指定的字段使用配置中的默认值
        on_update: 每个增量的回调（可为协程函数）
        on_finish: 会话结束时的回调（可为协程函数），无论成功、失败或取消都会调用
        provider: 自定义 Provider 实例，默认按 options.provider 创建

    Returns:
        StreamOutcome，与传给 on_finish 的对象相同

    Raises:
        ConfigurationError: 选项、消息或 Provider 配置无效（在发出任何请求之前）
    """
    try:
        session = _new_session(messages, options, provider)
    except BusinessError as e:
        logger.error(f"Ask rejected: {e}", extra={"extra": {"error": str(e), "code": e.code}})
        raise
    return await session.run(on_update, on_finish)


async def continue_manually(
    context: ContinuationContext,
    options: Optional[SendOptions] = None,
    on_update: Optional[UpdateCallback] = None,
    on_finish: Optional[FinishCallback] = None,
    provider: Optional[ProviderClient] = None,
) -> StreamOutcome:
    """基于上一次结果中的 continuation_context 再继续一次。

    返回值与 ask() 相同；full_visible_text 包含之前已累积的内容。
    """
    options = options or SendOptions()
    try:
        session = StreamSession.resume(_resolve_provider(provider, options), context, options)
    except BusinessError as e:
        logger.error(f"Manual continue rejected: {e}", extra={"extra": {
            "session_id": context.session_token,
            "error": str(e),
            "code": e.code,
        }})
        raise
    return await session.run(on_update, on_finish)


async def stream(
    messages: Iterable[MessageLike],
    options: Optional[SendOptions] = None,
    provider: Optional[ProviderClient] = None,
) -> AsyncIterator[StreamEvent]:
    """以异步迭代器形式运行 ask()，提前退出迭代即取消会话。"""

    session = _new_session(messages, options, provider)
    async with contextlib.aclosing(session.events()) as events:
        async for event in events:
            yield event
