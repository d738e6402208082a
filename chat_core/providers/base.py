"""Provider 抽象接口。

上层 StreamSession 不直接依赖具体厂商的 HTTP 接口，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 OpenAICompatibleClient）。
- 负责：将 ChatRequest 转成具体 API 请求，并把响应解析为 ChatResult / ChatStreamChunk。

这样可以在不改会话代码的前提下接入更多厂商。
"""

from typing import AsyncIterator, Protocol

import httpx

from chat_core.domain.models import ChatRequest, ChatResult, ChatStreamChunk


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - chat(req): 执行一次非流式对话调用，返回统一的 ChatResult。
    - chat_stream(req): 执行一次流式对话调用，逐步产出 ChatStreamChunk。
    """

    name: str

    async def chat(self, req: ChatRequest) -> ChatResult:
        ...

    def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        ...


async def iter_sse_payloads(resp: httpx.Response) -> AsyncIterator[str]:
    """从 SSE 响应中逐行取出 data 字段，跳过空行与 [DONE]。"""

    async for line in resp.aiter_lines():
        if not line:
            continue
        data_str = line
        if data_str.startswith("data:"):
            data_str = data_str[5:].strip()
        elif data_str.startswith(("event:", "id:", ":")):
            continue
        else:
            data_str = data_str.strip()
        if not data_str or data_str == "[DONE]":
            continue
        yield data_str
