"""OpenAI 兼容协议的 Provider 适配器。

OpenAI、DeepSeek、火山方舟、阿里云百炼、Kimi、GLM 均使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

本模块负责：

1. 接收统一的 ChatRequest，转换为 chat/completions 请求体。
2. 调用 HTTP 接口并把网络/API 异常包装为 TransportError 子类。
3. 将响应 JSON（含 SSE 流式增量与 reasoning_content）解析为统一模型。
"""

import json
from typing import Any, AsyncIterator, Dict, List

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ApiError, ConfigurationError, NetworkError, RateLimitError
from chat_core.domain.models import (
    ChatChoice,
    ChatDelta,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ChatStreamChoice,
    ChatStreamChunk,
    ChatUsage,
    ToolDef,
)
from chat_core.providers.base import iter_sse_payloads
from chat_core.providers.registry import ProviderConfig, resolve_model

# 由适配器自身决定的字段，extra_params 不能覆盖
_RESERVED_KEYS = ("model", "messages", "stream")


class OpenAICompatibleClient:
    """OpenAI 兼容 Provider 客户端实现，按 ProviderConfig 区分厂商。"""

    def __init__(self, config: ProviderConfig, cfg=settings):
        self._config = config
        self._settings = cfg
        self.name = config.name

    # ---- 非流式 ----

    async def chat(self, req: ChatRequest) -> ChatResult:
        payload = self._build_payload(req, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(
                    f"{self._base_url()}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name)
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit", http_status=429)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        data = resp.json()
        return self._parse_response(data, req)

    # ---- 流式 ----

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        payload = self._build_payload(req, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url()}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit", http_status=429)
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise ApiError(
                            code="API_ERROR",
                            message=body.decode("utf-8", errors="replace"),
                            http_status=resp.status_code,
                        )
                    async for data_str in iter_sse_payloads(resp):
                        try:
                            payload_chunk = json.loads(data_str)
                        except json.JSONDecodeError as e:
                            yield ChatStreamChunk(
                                provider=self.name,
                                model=req.model,
                                choices=[],
                                malformed=f"invalid JSON: {e}",
                            )
                            continue
                        yield self._parse_stream_chunk(payload_chunk, req)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name)

    # ---- 辅助方法 ----

    def _api_key(self) -> str:
        key = getattr(self._settings, f"{self.name}_api_key", None)
        if not key:
            raise ConfigurationError(
                code="MISSING_API_KEY",
                message=f"{self.name.upper()}_API_KEY not set",
            )
        return key

    def _base_url(self) -> str:
        base = getattr(self._settings, f"{self.name}_base_url", None) or self._config.base_url
        return base.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key()}",
            "Content-Type": "application/json",
            **self._config.extra_headers,
        }

    def _build_payload(self, req: ChatRequest, stream: bool) -> dict:
        provider_model, max_tokens, temperature = resolve_model(self._config, req.model)
        payload: Dict[str, Any] = {
            "model": provider_model,
            "messages": [{"role": m.role, "content": m.content} for m in req.messages],
            "temperature": req.temperature if req.temperature is not None else temperature,
            "max_tokens": req.max_tokens or max_tokens,
            "stream": stream,
        }
        if req.top_p is not None:
            payload["top_p"] = req.top_p
        if req.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            payload["tool_choice"] = req.tool_choice
        if stream and req.session_token and self._config.session_metadata:
            payload["metadata"] = {"session_id": req.session_token}
        if req.extra_params:
            payload.update({k: v for k, v in req.extra_params.items() if k not in _RESERVED_KEYS})
        return payload

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        choices: list[ChatChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            msg = ch.get("message") or {}
            choices.append(
                ChatChoice(
                    index=ch.get("index", i),
                    message=ChatMessage(role="assistant", content=msg.get("content") or ""),
                    finish_reason=ch.get("finish_reason"),
                    reasoning_content=msg.get("reasoning_content") or "",
                )
            )
        return ChatResult(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=self._parse_usage(data.get("usage")),
            raw=data,
        )

    def _parse_stream_chunk(self, data: Any, req: ChatRequest) -> ChatStreamChunk:
        """解析流式响应中的单条增量，结构异常时标记为 malformed。"""

        try:
            choices: list[ChatStreamChoice] = []
            for i, ch in enumerate(data.get("choices") or []):
                delta_payload = ch.get("delta") or {}
                choices.append(
                    ChatStreamChoice(
                        index=ch.get("index", i),
                        delta=ChatDelta(
                            role=delta_payload.get("role"),
                            content=delta_payload.get("content") or "",
                            reasoning_content=delta_payload.get("reasoning_content") or "",
                        ),
                        finish_reason=ch.get("finish_reason"),
                    )
                )
            usage = self._parse_usage(data.get("usage"))
        except (AttributeError, TypeError) as e:
            return ChatStreamChunk(
                provider=self.name,
                model=req.model,
                choices=[],
                raw=data if isinstance(data, dict) else None,
                malformed=f"unexpected chunk structure: {e}",
            )
        return ChatStreamChunk(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=usage,
            raw=data,
        )

    @staticmethod
    def _parse_usage(usage_raw: Any) -> ChatUsage | None:
        if not usage_raw:
            return None
        return ChatUsage(
            prompt_tokens=usage_raw.get("prompt_tokens", 0),
            completion_tokens=usage_raw.get("completion_tokens", 0),
            total_tokens=usage_raw.get("total_tokens", 0),
        )

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        """把内部的 ToolDef 转成 function tool 描述。"""

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in tool.params.items():
            schema = param.schema or {"type": "string"}
            if param.description:
                schema = {**schema, "description": param.description}
            properties[name] = schema
            if param.required:
                required.append(name)
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": required,
                },
            },
        }
