"""Google Gemini Provider 适配器（REST 接口）。

与 OpenAI 兼容协议的主要区别：
- URL: {base_url}/models/{model}:generateContent / :streamGenerateContent?alt=sse
- 认证: x-goog-api-key 请求头
- system 消息放入 systemInstruction，assistant 角色写作 "model"
- finishReason 使用 STOP / MAX_TOKENS / SAFETY / RECITATION 等大写取值
- thought=True 的 part 视为思考内容
"""

import json
from typing import Any, AsyncIterator, Dict, List, Tuple

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


class GeminiClient:
    """Gemini Provider 客户端实现。"""

    def __init__(self, config: ProviderConfig, cfg=settings):
        self._config = config
        self._settings = cfg
        self.name = config.name

    async def chat(self, req: ChatRequest) -> ChatResult:
        model, payload = self._build_payload(req)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(
                    f"{self._base_url()}/models/{model}:generateContent",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name)
        self._raise_for_status(resp.status_code, resp.text)
        data = resp.json()
        content, reasoning, finish_reason = self._split_candidate(data)
        return ChatResult(
            provider=self.name,
            model=req.model,
            choices=[
                ChatChoice(
                    index=0,
                    message=ChatMessage(role="assistant", content=content),
                    finish_reason=finish_reason,
                    reasoning_content=reasoning,
                )
            ],
            usage=self._parse_usage(data.get("usageMetadata")),
            raw=data,
        )

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        model, payload = self._build_payload(req)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url()}/models/{model}:streamGenerateContent",
                    params={"alt": "sse"},
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        self._raise_for_status(resp.status_code, body.decode("utf-8", errors="replace"))
                    async for data_str in iter_sse_payloads(resp):
                        try:
                            data = json.loads(data_str)
                            content, reasoning, finish_reason = self._split_candidate(data)
                        except (json.JSONDecodeError, AttributeError, TypeError) as e:
                            yield ChatStreamChunk(
                                provider=self.name,
                                model=req.model,
                                choices=[],
                                malformed=f"unparseable Gemini event: {e}",
                            )
                            continue
                        yield ChatStreamChunk(
                            provider=self.name,
                            model=req.model,
                            choices=[
                                ChatStreamChoice(
                                    index=0,
                                    delta=ChatDelta(role="assistant", content=content, reasoning_content=reasoning),
                                    finish_reason=finish_reason,
                                )
                            ],
                            usage=self._parse_usage(data.get("usageMetadata")),
                            raw=data,
                        )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name)

    # ---- 辅助方法 ----

    def _headers(self) -> Dict[str, str]:
        key = getattr(self._settings, f"{self.name}_api_key", None)
        if not key:
            raise ConfigurationError(code="MISSING_API_KEY", message=f"{self.name.upper()}_API_KEY not set")
        return {"x-goog-api-key": key, "Content-Type": "application/json", **self._config.extra_headers}

    def _base_url(self) -> str:
        base = getattr(self._settings, f"{self.name}_base_url", None) or self._config.base_url
        return base.rstrip("/")

    def _raise_for_status(self, status: int, body: str) -> None:
        if status == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit", http_status=429)
        if status >= 400:
            raise ApiError(code="API_ERROR", message=body, http_status=status)

    def _build_payload(self, req: ChatRequest) -> Tuple[str, Dict[str, Any]]:
        provider_model, max_tokens, temperature = resolve_model(self._config, req.model)
        system_parts = [{"text": m.content} for m in req.messages if m.role == "system"]
        contents = [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in req.messages
            if m.role != "system"
        ]
        generation_config: Dict[str, Any] = {
            "temperature": req.temperature if req.temperature is not None else temperature,
            "maxOutputTokens": req.max_tokens or max_tokens,
        }
        if req.top_p is not None:
            generation_config["topP"] = req.top_p
        payload: Dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        if req.tools:
            payload["tools"] = [{"functionDeclarations": [self._serialize_tool(t) for t in req.tools]}]
        if req.extra_params:
            generation_config.update(req.extra_params)
        return provider_model, payload

    @staticmethod
    def _split_candidate(data: Dict[str, Any]) -> Tuple[str, str, str | None]:
        """取第一个候选，返回 (正文, 思考内容, finishReason)。"""

        candidates = data.get("candidates") or []
        if not candidates:
            return "", "", None
        candidate = candidates[0]
        texts: List[str] = []
        thoughts: List[str] = []
        finish_reason = candidate.get("finishReason")
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "functionCall" in part:
                # Gemini 在函数调用时仍报告 STOP
                finish_reason = "tool_calls"
                continue
            text = part.get("text") or ""
            if part.get("thought"):
                thoughts.append(text)
            else:
                texts.append(text)
        return "".join(texts), "".join(thoughts), finish_reason

    @staticmethod
    def _parse_usage(usage_raw: Any) -> ChatUsage | None:
        if not usage_raw:
            return None
        return ChatUsage(
            prompt_tokens=usage_raw.get("promptTokenCount", 0),
            completion_tokens=usage_raw.get("candidatesTokenCount", 0),
            total_tokens=usage_raw.get("totalTokenCount", 0),
        )

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
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
            "name": tool.name,
            "description": tool.description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        }
