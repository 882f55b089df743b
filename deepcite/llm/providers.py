"""Language-model providers behind one request/response shape.

Messages use the OpenAI chat layout (``role``/``content``, assistant
``tool_calls``, ``tool`` results). Providers with a different wire format
translate on the way in and out. Every provider reports a normalized finish
reason: ``stop``, ``length``, ``tool_calls`` or ``error``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import anthropic
import httpx
from openai import APIError as OpenAIAPIError
from openai import AsyncOpenAI

from deepcite.config import Settings, settings
from deepcite.errors import ProviderError

DEFAULT_SYSTEM_PROMPT = (
    "You are a research assistant. Provide thorough, evidence-based answers with clear citations."
)

FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_TOOL_CALLS = "tool_calls"
FINISH_ERROR = "error"

_FINISH_REASON_MAP = {
    "stop": FINISH_STOP,
    "end_turn": FINISH_STOP,
    "stop_sequence": FINISH_STOP,
    "length": FINISH_LENGTH,
    "max_tokens": FINISH_LENGTH,
    "tool_calls": FINISH_TOOL_CALLS,
    "tool_use": FINISH_TOOL_CALLS,
    "function_call": FINISH_TOOL_CALLS,
    "error": FINISH_ERROR,
}


def normalize_finish_reason(raw: Optional[str]) -> str:
    if not raw:
        return FINISH_STOP
    return _FINISH_REASON_MAP.get(raw.strip().lower(), FINISH_STOP)


@dataclass(slots=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass(slots=True)
class LlmRequest:
    messages: list[dict[str, Any]]
    system: Optional[str] = None
    max_tokens: int = 4096
    temperature: float = 0.3
    tools: Optional[list[dict[str, Any]]] = None
    tool_choice: str = "auto"  # auto | none
    json_mode: bool = False


@dataclass(slots=True)
class LlmResponse:
    text: str
    finish_reason: str = FINISH_STOP
    tool_calls: list[ToolCall] = field(default_factory=list)
    provider: str = ""
    model: str = ""

    @property
    def truncated(self) -> bool:
        return self.finish_reason == FINISH_LENGTH


class LlmProvider(Protocol):
    name: str
    model: str
    is_local: bool
    supports_tools: bool

    async def generate(self, request: LlmRequest) -> LlmResponse: ...


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _flatten_for_text_only(messages: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Fold tool traffic into plain user/assistant turns for providers without tool support."""
    flattened: list[dict[str, str]] = []
    for message in messages:
        role = message.get("role")
        content = message.get("content") or ""
        if role == "tool":
            flattened.append({"role": "user", "content": f"Tool result:\n{content}"})
        elif role == "assistant" and message.get("tool_calls"):
            calls = ", ".join(tc["function"]["name"] for tc in message["tool_calls"])
            flattened.append({"role": "assistant", "content": content or f"(called tools: {calls})"})
        elif role in ("user", "assistant"):
            flattened.append({"role": role, "content": str(content)})
    return flattened


class OllamaProvider:
    """Local Ollama server via its ``/api/chat`` endpoint."""

    is_local = True
    supports_tools = False

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        context_size: int | None = None,
        timeout_seconds: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.name = "ollama"
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self.model = model or settings.local_model
        self.context_size = context_size or settings.local_context_size
        self.timeout_seconds = timeout_seconds or settings.llm_timeout_seconds
        self._http_client = http_client

    def _build_body(self, request: LlmRequest) -> dict[str, Any]:
        messages = [{"role": "system", "content": request.system or DEFAULT_SYSTEM_PROMPT}]
        messages.extend(_flatten_for_text_only(request.messages))
        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {
                "temperature": request.temperature,
                "num_ctx": self.context_size,
                "num_predict": request.max_tokens,
            },
        }
        if request.json_mode:
            body["format"] = "json"
        return body

    async def generate(self, request: LlmRequest) -> LlmResponse:
        body = self._build_body(request)

        async def _do_request(client: httpx.AsyncClient) -> dict:
            response = await client.post(f"{self.base_url}/api/chat", json=body)
            response.raise_for_status()
            return response.json()

        try:
            if self._http_client is None:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    data = await _do_request(client)
            else:
                data = await _do_request(self._http_client)
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            raise ProviderError(self.name, f"invalid JSON response: {exc}") from exc

        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, dict) or message.get("content") is None:
            raise ProviderError(self.name, "response has no message content")

        return LlmResponse(
            text=str(message["content"]),
            finish_reason=normalize_finish_reason(data.get("done_reason")),
            provider=self.name,
            model=self.model,
        )


# provider -> (default base url, default model, extra headers)
OPENAI_COMPATIBLE_DEFAULTS: dict[str, tuple[str, str, dict[str, str]]] = {
    "openai": ("https://api.openai.com/v1", "gpt-4o", {}),
    "openrouter": ("https://openrouter.ai/api/v1", "openai/gpt-4o", {}),
    "mistral": ("https://api.mistral.ai/v1", "mistral-large-latest", {}),
    "github_models": (
        "https://models.github.ai/inference",
        "openai/gpt-4o",
        {"Accept": "application/vnd.github+json", "X-GitHub-Api-Version": "2022-11-28"},
    ),
    "azure_openai": ("https://api.openai.com/v1", "gpt-4o", {}),
}


class OpenAICompatibleProvider:
    """Any chat-completions endpoint reachable through the openai SDK."""

    is_local = False
    supports_tools = True

    def __init__(
        self,
        provider: str,
        api_key: str,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        client: Any = None,
    ):
        default_url, default_model, extra_headers = OPENAI_COMPATIBLE_DEFAULTS.get(
            provider, OPENAI_COMPATIBLE_DEFAULTS["openai"]
        )
        self.name = provider
        self.model = model or default_model
        if client is None:
            headers = dict(extra_headers)
            if provider == "azure_openai":
                headers["api-key"] = api_key
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url or default_url,
                default_headers=headers or None,
                timeout=timeout_seconds or settings.llm_timeout_seconds,
                max_retries=0,  # the router owns retries
            )
        self._client = client

    async def generate(self, request: LlmRequest) -> LlmResponse:
        messages: list[dict[str, Any]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.extend(request.messages)

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.tools:
            kwargs["tools"] = request.tools
            kwargs["tool_choice"] = request.tool_choice
        if request.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except OpenAIAPIError as exc:
            raise ProviderError(self.name, str(exc)) from exc

        if not getattr(response, "choices", None):
            raise ProviderError(self.name, "response has no choices")
        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=parse_tool_arguments(getattr(tc.function, "arguments", None)),
            )
            for tc in getattr(message, "tool_calls", None) or []
        ]
        finish_reason = normalize_finish_reason(getattr(choice, "finish_reason", None))
        if tool_calls:
            finish_reason = FINISH_TOOL_CALLS
        return LlmResponse(
            text=getattr(message, "content", None) or "",
            finish_reason=finish_reason,
            tool_calls=tool_calls,
            provider=self.name,
            model=self.model,
        )


class AnthropicProvider:
    """Anthropic Messages API; tool traffic is converted to content blocks."""

    is_local = False
    supports_tools = True

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        client: Any = None,
    ):
        self.name = "anthropic"
        self.model = model or "claude-sonnet-4-20250514"
        if client is None:
            client = anthropic.AsyncAnthropic(
                api_key=api_key,
                base_url=base_url or None,
                timeout=timeout_seconds or settings.llm_timeout_seconds,
                max_retries=0,  # the router owns retries
            )
        self._client = client

    @staticmethod
    def _to_anthropic_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = []
        for message in messages:
            role = message.get("role")
            if role == "system":
                continue

            if role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": message.get("tool_call_id", ""),
                    "content": str(message.get("content", "")),
                }
                # consecutive tool results belong to one user turn
                if converted and converted[-1]["role"] == "user" and isinstance(converted[-1]["content"], list):
                    converted[-1]["content"].append(block)
                else:
                    converted.append({"role": "user", "content": [block]})
                continue

            if role == "assistant" and message.get("tool_calls"):
                blocks: list[dict[str, Any]] = []
                if message.get("content"):
                    blocks.append({"type": "text", "text": message["content"]})
                for tc in message["tool_calls"]:
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": tc["id"],
                            "name": tc["function"]["name"],
                            "input": parse_tool_arguments(tc["function"].get("arguments")),
                        }
                    )
                converted.append({"role": "assistant", "content": blocks})
                continue

            converted.append({"role": role, "content": str(message.get("content") or "")})
        return converted

    @staticmethod
    def _to_anthropic_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "name": t["function"]["name"],
                "description": t["function"].get("description", ""),
                "input_schema": t["function"].get("parameters", {"type": "object", "properties": {}}),
            }
            for t in tools
        ]

    async def generate(self, request: LlmRequest) -> LlmResponse:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "system": request.system or DEFAULT_SYSTEM_PROMPT,
            "messages": self._to_anthropic_messages(request.messages),
            "temperature": request.temperature,
        }
        if request.tools:
            kwargs["tools"] = self._to_anthropic_tools(request.tools)
            kwargs["tool_choice"] = {"type": request.tool_choice}

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APIError as exc:
            raise ProviderError(self.name, str(exc)) from exc

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content or []:
            btype = getattr(block, "type", None)
            if btype == "text":
                text_parts.append(block.text)
            elif btype == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))

        return LlmResponse(
            text="".join(text_parts),
            finish_reason=normalize_finish_reason(getattr(response, "stop_reason", None)),
            tool_calls=tool_calls,
            provider=self.name,
            model=self.model,
        )


class GeminiProvider:
    """Google Gemini ``generateContent`` REST endpoint."""

    is_local = False
    supports_tools = False

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.name = "gemini"
        self.api_key = api_key
        self.base_url = (base_url or "https://generativelanguage.googleapis.com/v1beta").rstrip("/")
        self.model = model or "gemini-2.0-flash"
        self.timeout_seconds = timeout_seconds or settings.llm_timeout_seconds
        self._http_client = http_client

    def _build_body(self, request: LlmRequest) -> dict[str, Any]:
        contents = [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
            for m in _flatten_for_text_only(request.messages)
        ]
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "maxOutputTokens": request.max_tokens,
                "temperature": request.temperature,
            },
        }
        if request.system:
            body["systemInstruction"] = {"parts": [{"text": request.system}]}
        if request.json_mode:
            body["generationConfig"]["responseMimeType"] = "application/json"
        return body

    async def generate(self, request: LlmRequest) -> LlmResponse:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        body = self._build_body(request)

        async def _do_request(client: httpx.AsyncClient) -> dict:
            response = await client.post(url, json=body, headers={"x-goog-api-key": self.api_key})
            response.raise_for_status()
            return response.json()

        try:
            if self._http_client is None:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    data = await _do_request(client)
            else:
                data = await _do_request(self._http_client)
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            raise ProviderError(self.name, f"invalid JSON response: {exc}") from exc

        candidates = data.get("candidates") if isinstance(data, dict) else None
        if not candidates:
            raise ProviderError(self.name, "response has no candidates")
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(str(p.get("text", "")) for p in parts)
        return LlmResponse(
            text=text,
            finish_reason=normalize_finish_reason(candidate.get("finishReason")),
            provider=self.name,
            model=self.model,
        )


def build_local_provider(config: Settings | None = None) -> OllamaProvider:
    cfg = config or settings
    return OllamaProvider(
        base_url=cfg.ollama_base_url,
        model=cfg.local_model,
        context_size=cfg.local_context_size,
        timeout_seconds=cfg.llm_timeout_seconds,
    )


def build_cloud_provider(config: Settings | None = None) -> Optional[LlmProvider]:
    """Cloud provider for the configured name, or None when none is configured."""
    cfg = config or settings
    provider = (cfg.cloud_provider or "none").strip().lower()
    if provider == "none" or not cfg.cloud_api_key:
        return None

    base_url = cfg.cloud_base_url or None
    model = cfg.cloud_model or None
    if provider == "anthropic":
        return AnthropicProvider(
            api_key=cfg.cloud_api_key, base_url=base_url, model=model, timeout_seconds=cfg.llm_timeout_seconds
        )
    if provider == "gemini":
        return GeminiProvider(
            api_key=cfg.cloud_api_key, base_url=base_url, model=model, timeout_seconds=cfg.llm_timeout_seconds
        )
    if provider in OPENAI_COMPATIBLE_DEFAULTS:
        return OpenAICompatibleProvider(
            provider,
            api_key=cfg.cloud_api_key,
            base_url=base_url,
            model=model,
            timeout_seconds=cfg.llm_timeout_seconds,
        )
    raise ValueError(f"Unknown cloud provider: {cfg.cloud_provider}")
