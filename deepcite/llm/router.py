"""Routes generation requests between the local and cloud providers.

The routing strategy fixes which providers may be tried and in what order.
Each side has its own circuit breaker. When nothing allowed by the strategy
answers, the text result starts with ``UNAVAILABLE_MARKER`` so callers can
report the outage instead of inventing content.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from deepcite.config import Settings, settings
from deepcite.errors import CircuitOpenError, ProviderError, ProviderUnavailableError
from deepcite.llm.circuit_breaker import CircuitBreaker
from deepcite.llm.providers import (
    LlmProvider,
    LlmRequest,
    LlmResponse,
    ToolCall,
    build_cloud_provider,
    build_local_provider,
)
from deepcite.services.logger import log_llm_call

UNAVAILABLE_MARKER = "[LLM_UNAVAILABLE]"
FINAL_ANSWER_PROMPT = "Please provide your final answer based on all the information gathered."
TOOL_LIMIT_MESSAGE = "Tool call limit reached for this phase; no result."

ToolHandler = Callable[[ToolCall], Awaitable[str]]


class RoutingStrategy(str, Enum):
    LOCAL_ONLY = "local_only"
    LOCAL_WITH_CLOUD_FALLBACK = "local_with_cloud_fallback"
    CLOUD_PRIMARY = "cloud_primary"
    CLOUD_ONLY = "cloud_only"


def is_unavailable(text: Optional[str]) -> bool:
    return bool(text) and text.lstrip().startswith(UNAVAILABLE_MARKER)


def backoff_delay(
    attempt: int,
    rng: Callable[[], float] = random.random,
    base_seconds: float = 1.0,
    cap_seconds: float = 8.0,
) -> float:
    """Exponential backoff with +/-25% jitter: min(cap, base * 2^attempt) * U(0.75, 1.25)."""
    capped = min(cap_seconds, base_seconds * (2 ** max(0, attempt)))
    return capped * (0.75 + rng() * 0.5)


class LlmRouter:
    def __init__(
        self,
        local: Optional[LlmProvider] = None,
        cloud: Optional[LlmProvider] = None,
        *,
        strategy: RoutingStrategy | str | None = None,
        local_breaker: CircuitBreaker | None = None,
        cloud_breaker: CircuitBreaker | None = None,
        local_max_attempts: int | None = None,
        cloud_max_attempts: int | None = None,
        default_max_tokens: int | None = None,
        max_truncation_tokens: int | None = None,
        enable_tool_calling: bool | None = None,
        max_tool_calls: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.local = local
        self.cloud = cloud
        self.strategy = RoutingStrategy(strategy or settings.routing_strategy)
        self.local_breaker = local_breaker or CircuitBreaker(
            "local", settings.llm_circuit_threshold, settings.llm_circuit_cooldown_seconds
        )
        self.cloud_breaker = cloud_breaker or CircuitBreaker(
            "cloud", settings.llm_circuit_threshold, settings.llm_circuit_cooldown_seconds
        )
        self.local_max_attempts = max(1, local_max_attempts or settings.local_max_attempts)
        self.cloud_max_attempts = max(1, cloud_max_attempts or settings.cloud_max_attempts)
        self.default_max_tokens = default_max_tokens or settings.cloud_max_output_tokens
        self.max_truncation_tokens = max_truncation_tokens or settings.max_truncation_tokens
        self.enable_tool_calling = (
            settings.enable_tool_calling if enable_tool_calling is None else enable_tool_calling
        )
        self.max_tool_calls = max_tool_calls or settings.max_tool_calls_per_phase
        self._sleep = sleep
        self._rng = rng
        self.last_model_used: Optional[str] = None

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "LlmRouter":
        cfg = config or settings
        strategy = RoutingStrategy(cfg.routing_strategy)
        local = None if strategy == RoutingStrategy.CLOUD_ONLY else build_local_provider(cfg)
        cloud = None if strategy == RoutingStrategy.LOCAL_ONLY else build_cloud_provider(cfg)
        return cls(
            local,
            cloud,
            strategy=strategy,
            local_breaker=CircuitBreaker("local", cfg.llm_circuit_threshold, cfg.llm_circuit_cooldown_seconds),
            cloud_breaker=CircuitBreaker("cloud", cfg.llm_circuit_threshold, cfg.llm_circuit_cooldown_seconds),
            local_max_attempts=cfg.local_max_attempts,
            cloud_max_attempts=cfg.cloud_max_attempts,
            default_max_tokens=cfg.cloud_max_output_tokens,
            max_truncation_tokens=cfg.max_truncation_tokens,
            enable_tool_calling=cfg.enable_tool_calling,
            max_tool_calls=cfg.max_tool_calls_per_phase,
        )

    def route(self) -> list[tuple[LlmProvider, CircuitBreaker]]:
        """Providers the strategy allows, in the order they are tried."""
        local = (self.local, self.local_breaker)
        cloud = (self.cloud, self.cloud_breaker)
        order = {
            RoutingStrategy.LOCAL_ONLY: [local],
            RoutingStrategy.CLOUD_ONLY: [cloud],
            RoutingStrategy.CLOUD_PRIMARY: [cloud, local],
            RoutingStrategy.LOCAL_WITH_CLOUD_FALLBACK: [local, cloud],
        }[self.strategy]
        return [(provider, breaker) for provider, breaker in order if provider is not None]

    async def _call_provider(
        self,
        provider: LlmProvider,
        breaker: CircuitBreaker,
        request: LlmRequest,
        caller: str,
    ) -> tuple[Optional[LlmResponse], Optional[str]]:
        attempts = self.local_max_attempts if provider.is_local else self.cloud_max_attempts
        last_error: Optional[str] = None
        for attempt in range(attempts):
            started = time.monotonic()
            try:
                response = await provider.generate(request)
            except ProviderError as exc:
                last_error = str(exc)
                log_llm_call(
                    provider.name,
                    provider.model,
                    caller,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    finish_reason="error",
                    attempt=attempt + 1,
                    status="error",
                    error=last_error,
                )
                if attempt < attempts - 1:
                    delay = backoff_delay(
                        attempt, self._rng, settings.llm_backoff_base_seconds, settings.llm_backoff_cap_seconds
                    )
                    logger.warning(
                        f"{provider.name} attempt {attempt + 1} failed, retrying in {delay:.2f}s"
                    )
                    await self._sleep(delay)
                continue

            await breaker.record_success()
            log_llm_call(
                provider.name,
                provider.model,
                caller,
                duration_ms=int((time.monotonic() - started) * 1000),
                finish_reason=response.finish_reason,
                attempt=attempt + 1,
            )
            self.last_model_used = provider.model
            return response, None

        await breaker.record_failure()
        return None, last_error

    async def _generate_once(
        self,
        request: LlmRequest,
        caller: str,
        route: Optional[list[tuple[LlmProvider, CircuitBreaker]]] = None,
    ) -> LlmResponse:
        attempted: list[str] = []
        last_error: Optional[str] = None
        for provider, breaker in self.route() if route is None else route:
            if not await breaker.allow():
                attempted.append(f"{provider.name} (circuit open)")
                last_error = str(CircuitOpenError(provider.name, breaker.retry_after()))
                continue
            attempted.append(provider.name)
            response, error = await self._call_provider(provider, breaker, request, caller)
            if response is not None:
                return response
            last_error = error or last_error
        raise ProviderUnavailableError(attempted, last_error)

    async def complete(self, request: LlmRequest, caller: str = "") -> LlmResponse:
        """One routed generation, retried once with a larger budget when truncated.

        Raises ``ProviderUnavailableError`` when no allowed provider answered.
        """
        response = await self._generate_once(request, caller)
        if not response.truncated or request.max_tokens >= self.max_truncation_tokens:
            return response

        boosted = min(request.max_tokens * 2, self.max_truncation_tokens)
        logger.info(
            f"Response truncated ({response.provider}, max_tokens={request.max_tokens}); retrying with {boosted}"
        )
        try:
            return await self._generate_once(replace(request, max_tokens=boosted), caller)
        except ProviderUnavailableError as exc:
            logger.warning(f"Truncation retry failed, keeping truncated response: {exc}")
            return response

    def unavailable_text(self, error: ProviderUnavailableError) -> str:
        if self.strategy == RoutingStrategy.LOCAL_ONLY:
            hint = (
                "Local model did not respond. Start Ollama with a model loaded, "
                "or switch routing to a cloud provider."
            )
        elif self.strategy == RoutingStrategy.CLOUD_ONLY:
            hint = "Cloud provider returned no response. Check provider settings, API key and connectivity."
        else:
            hint = "Neither the local model nor the cloud provider responded."
        return f"{UNAVAILABLE_MARKER} {hint} {error}"

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        *,
        max_tokens: int | None = None,
        json_mode: bool = False,
        caller: str = "",
    ) -> str:
        request = LlmRequest(
            messages=[{"role": "user", "content": prompt}],
            system=system,
            max_tokens=max_tokens or self.default_max_tokens,
            json_mode=json_mode,
        )
        try:
            response = await self.complete(request, caller)
        except ProviderUnavailableError as exc:
            logger.error(f"LLM unavailable for {caller or 'request'}: {exc}")
            return self.unavailable_text(exc)
        return response.text

    async def _run_tool(self, handler: ToolHandler, call: ToolCall) -> str:
        try:
            return await handler(call)
        except Exception as exc:
            # failures go back to the model as the tool result
            logger.warning(f"Tool '{call.name}' failed: {exc}")
            return f"Tool '{call.name}' failed: {exc}"

    async def generate_with_tools(
        self,
        prompt: str,
        tools: list[dict[str, Any]],
        handler: ToolHandler,
        system: Optional[str] = None,
        *,
        max_calls: int | None = None,
        max_tokens: int | None = None,
        caller: str = "",
    ) -> str:
        """Let the model call tools until it answers or the per-phase call budget is spent."""
        tool_route = [(p, b) for p, b in self.route() if p.supports_tools]
        if not self.enable_tool_calling or not tools or not tool_route:
            return await self.generate(prompt, system, max_tokens=max_tokens, caller=caller)

        budget = max_calls or self.max_tool_calls
        max_tokens = max_tokens or self.default_max_tokens
        messages: list[dict[str, Any]] = [{"role": "user", "content": prompt}]
        calls_made = 0

        try:
            while calls_made < budget:
                request = LlmRequest(messages=list(messages), system=system, max_tokens=max_tokens, tools=tools)
                response = await self._generate_once(request, caller, route=tool_route)
                if not response.tool_calls:
                    return response.text

                messages.append(
                    {
                        "role": "assistant",
                        "content": response.text or None,
                        "tool_calls": [tc.to_openai() for tc in response.tool_calls],
                    }
                )
                for call in response.tool_calls:
                    if calls_made >= budget:
                        result = TOOL_LIMIT_MESSAGE
                    else:
                        calls_made += 1
                        result = await self._run_tool(handler, call)
                    messages.append({"role": "tool", "tool_call_id": call.id, "content": result})

            logger.info(f"Tool budget of {budget} calls spent for {caller or 'request'}, asking for final answer")
            messages.append({"role": "user", "content": FINAL_ANSWER_PROMPT})
            final = await self._generate_once(
                LlmRequest(
                    messages=messages,
                    system=system,
                    max_tokens=max_tokens,
                    tools=tools,
                    tool_choice="none",
                ),
                caller,
                route=tool_route,
            )
            return final.text
        except ProviderUnavailableError as exc:
            logger.warning(f"Tool-calling providers unavailable ({exc}), falling back to plain generation")
            return await self.generate(prompt, system, max_tokens=max_tokens, caller=caller)


_router: LlmRouter | None = None


def get_router() -> LlmRouter:
    global _router
    if _router is None:
        _router = LlmRouter.from_settings()
    return _router
