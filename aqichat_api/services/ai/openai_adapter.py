"""
OpenAI Chat Completions Adapter for the AQI Assistant

Provides function-calling completions with retry:
- Response parse failures retry after a short linear delay
- Rate limits retry with exponential backoff plus jitter
- Anything else fails the call without raising
"""

import asyncio
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from aqichat_core.config import settings
from aqichat_core.logger import logger


RATE_LIMIT_RE = re.compile(r"rate limit", re.IGNORECASE)


@dataclass(frozen=True)
class ToolCall:
    """A function call requested by the model"""
    id: str
    name: str
    arguments_json: str = "{}"

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "ToolCall":
        # Accept both the nested {"function": {...}} and the flat legacy shape
        function = raw.get("function") or {}
        return cls(
            id=str(raw.get("id") or ""),
            name=function.get("name") or raw.get("name") or "",
            arguments_json=function.get("arguments") or raw.get("arguments") or "{}",
        )


@dataclass
class CompletionResult:
    """Outcome of one completion request, after retries"""
    ok: bool
    message: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    attempts: int = 0

    @property
    def content(self) -> str:
        return (self.message.get("content") or "").strip()

    @property
    def tool_calls(self) -> List[ToolCall]:
        return [ToolCall.from_api(raw) for raw in self.message.get("tool_calls") or []]


class OpenAIAdapter:
    """
    Adapter for the OpenAI chat completions endpoint

    Never raises to callers; every failure comes back as
    CompletionResult(ok=False, error=...).
    """

    def __init__(
        self,
        api_key: str = None,
        model: str = None,
        url: str = None,
        timeout: float = None,
        temperature: float = None,
        max_tokens: int = None,
        max_attempts: int = None,
        parse_delay: float = None,
        backoff_base: float = None,
        backoff_jitter: float = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize OpenAI adapter

        Args:
            api_key: OpenAI API key (from settings if not provided)
            model: Chat model name (gpt-4o-mini by default)
            url: Chat completions endpoint
            timeout: Request timeout in seconds
            temperature: Sampling temperature
            max_tokens: Completion token budget
            max_attempts: Attempts per completion request
            parse_delay: Seconds per attempt to wait after an unparseable body
            backoff_base: First rate-limit delay in seconds, doubled per attempt
            backoff_jitter: Upper bound of random seconds added to backoff
            sleep: Awaitable delay function (replaced in tests)
            client: Optional preconfigured httpx client
        """
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_model
        self.url = url or settings.openai_url
        self.timeout = timeout or settings.openai_timeout
        self.temperature = temperature if temperature is not None else settings.openai_temperature
        self.max_tokens = max_tokens or settings.openai_max_tokens
        self.max_attempts = max_attempts or settings.llm_retry_attempts
        self.parse_delay = parse_delay if parse_delay is not None else settings.llm_parse_retry_delay
        self.backoff_base = backoff_base if backoff_base is not None else settings.llm_backoff_base
        self.backoff_jitter = backoff_jitter if backoff_jitter is not None else settings.llm_backoff_jitter
        self._sleep = sleep
        self.client = client or httpx.AsyncClient(timeout=self.timeout)

    def has_valid_key(self) -> bool:
        """True when a plausibly formed API key is configured"""
        return bool(self.api_key) and self.api_key.startswith("sk-")

    def backoff_delay(self, attempt: int) -> float:
        """Rate-limit delay before retrying after `attempt` failed"""
        return self.backoff_base * 2 ** (attempt - 1) + random.uniform(0, self.backoff_jitter)

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: str = "auto"
    ) -> CompletionResult:
        """
        Request a chat completion with retry

        Args:
            messages: Conversation in chat-completions message format
            tools: Optional function declarations; omitted means text-only
            tool_choice: Tool selection policy when tools are given

        Returns:
            CompletionResult with the first choice's message on success
        """
        payload: Dict[str, Any] = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        for attempt in range(1, self.max_attempts + 1):
            logger.info(f"Calling OpenAI API with model={self.model}, attempt={attempt}, tools={bool(tools)}")

            try:
                response = await self.client.post(self.url, headers=headers, json=payload)
            except httpx.TimeoutException:
                logger.error(f"OpenAI request timeout after {self.timeout}s")
                return CompletionResult(ok=False, error=f"OpenAI error: timeout after {self.timeout}s", attempts=attempt)
            except httpx.HTTPError as e:
                logger.error(f"OpenAI transport error: {e}")
                return CompletionResult(ok=False, error=f"OpenAI error: {e}", attempts=attempt)

            try:
                data = response.json()
                if not isinstance(data, dict):
                    raise ValueError("response body is not an object")
            except ValueError:
                if attempt >= self.max_attempts:
                    return CompletionResult(ok=False, error="OpenAI response parse error.", attempts=attempt)
                delay = self.parse_delay * attempt
                logger.warning(f"OpenAI response parse error, retrying in {delay:.2f}s")
                await self._sleep(delay)
                continue

            error = data.get("error")
            if response.status_code < 400 and not error:
                choices = data.get("choices") or [{}]
                return CompletionResult(ok=True, message=choices[0].get("message") or {}, attempts=attempt)

            message = None
            if isinstance(error, dict):
                message = error.get("message")
            elif isinstance(error, str):
                message = error
            message = message or f"{response.status_code} {response.reason_phrase}"

            is_rate = response.status_code == 429 or bool(RATE_LIMIT_RE.search(message))
            if is_rate and attempt < self.max_attempts:
                delay = self.backoff_delay(attempt)
                logger.warning(f"OpenAI rate limited (attempt {attempt}), backing off {delay:.2f}s")
                await self._sleep(delay)
                continue

            logger.error(f"OpenAI HTTP error: {response.status_code} - {message}")
            return CompletionResult(ok=False, error=f"OpenAI error: {message}", attempts=attempt)

        return CompletionResult(ok=False, error="OpenAI error: retries exceeded.", attempts=self.max_attempts)

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()
