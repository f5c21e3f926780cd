"""Chat completion clients for the supported model providers."""

from typing import Any, Dict, List, Optional

import httpx

from .exceptions import (
    InvalidInputError, MissingAPIKeyError, NetworkError, ProviderError, RateLimitError
)
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 4096
DEFAULT_RETRY_AFTER = 60


class LLMResponse:
    """Text and token usage returned by a provider."""

    def __init__(self, content: str, usage: Optional[Dict[str, Any]] = None, model: Optional[str] = None):
        self.content = content
        self.usage = usage or {}
        self.model = model

    def __repr__(self) -> str:
        return f"LLMResponse(model={self.model!r}, chars={len(self.content)}, usage={self.usage!r})"


class LLMProvider:
    """Base class for providers.

    Subclasses implement ``_build_request`` and ``_parse_response``; status
    handling and transport errors are shared.
    """

    name = "base"
    api_url = ""

    def __init__(self, timeout: Optional[httpx.Timeout] = None, client: Optional[httpx.AsyncClient] = None):
        self._timeout = timeout or httpx.Timeout(60.0, connect=10.0)
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client for API calls."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def complete(
        self,
        model: str,
        messages: List[Dict[str, str]],
        api_key: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        json_output: bool = False
    ) -> LLMResponse:
        """
        Send one chat completion request.

        Raises:
            MissingAPIKeyError: On HTTP 401
            RateLimitError: On HTTP 429, with ``retry_after`` from the response header
            ProviderError: On HTTP 5xx
            InvalidInputError: On any other 4xx
            NetworkError: On timeouts and connection failures
        """
        headers, body = self._build_request(
            model=model,
            messages=messages,
            api_key=api_key,
            temperature=DEFAULT_TEMPERATURE if temperature is None else temperature,
            max_tokens=max_tokens or DEFAULT_MAX_TOKENS,
            json_output=json_output,
        )
        client = await self._get_client()

        try:
            response = await client.post(self.api_url, headers=headers, json=body)
        except httpx.TimeoutException as e:
            logger.warning(f"{self.name} request timed out for {model}: {str(e)}")
            raise NetworkError(f"{self.name} request timed out", code="ETIMEDOUT") from e
        except httpx.TransportError as e:
            logger.warning(f"{self.name} transport error for {model}: {str(e)}")
            raise NetworkError(f"{self.name} network error: {str(e)}") from e

        self._raise_for_status(response, model)

        data = response.json()
        content, usage = self._parse_response(data)
        logger.debug(f"{self.name} completion for {model}: {usage}")
        return LLMResponse(content=content, usage=usage, model=data.get("model", model))

    def _raise_for_status(self, response: httpx.Response, model: str):
        status = response.status_code
        if status < 400:
            return

        try:
            detail = response.json().get("error", {})
            message = detail.get("message") if isinstance(detail, dict) else str(detail)
        except (ValueError, AttributeError):
            message = None
        message = message or response.reason_phrase or "request failed"

        if status == 401:
            raise MissingAPIKeyError(model, provider=self.name)
        if status == 429:
            raise RateLimitError(
                f"Rate limit exceeded for {model}. Please try again later.",
                retry_after=_parse_retry_after(response.headers.get("retry-after")),
            )
        if status >= 500:
            raise ProviderError(f"{self.name} API error: {status} {message}", status, provider=self.name)
        raise InvalidInputError(f"{self.name} API error: {status} {message}", status_code=status)

    def _build_request(self, **kwargs) -> tuple:
        raise NotImplementedError

    def _parse_response(self, data: Dict[str, Any]) -> tuple:
        raise NotImplementedError

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _parse_retry_after(value: Optional[str]) -> int:
    try:
        return int(float(value)) if value is not None else DEFAULT_RETRY_AFTER
    except ValueError:
        return DEFAULT_RETRY_AFTER


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions."""

    name = "openai"
    api_url = "https://api.openai.com/v1/chat/completions"

    def _build_request(self, model, messages, api_key, temperature, max_tokens, json_output):
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        body = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_output:
            body["response_format"] = {"type": "json_object"}
        return headers, body

    def _parse_response(self, data):
        choices = data.get("choices") or [{}]
        content = ((choices[0].get("message") or {}).get("content") or "").strip()
        return content, data.get("usage") or {}


class AnthropicProvider(LLMProvider):
    """Anthropic messages API."""

    name = "anthropic"
    api_url = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"

    def _build_request(self, model, messages, api_key, temperature, max_tokens, json_output):
        headers = {
            "x-api-key": api_key,
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        body = {
            "model": model,
            "messages": [m for m in messages if m["role"] != "system"],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if system:
            body["system"] = system
        return headers, body

    def _parse_response(self, data):
        blocks = data.get("content") or []
        content = "".join(block.get("text", "") for block in blocks if block.get("type") == "text").strip()
        return content, data.get("usage") or {}


def create_providers(timeout: float = 60.0) -> Dict[str, LLMProvider]:
    """Default provider map keyed by provider name."""
    http_timeout = httpx.Timeout(timeout, connect=10.0)
    return {
        OpenAIProvider.name: OpenAIProvider(timeout=http_timeout),
        AnthropicProvider.name: AnthropicProvider(timeout=http_timeout),
    }
