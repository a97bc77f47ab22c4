"""HTTP client for the external AI completion service."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence

import httpx

from deferred_completion.config import settings

logger = logging.getLogger(__name__)

COMPLETIONS_PATH = "/completions"


@dataclass(frozen=True)
class ChatMessage:
    """A role-tagged message sent to the completion service."""

    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class CompletionResult:
    """Successful response from the completion service."""

    content: str
    finish_reason: str
    usage: Dict[str, int] = field(default_factory=dict)


class ExternalServiceError(Exception):
    """Raised when the completion service returns an error or cannot be reached.

    Args:
        message: Human-readable error message
        code: Machine-readable error code (stored as the record's finish_reason)
    """

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


def normalize_usage(usage: Optional[Dict[str, Any]]) -> Dict[str, int]:
    """Map service usage counters to input/output/total token counts."""
    usage = usage or {}
    input_tokens = usage.get("input_tokens", usage.get("prompt_tokens", 0)) or 0
    output_tokens = usage.get("output_tokens", usage.get("completion_tokens", 0)) or 0
    total_tokens = usage.get("total_tokens", input_tokens + output_tokens) or 0
    return {
        "input_tokens": int(input_tokens),
        "output_tokens": int(output_tokens),
        "total_tokens": int(total_tokens),
    }


def _error_from_payload(payload: Any) -> Optional[ExternalServiceError]:
    if not isinstance(payload, dict) or not isinstance(payload.get("error"), dict):
        return None
    error = payload["error"]
    code = str(error.get("code") or error.get("type") or "error")
    message = str(error.get("message") or code)
    return ExternalServiceError(message, code)


class CompletionClient:
    """Thin, stateless client for ``POST /completions``.

    Authenticates with a bearer token. Performs exactly one request per call:
    no retries and no per-call timeout, the transport timeout given at
    construction applies.

    Args:
        base_url: Base URL of the completion service (defaults to COMPLETION_API_BASE_URL)
        api_key: Bearer token (defaults to COMPLETION_API_KEY)
        timeout: Transport timeout in seconds (defaults to COMPLETION_TIMEOUT_SECONDS)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url or settings.completion_api_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.completion_api_key
        self.timeout = timeout if timeout is not None else settings.completion_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-load async HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
            )
        return self._client

    @staticmethod
    def build_request_body(
        messages: Sequence[ChatMessage],
        model_id: str,
        max_tokens: int,
        temperature: float,
        format_hint: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Build the JSON body of a completion request."""
        body: Dict[str, Any] = {
            "messages": [message.to_dict() for message in messages],
            "model": model_id,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if format_hint is not None:
            body["response_format"] = format_hint
        return body

    @staticmethod
    def parse_response(status_code: int, payload: Any) -> CompletionResult:
        """Turn a decoded response body into a result.

        Raises:
            ExternalServiceError: If the body carries an error or is malformed
        """
        error = _error_from_payload(payload)
        if error is not None:
            raise error
        if status_code >= 400:
            raise ExternalServiceError(
                f"Completion service returned HTTP {status_code}",
                f"http_{status_code}",
            )

        try:
            choice: Dict[str, Any] = payload["choices"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise ExternalServiceError("Completion response has no choices", "invalid_response") from e
        if not isinstance(choice, dict):
            raise ExternalServiceError("Completion choice is not an object", "invalid_response")

        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise ExternalServiceError("Completion message is not an object", "invalid_response")
        content = message.get("content") or ""
        if not isinstance(content, str):
            raise ExternalServiceError("Completion content is not a string", "invalid_response")

        usage = payload.get("usage")
        if usage is not None and not isinstance(usage, dict):
            raise ExternalServiceError("Completion usage is not an object", "invalid_response")
        try:
            normalized_usage = normalize_usage(usage)
        except (TypeError, ValueError) as e:
            raise ExternalServiceError("Completion usage counters are not numbers", "invalid_response") from e

        return CompletionResult(
            content=content,
            finish_reason=str(choice.get("finish_reason") or "stop"),
            usage=normalized_usage,
        )

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        model_id: str,
        max_tokens: int,
        temperature: float,
        format_hint: Optional[Dict[str, Any]] = None,
    ) -> CompletionResult:
        """Request a completion.

        Args:
            messages: Ordered role-tagged messages
            model_id: Backend model to invoke
            max_tokens: Upper bound on generated tokens
            temperature: Sampling temperature
            format_hint: Value for the service's ``response_format`` parameter, if any

        Returns:
            CompletionResult: Content, finish reason and usage counters

        Raises:
            ExternalServiceError: On an error payload, HTTP error or transport failure
        """
        body = self.build_request_body(messages, model_id, max_tokens, temperature, format_hint)

        try:
            response = await self.client.post(COMPLETIONS_PATH, json=body)
        except httpx.HTTPError as e:
            logger.error(f"Completion service request failed: {e}")
            raise ExternalServiceError(f"Completion service request failed: {e}", "transport_error") from e

        try:
            payload: Any = response.json()
        except ValueError:
            payload = None

        return self.parse_response(response.status_code, payload)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

