# src/clients/inference_client.py

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from common.errors import ProviderError
from common.logging_utils import log_event


SYSTEM_INSTRUCTION = (
    "You are a helpful and concise AI assistant. "
    "Every response you give will be cryptographically committed on-chain for permanent auditability. "
    "Be accurate and precise."
)


@dataclass(frozen=True)
class CompletionResult:
    output_text: str
    input_tokens: int = 0
    output_tokens: int = 0


class _TransientProviderError(Exception):
    """429 / 5xx from the provider; retried within the same attempt."""


def _extract_output_text(data: Any) -> str:
    """
    Pull the assistant text out of a chat-completions payload.

    The text is returned exactly as the provider sent it; it is hashed
    byte-for-byte downstream, so no stripping or joining happens here.
    """
    if not isinstance(data, dict):
        raise ProviderError("provider_invalid_json: not an object")

    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ProviderError("provider_missing_choices")

    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        raise ProviderError("provider_missing_message")

    content = message.get("content")
    if content is None:
        return ""
    if not isinstance(content, str):
        raise ProviderError("provider_content_not_text")
    return content


class InferenceClient:
    """
    Wraps an OpenAI-compatible chat-completions endpoint (Groq by default).

    Flow:
      - One single-turn request per call: the fixed system instruction plus
        the recovered prompt as the user message.
      - Transport errors, timeouts, 429 and 5xx are retried inside the call
        with bounded exponential backoff; anything still failing surfaces as
        ProviderError so the pipeline can release the request.
      - Other HTTP errors and malformed payloads fail immediately.

    Metrics:
      - last_input_tokens / last_output_tokens mirror the provider's `usage`
        block for the last completed call.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        default_model: str,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        timeout_s: float = 60.0,
        max_attempts: int = 3,
        retry_wait_s: float = 0.5,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.max_tokens = int(max_tokens)
        self.temperature = float(temperature)
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.max_attempts = max(1, int(max_attempts))
        self.retry_wait_s = max(0.0, float(retry_wait_s))
        self._session = session
        self._owns_session = session is None

        # ---- Metrics fields ----
        self.last_input_tokens: int = 0
        self.last_output_tokens: int = 0

    # -------------------------------
    # Internal helpers
    # -------------------------------
    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _build_payload(self, model: str, prompt: str) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_INSTRUCTION},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }

    async def _post_once(self, payload: Dict[str, Any]) -> Any:
        session = self._get_session()
        async with session.post(
            f"{self.base_url}/chat/completions",
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        ) as resp:
            if resp.status == 429 or resp.status >= 500:
                raise _TransientProviderError(f"provider_http_{resp.status}")
            if resp.status != 200:
                body = await resp.text()
                raise ProviderError(f"provider_http_error: {resp.status}: {body[:200]}")
            try:
                return await resp.json(content_type=None)
            except ValueError as e:
                raise ProviderError("provider_invalid_json") from e

    # -------------------------------
    # Public API used by the pipeline
    # -------------------------------
    def resolve_model(self, model_id: Optional[str]) -> str:
        """The request's model id, or the configured default when it is blank."""
        if model_id and model_id.strip():
            return model_id.strip()
        return self.default_model

    async def complete(self, model_id: Optional[str], prompt: str) -> CompletionResult:
        model = self.resolve_model(model_id)
        payload = self._build_payload(model, prompt)

        retryer = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_s, max=8),
            retry=retry_if_exception_type(
                (aiohttp.ClientError, asyncio.TimeoutError, _TransientProviderError)
            ),
            reraise=True,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        log_event(
                            "provider_retry",
                            extra={
                                "model": model,
                                "attempt": attempt.retry_state.attempt_number,
                            },
                            level="warning",
                        )
                    data = await self._post_once(payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, _TransientProviderError) as e:
            raise ProviderError(f"provider_transport_error: {e!r}") from e

        output_text = _extract_output_text(data)

        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        self.last_input_tokens = int(usage.get("prompt_tokens") or 0)
        self.last_output_tokens = int(usage.get("completion_tokens") or 0)

        return CompletionResult(
            output_text=output_text,
            input_tokens=self.last_input_tokens,
            output_tokens=self.last_output_tokens,
        )

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
