"""LLM client — HTTP connection to a text-generation backend.

The pipeline injects an LLM callable matching the protocol:

    async def __call__(self, stage: str, prompt: str, *,
                       temperature: float = 0.2, max_tokens: int = 1200) -> str: ...

`stage` identifies which pipeline stage is calling ("segmenter", "theme",
"characters"). Implementations use it for logging; the simplest ignore it.

HttpLLM is the real HTTP client for KoboldCpp, OpenAI completions and
OpenAI chat-completions backends, with bounded retries and per-attempt
credential rotation. Tests inject small stub callables instead.

Failures are reported through the LLMError family:

    RateLimited, ServerError    transient, retried with backoff
    AuthError, BadRequest       client errors, never retried
    MalformedResponse           the backend answered in an unexpected shape
"""

from __future__ import annotations

import asyncio
import logging
import random
import zlib
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal, Protocol

import httpx

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a deterministic JSON generator and story analyzer. "
    "Always return valid JSON without commentary."
)


# ---------------------------------------------------------------------------
# Protocol — every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(
        self,
        stage: str,
        prompt: str,
        *,
        temperature: float = 0.2,
        max_tokens: int = 1200,
    ) -> str: ...


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""


class RateLimited(LLMError):
    """HTTP 429 — quota or rate limit hit."""


class ServerError(LLMError):
    """HTTP 5xx, connection failure or timeout."""


class AuthError(LLMError):
    """HTTP 401/403 — the credential was rejected."""


class BadRequest(LLMError):
    """Any other HTTP 4xx."""


class MalformedResponse(LLMError):
    """The backend responded, but not in the expected wire format."""


TRANSIENT_ERRORS: tuple[type[LLMError], ...] = (RateLimited, ServerError)


def error_for_status(status: int) -> LLMError:
    message = f"LLM backend returned HTTP {status}"
    if status == 429:
        return RateLimited(message)
    if status in (401, 403):
        return AuthError(message)
    if 400 <= status < 500:
        return BadRequest(message)
    return ServerError(message)


# ---------------------------------------------------------------------------
# Retry policy and credential selection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff and jitter."""

    attempts: int = 3
    base_delay: float = 0.5  # seconds before the second attempt
    max_delay: float = 8.0
    jitter: float = 0.3  # max random seconds added to each delay

    def delay(self, attempt: int) -> float:
        """Delay after the 0-indexed `attempt` failed."""
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay


class KeyRotation:
    """Picks a credential for each attempt from a fixed pool.

    Selection is a pure function of (seed, attempt): no shared counter is
    kept, so concurrent calls never race on an index. HttpLLM seeds with a
    checksum of the prompt to spread calls across the pool, and successive
    retries of one call move to the next key.
    """

    def __init__(self, keys: Sequence[str]) -> None:
        self._keys = [k for k in keys if k]

    def __len__(self) -> int:
        return len(self._keys)

    def __call__(self, attempt: int, seed: int = 0) -> str:
        if not self._keys:
            return ""
        return self._keys[(seed + attempt) % len(self._keys)]


# ---------------------------------------------------------------------------
# HttpLLM — connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai", "openai_chat"]


class HttpLLM:
    """Async HTTP client for text-generation backends.

    Supported formats:
      "koboldcpp"    — POST /api/v1/generate        {"prompt": ...}
                       Response: {"results": [{"text": "..."}]}
      "openai"       — POST /v1/completions         {"model": ..., "prompt": ...}
                       Response: {"choices": [{"text": "..."}]}
      "openai_chat"  — POST /v1/chat/completions    {"model": ..., "messages": [...]}
                       Response: {"choices": [{"message": {"content": "..."}}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "koboldcpp".
        model:           Model identifier, used by the openai formats.
        timeout:         HTTP timeout in seconds. Defaults to 120.
        api_keys:        Optional credential pool; rotated per attempt and
                         takes precedence over api_key.
        retry:           Retry policy for transient failures.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
        api_keys: Sequence[str] = (),
        retry: RetryPolicy | None = None,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._keys = KeyRotation(list(api_keys) or [api_key])
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self._retry = retry or RetryPolicy()

    def _headers(self, api_key: str) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _build_request(
        self, prompt: str, temperature: float, max_tokens: int
    ) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai_chat":
            url = f"{self._base_url}/v1/chat/completions"
            body: dict = {
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
            if self._model:
                body["model"] = self._model
            return url, body

        if self._format == "openai":
            url = f"{self._base_url}/v1/completions"
            body = {"prompt": prompt, "temperature": temperature, "max_tokens": max_tokens}
            if self._model:
                body["model"] = self._model
            return url, body

        # koboldcpp (default)
        url = f"{self._base_url}/api/v1/generate"
        return url, {"prompt": prompt, "temperature": temperature, "max_length": max_tokens}

    def _parse_response(self, data: dict) -> str:
        """Extract the completion text from the response body."""
        if not isinstance(data, dict):
            raise MalformedResponse("Unexpected response format: body is not an object")

        if self._format == "openai_chat":
            choices = data.get("choices")
            try:
                content = choices[0]["message"]["content"]
            except (TypeError, IndexError, KeyError) as e:
                raise MalformedResponse(
                    "Unexpected response format from chat-completions backend"
                ) from e
            if not isinstance(content, str):
                raise MalformedResponse("Unexpected response format: empty chat content")
            return content

        if self._format == "openai":
            key, backend = "choices", "OpenAI-compatible"
        else:
            key, backend = "results", "KoboldCpp"
        items = data.get(key)
        try:
            text = items[0]["text"]
        except (TypeError, IndexError, KeyError) as e:
            raise MalformedResponse(f"Unexpected response format from {backend} backend") from e
        if not isinstance(text, str):
            raise MalformedResponse(f"Unexpected response format: {backend} text is not a string")
        return text

    async def _post(self, stage: str, url: str, body: dict, api_key: str) -> str:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers(api_key))
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise ServerError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise error_for_status(e.response.status_code) from e
        except httpx.TimeoutException as e:
            raise ServerError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            # dropped connections, protocol and proxy failures
            raise ServerError(f"LLM backend transport error: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponse("Unexpected response format: body is not JSON") from e
        text = self._parse_response(data)
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text

    async def __call__(
        self,
        stage: str,
        prompt: str,
        *,
        temperature: float = 0.2,
        max_tokens: int = 1200,
    ) -> str:
        url, body = self._build_request(prompt, temperature, max_tokens)
        seed = zlib.crc32(prompt.encode("utf-8"))
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        for attempt in range(self._retry.attempts):
            try:
                return await self._post(stage, url, body, self._keys(attempt, seed))
            except TRANSIENT_ERRORS as e:
                if attempt + 1 >= self._retry.attempts:
                    logger.error(
                        "llm stage=%s failed after %d attempts: %s",
                        stage, self._retry.attempts, e,
                    )
                    raise
                delay = self._retry.delay(attempt)
                logger.warning(
                    "llm stage=%s attempt %d/%d failed: %s; retrying in %.2fs",
                    stage, attempt + 1, self._retry.attempts, e, delay,
                )
                await asyncio.sleep(delay)
        raise LLMError(f"No attempts configured for stage {stage}")


# ---------------------------------------------------------------------------
# Construction from config
# ---------------------------------------------------------------------------

def llm_from_config(config: dict) -> HttpLLM | None:
    """Build an HttpLLM from the config's llm and retry sections.

    Returns None when no provider URL is configured; the pipeline then runs
    its deterministic fallbacks only.
    """
    conn = config.get("llm", {})
    if not conn.get("provider_url"):
        return None
    retry = config.get("retry", {})
    return HttpLLM(
        provider_url=conn["provider_url"],
        provider_format=conn.get("provider_format", "openai_chat"),
        model=conn.get("model", ""),
        timeout=float(conn.get("timeout", 120.0)),
        api_keys=conn.get("api_keys", []),
        retry=RetryPolicy(
            attempts=int(retry.get("attempts", 3)),
            base_delay=float(retry.get("base_delay", 0.5)),
            max_delay=float(retry.get("max_delay", 8.0)),
        ),
    )
