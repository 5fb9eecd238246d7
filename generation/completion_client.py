"""
Completion client: one logical LLM request with retry across API keys.

Every attempt takes the next key from the pool, calls the provider once and
classifies the outcome:

  auth error          → record failure, wait, next key
  invalid credential  → record failure, next key immediately
  rate limit / 5xx    → record failure, wait, next key
  any other failure   → record failure, wait, next key
  empty success body  → record failure, wait, next key
  content block       → ContentBlockedError, no retry
  success with text   → record success, return

The budget is 3 × pool size attempts; after that CompletionExhaustedError.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from generation.errors import (
    CompletionExhaustedError,
    ConfigurationError,
    ContentBlockedError,
)
from generation.key_pool import ApiKeyPool
from generation.providers import ProviderResponse, ProviderStatus

log = logging.getLogger("generation.pipeline")

ATTEMPTS_PER_KEY = 3
RETRY_DELAY_SECONDS = 10.0
_LOG_BODY_LIMIT = 300

# Statuses that move on to the next key without waiting
_NO_WAIT = {ProviderStatus.INVALID_CREDENTIAL}


class CompletionClient:
    def __init__(
        self,
        pool: ApiKeyPool,
        provider,
        retry_delay: float = RETRY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pool = pool
        self.provider = provider
        self.retry_delay = retry_delay
        self._sleep = sleep

    async def complete(
        self,
        prompt: str,
        image_base64: Optional[str] = None,
        temperature: float = 0.1,
        max_tokens: int = 4000,
    ) -> str:
        """
        Return the completion text for prompt (plus optional base64 PNG).

        Raises:
            ConfigurationError:       blank prompt
            NoApiKeysError:           the pool is empty
            ContentBlockedError:      provider refused the prompt
            CompletionExhaustedError: every attempt failed
        """
        if not prompt or not prompt.strip():
            raise ConfigurationError("Prompt must not be empty")
        if self.pool.size == 0:
            # Raises NoApiKeysError
            self.pool.next_key()

        max_attempts = ATTEMPTS_PER_KEY * self.pool.size
        last_error: Optional[str] = None

        for attempt in range(1, max_attempts + 1):
            lease = self.pool.next_key()
            log.info(
                f"[LLM] Attempt {attempt}/{max_attempts} with API key "
                f"{lease.index + 1}/{self.pool.size}"
            )

            try:
                result: ProviderResponse = await self.provider.complete(
                    prompt=prompt,
                    api_key=lease.key,
                    image_base64=image_base64,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except ContentBlockedError:
                raise
            except Exception as e:
                # Transport failures (DNS, reset connections, ...) count as a failed attempt
                last_error = f"Request failed: {e}"
                log.warning(f"[LLM] API key {lease.index + 1} request error: {str(e)[:_LOG_BODY_LIMIT]}")
                self.pool.record_failure(lease, last_error)
                await self._wait(attempt, max_attempts)
                continue

            if result.status == ProviderStatus.CONTENT_BLOCKED:
                log.error(f"[LLM] Content blocked by provider: {result.detail}")
                raise ContentBlockedError(result.detail or "unspecified")

            if result.status == ProviderStatus.SUCCESS:
                if result.text:
                    self.pool.record_success(lease)
                    log.info(f"[LLM] API key {lease.index + 1} succeeded")
                    return result.text
                last_error = result.detail or "Invalid response structure"
                log.warning(f"[LLM] API key {lease.index + 1}: {last_error}")
                self.pool.record_failure(lease, last_error)
                await self._wait(attempt, max_attempts)
                continue

            last_error = self._describe(result)
            log.warning(
                f"[LLM] API key {lease.index + 1} failed ({result.status.value}): "
                f"{(result.detail or '')[:_LOG_BODY_LIMIT]}"
            )
            self.pool.record_failure(lease, last_error)
            if result.status not in _NO_WAIT:
                await self._wait(attempt, max_attempts)

        log.error(f"[LLM] Failed to generate content after {max_attempts} attempts")
        raise CompletionExhaustedError(max_attempts, last_error)

    async def _wait(self, attempt: int, max_attempts: int) -> None:
        if attempt < max_attempts and self.retry_delay > 0:
            await self._sleep(self.retry_delay)

    @staticmethod
    def _describe(result: ProviderResponse) -> str:
        code = f"HTTP {result.http_status}" if result.http_status else result.status.value
        if result.status == ProviderStatus.AUTH_ERROR:
            return f"Authentication error ({code})"
        if result.status == ProviderStatus.INVALID_CREDENTIAL:
            return "Invalid API key"
        if result.status == ProviderStatus.RATE_LIMITED:
            return f"Rate limited ({code})"
        if result.status == ProviderStatus.SERVER_ERROR:
            return f"Server error ({code})"
        return f"{code}: {(result.detail or '')[:_LOG_BODY_LIMIT]}"
