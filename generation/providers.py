"""
Completion providers.

A provider performs exactly one HTTP round-trip with one API key and reports
the outcome as a ProviderResponse. It never retries and never touches the key
pool; that is the completion client's job.

Providers:
  - GeminiProvider: Google Generative Language REST API via httpx
  - OpenAIProvider: OpenAI (or compatible) chat completions via the SDK

Select one with COMPLETION_PROVIDER=gemini|openai (default gemini).
"""

import enum
import json
import logging
import os
import re
from typing import Dict, Optional

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    AsyncOpenAI,
    AuthenticationError,
    InternalServerError,
    PermissionDeniedError,
    RateLimitError,
)
from pydantic import BaseModel

log = logging.getLogger(__name__)

# ── Model config ───────────────────────────────────────────────────────────────
COMPLETION_PROVIDER = os.getenv("COMPLETION_PROVIDER", "gemini")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL")

_DATA_URL_PREFIX_RE = re.compile(r"^data:image/[a-zA-Z+]+;base64,")


class ProviderStatus(str, enum.Enum):
    SUCCESS = "success"
    AUTH_ERROR = "auth_error"                    # unregistered caller / forbidden
    INVALID_CREDENTIAL = "invalid_credential"    # key rejected outright
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    CONTENT_BLOCKED = "content_blocked"
    OTHER = "other"


class ProviderResponse(BaseModel):
    """
    Outcome of one provider call.

    text is only set on SUCCESS; a SUCCESS without text means the body was
    structurally invalid. detail carries the provider's error message.
    """
    status: ProviderStatus
    text: Optional[str] = None
    detail: str = ""
    http_status: Optional[int] = None


def strip_data_url(image_base64: str) -> str:
    return _DATA_URL_PREFIX_RE.sub("", image_base64)


# ─── Gemini ────────────────────────────────────────────────────────────────────

class GeminiProvider:
    name = "gemini"

    def __init__(
        self,
        model: str = GEMINI_MODEL,
        base_url: str = GEMINI_BASE_URL,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _build_body(
        self, prompt: str, image_base64: Optional[str], temperature: float, max_tokens: int
    ) -> Dict:
        parts = [{"text": prompt}]
        if image_base64:
            parts.append({
                "inline_data": {
                    "mime_type": "image/png",
                    "data": strip_data_url(image_base64),
                }
            })
        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
            },
        }

    @staticmethod
    def classify_error(status_code: int, message: str) -> ProviderStatus:
        if status_code == 400 and "API key not valid" in message:
            return ProviderStatus.INVALID_CREDENTIAL
        if status_code in (401, 403):
            return ProviderStatus.AUTH_ERROR
        if status_code == 429 or status_code >= 500:
            return (
                ProviderStatus.RATE_LIMITED if status_code == 429
                else ProviderStatus.SERVER_ERROR
            )
        return ProviderStatus.OTHER

    @staticmethod
    def _error_message(body: str) -> str:
        try:
            return json.loads(body).get("error", {}).get("message") or body
        except (ValueError, AttributeError):
            return body

    @staticmethod
    def parse_success(data: Dict) -> ProviderResponse:
        candidates = data.get("candidates") or []
        content = candidates[0].get("content") if candidates else None
        if not content:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                return ProviderResponse(status=ProviderStatus.CONTENT_BLOCKED, detail=block_reason)
            return ProviderResponse(status=ProviderStatus.SUCCESS, detail="Invalid response structure")

        parts = content.get("parts") or []
        text = parts[0].get("text") if parts else None
        if not text:
            return ProviderResponse(status=ProviderStatus.SUCCESS, detail="No text content in response")
        return ProviderResponse(status=ProviderStatus.SUCCESS, text=text)

    async def complete(
        self,
        *,
        prompt: str,
        api_key: str,
        image_base64: Optional[str] = None,
        temperature: float = 0.1,
        max_tokens: int = 4000,
    ) -> ProviderResponse:
        url = f"{self.base_url}/v1beta/models/{self.model}:generateContent"
        body = self._build_body(prompt, image_base64, temperature, max_tokens)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(url, params={"key": api_key}, json=body)

        if resp.status_code != 200:
            message = self._error_message(resp.text)
            return ProviderResponse(
                status=self.classify_error(resp.status_code, message),
                detail=message,
                http_status=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError:
            return ProviderResponse(
                status=ProviderStatus.SUCCESS, detail="Response body is not JSON", http_status=200
            )
        result = self.parse_success(data)
        result.http_status = 200
        return result


# ─── OpenAI ────────────────────────────────────────────────────────────────────

class OpenAIProvider:
    name = "openai"

    def __init__(
        self,
        model: str = OPENAI_MODEL,
        base_url: Optional[str] = OPENAI_BASE_URL,
        system: str = "You are a helpful academic assistant. Output only what is asked.",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model
        self.base_url = base_url
        self.system = system
        self._transport = transport

    def _make_client(self, api_key: str) -> AsyncOpenAI:
        # One client per call, closed when the call ends
        # SDK retries are disabled: rotation across keys is the caller's job
        http_client = httpx.AsyncClient(transport=self._transport) if self._transport else None
        return AsyncOpenAI(
            api_key=api_key, base_url=self.base_url, max_retries=0, http_client=http_client
        )

    async def complete(
        self,
        *,
        prompt: str,
        api_key: str,
        image_base64: Optional[str] = None,
        temperature: float = 0.1,
        max_tokens: int = 4000,
    ) -> ProviderResponse:
        if image_base64:
            user_content = [
                {"type": "text", "text": prompt},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:image/png;base64,{strip_data_url(image_base64)}"},
                },
            ]
        else:
            user_content = prompt

        try:
            async with self._make_client(api_key) as client:
                response = await client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": self.system},
                        {"role": "user", "content": user_content},
                    ],
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
        except AuthenticationError as e:
            return ProviderResponse(status=ProviderStatus.INVALID_CREDENTIAL, detail=e.message, http_status=401)
        except PermissionDeniedError as e:
            return ProviderResponse(status=ProviderStatus.AUTH_ERROR, detail=e.message, http_status=403)
        except RateLimitError as e:
            return ProviderResponse(status=ProviderStatus.RATE_LIMITED, detail=e.message, http_status=429)
        except InternalServerError as e:
            return ProviderResponse(status=ProviderStatus.SERVER_ERROR, detail=e.message, http_status=e.status_code)
        except APIStatusError as e:
            return ProviderResponse(status=ProviderStatus.OTHER, detail=e.message, http_status=e.status_code)
        except APIConnectionError as e:
            return ProviderResponse(status=ProviderStatus.SERVER_ERROR, detail=str(e))

        if not response.choices:
            return ProviderResponse(status=ProviderStatus.SUCCESS, detail="Invalid response structure")
        choice = response.choices[0]
        if choice.finish_reason == "content_filter":
            return ProviderResponse(status=ProviderStatus.CONTENT_BLOCKED, detail="content_filter")
        text = choice.message.content if choice.message else None
        if not text:
            return ProviderResponse(status=ProviderStatus.SUCCESS, detail="No text content in response")
        return ProviderResponse(status=ProviderStatus.SUCCESS, text=text)


def make_provider(name: Optional[str] = None):
    """Build the provider named by `name` or COMPLETION_PROVIDER."""
    provider = (name or COMPLETION_PROVIDER or "").lower()
    if provider == "gemini":
        return GeminiProvider()
    if provider in ("openai", "openai_compatible"):
        return OpenAIProvider()
    raise ValueError(f"Unknown provider: {provider!r}")
