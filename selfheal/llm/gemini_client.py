from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict

import httpx

from selfheal.errors import AIUnavailableError

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = (429, 503)


@dataclass(frozen=True)
class GeminiClient:
    """
    Secondary assistant via the Gemini REST API.

    Endpoint: POST {base_url}/models/{model}:generateContent?key=...
    Asks for a JSON mime type so the reply is usually parseable as-is.
    """

    api_key: str
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.5-flash"
    timeout_s: float = 120.0
    max_tokens: int = 8192
    temperature: float = 0.2
    max_retries: int = 2
    retry_backoff_s: float = 2.0
    transport: httpx.BaseTransport | None = None

    def generate(self, prompt: str) -> str:
        url = f"{self.base_url.rstrip('/')}/models/{self.model}:generateContent"
        payload: Dict[str, Any] = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": int(self.max_tokens),
                "responseMimeType": "application/json",
            },
        }
        logger.info("asking gemini %s (prompt: %dKB)", self.model, round(len(prompt) / 1024))

        attempts = max(1, int(self.max_retries))
        for attempt in range(1, attempts + 1):
            try:
                with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
                    r = client.post(url, params={"key": self.api_key}, json=payload)
            except (httpx.ReadError, httpx.RemoteProtocolError, httpx.ConnectError, httpx.TimeoutException) as e:
                if attempt < attempts:
                    time.sleep(self.retry_backoff_s * (2 ** (attempt - 1)))
                    continue
                raise AIUnavailableError(f"gemini_transient_error after {attempt} attempts: {e}") from e

            if r.status_code in _RETRYABLE_STATUS and attempt < attempts:
                time.sleep(self.retry_backoff_s * (2 ** (attempt - 1)))
                continue
            if r.status_code != 200:
                raise AIUnavailableError(f"gemini_http_{r.status_code}: {r.text[:500]}")
            try:
                data = r.json()
                text = data["candidates"][0]["content"]["parts"][0]["text"]
            except (ValueError, KeyError, IndexError, TypeError) as e:
                raise AIUnavailableError("gemini_empty_response") from e
            if not text:
                raise AIUnavailableError("gemini_empty_response")
            return str(text)

        raise AIUnavailableError("gemini_failed")
