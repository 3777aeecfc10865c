"""
Minimal client for an OpenAI-compatible ``/chat/completions`` endpoint.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import requests

from ..core.config import settings
from ..core.errors import LlmError


logger = logging.getLogger("llm_client")

RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


class ChatCompletionClient:
    def __init__(
        self,
        api_base: Optional[str] = None,
        api_key: Optional[str] = None,
        default_model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: int = 2,
        base_delay: float = 1.0,
        http: Any = requests,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_base = (api_base or settings.llm_api_base).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.llm_api_key
        self.default_model = default_model or settings.llm_default_model
        self.timeout = timeout or settings.llm_timeout_sec
        self.max_retries = max(0, max_retries)
        self.base_delay = base_delay
        self.http = http
        self.sleep = sleep

    @property
    def configured(self) -> bool:
        if self.api_key:
            return True
        # local OpenAI-compatible servers (Ollama, llama.cpp) run without keys
        return (urlparse(self.api_base).hostname or "") in _LOCAL_HOSTS

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def complete(self, messages: List[Dict[str, str]], model: Optional[str] = None, temperature: float = 0.0) -> str:
        if not self.configured:
            raise LlmError("Language model is not configured (set LLM_API_KEY).")
        body = {
            "model": model or self.default_model,
            "messages": messages,
            "temperature": temperature,
        }
        url = f"{self.api_base}/chat/completions"
        last_error = "no attempt made"
        for attempt in range(self.max_retries + 1):
            retryable = False
            try:
                response = self.http.post(url, json=body, headers=self._headers(), timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_error = f"request failed: {exc}"
                retryable = True
            except requests.RequestException as exc:
                raise LlmError(f"Language model request failed: {exc}") from exc
            else:
                if response.status_code // 100 == 2:
                    return self._extract_content(response)
                last_error = f"status {response.status_code}: {response.text[:200]}"
                retryable = response.status_code in RETRYABLE_STATUSES
            if not retryable or attempt >= self.max_retries:
                break
            delay = self.base_delay * (2 ** attempt)
            logger.warning(
                "LLM call failed (attempt %d/%d): %s. Retrying in %.1fs...",
                attempt + 1,
                self.max_retries + 1,
                last_error[:100],
                delay,
            )
            self.sleep(delay)
        raise LlmError(f"Language model unavailable ({last_error})")

    @staticmethod
    def _extract_content(response: requests.Response) -> str:
        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise LlmError(f"Language model returned an unexpected response: {exc}") from exc
        if not isinstance(content, str):
            raise LlmError("Language model returned no text content")
        return content
