"""
Gemini client for semantic course matching.

Thin wrapper over the generateContent endpoint. Transport and provider
failures are translated into the errors.py taxonomy so callers can tell
"retry later", "try another key" and "never sent" apart.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from urllib3.exceptions import NewConnectionError

from .config import settings
from .errors import (
    ProviderMalformed,
    ProviderNotSent,
    ProviderRateLimited,
    ProviderRequestError,
    ProviderTransient,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUSES = {"RESOURCE_EXHAUSTED"}


@dataclass(frozen=True)
class InferenceReply:
    """Text output of one generateContent call plus token accounting."""
    text: str
    model_id: str
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


def _never_sent(exc: requests.exceptions.ConnectionError) -> bool:
    """True when the connection failed before any bytes went out."""
    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return True
    reason = exc.args[0] if exc.args else None
    return isinstance(getattr(reason, "reason", None), NewConnectionError)


def _error_envelope(resp: requests.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {}


class GeminiClient:
    """Sends bounded-context mapping prompts to Gemini."""

    def __init__(
        self,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        temperature: float = 0.3,
        max_output_tokens: int = 4000,
        session: Optional[requests.Session] = None,
    ):
        self.model = model or settings.GEMINI_MODEL
        self.base_url = (base_url or settings.GEMINI_API_URL).rstrip("/")
        self.timeout = timeout
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/{self.model}:generateContent"

    def _payload(self, system: str, prompt: str) -> Dict[str, Any]:
        return {
            "system_instruction": {"parts": [{"text": system}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
                "responseMimeType": "application/json",
            },
        }

    def generate(self, api_key: str, system: str, prompt: str) -> InferenceReply:
        """
        Send one generation request.

        Args:
            api_key: Credential secret to authenticate with
            system: System instruction text
            prompt: User prompt text

        Returns:
            InferenceReply with the response text and token usage

        Raises:
            ProviderNotSent: connection failed before the request was sent
            ProviderTransient: timeout, dropped connection or 5xx
            ProviderRateLimited: 429 / RESOURCE_EXHAUSTED
            ProviderRequestError: other 4xx (bad request, auth)
            ProviderMalformed: 200 response without usable text
        """
        try:
            resp = self.session.post(
                self.endpoint,
                headers={"Content-Type": "application/json", "x-goog-api-key": api_key},
                json=self._payload(system, prompt),
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            if _never_sent(e):
                raise ProviderNotSent(f"Could not connect to inference service: {e}") from e
            raise ProviderTransient(f"Connection to inference service failed: {e}") from e
        except requests.exceptions.Timeout as e:
            raise ProviderTransient(f"Inference request timed out after {self.timeout}s") from e

        if resp.status_code != 200:
            error = _error_envelope(resp)
            message = error.get("message") or resp.reason or "unknown error"
            status = error.get("status")
            if resp.status_code == 429 or status in RATE_LIMIT_STATUSES:
                raise ProviderRateLimited(message, resp.status_code)
            if resp.status_code >= 500:
                raise ProviderTransient(message, resp.status_code)
            raise ProviderRequestError(message, resp.status_code, status)

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderMalformed(f"Response body is not JSON: {e}") from e

        # Gemini response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderMalformed("Response has no candidate text") from e

        usage = data.get("usageMetadata") or {}
        return InferenceReply(
            text=text,
            model_id=data.get("modelVersion") or self.model,
            prompt_tokens=int(usage.get("promptTokenCount", 0) or 0),
            completion_tokens=int(usage.get("candidatesTokenCount", 0) or 0),
        )
