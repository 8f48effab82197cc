import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class LLMUnavailableError(Exception):
    """The completion endpoint could not produce a reply in time."""


def _provider_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"].strip()
    return response.text.strip() or f"HTTP {response.status_code}"


def _completion_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content")
    return content.strip() if isinstance(content, str) else ""


class LLMClient:
    """Pass-through client for an OpenAI-compatible chat-completions endpoint.

    One instance is created per process at startup and closed at shutdown.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        timeout_seconds: float,
        system_prompt: str = "",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.system_prompt = system_prompt
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 8.0)),
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def complete(self, prompt: str) -> str:
        if not self.configured:
            raise LLMUnavailableError("LLM API key is not configured.")

        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt[:4000]})

        try:
            response = self._client.post(
                "/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"model": self.model, "messages": messages, "temperature": 0.4},
            )
        except httpx.TimeoutException as exc:
            raise LLMUnavailableError("LLM request timed out.") from exc
        except httpx.HTTPError as exc:
            raise LLMUnavailableError(f"LLM request failed: {exc}") from exc

        if response.status_code >= 400:
            raise LLMUnavailableError(_provider_error_message(response))

        try:
            text = _completion_text(response.json())
        except ValueError as exc:
            raise LLMUnavailableError("LLM returned invalid JSON.") from exc

        if not text:
            raise LLMUnavailableError("LLM returned an empty reply.")
        return text

    def close(self) -> None:
        self._client.close()
