"""Text generation capability used by the planning pipeline and reply judging.

The rest of the package only depends on the ``TextGenerator`` protocol: give it a
prompt (and optionally a system prompt) and get text back, or a
``GenerationError``. Callers treat a missing generator the same as a failed call.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol
from urllib import error, request

from taskpilot.config.settings import Settings

logger = logging.getLogger(__name__)


class GenerationError(RuntimeError):
    """Raised when a generation provider cannot produce text."""


class TextGenerator(Protocol):
    """Interface for plain text completions."""

    def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int = 2048,
    ) -> str: ...


class OpenAIChatCompletionsGenerator:
    """Small OpenAI client using the chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 30.0,
        max_retries: int = 1,
        backoff_s: float = 0.5,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int = 2048,
    ) -> str:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": 0.2,
        }
        response_json = self._request_with_retry(payload)
        try:
            return self._extract_content(response_json)
        except ValueError as exc:
            raise GenerationError(str(exc)) from exc

    def _request_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload)
            except (TimeoutError, ValueError, error.URLError, error.HTTPError) as exc:
                last_error = exc
                logger.warning(
                    "generation request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        raise GenerationError(f"generation request failed: {last_error}")

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        raw_payload = json.dumps(payload).encode("utf-8")
        req = request.Request(
            url=url,
            data=raw_payload,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        with request.urlopen(req, timeout=self.timeout_s) as response:
            body = response.read().decode("utf-8")
        return json.loads(body)

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise ValueError("OpenAI response did not contain choices")

        message = choices[0].get("message", {})
        content = message.get("content", "")
        if isinstance(content, str) and content.strip():
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            merged = "".join(text_segments).strip()
            if merged:
                return merged
        raise ValueError("OpenAI response content could not be parsed as text")


def build_generator_from_settings(settings: Settings) -> TextGenerator | None:
    if settings.llm_provider.lower().strip() != "openai":
        logger.warning("unsupported llm provider=%s; generation disabled", settings.llm_provider)
        return None

    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None

    return OpenAIChatCompletionsGenerator(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )


def generate_text(
    generator: TextGenerator | None,
    prompt: str,
    *,
    system_prompt: str | None = None,
    max_tokens: int = 2048,
) -> str | None:
    """Run one generation call, returning None instead of raising."""
    if generator is None:
        logger.warning("generation skipped reason=no_provider")
        return None
    try:
        text = generator.generate(prompt, system_prompt=system_prompt, max_tokens=max_tokens)
    except GenerationError as exc:
        logger.warning("generation failed reason=%s", exc)
        return None
    except Exception as exc:  # noqa: BLE001
        logger.warning("generation failed unexpectedly reason=%s", exc)
        return None
    if not isinstance(text, str) or not text.strip():
        return None
    return text


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """Return the first balanced ``{...}`` object in ``text`` decoded as JSON."""
    if not text:
        return None

    start = text.find("{")
    while start != -1:
        end = _matching_brace(text, start)
        if end is None:
            return None
        try:
            parsed = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(parsed, dict):
            return parsed
        start = text.find("{", end + 1)
    return None


def _matching_brace(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None
