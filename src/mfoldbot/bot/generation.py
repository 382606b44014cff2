import json
import logging
import time
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions

from .config import Config
from .models import normalize_str


RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

logger = logging.getLogger("mfoldbot.bot")


class GenerationError(RuntimeError):
    def __init__(self, message: str, *, retryable: bool = False, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


def _clip_text(value: Any, max_chars: int) -> str:
    text = normalize_str(value).strip()
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


class TextGenerator:
    """Prompt-in, completion-out client for an OpenAI-compatible chat endpoint.

    Failures are split into retryable (rate limits, server errors, network
    faults) and terminal. Retryable ones are retried up to ``max_retries``
    times after a fixed pause; everything else propagates immediately.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4",
        temperature: float = 0.7,
        max_retries: int = 1,
        retry_pause_seconds: float = 1.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_retries = max(0, max_retries)
        self.retry_pause_seconds = retry_pause_seconds

    @classmethod
    def from_config(cls, cfg: Config) -> "TextGenerator":
        if not cfg.openai_api_key:
            raise RuntimeError("OPENAI_API_KEY not set")
        return cls(
            cfg.openai_api_key,
            base_url=cfg.openai_base_url,
            model=cfg.openai_model,
            temperature=cfg.openai_temperature,
            max_retries=cfg.generation_max_retries,
            retry_pause_seconds=cfg.generation_retry_pause_seconds,
        )

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def complete(self, prompt: str) -> str:
        attempt = 0
        while True:
            try:
                return self._complete_once(prompt)
            except GenerationError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.warning(
                    "LLM retry attempt=%s/%s status=%s pause_seconds=%s error=%s",
                    attempt,
                    self.max_retries,
                    e.status_code,
                    self.retry_pause_seconds,
                    e,
                )
                time.sleep(self.retry_pause_seconds)

    def _complete_once(self, prompt: str) -> str:
        messages: List[Dict[str, str]] = [{"role": "user", "content": prompt}]
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        logger.info("LLM request model=%s prompt_chars=%s", self.model, len(prompt))
        try:
            resp = requests.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers,
                data=json.dumps(payload),
                timeout=60,
            )
        except (requests_exceptions.Timeout, requests_exceptions.ConnectionError) as e:
            raise GenerationError(f"LLM request failed: {e}", retryable=True) from e

        if resp.status_code >= 400:
            raise GenerationError(
                f"OpenAI error {resp.status_code}: {_clip_text(resp.text, 320)}",
                retryable=resp.status_code in RETRYABLE_STATUS_CODES,
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationError(f"No completion in LLM response: {_clip_text(resp.text, 320)}") from e

        text = normalize_str(content).strip()
        if not text:
            raise GenerationError("LLM returned an empty completion")
        usage = data.get("usage") if isinstance(data, dict) else None
        logger.info(
            "LLM response model=%s completion_chars=%s total_tokens=%s",
            self.model,
            len(text),
            (usage or {}).get("total_tokens"),
        )
        return text
