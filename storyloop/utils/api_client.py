"""Singleton OpenAI wrapper with JSON mode and per-call usage reporting."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

from storyloop.engine.errors import CollaboratorError

logger = logging.getLogger(__name__)

# Pricing per 1 M tokens (USD)
_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
}


@dataclass
class UsageReport:
    """Accounting for a single chat-completion call."""

    input_tokens: int = 0
    output_tokens: int = 0
    response_time_ms: int = 0
    model: str = ""
    input_cost: float = 0.0
    output_cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total_tokens"] = self.total_tokens
        data["total_cost"] = self.total_cost
        return data


def price_usage(model: str, input_tokens: int, output_tokens: int, response_time_ms: int = 0) -> UsageReport:
    pricing = _PRICING.get(model, _PRICING["gpt-4o-mini"])
    return UsageReport(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        response_time_ms=response_time_ms,
        model=model,
        input_cost=input_tokens * pricing["input"] / 1_000_000,
        output_cost=output_tokens * pricing["output"] / 1_000_000,
    )


class LLMClient:
    """Singleton OpenAI chat-completion wrapper.

    * ``chat()``       → ``(text, UsageReport)``
    * ``chat_json()``  → ``(dict, UsageReport)`` from a JSON-mode response
    * ``OPENAI_MAX_ATTEMPTS`` attempts with exponential back-off between them
    * Running token totals across the process
    """

    _instance: Optional["LLMClient"] = None

    def __new__(cls) -> "LLMClient":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialised = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialised:
            return
        from config import settings

        self._settings = settings
        self._client: Any = None
        self._total_input_tokens: int = 0
        self._total_output_tokens: int = 0
        self._initialised = True

    # ── lazy OpenAI client ────────────────────────────────
    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                from openai import OpenAI

                kwargs: Dict[str, Any] = {
                    "api_key": self._settings.OPENAI_API_KEY,
                    "timeout": self._settings.OPENAI_TIMEOUT_SECONDS,
                    "max_retries": 0,
                }
                if self._settings.OPENAI_BASE_URL:
                    kwargs["base_url"] = self._settings.OPENAI_BASE_URL
                self._client = OpenAI(**kwargs)
            except Exception as exc:
                logger.error("Failed to create OpenAI client: %s", exc)
                raise CollaboratorError(f"OpenAI client unavailable: {exc}") from exc
        return self._client

    # ── public API ────────────────────────────────────────
    def chat(
        self,
        messages: List[Dict[str, str]],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> Tuple[str, UsageReport]:
        """Send a chat completion request; return the assistant text and its usage.

        Raises :class:`CollaboratorError` once every attempt has failed or the
        model returned an empty message.
        """
        temperature = temperature if temperature is not None else self._settings.OPENAI_TEMPERATURE
        max_tokens = max_tokens or self._settings.OPENAI_MAX_TOKENS
        model = self._settings.OPENAI_MODEL

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "top_p": self._settings.OPENAI_TOP_P,
            "max_tokens": max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        attempts = max(1, self._settings.OPENAI_MAX_ATTEMPTS)
        last_exc: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            started = time.monotonic()
            try:
                response = self.client.chat.completions.create(**kwargs)
            except CollaboratorError:
                raise
            except Exception as exc:
                last_exc = exc
                if attempt < attempts:
                    wait = 2 ** attempt
                    logger.warning("LLM call attempt %d failed (%s). Retrying in %ds…", attempt, exc, wait)
                    time.sleep(wait)
                continue

            elapsed_ms = int((time.monotonic() - started) * 1000)
            usage = response.usage
            input_tokens = usage.prompt_tokens if usage else 0
            output_tokens = usage.completion_tokens if usage else 0
            self._total_input_tokens += input_tokens
            self._total_output_tokens += output_tokens
            report = price_usage(getattr(response, "model", None) or model, input_tokens, output_tokens, elapsed_ms)

            text = response.choices[0].message.content if response.choices else None
            if not text or not text.strip():
                raise CollaboratorError("LLM returned an empty message")
            return text, report

        logger.warning("LLM call failed after %d attempt(s): %s", attempts, last_exc)
        raise CollaboratorError(f"LLM call failed after {attempts} attempt(s): {last_exc}") from last_exc

    def chat_json(
        self,
        messages: List[Dict[str, str]],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Tuple[Dict[str, Any], UsageReport]:
        """Like ``chat()`` but returns the parsed JSON object."""
        raw, usage = self.chat(messages, temperature=temperature, max_tokens=max_tokens, json_mode=True)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CollaboratorError(f"LLM returned malformed JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise CollaboratorError("LLM returned JSON that is not an object")
        return data, usage

    # ── cost tracking ─────────────────────────────────────
    @property
    def total_input_tokens(self) -> int:
        return self._total_input_tokens

    @property
    def total_output_tokens(self) -> int:
        return self._total_output_tokens

    @property
    def total_cost_usd(self) -> float:
        pricing = _PRICING.get(self._settings.OPENAI_MODEL, _PRICING["gpt-4o-mini"])
        return (
            self._total_input_tokens * pricing["input"] / 1_000_000
            + self._total_output_tokens * pricing["output"] / 1_000_000
        )

    def reset_cost(self) -> None:
        self._total_input_tokens = 0
        self._total_output_tokens = 0


# Convenience module-level singleton
llm_client = LLMClient()
