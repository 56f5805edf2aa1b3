# src/smart_planner/oracles/importance_llm.py

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional

import httpx
import openai
from openai import OpenAI

from ..tasks.task_models import Task

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a task importance estimator for a personal planner. "
    "Rate how important the task is to its owner on a scale from 0.0 (trivial) to 1.0 (critical).\n"
    "RULES:\n"
    "1. Ignore deadlines and dates; urgency is computed separately.\n"
    "2. Judge only by what the task is about.\n"
    '3. Return ONLY JSON of the form {"importance": <float>}. No commentary.'
)


class OracleNotConfiguredError(RuntimeError):
    pass


def _is_auth_error(exc: Exception) -> bool:
    return exc.__class__.__name__ in {
        "AuthenticationError",
        "PermissionDeniedError",
        "UnauthorizedError",
    }


def _is_not_found_error(exc: Exception) -> bool:
    # OpenAI-compatible SDK often uses NotFoundError for HTTP 404
    return exc.__class__.__name__ in {"NotFoundError"}


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, (openai.RateLimitError, openai.APIConnectionError, openai.APITimeoutError)):
        return True
    return exc.__class__.__name__ in {"RateLimitError", "TooManyRequestsError", "ReadTimeout", "ConnectTimeout"}


def parse_importance(raw: str) -> float:
    """Extract and clamp the importance value from a model reply."""
    text = (raw or "").strip()
    if not text:
        raise ValueError("empty response from importance model")

    # Some models wrap JSON in a code fence.
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]

    data = json.loads(text)
    if not isinstance(data, dict) or "importance" not in data:
        raise ValueError("importance key missing in model response")

    value = float(data["importance"])
    return max(0.0, min(1.0, value))


class LLMImportanceOracle:
    """
    Importance oracle backed by an OpenAI-compatible chat completion endpoint.

    - The client is created lazily; no secrets are needed at import time.
    - Models are tried in order; 404 models are parked for an hour, rate limits and
      network errors move on to the next model, auth errors fail fast.
    - The blocking SDK call runs in a worker thread; the engine bounds it with its own timeout.
    """

    BAD_MODEL_COOLDOWN_SECONDS = 3600.0

    def __init__(
            self,
            *,
            api_key: Optional[str],
            base_url: str,
            models: List[str],
            extra_headers: Optional[Dict[str, str]] = None,
            connect_timeout: float = 5.0,
            read_timeout: float = 10.0,
    ) -> None:
        if not api_key or not str(api_key).strip():
            raise OracleNotConfiguredError("LLM API key is not set. Set SMART_LLM_API_KEY in your .env.")
        if not models:
            raise OracleNotConfiguredError("LLM model list is empty. Set SMART_LLM_MODELS in your .env.")

        self._api_key = str(api_key)
        self._base_url = str(base_url)
        self._models = [m.strip() for m in models if m and m.strip()]
        self._headers = dict(extra_headers or {})
        self._timeout = httpx.Timeout(connect=connect_timeout, read=read_timeout, write=10.0, pool=connect_timeout)
        self._client: OpenAI | None = None
        self._bad_models: dict[str, float] = {}  # model -> retry_at (monotonic)

    @classmethod
    def from_settings(cls, settings: Any, *, timeout: float = 10.0) -> "LLMImportanceOracle":
        return cls(
            api_key=getattr(settings, "llm_api_key", None),
            base_url=getattr(settings, "llm_base_url", "") or "https://api.openai.com/v1",
            models=list(getattr(settings, "llm_models", []) or []),
            extra_headers=dict(getattr(settings, "extra_headers", {}) or {}),
            read_timeout=timeout,
        )

    def _get_client(self) -> OpenAI:
        if self._client is None:
            # Retries are ours (next model), not the SDK's.
            self._client = OpenAI(
                base_url=self._base_url,
                api_key=self._api_key,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    @staticmethod
    def _user_message(task: Task) -> str:
        parts = [f"Task title: {task.title}"]
        if task.description:
            parts.append(f"Task description: {task.description[:2000]}")
        c = task.complexity
        parts.append(
            f"Subtasks: {c.subtasks}, attachments: {c.attachments}, dependencies: {c.dependencies}"
        )
        return "\n".join(parts)

    def predict_importance_sync(self, task: Task) -> float:
        client = self._get_client()
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": self._user_message(task)},
        ]

        last_error: Exception | None = None
        now = time.monotonic()

        for model in self._models:
            retry_at = self._bad_models.get(model)
            if retry_at is not None and retry_at > now:
                continue

            try:
                response = client.chat.completions.create(
                    model=model,
                    messages=messages,  # type: ignore[arg-type]
                    temperature=0.0,
                    max_tokens=30,
                    extra_headers=self._headers or None,
                )
                raw = response.choices[0].message.content or ""
                value = parse_importance(raw)
                logger.debug("Importance oracle model=%s task=%s -> %.3f", model, task.id, value)
                return value

            except (ValueError, json.JSONDecodeError) as e:
                last_error = e
                logger.info("Importance oracle: unusable reply from model=%s (%s), trying next", model, e)
                continue

            except Exception as e:
                last_error = e

                if _is_auth_error(e):
                    raise RuntimeError("LLM authentication failed. Check SMART_LLM_API_KEY.") from e

                if _is_not_found_error(e):
                    self._bad_models[model] = time.monotonic() + self.BAD_MODEL_COOLDOWN_SECONDS
                    logger.info("Importance oracle: model not available (404): %s", model)
                    continue

                if _is_retryable(e):
                    logger.info("Importance oracle: transient error on model=%s, trying next", model)
                    continue

                logger.info("Importance oracle: error on model=%s (%s), trying next", model, e.__class__.__name__)
                continue

        if last_error is not None:
            raise RuntimeError("All importance models failed.") from last_error
        raise RuntimeError("No importance model available.")

    async def predict_importance(self, task: Task) -> float:
        return await asyncio.to_thread(self.predict_importance_sync, task)
