import asyncio
import json
import logging
import os
import random
import re
from typing import Any, Dict, Optional

import httpx

from labelscan.core.config import settings

logger = logging.getLogger(__name__)

# Service endpoint for Gemini API (v1beta)
API_BASE = "https://generativelanguage.googleapis.com/v1beta"

# Resolved model name per process (e.g. "models/gemini-2.5-flash")
_resolved_model: Optional[str] = None


class GeminiRequestError(Exception):
    """Non-retryable Gemini failure (bad config, 4xx/5xx, unexpected shape)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class GeminiRateLimitError(GeminiRequestError):
    """Still 429 after all retries."""

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None, body: Optional[str] = None):
        super().__init__(message, status_code=429, body=body)
        self.retry_after_seconds = retry_after_seconds


def _redact_key(s: str) -> str:
    """
    Redact 'key=...' in URLs or text so we never leak API keys in logs/responses.
    """
    if not s:
        return s
    # Replace key=XXXXX (until & or whitespace)
    return re.sub(r"(key=)([^&\s]+)", r"\1REDACTED", s)


def _max_retries() -> int:
    return int(os.environ.get("GEMINI_MAX_RETRIES", settings.GEMINI_MAX_RETRIES))


def _max_backoff() -> float:
    return float(os.environ.get("GEMINI_MAX_BACKOFF_SECONDS", settings.GEMINI_MAX_BACKOFF_SECONDS))


def _retry_after_seconds(resp: httpx.Response) -> Optional[float]:
    retry_after = resp.headers.get("retry-after")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        return None


async def _sleep_for_retry(resp: httpx.Response, attempt: int) -> None:
    """
    Respect Retry-After header when present; otherwise exponential backoff with jitter.
    """
    max_backoff = _max_backoff()
    wait = _retry_after_seconds(resp)
    if wait is not None:
        await asyncio.sleep(max(0.5, min(wait, max_backoff)))
        return

    # Exponential backoff with jitter
    base = min(max_backoff, (2 ** attempt))
    jitter = random.uniform(0.0, 0.5)
    await asyncio.sleep(base + jitter)


async def _post_with_retry(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Dict[str, Any],
    json_payload: Dict[str, Any],
    max_retries: Optional[int] = None,
) -> httpx.Response:
    """
    POST with retries for 429/503.
    """
    max_retries = _max_retries() if max_retries is None else max_retries
    last_resp: Optional[httpx.Response] = None

    for attempt in range(max_retries + 1):
        resp = await client.post(url, params=params, json=json_payload)
        last_resp = resp

        if resp.status_code in (429, 503):
            # If we still have retries left, back off and try again
            if attempt < max_retries:
                logger.info("Gemini returned %s, retrying (attempt %d/%d)", resp.status_code, attempt + 1, max_retries)
                await _sleep_for_retry(resp, attempt)
                continue

        return resp

    return last_resp  # type: ignore[return-value]


async def _get_with_retry(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Dict[str, Any],
    max_retries: Optional[int] = None,
) -> httpx.Response:
    """
    GET with retries for 429/503.
    """
    max_retries = _max_retries() if max_retries is None else max_retries
    last_resp: Optional[httpx.Response] = None

    for attempt in range(max_retries + 1):
        resp = await client.get(url, params=params)
        last_resp = resp

        if resp.status_code in (429, 503):
            if attempt < max_retries:
                await _sleep_for_retry(resp, attempt)
                continue

        return resp

    return last_resp  # type: ignore[return-value]


def _raise_for_status(r: httpx.Response, what: str) -> None:
    if r.status_code < 400:
        return
    body = _redact_key(r.text)[:2000]
    if r.status_code == 429:
        raise GeminiRateLimitError(
            f"{what} rate limited",
            retry_after_seconds=_retry_after_seconds(r),
            body=body,
        )
    raise GeminiRequestError(f"{what} failed: {r.status_code}", status_code=r.status_code, body=body)


async def _list_models(client: httpx.AsyncClient, api_key: str) -> Dict[str, Any]:
    """
    Calls GET /v1beta/models (ListModels).
    """
    url = f"{API_BASE}/models"
    r = await _get_with_retry(client, url, params={"key": api_key})
    _raise_for_status(r, "Gemini ListModels")
    try:
        return r.json()
    except ValueError:
        raise GeminiRequestError(
            "Gemini ListModels returned a non-JSON envelope",
            status_code=r.status_code,
            body=_redact_key(r.text)[:2000],
        )


def _pick_model_from_list(models_payload: Dict[str, Any]) -> str:
    """
    Picks a model name (e.g. 'models/xxx') that supports generateContent.
    Preference:
      1) Flash models (contains 'flash')
      2) Any model that supports generateContent
    """
    models = models_payload.get("models", []) or []

    def supports_generate(m: Dict[str, Any]) -> bool:
        methods = m.get("supportedGenerationMethods") or []
        return any(str(x).lower() == "generatecontent" for x in methods)

    candidates = [m for m in models if supports_generate(m)]
    if not candidates:
        raise GeminiRequestError("No models found that support generateContent (ListModels returned none)")

    flash = [m for m in candidates if "flash" in (m.get("name", "").lower())]
    chosen = (flash[0] if flash else candidates[0]).get("name")
    if not chosen:
        raise GeminiRequestError("ListModels returned a model entry without a name")
    return chosen


def _normalize_model(name: str) -> str:
    name = (name or "").strip()
    if not name:
        return ""
    return name if name.startswith("models/") else f"models/{name}"


async def _resolve_model_name(client: httpx.AsyncClient, api_key: str, refresh: bool = False) -> str:
    """
    Resolves the model name once per process:
      - A configured GEMINI_MODEL is trusted (a 404 later triggers refresh).
      - Otherwise, or on refresh, list models and choose one that supports generateContent.
    """
    global _resolved_model
    if _resolved_model and not refresh:
        return _resolved_model

    configured = _normalize_model(settings.GEMINI_MODEL or os.environ.get("GEMINI_MODEL", ""))
    if configured and not refresh:
        _resolved_model = configured
        return configured

    models_payload = await _list_models(client, api_key)
    _resolved_model = _pick_model_from_list(models_payload)
    logger.info("Using Gemini model %s", _resolved_model)
    return _resolved_model


def _response_text(data: Dict[str, Any]) -> str:
    try:
        parts = data["candidates"][0]["content"]["parts"]
        return "".join(p.get("text", "") for p in parts if isinstance(p, dict))
    except (KeyError, IndexError, TypeError):
        raise GeminiRequestError(
            "Unexpected Gemini response shape",
            body=json.dumps(data)[:2000],
        )


async def generate_json_text(
    prompt: str,
    schema: Optional[Dict[str, Any]] = None,
    *,
    temperature: float = 0.1,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """
    Sends a text prompt to Gemini and returns the RAW response text.

    - Asks for Structured Output (response_mime_type + response_json_schema)
    - Auto-resolves a valid model via ListModels if the configured one 404s
    - Retries 429/503 with backoff
    - Redacts API key from any raised errors

    The text is NOT parsed here: callers own JSON extraction (the model may
    still wrap its answer in prose or code fences).
    """
    api_key = (settings.GEMINI_API_KEY or os.environ.get("GEMINI_API_KEY", "")).strip()
    if not api_key:
        raise GeminiRequestError("GEMINI_API_KEY is not set")

    generation_config: Dict[str, Any] = {
        "response_mime_type": "application/json",
        "temperature": temperature,
    }
    if schema is not None:
        generation_config["response_json_schema"] = schema

    payload = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": generation_config,
    }

    if client is None:
        async with httpx.AsyncClient(timeout=settings.GEMINI_TIMEOUT_SECONDS) as own_client:
            return await _generate(own_client, api_key, payload)
    return await _generate(client, api_key, payload)


async def _generate(client: httpx.AsyncClient, api_key: str, payload: Dict[str, Any]) -> str:
    try:
        model_name = await _resolve_model_name(client, api_key)
        url = f"{API_BASE}/{model_name}:generateContent"
        r = await _post_with_retry(client, url, params={"key": api_key}, json_payload=payload)

        # If the chosen model suddenly fails with 404 (rare), re-resolve once and try again
        if r.status_code == 404:
            model_name = await _resolve_model_name(client, api_key, refresh=True)
            url = f"{API_BASE}/{model_name}:generateContent"
            r = await _post_with_retry(client, url, params={"key": api_key}, json_payload=payload)
    except httpx.HTTPError as e:
        raise GeminiRequestError(_redact_key(f"Gemini transport error: {type(e).__name__}: {e}"))

    _raise_for_status(r, "Gemini request")
    try:
        data = r.json()
    except ValueError:
        raise GeminiRequestError("Gemini returned a non-JSON envelope", status_code=r.status_code, body=r.text[:2000])
    return _response_text(data)
