import json
import os
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
from sqlalchemy.orm import Session

from response_control.core.security import decrypt_api_key
from response_control.db.models import UserAIConfig

INTENT_LLM_MAX_TOKENS = int(os.getenv("INTENT_LLM_MAX_TOKENS", "150"))
INTENT_LLM_TEMPERATURE = float(os.getenv("INTENT_LLM_TEMPERATURE", "0.1"))
OPENAI_CHAT_URL = os.getenv("OPENAI_CHAT_URL", "https://api.openai.com/v1/chat/completions")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")

PROVIDER_DEFAULT_MODELS: dict[str, tuple[str, str]] = {
    "openai": ("gpt-4.1-mini", "gpt-4.1"),
    "gemini": ("gemini-2.5-flash", "gemini-2.5-pro"),
}


class LLMRequestError(RuntimeError):
    def __init__(
        self,
        provider: str,
        model: str,
        message: str,
        status_code: Optional[int] = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.timed_out = timed_out


class AIConfigMissingError(ValueError):
    pass


@dataclass(frozen=True)
class ModelSlots:
    provider: str
    utility_model: str
    deep_thinker_model: str


@dataclass(frozen=True)
class ProviderConfig:
    slots: ModelSlots
    api_key: str


def extract_json_object(raw_text: str) -> dict[str, Any]:
    """Decode the first well-formed JSON object in ``raw_text``.

    Completions often wrap the record in prose or markdown fences, so after a whole-text
    attempt every ``{`` is tried as a start position until one decodes to an object.
    """
    text = (raw_text or "").strip()
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            parsed, _ = decoder.raw_decode(text, start)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
        start = text.find("{", start + 1)
    raise ValueError("Invalid JSON response from LLM")


def _env_slots() -> Optional[ModelSlots]:
    provider = os.getenv("DEFAULT_AI_PROVIDER", "").strip().lower()
    if provider not in PROVIDER_DEFAULT_MODELS:
        return None
    default_utility, default_deep = PROVIDER_DEFAULT_MODELS[provider]
    return ModelSlots(
        provider=provider,
        utility_model=os.getenv("DEFAULT_UTILITY_MODEL", "").strip() or default_utility,
        deep_thinker_model=os.getenv("DEFAULT_DEEP_THINKER_MODEL", "").strip() or default_deep,
    )


def _env_api_key(provider: str) -> str:
    if provider == "openai":
        return os.getenv("OPENAI_API_KEY", "").strip()
    if provider == "gemini":
        return os.getenv("GEMINI_API_KEY", "").strip()
    return ""


def resolve_model_slots(db: Optional[Session], user_id: int) -> Optional[ModelSlots]:
    if db is not None:
        cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user_id).first()
        if cfg:
            return ModelSlots(
                provider=cfg.ai_provider,
                utility_model=cfg.ai_utility_model,
                deep_thinker_model=cfg.ai_deep_thinker_model,
            )
    return _env_slots()


def resolve_provider_config(db: Optional[Session], user_id: int) -> ProviderConfig:
    if db is not None:
        cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user_id).first()
        if cfg:
            try:
                api_key = decrypt_api_key(cfg.encrypted_api_key)
            except ValueError as exc:
                raise AIConfigMissingError("Stored API key cannot be decrypted") from exc
            slots = ModelSlots(
                provider=cfg.ai_provider,
                utility_model=cfg.ai_utility_model,
                deep_thinker_model=cfg.ai_deep_thinker_model,
            )
            return ProviderConfig(slots=slots, api_key=api_key)

    slots = _env_slots()
    key = _env_api_key(slots.provider) if slots else ""
    if slots and key:
        return ProviderConfig(slots=slots, api_key=key)
    raise AIConfigMissingError("AI config missing")


def _exchange(
    client: httpx.Client,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any],
    deadline: float,
    provider: str,
    model: str,
) -> bytes:
    timeout = httpx.Timeout(max(0.001, deadline - time.monotonic()))
    try:
        with client.stream("POST", url, headers=headers, json=payload, timeout=timeout) as response:
            if response.status_code >= 400:
                response.read()
                detail = (response.text or "").strip()[:220]
                raise LLMRequestError(
                    provider=provider,
                    model=model,
                    status_code=response.status_code,
                    message=f"Completion request failed (status={response.status_code}): {detail or 'no response body'}",
                )
            chunks: list[bytes] = []
            for chunk in response.iter_bytes():
                chunks.append(chunk)
                if time.monotonic() > deadline:
                    raise LLMRequestError(
                        provider=provider, model=model, timed_out=True, message="Completion deadline exceeded."
                    )
            return b"".join(chunks)
    except httpx.TimeoutException as exc:
        raise LLMRequestError(
            provider=provider,
            model=model,
            timed_out=True,
            message="Completion request timed out while waiting for response.",
        ) from exc
    except httpx.HTTPError as exc:
        raise LLMRequestError(
            provider=provider, model=model, message=f"Completion transport error: {str(exc)[:220]}"
        ) from exc


def _post_json(
    client: httpx.Client,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any],
    timeout_seconds: float,
    provider: str,
    model: str,
) -> dict[str, Any]:
    # httpx timeouts apply per phase, so the exchange runs on a worker and the caller waits
    # at most timeout_seconds in total. On expiry the client is closed to drop the connection.
    deadline = time.monotonic() + timeout_seconds
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="completion")
    future = executor.submit(_exchange, client, url, headers, payload, deadline, provider, model)
    try:
        body = future.result(timeout=timeout_seconds)
    except FutureTimeoutError as exc:
        future.cancel()
        client.close()
        raise LLMRequestError(
            provider=provider,
            model=model,
            timed_out=True,
            message=f"Completion request exceeded {timeout_seconds:.2f}s deadline.",
        ) from exc
    finally:
        executor.shutdown(wait=False)

    try:
        data = json.loads(body)
    except ValueError as exc:
        raise LLMRequestError(provider=provider, model=model, message="Completion body is not JSON") from exc
    if not isinstance(data, dict):
        raise LLMRequestError(provider=provider, model=model, message="Completion body is not an object")
    return data


def _openai_complete(
    client: httpx.Client, model: str, api_key: str, prompt: str, timeout_seconds: float
) -> str:
    payload = {
        "model": model,
        "response_format": {"type": "json_object"},
        "messages": [{"role": "user", "content": prompt}],
        "temperature": INTENT_LLM_TEMPERATURE,
        "max_completion_tokens": INTENT_LLM_MAX_TOKENS,
    }
    data = _post_json(
        client,
        OPENAI_CHAT_URL,
        {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        payload,
        timeout_seconds,
        "openai",
        model,
    )
    try:
        return str(data["choices"][0]["message"].get("content") or "").strip()
    except (KeyError, IndexError, TypeError, AttributeError) as exc:
        raise LLMRequestError(provider="openai", model=model, message="OpenAI response missing choices") from exc


def _gemini_complete(
    client: httpx.Client, model: str, api_key: str, prompt: str, timeout_seconds: float
) -> str:
    payload = {
        "generationConfig": {
            "responseMimeType": "application/json",
            "temperature": INTENT_LLM_TEMPERATURE,
            "maxOutputTokens": INTENT_LLM_MAX_TOKENS,
        },
        "contents": [{"parts": [{"text": prompt}]}],
    }
    data = _post_json(
        client,
        f"{GEMINI_BASE_URL}/models/{model}:generateContent?key={api_key}",
        {"Content-Type": "application/json"},
        payload,
        timeout_seconds,
        "gemini",
        model,
    )
    try:
        return str(data["candidates"][0]["content"]["parts"][0]["text"] or "").strip()
    except (KeyError, IndexError, TypeError) as exc:
        raise LLMRequestError(provider="gemini", model=model, message="Gemini response missing candidates") from exc


class CompletionClient(Protocol):
    def complete(self, user_id: int, prompt: str, timeout_seconds: float) -> str:
        ...


class RealCompletionClient:
    """Single-attempt completion calls on the user's utility model. No retries at this layer."""

    def __init__(self, db: Optional[Session], transport: Optional[httpx.BaseTransport] = None) -> None:
        self.db = db
        self.transport = transport

    def complete(self, user_id: int, prompt: str, timeout_seconds: float) -> str:
        config = resolve_provider_config(self.db, user_id)
        model = config.slots.utility_model
        with httpx.Client(timeout=httpx.Timeout(timeout_seconds), transport=self.transport) as client:
            if config.slots.provider == "openai":
                return _openai_complete(client, model, config.api_key, prompt, timeout_seconds)
            if config.slots.provider == "gemini":
                return _gemini_complete(client, model, config.api_key, prompt, timeout_seconds)
        raise AIConfigMissingError(f"Unsupported AI provider: {config.slots.provider}")
