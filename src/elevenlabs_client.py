from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import requests
from requests import exceptions as requests_exceptions

import config

_QUOTA_MARKERS = ("quota", "limit")


class ProviderError(RuntimeError):
    """Raised when an ElevenLabs endpoint answers with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuotaExceededError(ProviderError):
    """The credential ran out of characters or hit a rate limit."""


def _headers(api_key: str, json: bool = True) -> dict[str, str]:
    headers = {"xi-api-key": api_key}
    if json:
        headers["Content-Type"] = "application/json"
    return headers


def _endpoint(*parts: str) -> str:
    extra = "/".join(part.strip("/") for part in parts if part)
    return f"{config.ELEVENLABS_API_BASE.rstrip('/')}/{extra}"


def is_quota_error(status_code: int | None, body: str) -> bool:
    if status_code == 429:
        return True
    lowered = (body or "").lower()
    return any(marker in lowered for marker in _QUOTA_MARKERS)


def _raise_for_provider(response: requests.Response, label: str) -> None:
    if response.ok:
        return
    try:
        body = response.text
    except Exception:  # pragma: no cover - corps illisible
        body = ""
    message = f"ElevenLabs {label} API error: {response.status_code} {body}".strip()
    if is_quota_error(response.status_code, body):
        raise QuotaExceededError(message, response.status_code)
    raise ProviderError(message, response.status_code)


def _request(method: str, url: str, label: str, **kwargs: Any) -> requests.Response:
    kwargs.setdefault("timeout", config.ELEVENLABS_TIMEOUT_SECONDS)
    try:
        response = requests.request(method, url, **kwargs)
    except requests_exceptions.RequestException as exc:
        raise ProviderError(f"ElevenLabs {label} request failed: {exc}") from exc
    _raise_for_provider(response, label)
    return response


def get_subscription(api_key: str) -> dict[str, Any]:
    response = _request(
        "GET",
        _endpoint("v1", "user", "subscription"),
        "subscription",
        headers=_headers(api_key, json=False),
    )
    payload = response.json()
    return payload if isinstance(payload, Mapping) else {}


def get_remaining_quota(api_key: str) -> int:
    """Return the number of characters left on ``api_key``'s subscription."""

    payload = get_subscription(api_key)
    limit = payload.get("character_limit") or 0
    used = payload.get("character_count") or 0
    try:
        return max(0, int(limit) - int(used))
    except (TypeError, ValueError):
        return 0


def text_to_speech(
    api_key: str,
    text: str,
    *,
    voice_id: str | None = None,
    model_id: str | None = None,
    voice_settings: Mapping[str, Any] | None = None,
) -> bytes:
    settings = {
        "stability": 0.5,
        "similarity_boost": 0.75,
        "style": 0.0,
        "use_speaker_boost": True,
    }
    if voice_settings:
        settings.update(voice_settings)
    response = _request(
        "POST",
        _endpoint("v1", "text-to-speech", voice_id or config.ELEVENLABS_VOICE_ID),
        "TTS",
        headers=_headers(api_key),
        json={
            "text": text,
            "model_id": model_id or config.ELEVENLABS_TTS_MODEL,
            "voice_settings": settings,
        },
    )
    return response.content


def create_conversion(
    api_key: str, *, voice_id: str | None = None, model_id: str | None = None
) -> str:
    response = _request(
        "POST",
        _endpoint("v1", "speech-to-speech", "convert"),
        "speech conversion",
        headers=_headers(api_key),
        json={
            "voice_id": voice_id or config.ELEVENLABS_VOICE_ID,
            "generation_config": {"model_id": model_id or config.ELEVENLABS_STS_MODEL},
        },
    )
    payload = response.json()
    conversion_id = payload.get("conversion_id") if isinstance(payload, Mapping) else None
    if not isinstance(conversion_id, str) or not conversion_id:
        raise ProviderError("ElevenLabs speech conversion API returned no conversion_id")
    return conversion_id


def upload_conversion_audio(api_key: str, conversion_id: str, audio: bytes) -> None:
    _request(
        "POST",
        _endpoint("v1", "speech-to-speech", "convert", conversion_id, "audio"),
        "upload",
        headers=_headers(api_key, json=False),
        files={"audio": ("audio.mp3", audio, "audio/mpeg")},
    )


def start_conversion(api_key: str, conversion_id: str) -> None:
    _request(
        "POST",
        _endpoint("v1", "speech-to-speech", "convert", conversion_id, "start"),
        "start conversion",
        headers=_headers(api_key),
        json={},
    )


def get_conversion_status(api_key: str, conversion_id: str) -> dict[str, Any]:
    response = _request(
        "GET",
        _endpoint("v1", "speech-to-speech", "convert", conversion_id),
        "conversion status",
        headers=_headers(api_key, json=False),
    )
    payload = response.json()
    return dict(payload) if isinstance(payload, Mapping) else {}


def download_file(url: str) -> bytes:
    """Fetch a finished artifact from the provider's result URL."""

    try:
        response = requests.get(url, timeout=config.ELEVENLABS_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests_exceptions.RequestException as exc:
        raise ProviderError(f"Error downloading video: {exc}") from exc
    return response.content


def mask_key(api_key: str | None) -> str:
    """Return a display-safe version of ``api_key``."""

    if not api_key:
        return ""
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}...{api_key[-4:]}"
