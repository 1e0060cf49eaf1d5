"""Normalisation des sources de contenu (texte, URL, fichier) en script."""

from __future__ import annotations

import enum
import logging
import re
import time
from dataclasses import dataclass
from typing import Any

import requests
from bs4 import BeautifulSoup

import config

logger = logging.getLogger(__name__)


class SourceType(str, enum.Enum):
    TEXT = "text"
    URL = "url"
    FILE = "file"


class ContentExtractionError(RuntimeError):
    pass


@dataclass(frozen=True)
class NormalizedContent:
    """Outcome of a normalization: ``ok`` is False when ``text`` is a placeholder."""

    source_type: str
    text: str
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.source_type,
            "text": self.text,
            "ok": self.ok,
            "error": self.error,
        }


def url_placeholder(url: str) -> str:
    return (
        f"Content from URL: {url}. Please process this URL to extract relevant "
        "content for the podcast."
    )


def file_placeholder(message: str) -> str:
    return f"[File processing error: {message}]"


def _service_headers(access_token: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


def _call_service(url: str, payload: dict[str, Any], access_token: str | None) -> str:
    try:
        resp = requests.post(
            url,
            json=payload,
            headers=_service_headers(access_token),
            timeout=config.CONTENT_SERVICE_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
        body = resp.json()
    except requests.exceptions.RequestException as exc:
        raise ContentExtractionError(f"Content service error: {exc}") from exc
    except ValueError as exc:
        raise ContentExtractionError("Content service returned invalid JSON") from exc
    text = body.get("text") if isinstance(body, dict) else None
    if not isinstance(text, str):
        raise ContentExtractionError("Content service returned no text")
    return text


def scrape_and_clean(url: str) -> tuple[str, str | None]:
    """Récupère le texte d'une page web et retourne (texte, erreur)."""

    try:
        resp = requests.get(
            url,
            headers={"User-Agent": config.SCRAPER_USER_AGENT},
            timeout=config.CONTENT_SERVICE_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
    except requests.exceptions.RequestException as exc:
        return "", f"HTTP error: {exc}"

    try:
        soup = BeautifulSoup(resp.text, "html.parser")
        paragraphs = [p.get_text(" ", strip=True) for p in soup.select("p")]
        text = " ".join(paragraphs)
        text = re.sub(r"\[[^\]]*\]", "", text)
        text = re.sub(r"\s+", " ", text).strip()
        return text, None
    except Exception as exc:  # pragma: no cover - parsing issues are rare
        return "", f"Failed to parse HTML: {exc}"


def normalize_text(text: str | None) -> NormalizedContent:
    return NormalizedContent(SourceType.TEXT.value, (text or "").strip(), True)


def normalize_url(url: str, access_token: str | None = None) -> NormalizedContent:
    url = (url or "").strip()
    try:
        if not url:
            raise ContentExtractionError("URL is required")
        if config.CONTENT_URL_SERVICE:
            text = _call_service(config.CONTENT_URL_SERVICE, {"url": url}, access_token)
        else:
            text, error = scrape_and_clean(url)
            if error:
                raise ContentExtractionError(error)
        if not text.strip():
            raise ContentExtractionError("No readable content found")
        return NormalizedContent(SourceType.URL.value, text.strip(), True)
    except Exception as exc:
        logger.warning("Error processing URL %s: %s", url, exc)
        return NormalizedContent(
            SourceType.URL.value, url_placeholder(url), False, str(exc)
        )


def upload_content_file(
    client, user_id: str, filename: str, data: bytes, content_type: str | None
) -> str:
    """Store an uploaded file in the content bucket and return its public URL."""

    safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", filename or "upload")
    path = f"{user_id}/{int(time.time() * 1000)}_{safe_name}"
    bucket = client.storage.from_(config.CONTENT_BUCKET)
    bucket.upload(
        path,
        data,
        file_options={"content-type": content_type or "application/octet-stream"},
    )
    return bucket.get_public_url(path)


def normalize_file(
    client,
    user_id: str,
    filename: str,
    data: bytes,
    content_type: str | None = None,
    access_token: str | None = None,
) -> NormalizedContent:
    try:
        if not data:
            raise ContentExtractionError("Empty file")
        if config.CONTENT_FILE_SERVICE:
            file_url = upload_content_file(client, user_id, filename, data, content_type)
            text = _call_service(
                config.CONTENT_FILE_SERVICE,
                {"fileUrl": file_url, "fileType": content_type or ""},
                access_token,
            )
        elif (content_type or "").startswith("text/"):
            text = data.decode("utf-8", errors="replace")
        else:
            raise ContentExtractionError(
                f"Unsupported file type: {content_type or 'unknown'}"
            )
        return NormalizedContent(SourceType.FILE.value, text.strip(), True)
    except Exception as exc:
        logger.warning("Error processing file %s: %s", filename, exc)
        return NormalizedContent(
            SourceType.FILE.value, file_placeholder(str(exc)), False, str(exc)
        )


def normalize_source(source_type: str, content: Any = None, **kwargs: Any) -> NormalizedContent:
    """Dispatch on ``source_type``; never raises."""

    try:
        kind = SourceType(source_type)
        if kind is SourceType.TEXT:
            return normalize_text(content)
        if kind is SourceType.URL:
            return normalize_url(content, kwargs.get("access_token"))
        return normalize_file(
            kwargs["client"],
            kwargs["user_id"],
            kwargs.get("filename") or "upload",
            content or b"",
            kwargs.get("content_type"),
            kwargs.get("access_token"),
        )
    except Exception as exc:
        logger.error("Error processing content of type %r: %s", source_type, exc)
        return NormalizedContent(
            str(source_type), f"Error processing content: {exc}", False, str(exc)
        )
