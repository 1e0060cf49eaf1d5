"""Configuration partagée entre l'API Flask et le worker Celery."""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _read_int_env(name: str, default: int, *, minimum: int | None = None) -> int:
    """Return ``name`` as integer with fallback to ``default`` and ``minimum``."""

    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return minimum
    return value


def _read_flag_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", ""}


# Supabase
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = (
    os.getenv("SUPABASE_SERVICE_KEY")
    or os.getenv("SUPABASE_KEY")
    or os.getenv("SUPABASE_ANON_KEY")
)
PODCASTS_BUCKET = os.getenv("PODCASTS_BUCKET", "podcasts")
CONTENT_BUCKET = os.getenv("CONTENT_BUCKET", "content_files")
PODCASTS_BUCKET_SIZE_LIMIT = _read_int_env(
    "PODCASTS_BUCKET_SIZE_LIMIT", 512_000_000, minimum=1
)
MEDIA_SIGNED_URL_SECONDS = _read_int_env("MEDIA_SIGNED_URL_SECONDS", 3600, minimum=60)

# ElevenLabs
ELEVENLABS_API_BASE = os.getenv("ELEVENLABS_API_BASE", "https://api.elevenlabs.io")
ELEVENLABS_VOICE_ID = os.getenv("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM")
ELEVENLABS_TTS_MODEL = os.getenv("ELEVENLABS_TTS_MODEL", "eleven_monolingual_v1")
ELEVENLABS_STS_MODEL = os.getenv("ELEVENLABS_STS_MODEL", "eleven_english_sts_v2")
ELEVENLABS_TIMEOUT_SECONDS = _read_int_env("ELEVENLABS_TIMEOUT_SECONDS", 60, minimum=5)

# Génération
MAX_CREDENTIAL_ATTEMPTS = _read_int_env("MAX_CREDENTIAL_ATTEMPTS", 3, minimum=1)
CONVERSION_POLL_INTERVAL = _read_int_env("CONVERSION_POLL_INTERVAL", 10, minimum=0)
CONVERSION_POLL_ATTEMPTS = _read_int_env("CONVERSION_POLL_ATTEMPTS", 30, minimum=1)
GENERATION_LEASE_SECONDS = _read_int_env("GENERATION_LEASE_SECONDS", 900, minimum=60)
ORPHAN_SWEEP_INTERVAL = _read_int_env("ORPHAN_SWEEP_INTERVAL", 3600, minimum=60)
DEFAULT_SCRIPT = os.getenv(
    "DEFAULT_SCRIPT",
    "Welcome to this AI-generated podcast. Today we're discussing the fascinating "
    "world of artificial intelligence and its applications in modern technology.",
)

# Extraction de contenu
CONTENT_URL_SERVICE = os.getenv("CONTENT_URL_SERVICE")
CONTENT_FILE_SERVICE = os.getenv("CONTENT_FILE_SERVICE")
CONTENT_SERVICE_TIMEOUT_SECONDS = _read_int_env(
    "CONTENT_SERVICE_TIMEOUT_SECONDS", 30, minimum=1
)
SCRAPER_USER_AGENT = os.getenv(
    "SCRAPER_USER_AGENT", "voicesync/1.0 (+https://voicesync.app)"
)

# Statut des projets
STATUS_POLL_INTERVAL = _read_int_env("STATUS_POLL_INTERVAL", 5, minimum=1)
STATUS_REDIS_URL = os.getenv("STATUS_REDIS_URL")
STATUS_STREAM_KEEPALIVE_SECONDS = _read_int_env(
    "STATUS_STREAM_KEEPALIVE_SECONDS", 15, minimum=1
)

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
CELERY_TASK_ALWAYS_EAGER = _read_flag_env("CELERY_TASK_ALWAYS_EAGER", False)

# Flask
FLASK_SECRET = os.getenv("FLASK_SECRET", "dev-secret-change-me")
METRICS_IP_WHITELIST = set(os.getenv("METRICS_IP_WHITELIST", "127.0.0.1").split(","))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
