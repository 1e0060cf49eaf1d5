from __future__ import annotations

import logging
from typing import Any

from celery import Celery
from supabase import Client, create_client

import config
from orchestrator import PodcastOrchestrator

logger = logging.getLogger(__name__)

# Configuration Celery
celery = Celery(
    "voicesync_worker",
    broker=config.CELERY_BROKER_URL,
    backend=config.CELERY_RESULT_BACKEND,
)

# Permet d'exécuter les tâches de manière synchrone si nécessaire
if config.CELERY_TASK_ALWAYS_EAGER:
    celery.conf.task_always_eager = True

celery.conf.beat_schedule = {
    "reconcile-orphaned-media": {
        "task": "reconcile_orphaned_media",
        "schedule": float(config.ORPHAN_SWEEP_INTERVAL),
    },
}

supabase: Client | None = None
if config.SUPABASE_URL and config.SUPABASE_KEY:
    try:
        supabase = create_client(config.SUPABASE_URL, config.SUPABASE_KEY)
    except Exception as exc:  # pragma: no cover - configuration invalide
        logger.error("Supabase client unavailable: %s", exc)
        supabase = None


def _orchestrator() -> PodcastOrchestrator:
    if supabase is None:
        raise RuntimeError("Supabase not available")
    return PodcastOrchestrator(supabase)


@celery.task(name="generate_podcast")
def generate_podcast(
    project_id: str,
    lease_token: str,
    character_controls: dict[str, Any] | None = None,
) -> str | None:
    """Tâche Celery qui produit l'audio et la vidéo d'un projet."""

    row = _orchestrator().run(project_id, lease_token, character_controls)
    return row.get("status") if row else None


@celery.task(name="reconcile_orphaned_media")
def reconcile_orphaned_media() -> list[str]:
    """Supprime les médias dont le projet n'est pas terminé."""

    return _orchestrator().reconcile_orphaned_media()
