"""Pipeline de génération d'un podcast : voix, vidéo, stockage, statut."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from prometheus_client import Counter

import config
import elevenlabs_client
from elevenlabs_client import ProviderError, QuotaExceededError, mask_key
from key_selector import CredentialStore, KeySelector
from media_storage import MediaStorage
from projects import ProjectRepository, ProjectStatus, lease_is_live
from status_channel import StatusEvent, publish_status

logger = logging.getLogger(__name__)

T = TypeVar("T")

GENERATIONS = Counter(
    "voicesync_generations_total", "Podcast generation attempts by outcome", ["outcome"]
)
KEY_EXHAUSTIONS = Counter(
    "voicesync_key_exhaustions_total",
    "API keys deactivated after a quota error",
    ["step"],
)


class GenerationError(RuntimeError):
    pass


def is_orphaned(project: dict[str, Any] | None) -> bool:
    """Media is orphaned unless its project is completed or still generating."""

    if project is None:
        return True
    if project.get("status") == ProjectStatus.COMPLETED.value:
        return False
    return not lease_is_live(project)


class PodcastOrchestrator:
    def __init__(
        self,
        client,
        *,
        projects: ProjectRepository | None = None,
        selector: KeySelector | None = None,
        storage: MediaStorage | None = None,
        sleep: Callable[[float], None] = time.sleep,
        publish: Callable[[StatusEvent], None] | None = None,
    ) -> None:
        self.projects = projects or ProjectRepository(client)
        self.selector = selector or KeySelector(CredentialStore(client))
        self.storage = storage or MediaStorage(client)
        self._sleep = sleep
        self._publish = publish or publish_status

    def _announce(self, row: dict[str, Any] | None) -> None:
        if row is not None:
            self._publish(StatusEvent.from_project(row))

    def _with_credentials(
        self, user_id: str, step: str, call: Callable[[str], T]
    ) -> T:
        """Run ``call`` with the selected key, rotating keys on quota errors."""

        last_error: Exception | None = None
        for attempt in range(1, config.MAX_CREDENTIAL_ATTEMPTS + 1):
            credential = self.selector.select_key(user_id)
            try:
                result = call(credential["key"])
            except QuotaExceededError as exc:
                logger.warning(
                    "Quota exceeded on API key %s during %s (attempt %d/%d)",
                    mask_key(credential.get("key")),
                    step,
                    attempt,
                    config.MAX_CREDENTIAL_ATTEMPTS,
                )
                self.selector.mark_exhausted(credential["id"])
                KEY_EXHAUSTIONS.labels(step).inc()
                last_error = exc
                continue
            self.selector.record_usage(credential)
            return result
        raise GenerationError(
            f"Failed to generate {step} after {config.MAX_CREDENTIAL_ATTEMPTS} "
            f"attempts with different API keys: {last_error}"
        )

    def _convert(self, api_key: str, audio: bytes) -> str:
        conversion_id = elevenlabs_client.create_conversion(api_key)
        elevenlabs_client.upload_conversion_audio(api_key, conversion_id, audio)
        elevenlabs_client.start_conversion(api_key, conversion_id)

        for attempt in range(config.CONVERSION_POLL_ATTEMPTS):
            self._sleep(config.CONVERSION_POLL_INTERVAL)
            try:
                status = elevenlabs_client.get_conversion_status(api_key, conversion_id)
            except QuotaExceededError:
                raise
            except ProviderError as exc:
                logger.warning(
                    "Conversion %s status check %d failed: %s",
                    conversion_id,
                    attempt + 1,
                    exc,
                )
                continue
            state = status.get("status")
            if state == "completed":
                output_url = status.get("output_url")
                if not output_url:
                    raise GenerationError("Video conversion completed without output URL")
                return output_url
            if state == "failed":
                raise GenerationError(
                    f"Video conversion failed: {status.get('error') or 'unknown error'}"
                )
        raise GenerationError("Video conversion timed out")

    def _discard_if_orphaned(self, project_id: str, written: list[str]) -> None:
        if not written:
            return
        try:
            if is_orphaned(self.projects.get(project_id)):
                self.storage.delete(project_id, tuple(written))
        except Exception as exc:
            logger.error("Unable to clean media of project %s: %s", project_id, exc)

    def _fail(
        self, project_id: str, lease_token: str, message: str, written: list[str]
    ) -> None:
        GENERATIONS.labels("failed").inc()
        try:
            self._announce(self.projects.fail(project_id, lease_token, message))
        except Exception as exc:
            logger.error("Unable to roll back project %s: %s", project_id, exc)
        self._discard_if_orphaned(project_id, written)

    def run(
        self,
        project_id: str,
        lease_token: str,
        character_controls: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Generate audio and video for ``project_id`` under ``lease_token``.

        Returns the completed row, or ``None`` when the lease was lost and
        the attempt's media was discarded. Any failure rolls the project back
        to draft and is re-raised.
        """

        project = self.projects.require(project_id)
        if (
            project.get("status") != ProjectStatus.PROCESSING.value
            or project.get("generation_lease") != lease_token
        ):
            logger.warning("Lease on project %s no longer held, skipping", project_id)
            GENERATIONS.labels("lost_lease").inc()
            return None

        logger.info("Starting podcast generation for project %s", project_id)
        if character_controls:
            logger.info("Character controls for %s: %s", project_id, character_controls)

        written: list[str] = []
        try:
            user_id = project["user_id"]
            script = (project.get("script") or "").strip() or config.DEFAULT_SCRIPT
            self.storage.ensure_bucket()

            audio = self._with_credentials(
                user_id,
                "audio",
                lambda key: elevenlabs_client.text_to_speech(key, script),
            )
            if not audio:
                raise GenerationError("Text-to-speech returned empty audio")
            self.storage.upload(project_id, "audio", audio)
            written.append("audio")

            video_url = self._with_credentials(
                user_id, "video", lambda key: self._convert(key, audio)
            )
            video = elevenlabs_client.download_file(video_url)
            if not video:
                raise GenerationError("Downloaded video is empty")
            self.storage.upload(project_id, "video", video)
            written.append("video")

            row = self.projects.complete(project_id, lease_token)
        except Exception as exc:
            logger.error("Error in podcast generation for %s: %s", project_id, exc)
            self._fail(project_id, lease_token, str(exc), written)
            raise

        if row is None:
            logger.warning(
                "Lease on project %s lost before completion, discarding media",
                project_id,
            )
            GENERATIONS.labels("lost_lease").inc()
            self._discard_if_orphaned(project_id, written)
            return None

        GENERATIONS.labels("completed").inc()
        logger.info("Podcast generation completed for project %s", project_id)
        self._announce(row)
        return row

    def reconcile_orphaned_media(self) -> list[str]:
        """Delete media folders whose project is missing or not completed."""

        removed: list[str] = []
        for folder in self.storage.list_project_folders():
            try:
                if not is_orphaned(self.projects.get(folder)):
                    continue
                self.storage.delete(folder)
            except Exception as exc:
                logger.error("Orphan sweep failed for %s: %s", folder, exc)
                continue
            removed.append(folder)
        if removed:
            logger.info("Removed orphaned media for %d project(s)", len(removed))
        return removed
