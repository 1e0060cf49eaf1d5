"""Stockage des médias générés dans le bucket Supabase ``podcasts``."""

from __future__ import annotations

import logging
from typing import Any

import config

logger = logging.getLogger(__name__)

MEDIA_FILES: dict[str, tuple[str, str]] = {
    "audio": ("audio.mp3", "audio/mpeg"),
    "video": ("video.mp4", "video/mp4"),
}

# Taille de page de l'API de listage du stockage.
LIST_PAGE_SIZE = 100


class StorageError(RuntimeError):
    pass


def media_path(project_id: str, kind: str) -> str:
    try:
        filename, _ = MEDIA_FILES[kind]
    except KeyError as exc:
        raise ValueError(f"Unknown media kind: {kind}") from exc
    return f"{project_id}/{filename}"


def _signed_url(payload: Any) -> str | None:
    if isinstance(payload, dict):
        for key in ("signedURL", "signedUrl", "signed_url"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    elif isinstance(payload, str) and payload:
        return payload
    return None


class MediaStorage:
    def __init__(self, client, bucket: str | None = None) -> None:
        self.client = client
        self.bucket = bucket or config.PODCASTS_BUCKET

    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    def ensure_bucket(self) -> None:
        """Create the public media bucket when it does not exist yet."""

        try:
            self.client.storage.get_bucket(self.bucket)
            return
        except Exception:
            logger.info("Creating storage bucket %s", self.bucket)
        self.client.storage.create_bucket(
            self.bucket,
            options={
                "public": True,
                "file_size_limit": config.PODCASTS_BUCKET_SIZE_LIMIT,
            },
        )

    def upload(self, project_id: str, kind: str, data: bytes) -> str:
        path = media_path(project_id, kind)
        _, content_type = MEDIA_FILES[kind]
        try:
            self._bucket().upload(
                path,
                data,
                file_options={
                    "content-type": content_type,
                    "upsert": "true",
                    "cache-control": "3600",
                },
            )
        except Exception as exc:
            raise StorageError(f"Error uploading {kind} to storage: {exc}") from exc
        logger.info("Uploaded %s (%d bytes)", path, len(data))
        return path

    def public_url(self, project_id: str, kind: str) -> str:
        return self._bucket().get_public_url(media_path(project_id, kind))

    def signed_url(
        self, project_id: str, kind: str, expires_in: int | None = None
    ) -> str | None:
        seconds = expires_in or config.MEDIA_SIGNED_URL_SECONDS
        try:
            payload = self._bucket().create_signed_url(media_path(project_id, kind), seconds)
        except Exception as exc:
            logger.warning("Signed URL unavailable for %s/%s: %s", project_id, kind, exc)
            return None
        return _signed_url(payload)

    def _list_all(self, path: str) -> list[dict[str, Any]]:
        """List every entry under ``path``, following storage pagination."""

        entries: list[dict[str, Any]] = []
        offset = 0
        while True:
            page = self._bucket().list(
                path,
                {
                    "limit": LIST_PAGE_SIZE,
                    "offset": offset,
                    "sortBy": {"column": "name", "order": "asc"},
                },
            ) or []
            entries.extend(entry for entry in page if isinstance(entry, dict))
            if len(page) < LIST_PAGE_SIZE:
                return entries
            offset += len(page)

    def list_files(self, project_id: str) -> set[str]:
        entries = self._bucket().list(project_id, {"limit": LIST_PAGE_SIZE}) or []
        return {
            entry.get("name")
            for entry in entries
            if isinstance(entry, dict) and entry.get("name")
        }

    def exists(self, project_id: str, kind: str) -> bool:
        filename, _ = MEDIA_FILES[kind]
        return filename in self.list_files(project_id)

    def delete(self, project_id: str, kinds: tuple[str, ...] | None = None) -> None:
        paths = [media_path(project_id, kind) for kind in (kinds or tuple(MEDIA_FILES))]
        try:
            self._bucket().remove(paths)
        except Exception as exc:
            raise StorageError(f"Error deleting media for {project_id}: {exc}") from exc
        logger.info("Removed media %s", ", ".join(paths))

    def media_urls(self, project_id: str, *, signed: bool = False) -> dict[str, dict[str, Any]]:
        """Return ``{kind: {"exists", "url"}}`` for both media objects.

        With ``signed`` a signed URL is requested, falling back to the public
        URL when signing fails.
        """

        present = self.list_files(project_id)
        result: dict[str, dict[str, Any]] = {}
        for kind, (filename, _) in MEDIA_FILES.items():
            exists = filename in present
            url = None
            if exists:
                if signed:
                    url = self.signed_url(project_id, kind)
                url = url or self.public_url(project_id, kind)
            result[kind] = {"exists": exists, "url": url}
        return result

    def list_project_folders(self) -> list[str]:
        folders = []
        for entry in self._list_all(""):
            name = entry.get("name")
            # Les dossiers n'ont pas d'identifiant d'objet.
            if name and not entry.get("id"):
                folders.append(name)
        return folders
