"""ElevenLabs credential store and key rotation policy."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import elevenlabs_client
from elevenlabs_client import ProviderError, mask_key
from projects import now_iso, parse_timestamp

logger = logging.getLogger(__name__)

CREDENTIALS_TABLE = "elevenlabs_api_keys"


class NoCredentialsError(LookupError):
    def __init__(self, message: str = (
        "No ElevenLabs API key found. Please add an API key in your dashboard."
    )) -> None:
        super().__init__(message)


class CredentialsExhaustedError(RuntimeError):
    def __init__(self, message: str = (
        "All API keys have been exhausted. Please add more API keys with available quota."
    )) -> None:
        super().__init__(message)


class InvalidCredentialError(ValueError):
    pass


class CredentialNotFoundError(LookupError):
    pass


def _quota(credential: dict[str, Any]) -> int | None:
    value = credential.get("quota_remaining")
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def is_usable(credential: dict[str, Any]) -> bool:
    quota = _quota(credential)
    return bool(credential.get("is_active")) and (quota is None or quota > 0)


def masked(credential: dict[str, Any]) -> dict[str, Any]:
    """Return ``credential`` with its key material hidden."""

    public = {k: v for k, v in credential.items() if k != "key"}
    public["key"] = mask_key(credential.get("key"))
    return public


class CredentialStore:
    def __init__(self, client) -> None:
        self.client = client

    def list_for_user(self, user_id: str) -> list[dict[str, Any]]:
        res = (
            self.client.table(CREDENTIALS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return list(getattr(res, "data", None) or [])

    def get(self, credential_id: str, user_id: str | None = None) -> dict[str, Any]:
        query = self.client.table(CREDENTIALS_TABLE).select("*").eq("id", credential_id)
        if user_id is not None:
            query = query.eq("user_id", user_id)
        rows = getattr(query.limit(1).execute(), "data", None) or []
        if not rows:
            raise CredentialNotFoundError(f"API key {credential_id} not found")
        return rows[0]

    def insert(self, payload: dict[str, Any]) -> dict[str, Any]:
        res = self.client.table(CREDENTIALS_TABLE).insert(payload).execute()
        rows = getattr(res, "data", None) or []
        return rows[0] if rows else dict(payload)

    def update(self, credential_id: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        body = dict(payload)
        body.setdefault("updated_at", now_iso())
        res = (
            self.client.table(CREDENTIALS_TABLE)
            .update(body)
            .eq("id", credential_id)
            .execute()
        )
        rows = getattr(res, "data", None) or []
        return rows[0] if rows else None

    def delete(self, credential_id: str, user_id: str) -> None:
        self.client.table(CREDENTIALS_TABLE).delete().eq("id", credential_id).eq(
            "user_id", user_id
        ).execute()


class KeySelector:
    """Picks the credential used for a provider call.

    ``validate`` returns the remaining quota for a raw key and raises
    ``ProviderError`` when the provider rejects it.
    """

    def __init__(
        self,
        store: CredentialStore,
        validate: Callable[[str], int] | None = None,
    ) -> None:
        self.store = store
        self._validate = validate

    def validate(self, api_key: str) -> int:
        if self._validate is not None:
            return self._validate(api_key)
        return elevenlabs_client.get_remaining_quota(api_key)

    def select_key(self, user_id: str) -> dict[str, Any]:
        credentials = self.store.list_for_user(user_id)
        if not credentials:
            raise NoCredentialsError()

        active = [c for c in credentials if is_usable(c)]
        chosen: dict[str, Any] | None = None
        if active:
            known = [c for c in active if _quota(c) is not None]
            if known:
                chosen = max(known, key=lambda c: _quota(c) or 0)
            else:
                chosen = max(
                    active,
                    key=lambda c: parse_timestamp(c.get("created_at")).timestamp()
                    if parse_timestamp(c.get("created_at"))
                    else 0.0,
                )
        else:
            chosen = self._reactivate_first([c for c in credentials if not is_usable(c)])

        if chosen is None:
            raise CredentialsExhaustedError()

        updated = self.store.update(chosen["id"], {"last_used": now_iso()})
        return updated or chosen

    def _reactivate_first(self, candidates: list[dict[str, Any]]) -> dict[str, Any] | None:
        for credential in candidates:
            label = mask_key(credential.get("key"))
            try:
                quota = self.validate(credential.get("key") or "")
            except ProviderError as exc:
                logger.warning("Re-validation failed for API key %s: %s", label, exc)
                continue
            if quota <= 0:
                if _quota(credential) != 0:
                    self.store.update(credential["id"], {"quota_remaining": 0})
                continue
            logger.info("Reactivating API key %s with quota %s", label, quota)
            reactivated = self.store.update(
                credential["id"], {"is_active": True, "quota_remaining": quota}
            )
            return reactivated or {**credential, "is_active": True, "quota_remaining": quota}
        return None

    def mark_exhausted(self, credential_id: str) -> None:
        self.store.update(credential_id, {"is_active": False, "quota_remaining": 0})

    def record_usage(self, credential: dict[str, Any]) -> None:
        """Refresh quota bookkeeping after a successful call; never raises."""

        try:
            quota = self.validate(credential.get("key") or "")
            self.store.update(
                credential["id"], {"quota_remaining": quota, "last_used": now_iso()}
            )
        except Exception as exc:
            logger.error(
                "Error updating API key usage stats for %s: %s",
                mask_key(credential.get("key")),
                exc,
            )


class CredentialManager:
    """User-facing operations behind the API key endpoints."""

    def __init__(self, store: CredentialStore, selector: KeySelector) -> None:
        self.store = store
        self.selector = selector

    def _validated_quota(self, api_key: str) -> int:
        try:
            return self.selector.validate(api_key)
        except ProviderError as exc:
            raise InvalidCredentialError(f"Invalid ElevenLabs API key: {exc}") from exc

    def list_credentials(self, user_id: str) -> list[dict[str, Any]]:
        return [masked(c) for c in self.store.list_for_user(user_id)]

    def add_credential(self, user_id: str, name: str, api_key: str) -> dict[str, Any]:
        api_key = (api_key or "").strip()
        if not api_key:
            raise InvalidCredentialError("API key is required")
        quota = self._validated_quota(api_key)
        now = now_iso()
        row = self.store.insert(
            {
                "user_id": user_id,
                "key": api_key,
                "name": (name or "").strip() or "ElevenLabs key",
                "is_active": True,
                "quota_remaining": quota,
                "created_at": now,
                "updated_at": now,
            }
        )
        logger.info("Stored API key %s for user %s", mask_key(api_key), user_id)
        return masked(row)

    def update_credential(
        self,
        credential_id: str,
        user_id: str,
        *,
        is_active: bool | None = None,
        name: str | None = None,
    ) -> dict[str, Any]:
        self.store.get(credential_id, user_id)
        payload: dict[str, Any] = {}
        if is_active is not None:
            payload["is_active"] = bool(is_active)
        if name is not None and name.strip():
            payload["name"] = name.strip()
        row = self.store.update(credential_id, payload)
        if row is None:
            raise CredentialNotFoundError(f"API key {credential_id} not found")
        return masked(row)

    def set_active(self, credential_id: str, user_id: str, active: bool) -> dict[str, Any]:
        return self.update_credential(credential_id, user_id, is_active=active)

    def rename(self, credential_id: str, user_id: str, name: str) -> dict[str, Any]:
        return self.update_credential(credential_id, user_id, name=name)

    def refresh_quota(self, credential_id: str, user_id: str) -> dict[str, Any]:
        credential = self.store.get(credential_id, user_id)
        quota = self._validated_quota(credential.get("key") or "")
        row = self.store.update(credential_id, {"quota_remaining": quota})
        return masked(row or {**credential, "quota_remaining": quota})

    def delete_credential(self, credential_id: str, user_id: str) -> None:
        self.store.get(credential_id, user_id)
        self.store.delete(credential_id, user_id)
