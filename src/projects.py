"""Project status lifecycle and generation lease bookkeeping."""

from __future__ import annotations

import enum
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import config

logger = logging.getLogger(__name__)

PROJECTS_TABLE = "projects"


class ProjectStatus(str, enum.Enum):
    """Every status a project row may carry."""

    DRAFT = "draft"
    PROCESSING = "processing"
    COMPLETED = "completed"
    # Legacy soft-delete value: readable, but no transition enters or leaves it.
    DELETED = "deleted"


ALLOWED_TRANSITIONS: frozenset[tuple[ProjectStatus, ProjectStatus]] = frozenset(
    {
        (ProjectStatus.DRAFT, ProjectStatus.PROCESSING),
        (ProjectStatus.PROCESSING, ProjectStatus.COMPLETED),
        (ProjectStatus.PROCESSING, ProjectStatus.DRAFT),
        (ProjectStatus.COMPLETED, ProjectStatus.DRAFT),
    }
)


class ProjectNotFoundError(LookupError):
    pass


class InvalidTransitionError(ValueError):
    pass


class GenerationInProgressError(RuntimeError):
    """Another generation attempt holds a live lease on the project."""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_status(value: Any) -> ProjectStatus:
    try:
        return ProjectStatus(value)
    except ValueError as exc:
        raise InvalidTransitionError(f"Unknown project status: {value!r}") from exc


def can_transition(current: ProjectStatus, target: ProjectStatus) -> bool:
    return (current, target) in ALLOWED_TRANSITIONS


def check_transition(current: ProjectStatus, target: ProjectStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Invalid status transition: {current.value} -> {target.value}"
        )


def lease_is_live(project: dict[str, Any], *, now: datetime | None = None) -> bool:
    if not project.get("generation_lease"):
        return False
    expires_at = parse_timestamp(project.get("lease_expires_at"))
    if expires_at is None:
        return False
    return expires_at > (now or datetime.now(timezone.utc))


class ProjectRepository:
    """Reads and conditionally updates rows of the ``projects`` table.

    Every status write filters on the status it expects to replace, so a
    write that lost a race matches no row and reports ``False`` instead of
    clobbering the winner.
    """

    def __init__(self, client) -> None:
        self.client = client

    def get(self, project_id: str) -> dict[str, Any] | None:
        res = (
            self.client.table(PROJECTS_TABLE)
            .select("*")
            .eq("id", project_id)
            .limit(1)
            .execute()
        )
        rows = getattr(res, "data", None) or []
        return rows[0] if rows else None

    def require(self, project_id: str) -> dict[str, Any]:
        project = self.get(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return project

    def _conditional_update(
        self,
        project_id: str,
        expected: ProjectStatus,
        payload: dict[str, Any],
        *,
        lease_token: str | None = None,
    ) -> list[dict[str, Any]]:
        query = (
            self.client.table(PROJECTS_TABLE)
            .update(payload)
            .eq("id", project_id)
            .eq("status", expected.value)
        )
        if lease_token is not None:
            query = query.eq("generation_lease", lease_token)
        res = query.execute()
        return getattr(res, "data", None) or []

    def transition(
        self,
        project_id: str,
        current: ProjectStatus,
        target: ProjectStatus,
        *,
        lease_token: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Move ``project_id`` from ``current`` to ``target``.

        Returns the updated row, or ``None`` when the row was no longer in
        ``current`` (or no longer held ``lease_token``).
        """

        check_transition(current, target)
        payload: dict[str, Any] = {"status": target.value, "updated_at": now_iso()}
        if extra:
            payload.update(extra)
        rows = self._conditional_update(
            project_id, current, payload, lease_token=lease_token
        )
        return rows[0] if rows else None

    def acquire_lease(
        self, project_id: str, *, ttl_seconds: int | None = None
    ) -> tuple[str, dict[str, Any]]:
        """Flip the project to processing and hand out a lease token.

        A completed project is reset to draft first. A processing project is
        only taken over when its previous lease has expired.
        """

        ttl = ttl_seconds if ttl_seconds is not None else config.GENERATION_LEASE_SECONDS
        project = self.require(project_id)
        status = parse_status(project.get("status"))
        token = uuid.uuid4().hex
        lease = {
            "generation_lease": token,
            "lease_expires_at": (
                datetime.now(timezone.utc) + timedelta(seconds=ttl)
            ).isoformat(),
            "generation_error": None,
        }

        if status is ProjectStatus.COMPLETED:
            if self.transition(project_id, status, ProjectStatus.DRAFT) is None:
                raise GenerationInProgressError(
                    f"Project {project_id} changed while starting generation"
                )
            status = ProjectStatus.DRAFT

        if status is ProjectStatus.PROCESSING:
            if lease_is_live(project):
                raise GenerationInProgressError(
                    f"Podcast generation already in progress for project {project_id}"
                )
            logger.warning(
                "Taking over expired generation lease on project %s", project_id
            )
            previous = project.get("generation_lease")
            query = (
                self.client.table(PROJECTS_TABLE)
                .update({**lease, "updated_at": now_iso()})
                .eq("id", project_id)
                .eq("status", ProjectStatus.PROCESSING.value)
            )
            if previous:
                query = query.eq("generation_lease", previous)
            else:
                query = query.is_("generation_lease", "null")
            rows = getattr(query.execute(), "data", None) or []
            if not rows:
                raise GenerationInProgressError(
                    f"Podcast generation already in progress for project {project_id}"
                )
            return token, rows[0]

        check_transition(status, ProjectStatus.PROCESSING)
        row = self.transition(
            project_id, status, ProjectStatus.PROCESSING, extra=lease
        )
        if row is None:
            raise GenerationInProgressError(
                f"Podcast generation already in progress for project {project_id}"
            )
        return token, row

    def complete(self, project_id: str, lease_token: str) -> dict[str, Any] | None:
        return self.transition(
            project_id,
            ProjectStatus.PROCESSING,
            ProjectStatus.COMPLETED,
            lease_token=lease_token,
            extra={
                "generation_lease": None,
                "lease_expires_at": None,
                "generation_error": None,
            },
        )

    def fail(
        self, project_id: str, lease_token: str, message: str
    ) -> dict[str, Any] | None:
        return self.transition(
            project_id,
            ProjectStatus.PROCESSING,
            ProjectStatus.DRAFT,
            lease_token=lease_token,
            extra={
                "generation_lease": None,
                "lease_expires_at": None,
                "generation_error": message,
            },
        )

    def reset(self, project_id: str) -> dict[str, Any]:
        """Force a project back to draft, whatever attempt may still run."""

        # A second pass covers a worker flipping the status in between.
        for _ in range(2):
            project = self.require(project_id)
            status = parse_status(project.get("status"))
            if status is ProjectStatus.DRAFT:
                return project
            row = self.transition(
                project_id,
                status,
                ProjectStatus.DRAFT,
                extra={
                    "generation_lease": None,
                    "lease_expires_at": None,
                    "generation_error": None,
                },
            )
            if row is not None:
                return row
        raise GenerationInProgressError(
            f"Project {project_id} kept changing while resetting"
        )
