import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

from _supabase_dummy import DummySupabase
from projects import (
    PROJECTS_TABLE,
    GenerationInProgressError,
    InvalidTransitionError,
    ProjectNotFoundError,
    ProjectRepository,
    ProjectStatus,
    can_transition,
    lease_is_live,
    parse_status,
)


def _iso(delta_seconds: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=delta_seconds)).isoformat()


def _repo(*rows):
    supabase = DummySupabase()
    supabase.seed(PROJECTS_TABLE, *rows)
    return supabase, ProjectRepository(supabase)


def test_transition_table():
    assert can_transition(ProjectStatus.DRAFT, ProjectStatus.PROCESSING)
    assert can_transition(ProjectStatus.PROCESSING, ProjectStatus.COMPLETED)
    assert can_transition(ProjectStatus.PROCESSING, ProjectStatus.DRAFT)
    assert can_transition(ProjectStatus.COMPLETED, ProjectStatus.DRAFT)
    assert not can_transition(ProjectStatus.DRAFT, ProjectStatus.COMPLETED)
    assert not can_transition(ProjectStatus.COMPLETED, ProjectStatus.PROCESSING)
    for status in ProjectStatus:
        assert not can_transition(status, ProjectStatus.DELETED)
        assert not can_transition(ProjectStatus.DELETED, status)


def test_parse_status_rejects_unknown():
    assert parse_status("deleted") is ProjectStatus.DELETED
    with pytest.raises(InvalidTransitionError):
        parse_status("archived")


def test_lease_is_live():
    assert lease_is_live({"generation_lease": "t", "lease_expires_at": _iso(60)})
    assert not lease_is_live({"generation_lease": "t", "lease_expires_at": _iso(-60)})
    assert not lease_is_live({"generation_lease": None, "lease_expires_at": _iso(60)})


def test_acquire_lease_from_draft():
    supabase, repo = _repo({"id": "p1", "user_id": "u1", "status": "draft"})

    token, row = repo.acquire_lease("p1")

    stored = supabase.row(PROJECTS_TABLE, "p1")
    assert row["status"] == stored["status"] == "processing"
    assert stored["generation_lease"] == token
    assert lease_is_live(stored)


def test_second_acquire_while_live_is_rejected():
    _, repo = _repo({"id": "p1", "user_id": "u1", "status": "draft"})
    repo.acquire_lease("p1")

    with pytest.raises(GenerationInProgressError):
        repo.acquire_lease("p1")


def test_expired_lease_is_taken_over():
    supabase, repo = _repo(
        {
            "id": "p1",
            "status": "processing",
            "generation_lease": "stale",
            "lease_expires_at": _iso(-5),
        }
    )

    token, _ = repo.acquire_lease("p1")

    assert token != "stale"
    assert supabase.row(PROJECTS_TABLE, "p1")["generation_lease"] == token


def test_completed_project_goes_through_draft():
    supabase, repo = _repo({"id": "p1", "status": "completed"})

    repo.acquire_lease("p1")

    statuses = [
        record.payload.get("status")
        for record in supabase.records
        if record.op == "update"
    ]
    assert statuses == ["draft", "processing"]


def test_deleted_project_cannot_be_generated():
    _, repo = _repo({"id": "p1", "status": "deleted"})

    with pytest.raises(InvalidTransitionError):
        repo.acquire_lease("p1")


def test_missing_project():
    _, repo = _repo()
    with pytest.raises(ProjectNotFoundError):
        repo.acquire_lease("nope")


def test_complete_requires_current_lease():
    supabase, repo = _repo({"id": "p1", "status": "draft"})
    token, _ = repo.acquire_lease("p1")

    assert repo.complete("p1", "someone-else") is None
    assert supabase.row(PROJECTS_TABLE, "p1")["status"] == "processing"

    row = repo.complete("p1", token)
    assert row["status"] == "completed"
    assert row["generation_lease"] is None


def test_fail_records_error_and_returns_to_draft():
    supabase, repo = _repo({"id": "p1", "status": "draft"})
    token, _ = repo.acquire_lease("p1")

    repo.fail("p1", token, "ElevenLabs TTS API error: 500")

    stored = supabase.row(PROJECTS_TABLE, "p1")
    assert stored["status"] == "draft"
    assert stored["generation_error"] == "ElevenLabs TTS API error: 500"
    assert stored["generation_lease"] is None


def test_reset_invalidates_running_lease():
    supabase, repo = _repo({"id": "p1", "status": "draft"})
    token, _ = repo.acquire_lease("p1")

    assert repo.reset("p1")["status"] == "draft"
    assert repo.complete("p1", token) is None
    assert supabase.row(PROJECTS_TABLE, "p1")["status"] == "draft"
