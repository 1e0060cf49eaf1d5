import json
import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import status_channel
from status_channel import (
    ProjectStatusChannel,
    RedisStatusRelay,
    StatusDeduplicator,
    StatusEvent,
    StatusPoller,
    format_sse,
    publish_status,
)

LEASE_LIVE_UNTIL = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()


class FakeScheduler:
    """Mimics the parts of APScheduler used by the poller."""

    def __init__(self) -> None:
        self.jobs: dict[str, dict] = {}
        self.running = False

    def add_job(self, func, trigger, seconds, args, id, max_instances, replace_existing):
        self.jobs[id] = {"func": func, "args": args, "seconds": seconds}

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def remove_job(self, job_id):
        del self.jobs[job_id]

    def start(self):
        self.running = True

    def tick(self):
        for job in list(self.jobs.values()):
            job["func"](*job["args"])


class FakeRedis:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 1


def test_channel_fans_out_per_project():
    channel = ProjectStatusChannel()
    first = channel.subscribe("p1")
    second = channel.subscribe("p1")
    other = channel.subscribe("p2")

    delivered = channel.publish(StatusEvent("p1", "completed"))

    assert delivered == 2
    assert first.get(timeout=0).status == "completed"
    assert second.get(timeout=0).status == "completed"
    assert other.get(timeout=0) is None


def test_closed_subscription_stops_receiving():
    channel = ProjectStatusChannel()
    with channel.subscribe("p1") as subscription:
        assert channel.subscriber_count("p1") == 1
    assert channel.subscriber_count("p1") == 0
    assert channel.publish(StatusEvent("p1", "draft")) == 0
    assert subscription.get(timeout=0) is None


def test_deduplicator_drops_repeats_and_stale_events():
    dedupe = StatusDeduplicator()

    assert dedupe.accept(StatusEvent("p1", "processing", "2024-01-01T10:00:00+00:00"))
    assert not dedupe.accept(StatusEvent("p1", "processing", "2024-01-01T10:00:05+00:00"))
    assert dedupe.accept(StatusEvent("p1", "completed", "2024-01-01T10:01:00+00:00"))
    assert not dedupe.accept(StatusEvent("p1", "draft", "2024-01-01T09:00:00+00:00"))


def test_publish_uses_redis_when_available():
    fake = FakeRedis()
    channel = ProjectStatusChannel()
    subscription = channel.subscribe("p1")

    publish_status(StatusEvent("p1", "completed", "t"), channel, redis_client=fake)

    assert fake.published[0][0] == "project-status:p1"
    assert json.loads(fake.published[0][1])["status"] == "completed"
    assert subscription.get(timeout=0) is None


def test_get_redis_reuses_one_client_per_url(monkeypatch):
    created: list[str] = []

    def from_url(url, **kwargs):
        created.append(url)
        return FakeRedis()

    monkeypatch.setattr(status_channel, "_redis_clients", {})
    monkeypatch.setattr(status_channel.redis.Redis, "from_url", from_url)
    monkeypatch.setattr(status_channel.config, "STATUS_REDIS_URL", "redis://cache:6379/0")

    first = status_channel.get_redis()
    second = status_channel.get_redis()
    other = status_channel.get_redis("redis://other:6379/1")

    assert first is second
    assert other is not first
    assert created == ["redis://cache:6379/0", "redis://other:6379/1"]

    for _ in range(3):
        publish_status(StatusEvent("p1", "processing", "t"))
    assert len(first.published) == 3
    assert created == ["redis://cache:6379/0", "redis://other:6379/1"]


def test_publish_falls_back_to_local_channel(monkeypatch):
    monkeypatch.setattr(status_channel.config, "STATUS_REDIS_URL", None)
    channel = ProjectStatusChannel()
    subscription = channel.subscribe("p1")

    publish_status(StatusEvent("p1", "draft", "t", "boom"), channel)

    event = subscription.get(timeout=0)
    assert event.error == "boom"


def test_relay_forwards_redis_messages():
    channel = ProjectStatusChannel()
    subscription = channel.subscribe("p9")
    relay = RedisStatusRelay(channel, redis_client=None)

    relay.handle_message({"type": "psubscribe", "data": 1})
    relay.handle_message({"type": "pmessage", "data": "not json"})
    forwarded = relay.handle_message(
        {
            "type": "pmessage",
            "channel": "project-status:p9",
            "data": json.dumps({"projectId": "p9", "status": "completed", "updatedAt": "t"}),
        }
    )

    assert forwarded.status == "completed"
    assert subscription.get(timeout=0).project_id == "p9"
    assert subscription.get(timeout=0) is None


def test_poller_stops_once_status_leaves_processing():
    rows = {
        "p1": {
            "id": "p1",
            "status": "processing",
            "updated_at": "t1",
            "generation_lease": "lease-1",
            "lease_expires_at": LEASE_LIVE_UNTIL,
        }
    }
    fetches: list[str] = []

    def fetch(project_id):
        fetches.append(project_id)
        return rows.get(project_id)

    channel = ProjectStatusChannel()
    subscription = channel.subscribe("p1")
    scheduler = FakeScheduler()
    poller = StatusPoller(fetch, channel, scheduler, interval=5)

    poller.watch("p1")
    poller.watch("p1")
    assert scheduler.jobs["status-poll:p1"]["seconds"] == 5
    assert scheduler.running

    scheduler.tick()
    assert poller.is_watching("p1")
    assert subscription.get(timeout=0) is None

    rows["p1"] = {"id": "p1", "status": "completed", "updated_at": "t2"}
    scheduler.tick()
    assert not poller.is_watching("p1")
    assert subscription.get(timeout=0).status == "completed"

    scheduler.tick()
    assert fetches == ["p1", "p1"]


def test_poller_stops_when_project_disappears():
    scheduler = FakeScheduler()
    poller = StatusPoller(lambda project_id: None, ProjectStatusChannel(), scheduler)

    poller.watch("gone")
    scheduler.tick()

    assert scheduler.jobs == {}


def test_poller_stops_when_generation_lease_expired():
    expired = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
    fetches: list[str] = []

    def fetch(project_id):
        fetches.append(project_id)
        return {
            "id": project_id,
            "status": "processing",
            "generation_lease": "lease-1",
            "lease_expires_at": expired,
        }

    channel = ProjectStatusChannel()
    subscription = channel.subscribe("p1")
    scheduler = FakeScheduler()
    poller = StatusPoller(fetch, channel, scheduler)
    poller.watch("p1")

    scheduler.tick()
    assert not poller.is_watching("p1")
    assert subscription.get(timeout=0) is None

    scheduler.tick()
    assert fetches == ["p1"]


def test_poller_survives_fetch_errors():
    def fetch(project_id):
        raise RuntimeError("db down")

    scheduler = FakeScheduler()
    poller = StatusPoller(fetch, ProjectStatusChannel(), scheduler)
    poller.watch("p1")

    scheduler.tick()

    assert poller.is_watching("p1")


def test_format_sse():
    payload = format_sse(StatusEvent("p1", "completed", "t"))
    assert payload.startswith("event: status\ndata: ")
    assert payload.endswith("\n\n")
    assert json.loads(payload.split("data: ", 1)[1])["projectId"] == "p1"
