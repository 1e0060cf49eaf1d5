"""Diffusion des changements de statut des projets (push + polling de secours)."""

from __future__ import annotations

import json
import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import redis

import config
from projects import ProjectStatus, lease_is_live, now_iso, parse_timestamp

logger = logging.getLogger(__name__)

REDIS_CHANNEL_PREFIX = "project-status:"


@dataclass
class StatusEvent:
    project_id: str
    status: str
    updated_at: str | None = None
    error: str | None = None

    @classmethod
    def from_project(cls, project: dict[str, Any]) -> "StatusEvent":
        return cls(
            project_id=str(project.get("id")),
            status=str(project.get("status")),
            updated_at=project.get("updated_at") or now_iso(),
            error=project.get("generation_error"),
        )

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StatusEvent":
        return cls(
            project_id=str(payload.get("projectId") or payload.get("project_id")),
            status=str(payload.get("status")),
            updated_at=payload.get("updatedAt") or payload.get("updated_at"),
            error=payload.get("error"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "status": self.status,
            "updatedAt": self.updated_at,
            "error": self.error,
        }


class StatusSubscription:
    def __init__(self, channel: "ProjectStatusChannel", project_id: str) -> None:
        self.channel = channel
        self.project_id = project_id
        self.queue: queue.Queue[StatusEvent] = queue.Queue()
        self.closed = False

    def get(self, timeout: float | None = None) -> StatusEvent | None:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.channel.unsubscribe(self)

    def __enter__(self) -> "StatusSubscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class ProjectStatusChannel:
    """In-process fan-out of status events to per-project subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[StatusSubscription]] = {}

    def subscribe(self, project_id: str) -> StatusSubscription:
        subscription = StatusSubscription(self, str(project_id))
        with self._lock:
            self._subscribers.setdefault(subscription.project_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: StatusSubscription) -> None:
        with self._lock:
            subs = self._subscribers.get(subscription.project_id, [])
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                self._subscribers.pop(subscription.project_id, None)

    def subscriber_count(self, project_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(str(project_id), []))

    def publish(self, event: StatusEvent) -> int:
        with self._lock:
            subs = list(self._subscribers.get(event.project_id, []))
        for subscription in subs:
            subscription.queue.put(event)
        return len(subs)


# Canal partagé par l'API et les tâches exécutées dans le même processus.
default_channel = ProjectStatusChannel()


class StatusDeduplicator:
    """Drops repeated events and events older than the last one accepted."""

    def __init__(self) -> None:
        self._last: dict[str, StatusEvent] = {}

    def accept(self, event: StatusEvent) -> bool:
        previous = self._last.get(event.project_id)
        if previous is not None:
            if previous.status == event.status and previous.error == event.error:
                return False
            prev_ts = parse_timestamp(previous.updated_at)
            new_ts = parse_timestamp(event.updated_at)
            if prev_ts and new_ts and new_ts < prev_ts:
                return False
        self._last[event.project_id] = event
        return True


def redis_channel(project_id: str) -> str:
    return f"{REDIS_CHANNEL_PREFIX}{project_id}"


_redis_clients: dict[str, redis.Redis] = {}
_redis_lock = threading.Lock()


def get_redis(url: str | None = None) -> redis.Redis | None:
    """Return the shared Redis client for ``url`` (one connection pool per URL)."""

    url = url or config.STATUS_REDIS_URL
    if not url:
        return None
    with _redis_lock:
        client = _redis_clients.get(url)
        if client is None:
            client = redis.Redis.from_url(url, decode_responses=True)
            _redis_clients[url] = client
        return client


def publish_status(
    event: StatusEvent,
    channel: ProjectStatusChannel | None = None,
    redis_client: redis.Redis | None = None,
) -> None:
    """Send ``event`` over Redis when configured, else to ``channel``.

    Publishing failures are logged: the status row stays the source of truth
    and the fallback poll picks the change up.
    """

    try:
        client = redis_client if redis_client is not None else get_redis()
        if client is not None:
            client.publish(redis_channel(event.project_id), json.dumps(event.to_dict()))
        else:
            (channel or default_channel).publish(event)
    except Exception as exc:
        logger.warning(
            "Unable to publish status %s for project %s: %s",
            event.status,
            event.project_id,
            exc,
        )


class RedisStatusRelay(threading.Thread):
    """Forwards ``project-status:*`` messages into an in-process channel."""

    def __init__(
        self,
        channel: ProjectStatusChannel,
        redis_client: redis.Redis,
        *,
        poll_timeout: float = 1.0,
    ) -> None:
        super().__init__(name="status-relay", daemon=True)
        self.channel = channel
        self.redis_client = redis_client
        self.poll_timeout = poll_timeout
        self._stop_event = threading.Event()

    def handle_message(self, message: dict[str, Any] | None) -> StatusEvent | None:
        if not message or message.get("type") not in {"message", "pmessage"}:
            return None
        try:
            payload = json.loads(message.get("data") or "")
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed status message: %r", message.get("data"))
            return None
        if not isinstance(payload, dict):
            return None
        event = StatusEvent.from_dict(payload)
        self.channel.publish(event)
        return event

    def run(self) -> None:
        pubsub = self.redis_client.pubsub()
        pubsub.psubscribe(f"{REDIS_CHANNEL_PREFIX}*")
        try:
            while not self._stop_event.is_set():
                try:
                    message = pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=self.poll_timeout
                    )
                except redis.RedisError as exc:
                    logger.error("Status relay lost Redis connection: %s", exc)
                    self._stop_event.wait(self.poll_timeout)
                    continue
                self.handle_message(message)
        finally:
            pubsub.close()

    def stop(self) -> None:
        self._stop_event.set()


class StatusPoller:
    """Fallback poll: one interval job per project while it is processing."""

    def __init__(
        self,
        fetch_project: Callable[[str], dict[str, Any] | None],
        channel: ProjectStatusChannel,
        scheduler,
        interval: int | None = None,
    ) -> None:
        self.fetch_project = fetch_project
        self.channel = channel
        self.scheduler = scheduler
        self.interval = interval or config.STATUS_POLL_INTERVAL

    @staticmethod
    def job_id(project_id: str) -> str:
        return f"status-poll:{project_id}"

    def is_watching(self, project_id: str) -> bool:
        return self.scheduler.get_job(self.job_id(project_id)) is not None

    def watch(self, project_id: str) -> None:
        project_id = str(project_id)
        if self.is_watching(project_id):
            return
        self.scheduler.add_job(
            self._poll,
            "interval",
            seconds=self.interval,
            args=[project_id],
            id=self.job_id(project_id),
            max_instances=1,
            replace_existing=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()

    def stop(self, project_id: str) -> None:
        job_id = self.job_id(str(project_id))
        if self.scheduler.get_job(job_id) is not None:
            self.scheduler.remove_job(job_id)

    def _poll(self, project_id: str) -> None:
        try:
            project = self.fetch_project(project_id)
        except Exception as exc:
            logger.warning("Status poll failed for project %s: %s", project_id, exc)
            return
        if project is None:
            logger.info("Project %s disappeared, stopping status poll", project_id)
            self.stop(project_id)
            return
        if project.get("status") != ProjectStatus.PROCESSING.value:
            self.channel.publish(StatusEvent.from_project(project))
            self.stop(project_id)
        elif not lease_is_live(project):
            # Le job a disparu sans libérer le bail : plus rien à attendre.
            logger.info("Generation lease expired for project %s, stopping status poll", project_id)
            self.stop(project_id)


def format_sse(event: StatusEvent) -> str:
    return f"event: status\ndata: {json.dumps(event.to_dict())}\n\n"
