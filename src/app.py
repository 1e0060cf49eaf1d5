from __future__ import annotations

from functools import wraps
from threading import Lock
from time import time
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, g, jsonify, request
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from supabase import create_client

import config
from content_source import normalize_file, normalize_source
from key_selector import (
    CredentialManager,
    CredentialNotFoundError,
    CredentialStore,
    InvalidCredentialError,
    KeySelector,
    NoCredentialsError,
)
from media_storage import MediaStorage
from projects import (
    GenerationInProgressError,
    InvalidTransitionError,
    ProjectRepository,
    ProjectStatus,
    check_transition,
    parse_status,
)
from status_channel import (
    RedisStatusRelay,
    StatusDeduplicator,
    StatusEvent,
    StatusPoller,
    default_channel,
    format_sse,
    get_redis,
    publish_status,
)
from worker import generate_podcast

app = Flask(__name__)
app.secret_key = config.FLASK_SECRET
app.config["JSONIFY_PRETTYPRINT_REGULAR"] = False

scheduler = BackgroundScheduler(daemon=True)

# 🔑 Client Supabase (service role : tables, stockage, vérification des jetons)
supabase = None
if config.SUPABASE_URL and config.SUPABASE_KEY:
    try:
        supabase = create_client(config.SUPABASE_URL, config.SUPABASE_KEY)
    except Exception as e:
        app.logger.error("Erreur supabase connection: %s", e)
        supabase = None


REQS = Counter("flask_http_requests_total", "count", ["method", "endpoint", "status"])
LAT = Histogram("flask_http_request_seconds", "latency", ["endpoint"])
INPROG = Gauge("flask_http_requests_in_progress", "in-progress HTTP requests")

ALLOWED_METRICS_IPS = config.METRICS_IP_WHITELIST

_relay: RedisStatusRelay | None = None
_relay_lock = Lock()


def _fetch_project(project_id: str) -> dict[str, Any] | None:
    if supabase is None:
        return None
    return ProjectRepository(supabase).get(project_id)


poller = StatusPoller(_fetch_project, default_channel, scheduler)


def _ensure_status_relay() -> None:
    """Start the Redis relay once when the worker publishes over Redis."""

    global _relay
    with _relay_lock:
        if _relay is not None and _relay.is_alive():
            return
        try:
            client = get_redis()
        except Exception as exc:  # pragma: no cover - URL invalide
            app.logger.warning("Unable to start status relay: %s", exc)
            return
        if client is None:
            return
        _relay = RedisStatusRelay(default_channel, client)
        _relay.start()


def _announce(row: dict[str, Any] | None) -> None:
    if row is not None:
        publish_status(StatusEvent.from_project(row), default_channel)


def _credential_manager() -> CredentialManager:
    store = CredentialStore(supabase)
    return CredentialManager(store, KeySelector(store))


def require_user(f):
    """Resolve the bearer token to ``g.user_id`` or answer 401."""

    @wraps(f)
    def _wrapper(*args, **kwargs):
        if supabase is None:
            return jsonify({"error": "Supabase not available"}), 500
        header = request.headers.get("Authorization", "")
        if not header:
            return jsonify({"error": "No authorization header"}), 401
        token = header[7:].strip() if header.lower().startswith("bearer ") else header.strip()
        try:
            res = supabase.auth.get_user(token)
            user = getattr(res, "user", None)
            user_id = getattr(user, "id", None)
        except Exception as e:
            app.logger.info("Token rejected: %s", e)
            user_id = None
        if not user_id:
            return jsonify({"error": "Invalid or expired token"}), 401
        g.user_id = str(user_id)
        g.access_token = token
        return f(*args, **kwargs)

    return _wrapper


def _owned_project(project_id: str):
    """Return ``(project, None)`` or ``(None, error_response)``."""

    project = ProjectRepository(supabase).get(project_id)
    if project is None:
        return None, (jsonify({"error": "Project not found"}), 404)
    if str(project.get("user_id")) != g.user_id:
        return None, (
            jsonify({"error": "You don't have permission to access this project"}),
            403,
        )
    return project, None


@app.before_request
def _t0():
    request._t0 = time()
    if request.endpoint != "metrics":
        INPROG.inc()


@app.after_request
def _metrics(resp):
    dt = time() - getattr(request, "_t0", time())
    if request.endpoint != "metrics":
        REQS.labels(
            request.method, request.endpoint or "unknown", resp.status_code
        ).inc()
        LAT.labels(request.endpoint or "unknown").observe(dt)
        INPROG.dec()
    return resp


@app.after_request
def _cors(resp):
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Headers"] = (
        "authorization, x-client-info, apikey, content-type"
    )
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
    return resp


@app.get("/metrics")
def metrics():
    if request.remote_addr not in ALLOWED_METRICS_IPS:
        return jsonify({"error": "forbidden"}), 403
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


@app.get("/api")
def index():
    """Endpoint simple"""
    return jsonify({"message": "API de génération de podcasts VoiceSync"})


@app.get("/health")
def health():
    return jsonify({"status": "ok", "supabase": supabase is not None})


@app.post("/generate-podcast")
@require_user
def generate_podcast_endpoint():
    """Passe le projet en ``processing`` et met la génération en file."""

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid JSON in request body"}), 400
    project_id = data.get("projectId")
    if not project_id:
        return jsonify({"error": "Missing required parameter: projectId"}), 400
    controls = data.get("characterControls")
    if not isinstance(controls, dict):
        controls = None

    projects = ProjectRepository(supabase)
    try:
        _, error = _owned_project(project_id)
        if error:
            return error
        if not CredentialStore(supabase).list_for_user(g.user_id):
            return jsonify({"error": str(NoCredentialsError())}), 400
        token, row = projects.acquire_lease(project_id)
    except GenerationInProgressError as e:
        return jsonify({"error": str(e)}), 409
    except InvalidTransitionError as e:
        return jsonify({"error": str(e)}), 409
    except Exception as e:
        app.logger.error("Error in generate-podcast function: %s", e)
        return jsonify({"error": str(e)}), 500

    _announce(row)

    try:
        generate_podcast.delay(project_id, token, controls)
    except Exception as e:
        app.logger.error("Unable to enqueue generation for %s: %s", project_id, e)
        try:
            _announce(projects.fail(project_id, token, f"Unable to start generation: {e}"))
        except Exception as rollback_error:
            app.logger.error("Rollback failed for %s: %s", project_id, rollback_error)
        return jsonify({"error": "Unable to start podcast generation"}), 500

    app.logger.info("Podcast generation started for project %s", project_id)
    return jsonify({"message": "Podcast generation started", "projectId": project_id})


@app.get("/projects/<project_id>/status")
@require_user
def project_status(project_id):
    try:
        project, error = _owned_project(project_id)
        if error:
            return error
        if project.get("status") == ProjectStatus.PROCESSING.value:
            poller.watch(project_id)
        return jsonify(StatusEvent.from_project(project).to_dict())
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.get("/projects/<project_id>/events")
@require_user
def project_events(project_id):
    """Flux server-sent events des changements de statut."""

    try:
        project, error = _owned_project(project_id)
    except Exception as e:
        return jsonify({"error": str(e)}), 500
    if error:
        return error

    _ensure_status_relay()
    subscription = default_channel.subscribe(project_id)
    current = StatusEvent.from_project(project)
    if current.status == ProjectStatus.PROCESSING.value:
        poller.watch(project_id)
    keepalive = config.STATUS_STREAM_KEEPALIVE_SECONDS

    def stream():
        dedupe = StatusDeduplicator()
        try:
            dedupe.accept(current)
            yield format_sse(current)
            if current.status != ProjectStatus.PROCESSING.value:
                return
            while True:
                event = subscription.get(timeout=keepalive)
                if event is None:
                    yield ": keepalive\n\n"
                    continue
                if not dedupe.accept(event):
                    continue
                yield format_sse(event)
                if event.status != ProjectStatus.PROCESSING.value:
                    return
        finally:
            subscription.close()
            # Plus personne n'écoute : inutile de continuer à interroger la base.
            if subscription.channel.subscriber_count(project_id) == 0:
                poller.stop(project_id)

    return Response(
        stream(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/projects/<project_id>/media")
@require_user
def project_media(project_id):
    try:
        project, error = _owned_project(project_id)
        if error:
            return error
        signed = request.args.get("signed", "").lower() in {"1", "true", "yes"}
        media = MediaStorage(supabase).media_urls(project_id, signed=signed)
        return jsonify({"projectId": project_id, "status": project.get("status"), **media})
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.delete("/projects/<project_id>/media")
@require_user
def delete_project_media(project_id):
    """Supprime l'audio et la vidéo puis repasse le projet en brouillon."""

    try:
        project, error = _owned_project(project_id)
        if error:
            return error
        # Refusé avant de toucher au stockage (ex. projet supprimé).
        status = parse_status(project.get("status"))
        if status is not ProjectStatus.DRAFT:
            check_transition(status, ProjectStatus.DRAFT)
        MediaStorage(supabase).delete(project_id)
        row = ProjectRepository(supabase).reset(project_id)
    except GenerationInProgressError as e:
        return jsonify({"error": str(e)}), 409
    except InvalidTransitionError as e:
        return jsonify({"error": str(e)}), 409
    except Exception as e:
        app.logger.error("Error deleting podcast %s: %s", project_id, e)
        return jsonify({"error": str(e)}), 500

    _announce(row)
    return jsonify(
        {"message": "Podcast deleted", "projectId": project_id, "status": row.get("status")}
    )


@app.get("/api-keys")
@require_user
def list_api_keys():
    try:
        return jsonify(_credential_manager().list_credentials(g.user_id))
    except Exception as e:
        return jsonify({"error": str(e)}), 400


@app.post("/api-keys")
@require_user
def add_api_key():
    data = request.get_json(silent=True) or {}
    try:
        row = _credential_manager().add_credential(
            g.user_id, data.get("name") or "", data.get("key") or ""
        )
        return jsonify(row), 201
    except InvalidCredentialError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        app.logger.error("Error adding API key: %s", e)
        return jsonify({"error": str(e)}), 500


@app.patch("/api-keys/<key_id>")
@require_user
def update_api_key(key_id):
    data = request.get_json(silent=True) or {}
    is_active = data.get("isActive", data.get("is_active"))
    try:
        row = _credential_manager().update_credential(
            key_id,
            g.user_id,
            is_active=None if is_active is None else bool(is_active),
            name=data.get("name"),
        )
        return jsonify(row)
    except CredentialNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.delete("/api-keys/<key_id>")
@require_user
def delete_api_key(key_id):
    try:
        _credential_manager().delete_credential(key_id, g.user_id)
        return jsonify({"message": "API key deleted", "id": key_id})
    except CredentialNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.post("/api-keys/<key_id>/refresh")
@require_user
def refresh_api_key(key_id):
    try:
        return jsonify(_credential_manager().refresh_quota(key_id, g.user_id))
    except CredentialNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except InvalidCredentialError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.post("/content/normalize")
@require_user
def normalize_content():
    """Convertit un texte, une URL ou un fichier en script brut."""

    upload = request.files.get("file")
    if upload is not None:
        result = normalize_file(
            supabase,
            g.user_id,
            upload.filename or "upload",
            upload.read(),
            upload.mimetype,
            g.access_token,
        )
        return jsonify(result.to_dict())

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid JSON in request body"}), 400
    result = normalize_source(
        data.get("type") or "",
        data.get("content"),
        client=supabase,
        user_id=g.user_id,
        access_token=g.access_token,
    )
    return jsonify(result.to_dict())


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
