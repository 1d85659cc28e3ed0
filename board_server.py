#!/usr/bin/env python3
"""
Taskboard Server
----------------
JSON API over the SQLite task store, plus a Server-Sent Events live channel
per project. Every successful task mutation is published on the project's
channel after it commits.

Usage:
    python board_server.py --port 5000 --db ~/.local/share/taskboard/board.db

    TASKBOARD_API_SECRET must be set (or api_secret in config.yaml).

Auth:
    X-API-Key  shared secret, compared in constant time
    X-User-Id  acting user; must be a registered user

API:
    GET    /health
    POST   /api/users                       { email }
    GET    /api/users/search?query=
    GET    /api/projects                    own + member projects
    POST   /api/projects                    { name }
    GET    /api/projects/<id>
    PATCH  /api/projects/<id>               { name }         (owner)
    DELETE /api/projects/<id>                                 (owner)
    POST   /api/projects/<id>/invite        { email }        (owner)
    GET    /api/projects/<id>/members
    GET    /api/projects/<id>/tasks
    GET    /api/projects/<id>/analytics
    GET    /api/projects/<id>/export
    GET    /api/projects/<id>/events        text/event-stream
    POST   /api/tasks                       { project_id, title, ... }
    PATCH  /api/tasks/<id>                  { title?, description?, status?, assignee_id? }
    DELETE /api/tasks/<id>
"""

import hmac
import logging
import math
import queue
from functools import wraps
from pathlib import Path
from typing import Optional

from flask import Flask, Response, g, jsonify, request, stream_with_context

from pkg.taskboard.broadcaster import LiveUpdateBroadcaster, project_channel
from pkg.taskboard.config import BoardConfig
from pkg.taskboard.errors import BoardError, RateLimited, Unauthorized, ValidationFailed
from pkg.taskboard.gateway import LocalGateway
from pkg.taskboard.ratelimit import SlidingWindowLimiter
from pkg.taskboard.schema import EventKind
from pkg.taskboard.store import TaskStore, check_update_fields
from pkg.taskboard.transport import format_sse, format_sse_comment

logger = logging.getLogger("taskboard.server")

LOG_FORMAT = "%(asctime)s [taskboard] %(levelname)s: %(message)s"


def _json_body() -> dict:
    data = request.get_json(force=True, silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationFailed("Request body must be a JSON object")
    return data


def create_app(
    cfg: Optional[BoardConfig] = None,
    store: Optional[TaskStore] = None,
    broadcaster: Optional[LiveUpdateBroadcaster] = None,
) -> Flask:
    """Build the Flask app. store and broadcaster can be injected for tests."""
    cfg = cfg or BoardConfig.load()
    store = store or TaskStore(cfg.db_path)
    broadcaster = broadcaster or LiveUpdateBroadcaster()
    limiter = SlidingWindowLimiter(cfg.rate_limit_max, cfg.rate_limit_window_secs)

    app = Flask(__name__)
    app.config["BOARD"] = cfg
    app.extensions["taskboard"] = {
        "store": store,
        "broadcaster": broadcaster,
        "limiter": limiter,
    }

    # ── Auth ─────────────────────────────────────────────────────────────────

    def _api_key_denied():
        """Error response for a missing or wrong X-API-Key, or None if it checks out."""
        if not cfg.api_secret:
            return jsonify({"error": "API secret not set"}), 503
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, cfg.api_secret):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return None

    def require_api_key(f):
        """Decorator: reject requests without a valid X-API-Key header."""
        @wraps(f)
        def decorated(*args, **kwargs):
            denied = _api_key_denied()
            if denied is not None:
                return denied
            limiter.hit(request.remote_addr or "anonymous")
            return f(*args, **kwargs)
        return decorated

    def require_user(f):
        """Decorator: API key plus an X-User-Id naming a registered user."""
        @wraps(f)
        def decorated(*args, **kwargs):
            denied = _api_key_denied()
            if denied is not None:
                return denied
            user_id = request.headers.get("X-User-Id", "").strip()
            if not user_id or store.get_user(user_id) is None:
                # Only registered users get a window of their own
                limiter.hit(request.remote_addr or "anonymous")
                if not user_id:
                    return jsonify({"error": "Unauthorized: User not authenticated"}), 401
                raise Unauthorized("Unauthorized: Unknown user")
            limiter.hit(user_id)
            g.user_id = user_id
            return f(*args, **kwargs)
        return decorated

    def gateway() -> LocalGateway:
        return LocalGateway(store, broadcaster, g.user_id)

    # ── Errors ───────────────────────────────────────────────────────────────

    @app.errorhandler(BoardError)
    def handle_board_error(e: BoardError):
        response = jsonify(e.to_dict())
        response.status_code = e.status_code
        if isinstance(e, RateLimited) and e.retry_after is not None:
            response.headers["Retry-After"] = str(max(1, math.ceil(e.retry_after)))
        if e.status_code >= 500:
            logger.error(f"{request.method} {request.path}: {e.message}")
        return response

    # ── Health ───────────────────────────────────────────────────────────────

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "db": store.db_path})

    # ── Users ────────────────────────────────────────────────────────────────

    @app.route("/api/users", methods=["POST"])
    @require_api_key
    def api_register():
        data = _json_body()
        user = store.create_user(data.get("email"))
        return jsonify(user.to_dict()), 201

    @app.route("/api/users/search")
    @require_user
    def api_search_users():
        users = store.search_users(request.args.get("query", ""))
        return jsonify({"users": [u.to_dict() for u in users]})

    # ── Projects ─────────────────────────────────────────────────────────────

    @app.route("/api/projects", methods=["GET"])
    @require_user
    def api_list_projects():
        projects = store.list_projects(g.user_id)
        return jsonify({"projects": [p.to_dict() for p in projects]})

    @app.route("/api/projects", methods=["POST"])
    @require_user
    def api_create_project():
        data = _json_body()
        project = store.create_project(g.user_id, data.get("name"))
        logger.info(f"Project created: {project.id} by {g.user_id}")
        return jsonify(project.to_dict()), 201

    @app.route("/api/projects/<project_id>", methods=["GET"])
    @require_user
    def api_get_project(project_id):
        return jsonify(store.get_project(g.user_id, project_id).to_dict())

    @app.route("/api/projects/<project_id>", methods=["PATCH"])
    @require_user
    def api_rename_project(project_id):
        data = _json_body()
        project = store.rename_project(g.user_id, project_id, data.get("name"))
        return jsonify(project.to_dict())

    @app.route("/api/projects/<project_id>", methods=["DELETE"])
    @require_user
    def api_delete_project(project_id):
        task_ids = store.delete_project(g.user_id, project_id)
        channel = project_channel(project_id)
        for task_id in task_ids:
            broadcaster.publish(channel, EventKind.DELETED, task_id)
        broadcaster.close_channel(channel)
        return jsonify({"message": "Project deleted", "deleted_tasks": len(task_ids)})

    @app.route("/api/projects/<project_id>/invite", methods=["POST"])
    @require_user
    def api_invite(project_id):
        data = _json_body()
        members = store.invite_member(g.user_id, project_id, data.get("email"))
        return jsonify({"members": [m.to_dict() for m in members]})

    @app.route("/api/projects/<project_id>/members")
    @require_user
    def api_members(project_id):
        members = gateway().list_members(project_id)
        return jsonify({"members": [m.to_dict() for m in members]})

    @app.route("/api/projects/<project_id>/tasks")
    @require_user
    def api_list_tasks(project_id):
        return jsonify([t.to_dict() for t in gateway().list_tasks(project_id)])

    @app.route("/api/projects/<project_id>/analytics")
    @require_user
    def api_analytics(project_id):
        counts = store.task_analytics(g.user_id, project_id)
        return jsonify({"project_id": project_id, "counts": counts, "total": sum(counts.values())})

    @app.route("/api/projects/<project_id>/export")
    @require_user
    def api_export(project_id):
        return jsonify(store.export_project(g.user_id, project_id))

    # ── Live channel ─────────────────────────────────────────────────────────

    @app.route("/api/projects/<project_id>/events")
    @require_user
    def api_events(project_id):
        store.get_project(g.user_id, project_id)
        events: queue.Queue = queue.Queue(maxsize=cfg.subscriber_queue_size)

        def enqueue(event):
            try:
                events.put_nowait(event)
            except queue.Full:
                logger.debug(f"Subscriber queue full, dropping {event.kind.wire_name}")

        token = broadcaster.subscribe(project_channel(project_id), enqueue)
        user_id = g.user_id

        def stream():
            yield format_sse_comment("connected")
            while True:
                try:
                    event = events.get(timeout=cfg.heartbeat_secs)
                except queue.Empty:
                    if not broadcaster.is_subscribed(token):
                        return
                    yield format_sse_comment("keepalive")
                    continue
                yield format_sse(event)

        response = Response(
            stream_with_context(stream()),
            mimetype="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

        def release():
            broadcaster.unsubscribe(token)
            logger.debug(f"Live channel closed for {user_id} on {project_id}")

        response.call_on_close(release)
        return response

    # ── Tasks ────────────────────────────────────────────────────────────────

    @app.route("/api/tasks", methods=["POST"])
    @require_user
    def api_create_task():
        data = _json_body()
        project_id = data.get("project_id")
        if not project_id:
            raise ValidationFailed("project_id is required")
        task = gateway().create_task(
            project_id,
            data.get("title"),
            description=data.get("description"),
            status=data.get("status"),
            assignee_id=data.get("assignee_id"),
        )
        return jsonify(task.to_dict()), 201

    @app.route("/api/tasks/<task_id>", methods=["PATCH"])
    @require_user
    def api_update_task(task_id):
        data = _json_body()
        check_update_fields(data)
        task = gateway().update_task(task_id, **data)
        return jsonify(task.to_dict())

    @app.route("/api/tasks/<task_id>", methods=["DELETE"])
    @require_user
    def api_delete_task(task_id):
        gateway().delete_task(task_id)
        return jsonify({"message": "Task deleted", "id": task_id})

    return app


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Taskboard Server")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to board.db (overrides TASKBOARD_DB env var)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    args = parser.parse_args()

    cfg = BoardConfig.load(args.config)
    if args.host:
        cfg.host = args.host
    if args.port:
        cfg.port = args.port
    if args.db:
        cfg.db_path = str(Path(args.db).expanduser())
    if args.log_level:
        cfg.log_level = args.log_level.upper()

    logging.basicConfig(level=getattr(logging, cfg.log_level, logging.INFO), format=LOG_FORMAT)

    if not cfg.api_secret:
        logger.warning("No API secret configured; every /api call will answer 503")

    logger.info(f"Taskboard server on http://{cfg.host}:{cfg.port} (db: {cfg.db_path})")
    create_app(cfg).run(host=cfg.host, port=cfg.port, debug=False, threaded=True)
