"""Admin API routes that trigger and monitor catalog syncs."""

from __future__ import annotations

from typing import Any, Mapping

from flask import Blueprint, current_app, jsonify, request, url_for
from werkzeug.routing import BaseConverter

from catalog_sync.engine import SyncCheckpoint
from catalog_sync.resources import ResourceSpec, get_resource
from igdb.query import resolve_igdb_page_size
from jobs.manager import sync_job_type
from routes.api_utils import (
    BadRequestError,
    NotFoundError,
    ServiceUnavailableError,
    handle_api_errors,
)

sync_blueprint = Blueprint("sync", __name__)

SYNC_RUNNER_PATH = "app._execute_sync_job"


class HexJobIdConverter(BaseConverter):
    """Route converter for 32-character hexadecimal job identifiers."""

    regex = r"[0-9a-fA-F]{32}"

    def to_python(self, value: str) -> str:
        return str(value or "").strip().lower()

    def to_url(self, value: str) -> str:
        return super().to_url(str(value or "").strip().lower())


@sync_blueprint.record
def _register_hex_converter(setup_state: Any) -> None:
    setup_state.app.url_map.converters["hexjob"] = HexJobIdConverter


_context: dict[str, Any] = {}


def configure(context: Mapping[str, Any]) -> None:
    """Provide the job manager, store and client factories used by the routes."""
    _context.update(context)


def _ctx(key: str) -> Any:
    if key not in _context:
        raise RuntimeError(f"sync routes missing context value: {key}")
    return _context[key]


def _resolve_resource(name: str) -> ResourceSpec:
    try:
        return get_resource(name)
    except ValueError as exc:
        raise NotFoundError(str(exc)) from exc


def _require_credentials() -> None:
    if not _ctx("validate_igdb_credentials")():
        raise ServiceUnavailableError("IGDB credentials missing")


def _parse_page_size(payload: Mapping[str, Any]) -> int:
    raw = payload.get("page_size")
    if raw in (None, ""):
        return resolve_igdb_page_size(_ctx("IGDB_BATCH_SIZE"))
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise BadRequestError("page_size must be an integer") from None
    if value <= 0:
        raise BadRequestError("page_size must be positive")
    return resolve_igdb_page_size(value)


def _parse_int(payload: Mapping[str, Any], key: str, *, required: bool = False) -> int | None:
    raw = payload.get(key)
    if raw in (None, ""):
        if required:
            raise BadRequestError(f"{key} is required")
        return None
    if isinstance(raw, bool):
        raise BadRequestError(f"{key} must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BadRequestError(f"{key} must be an integer") from None


def _parse_checkpoint(
    payload: Mapping[str, Any], resource: str, filter_value: int | None = None
) -> dict[str, Any] | None:
    """Return the checkpoint of ``payload`` for a sync scoped to ``filter_value``.

    A checkpoint without ``filter_value`` takes the sync's own scope.
    """

    raw = payload.get("checkpoint")
    if raw in (None, ""):
        return None
    if not isinstance(raw, Mapping):
        raise BadRequestError("checkpoint must be an object")
    scope = _parse_int(raw, "filter_value")
    if scope is None:
        scope = filter_value
    elif scope != filter_value:
        raise BadRequestError(
            f"checkpoint filter_value {scope} does not match the sync scope {filter_value}"
        )
    checkpoint = SyncCheckpoint.from_dict({"resource": resource, **raw, "filter_value": scope})
    if checkpoint.resource != resource:
        raise BadRequestError("checkpoint belongs to a different resource")
    return checkpoint.to_dict()


def _run_inline() -> bool:
    flag = request.args.get("sync")
    return flag not in (None, "", "0", "false", "False") or bool(current_app.config.get("TESTING"))


def _dispatch(job_type: str, description: str, job_kwargs: dict[str, Any]):
    if _run_inline():
        result = _ctx("run_sync")(**job_kwargs)
        return jsonify(result), 200

    job_manager = _ctx("job_manager")
    job, created = job_manager.enqueue_job(
        job_type,
        SYNC_RUNNER_PATH,
        description=description,
        kwargs=job_kwargs,
    )
    payload = {
        "status": "accepted" if created else "running",
        "job_id": job.get("id") if job else None,
        "created": created,
    }
    response = jsonify(payload)
    if job:
        response.headers["Location"] = url_for("sync.api_sync_job_detail", job_id=job["id"])
    return response, 202 if created else 200


@sync_blueprint.route("/api/admin/sync/<resource>", methods=["POST"])
@handle_api_errors
def api_sync_resource(resource: str):
    spec = _resolve_resource(resource)
    _require_credentials()
    payload = request.get_json(silent=True) or {}

    job_kwargs: dict[str, Any] = {
        "resource": spec.name,
        "page_size": _parse_page_size(payload),
    }
    if spec.media_source is not None:
        job_kwargs["media"] = True
    else:
        filter_value = _parse_int(payload, "filter_value")
        if filter_value is not None:
            job_kwargs["filter_value"] = filter_value
        checkpoint = _parse_checkpoint(payload, spec.name, filter_value)
        if checkpoint is not None:
            job_kwargs["checkpoint"] = checkpoint

    return _dispatch(sync_job_type(spec.name), f"Syncing IGDB {spec.name}…", job_kwargs)


@sync_blueprint.route("/api/admin/games/sync-platform", methods=["POST"])
@handle_api_errors
def api_sync_games_for_platform():
    spec = get_resource("games")
    _require_credentials()
    payload = request.get_json(silent=True) or {}

    version_id = _parse_int(payload, "platform_version_id")
    if version_id is not None:
        kind, value = "platform_version", version_id
    else:
        kind, value = "platform", _parse_int(payload, "platform_id", required=True)

    job_kwargs: dict[str, Any] = {
        "resource": spec.name,
        "association_kind": kind,
        "association_value": value,
        "page_size": _parse_page_size(payload),
    }
    association_id = _parse_int(payload, "association_id")
    if association_id is not None:
        job_kwargs["association_id"] = association_id
    checkpoint = _parse_checkpoint(payload, spec.name, value)
    if checkpoint is not None:
        job_kwargs["checkpoint"] = checkpoint

    return _dispatch(
        sync_job_type(spec.name, kind, value),
        f"Syncing IGDB games for {kind} {value}…",
        job_kwargs,
    )


@sync_blueprint.route("/api/admin/sync/jobs/<hexjob:job_id>", methods=["GET"])
@handle_api_errors
def api_sync_job_detail(job_id: str):
    job = _ctx("job_manager").get_job(job_id)
    if job is None:
        raise NotFoundError("job not found")
    return jsonify(job)


@sync_blueprint.route("/api/admin/sync/jobs/<hexjob:job_id>/cancel", methods=["POST"])
@handle_api_errors
def api_sync_job_cancel(job_id: str):
    job = _ctx("job_manager").request_cancel(job_id)
    if job is None:
        raise NotFoundError("job not found")
    return jsonify(job), 202


@sync_blueprint.route("/api/admin/sync/<resource>/count", methods=["GET"])
@handle_api_errors
def api_sync_resource_count(resource: str):
    spec = _resolve_resource(resource)
    store = _ctx("get_store")()
    payload: dict[str, Any] = {"resource": spec.name, "local": store.count(spec.name)}

    association_kind = (request.args.get("association_kind") or "").strip()
    if association_kind:
        try:
            spec.association(association_kind)
        except ValueError as exc:
            raise BadRequestError(str(exc)) from exc
        association_id = _parse_int(request.args, "association_id", required=True)
        payload["association_kind"] = association_kind
        payload["association_id"] = association_id
        payload["associated"] = store.count_by_association(
            spec.name, association_id, association_kind=association_kind
        )

    if request.args.get("upstream") not in (None, "", "0", "false", "False"):
        _require_credentials()
        payload["upstream"] = _ctx("get_client")().fetch_count(spec.endpoint, where=spec.where)

    return jsonify(payload)


__all__ = ["configure", "sync_blueprint"]
