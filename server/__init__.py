"""Flask application exposing the BIP353 registration pipeline via HTTP."""
from __future__ import annotations

import hmac
import uuid
from datetime import timedelta
from functools import wraps
from typing import Any, Dict, Optional

from flask import Flask, current_app, g, jsonify, request
from flask_cors import CORS
from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError as JSONSchemaValidationError
from jsonschema.exceptions import best_match
from werkzeug.exceptions import BadRequest, HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from config import (
    API_KEYS,
    APP_VERSION,
    DOMAIN,
    ESTIMATED_COMPLETION_S,
    JOB_BACKEND,
    JOB_STATUS_TTL_S,
    MAX_REQUEST_BYTES,
    TRUST_PROXY,
    WHITELISTED_IPS,
)
from jobs import (
    InfrastructureError,
    Job,
    JobStatus,
    JobWorker,
    Producer,
    StatusStore,
    WorkQueue,
    build_payload,
    create_backends,
)
from jobs.models import format_timestamp, utcnow
from observability.logger import bind_log_context, get_logger, reset_log_context

LOGGER = get_logger("bip353.api")

EXTENSION_KEY = "bip353"

CREATE_USERNAME_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "username": {"type": "string", "pattern": r"^[A-Za-z0-9]+\Z", "minLength": 3, "maxLength": 30},
        "offer": {"type": "string", "pattern": r"^lno1[a-z0-9]+\Z"},
    },
    "required": ["username", "offer"],
    "additionalProperties": False,
}
CREATE_USERNAME_VALIDATOR = Draft7Validator(CREATE_USERNAME_SCHEMA)

_VALIDATION_MESSAGES = {
    ("username", "type"): "Username must be a string",
    ("username", "pattern"): "Username must contain only alphanumeric characters",
    ("username", "minLength"): "Username must be at least 3 characters long",
    ("username", "maxLength"): "Username must not exceed 30 characters",
    ("username", "required"): "Username is required",
    ("offer", "type"): "Offer must be a string",
    ("offer", "pattern"): 'Offer must be a valid BOLT12 offer starting with "lno1"',
    ("offer", "required"): "BOLT12 offer is required",
}


class ApiError(Exception):
    """Exception translated into an HTTP error response."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        code: str = "BAD_REQUEST",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details


def require_whitelisted_ip(view_func):
    """Reject callers outside WHITELISTED_IPS; an empty list allows everyone."""

    @wraps(view_func)
    def wrapper(*args, **kwargs):
        whitelist = current_app.config.get("WHITELISTED_IPS") or ()
        if whitelist:
            client_ip = request.remote_addr or "unknown"
            if client_ip not in whitelist:
                LOGGER.warning("ip_access_denied", extra={"ip": client_ip, "path": request.path})
                raise ApiError("Access denied from this IP address", 403, "IP_NOT_WHITELISTED")
        return view_func(*args, **kwargs)

    return wrapper


def require_api_key(view_func):
    """Require ``Authorization: Bearer <key>`` with a key listed in API_KEYS."""

    @wraps(view_func)
    def wrapper(*args, **kwargs):
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            LOGGER.warning("auth_missing_header", extra={"ip": request.remote_addr, "path": request.path})
            raise ApiError(
                "Please provide a valid API key in the Authorization header",
                401,
                "UNAUTHORIZED",
            )
        api_key = header[len("Bearer "):]
        known_keys = current_app.config.get("API_KEYS") or ()
        if not any(hmac.compare_digest(api_key, key) for key in known_keys):
            LOGGER.warning("auth_invalid_key", extra={"ip": request.remote_addr, "path": request.path})
            raise ApiError("The provided API key is not valid", 401, "INVALID_API_KEY")
        return view_func(*args, **kwargs)

    return wrapper


def create_app(
    store: Optional[StatusStore] = None,
    work_queue: Optional[WorkQueue] = None,
    *,
    worker: Optional[JobWorker] = None,
) -> Flask:
    """Build the API.

    Without an explicit store and queue the backends come from configuration.
    With the in-memory backend the worker has to live in this process, so one
    is started here unless the caller supplied its own.
    """

    app = Flask(__name__)
    app.config.update(
        API_KEYS=tuple(API_KEYS),
        WHITELISTED_IPS=tuple(WHITELISTED_IPS),
        DOMAIN=DOMAIN,
        APP_VERSION=APP_VERSION,
        MAX_CONTENT_LENGTH=MAX_REQUEST_BYTES,
    )
    if hasattr(app, "json"):
        app.json.ensure_ascii = False
    if TRUST_PROXY:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)  # type: ignore[method-assign]
    CORS(app, resources={r"/api/*": {"origins": "*"}})

    if store is None or work_queue is None:
        store, work_queue = create_backends()
        if JOB_BACKEND == "memory" and worker is None:
            worker = _build_embedded_worker(store, work_queue)
    if worker is not None:
        worker.start()

    app.extensions[EXTENSION_KEY] = {
        "store": store,
        "queue": work_queue,
        "producer": Producer(store, work_queue),
        "worker": worker,
    }

    @app.before_request
    def _bind_request_trace() -> None:
        trace_id = request.headers.get("X-Trace-Id") or uuid.uuid4().hex
        g.trace_id = trace_id
        g.log_token = bind_log_context(trace_id=trace_id)

    @app.after_request
    def _append_trace(response):  # type: ignore[override]
        trace_id = getattr(g, "trace_id", None)
        if trace_id:
            response.headers.setdefault("X-Trace-Id", trace_id)
        return response

    @app.teardown_request
    def _teardown_trace(_exc):  # type: ignore[override]
        token = g.pop("log_token", None)
        if token is not None:
            reset_log_context(token)

    @app.errorhandler(ApiError)
    def _handle_api_error(exc: ApiError):  # type: ignore[override]
        LOGGER.warning("api_error", extra={"error": exc.message, "code": exc.code, "status_code": exc.status_code})
        return _error_response(exc.code, exc.message, exc.status_code, details=exc.details)

    @app.errorhandler(InfrastructureError)
    def _handle_infrastructure_error(exc: InfrastructureError):  # type: ignore[override]
        LOGGER.error("backend_unavailable", extra={"error": str(exc)})
        return _error_response("SERVICE_UNAVAILABLE", "Job backend is temporarily unavailable", 503)

    @app.errorhandler(HTTPException)
    def _handle_http_error(exc: HTTPException):  # type: ignore[override]
        if exc.code == 404:
            return _error_response("NOT_FOUND", "The requested endpoint does not exist", 404)
        if exc.code == 413:
            limit = current_app.config["MAX_CONTENT_LENGTH"]
            return _error_response("PAYLOAD_TOO_LARGE", f"Request body exceeds {limit} bytes", 413)
        code = (exc.name or "error").upper().replace(" ", "_")
        return _error_response(code, exc.description or exc.name, exc.code or 500)

    @app.errorhandler(Exception)
    def _handle_generic_error(exc: Exception):  # type: ignore[override]
        LOGGER.exception("unhandled_error", extra={"path": request.path, "method": request.method})
        return _error_response("INTERNAL_ERROR", "An unexpected error occurred", 500)

    @app.get("/health")
    def health():
        pipeline = _pipeline()
        payload: Dict[str, Any] = {
            "status": "healthy",
            "timestamp": format_timestamp(utcnow()),
            "version": current_app.config["APP_VERSION"],
        }
        try:
            payload["queue_length"] = len(pipeline["queue"])
        except InfrastructureError as exc:
            LOGGER.error("health_queue_unavailable", extra={"error": str(exc)})
            payload["status"] = "degraded"
            payload["queue_length"] = None
            return jsonify(payload), 503
        worker = pipeline["worker"]
        if worker is not None:
            payload["worker_running"] = worker.running
        return jsonify(payload)

    @app.post("/api/username")
    @require_whitelisted_ip
    @require_api_key
    def create_username():
        data = _require_json(request)
        _validate_create_request(data)
        username = data["username"]
        offer = data["offer"]

        payload = build_payload(username, offer, current_app.config["DOMAIN"])
        request_id = _pipeline()["producer"].enqueue(payload)
        estimated = utcnow() + timedelta(seconds=ESTIMATED_COMPLETION_S)
        LOGGER.info("username_request_queued", extra={"username": username, "request_id": request_id})
        return (
            jsonify(
                {
                    "success": True,
                    "data": {
                        "requestId": request_id,
                        "status": JobStatus.PENDING.value,
                        "bip353Address": payload.bip353_address,
                        "estimatedCompletionTime": format_timestamp(estimated),
                    },
                }
            ),
            202,
        )

    @app.get("/api/status/<request_id>")
    @require_whitelisted_ip
    @require_api_key
    def request_status(request_id: str):
        try:
            uuid.UUID(request_id)
        except ValueError as exc:
            raise ApiError(
                "Request ID must be a valid UUID",
                400,
                "VALIDATION_ERROR",
                details={"field": "requestId", "value": request_id},
            ) from exc

        job = _pipeline()["store"].get(request_id)
        if job is None:
            raise ApiError("No request found with the provided ID", 404, "REQUEST_NOT_FOUND")
        return jsonify({"success": True, "data": _status_view(job)})

    return app


def _build_embedded_worker(store: StatusStore, work_queue: WorkQueue) -> Optional[JobWorker]:
    from services.registry_client import CloudflareExecutor

    try:
        executor = CloudflareExecutor()
    except ValueError as exc:
        LOGGER.error("embedded_worker_disabled", extra={"error": str(exc)})
        return None
    return JobWorker(store, work_queue, executor, status_ttl=JOB_STATUS_TTL_S)


def _pipeline() -> Dict[str, Any]:
    return current_app.extensions[EXTENSION_KEY]


def _error_response(code: str, message: str, status_code: int, *, details: Optional[Dict[str, Any]] = None):
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    trace_id = getattr(g, "trace_id", None)
    if trace_id:
        error["trace_id"] = trace_id
    return jsonify({"success": False, "error": error}), status_code


def _require_json(req) -> Dict[str, Any]:
    try:
        data = req.get_json(force=True)  # type: ignore[no-any-return]
    except BadRequest as exc:
        raise ApiError("Invalid JSON in request body", 400, "INVALID_JSON") from exc
    if not isinstance(data, dict):
        raise ApiError("Request body must be a JSON object", 400, "VALIDATION_ERROR")
    return data


def _validate_create_request(data: Dict[str, Any]) -> None:
    error: Optional[JSONSchemaValidationError] = best_match(CREATE_USERNAME_VALIDATOR.iter_errors(data))
    if error is None:
        return
    if error.validator == "required":
        missing = [key for key in error.validator_value if key not in data]
        field = missing[0] if missing else None
    elif error.validator == "additionalProperties":
        extra = sorted(set(data) - set(CREATE_USERNAME_SCHEMA["properties"]))
        field = extra[0] if extra else None
    else:
        field = error.path[0] if error.path else None

    message = _VALIDATION_MESSAGES.get((field, error.validator))
    if message is None and error.validator == "additionalProperties" and field:
        message = f'"{field}" is not allowed'
    raise ApiError(
        message or error.message,
        400,
        "VALIDATION_ERROR",
        details={"field": field, "value": data.get(field) if field else None},
    )


def _status_view(job: Job) -> Dict[str, Any]:
    view: Dict[str, Any] = {
        "requestId": job.id,
        "status": job.status.value,
        "bip353Address": job.payload.bip353_address,
        "createdAt": format_timestamp(job.created_at),
        "updatedAt": format_timestamp(job.updated_at),
        "retryCount": job.retry_count,
    }
    if job.result is not None:
        view["completedAt"] = format_timestamp(job.result.completed_at)
        view["recordId"] = job.result.record_id
    if job.error is not None:
        view["error"] = job.error.message
        view["errorCode"] = job.error.code
        view["failedAt"] = format_timestamp(job.error.occurred_at)
    return view


__all__ = ["ApiError", "create_app", "CREATE_USERNAME_SCHEMA"]
