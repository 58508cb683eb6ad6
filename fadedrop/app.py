import atexit
import logging
import math
import mimetypes
import os
import re
import uuid
from datetime import datetime, timezone
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from flask import (
    Flask,
    Response,
    abort,
    g,
    has_request_context,
    jsonify,
    redirect,
    render_template,
    request,
    send_file,
    url_for,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import CSRFError, CSRFProtect
from werkzeug.exceptions import HTTPException

from .expiration import auto_delete_at_ms, expires_at_ms, sweep
from .lifecycle import (
    MAX_VIEW_LIMIT,
    MEDIA_RULES,
    UploadLifecycle,
    UploadValidationError,
    files_for_display,
    view_limit_reached,
)
from .records import create_record_store
from .security import get_secret_key_value, read_viewer_token, view_cookie_name
from .storage import (
    BYTES_PER_MB,
    LISTEN_PORT,
    LOGS_DIR,
    MINUTES_UNIT_ENABLED,
    MS_PER_DAY,
    MS_PER_HOUR,
    MS_PER_MINUTE,
    RATELIMIT_ENABLED,
    RATELIMIT_STORAGE_URI,
    RECORD_STORE_BACKEND,
    SCHEDULER_ENABLED,
    SWEEP_INTERVAL_SECONDS,
    MediaStorage,
    _get_optional_bool_env,
    ensure_directories,
    isoformat_utc,
    resolve_stored_path,
    settings_summary,
)

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
# Largest single request: one 500 MB video plus multipart overhead.
MAX_REQUEST_BYTES = 520 * BYTES_PER_MB

UPLOAD_RATE_LIMIT = "30 per hour"
PASSWORD_RATE_LIMIT = "10 per minute"
VIEW_RATE_LIMIT = "120 per minute"
DASHBOARD_RATE_LIMIT = "60 per minute"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")

EXTENSION_CHOICES: List[Tuple[int, str]] = [
    (1 * MS_PER_HOUR, "+1 hour"),
    (2 * MS_PER_HOUR, "+2 hours"),
    (6 * MS_PER_HOUR, "+6 hours"),
    (12 * MS_PER_HOUR, "+12 hours"),
    (1 * MS_PER_DAY, "+1 day"),
    (3 * MS_PER_DAY, "+3 days"),
    (7 * MS_PER_DAY, "+7 days"),
    (30 * MS_PER_DAY, "+30 days"),
]

DELETED_TEXT = "This upload has already been deleted."
DASHBOARD_FEEDBACK: Dict[str, Dict[str, str]] = {
    "expMessage": {"extended": "Expiration extended."},
    "expError": {
        "invalid": "Please choose a valid extension.",
        "tooFar": "Links cannot expire more than 30 days from now.",
        "deleted": DELETED_TEXT,
    },
    "viewMessage": {"updated": "View limit updated.", "removed": "View limit removed."},
    "viewError": {
        "invalid": f"View limit must be a whole number between 1 and {MAX_VIEW_LIMIT}.",
        "deleted": DELETED_TEXT,
    },
    "pwMessage": {"updated": "Password updated.", "removed": "Password removed."},
    "pwError": {
        "empty": "Password cannot be empty.",
        "current_required": "Enter the current password to continue.",
        "current_invalid": "The current password is incorrect.",
        "invalid": "Please choose a valid password action.",
        "deleted": DELETED_TEXT,
    },
    "cdMessage": {"updated": "Countdown visibility updated."},
    "cdError": {
        "invalid": "Please choose a valid countdown visibility option.",
        "deleted": DELETED_TEXT,
    },
    "delMessage": {
        "deleted": "Upload deleted. Stored files are being removed.",
        "alreadyDeleted": "This upload was already deleted.",
    },
    "delError": {},
}


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = MAX_REQUEST_BYTES
app.config["SECRET_KEY"] = get_secret_key_value()
app.config["RATELIMIT_ENABLED"] = RATELIMIT_ENABLED
_session_cookie_secure_override = _get_optional_bool_env("SESSION_COOKIE_SECURE")
if _session_cookie_secure_override is None:
    app.config["SESSION_COOKIE_SECURE"] = not app.config.get("TESTING", False)
else:
    app.config["SESSION_COOKIE_SECURE"] = _session_cookie_secure_override

if not app.config["SESSION_COOKIE_SECURE"] and not app.config.get("TESTING", False):
    logging.getLogger("fadedrop.security").warning(
        "SECURITY WARNING: SESSION_COOKIE_SECURE is disabled. "
        "Viewer cookies will be transmitted over unencrypted HTTP connections. "
        "Enable HTTPS and set SESSION_COOKIE_SECURE=true for production use."
    )

app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
csrf = CSRFProtect(app)
app.logger.setLevel(numeric_level)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri=RATELIMIT_STORAGE_URI,
)

_base_lifecycle_logger = logging.getLogger("fadedrop.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)
scheduler_logger = logging.getLogger("fadedrop.scheduler")

record_store = create_record_store(RECORD_STORE_BACKEND)
media_storage = MediaStorage()
lifecycle = UploadLifecycle(record_store, media_storage)

logging.getLogger("fadedrop.config").info(
    "settings_loaded %s",
    " ".join(f"{key}={value}" for key, value in settings_summary().items()),
)


def run_expiration_sweep() -> int:
    """Auto-delete every upload whose grace period has elapsed."""

    try:
        return sweep(record_store, media_storage, now=lifecycle.clock())
    except Exception:
        scheduler_logger.exception("expiration_sweep_failed")
        return 0


scheduler: Optional[BackgroundScheduler] = None
if SCHEDULER_ENABLED:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=run_expiration_sweep,
        trigger="interval",
        seconds=SWEEP_INTERVAL_SECONDS,
        id="expiration_sweep",
        name="Auto-delete expired uploads",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

atexit.register(lambda: media_storage.shutdown(wait=True))

# Run a single sweep on startup so stale uploads are gone before serving traffic.
run_expiration_sweep()


def wants_json() -> bool:
    return bool(
        request.accept_mimetypes.accept_json and not request.accept_mimetypes.accept_html
    )


def viewer_token_for(upload_id: str) -> Optional[str]:
    return read_viewer_token(upload_id, request.cookies.get(view_cookie_name(upload_id)))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def time_remaining_label(expires_at: Optional[int], now: int) -> str:
    if expires_at is None:
        return "n/a"
    diff = expires_at - now
    if diff <= 0:
        return "Expired"
    days = _round_half_up(diff / MS_PER_DAY)
    hours = _round_half_up(diff / MS_PER_HOUR)
    if days >= 2:
        return f"{days} days left"
    if hours >= 2:
        return f"{hours} hours left"
    minutes = max(1, _round_half_up(diff / MS_PER_MINUTE))
    return f"{minutes} minutes left"


def countdown_text(record: Dict[str, Any], now: int) -> Optional[str]:
    """Viewer-facing "Expires in ..." text, or ``None`` when it should be hidden."""

    if not record.get("countdown_visible") or view_limit_reached(record):
        return None
    expires_at = expires_at_ms(record)
    if expires_at is None or now >= expires_at:
        return None
    diff = expires_at - now
    days = _round_half_up(diff / MS_PER_DAY)
    hours = _round_half_up(diff / MS_PER_HOUR)
    if days >= 2:
        return f"Expires in {days} days"
    if hours >= 2:
        return f"Expires in {hours} hours"
    minutes = max(1, _round_half_up(diff / MS_PER_MINUTE))
    return f"Expires in {minutes} minute{'' if minutes == 1 else 's'}"


def dashboard_feedback() -> Dict[str, Dict[str, str]]:
    """Translate redirect flags such as ``expError=tooFar`` into display text."""

    feedback: Dict[str, Dict[str, str]] = {}
    for flag, messages in DASHBOARD_FEEDBACK.items():
        code = request.args.get(flag)
        if not code:
            continue
        section = re.sub(r"(Message|Error)$", "", flag)
        kind = "error" if flag.endswith("Error") else "success"
        feedback[section] = {"kind": kind, "text": messages.get(code, "Something went wrong. Please try again.")}
    return feedback


def with_dashboard_key(view):
    """Pass the dashboard key from the query string (or form) to *view*."""

    @wraps(view)
    def wrapped(upload_id: str, *args, **kwargs):
        key = request.args.get("key") or request.form.get("key") or ""
        return view(upload_id, key, *args, **kwargs)

    return wrapped


def render_unauthorized(upload_id: str):
    lifecycle_logger.warning(
        "dashboard_request_rejected upload_id=%s path=%s ip=%s",
        sanitize_log_value(upload_id),
        sanitize_log_value(request.path),
        request.remote_addr or "unknown",
    )
    if wants_json():
        return jsonify({"error": "Unauthorized"}), 401
    return (
        render_template(
            "error.html",
            title="Unauthorized",
            heading="Unauthorized",
            message="Unauthorized: invalid dashboard key.",
        ),
        401,
    )


def dashboard_redirect(upload_id: str, key: str, result: Tuple[bool, str], prefix: str):
    ok, code = result
    if not ok and code == "unauthorized":
        return render_unauthorized(upload_id)
    flag = f"{prefix}Message" if ok else f"{prefix}Error"
    return redirect(url_for("dashboard", upload_id=upload_id, key=key, **{flag: code}))


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; "
        "media-src 'self'; "
        "connect-src 'self';"
    )
    return response


@app.after_request
def add_request_id_header(response: Response):
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(404)
def not_found(error):
    if wants_json():
        return jsonify({"error": "Not found"}), 404
    return (
        render_template(
            "error.html",
            title="Invalid link",
            heading="Invalid link",
            message="This link is invalid or no longer available.",
        ),
        404,
    )


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    message = "The upload exceeds the allowed size limit."
    if wants_json():
        return jsonify({"error": "File too large", "message": message}), 413
    return render_template("error.html", title="File too large", heading="File too large", message=message), 413


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    lifecycle_logger.warning(
        "rate_limited path=%s ip=%s",
        sanitize_log_value(request.path),
        request.remote_addr or "unknown",
    )
    if wants_json():
        return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429
    return (
        render_template(
            "error.html",
            title="Too many requests",
            heading="Too many requests",
            message="Too many requests. Please try again later.",
        ),
        429,
    )


@app.errorhandler(CSRFError)
def handle_csrf_error(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Invalid CSRF token")
    if wants_json():
        return jsonify({"error": description}), 400
    return (
        render_template(
            "error.html",
            title="Form expired",
            heading="Form expired",
            message="Your session has expired or the form was invalid. Please try again.",
        ),
        400,
    )


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        return error
    lifecycle_logger.exception(
        "request_failed method=%s path=%s",
        request.method,
        sanitize_log_value(request.path),
    )
    if wants_json():
        return jsonify({"error": "Internal server error"}), 500
    return (
        render_template(
            "error.html",
            title="Something went wrong",
            heading="Something went wrong",
            message="The request could not be completed. Please try again later.",
        ),
        500,
    )


@app.context_processor
def inject_utilities():
    now_utc = datetime.now(tz=timezone.utc)
    return {"current_year": now_utc.year}


@app.template_filter("human_datetime")
def human_datetime(value: Optional[int]) -> str:
    if not isinstance(value, int):
        return "n/a"
    dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


@app.template_filter("human_filesize")
def human_filesize(num: int) -> str:
    if num < 1024:
        return f"{num} B"
    for unit in ["KB", "MB", "GB", "TB"]:
        num /= 1024.0
        if abs(num) < 1024.0:
            return f"{num:.2f} {unit}"
    return f"{num:.2f} PB"


@app.route("/")
def index():
    units = ["hours", "days"]
    if MINUTES_UNIT_ENABLED:
        units.insert(0, "minutes")
    return render_template("upload.html", media_rules=MEDIA_RULES, units=units)


@app.route("/status")
def status_page():
    return render_template("status.html")


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        checks["uploads"] = record_store.count()
        checks["record_store"] = "ok"
    except Exception as error:
        checks["record_store"] = f"error: {str(error)[:100]}"
        healthy = False

    if scheduler is not None:
        job = scheduler.get_job("expiration_sweep")
        checks["scheduler_running"] = bool(scheduler.running)
        checks["sweep"] = "scheduled" if job and job.next_run_time else "not_scheduled"
    else:
        checks["scheduler_running"] = False
        checks["sweep"] = "disabled"

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": isoformat_utc(lifecycle.clock()),
            "checks": checks,
        }
    ), (200 if healthy else 503)


@app.route("/upload", methods=["POST"])
@limiter.limit(lambda: UPLOAD_RATE_LIMIT)
def upload():
    uploads = {field: request.files.getlist(field) for field in request.files.keys()}
    try:
        record = lifecycle.create_upload(
            uploads,
            request.form.get("mediaType"),
            request.form.get("expiresValue"),
            request.form.get("expiresUnit"),
            request.form.get("password"),
        )
    except UploadValidationError as error:
        lifecycle_logger.warning(
            "upload_failed reason=%s ip=%s",
            error.reason,
            request.remote_addr or "unknown",
        )
        if wants_json():
            return jsonify(error.to_payload()), 400
        return (
            render_template("error.html", title=error.title, heading=error.title, message=str(error)),
            400,
        )
    except Exception:
        lifecycle_logger.exception("upload_failed reason=internal")
        if wants_json():
            return jsonify({"error": "Upload failed"}), 500
        return (
            render_template(
                "error.html",
                title="Upload failed",
                heading="Upload failed",
                message="Your upload could not be saved. Please try again.",
            ),
            500,
        )

    payload = {
        "id": record["id"],
        "view_url": url_for("view_upload", upload_id=record["id"], _external=True),
        "dashboard_url": url_for(
            "dashboard", upload_id=record["id"], key=record["dashboard_key"], _external=True
        ),
        "expires_at": isoformat_utc(expires_at_ms(record)),
        "auto_delete_at": isoformat_utc(auto_delete_at_ms(record)),
    }
    lifecycle_logger.info(
        "upload_completed upload_id=%s media_type=%s ip=%s",
        record["id"],
        record["media_type"],
        request.remote_addr or "unknown",
    )
    if wants_json():
        return jsonify(payload), 200
    return render_template("upload_result.html", record=record, links=payload)


@app.route("/v/<upload_id>")
@limiter.limit(lambda: VIEW_RATE_LIMIT)
def view_upload(upload_id: str):
    outcome = lifecycle.record_view(upload_id, viewer_token_for(upload_id))

    if outcome.status == "not_found":
        abort(404)
    if outcome.status == "deleted":
        if outcome.record.get("deleted_reason") == "auto":
            message = "This content has been deleted automatically after its expiration period."
        else:
            message = "This content has been deleted by the uploader."
        return render_template("gone.html", heading="This content has been deleted", message=message), 410
    if outcome.status == "expired":
        return (
            render_template(
                "gone.html",
                heading="This content has expired",
                message="The link you tried to open is no longer available.",
            ),
            410,
        )
    if outcome.status == "view_limit":
        return (
            render_template(
                "gone.html",
                heading="View limit reached",
                message="This content is no longer available because the maximum view limit has been reached.",
            ),
            410,
        )
    if outcome.status == "password_required":
        return render_template(
            "password.html",
            upload_id=upload_id,
            error=request.args.get("error") == "invalid",
        )

    response = app.make_response(
        render_template(
            "view.html",
            record=outcome.record,
            files=outcome.files,
            countdown=countdown_text(outcome.record, lifecycle.clock()),
        )
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.route("/v/<upload_id>/password", methods=["POST"])
@limiter.limit(lambda: PASSWORD_RATE_LIMIT)
def view_password(upload_id: str):
    ok, error, token, max_age = lifecycle.unlock_view(upload_id, request.form.get("password"))
    if not ok:
        if error == "invalid":
            lifecycle_logger.warning(
                "viewer_unlock_failed upload_id=%s ip=%s",
                sanitize_log_value(upload_id),
                request.remote_addr or "unknown",
            )
            return redirect(url_for("view_upload", upload_id=upload_id, error="invalid"))
        return redirect(url_for("view_upload", upload_id=upload_id))

    response = redirect(url_for("view_upload", upload_id=upload_id))
    if token:
        response.set_cookie(
            view_cookie_name(upload_id),
            token,
            max_age=max_age,
            path="/",
            httponly=True,
            samesite="Lax",
            secure=app.config["SESSION_COOKIE_SECURE"],
        )
    return response


@app.route("/media/<upload_id>/<stored_filename>")
@limiter.limit(lambda: VIEW_RATE_LIMIT)
def serve_media(upload_id: str, stored_filename: str):
    meta = lifecycle.media_for_viewer(upload_id, stored_filename, viewer_token_for(upload_id))
    if meta is None:
        abort(404)
    file_path = resolve_stored_path(str(meta["field_name"]), str(meta["stored_filename"]))
    if file_path is None or not file_path.exists():
        lifecycle_logger.warning(
            "media_missing upload_id=%s stored_name=%s",
            sanitize_log_value(upload_id),
            sanitize_log_value(stored_filename),
        )
        abort(404)

    mimetype = meta.get("mime_type") or ""
    if not mimetype or mimetype == "application/octet-stream":
        mimetype = mimetypes.guess_type(str(file_path))[0] or "application/octet-stream"
    response = send_file(file_path, mimetype=mimetype, conditional=True)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.route("/dashboard/<upload_id>")
@with_dashboard_key
def dashboard(upload_id: str, key: str):
    snapshot = lifecycle.dashboard_snapshot(upload_id, key)
    if snapshot is None:
        return render_unauthorized(upload_id)

    now = lifecycle.clock()
    expires_at = expires_at_ms(snapshot)
    return render_template(
        "dashboard.html",
        record=snapshot,
        key=key,
        files=files_for_display(snapshot),
        expires_at=expires_at,
        auto_delete_at=auto_delete_at_ms(snapshot),
        time_remaining=time_remaining_label(expires_at, now),
        view_url=url_for("view_upload", upload_id=upload_id, _external=True),
        extension_choices=EXTENSION_CHOICES,
        max_view_limit=MAX_VIEW_LIMIT,
        feedback=dashboard_feedback(),
    )


@app.route("/dashboard/<upload_id>/expiration", methods=["POST"])
@limiter.limit(lambda: DASHBOARD_RATE_LIMIT)
@with_dashboard_key
def dashboard_expiration(upload_id: str, key: str):
    result = lifecycle.extend_expiration(upload_id, key, request.form.get("extendBy"))
    return dashboard_redirect(upload_id, key, result, "exp")


@app.route("/dashboard/<upload_id>/views", methods=["POST"])
@limiter.limit(lambda: DASHBOARD_RATE_LIMIT)
@with_dashboard_key
def dashboard_views(upload_id: str, key: str):
    result = lifecycle.set_max_views(
        upload_id, key, request.form.get("mode"), request.form.get("maxViews")
    )
    return dashboard_redirect(upload_id, key, result, "view")


@app.route("/dashboard/<upload_id>/password", methods=["POST"])
@limiter.limit(lambda: PASSWORD_RATE_LIMIT)
@with_dashboard_key
def dashboard_password(upload_id: str, key: str):
    result = lifecycle.set_password(
        upload_id,
        key,
        request.form.get("mode"),
        request.form.get("password"),
        request.form.get("currentPassword"),
    )
    return dashboard_redirect(upload_id, key, result, "pw")


@app.route("/dashboard/<upload_id>/countdown", methods=["POST"])
@limiter.limit(lambda: DASHBOARD_RATE_LIMIT)
@with_dashboard_key
def dashboard_countdown(upload_id: str, key: str):
    result = lifecycle.set_countdown_visibility(upload_id, key, request.form.get("countdownMode"))
    return dashboard_redirect(upload_id, key, result, "cd")


@app.route("/dashboard/<upload_id>/delete", methods=["POST"])
@limiter.limit(lambda: DASHBOARD_RATE_LIMIT)
@with_dashboard_key
def dashboard_delete(upload_id: str, key: str):
    result = lifecycle.manual_delete(upload_id, key)
    return dashboard_redirect(upload_id, key, result, "del")


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=LISTEN_PORT, debug=False)
