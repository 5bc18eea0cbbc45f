import json
import logging
import os
import random
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from flask import Blueprint, Flask, Response, current_app, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import BadRequest

from .storage import (
    RECENT_ORDER_RANDOM,
    ConfigError,
    LevelNotFoundError,
    LevelStore,
    ServerConfig,
    _safe_int_env,
    canonical_json,
    levels_dir,
    load_config,
)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

lifecycle_logger = logging.getLogger("threedash.lifecycle")
lifecycle_logger.setLevel(numeric_level)

REQUIRED_LEVEL_FIELDS = ("name", "author", "difficulty", "data")
RECENT_FIELD_DEFAULTS = (
    ("name", "Untitled Level"),
    ("author", "Unknown"),
    ("difficulty", "0"),
)

INVALID_LEVEL_ID_MESSAGE = "Invalid level ID"
LEVEL_NOT_FOUND_MESSAGE = "Level not found"
INVALID_LEVEL_DATA_MESSAGE = "Invalid level data"
UPLOAD_DISABLED_MESSAGE = "Uploading is not allowed on this server."
GENERIC_ERROR_MESSAGE = "An error occurred"
UPLOAD_ERROR_MESSAGE = "An error occurred processing your request"

_LEVEL_ID_PATTERN = re.compile(r"[0-9]+")
_IP_CONTROL_PATTERN = re.compile(r"[\r\n\t]")
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")
_LONE_SURROGATE_PATTERN = re.compile(r"[\ud800-\udfff]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


def sanitize_ip(ip: Optional[str]) -> str:
    """Strip line breaks and tabs from a client address before it is logged."""

    if not ip:
        return "unknown"
    return _IP_CONTROL_PATTERN.sub("", ip)


class AccessLogFormatter(logging.Formatter):
    """Render ``[2024-05-01 12:00:00.000] - message`` access lines in UTC."""

    def __init__(self) -> None:
        super().__init__("[%(asctime)s] - %(message)s")

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return stamp.strftime("%Y-%m-%d %H:%M:%S.") + f"{stamp.microsecond // 1000:03d}"


def _configure_access_logger() -> logging.Logger:
    """Attach a stdout handler for access lines, once per process."""

    logger = logging.getLogger("threedash.access")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    for handler in logger.handlers:
        if handler.get_name() == "threedash.access.stdout":
            return logger
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name("threedash.access.stdout")
    handler.setFormatter(AccessLogFormatter())
    logger.addHandler(handler)
    return logger


access_logger = _configure_access_logger()


def validate_level_data(candidate: Any, max_size_bytes: int) -> bool:
    """Return True when *candidate* is a storable level document.

    Every required field must be a non-blank string and the compact JSON
    encoding must be between 1 and *max_size_bytes* bytes (inclusive).
    """

    if not candidate or not isinstance(candidate, dict):
        return False

    for field in REQUIRED_LEVEL_FIELDS:
        value = candidate.get(field)
        if value is None:
            return False
        if str(value).strip() == "":
            return False
        if not isinstance(value, str):
            return False

    try:
        size = len(canonical_json(candidate).encode("utf-8"))
    except ValueError:
        return False
    return 0 < size <= max_size_bytes


def select_recent_ids(level_ids: Iterable[int], limit: int, order: str, rng: Any = None) -> List[int]:
    """Pick the ids served by the recent listing.

    ``LAST`` keeps the *limit* highest ids in descending order. ``RANDOM``
    draws *limit* distinct ids uniformly without replacement.
    """

    ordered = sorted(level_ids, reverse=True)
    count = max(0, min(limit, len(ordered)))
    if order == RECENT_ORDER_RANDOM:
        return (rng or random).sample(ordered, count)
    return ordered[:count]


def _field_text(value: Any, default: str) -> str:
    if not value:
        return default
    if not isinstance(value, str):
        value = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return _LONE_SURROGATE_PATTERN.sub("\ufffd", value)


def recent_entry(level_id: int, document: Dict[str, Any]) -> List[str]:
    """Return the four listing lines for one level."""

    entry = [str(level_id)]
    for field, default in RECENT_FIELD_DEFAULTS:
        entry.append(_field_text(document.get(field), default))
    return entry


def _text(body: str, status: int = 200) -> Response:
    return Response(body, status=status, mimetype="text/plain")


def _config() -> ServerConfig:
    return current_app.extensions["threedash"]["config"]


def _store() -> LevelStore:
    return current_app.extensions["threedash"]["store"]


def log_access(action: str) -> None:
    if _config().logging_enabled:
        access_logger.info("%s %s.", sanitize_ip(request.remote_addr), action)


levels = Blueprint("levels", __name__, url_prefix="/3Dash")


@levels.route("/download/<level_id>", methods=["GET"], strict_slashes=False)
def download_level(level_id: str):
    try:
        if not _LEVEL_ID_PATTERN.fullmatch(level_id):
            return _text(INVALID_LEVEL_ID_MESSAGE, 400)

        store = _store()
        try:
            numeric_id = int(level_id)
        except ValueError:
            # Longer than the int conversion limit, so no file can carry it.
            return _text(LEVEL_NOT_FOUND_MESSAGE, 400)
        if not store.exists(numeric_id):
            return _text(LEVEL_NOT_FOUND_MESSAGE, 400)

        log_access(f"downloaded level {numeric_id}")
        return send_file(store.path_for(numeric_id), mimetype="application/json")
    except FileNotFoundError:
        # Removed between the existence check and the open.
        return _text(LEVEL_NOT_FOUND_MESSAGE, 400)
    except Exception:
        lifecycle_logger.exception(
            "level_download_failed level_id=%s", sanitize_log_value(level_id)
        )
        return _text(GENERIC_ERROR_MESSAGE, 500)


@levels.route("/recent", methods=["GET"], strict_slashes=False)
def recent_levels():
    try:
        config = _config()
        store = _store()
        selected = select_recent_ids(store.list_ids(), config.recent_levels, config.recent_order)

        lines: List[str] = []
        for level_id in selected:
            try:
                document = store.read(level_id)
            except LevelNotFoundError:
                continue
            lines.extend(recent_entry(level_id, document))

        log_access("requested recent levels")
        return _text("\n".join(lines))
    except Exception:
        lifecycle_logger.exception("recent_levels_failed")
        return _text(GENERIC_ERROR_MESSAGE, 500)


@levels.route("/upload", methods=["POST"], strict_slashes=False)
def upload_level():
    config = _config()
    if not config.uploading_allowed:
        return _text(UPLOAD_DISABLED_MESSAGE, 403)

    try:
        try:
            document = request.get_json(force=True, cache=False)
        except BadRequest:
            return _text(UPLOAD_ERROR_MESSAGE, 400)

        if not validate_level_data(document, config.max_size_bytes):
            return _text(INVALID_LEVEL_DATA_MESSAGE, 400)

        store = _store()
        # TODO: serialise next_id + write behind a lock if concurrent uploads
        # must never share an id; today the later write replaces the earlier.
        level_id = store.next_id()
        store.write(level_id, document)

        log_access(f"uploaded level {level_id}")
        return _text(str(level_id))
    except Exception:
        lifecycle_logger.exception("level_upload_failed")
        return _text(UPLOAD_ERROR_MESSAGE, 400)


def reject_blacklisted_ip() -> Optional[Response]:
    """Short-circuit requests from blacklisted addresses before any route runs."""

    config = _config()
    ip = request.remote_addr
    if ip and ip in config.ip_blacklist:
        lifecycle_logger.info("Blocked request from blacklisted IP: %s", sanitize_log_value(ip))
        return _text(config.blacklisted_message, 403)
    return None


def handle_rate_limit(error):
    return _text("Too many requests", 429)


def handle_not_found(error):
    return _text("Not found", 404)


def handle_method_not_allowed(error):
    return _text("Method not allowed", 405)


def create_app(config: Optional[ServerConfig] = None, store: Optional[LevelStore] = None) -> Flask:
    """Build the level server around *config* and *store*.

    Both are read from the environment when omitted.
    """

    if config is None:
        config = load_config()
    if store is None:
        store = LevelStore(levels_dir())

    app = Flask(__name__)
    app.extensions["threedash"] = {"config": config, "store": store}

    # Registered ahead of the limiter so blacklisted callers never spend quota.
    app.before_request(reject_blacklisted_ip)
    Limiter(
        get_remote_address,
        app=app,
        application_limits=[config.rate_limit],
        storage_uri=os.environ.get("THREEDASH_RATE_LIMIT_STORAGE", "memory://"),
    )

    app.register_blueprint(levels)
    app.register_error_handler(429, handle_rate_limit)
    app.register_error_handler(404, handle_not_found)
    app.register_error_handler(405, handle_method_not_allowed)
    return app


def check_levels_folder(store: LevelStore) -> bool:
    if store.is_populated():
        return True
    lifecycle_logger.error(
        "The levels folder is not found or empty at %s. Please create the levels folder and populate it.",
        store.directory,
    )
    return False


def log_configuration_report(config: ServerConfig, host: str, port: int) -> None:
    lifecycle_logger.info("Server running at http://%s:%d/", host, port)
    lifecycle_logger.info("Configuration report:")
    lifecycle_logger.info("Server logging is %s", "ENABLED" if config.logging_enabled else "DISABLED")
    lifecycle_logger.info("Uploading is %s.", "ENABLED" if config.uploading_allowed else "DISABLED")
    lifecycle_logger.info("Recent levels order method is %s.", config.recent_order)
    lifecycle_logger.info("Server will serve the last %d recent levels.", config.recent_levels)


def main() -> int:
    """Verify the level store, report the config and serve until interrupted."""

    try:
        config = load_config()
    except ConfigError as error:
        lifecycle_logger.error("%s", error)
        return 1

    store = LevelStore(levels_dir())
    if not check_levels_folder(store):
        return 1

    host = os.environ.get("THREEDASH_HOST", "0.0.0.0")
    port = _safe_int_env("PORT", config.port)
    server_app = create_app(config, store)
    log_configuration_report(config, host, port)
    server_app.run(host=host, port=port, debug=False, threaded=True)
    return 0


_wsgi_app: Optional[Flask] = None


def get_app() -> Flask:
    """Return the app WSGI servers load, built from the environment on first use."""

    global _wsgi_app
    if _wsgi_app is None:
        _wsgi_app = create_app()
    return _wsgi_app


def __getattr__(name: str):
    # `levelserver.app:app` keeps working without loading config at import time.
    if name == "app":
        return get_app()
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


if __name__ == "__main__":
    sys.exit(main())
