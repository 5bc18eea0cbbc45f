import json
import logging
import os
import re
import tempfile
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

from limits import parse_many


config_logger = logging.getLogger("threedash.config")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        config_logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def levels_dir() -> Path:
    return _resolve_env_path("THREEDASH_LEVELS_DIR", Path.cwd() / "levels")


def config_path() -> Path:
    """Return the config file to load.

    ``THREEDASH_CONFIG_PATH`` wins when set. Otherwise ``config.json`` in the
    working directory is used, or ``config.toml`` when only that one exists.
    """

    explicit = os.environ.get("THREEDASH_CONFIG_PATH")
    if explicit:
        return Path(explicit).expanduser().resolve()
    json_path = (Path.cwd() / "config.json").resolve()
    toml_path = (Path.cwd() / "config.toml").resolve()
    if not json_path.exists() and toml_path.exists():
        return toml_path
    return json_path


RECENT_ORDER_LAST = "LAST"
RECENT_ORDER_RANDOM = "RANDOM"
RECENT_ORDERS = {RECENT_ORDER_LAST, RECENT_ORDER_RANDOM}

DEFAULT_CONFIG = {
    "server": {
        "port": 3000,
        "logging": True,
        "ip_blacklist": [],
        "blacklisted_message": "You have been blacklisted from this server.",
        "rate_limit": "10 per minute",
    },
    "uploading": {
        "allowed": True,
        "maxSizeBytes": 1024 * 1024,
    },
    "recent": {
        "levels": 50,
        "order": RECENT_ORDER_LAST,
    },
}


class ConfigError(ValueError):
    """Raised when the config file cannot be read or parsed."""


@dataclass(frozen=True)
class ServerConfig:
    """Process-wide settings, read-only once loaded."""

    port: int = DEFAULT_CONFIG["server"]["port"]
    logging_enabled: bool = DEFAULT_CONFIG["server"]["logging"]
    ip_blacklist: FrozenSet[str] = frozenset()
    blacklisted_message: str = DEFAULT_CONFIG["server"]["blacklisted_message"]
    rate_limit: str = DEFAULT_CONFIG["server"]["rate_limit"]
    uploading_allowed: bool = DEFAULT_CONFIG["uploading"]["allowed"]
    max_size_bytes: int = DEFAULT_CONFIG["uploading"]["maxSizeBytes"]
    recent_levels: int = DEFAULT_CONFIG["recent"]["levels"]
    recent_order: str = DEFAULT_CONFIG["recent"]["order"]


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw_config.get(name)
    if isinstance(value, dict):
        return value
    if value is not None:
        config_logger.warning("Config section %s is not a table, ignoring it", name)
    return {}


def _coerce_int(key: str, value: Any, default: int, min_value: int = 0) -> int:
    # bool is an int subclass but "true" is never a sensible count.
    if isinstance(value, bool):
        coerced = None
    else:
        try:
            coerced = int(value)
        except (TypeError, ValueError, OverflowError):
            coerced = None
    if coerced is None or coerced < min_value:
        config_logger.warning(
            "Invalid value for %s: %r. Using default: %d", key, value, default
        )
        return default
    return coerced


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_rate_limit(value: Any, default: str) -> str:
    if not isinstance(value, str) or not value.strip():
        config_logger.warning("Invalid value for server.rate_limit: %r. Using default: %s", value, default)
        return default
    try:
        parse_many(value)
    except ValueError:
        config_logger.warning("Invalid value for server.rate_limit: %r. Using default: %s", value, default)
        return default
    return value.strip()


def _normalize_config(raw_config: Dict[str, Any]) -> ServerConfig:
    if not isinstance(raw_config, dict):
        raw_config = {}

    server = _section(raw_config, "server")
    uploading = _section(raw_config, "uploading")
    recent = _section(raw_config, "recent")
    defaults_server = DEFAULT_CONFIG["server"]
    defaults_uploading = DEFAULT_CONFIG["uploading"]
    defaults_recent = DEFAULT_CONFIG["recent"]

    blacklist = server.get("ip_blacklist", defaults_server["ip_blacklist"])
    if isinstance(blacklist, str):
        blacklist = [blacklist]
    if not isinstance(blacklist, list):
        config_logger.warning("Invalid value for server.ip_blacklist: %r. Ignoring it", blacklist)
        blacklist = []
    cleaned_blacklist = frozenset(
        entry.strip() for entry in blacklist if isinstance(entry, str) and entry.strip()
    )

    message = server.get("blacklisted_message", defaults_server["blacklisted_message"])
    if not isinstance(message, str):
        message = defaults_server["blacklisted_message"]

    order = recent.get("order", defaults_recent["order"])
    order = order.strip().upper() if isinstance(order, str) else order
    if order not in RECENT_ORDERS:
        config_logger.warning(
            "Invalid value for recent.order: %r. Using default: %s", order, defaults_recent["order"]
        )
        order = defaults_recent["order"]

    return ServerConfig(
        port=_coerce_int("server.port", server.get("port", defaults_server["port"]), defaults_server["port"], 1),
        logging_enabled=_coerce_bool(server.get("logging", defaults_server["logging"])),
        ip_blacklist=cleaned_blacklist,
        blacklisted_message=message,
        rate_limit=_coerce_rate_limit(
            server.get("rate_limit", defaults_server["rate_limit"]), defaults_server["rate_limit"]
        ),
        uploading_allowed=_coerce_bool(uploading.get("allowed", defaults_uploading["allowed"])),
        max_size_bytes=_coerce_int(
            "uploading.maxSizeBytes",
            uploading.get("maxSizeBytes", defaults_uploading["maxSizeBytes"]),
            defaults_uploading["maxSizeBytes"],
            1,
        ),
        recent_levels=_coerce_int(
            "recent.levels", recent.get("levels", defaults_recent["levels"]), defaults_recent["levels"]
        ),
        recent_order=order,
    )


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        if path.suffix.lower() == ".toml":
            with path.open("rb") as config_file:
                return tomllib.load(config_file)
        with path.open("r", encoding="utf-8") as config_file:
            return json.load(config_file)
    except (OSError, ValueError) as error:
        # JSONDecodeError and TOMLDecodeError are both ValueErrors.
        raise ConfigError(f"Unable to read config file {path}: {error}") from error


def load_config(path: Optional[Path] = None) -> ServerConfig:
    """Load and normalise the server config.

    A missing file at the default location yields the built-in defaults; a
    missing file that was asked for explicitly is an error.
    """

    explicit = path is not None or bool(os.environ.get("THREEDASH_CONFIG_PATH"))
    path = path or config_path()
    if not path.exists():
        if explicit:
            raise ConfigError(f"Config file {path} does not exist")
        config_logger.warning("No config file at %s, using defaults", path)
        return _normalize_config({})
    return _normalize_config(_read_config_file(path))


LEVEL_FILE_SUFFIX = ".json"
_LEVEL_FILE_PATTERN = re.compile(r"([0-9]+)\.json")
_LONE_SURROGATE_PATTERN = re.compile(r"[\ud800-\udfff]")


class LevelNotFoundError(LookupError):
    """Raised when a level file is absent or cannot be parsed."""

    def __init__(self, level_id: int) -> None:
        super().__init__(f"Level {level_id} not found")
        self.level_id = level_id


def canonical_json(document: Any) -> str:
    """Compact JSON exactly as it is measured and stored.

    Unpaired surrogates are written as ``\\uXXXX`` escapes so the text always
    encodes to UTF-8.
    """

    text = json.dumps(document, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    return _LONE_SURROGATE_PATTERN.sub(lambda match: f"\\u{ord(match.group()):04x}", text)


class LevelStore:
    """Flat directory of ``<id>.json`` level documents.

    Nothing is cached: listing and id allocation rescan the directory on every
    call. ``next_id`` followed by ``write`` is not atomic, so two concurrent
    uploads can be handed the same id and the later write wins.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory).resolve()

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, level_id: int) -> Path:
        return self._directory / f"{int(level_id)}{LEVEL_FILE_SUFFIX}"

    def is_populated(self) -> bool:
        """Return True when the directory exists and holds at least one entry."""

        try:
            with os.scandir(self._directory) as entries:
                return any(True for _ in entries)
        except OSError:
            return False

    def exists(self, level_id: int) -> bool:
        path = self.path_for(level_id)
        try:
            return path.is_file() and os.access(path, os.R_OK)
        except OSError:
            # ENAMETOOLONG and friends: no such level.
            return False

    def read(self, level_id: int) -> Dict[str, Any]:
        path = self.path_for(level_id)
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as error:
            raise LevelNotFoundError(level_id) from error
        if not isinstance(document, dict):
            raise LevelNotFoundError(level_id)
        return document

    def write(self, level_id: int, document: Dict[str, Any]) -> Path:
        """Persist *document* under *level_id* in one atomic replace."""

        path = self.path_for(level_id)
        payload = canonical_json(document)
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=self._directory,
            prefix=f".{int(level_id)}.",
            suffix=".tmp",
            delete=False,
        ) as temp_file:
            temp_path = Path(temp_file.name)
            try:
                temp_file.write(payload)
                temp_file.flush()
                os.fsync(temp_file.fileno())
            except Exception:
                temp_file.close()
                temp_path.unlink(missing_ok=True)
                raise
        try:
            temp_path.replace(path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise
        return path

    def list_ids(self) -> List[int]:
        """Return every stored level id, newest (highest) first."""

        level_ids = []
        for entry in self._directory.iterdir():
            match = _LEVEL_FILE_PATTERN.fullmatch(entry.name)
            if match:
                level_ids.append(int(match.group(1)))
        level_ids.sort(reverse=True)
        return level_ids

    def next_id(self) -> int:
        level_ids = self.list_ids()
        return level_ids[0] + 1 if level_ids else 1
