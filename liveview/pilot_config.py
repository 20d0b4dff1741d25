import json
import logging
import os


CONFIG_FILE_ENV = "CONFIG_FILE"
DEFAULT_CONFIG_FILE = "pilot-liveview.json"

# Bounds enforced by the control plane /live endpoint.
LIVE_LOOKBACK_MIN_SEC = 1
LIVE_LOOKBACK_MAX_SEC = 300

DEFAULT_CONFIG = {
    "control_plane_url": "http://127.0.0.1:8080",
    "api_prefix": "/api/v1",
    "request_timeout_sec": 10,
    "live_poll_interval_ms": 2000,
    "live_lookback_sec": 60,
    "command_poll_interval_ms": 2000,
    "command_max_attempts": 30,
    "dashboard_host": "127.0.0.1",
    "dashboard_port": 8010,
    "log_dir": "logs_liveview",
    "log_level": "INFO",
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

log = logging.getLogger("pilot.config")


def get_config_file_path():
    return os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_FILE)


def _to_int(value, fallback, minimum=None, maximum=None):
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = fallback
    if minimum is not None and parsed < minimum:
        return minimum
    if maximum is not None and parsed > maximum:
        return maximum
    return parsed


def _to_float(value, fallback, minimum=None):
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = fallback
    if minimum is not None and parsed < minimum:
        return minimum
    return parsed


def _normalize_url(value, fallback):
    text = str(value or "").strip()
    if not text:
        return fallback
    return text.rstrip("/")


def _normalize_api_prefix(value):
    text = str(value if value is not None else "").strip().strip("/")
    if not text:
        return ""
    return "/" + text


def _normalize_log_level(value):
    text = str(value or "").strip().upper()
    if text in LOG_LEVELS:
        return text
    return DEFAULT_CONFIG["log_level"]


def _read_config_file(path):
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as file:
            loaded = json.load(file)
    except (OSError, json.JSONDecodeError) as exc:
        log.warning("Failed to load configuration from %s: %s", path, exc)
        return {}

    if not isinstance(loaded, dict):
        log.warning("Invalid configuration file (expected a JSON object): %s", path)
        return {}
    return loaded


def _apply_env_overrides(config):
    overrides = {
        "CONTROL_PLANE_URL": "control_plane_url",
        "API_PREFIX": "api_prefix",
        "REQUEST_TIMEOUT_SEC": "request_timeout_sec",
        "LIVE_POLL_INTERVAL_MS": "live_poll_interval_ms",
        "LIVE_LOOKBACK_SEC": "live_lookback_sec",
        "COMMAND_POLL_INTERVAL_MS": "command_poll_interval_ms",
        "COMMAND_MAX_ATTEMPTS": "command_max_attempts",
        "DASHBOARD_HOST": "dashboard_host",
        "DASHBOARD_PORT": "dashboard_port",
        "LOG_DIR": "log_dir",
        "LOG_LEVEL": "log_level",
    }
    for env_name, config_key in overrides.items():
        env_value = os.environ.get(env_name)
        if env_value is not None and env_value != "":
            config[config_key] = env_value


def normalize_config(raw_config):
    base = dict(DEFAULT_CONFIG)
    if isinstance(raw_config, dict):
        for key in DEFAULT_CONFIG:
            if key in raw_config:
                base[key] = raw_config[key]

    base["control_plane_url"] = _normalize_url(
        base.get("control_plane_url"),
        DEFAULT_CONFIG["control_plane_url"],
    )
    if "api_prefix" in (raw_config or {}):
        base["api_prefix"] = _normalize_api_prefix(base.get("api_prefix"))
    else:
        base["api_prefix"] = DEFAULT_CONFIG["api_prefix"]

    base["request_timeout_sec"] = _to_float(
        base.get("request_timeout_sec"),
        DEFAULT_CONFIG["request_timeout_sec"],
        minimum=1.0,
    )
    base["live_poll_interval_ms"] = _to_int(
        base.get("live_poll_interval_ms"),
        DEFAULT_CONFIG["live_poll_interval_ms"],
        minimum=100,
    )
    base["live_lookback_sec"] = _to_int(
        base.get("live_lookback_sec"),
        DEFAULT_CONFIG["live_lookback_sec"],
        minimum=LIVE_LOOKBACK_MIN_SEC,
        maximum=LIVE_LOOKBACK_MAX_SEC,
    )
    base["command_poll_interval_ms"] = _to_int(
        base.get("command_poll_interval_ms"),
        DEFAULT_CONFIG["command_poll_interval_ms"],
        minimum=100,
    )
    base["command_max_attempts"] = _to_int(
        base.get("command_max_attempts"),
        DEFAULT_CONFIG["command_max_attempts"],
        minimum=1,
    )

    base["dashboard_host"] = str(base.get("dashboard_host") or "").strip() or DEFAULT_CONFIG["dashboard_host"]
    base["dashboard_port"] = _to_int(
        base.get("dashboard_port"),
        DEFAULT_CONFIG["dashboard_port"],
        minimum=1,
        maximum=65535,
    )
    base["log_dir"] = str(base.get("log_dir") or "").strip() or DEFAULT_CONFIG["log_dir"]
    base["log_level"] = _normalize_log_level(base.get("log_level"))
    return base


def load_editable_config(config_path=None):
    path = config_path or get_config_file_path()
    loaded = _read_config_file(path)
    return normalize_config(loaded)


def load_runtime_config(config_path=None):
    path = config_path or get_config_file_path()
    loaded = _read_config_file(path)
    _apply_env_overrides(loaded)
    return normalize_config(loaded)


def save_config(config, config_path=None):
    path = config_path or get_config_file_path()
    normalized = normalize_config(config)
    with open(path, "w", encoding="utf-8") as file:
        json.dump(normalized, file, indent=2, ensure_ascii=False)
    return normalized


def configure_logging(config):
    log_dir = config.get("log_dir") or DEFAULT_CONFIG["log_dir"]
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "pilot-liveview.log")
    logging.basicConfig(
        level=getattr(logging, config.get("log_level") or "INFO", logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_path, encoding="utf-8"),
        ],
        force=True,
    )
    log.info("Active configuration file: %s", get_config_file_path())
    log.info("Control plane: %s%s", config.get("control_plane_url"), config.get("api_prefix"))
    return log_path
