import os

from dotenv import find_dotenv, load_dotenv

from batch_categorizer.logger import get_logger

logger = get_logger(__name__)


CONFIG_FILENAME = "config.yaml"

_CONFIG_FILE_PATH: str | None = None
_CONFIG_FILE_VALUES: dict[str, str] = {}
_EXTERNAL_ENV_KEYS: set[str] = set()

_CONFIG_KEYS = (
    "LOG_LEVEL",
    "LOG_DIR",
    "DATA_DIR",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_BASE_URL",
    "SIMULATE_OPENAI_FAILURE",
    "MAX_BATCH_SIZE",
    "REBATCH_MAX_BATCH_SIZE",
    "CONFIDENCE_THRESHOLD",
    "CACHE_TTL_SECONDS",
    "CACHE_SIZE_LIMIT",
    "RATE_LIMIT_COOLDOWN_SECONDS",
    "CLASSIFY_TIMEOUT_SECONDS",
    "SUMMARY_TIMEOUT_SECONDS",
    "SUMMARY_FORCED_TIMEOUT_SECONDS",
    "STATS_SAMPLE_THRESHOLD",
)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _resolve_dotenv_path() -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        candidate = os.path.join(config_dir, ".env")
        if os.path.exists(candidate):
            return candidate
    resolved = find_dotenv(usecwd=True)
    return resolved or None


def _resolve_config_path() -> str:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        return os.path.join(config_dir, CONFIG_FILENAME)
    cwd = os.getcwd()
    candidate = os.path.join(cwd, "config", CONFIG_FILENAME)
    if os.path.exists(candidate):
        return candidate
    return os.path.join(cwd, CONFIG_FILENAME)


def _strip_inline_comment(raw_value: str) -> str:
    in_single = False
    in_double = False
    for index, char in enumerate(raw_value):
        if char == '"' and not in_single:
            in_double = not in_double
        elif char == "'" and not in_double:
            in_single = not in_single
        elif char == "#" and not in_single and not in_double:
            return raw_value[:index].rstrip()
    return raw_value


def _unquote_value(raw_value: str) -> str:
    if len(raw_value) >= 2 and raw_value[0] == raw_value[-1] and raw_value[0] in {'"', "'"}:
        return raw_value[1:-1]
    return raw_value


def read_config_file(path: str | None) -> dict[str, str]:
    """Read flat ``KEY: value`` pairs, ignoring comments and nested blocks."""
    if not path or not os.path.exists(path):
        return {}

    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            if line[:1].isspace():
                continue
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or ":" not in stripped:
                continue
            key, raw_value = stripped.split(":", 1)
            key = key.strip()
            value = _unquote_value(_strip_inline_comment(raw_value).strip())
            if key and value:
                values[key] = value
    return values


def load_environment() -> None:
    global _CONFIG_FILE_PATH
    global _CONFIG_FILE_VALUES
    global _EXTERNAL_ENV_KEYS

    dotenv_path = _resolve_dotenv_path()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    _EXTERNAL_ENV_KEYS = set(os.environ.keys())

    _CONFIG_FILE_PATH = _resolve_config_path()
    _CONFIG_FILE_VALUES = read_config_file(_CONFIG_FILE_PATH)

    for key in _CONFIG_KEYS:
        if key not in os.environ and key in _CONFIG_FILE_VALUES:
            os.environ[key] = _CONFIG_FILE_VALUES[key]


def get_config_path() -> str | None:
    return _CONFIG_FILE_PATH


def is_env_override(name: str) -> bool:
    return name in _EXTERNAL_ENV_KEYS


def ensure_dirs(*paths: str | None) -> None:
    for path in paths:
        if path and path not in {".", "./"}:
            os.makedirs(path, exist_ok=True)


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning(
            "[ENV] %s='%s' below minimum %s, using default %s.",
            name,
            raw,
            min_value,
            default,
        )
        return default
    return value


def get_env_float(
    name: str,
    default: float,
    min_value: float | None = None,
    max_value: float | None = None,
) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if (min_value is not None and value < min_value) or (max_value is not None and value > max_value):
        logger.warning("[ENV] %s='%s' out of range, using default %s.", name, raw, default)
        return default
    return value


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
    return default


_SENSITIVE_ENV_KEYS = (
    "KEY",
    "TOKEN",
    "SECRET",
    "PASSWORD",
    "PASS",
    "AUTH",
    "BEARER",
    "PRIVATE",
)


def _should_mask_env_value(name: str, value: str) -> bool:
    upper_name = name.upper()
    if any(marker in upper_name for marker in _SENSITIVE_ENV_KEYS):
        return True
    if value.startswith("sk-") or value.startswith("rk-"):
        return True
    if value.lower().startswith("bearer "):
        return True
    return False


def mask_env_value(name: str, value: str) -> str:
    sanitized = value.replace("\r", "\\r").replace("\n", "\\n")
    if not _should_mask_env_value(name, sanitized):
        return sanitized
    if len(sanitized) <= 4:
        return "****"
    return f"{sanitized[:2]}...{sanitized[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Logging configured environment variables (masked where needed).")
    for key in _CONFIG_KEYS:
        raw_value = os.getenv(key)
        value = "<unset>" if raw_value is None else mask_env_value(key, raw_value)
        logger.info("[ENV] %s=%s", key, value)


DEFAULT_MAX_BATCH_SIZE = 50
DEFAULT_REBATCH_MAX_BATCH_SIZE = 25
DEFAULT_CONFIDENCE_THRESHOLD = 0.7
DEFAULT_CACHE_TTL_SECONDS = 24 * 60 * 60
DEFAULT_CACHE_SIZE_LIMIT = 1000
DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS = 60.0
DEFAULT_CLASSIFY_TIMEOUT_SECONDS = 10.0
DEFAULT_SUMMARY_TIMEOUT_SECONDS = 15.0
DEFAULT_SUMMARY_FORCED_TIMEOUT_SECONDS = 20.0
DEFAULT_STATS_SAMPLE_THRESHOLD = 200
DEFAULT_OPENAI_MODEL = "gpt-4o"


load_environment()

DATA_DIR = os.getenv("DATA_DIR", ".")
LOG_DIR = os.getenv("LOG_DIR")
CONFIG_DIR = os.getenv("CONFIG_DIR")

ensure_dirs(DATA_DIR, LOG_DIR, CONFIG_DIR)

OPENAI_MODEL = os.getenv("OPENAI_MODEL") or DEFAULT_OPENAI_MODEL
SIMULATE_OPENAI_FAILURE = get_env_bool("SIMULATE_OPENAI_FAILURE")

MAX_BATCH_SIZE = get_env_int("MAX_BATCH_SIZE", DEFAULT_MAX_BATCH_SIZE, min_value=1)
REBATCH_MAX_BATCH_SIZE = get_env_int(
    "REBATCH_MAX_BATCH_SIZE",
    DEFAULT_REBATCH_MAX_BATCH_SIZE,
    min_value=1,
)
CONFIDENCE_THRESHOLD = get_env_float(
    "CONFIDENCE_THRESHOLD",
    DEFAULT_CONFIDENCE_THRESHOLD,
    min_value=0.0,
    max_value=1.0,
)
CACHE_TTL_SECONDS = get_env_float("CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS, min_value=0.0)
CACHE_SIZE_LIMIT = get_env_int("CACHE_SIZE_LIMIT", DEFAULT_CACHE_SIZE_LIMIT, min_value=1)
RATE_LIMIT_COOLDOWN_SECONDS = get_env_float(
    "RATE_LIMIT_COOLDOWN_SECONDS",
    DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS,
    min_value=0.0,
)
CLASSIFY_TIMEOUT_SECONDS = get_env_float(
    "CLASSIFY_TIMEOUT_SECONDS",
    DEFAULT_CLASSIFY_TIMEOUT_SECONDS,
    min_value=0.1,
)
SUMMARY_TIMEOUT_SECONDS = get_env_float(
    "SUMMARY_TIMEOUT_SECONDS",
    DEFAULT_SUMMARY_TIMEOUT_SECONDS,
    min_value=0.1,
)
SUMMARY_FORCED_TIMEOUT_SECONDS = get_env_float(
    "SUMMARY_FORCED_TIMEOUT_SECONDS",
    DEFAULT_SUMMARY_FORCED_TIMEOUT_SECONDS,
    min_value=0.1,
)
STATS_SAMPLE_THRESHOLD = get_env_int(
    "STATS_SAMPLE_THRESHOLD",
    DEFAULT_STATS_SAMPLE_THRESHOLD,
    min_value=1,
)
