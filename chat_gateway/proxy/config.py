import json
import os

from .logger import logger


def _load_dotenv():
    root_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir, os.pardir))
    dotenv_path = os.path.join(root_dir, ".env")
    if not os.path.isfile(dotenv_path):
        return
    try:
        with open(dotenv_path, "r", encoding="utf-8") as handle:
            for line in handle:
                stripped = line.strip()
                if not stripped or stripped.startswith("#"):
                    continue
                if stripped.startswith("export "):
                    stripped = stripped[7:].strip()
                if "=" not in stripped:
                    logger.warning("Skipping invalid .env line: %s", stripped)
                    continue
                key, value = stripped.split("=", 1)
                key = key.strip()
                value = value.strip()
                if not key:
                    continue
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {"\"", "'"}:
                    value = value[1:-1]
                os.environ.setdefault(key, value)
    except OSError as exc:
        logger.warning("Failed to load .env file %s: %s", dotenv_path, exc)


def _bool_env(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _json_env(name, default):
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON in %s, using default.", name)
        return default


def _int_env(name, default):
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning("Invalid integer in %s, using %s.", name, default)
        return default


def _float_env(name, default):
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        logger.warning("Invalid number in %s, using %s.", name, default)
        return default


def _normalize_base_url(base_url):
    trimmed = base_url.rstrip("/")
    if not trimmed.endswith("/v1"):
        trimmed = f"{trimmed}/v1"
    return trimmed


_load_dotenv()

KIMI_API_KEY = os.getenv("KIMI_API_KEY")
KIMI_BASE_URL = _normalize_base_url(os.getenv("KIMI_BASE_URL", "https://api.moonshot.cn"))
KIMI_TIMEOUT = _float_env("KIMI_TIMEOUT", 120)
KIMI_MAX_RETRIES = _int_env("KIMI_MAX_RETRIES", 2)
KIMI_TOOL_CALL_LABEL = os.getenv("KIMI_TOOL_CALL_LABEL", "invoke tool")
KIMI_TOOL_ARGS_LABEL = os.getenv("KIMI_TOOL_ARGS_LABEL", "arguments")

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
ANTHROPIC_BASE_URL = (os.getenv("ANTHROPIC_BASE_URL", "").strip() or "https://api.anthropic.com").rstrip("/")
ANTHROPIC_VERSION = os.getenv("ANTHROPIC_VERSION", "2023-06-01")
ANTHROPIC_TIMEOUT = _float_env("ANTHROPIC_TIMEOUT", 120)
ANTHROPIC_DEFAULT_MAX_TOKENS = _int_env("ANTHROPIC_DEFAULT_MAX_TOKENS", 4096)

PROXY_REQUIRE_API_KEY = _bool_env("PROXY_REQUIRE_API_KEY", True)
PROXY_API_KEYS = [
    key.strip() for key in os.getenv("PROXY_API_KEYS", "").split(",") if key.strip()
]
PROXY_FORWARD_AUTH_HEADER = _bool_env("PROXY_FORWARD_AUTH_HEADER", True)

MODEL_NAME_MAP = _json_env("MODEL_NAME_MAP", {})
ESTIMATE_USAGE = _bool_env("ESTIMATE_USAGE", False)

LOG_TOOL_CALLS = _bool_env("PROXY_LOG_TOOL_CALLS", False)
LOG_MAX_CHARS = _int_env("PROXY_LOG_MAX_CHARS", 2000)
LOG_PAYLOADS = _bool_env("PROXY_LOG_PAYLOADS", False)
LOG_PAYLOAD_MAX_CHARS = _int_env("PROXY_LOG_PAYLOAD_MAX_CHARS", 4000)
LOG_PAYLOAD_MAX_ITEMS = _int_env("PROXY_LOG_PAYLOAD_MAX_ITEMS", 50)
LOG_PAYLOAD_MAX_DEPTH = _int_env("PROXY_LOG_PAYLOAD_MAX_DEPTH", 6)
LOG_STREAM_EVENTS = _bool_env("PROXY_LOG_STREAM_EVENTS", False)

OPENAI_PARAM_DEFAULTS = _json_env("OPENAI_PARAM_DEFAULTS", {})
OPENAI_PARAM_OVERRIDES = _json_env("OPENAI_PARAM_OVERRIDES", {})
OPENAI_PARAM_DROP = {
    key.strip()
    for key in os.getenv("OPENAI_PARAM_DROP", "").split(",")
    if key.strip()
}
