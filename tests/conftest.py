import pytest

from chat_gateway.app import create_app
from chat_gateway.proxy import config


@pytest.fixture(autouse=True)
def gateway_config(monkeypatch):
    """Pin config to known values regardless of the developer's environment."""
    monkeypatch.setattr(config, "PROXY_REQUIRE_API_KEY", True)
    monkeypatch.setattr(config, "PROXY_API_KEYS", [])
    monkeypatch.setattr(config, "PROXY_FORWARD_AUTH_HEADER", True)
    monkeypatch.setattr(config, "KIMI_API_KEY", None)
    monkeypatch.setattr(config, "ANTHROPIC_API_KEY", None)
    monkeypatch.setattr(config, "ANTHROPIC_BASE_URL", "https://anthropic.test")
    monkeypatch.setattr(config, "ANTHROPIC_VERSION", "2023-06-01")
    monkeypatch.setattr(config, "ANTHROPIC_DEFAULT_MAX_TOKENS", 4096)
    monkeypatch.setattr(config, "KIMI_TOOL_CALL_LABEL", "invoke tool")
    monkeypatch.setattr(config, "KIMI_TOOL_ARGS_LABEL", "arguments")
    monkeypatch.setattr(config, "MODEL_NAME_MAP", {})
    monkeypatch.setattr(config, "ESTIMATE_USAGE", False)
    monkeypatch.setattr(config, "OPENAI_PARAM_DEFAULTS", {})
    monkeypatch.setattr(config, "OPENAI_PARAM_OVERRIDES", {})
    monkeypatch.setattr(config, "OPENAI_PARAM_DROP", set())
    return config


@pytest.fixture
def app():
    app = create_app()
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer test-token"}
