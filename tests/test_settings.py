import pytest

from mcp_bridge.errors import ConfigError
from mcp_bridge.settings import Settings


def test_defaults():
    s = Settings.from_env({})
    assert s.config_file == "mcp_servers.config.json"
    assert s.port == 3000 and s.host == "0.0.0.0"
    assert s.default_server is None
    assert s.disable_auth is False
    assert s.request_timeout == 30
    assert s.max_restarts == 5


def test_from_env():
    s = Settings.from_env(
        {
            "MCP_CONFIG_FILE": "/etc/mcp.json",
            "MCP_SERVER_KEY": "github",
            "PORT": "8080",
            "HTTP_API_KEY": "k",
            "DISABLE_AUTH": "TRUE",
            "LOG_LEVEL": "debug",
            "MCP_REQUEST_TIMEOUT": "2.5",
            "MCP_MAX_RESTARTS": "2",
            "MCP_EAGER_START": "yes",
        }
    )
    assert s.config_file == "/etc/mcp.json"
    assert s.default_server == "github"
    assert s.port == 8080
    assert s.api_key == "k"
    assert s.disable_auth is True
    assert s.log_level == "DEBUG"
    assert s.request_timeout == 2.5
    assert s.max_restarts == 2
    assert s.eager_start is True


def test_server_name_wins_over_legacy_key():
    s = Settings.from_env({"MCP_SERVER_NAME": "new", "MCP_SERVER_KEY": "old"})
    assert s.default_server == "new"


@pytest.mark.parametrize("env", [{"PORT": "http"}, {"MCP_MAX_RESTARTS": "0"}, {"MCP_REQUEST_TIMEOUT": "soon"}])
def test_bad_values_are_config_errors(env):
    with pytest.raises(ConfigError):
        Settings.from_env(env)


def test_check_auth():
    with pytest.raises(ConfigError, match="HTTP_API_KEY"):
        Settings.from_env({}).check_auth()
    Settings.from_env({"HTTP_API_KEY": "k"}).check_auth()
    Settings.from_env({"DISABLE_AUTH": "true"}).check_auth()


def test_settings_are_frozen():
    s = Settings()
    with pytest.raises(Exception):
        s.port = 1
