import json

import pytest

from mcp_bridge.servers import ServerRegistry
from mcp_bridge.settings import Settings

from tests.helpers import fake_server


# fast restarts so crash-loop tests finish quickly
FAST = dict(
    restart_backoff=0.01,
    restart_backoff_max=0.05,
    handshake_timeout=10.0,
    request_timeout=5.0,
    shutdown_grace=2.0,
)


@pytest.fixture
def servers_config():
    return {
        "fake": fake_server(),
        "crashy": fake_server("--crash"),
        "flaky": fake_server("--exit-after-init"),
        "mute": fake_server("--ignore-init", runtime_config={"readiness": "grace", "grace_period": 0.3}),
    }


@pytest.fixture
def config_file(tmp_path, servers_config):
    path = tmp_path / "mcp_servers.config.json"
    path.write_text(json.dumps({"mcpServers": servers_config}), encoding="utf-8")
    return path


@pytest.fixture
def make_settings(config_file, tmp_path):
    def _make(**overrides):
        values = dict(
            FAST,
            config_file=str(config_file),
            default_server="fake",
            disable_auth=True,
            work_dir=str(tmp_path / "work"),
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def registry(servers_config):
    return ServerRegistry.from_mapping(servers_config)
