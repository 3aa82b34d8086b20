import sys

import pytest

from mcp_bridge.builder import check_runtime, parse_version, prepare, version_at_least
from mcp_bridge.errors import SpawnError
from mcp_bridge.servers import ServerDefinition


@pytest.mark.parametrize(
    "text, expected",
    [("v18.19.0", (18, 19, 0)), ("Python 3.11.4\n", (3, 11, 4)), ("go version go1.22 linux/amd64", (1, 22)), ("20", (20,))],
)
def test_parse_version(text, expected):
    assert parse_version(text) == expected


def test_parse_version_without_number():
    with pytest.raises(ValueError):
        parse_version("unknown")


def test_version_at_least_pads():
    assert version_at_least((18,), (18, 0, 0))
    assert version_at_least((18, 0, 1), (18,))
    assert not version_at_least((17, 9), (18,))
    assert version_at_least((20, 1), (18, 19, 0))


def _python_runtime(min_version):
    return ServerDefinition(
        name="py",
        command="python",
        runtime_config={"min_version": min_version, "version_command": [sys.executable, "--version"]},
    )


@pytest.mark.asyncio
async def test_check_runtime_ok():
    await check_runtime(_python_runtime("3.0"))


@pytest.mark.asyncio
async def test_check_runtime_too_old():
    with pytest.raises(SpawnError, match="needs runtime >= 99"):
        await check_runtime(_python_runtime("99"))


@pytest.mark.asyncio
async def test_check_runtime_needs_command():
    d = ServerDefinition(name="x", command="x", runtime_config={"min_version": "1"})
    with pytest.raises(SpawnError, match="version_command"):
        await check_runtime(d)


@pytest.mark.asyncio
async def test_build_command_runs_in_work_dir(tmp_path):
    d = ServerDefinition(name="b", command="x", build_command="echo built > marker.txt")
    cwd = await prepare(d, tmp_path, timeout=30)
    assert cwd == tmp_path
    assert (tmp_path / "marker.txt").read_text().strip() == "built"


@pytest.mark.asyncio
async def test_failed_build_is_spawn_error(tmp_path):
    d = ServerDefinition(name="b", command="x", build_command="echo compiling; echo 'fatal: nope' >&2; exit 2")
    with pytest.raises(SpawnError) as info:
        await prepare(d, tmp_path, timeout=30)
    assert "exit code 2" in info.value.message
    assert "fatal: nope" in info.value.stderr_tail


@pytest.mark.asyncio
async def test_existing_checkout_is_reused(tmp_path):
    (tmp_path / "r" / ".git").mkdir(parents=True)
    d = ServerDefinition(name="r", command="x", repository="https://example.invalid/r.git")
    assert await prepare(d, tmp_path, timeout=30) == tmp_path / "r"
