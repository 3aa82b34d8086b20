"""
Pre-launch steps for servers that are built from source: clone the
repository into the work directory, run the build command, and check the
runtime version if the definition asks for one.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import SpawnError
from .servers import ServerDefinition

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+(?:\.\d+)*)")
_OUTPUT_TAIL = 2000


def parse_version(text: str) -> Tuple[int, ...]:
    """'v18.19.0' -> (18, 19, 0). Raises ValueError when there is no version in `text`."""
    m = _VERSION_RE.search(text)
    if not m:
        raise ValueError(f"no version number in {text!r}")
    return tuple(int(part) for part in m.group(1).split("."))


def version_at_least(found: Tuple[int, ...], wanted: Tuple[int, ...]) -> bool:
    width = max(len(found), len(wanted))
    return found + (0,) * (width - len(found)) >= wanted + (0,) * (width - len(wanted))


def _tail(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")[-_OUTPUT_TAIL:].strip()


async def _run(
    name: str,
    what: str,
    *,
    argv: Optional[List[str]] = None,
    shell: Optional[str] = None,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float,
) -> str:
    """Run a helper command to completion; non-zero exit or timeout is a SpawnError."""
    try:
        if shell is not None:
            proc = await asyncio.create_subprocess_shell(
                shell,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        else:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
    except OSError as e:
        raise SpawnError(f"{what} for server '{name}' could not start: {e}", server=name) from e

    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise SpawnError(f"{what} for server '{name}' timed out after {timeout:.0f}s", server=name) from None

    if proc.returncode != 0:
        raise SpawnError(
            f"{what} for server '{name}' failed with exit code {proc.returncode}",
            server=name,
            stderr_tail=_tail(out),
        )
    return out.decode("utf-8", errors="replace")


async def checkout(definition: ServerDefinition, work_dir: Path, *, timeout: float) -> Path:
    """Clone the definition's repository under `work_dir` unless it is already there."""
    dest = work_dir / definition.name
    if (dest / ".git").is_dir():
        logger.info("Using existing checkout for '%s' at %s", definition.name, dest)
        return dest

    work_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Cloning %s for '%s' into %s", definition.repository, definition.name, dest)
    await _run(
        definition.name,
        "git clone",
        argv=["git", "clone", "--depth", "1", definition.repository, str(dest)],
        timeout=timeout,
    )
    return dest


async def prepare(definition: ServerDefinition, work_dir: Path, *, timeout: float) -> Optional[Path]:
    """
    Run the build step for a definition. Returns the directory the server
    should be launched from, or None to launch from the gateway's cwd.
    """
    cwd: Optional[Path] = None
    if definition.repository:
        cwd = await checkout(definition, work_dir, timeout=timeout)

    if definition.build_command:
        build_dir = cwd or work_dir
        build_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Building '%s': %s (in %s)", definition.name, definition.build_command, build_dir)
        await _run(
            definition.name,
            "build command",
            shell=definition.build_command,
            cwd=build_dir,
            env=definition.launch_env(),
            timeout=timeout,
        )
        cwd = build_dir
    return cwd


async def check_runtime(definition: ServerDefinition, *, timeout: float = 30.0) -> None:
    """Enforce runtime_config.min_version by running runtime_config.version_command."""
    rc = definition.runtime_config
    if not rc.min_version:
        return
    if not rc.version_command:
        raise SpawnError(
            f"server '{definition.name}' sets min_version but no version_command",
            server=definition.name,
        )

    out = await _run(definition.name, "version check", argv=rc.version_command, env=definition.launch_env(), timeout=timeout)
    try:
        found = parse_version(out)
        wanted = parse_version(rc.min_version)
    except ValueError as e:
        raise SpawnError(f"version check for server '{definition.name}': {e}", server=definition.name) from e

    if not version_at_least(found, wanted):
        raise SpawnError(
            f"server '{definition.name}' needs runtime >= {rc.min_version}, "
            f"found {'.'.join(map(str, found))}",
            server=definition.name,
        )
    logger.debug("Runtime for '%s' is %s (>= %s)", definition.name, ".".join(map(str, found)), rc.min_version)
