"""
Process supervision for stdio MCP servers.

One ManagedProcess per configured server name, created on first use. The
supervisor's lock guards the name -> ManagedProcess map and every state
transition; slow work (build, spawn, handshake, backoff sleeps) happens in a
per-name startup task that concurrent callers share.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Coroutine, Deque, Dict, List, Optional, Set

from mcp import types

from . import builder
from .channel import StdioChannel
from .errors import BridgeError, ChildExited, CrashLoopError, SpawnError
from .framing import LineFramedStream
from .servers import ServerDefinition, ServerRegistry
from .settings import Settings

logger = logging.getLogger(__name__)

CLIENT_INFO = types.Implementation(name="mcp-http-server", version="0.1.0")

# MCP results (tool listings, file contents) easily exceed asyncio's 64 KiB default
STREAM_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_LINES = 50


class ProcessState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    RESTARTING = "restarting"
    TERMINATED = "terminated"


_TRANSITIONS: Dict[ProcessState, Set[ProcessState]] = {
    ProcessState.STOPPED: {ProcessState.STARTING, ProcessState.RESTARTING, ProcessState.TERMINATED},
    ProcessState.STARTING: {ProcessState.RUNNING, ProcessState.STOPPED, ProcessState.TERMINATED},
    ProcessState.RUNNING: {ProcessState.DEGRADED, ProcessState.STOPPED, ProcessState.TERMINATED},
    ProcessState.DEGRADED: {ProcessState.RUNNING, ProcessState.STOPPED, ProcessState.TERMINATED},
    ProcessState.RESTARTING: {ProcessState.STARTING, ProcessState.TERMINATED},
    ProcessState.TERMINATED: set(),
}


class IllegalTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class ServerHandle:
    """What callers outside the supervisor get: a name, a pid and the I/O channel."""

    name: str
    pid: int
    channel: StdioChannel


class ManagedProcess:
    def __init__(self, definition: ServerDefinition) -> None:
        self.definition = definition
        self.name = definition.name
        self.state = ProcessState.STOPPED
        self.process: Optional[asyncio.subprocess.Process] = None
        self.channel: Optional[StdioChannel] = None
        self.started_at: Optional[float] = None
        self.last_healthy_at: Optional[float] = None
        self.restart_count = 0  # consecutive failed runs
        self.launch_count = 0
        self.consecutive_timeouts = 0
        self.last_exit_status: Optional[int] = None
        self.server_info: Optional[Dict[str, Any]] = None
        self.stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self.startup: Optional[asyncio.Task] = None
        self.stderr_task: Optional[asyncio.Task] = None
        self.watcher: Optional[asyncio.Task] = None

    def transition(self, new: ProcessState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise IllegalTransition(f"{self.name}: {self.state.value} -> {new.value}")
        logger.debug("%s: %s -> %s", self.name, self.state.value, new.value)
        self.state = new

    @property
    def alive(self) -> bool:
        return (
            self.process is not None
            and self.process.returncode is None
            and self.channel is not None
            and not self.channel.closed
        )

    def handle(self) -> ServerHandle:
        return ServerHandle(self.name, self.process.pid, self.channel)

    def stderr_text(self) -> str:
        return "\n".join(self.stderr_tail)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "pid": self.process.pid if self.alive else None,
            "started_at": self.started_at,
            "last_healthy_at": self.last_healthy_at,
            "restart_count": self.restart_count,
            "launch_count": self.launch_count,
            "consecutive_timeouts": self.consecutive_timeouts,
            "last_exit_status": self.last_exit_status,
            "pending_requests": self.channel.pending_count if self.channel else 0,
            "server_info": self.server_info,
        }


class ProcessSupervisor:
    """
    Keeps at most one live child per server name and restarts it on
    unexpected exit with exponential backoff, up to settings.max_restarts
    consecutive failures. Past that the server is Terminated until reset().
    """

    def __init__(self, registry: ServerRegistry, settings: Settings) -> None:
        self.registry = registry
        self.settings = settings
        self._processes: Dict[str, ManagedProcess] = {}
        self._lock = asyncio.Lock()
        self._prepared: Dict[str, Optional[Path]] = {}
        self._runtime_checked: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # ------------------------------------------------------------------ public

    async def ensure_running(self, name: str) -> ServerHandle:
        definition = self.registry.get(name)

        async with self._lock:
            if self._closed:
                raise SpawnError("supervisor is shutting down", server=name)
            managed = self._processes.get(name)
            if managed is None:
                managed = self._processes[name] = ManagedProcess(definition)

            if managed.state is ProcessState.TERMINATED:
                raise CrashLoopError(name, managed.restart_count)

            if managed.state is ProcessState.RUNNING:
                if managed.alive:
                    return managed.handle()
                # exited (or closed its output) and the watcher has not reported it yet
                self._on_exit(managed, managed.process.returncode if managed.process else None)
                if managed.state is ProcessState.TERMINATED:
                    raise CrashLoopError(name, managed.restart_count)

            if managed.startup is None:
                managed.transition(ProcessState.STARTING)
                managed.startup = self._spawn_task(self._boot(managed, retry=False), f"mcp-start:{name}", quiet=True)
            startup = managed.startup

        try:
            return await asyncio.shield(startup)
        except asyncio.CancelledError:
            if startup.cancelled():
                raise SpawnError(f"startup of server '{name}' was aborted", server=name) from None
            raise

    async def report_exit(self, name: str, exit_status: Optional[int], *, pid: Optional[int] = None) -> None:
        """
        A supervised child terminated. Schedules a restart with backoff, or
        terminates the server once the retry ceiling is reached.
        """
        async with self._lock:
            managed = self._processes.get(name)
            if managed is None:
                return
            if pid is not None and (managed.process is None or managed.process.pid != pid):
                return
            self._on_exit(managed, exit_status)

    async def record_timeout(self, name: str, *, pid: Optional[int] = None) -> None:
        async with self._lock:
            managed = self._processes.get(name)
            if managed is None or managed.state is not ProcessState.RUNNING:
                return
            # a late timeout from a child that has since been replaced
            if pid is not None and (managed.process is None or managed.process.pid != pid):
                return
            managed.consecutive_timeouts += 1
            if managed.consecutive_timeouts < self.settings.max_consecutive_timeouts:
                return
            logger.warning(
                "Server '%s' missed %d consecutive deadlines; restarting it",
                name,
                managed.consecutive_timeouts,
            )
            managed.transition(ProcessState.DEGRADED)
            self._on_exit(managed, None)

    async def record_success(self, name: str) -> None:
        async with self._lock:
            managed = self._processes.get(name)
            if managed is None:
                return
            managed.consecutive_timeouts = 0
            managed.last_healthy_at = time.time()

    async def reset(self, name: str) -> None:
        """Forget everything about `name`; the next request spawns it afresh."""
        self.registry.get(name)
        async with self._lock:
            managed = self._processes.pop(name, None)
        if managed is not None:
            logger.info("Resetting server '%s' (was %s)", name, managed.state.value)
            await self._retire(managed, ChildExited(f"server '{name}' was reset", server=name))

    async def shutdown(self) -> None:
        """Stop every child: SIGTERM, wait settings.shutdown_grace, then SIGKILL."""
        async with self._lock:
            self._closed = True
            managed_all = list(self._processes.values())
            self._processes.clear()
            for managed in managed_all:
                if managed.state is not ProcessState.TERMINATED:
                    managed.transition(ProcessState.TERMINATED)

        if managed_all:
            logger.info("Stopping %d MCP server(s)", len(managed_all))
        await asyncio.gather(
            *(self._retire(m, ChildExited("gateway is shutting down", server=m.name)) for m in managed_all)
        )

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def status(self) -> List[Dict[str, Any]]:
        out = []
        for name in self.registry.names():
            managed = self._processes.get(name)
            if managed is None:
                out.append({"name": name, "state": ProcessState.STOPPED.value, "pid": None, "launch_count": 0})
            else:
                out.append(managed.snapshot())
        return out

    def state_of(self, name: str) -> ProcessState:
        managed = self._processes.get(name)
        return managed.state if managed else ProcessState.STOPPED

    # --------------------------------------------------------------- lifecycle

    def _backoff(self, failures: int) -> float:
        return min(self.settings.restart_backoff * (2 ** (failures - 1)), self.settings.restart_backoff_max)

    def _on_exit(self, managed: ManagedProcess, exit_status: Optional[int]) -> None:
        # lock held
        if managed.state not in (ProcessState.RUNNING, ProcessState.DEGRADED):
            return

        uptime = time.monotonic() - managed.started_at if managed.started_at else 0.0
        managed.last_exit_status = exit_status
        managed.transition(ProcessState.STOPPED)
        if uptime >= self.settings.stable_window:
            managed.restart_count = 0
        managed.restart_count += 1

        logger.warning(
            "Server '%s' exited (status=%s, uptime=%.1fs, consecutive failures=%d)%s",
            managed.name,
            exit_status,
            uptime,
            managed.restart_count,
            f"\n{managed.stderr_text()}" if managed.stderr_tail else "",
        )

        if managed.restart_count >= self.settings.max_restarts:
            self._terminate(managed)
            return

        delay = self._backoff(managed.restart_count)
        managed.transition(ProcessState.RESTARTING)
        logger.info("Restarting '%s' in %.2fs", managed.name, delay)
        managed.startup = self._spawn_task(self._restart(managed, delay), f"mcp-restart:{managed.name}", quiet=True)

    def _terminate(self, managed: ManagedProcess) -> None:
        # lock held
        managed.transition(ProcessState.TERMINATED)
        error = CrashLoopError(managed.name, managed.restart_count)
        logger.error("Server '%s' is crash-looping; giving up until it is reset", managed.name)
        if managed.channel is not None:
            managed.channel.fail_all(error)
        if managed.process is not None and managed.process.returncode is None:
            self._spawn_task(self._stop_process(managed.process), f"mcp-stop:{managed.name}")

    async def _restart(self, managed: ManagedProcess, delay: float) -> ServerHandle:
        if managed.process is not None:
            await self._stop_process(managed.process)
        await asyncio.sleep(delay)
        async with self._lock:
            if managed.state is not ProcessState.RESTARTING:
                raise SpawnError(f"restart of server '{managed.name}' was abandoned", server=managed.name)
            managed.transition(ProcessState.STARTING)
        return await self._boot(managed, retry=True)

    async def _boot(self, managed: ManagedProcess, *, retry: bool) -> ServerHandle:
        me = asyncio.current_task()
        try:
            return await self._launch(managed)
        except SpawnError as e:
            await self._launch_failed(managed, e, retry=retry)
            raise
        except Exception as exc:
            e = SpawnError(f"failed to start server '{managed.name}': {exc}", server=managed.name)
            await self._launch_failed(managed, e, retry=retry)
            raise e from exc
        finally:
            if managed.startup is me:
                managed.startup = None

    async def _launch_failed(self, managed: ManagedProcess, error: SpawnError, *, retry: bool) -> None:
        async with self._lock:
            if managed.state is not ProcessState.STARTING:
                return
            managed.transition(ProcessState.STOPPED)
            managed.restart_count += 1
            logger.error("Failed to start '%s' (attempt %d): %s", managed.name, managed.restart_count, error)
            if managed.restart_count >= self.settings.max_restarts:
                self._terminate(managed)
                raise CrashLoopError(managed.name, managed.restart_count) from error
            if retry:
                delay = self._backoff(managed.restart_count)
                managed.transition(ProcessState.RESTARTING)
                managed.startup = self._spawn_task(
                    self._restart(managed, delay), f"mcp-restart:{managed.name}", quiet=True
                )

    async def _launch(self, managed: ManagedProcess) -> ServerHandle:
        definition = managed.definition
        name = definition.name

        if definition.needs_build and name not in self._prepared:
            self._prepared[name] = await builder.prepare(
                definition, Path(self.settings.work_dir), timeout=self.settings.build_timeout
            )
        if definition.runtime_config.min_version and name not in self._runtime_checked:
            await builder.check_runtime(definition)
            self._runtime_checked.add(name)

        cwd = definition.runtime_config.cwd or self._prepared.get(name)
        argv = definition.argv()
        managed.launch_count += 1
        managed.stderr_tail.clear()
        logger.info("Starting MCP server '%s': %s (cwd=%s)", name, " ".join(argv), cwd or ".")

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=definition.launch_env(),
                cwd=cwd,
                limit=STREAM_LIMIT,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"failed to launch server '{name}' ({argv[0]}): {e}", server=name) from e

        channel = StdioChannel(LineFramedStream(proc.stdout, proc.stdin, label=name), name=name)
        channel.start()
        managed.process = proc
        managed.channel = channel
        managed.started_at = time.monotonic()
        managed.stderr_task = self._spawn_task(self._drain_stderr(managed, proc), f"mcp-stderr:{name}")

        try:
            await self._wait_ready(managed, proc, channel)
        except BaseException:
            await self._stop_process(proc)
            await channel.aclose()
            raise

        async with self._lock:
            if managed.state is not ProcessState.STARTING:
                # reset or shutdown while we were starting
                self._spawn_task(self._stop_process(proc), f"mcp-stop:{name}")
                raise SpawnError(f"startup of server '{name}' was abandoned", server=name)
            managed.transition(ProcessState.RUNNING)
            managed.consecutive_timeouts = 0
            managed.last_healthy_at = time.time()
            managed.watcher = self._spawn_task(self._watch(managed, proc), f"mcp-watch:{name}")

        logger.info("MCP server '%s' is running (pid %d)", name, proc.pid)
        return managed.handle()

    async def _wait_ready(self, managed: ManagedProcess, proc: asyncio.subprocess.Process, channel: StdioChannel) -> None:
        rc = managed.definition.runtime_config
        if rc.readiness == "grace":
            try:
                await asyncio.wait_for(proc.wait(), rc.grace_period)
            except asyncio.TimeoutError:
                return
            await self._raise_exited(managed, proc)

        timeout = rc.handshake_timeout or self.settings.handshake_timeout
        handshake = asyncio.ensure_future(self._handshake(managed, channel, timeout))
        exited = asyncio.ensure_future(proc.wait())
        try:
            done, _ = await asyncio.wait({handshake, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (handshake, exited):
                if not fut.done():
                    fut.cancel()
        if handshake in done:
            handshake.result()
            return
        await self._raise_exited(managed, proc)

    async def _raise_exited(self, managed: ManagedProcess, proc: asyncio.subprocess.Process) -> None:
        # give the stderr drain a moment to catch the child's last words
        if managed.stderr_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(managed.stderr_task), 1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
        raise SpawnError(
            f"server '{managed.name}' exited during startup with status {proc.returncode}",
            server=managed.name,
            stderr_tail=managed.stderr_text(),
        )

    async def _handshake(self, managed: ManagedProcess, channel: StdioChannel, timeout: float) -> None:
        request_id = f"mcp-http-server-init-{uuid.uuid4().hex[:12]}"
        params = types.InitializeRequestParams(
            protocolVersion=types.LATEST_PROTOCOL_VERSION,
            capabilities=types.ClientCapabilities(),
            clientInfo=CLIENT_INFO,
        )
        request = types.JSONRPCRequest(
            jsonrpc="2.0",
            id=request_id,
            method="initialize",
            params=params.model_dump(by_alias=True, mode="json", exclude_none=True),
        )
        pending = channel.register(request_id, timeout)
        try:
            await asyncio.wait_for(
                channel.write(request.model_dump(by_alias=True, mode="json", exclude_none=True)), timeout
            )
            response = await asyncio.wait_for(pending.future, timeout)
        except asyncio.TimeoutError:
            raise SpawnError(
                f"server '{managed.name}' did not answer initialize within {timeout:.0f}s",
                server=managed.name,
                stderr_tail=managed.stderr_text(),
            ) from None
        except ChildExited as e:
            raise SpawnError(str(e), server=managed.name, stderr_tail=managed.stderr_text()) from e
        finally:
            channel.discard(request_id, pending)

        if "error" in response:
            raise SpawnError(
                f"server '{managed.name}' rejected initialize: {response['error']}",
                server=managed.name,
                stderr_tail=managed.stderr_text(),
            )
        result = response.get("result") or {}
        managed.server_info = result.get("serverInfo")

        initialized = types.JSONRPCNotification(jsonrpc="2.0", method="notifications/initialized")
        await channel.write(initialized.model_dump(by_alias=True, mode="json", exclude_none=True))
        logger.debug("Handshake with '%s' complete: %s", managed.name, managed.server_info)

    async def _watch(self, managed: ManagedProcess, proc: asyncio.subprocess.Process) -> None:
        status = await proc.wait()
        await self.report_exit(managed.name, status, pid=proc.pid)

    async def _drain_stderr(self, managed: ManagedProcess, proc: asyncio.subprocess.Process) -> None:
        child_logger = logging.getLogger(f"mcp.{managed.name}")
        while True:
            try:
                raw = await proc.stderr.readline()
            except ValueError:
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                managed.stderr_tail.append(line)
                child_logger.info(line)

    async def _stop_process(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), self.settings.shutdown_grace)
        except asyncio.TimeoutError:
            logger.warning("pid %d ignored SIGTERM for %.1fs; killing it", proc.pid, self.settings.shutdown_grace)
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    async def _retire(self, managed: ManagedProcess, reason: BridgeError) -> None:
        if managed.startup is not None and not managed.startup.done():
            managed.startup.cancel()
        if managed.process is not None:
            await self._stop_process(managed.process)
        if managed.channel is not None:
            managed.channel.fail_all(reason)
            await managed.channel.aclose()
        for task in (managed.watcher, managed.stderr_task):
            if task is not None and not task.done():
                task.cancel()

    def _spawn_task(self, coro: Coroutine, name: str, *, quiet: bool = False) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is None:
                return
            if quiet or isinstance(exc, BridgeError):
                # startup failures are reported to whoever awaited them
                logger.debug("%s finished with %s: %s", t.get_name(), type(exc).__name__, exc)
            else:
                logger.error("%s failed", t.get_name(), exc_info=exc)

        task.add_done_callback(_done)
        return task
