import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set, Tuple, Union

from .errors import BridgeError, ChildExited, InvalidRequest
from .framing import LineFramedStream

logger = logging.getLogger(__name__)

RequestId = Union[int, str]

# JSON-RPC "method not found", sent back when the child asks us something
METHOD_NOT_FOUND = -32601
REPLY_TIMEOUT = 5.0


def _key(request_id: RequestId) -> Tuple[bool, RequestId]:
    # 1 and "1" are different JSON-RPC ids
    return (isinstance(request_id, str), request_id)


@dataclass
class PendingRequest:
    request_id: RequestId
    future: "asyncio.Future[Dict[str, Any]]"
    deadline: float
    created_at: float = field(default_factory=time.monotonic)


class StdioChannel:
    """
    Request/response correlation over one framed stream.

    The reader task is the only code that resolves pending futures. Callers
    register an id before writing and discard it when they stop waiting.
    """

    def __init__(self, stream: LineFramedStream, *, name: str) -> None:
        self.name = name
        self._stream = stream
        self._pending: Dict[Tuple[bool, RequestId], PendingRequest] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None
        self._replies: Set[asyncio.Task] = set()
        self._closed = asyncio.Event()
        self.orphans = 0
        self.last_response_at: Optional[float] = None

    def start(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop(), name=f"mcp-reader:{self.name}")

    @property
    def closed(self) -> bool:
        return self._closed.is_set() or self._stream.is_closing

    async def wait_closed(self) -> None:
        await self._closed.wait()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def has_pending(self, request_id: RequestId) -> bool:
        return _key(request_id) in self._pending

    def register(self, request_id: RequestId, timeout: float) -> PendingRequest:
        key = _key(request_id)
        if key in self._pending:
            raise InvalidRequest(
                f"request id {request_id!r} is already in flight on server '{self.name}'",
                server=self.name,
            )
        loop = asyncio.get_running_loop()
        pending = PendingRequest(request_id, loop.create_future(), loop.time() + timeout)
        self._pending[key] = pending
        return pending

    def discard(self, request_id: RequestId, pending: Optional[PendingRequest] = None) -> None:
        """Drop a registration. With `pending`, only if that registration is still the current one."""
        key = _key(request_id)
        if pending is None or self._pending.get(key) is pending:
            self._pending.pop(key, None)

    def fail_all(self, exc: BridgeError) -> int:
        """Fail every waiting caller with `exc`. Returns how many were waiting."""
        pending, self._pending = self._pending, {}
        for p in pending.values():
            if not p.future.done():
                p.future.set_exception(exc)
        return len(pending)

    async def write(self, payload: Union[str, bytes, Dict[str, Any]]) -> None:
        if self.closed:
            raise ChildExited(f"server '{self.name}' is not accepting input", server=self.name)
        async with self._write_lock:
            try:
                await self._stream.write_line(payload)
            except (BrokenPipeError, ConnectionResetError) as e:
                raise ChildExited(f"server '{self.name}' closed its input: {e}", server=self.name) from e

    async def _read_loop(self) -> None:
        try:
            while True:
                message = await self._stream.read_message()
                if message is None:
                    break
                await self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] output reader failed", self.name)
        finally:
            self._closed.set()
            if self._pending:
                logger.warning("[%s] output closed with %d request(s) pending", self.name, len(self._pending))
            else:
                logger.debug("[%s] output closed", self.name)

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        request_id = message.get("id")

        if "method" in message:
            # child-initiated request or notification; we are not an MCP client session
            if request_id is None:
                logger.debug("[%s] notification from child: %s", self.name, message.get("method"))
                return
            logger.info("[%s] rejecting child request %r (%s)", self.name, request_id, message.get("method"))
            reply = {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {message.get('method')}"},
            }
            # never from the reader itself: a child with a full stdin would stall its own stdout
            task = asyncio.create_task(self._reply(reply), name=f"mcp-reply:{self.name}")
            self._replies.add(task)
            task.add_done_callback(self._replies.discard)
            return

        if not isinstance(request_id, (int, str)) or isinstance(request_id, bool):
            self.orphans += 1
            logger.warning("[%s] discarding response without a usable id: %.200s", self.name, message)
            return

        pending = self._pending.pop(_key(request_id), None)
        if pending is None or pending.future.done():
            self.orphans += 1
            logger.warning("[%s] discarding response for unknown or expired id %r", self.name, request_id)
            return

        self.last_response_at = time.time()
        pending.future.set_result(message)

    async def _reply(self, message: Dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(self.write(message), REPLY_TIMEOUT)
        except ChildExited:
            pass
        except asyncio.TimeoutError:
            logger.warning("[%s] child is not reading its input; dropped reply to %r", self.name, message.get("id"))

    async def aclose(self) -> None:
        self._stream.close()
        for task in list(self._replies):
            task.cancel()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._closed.set()
