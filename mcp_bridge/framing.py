"""
Newline-delimited JSON-RPC framing over a pair of byte streams.

The stream only needs ``readline()`` on the read side and
``write()/drain()/close()`` on the write side, so a child process's pipes,
a socket, or an in-memory pair used in tests all work the same way.
"""

import json
import logging
from typing import Any, Dict, Optional, Protocol, Union

logger = logging.getLogger(__name__)


class LineReader(Protocol):
    async def readline(self) -> bytes: ...


class LineWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...

    def is_closing(self) -> bool: ...


def encode_line(payload: Union[str, bytes, Dict[str, Any]]) -> bytes:
    """
    Turn a message into exactly one line.

    Text that already fits on one line is forwarded byte for byte. Anything
    else is re-serialised compactly; JSON escapes newlines inside strings, so
    the only raw newlines in valid JSON text are insignificant whitespace.
    """
    if isinstance(payload, dict):
        text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    elif isinstance(payload, bytes):
        text = payload.decode("utf-8")
    else:
        text = payload
    text = text.strip()
    if "\n" in text or "\r" in text:
        text = json.dumps(json.loads(text), separators=(",", ":"), ensure_ascii=False)
    return (text + "\n").encode("utf-8")


class LineFramedStream:
    """Read-until-newline + parse on one side, single-line writes on the other."""

    def __init__(self, reader: LineReader, writer: LineWriter, *, label: str = "") -> None:
        self._reader = reader
        self._writer = writer
        self.label = label
        self._eof = False

    @property
    def at_eof(self) -> bool:
        return self._eof

    @property
    def is_closing(self) -> bool:
        return self._writer.is_closing()

    async def read_message(self) -> Optional[Dict[str, Any]]:
        """
        Next JSON object from the stream, or None at EOF.

        Blank lines, lines that are not JSON and JSON that is not an object
        are logged and skipped.
        """
        while True:
            try:
                raw = await self._reader.readline()
            except ValueError as e:
                # line longer than the reader's limit; the reader drops it
                logger.warning("[%s] dropped oversized output line: %s", self.label, e)
                continue
            if not raw:
                self._eof = True
                return None
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("[%s] ignoring non-JSON output: %.200s", self.label, line)
                continue
            if not isinstance(message, dict):
                logger.warning("[%s] ignoring non-object JSON output: %.200s", self.label, line)
                continue
            return message

    async def write_line(self, payload: Union[str, bytes, Dict[str, Any]]) -> None:
        data = encode_line(payload)
        self._writer.write(data)
        await self._writer.drain()

    def close(self) -> None:
        if not self._writer.is_closing():
            self._writer.close()
