import asyncio
import json
import sys
from pathlib import Path

FAKE_SERVER = str(Path(__file__).with_name("fake_mcp_server.py"))


def fake_server(*flags, **extra):
    """Config entry that runs the fake MCP server under the current interpreter."""
    return {"command": [sys.executable, FAKE_SERVER], "args": list(flags), **extra}


class FakeWriter:
    """In-memory stand-in for a child's stdin."""

    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, data):
        if self.closed:
            raise BrokenPipeError("closed")
        self.data.extend(data)

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    def is_closing(self):
        return self.closed

    def lines(self):
        return [json.loads(l) for l in self.data.decode().splitlines()]


class StalledWriter(FakeWriter):
    """stdin of a child that stopped reading: drain never returns."""

    def __init__(self):
        super().__init__()
        self._never = asyncio.Event()

    async def drain(self):
        await self._never.wait()
