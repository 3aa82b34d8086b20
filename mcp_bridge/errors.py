"""Error kinds raised by the supervisor, the bridge and the auth layer.

None of these carry an HTTP status; the gateway owns that mapping.
"""
from typing import Optional


class BridgeError(Exception):
    """Base class for every failure the gateway knows how to report."""

    kind = "BridgeError"

    def __init__(self, message: str, *, server: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.server = server


class ConfigError(BridgeError):
    """Configuration could not be loaded. Fatal at startup."""

    kind = "ConfigError"


class UnknownServer(BridgeError):
    kind = "UnknownServer"

    def __init__(self, name: str) -> None:
        super().__init__(f"unknown server '{name}'", server=name)


class SpawnError(BridgeError):
    """Build step, version check or launch failed."""

    kind = "SpawnError"

    def __init__(self, message: str, *, server: Optional[str] = None, stderr_tail: str = "") -> None:
        if stderr_tail:
            message = f"{message}\n--- stderr (tail) ---\n{stderr_tail}"
        super().__init__(message, server=server)
        self.stderr_tail = stderr_tail


class ChildExited(BridgeError):
    """The child's input stream is closed; nothing more can be written to it."""

    kind = "ChildExited"


class CrashLoopError(BridgeError):
    kind = "CrashLoopError"

    def __init__(self, name: str, failures: int) -> None:
        super().__init__(
            f"server '{name}' exited {failures} consecutive times and was terminated; "
            "reset it before retrying",
            server=name,
        )
        self.failures = failures


class InvalidRequest(BridgeError):
    kind = "InvalidRequest"


class Unauthorized(BridgeError):
    kind = "Unauthorized"


class Timeout(BridgeError):
    kind = "Timeout"
