"""
Error types shared by the RCON session, the panel bridge and the restart orchestrator.

Transport errors are retryable and are the only kind the session retries on its own.
Everything a user ends up seeing goes through friendly_error() first.
"""

from __future__ import annotations

import asyncio
from typing import Union


class ControlPlaneError(Exception):
    """Base class for every error raised by the control plane."""


# ----- RCON -----
class TransportError(ControlPlaneError):
    """Socket-level failure: refused, reset, broken pipe or timeout."""


class RconConnectionRefused(TransportError):
    pass


class RconTimeout(TransportError):
    pass


class RconConnectionReset(TransportError):
    pass


class AuthError(ControlPlaneError):
    """The server rejected the RCON password."""


class ProtocolError(ControlPlaneError):
    """Malformed or unexpected packet. The connection itself is still usable."""


# ----- Bridge -----
class BridgeError(ControlPlaneError):
    pass


class BridgeNotConfigured(BridgeError):
    pass


class BridgeNotRunning(BridgeError):
    pass


class BridgeTimeoutError(BridgeError):
    """No result for a command within the timeout window."""


class BridgeCommandError(BridgeError):
    """The remote script ran the command and reported failure."""


class BridgeStaleError(BridgeError):
    """Heartbeat file is older than the staleness threshold."""


# ----- Restart -----
class OrchestratorAbort(ControlPlaneError):
    """Restart stopped before any destructive step ran."""


class RestartInProgress(ControlPlaneError):
    def __init__(self, message: str = "Restart already in progress"):
        super().__init__(message)


def classify_os_error(exc: BaseException) -> ControlPlaneError:
    """Wrap a raw socket exception in the matching TransportError subclass."""
    if isinstance(exc, ControlPlaneError):
        return exc
    if isinstance(exc, ConnectionRefusedError):
        return RconConnectionRefused(f"ECONNREFUSED: {exc}")
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return RconTimeout("ETIMEDOUT: connection timed out")
    if isinstance(exc, (ConnectionResetError, BrokenPipeError, ConnectionAbortedError)):
        return RconConnectionReset(f"ECONNRESET: {exc}")
    if isinstance(exc, OSError):
        return TransportError(f"socket error: {exc}")
    return TransportError(str(exc) or exc.__class__.__name__)


_FRIENDLY = [
    (("ECONNREFUSED", "refused"), "Cannot connect to server. Is the game server running with RCON enabled?"),
    (("ETIMEDOUT", "timed out"), "Connection timed out. Server may be unresponsive or firewall is blocking."),
    (("ECONNRESET", "EPIPE", "reset"), "Connection was reset. Server may have restarted or crashed."),
    (("authentication", "password"), "Authentication failed. Check RCON password in server settings."),
    (("Max reconnection attempts",), "Could not reconnect after multiple attempts. Server may be offline."),
    (("not connected",), "Not connected to server. Please check if server is running."),
    (("Server is not running",), "Game server is not running."),
]


def friendly_error(error: Union[BaseException, str, None]) -> str:
    """Map a raw error (or its message) to a short message safe to show a user."""
    if error is None:
        return "Unknown error occurred"
    if isinstance(error, AuthError):
        return "Authentication failed. Check RCON password in server settings."
    if isinstance(error, RconConnectionRefused):
        return _FRIENDLY[0][1]
    if isinstance(error, RconTimeout):
        return _FRIENDLY[1][1]
    if isinstance(error, RconConnectionReset):
        return _FRIENDLY[2][1]

    msg = str(error)
    if not msg:
        return "Unknown error occurred"
    for needles, friendly in _FRIENDLY:
        if any(n in msg for n in needles):
            return friendly
    return msg


# ----- Process -----
class ProcessControlError(ControlPlaneError):
    """The game process could not be launched or killed."""
