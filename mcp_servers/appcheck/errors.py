"""Exception types raised by the appcheck core.

Every error here is recoverable by the caller; none should take down the host.
"""

from __future__ import annotations


class AppcheckError(Exception):
    pass


class ConnectError(AppcheckError):
    """Socket connect or WebSocket upgrade failed."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"CDP connect failed: {reason}")
        self.reason = reason


class CallError(AppcheckError):
    pass


class CallTimeout(CallError):
    def __init__(self, method: str, command_id: int, timeout: float) -> None:
        super().__init__(f"CDP response timed out: {method} (id={command_id}) after {timeout:.2f}s")
        self.method = method
        self.command_id = command_id
        self.timeout = timeout


class SetupError(AppcheckError):
    """A step of the create/attach/cookie/navigate choreography failed."""

    def __init__(self, step: str, reason: str) -> None:
        super().__init__(f"target setup failed at {step}: {reason}")
        self.step = step
        self.reason = reason


class EvalError(AppcheckError):
    pass


class ProcessLaunchError(AppcheckError):
    def __init__(self, command: list[str], reason: str) -> None:
        super().__init__(f"failed to launch {command[0] if command else '?'}: {reason}")
        self.command = command
        self.reason = reason


class InvalidLogFilter(AppcheckError, ValueError):
    pass


__all__ = [
    "AppcheckError",
    "CallError",
    "CallTimeout",
    "ConnectError",
    "EvalError",
    "InvalidLogFilter",
    "ProcessLaunchError",
    "SetupError",
]
