from __future__ import annotations
from typing import Optional


class PortalError(Exception):
    """Base class for everything the portal raises on purpose."""


class ConfigError(PortalError):
    """Rejected configuration. `reason` is safe to show to an operator."""
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DeviceError(PortalError):
    """Connect/write/read failure on the reader channel (transient)."""


class SessionError(PortalError):
    """A session request that cannot be honoured in the current state."""


class SpreadsheetError(PortalError):
    """Uploaded table is unreadable, empty or has no header row."""


class LoadSuperseded(PortalError):
    """A newer upload replaced the load that raised this."""


class RetryExhausted(PortalError):
    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        msg = f"gave up after {attempts} attempt(s)"
        if last_error is not None:
            msg += f": {type(last_error).__name__}: {last_error}"
        super().__init__(msg)
        self.attempts = attempts
        self.last_error = last_error
