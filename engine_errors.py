"""
engine_errors.py

Exceptions raised while talking to the Qlik Sense engine (QIX).

Copyright:
    (c) 2025 Nutanix Inc. All rights reserved.
"""

from typing import Any, Optional


class EngineError(Exception):
    """Base class for all engine client failures."""


class EngineConfigError(EngineError):
    """Missing certificates or unusable connection settings."""


class EngineConnectionError(EngineError):
    """TCP/TLS connect, WebSocket handshake or socket failure."""


class EngineTimeoutError(EngineError):
    """The engine did not answer a request in time."""


class EngineResponseError(EngineError):
    """A response could not be parsed or lacks an expected member."""


class EngineRpcError(EngineError):
    """The engine answered a request with a JSON-RPC error object."""

    def __init__(self, method: str, error: Any):
        self.method = method
        self.error = error
        if isinstance(error, dict):
            self.code: Optional[int] = error.get("code")
            self.message: str = error.get("message", "")
            self.parameter: Optional[str] = error.get("parameter")
        else:
            self.code = None
            self.message = str(error)
            self.parameter = None
        detail = f"{self.message} ({self.parameter})" if self.parameter else self.message
        super().__init__(f"{method} failed with code {self.code}: {detail}")
