from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when the sidecar configuration is invalid. Fatal at startup."""


class FatalWatchError(RuntimeError):
    """Raised when the ConfigMap list/watch is rejected in a way retrying cannot fix.

    Carries the HTTP status of the rejected request (``400`` for a selector
    the API server refuses, ``401``/``403`` for RBAC or credential problems).
    """

    def __init__(self, status: int | None, message: str) -> None:
        super().__init__(message)
        self.status = status
