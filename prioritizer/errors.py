"""Error types shared across the service and API layers."""
from __future__ import annotations


class NotFoundError(LookupError):
    """An unknown feature id or job id was requested."""
    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class ConfigurationError(Exception):
    """A required provider or credential is not configured."""
    def __init__(self, message: str, error_code: str = "NOT_CONFIGURED"):
        super().__init__(message)
        self.error_code = error_code
