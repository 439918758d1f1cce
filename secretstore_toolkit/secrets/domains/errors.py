"""Error kinds surfaced by every Store implementation."""
from typing import Optional


class StoreError(Exception):
    """Base class for all Store errors."""
    pass


class ValidationError(StoreError):
    """A SecretId failed key validation. Raised before any backend call."""
    pass


class NotFoundError(StoreError):
    """The secret, or the requested version of it, does not exist."""

    def __init__(self, name: str, version: Optional[int] = None):
        self.name = name
        self.version = version
        if version is None:
            message = f"Secret '{name}' not found"
        else:
            message = f"Version {version} of secret '{name}' not found"
        super().__init__(message)


class BackendError(StoreError):
    """Transport, permission or throttling failure from the underlying system."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class NotSupportedError(StoreError):
    """The backend has no capability for the requested operation."""

    def __init__(self, backend: str, operation: str):
        self.backend = backend
        self.operation = operation
        super().__init__(f"{backend} does not support {operation}")
