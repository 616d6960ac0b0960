"""Shared exception types for core betting logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when data a whole pass depends on (balance, positions) cannot be fetched."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class ExchangeError(RuntimeError):
    """Non-retryable exchange failure (4xx other than 429, malformed payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class ConfigError(ValueError):
    """Raised when policy.yaml fails validation."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid configuration")
