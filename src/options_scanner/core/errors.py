"""
Exception hierarchy for the scanner pipeline.

    ScannerError
     ├── ProviderError            transient upstream failure after retries
     │    └── ProviderDegradedError   auth / quota exhausted, breaker tripped
     ├── DataSourceError          every configured source failed
     ├── MalformedDataError       upstream payload unusable even with defaults
     └── RiskInputError           risk calculator inputs missing or inconsistent
"""

from typing import Optional


class ScannerError(Exception):
    """Base class for all pipeline errors."""


class ProviderError(ScannerError):
    """The upstream provider could not serve a request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        attempts: int = 0,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts


class ProviderDegradedError(ProviderError):
    """Raised when the provider is unusable and callers must fall back."""


class DataSourceError(ScannerError):
    """Raised by the source router when live and fallback sources both fail."""


class MalformedDataError(ScannerError):
    """Raised when a payload is missing the fields needed to build a record."""


class RiskInputError(ScannerError):
    """Raised when a risk calculation is missing an input or the inputs contradict each other."""
