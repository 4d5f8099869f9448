"""
Error taxonomy for ARR reporting.

Every failure a caller may act on carries a stable ``kind`` so the caller can
choose between retrying (upstream-unavailable) and fixing the request
(input-validation, configuration-missing). Data anomalies in individual
records are never raised; they resolve to a zero contribution.
"""

from typing import Optional


class ArrReportError(Exception):
    """Base class for caller-facing errors."""
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputValidationError(ArrReportError, ValueError):
    """Malformed or inverted date range, unknown grain or mode."""
    kind = "input-validation"


class ConfigurationMissingError(ArrReportError):
    """A required credential or identifier is absent."""
    kind = "configuration-missing"

    def __init__(self, name: str):
        super().__init__(f"Missing required configuration: {name}")
        self.name = name


class UpstreamUnavailableError(ArrReportError):
    """An external data source failed or exhausted its retry budget."""
    kind = "upstream-unavailable"

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        prefix = f"{service} API error {status_code}" if status_code else f"{service} API error"
        super().__init__(f"{prefix}: {message}")
        self.service = service
        self.status_code = status_code
