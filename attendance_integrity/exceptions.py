"""
Error types raised by the integrity engine.

Scheduled tasks catch these at their tick boundary; routes translate them
into HTTP responses.
"""
from datetime import date
from typing import Optional, Dict, Any


class IntegrityEngineError(Exception):
    """Base class for engine errors"""


class ConfigurationError(IntegrityEngineError):
    """Settings that would break an engine invariant. Raised while settings load."""


class PunchSourceError(IntegrityEngineError):
    """Non-retryable failure talking to the external punch source (auth, 4xx)."""


class TransientSourceError(PunchSourceError):
    """Timeout, transport error, 429 or 5xx. Safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DataIntegrityFault(IntegrityEngineError):
    """Aggregate ledger state that cannot be true (e.g. more attendees than employees)."""


class ValidationRejection(IntegrityEngineError):
    """A mobile punch was evaluated and refused. Carries the full result."""

    def __init__(self, result: Dict[str, Any]):
        violations = result.get("violations") or []
        super().__init__("; ".join(violations) or "Punch rejected")
        self.result = result


class GapRemnant(IntegrityEngineError):
    """A day with missing records whose id bounds cannot be inferred."""

    def __init__(self, day: date, reason: str):
        super().__init__(f"{day.isoformat()}: {reason}")
        self.day = day
        self.reason = reason


class LedgerConflictError(IntegrityEngineError):
    """Attendance row kept changing underneath us; merge retries exhausted."""


class SourceNotConfigured(IntegrityEngineError):
    """No external punch source credentials; polling and healing are unavailable."""
