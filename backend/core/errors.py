"""
Service error taxonomy.

Every failure the engine reports carries one of the codes below so callers
(HTTP clients, the batch envelope, operators reading logs) can tell a guard
violation from missing data or a remote-platform problem.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"  # referenced shipment / aliquot / patient absent
    INVALID_STATUS = "INVALID_STATUS"  # state-machine guard violated
    DATA_MISSING = "DATA_MISSING"  # mandatory field for the transition is empty
    INVALID_DATA_FORMAT = "INVALID_DATA_FORMAT"  # malformed date or structurally wrong input
    AMBIGUOUS = "AMBIGUOUS"  # more than one remote record matches a unique reference
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"  # invariant violation
    DB_ERROR = "DB_ERROR"


class ServiceError(Exception):
    """Base exception for SampleTrack."""

    def __init__(self, code: ErrorCode, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class ECRFError(ServiceError):
    """Error reported by (or while talking to) the remote eCRF platform.

    Never retried inside one invocation: the scheduler re-invokes the
    reconciliation scan, which is idempotent.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        code: ErrorCode = ErrorCode.UNEXPECTED_ERROR,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(code, message, context)
        self.operation = operation
