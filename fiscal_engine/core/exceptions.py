"""
Error taxonomy for the fiscal document engine.

Every error carries a machine readable ``error_code`` and an optional
``details`` dict so API handlers can report them without string parsing.
"""

from typing import Any, Dict, Optional


class FiscalEngineError(Exception):
    """Base exception for fiscal document operations."""

    error_code = "FISCAL_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ValidationError(FiscalEngineError):
    """Input rejected before any mutation took place."""

    error_code = "VALIDATION_ERROR"


class NotFoundError(FiscalEngineError):
    """A referenced document does not exist."""

    error_code = "NOT_FOUND"


class SequenceConflictError(FiscalEngineError):
    """Concurrent allocation collision on a series counter."""

    error_code = "SEQUENCE_CONFLICT"


class SigningError(FiscalEngineError):
    """Key unavailable, unparsable, or the signing primitive failed."""

    error_code = "SIGNING_ERROR"


class ChainIntegrityError(FiscalEngineError):
    """A signature in a series does not match its predecessor chain."""

    error_code = "CHAIN_INTEGRITY_ERROR"


class StorageError(FiscalEngineError):
    """The persistence layer failed or was unreachable."""

    error_code = "STORAGE_ERROR"
