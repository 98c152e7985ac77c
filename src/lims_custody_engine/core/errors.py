"""Error taxonomy for the custody engine.

Four families, handled differently by callers:
- DomainValidationError and subclasses: bad input, never retried.
- UnauthenticatedError: no acting identity, surfaced immediately.
- StoreUnavailableError: Resource Store failure, retryable by the caller.
- PartialWriteError: audit record persisted but the specimen snapshot was not;
  needs operator reconciliation.
"""

from typing import Any


class CustodyEngineError(Exception):
    """Base error for the custody engine.

    Attributes:
        message: Human-readable description, safe to show to the caller.
        context: Structured fields identifying the offending input.
    """

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize the error.

        Args:
            message: Error description.
            **context: Identifiers that let the caller correct the input.
        """
        super().__init__(message)
        self.message = message
        self.context = context


class DomainValidationError(CustodyEngineError):
    """Base class for input validation failures."""


class StationNotFoundError(DomainValidationError):
    """Raised when a workflow station id is not in the registry."""


class LocationNotFoundError(DomainValidationError):
    """Raised when a location id is not in the registry."""


class SpecimenNotFoundError(DomainValidationError):
    """Raised when the Resource Store has no specimen with the given id."""


class InvalidStatusTransitionError(DomainValidationError):
    """Raised when a specimen status change is not permitted."""


class RequirementNotFoundError(DomainValidationError):
    """Raised when a regulatory requirement id is not in the catalog."""


class ViolationNotFoundError(DomainValidationError):
    """Raised when a violation id is not on the specimen's trail."""


class ViolationAlreadyResolvedError(DomainValidationError):
    """Raised when resolving a violation that is already resolved."""


class UnknownEventTypeError(DomainValidationError):
    """Raised when recording an audit event with an unsupported event type."""


class UnauthenticatedError(CustodyEngineError):
    """Raised when the Identity Provider reports no current actor."""


class StoreUnavailableError(CustodyEngineError):
    """Raised when the Resource Store cannot serve a request."""


class PartialWriteError(CustodyEngineError):
    """Raised when the audit record was appended but the snapshot update failed.

    Attributes:
        reconciliation_id: Id of the ReconciliationLog entry describing the write.
    """

    def __init__(self, message: str, reconciliation_id: str, **context: Any) -> None:
        """Initialize PartialWriteError.

        Args:
            message: Error description.
            reconciliation_id: Id of the reconciliation entry for operators.
            **context: Additional identifiers.
        """
        super().__init__(message, reconciliation_id=reconciliation_id, **context)
        self.reconciliation_id = reconciliation_id


class ReportTimeoutError(CustodyEngineError):
    """Raised when report generation exceeds its deadline. No report is kept."""
