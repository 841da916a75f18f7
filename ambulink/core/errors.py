from typing import Optional


class DispatchError(Exception):
    """
    Base error for every failure the core reports to its callers.

    `kind` is a stable name used by the HTTP adapter and the audit log.
    `reason` is an optional finer tag (e.g. NO_BEDS, ALREADY_ASSIGNED).
    """

    kind = "DISPATCH_ERROR"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class ValidationError(DispatchError):
    kind = "VALIDATION_ERROR"


class NotFoundError(DispatchError):
    kind = "NOT_FOUND"


class ConflictError(DispatchError):
    kind = "CONFLICT"


class ExpiredError(DispatchError):
    kind = "EXPIRED"


class NoCandidatesError(DispatchError):
    kind = "NO_CANDIDATES"


class InvalidCodeError(DispatchError):
    kind = "INVALID_CODE"


class SettlementError(DispatchError):
    kind = "SETTLEMENT_FAILED"
