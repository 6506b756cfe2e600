from typing import Optional


class TraceChainError(Exception):
    """Base class for every rejected operation.

    Carries the operation name and, when one is involved, the batch id so a
    caller can tell whether retrying with corrected input makes sense.
    """

    kind = "TraceChainError"

    def __init__(self, message: str, operation: Optional[str] = None,
                 batch_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.batch_id = batch_id

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "detail": self.message,
            "operation": self.operation,
            "batch_id": self.batch_id,
        }


class Unauthorized(TraceChainError):
    """Caller lacks the required role or is not the administrator."""
    kind = "Unauthorized"


class NotFound(TraceChainError):
    kind = "NotFound"


class InvalidTransition(TraceChainError):
    kind = "InvalidTransition"


class StagePrecondition(TraceChainError):
    kind = "StagePrecondition"


class AlreadyCertified(TraceChainError):
    kind = "AlreadyCertified"


class ConfigurationError(TraceChainError):
    """Store started against a database that disagrees with its settings."""
    kind = "ConfigurationError"
