from enum import Enum
from typing import Any, Optional, Union


class BusinessReason(str, Enum):
    INVALID_TRANSITION = "INVALID_TRANSITION"
    TERMINAL_STATE = "TERMINAL_STATE"
    NOT_APPROVED = "NOT_APPROVED"
    DUPLICATE_ACTIVE_ORDER = "DUPLICATE_ACTIVE_ORDER"
    NOT_CANCELLABLE = "NOT_CANCELLABLE"


class LifecycleError(Exception):
    """Base for expected, caller-recoverable failures.

    Every subclass carries a machine-readable ``code``, a human-readable
    ``message`` and a ``context`` map with enough detail (ids, observed vs.
    expected state) to log the failure without re-reading storage.
    """

    code = "LIFECYCLE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.message = message
        self.context = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


class NotFoundError(LifecycleError):
    code = "NOT_FOUND"


class BusinessError(LifecycleError):
    code = "BUSINESS_RULE_VIOLATION"

    def __init__(
        self,
        reason: Union[BusinessReason, str],
        message: str,
        *,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        reason = BusinessReason(reason)
        super().__init__(message, code=reason.value, context=context)
        self.reason = reason


class ConcurrencyError(LifecycleError):
    code = "CONCURRENCY_CONFLICT"


class StaleVersionError(ConcurrencyError):
    code = "STALE_VERSION"

    def __init__(self, *, proposal_id: str, expected_version: int, current_version: int) -> None:
        super().__init__(
            "Proposal was changed by another request. Reload it and try again.",
            context={
                "proposal_id": proposal_id,
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )
        self.proposal_id = proposal_id
        self.expected_version = expected_version
        self.current_version = current_version
