"""
Error types raised by stepdeploy and helpers for classifying AWS failures.
"""

from typing import List, Optional

from botocore.exceptions import ClientError


NOT_FOUND_CODES = frozenset({
    "StateMachineDoesNotExist",
    "ResourceNotFound",
    "ResourceNotFoundException",
})
CONFLICT_CODE = "ConflictException"
ACCESS_DENIED_CODE = "AccessDeniedException"


class StepDeployError(Exception):
    """Base exception for all stepdeploy errors."""
    pass


class ConfigurationError(StepDeployError):
    """Invalid or unreadable configuration."""
    pass


class NotFoundError(StepDeployError):
    """A remote resource does not exist."""
    pass


class StateMachineNotFound(NotFoundError):
    pass


class AliasNotFound(NotFoundError):
    pass


class RuleNotFound(NotFoundError):
    pass


class ScheduleNotFound(NotFoundError):
    pass


class ConflictError(StepDeployError):
    """A remote write was rejected because of a conflicting state."""
    pass


class AccessDeniedError(StepDeployError):
    """The caller is not allowed to perform the operation. Never retried."""
    pass


class MaxRetryExceeded(StepDeployError):
    """A retried operation did not succeed within the retry policy."""
    pass


class RollbackTargetNotFound(StepDeployError):
    """There is no older version to roll back to."""
    pass


class Cancelled(StepDeployError):
    """The operation was cancelled by the caller."""
    pass


class OperationError(StepDeployError):
    """
    A remote call failed.

    Carries the operation name and the identity of the resource it was
    applied to; the underlying error is chained as ``__cause__``.
    """

    def __init__(self, operation: str, resource: str, cause: Exception):
        self.operation = operation
        self.resource = resource
        self.cause = cause
        super().__init__(f"{operation} `{resource}` failed: {cause}")


class PurgeError(StepDeployError):
    """One or more versions could not be deleted during a purge."""

    def __init__(self, errors: List[Exception]):
        self.errors = list(errors)
        joined = "; ".join(str(e) for e in self.errors)
        super().__init__(f"delete versions failed: {joined}")


def error_code(exc: BaseException) -> Optional[str]:
    """Return the AWS error code of a botocore ClientError, or None."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def error_message(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Message", "") or str(exc)
    return str(exc)


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, NotFoundError) or error_code(exc) in NOT_FOUND_CODES


def is_conflict(exc: BaseException) -> bool:
    return error_code(exc) == CONFLICT_CODE


def is_access_denied(exc: BaseException) -> bool:
    return isinstance(exc, AccessDeniedError) or error_code(exc) == ACCESS_DENIED_CODE
