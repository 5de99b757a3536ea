from typing import Any, Dict, Optional


class AppException(Exception):
    def __init__(
        self,
        message: str,
        status_code: int = 400,
        error_code: str = "BUSINESS_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class NotFoundError(AppException):
    def __init__(self, entity: str, key: Any):
        super().__init__(
            message=f"{entity} not found: {key}",
            status_code=404,
            error_code="NOT_FOUND",
            details={"entity": entity, "key": str(key)}
        )


class InvalidRangeError(AppException):
    def __init__(self, start_date: Any, end_date: Any):
        super().__init__(
            message=f"End date {end_date} is before start date {start_date}",
            status_code=400,
            error_code="INVALID_RANGE",
            details={"start_date": str(start_date), "end_date": str(end_date)}
        )


class InvalidTransitionError(AppException):
    """Raised when a decide/cancel call does not match the request's current state."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=409,
            error_code="INVALID_TRANSITION",
            details=details
        )


class ConcurrentModificationError(InvalidTransitionError):
    """A concurrent writer changed the row between our read and our write."""
    def __init__(self, entity: str, key: Any):
        super().__init__(
            message=f"{entity} {key} was modified concurrently; refresh and retry",
            details={"entity": entity, "key": str(key)}
        )


class InsufficientBalanceError(AppException):
    def __init__(self, leave_type: str, current_balance: float, requested_days: float):
        super().__init__(
            message=(
                f"Insufficient {leave_type} leave balance. "
                f"Available: {current_balance} days, Requested: {requested_days} days"
            ),
            status_code=400,
            error_code="INSUFFICIENT_BALANCE",
            details={
                "leave_type": leave_type,
                "current_balance": current_balance,
                "requested_days": requested_days,
            }
        )


class PolicyNotFoundError(NotFoundError):
    def __init__(self, leave_type: str):
        AppException.__init__(
            self,
            message=f"No active leave policy for leave type '{leave_type}'",
            status_code=404,
            error_code="POLICY_NOT_FOUND",
            details={"leave_type": leave_type}
        )


class InvalidLeaveTypeError(AppException):
    def __init__(self, leave_type: str):
        super().__init__(
            message=f"Invalid leave type: {leave_type}",
            status_code=400,
            error_code="INVALID_LEAVE_TYPE",
            details={"leave_type": leave_type}
        )


class OverlappingLeaveError(AppException):
    def __init__(self, overlapping_ids: list):
        super().__init__(
            message="Overlapping leave request exists",
            status_code=409,
            error_code="OVERLAPPING_LEAVE",
            details={"overlapping_request_ids": overlapping_ids}
        )


class RejectionCommentRequiredError(AppException):
    def __init__(self, min_length: int):
        super().__init__(
            message=f"Rejection comments are required and must be at least {min_length} characters",
            status_code=400,
            error_code="REJECTION_COMMENTS_REQUIRED",
            details={"min_length": min_length}
        )


class InvalidPolicyError(AppException):
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            message=message,
            status_code=400,
            error_code="INVALID_POLICY",
            details=details
        )


class PolicyConflictError(AppException):
    def __init__(self, leave_type: str):
        super().__init__(
            message=f"An active policy for '{leave_type}' already exists",
            status_code=409,
            error_code="POLICY_CONFLICT",
            details={"leave_type": leave_type}
        )


class StatutoryViolationError(AppException):
    def __init__(self, errors: list, statutory_minimum: Optional[float] = None):
        super().__init__(
            message="; ".join(errors),
            status_code=422,
            error_code="STATUTORY_MINIMUM_VIOLATION",
            details={"errors": errors, "statutory_minimum": statutory_minimum}
        )


class AccessDeniedError(AppException):
    """Custom permission error. Named AccessDeniedError to avoid shadowing Python's built-in PermissionError."""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(
            message=message,
            status_code=403,
            error_code="PERMISSION_DENIED"
        )
