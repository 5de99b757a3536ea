# Models package
# Importing modules here ensures they are registered with SQLAlchemy Base
from . import (
    leave_policy, leave_balance, leave_accrual_history,
    leave_request, audit_log, notification
)

# Explicit class exports for cleaner imports
from .leave_policy import LeavePolicy, AccrualFrequency
from .leave_balance import LeaveBalance, LeaveType, resolve_leave_type
from .leave_accrual_history import LeaveAccrualHistory, LedgerPeriod
from .leave_request import LeaveRequest, ApprovalLevel, LeaveStatus, ApprovalStatus
from .audit_log import AuditLog
from .notification import Notification

__all__ = [
    "LeavePolicy",
    "AccrualFrequency",
    "LeaveBalance",
    "LeaveType",
    "resolve_leave_type",
    "LeaveAccrualHistory",
    "LedgerPeriod",
    "LeaveRequest",
    "ApprovalLevel",
    "LeaveStatus",
    "ApprovalStatus",
    "AuditLog",
    "Notification",
]
