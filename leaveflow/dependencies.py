"""
Service providers for FastAPI dependency injection.

Each request gets services bound to its own session. Tests override these
(or get_db) through app.dependency_overrides.
"""
from fastapi import Depends
from sqlalchemy.orm import Session

from leaveflow.database import get_db
from leaveflow.services.accrual import AccrualEngine
from leaveflow.services.approval_router import ApprovalRouter
from leaveflow.services.audit import AuditService
from leaveflow.services.balance_ledger import LeaveBalanceLedger
from leaveflow.services.leave_request import LeaveRequestService
from leaveflow.services.notification import DatabaseNotificationDispatcher, NotificationDispatcher
from leaveflow.services.policy_store import LeavePolicyStore


def get_notifier(db: Session = Depends(get_db)) -> NotificationDispatcher:
    return DatabaseNotificationDispatcher(db)


def get_policy_store(db: Session = Depends(get_db)) -> LeavePolicyStore:
    return LeavePolicyStore(db)


def get_ledger(db: Session = Depends(get_db)) -> LeaveBalanceLedger:
    return LeaveBalanceLedger(db)


def get_approval_router(
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> ApprovalRouter:
    audit = AuditService(db)
    return ApprovalRouter(
        db,
        policy_store=LeavePolicyStore(db, audit=audit),
        ledger=LeaveBalanceLedger(db, audit=audit),
        audit=audit,
        notifier=notifier,
    )


def get_leave_service(
    db: Session = Depends(get_db),
    router: ApprovalRouter = Depends(get_approval_router),
) -> LeaveRequestService:
    return LeaveRequestService(db, router=router, audit=router.audit)


def get_accrual_engine(db: Session = Depends(get_db)) -> AccrualEngine:
    return AccrualEngine(db)
