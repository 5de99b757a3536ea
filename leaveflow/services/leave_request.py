import math
from datetime import date, datetime
from typing import List, Optional, Union

from sqlalchemy.orm import Session

from leaveflow.core.config import settings
from leaveflow.core.exceptions import InvalidRangeError, NotFoundError, OverlappingLeaveError
from leaveflow.models.audit_log import AuditLog
from leaveflow.models.leave_balance import resolve_leave_type
from leaveflow.models.leave_request import ApprovalStatus, LeaveRequest, LeaveStatus
from leaveflow.schemas.auth import Actor
from leaveflow.schemas.leave import ApprovalHistoryEntry
from leaveflow.services.approval_router import ApprovalRouter
from leaveflow.services.audit import AuditService
from leaveflow.services.base import BaseService

DateLike = Union[date, datetime]

ACTIVE_STATUSES = (LeaveStatus.PENDING.value, LeaveStatus.APPROVED.value)

# Audit actions that make up a request's approval history
HISTORY_ACTIONS = {
    "LEAVE_REQUESTED": "submitted",
    "LEAVE_POLICY_FALLBACK": "policy_fallback",
    "LEAVE_LEVEL_APPROVED": "level_approved",
    "LEAVE_APPROVED": "approved",
    "LEAVE_REJECTED": "rejected",
    "LEAVE_CANCELLED": "cancelled",
}
DECISION_ACTIONS = ("LEAVE_LEVEL_APPROVED", "LEAVE_APPROVED", "LEAVE_REJECTED")


def calculate_leave_days(start: DateLike, end: DateLike) -> int:
    """
    Inclusive day count: a same-day request is 1 day.
    Partial days (datetimes) round up. Always computed server-side.
    """
    if isinstance(start, datetime) != isinstance(end, datetime):
        start = start if isinstance(start, datetime) else datetime.combine(start, datetime.min.time())
        end = end if isinstance(end, datetime) else datetime.combine(end, datetime.min.time())
    if end < start:
        raise InvalidRangeError(start, end)

    if isinstance(start, datetime):
        whole_days = math.ceil((end - start).total_seconds() / 86400)
    else:
        whole_days = (end - start).days
    return max(1, whole_days + 1)


class LeaveRequestService(BaseService):
    """Builds leave request aggregates and hands them to the approval router."""

    def __init__(
        self,
        db: Session,
        router: Optional[ApprovalRouter] = None,
        audit: Optional[AuditService] = None,
        reject_overlaps: Optional[bool] = None,
    ):
        super().__init__(db)
        self.audit = audit or AuditService(db)
        self.router = router or ApprovalRouter(db, audit=self.audit)
        if reject_overlaps is None:
            reject_overlaps = settings.leave.reject_overlaps
        self.reject_overlaps = reject_overlaps

    def find_overlapping(self, staff_id: str, start_date: date, end_date: date) -> List[LeaveRequest]:
        return (
            self.db.query(LeaveRequest)
            .filter(
                LeaveRequest.staff_id == staff_id,
                LeaveRequest.status.in_(ACTIVE_STATUSES),
                LeaveRequest.start_date <= end_date,
                LeaveRequest.end_date >= start_date,
            )
            .all()
        )

    def create_request(
        self,
        staff_id: str,
        leave_type,
        start_date: date,
        end_date: date,
        actor: Actor,
        reason: Optional[str] = None,
        staff_name: Optional[str] = None,
    ) -> LeaveRequest:
        """
        Submit a new request. The balance is checked at final approval, not here.
        """
        leave_type = resolve_leave_type(leave_type)
        days = calculate_leave_days(start_date, end_date)

        if self.reject_overlaps:
            overlapping = self.find_overlapping(staff_id, start_date, end_date)
            if overlapping:
                raise OverlappingLeaveError([r.id for r in overlapping])

        request = LeaveRequest(
            staff_id=staff_id,
            staff_name=staff_name,
            leave_type=leave_type.value,
            start_date=start_date,
            end_date=end_date,
            days=days,
            reason=reason,
            submitted_by=actor.staff_id,
        )
        with self.unit_of_work("Leave request"):
            self.router.submit(request, actor)
            self.audit.record(
                "LEAVE_REQUESTED", actor=actor, staff_id=staff_id,
                entity_type="leave_request", entity_id=request.id,
                details={
                    "leave_type": leave_type.value,
                    "start_date": start_date,
                    "end_date": end_date,
                    "days": days,
                    "approval_levels": len(request.approval_levels),
                },
            )
        self.log_info(f"Leave request {request.id} submitted for {staff_id}: {days} {leave_type.value} days")
        return request

    def get_request(self, request_id: int) -> LeaveRequest:
        request = self.db.get(LeaveRequest, request_id)
        if request is None:
            raise NotFoundError("Leave request", request_id)
        return request

    def list_requests(
        self,
        staff_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LeaveRequest]:
        query = self.db.query(LeaveRequest)
        if staff_id:
            query = query.filter(LeaveRequest.staff_id == staff_id)
        if status:
            query = query.filter(LeaveRequest.status == LeaveStatus(status).value)
        return query.order_by(LeaveRequest.created_at.desc(), LeaveRequest.id.desc()).offset(offset).limit(limit).all()

    def approval_history(self, request_id: int) -> List[ApprovalHistoryEntry]:
        """
        The request's audit trail, oldest first. Decided levels with no audit
        entry (the audit sink is best-effort) are appended from the level rows.
        """
        request = self.get_request(request_id)
        logs = (
            self.db.query(AuditLog)
            .filter(
                AuditLog.entity_type == "leave_request",
                AuditLog.entity_id == request.id,
                AuditLog.action.in_(list(HISTORY_ACTIONS)),
            )
            .order_by(AuditLog.timestamp, AuditLog.id)
            .all()
        )

        entries: List[ApprovalHistoryEntry] = []
        audited_levels = set()
        for log in logs:
            details = log.details or {}
            if log.action in DECISION_ACTIONS and details.get("level") is not None:
                audited_levels.add(details["level"])
            entries.append(ApprovalHistoryEntry(
                action=HISTORY_ACTIONS[log.action],
                performed_by=log.user,
                performed_by_role=log.user_role,
                performed_at=log.timestamp,
                level=details.get("level"),
                comments=details.get("comments") or details.get("reason"),
                from_status=(log.before_state or {}).get("status"),
                to_status=(log.after_state or {}).get("status"),
            ))

        final_level = request.approval_levels[-1].level if request.approval_levels else None
        for approval in request.approval_levels:
            if approval.status == ApprovalStatus.PENDING.value or approval.level in audited_levels:
                continue
            if approval.status == ApprovalStatus.REJECTED.value:
                action = "rejected"
            else:
                action = "approved" if approval.level == final_level else "level_approved"
            entries.append(ApprovalHistoryEntry(
                action=action,
                performed_by=approval.approver_name,
                performed_at=approval.approval_date,
                level=approval.level,
                comments=approval.comments,
            ))
        return entries
