"""
Approval Router: the leave request state machine.

    pending(level=k) --approve, k < N--> pending(level=k+1)
    pending(level=N) --approve---------> approved   (balance debited)
    pending(level=k) --reject----------> rejected
    pending          --cancel----------> cancelled

Requests without approval levels are single-level: any approver resolves them.
decide/cancel re-read the request under lock and version check; the status
change, level change and balance debit commit together or not at all.
"""
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from leaveflow.core.config import settings
from leaveflow.core.exceptions import (
    AccessDeniedError, InvalidTransitionError, NotFoundError, PolicyNotFoundError,
    RejectionCommentRequiredError,
)
from leaveflow.models.leave_request import ApprovalLevel, ApprovalStatus, LeaveRequest, LeaveStatus
from leaveflow.schemas.auth import Actor, Role
from leaveflow.schemas.leave import DecisionOutcome
from leaveflow.services.audit import AuditService
from leaveflow.services.balance_ledger import LeaveBalanceLedger
from leaveflow.services.base import BaseService
from leaveflow.services.notification import LeaveEvent, NotificationDispatcher, dispatch_safely
from leaveflow.services.policy_store import LeavePolicyStore

# (leave_type, level, requester_id) -> approver role
LevelRoleResolver = Callable[[str, int, str], str]

APPROVER_ROLES = frozenset({Role.MANAGER, Role.HR, Role.ADMIN})


def default_role_resolver(leave_type: str, level: int, requester_id: str) -> str:
    """Level 1 goes to the line manager, every later level to HR."""
    return Role.MANAGER.value if level == 1 else Role.HR.value


def _snapshot(request: LeaveRequest) -> dict:
    return {
        "status": request.status,
        "levels": [
            {"level": a.level, "approver_role": a.approver_role, "status": a.status}
            for a in request.approval_levels
        ],
    }


class ApprovalRouter(BaseService):
    def __init__(
        self,
        db: Session,
        policy_store: Optional[LeavePolicyStore] = None,
        ledger: Optional[LeaveBalanceLedger] = None,
        audit: Optional[AuditService] = None,
        notifier: Optional[NotificationDispatcher] = None,
        role_resolver: LevelRoleResolver = default_role_resolver,
        strict_policy_lookup: Optional[bool] = None,
        rejection_min_comment_length: Optional[int] = None,
    ):
        super().__init__(db)
        self.audit = audit or AuditService(db)
        self.policy_store = policy_store or LeavePolicyStore(db, audit=self.audit)
        self.ledger = ledger or LeaveBalanceLedger(db, audit=self.audit)
        self.notifier = notifier
        self.role_resolver = role_resolver
        if strict_policy_lookup is None:
            strict_policy_lookup = settings.leave.strict_policy_lookup
        self.strict_policy_lookup = strict_policy_lookup
        if rejection_min_comment_length is None:
            rejection_min_comment_length = settings.leave.rejection_min_comment_length
        self.rejection_min_comment_length = rejection_min_comment_length

    # --- Submission ---

    def submit(self, request: LeaveRequest, actor: Actor) -> LeaveRequest:
        """
        Attach the approval chain for a new request and stage it (no commit).
        Missing policy: PolicyNotFoundError in strict mode, otherwise a
        single-level request plus a warning audit entry.
        """
        policy = self.policy_store.find_active_policy(request.leave_type)
        if policy is None and self.strict_policy_lookup:
            raise PolicyNotFoundError(request.leave_type)

        request.status = LeaveStatus.PENDING.value
        level_count = policy.effective_approval_levels if policy else 1
        if level_count > 1:
            request.approval_levels = [
                ApprovalLevel(
                    level=level,
                    approver_role=self.role_resolver(request.leave_type, level, request.staff_id),
                    status=ApprovalStatus.PENDING.value,
                )
                for level in range(1, level_count + 1)
            ]

        self.db.add(request)
        self.db.flush()

        if policy is None:
            self.log_warning(
                f"No active policy for {request.leave_type}; request {request.id} falls back to single-level approval"
            )
            self.audit.warn(
                "LEAVE_POLICY_FALLBACK", actor=actor, staff_id=request.staff_id,
                entity_type="leave_request", entity_id=request.id,
                details={"leave_type": request.leave_type},
            )
        return request

    # --- Transitions ---

    def _load_for_update(self, request_id: int) -> LeaveRequest:
        request = (
            self.db.query(LeaveRequest)
            .filter(LeaveRequest.id == request_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if request is None:
            raise NotFoundError("Leave request", request_id)
        return request

    @staticmethod
    def _require_pending(request: LeaveRequest):
        if request.status != LeaveStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Leave request {request.id} is already {request.status}",
                details={"request_id": request.id, "status": request.status},
            )

    @staticmethod
    def _target_level(request: LeaveRequest, level: Optional[int], actor: Actor) -> Optional[ApprovalLevel]:
        """The level this decision applies to; None for single-level requests."""
        if not request.has_workflow:
            if level not in (None, 1):
                raise InvalidTransitionError(
                    f"Leave request {request.id} has a single approval step",
                    details={"request_id": request.id, "level": level},
                )
            if actor.role not in APPROVER_ROLES:
                raise AccessDeniedError("Only managers, HR or admins can decide leave requests")
            return None

        current = request.current_level
        details = {
            "request_id": request.id,
            "level": level,
            "current_level": current.level if current else None,
        }
        if current is None:
            raise InvalidTransitionError(f"Leave request {request.id} has no pending approval level", details)
        if level is None:
            raise InvalidTransitionError("An approval level is required for this request", details)
        if level != current.level:
            raise InvalidTransitionError(
                f"Level {level} is not the current approval level ({current.level})", details
            )
        if actor.role not in APPROVER_ROLES:
            raise AccessDeniedError("Only managers, HR or admins can decide leave requests")
        if actor.role.value != current.approver_role:
            raise InvalidTransitionError(
                f"Level {current.level} must be decided by role '{current.approver_role}'",
                {**details, "required_role": current.approver_role, "actor_role": actor.role.value},
            )
        return current

    def _require_rejection_comment(self, comments: Optional[str]):
        if len((comments or "").strip()) < self.rejection_min_comment_length:
            raise RejectionCommentRequiredError(self.rejection_min_comment_length)

    def decide(
        self,
        request_id: int,
        outcome: DecisionOutcome,
        actor: Actor,
        level: Optional[int] = None,
        comments: Optional[str] = None,
    ) -> LeaveRequest:
        outcome = DecisionOutcome(outcome)
        with self.unit_of_work("Leave request", request_id):
            request = self._load_for_update(request_id)
            self._require_pending(request)
            if request.staff_id == actor.staff_id:
                raise AccessDeniedError("You cannot decide your own leave request")

            target = self._target_level(request, level, actor)
            if outcome == DecisionOutcome.REJECTED:
                self._require_rejection_comment(comments)
            is_final = target is None or target.level == request.approval_levels[-1].level
            before = _snapshot(request)
            now = datetime.now(timezone.utc)

            if outcome == DecisionOutcome.APPROVED and is_final:
                # Raises InsufficientBalanceError before anything is mutated
                self.ledger.debit(
                    request.staff_id, request.leave_type, request.days,
                    leave_request_id=request.id, processed_by=actor.staff_id,
                )

            if target is not None:
                target.status = outcome.value
                target.approver_id = actor.staff_id
                target.approver_name = actor.display_name
                target.approval_date = now
                target.comments = comments

            if outcome == DecisionOutcome.REJECTED:
                request.status = LeaveStatus.REJECTED.value
                action = "LEAVE_REJECTED"
            elif is_final:
                request.status = LeaveStatus.APPROVED.value
                request.approved_by = actor.display_name
                request.approval_date = now
                action = "LEAVE_APPROVED"
            else:
                action = "LEAVE_LEVEL_APPROVED"
            # Touch the parent so a level-only change still bumps its version
            request.updated_at = now

            self.db.flush()
            self.audit.record(
                action, actor=actor, staff_id=request.staff_id,
                entity_type="leave_request", entity_id=request.id,
                details={
                    "level": target.level if target else None,
                    "leave_type": request.leave_type,
                    "days": request.days,
                    "comments": comments,
                },
                before_state=before, after_state=_snapshot(request),
            )

        decided_level = target.level if target else None
        self.log_info(f"Leave request {request_id}: {action} by {actor.staff_id} (level {decided_level})")
        dispatch_safely(self.notifier, LeaveEvent(
            request_id=request.id,
            staff_id=request.staff_id,
            leave_type=request.leave_type,
            new_status=request.status,
            level=decided_level,
            days=request.days,
            comments=comments,
        ))
        return request

    def cancel(self, request_id: int, actor: Actor, reason: Optional[str] = None) -> LeaveRequest:
        """Withdraw a pending request. No balance change: nothing was debited yet."""
        with self.unit_of_work("Leave request", request_id):
            request = self._load_for_update(request_id)
            self._require_pending(request)
            if request.staff_id != actor.staff_id and not actor.is_hr:
                raise AccessDeniedError("Only the requester or HR can cancel this leave request")

            before = _snapshot(request)
            request.status = LeaveStatus.CANCELLED.value
            request.updated_at = datetime.now(timezone.utc)
            self.db.flush()
            self.audit.record(
                "LEAVE_CANCELLED", actor=actor, staff_id=request.staff_id,
                entity_type="leave_request", entity_id=request.id,
                details={"reason": reason}, before_state=before, after_state=_snapshot(request),
            )

        self.log_info(f"Leave request {request_id} cancelled by {actor.staff_id}")
        dispatch_safely(self.notifier, LeaveEvent(
            request_id=request.id,
            staff_id=request.staff_id,
            leave_type=request.leave_type,
            new_status=request.status,
            days=request.days,
            comments=reason,
        ))
        return request
