"""
Leave Policy Store.

Read path for the workflow (one authoritative active policy per leave type)
and the administrative write path used by HR.
"""
from typing import List, Optional
from sqlalchemy.orm import Session

from leaveflow.core.exceptions import (
    InvalidPolicyError, NotFoundError, PolicyConflictError, PolicyNotFoundError, StatutoryViolationError,
)
from leaveflow.models.leave_balance import resolve_leave_type
from leaveflow.models.leave_policy import LeavePolicy
from leaveflow.schemas.auth import Actor
from leaveflow.schemas.policy import LeavePolicyCreate, LeavePolicyUpdate
from leaveflow.services.audit import AuditService
from leaveflow.services.base import BaseService
from leaveflow.services.statutory import validate_policy_against_statutory_minimums


def _snapshot(policy: LeavePolicy) -> dict:
    return {
        "leave_type": policy.leave_type,
        "max_days": policy.max_days,
        "accrual_rate": policy.accrual_rate,
        "accrual_frequency": policy.accrual_frequency,
        "carryover_allowed": policy.carryover_allowed,
        "max_carryover": policy.max_carryover,
        "expires_after_months": policy.expires_after_months,
        "requires_approval": policy.requires_approval,
        "approval_levels": policy.approval_levels,
        "active": policy.active,
    }


class LeavePolicyStore(BaseService):
    def __init__(self, db: Session, audit: Optional[AuditService] = None):
        super().__init__(db)
        self.audit = audit or AuditService(db)

    # --- Read path ---

    def find_active_policy(self, leave_type) -> Optional[LeavePolicy]:
        """
        The authoritative active policy, or None.
        Legacy data may hold several active rows for one type; the most
        recently updated one wins.
        """
        leave_type = resolve_leave_type(leave_type)
        policies = (
            self.db.query(LeavePolicy)
            .filter(LeavePolicy.leave_type == leave_type.value, LeavePolicy.active == True)  # noqa: E712
            .order_by(LeavePolicy.updated_at.desc(), LeavePolicy.id.desc())
            .all()
        )
        if len(policies) > 1:
            self.log_warning(
                f"{len(policies)} active policies for {leave_type.value}; using policy {policies[0].id}"
            )
        return policies[0] if policies else None

    def get_active_policy(self, leave_type) -> LeavePolicy:
        policy = self.find_active_policy(leave_type)
        if policy is None:
            raise PolicyNotFoundError(resolve_leave_type(leave_type).value)
        return policy

    def get_policy(self, policy_id: int) -> LeavePolicy:
        policy = self.db.get(LeavePolicy, policy_id)
        if policy is None:
            raise NotFoundError("Leave policy", policy_id)
        return policy

    def list_policies(self, active_only: bool = False) -> List[LeavePolicy]:
        query = self.db.query(LeavePolicy)
        if active_only:
            query = query.filter(LeavePolicy.active == True)  # noqa: E712
        return query.order_by(LeavePolicy.leave_type, LeavePolicy.id).all()

    # --- Administrative write path ---

    def _check_statutory(self, leave_type, max_days: float):
        validation = validate_policy_against_statutory_minimums(leave_type, max_days)
        if not validation.valid:
            raise StatutoryViolationError(validation.errors, validation.statutory_minimum)
        for warning in validation.warnings:
            self.log_warning(warning)

    def create_policy(self, data: LeavePolicyCreate, actor: Actor) -> LeavePolicy:
        leave_type = resolve_leave_type(data.leave_type)
        self._check_statutory(leave_type, data.max_days)
        if self.find_active_policy(leave_type) is not None:
            raise PolicyConflictError(leave_type.value)

        policy = LeavePolicy(
            leave_type=leave_type.value,
            max_days=data.max_days,
            accrual_rate=data.accrual_rate,
            accrual_frequency=data.accrual_frequency.value,
            carryover_allowed=data.carryover_allowed,
            max_carryover=data.max_carryover,
            expires_after_months=data.expires_after_months,
            requires_approval=data.requires_approval,
            approval_levels=data.approval_levels,
            active=True,
        )
        with self.unit_of_work("Leave policy"):
            self.db.add(policy)
            self.db.flush()
            self.audit.record(
                "LEAVE_POLICY_CREATED", actor=actor, entity_type="leave_policy",
                entity_id=policy.id, after_state=_snapshot(policy),
            )
        self.log_info(f"Created leave policy {policy.id} for {policy.leave_type}")
        return policy

    def update_policy(self, policy_id: int, changes: LeavePolicyUpdate, actor: Actor) -> LeavePolicy:
        policy = self.get_policy(policy_id)
        before = _snapshot(policy)
        updates = changes.model_dump(exclude_unset=True, exclude_none=True)
        if "accrual_frequency" in updates:
            updates["accrual_frequency"] = updates["accrual_frequency"].value

        max_days = updates.get("max_days", policy.max_days)
        max_carryover = updates.get("max_carryover", policy.max_carryover)
        if max_carryover > max_days:
            raise InvalidPolicyError(
                "max_carryover cannot exceed max_days",
                details={"max_carryover": max_carryover, "max_days": max_days},
            )
        self._check_statutory(policy.leave_type, max_days)

        with self.unit_of_work("Leave policy", policy_id):
            for field, value in updates.items():
                setattr(policy, field, value)
            self.db.flush()
            self.audit.record(
                "LEAVE_POLICY_UPDATED", actor=actor, entity_type="leave_policy",
                entity_id=policy.id, before_state=before, after_state=_snapshot(policy),
            )
        return policy

    def deactivate_policy(self, policy_id: int, actor: Actor) -> LeavePolicy:
        """Soft-disable; policies are never deleted while balances or requests reference them."""
        policy = self.get_policy(policy_id)
        if not policy.active:
            return policy
        with self.unit_of_work("Leave policy", policy_id):
            policy.active = False
            self.db.flush()
            self.audit.record(
                "LEAVE_POLICY_DEACTIVATED", actor=actor, entity_type="leave_policy",
                entity_id=policy.id, details={"leave_type": policy.leave_type},
            )
        self.log_info(f"Deactivated leave policy {policy.id} ({policy.leave_type})")
        return policy
