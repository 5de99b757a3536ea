"""
Leave Balance Ledger.

Per-staff running balances. Every mutation made here also appends a row to
leave_accrual_history, so a balance can be reconstructed from its history.
debit/credit only stage changes; the caller owns the transaction.
"""
from datetime import date
from typing import Dict, Iterable, List, Optional
from sqlalchemy.orm import Session

from leaveflow.core.config import settings
from leaveflow.core.exceptions import (
    InsufficientBalanceError, InvalidTransitionError, NotFoundError,
)
from leaveflow.models.leave_accrual_history import LeaveAccrualHistory, LedgerPeriod
from leaveflow.models.leave_balance import LeaveBalance, LeaveType, resolve_leave_type
from leaveflow.schemas.auth import Actor
from leaveflow.schemas.leave import LeaveEligibilityResponse
from leaveflow.services.audit import AuditService
from leaveflow.services.base import BaseService


class LeaveBalanceLedger(BaseService):
    def __init__(
        self,
        db: Session,
        audit: Optional[AuditService] = None,
        exempt_types: Optional[Iterable[str]] = None,
    ):
        super().__init__(db)
        self.audit = audit or AuditService(db)
        if exempt_types is None:
            exempt_types = settings.leave.balance_exempt_types
        self.exempt_types = frozenset(resolve_leave_type(t) for t in exempt_types)

    def is_exempt(self, leave_type) -> bool:
        return resolve_leave_type(leave_type) in self.exempt_types

    # --- Reads ---

    def find_balance(self, staff_id: str, for_update: bool = False) -> Optional[LeaveBalance]:
        query = self.db.query(LeaveBalance).filter(LeaveBalance.staff_id == staff_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_balance(self, staff_id: str, for_update: bool = False) -> LeaveBalance:
        balance = self.find_balance(staff_id, for_update=for_update)
        if balance is None:
            raise NotFoundError("Leave balance", staff_id)
        return balance

    def check_eligibility(self, staff_id: str, leave_type, days: float) -> LeaveEligibilityResponse:
        """Read-only: does the current balance cover `days`?"""
        leave_type = resolve_leave_type(leave_type)
        if self.is_exempt(leave_type):
            return LeaveEligibilityResponse(
                eligible=True, reason=f"{leave_type.value} leave is not balance-tracked"
            )
        balance = self.find_balance(staff_id)
        if balance is None:
            return LeaveEligibilityResponse(eligible=False, reason="No leave balance record found")

        current = balance.get_days(leave_type)
        if current < days:
            return LeaveEligibilityResponse(
                eligible=False,
                reason=f"Insufficient balance. Available: {current} days, Requested: {days} days",
                remaining_balance=current,
            )
        return LeaveEligibilityResponse(
            eligible=True, reason="Eligible", remaining_balance=round(current - days, 2)
        )

    def history(self, staff_id: Optional[str] = None, leave_type=None, limit: int = 100) -> List[LeaveAccrualHistory]:
        query = self.db.query(LeaveAccrualHistory)
        if staff_id:
            query = query.filter(LeaveAccrualHistory.staff_id == staff_id)
        if leave_type:
            query = query.filter(LeaveAccrualHistory.leave_type == resolve_leave_type(leave_type).value)
        return (
            query.order_by(LeaveAccrualHistory.accrual_date.desc(), LeaveAccrualHistory.id.desc())
            .limit(limit)
            .all()
        )

    # --- Mutations (no commit) ---

    def _append(
        self,
        balance: LeaveBalance,
        leave_type: LeaveType,
        period: LedgerPeriod,
        delta: float,
        before: float,
        processed_by: str,
        leave_request_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> LeaveAccrualHistory:
        entry = LeaveAccrualHistory(
            staff_id=balance.staff_id,
            leave_type=leave_type.value,
            accrual_date=date.today(),
            accrual_period=period.value,
            days_accrued=delta,
            days_before=before,
            days_after=round(before + delta, 2),
            expired_days=0.0,
            leave_request_id=leave_request_id,
            notes=notes,
            processed_by=processed_by,
        )
        self.db.add(entry)
        return entry

    def debit(
        self,
        staff_id: str,
        leave_type,
        days: float,
        leave_request_id: Optional[int] = None,
        processed_by: str = "system",
    ) -> Optional[LeaveBalance]:
        """
        Decrease the balance for `leave_type` by `days`.
        Carried-forward days are consumed first. Exempt types are a no-op.
        Raises InsufficientBalanceError without mutating anything.
        """
        leave_type = resolve_leave_type(leave_type)
        if self.is_exempt(leave_type):
            return None

        balance = self.get_balance(staff_id, for_update=True)
        current = balance.get_days(leave_type)
        if current < days:
            raise InsufficientBalanceError(leave_type.value, current, days)

        carry_forward = balance.get_carry_forward(leave_type)
        balance.set_days(leave_type, round(current - days, 2))
        balance.set_carry_forward(leave_type, round(max(0.0, carry_forward - days), 2))
        self._append(
            balance, leave_type, LedgerPeriod.DEDUCTION, -days, current, processed_by,
            leave_request_id=leave_request_id,
            notes=f"Leave request {leave_request_id} approved" if leave_request_id else None,
        )
        return balance

    def credit(
        self,
        staff_id: str,
        leave_type,
        days: float,
        leave_request_id: Optional[int] = None,
        processed_by: str = "system",
    ) -> Optional[LeaveBalance]:
        """Increase the balance; used to reverse a debit. Not capped at the policy maximum."""
        leave_type = resolve_leave_type(leave_type)
        if self.is_exempt(leave_type):
            return None

        balance = self.get_balance(staff_id, for_update=True)
        current = balance.get_days(leave_type)
        balance.set_days(leave_type, round(current + days, 2))
        self._append(
            balance, leave_type, LedgerPeriod.RESTORATION, days, current, processed_by,
            leave_request_id=leave_request_id,
            notes=f"Restored from leave request {leave_request_id}" if leave_request_id else None,
        )
        return balance

    # --- Administrative operations (commit) ---

    def open_balance(
        self,
        staff_id: str,
        actor: Actor,
        initial: Optional[Dict[str, float]] = None,
        accrual_start_date: Optional[date] = None,
    ) -> LeaveBalance:
        """Create the balance row for a newly onboarded staff member."""
        if self.find_balance(staff_id) is not None:
            raise InvalidTransitionError(
                f"Leave balance already exists for staff {staff_id}",
                details={"staff_id": staff_id},
            )

        balance = LeaveBalance(staff_id=staff_id, accrual_start_date=accrual_start_date)
        for leave_type in LeaveType:
            balance.set_days(leave_type, 0.0)
            balance.set_carry_forward(leave_type, 0.0)
        for name, days in (initial or {}).items():
            balance.set_days(name, round(days, 2))

        with self.unit_of_work("Leave balance", staff_id):
            self.db.add(balance)
            self.db.flush()
            self.audit.record(
                "LEAVE_BALANCE_OPENED", actor=actor, staff_id=staff_id,
                entity_type="leave_balance", entity_id=balance.id, after_state=balance.as_dict(),
            )
        self.log_info(f"Opened leave balance for {staff_id}")
        return balance

    def adjust(self, staff_id: str, leave_type, days: float, reason: str, actor: Actor) -> LeaveBalance:
        """Manual HR correction; positive credits, negative debits."""
        leave_type = resolve_leave_type(leave_type)
        with self.unit_of_work("Leave balance", staff_id):
            balance = self.get_balance(staff_id, for_update=True)
            current = balance.get_days(leave_type)
            if current + days < 0:
                raise InsufficientBalanceError(leave_type.value, current, abs(days))

            new_value = round(current + days, 2)
            balance.set_days(leave_type, new_value)
            # Carried-forward portion can never exceed what is left
            balance.set_carry_forward(leave_type, min(balance.get_carry_forward(leave_type), new_value))
            self._append(
                balance, leave_type, LedgerPeriod.ADJUSTMENT, days, current,
                processed_by=actor.staff_id, notes=reason,
            )
            self.db.flush()
            self.audit.record(
                "LEAVE_BALANCE_ADJUSTED", actor=actor, staff_id=staff_id,
                entity_type="leave_balance", entity_id=balance.id,
                details={"leave_type": leave_type.value, "days": days, "reason": reason},
                before_state={leave_type.value: current},
                after_state={leave_type.value: new_value},
            )
        self.log_info(f"Adjusted {leave_type.value} balance for {staff_id} by {days}")
        return balance
