"""
Accrual Engine.

Periodic balance increases per policy, with year-end carryover and expiry of
carried-forward days. Each state change writes one immutable
LeaveAccrualHistory row whose figures reconcile exactly.

Periods are calendar-aligned (month, quarter, year) and accrue when `as_of`
enters them. A staff member's first period is pro-rated from their
accrual start date.
"""
import threading
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from leaveflow.core.config import settings
from leaveflow.core.exceptions import AppException, ConcurrentModificationError
from leaveflow.models.leave_accrual_history import ACCRUAL_PERIODS, LeaveAccrualHistory, LedgerPeriod
from leaveflow.models.leave_balance import LeaveBalance, resolve_leave_type
from leaveflow.models.leave_policy import AccrualFrequency, LeavePolicy
from leaveflow.schemas.accrual import AccrualBatchResult, AccrualError, AccrualResult
from leaveflow.schemas.auth import SYSTEM_ACTOR, Actor
from leaveflow.services.audit import AuditService
from leaveflow.services.balance_ledger import LeaveBalanceLedger
from leaveflow.services.base import BaseService
from leaveflow.services.policy_store import LeavePolicyStore


class _PairLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


_pair_locks: Dict[Tuple[str, str], _PairLock] = {}
_pair_locks_guard = threading.Lock()


@contextmanager
def _pair_lock(staff_id: str, leave_type: str):
    """
    Serialise runs for one (staff, leave type) in-process.
    The registry entry is dropped once no run holds or waits on it.
    """
    key = (staff_id, leave_type)
    with _pair_locks_guard:
        entry = _pair_locks.get(key)
        if entry is None:
            entry = _pair_locks[key] = _PairLock()
        entry.users += 1
    try:
        with entry.lock:
            yield
    finally:
        with _pair_locks_guard:
            entry.users -= 1
            if entry.users == 0:
                del _pair_locks[key]


def _month_start(total_months: int) -> date:
    return date(total_months // 12, total_months % 12 + 1, 1)


def period_index(day: date, frequency: AccrualFrequency) -> int:
    return (day.year * 12 + day.month - 1) // frequency.months


def period_bounds(index: int, frequency: AccrualFrequency) -> Tuple[date, date]:
    """[start, next_start) of the period with the given index."""
    return (
        _month_start(index * frequency.months),
        _month_start((index + 1) * frequency.months),
    )


def elapsed_periods(
    anchor: Optional[date],
    start_date: Optional[date],
    as_of: date,
    frequency: AccrualFrequency,
) -> Tuple[float, Optional[float]]:
    """
    Periods to accrue at `as_of` and the pro-rata factor of a partial first period.

    anchor: date of the last periodic accrual for this balance, if any.
    start_date: when the staff member started accruing (join date).
    """
    current = period_index(as_of, frequency)
    if anchor is not None:
        return max(0, current - period_index(anchor, frequency)), None
    if start_date is None:
        return 1, None
    if start_date > as_of:
        return 0, None

    first = period_index(start_date, frequency)
    begin, end = period_bounds(first, frequency)
    factor = round((end - start_date).days / (end - begin).days, 4)
    return (current - first) + factor, (factor if factor < 1 else None)


def carryover_expiry(year: int, expires_after_months: Optional[int]) -> Optional[date]:
    """Days carried out of `year` expire this many months into the next year."""
    if not expires_after_months:
        return None
    return _month_start((year + 1) * 12 + expires_after_months)


class AccrualEngine(BaseService):
    def __init__(
        self,
        db: Session,
        policy_store: Optional[LeavePolicyStore] = None,
        ledger: Optional[LeaveBalanceLedger] = None,
        audit: Optional[AuditService] = None,
        retry_attempts: Optional[int] = None,
    ):
        super().__init__(db)
        self.audit = audit or AuditService(db)
        self.policy_store = policy_store or LeavePolicyStore(db, audit=self.audit)
        self.ledger = ledger or LeaveBalanceLedger(db, audit=self.audit)
        self.retry_attempts = retry_attempts or settings.leave.accrual_retry_attempts

    # --- History lookups ---

    def _last_accrual_date(self, staff_id: str, leave_type: str) -> Optional[date]:
        row = (
            self.db.query(LeaveAccrualHistory.accrual_date)
            .filter(
                LeaveAccrualHistory.staff_id == staff_id,
                LeaveAccrualHistory.leave_type == leave_type,
                LeaveAccrualHistory.accrual_period.in_(ACCRUAL_PERIODS),
            )
            .order_by(LeaveAccrualHistory.accrual_date.desc(), LeaveAccrualHistory.id.desc())
            .first()
        )
        return row[0] if row else None

    def _closing_row(self, staff_id: str, leave_type: str, year: int) -> Optional[LeaveAccrualHistory]:
        """Earliest history row recording the rollover out of `year`, if any."""
        return (
            self.db.query(LeaveAccrualHistory)
            .filter(
                LeaveAccrualHistory.staff_id == staff_id,
                LeaveAccrualHistory.leave_type == leave_type,
                LeaveAccrualHistory.accrual_date >= date(year + 1, 1, 1),
                (LeaveAccrualHistory.accrual_period == LedgerPeriod.YEAR_END.value)
                | (LeaveAccrualHistory.carry_forward_days.isnot(None)),
            )
            .order_by(LeaveAccrualHistory.accrual_date, LeaveAccrualHistory.id)
            .first()
        )

    def _year_closed(self, staff_id: str, leave_type: str, year: int) -> bool:
        return self._closing_row(staff_id, leave_type, year) is not None

    # --- Rules ---

    @staticmethod
    def _apply_rollover(balance: LeaveBalance, policy: LeavePolicy, current: float, year: int) -> Tuple[float, float]:
        """Close `year`: keep up to max_carryover, forfeit the rest. Returns (kept, forfeited)."""
        kept = round(min(current, policy.max_carryover), 2) if policy.carryover_allowed else 0.0
        forfeited = round(current - kept, 2)
        balance.set_carry_forward(policy.leave_type, kept)
        balance.set_expires_at(
            policy.leave_type, carryover_expiry(year, policy.expires_after_months) if kept > 0 else None
        )
        return kept, forfeited

    @staticmethod
    def _capped(policy: LeavePolicy, current: float, gross: float) -> float:
        return round(max(0.0, min(gross, policy.max_days - current)), 2)

    @staticmethod
    def _crossed_years(anchor: Optional[date], start_date: Optional[date], as_of: date) -> range:
        """Calendar years between the last accrual (or accrual start) and `as_of`, oldest first."""
        base = anchor or start_date
        if base is None or base > as_of:
            return range(0)
        return range(base.year, as_of.year)

    def _late_accrual(
        self, balance: LeaveBalance, policy: LeavePolicy, current: float, gross: float,
        closing: LeaveAccrualHistory, year: int,
    ) -> float:
        """
        Periods of a year that was closed before they were accrued. They count
        only as far as the rollover would have kept them.
        """
        if not policy.carryover_allowed:
            return 0.0
        headroom = max(0.0, policy.max_carryover - (closing.carry_forward_days or 0.0))
        earned = round(min(self._capped(policy, current, gross), headroom), 2)
        if earned > 0:
            leave_type = policy.leave_type
            balance.set_carry_forward(leave_type, round(balance.get_carry_forward(leave_type) + earned, 2))
            if balance.get_expires_at(leave_type) is None:
                balance.set_expires_at(leave_type, carryover_expiry(year, policy.expires_after_months))
        return earned

    @staticmethod
    def _apply_expiry(balance: LeaveBalance, leave_type: str, current: float, as_of: date) -> Optional[float]:
        """Drop carried-forward days past their expiry date. None when nothing was due."""
        expires_at = balance.get_expires_at(leave_type)
        if expires_at is None or expires_at > as_of:
            return None
        expired = round(min(balance.get_carry_forward(leave_type), current), 2)
        balance.set_carry_forward(leave_type, 0.0)
        balance.set_expires_at(leave_type, None)
        return expired

    # --- Single pair ---

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.1, max=2),
            retry=retry_if_exception_type(ConcurrentModificationError),
            reraise=True,
        )

    def run_accrual(
        self, staff_id: str, leave_type, as_of: Optional[date] = None, processed_by: str = "system"
    ) -> Optional[AccrualResult]:
        """
        Accrue one (staff, leave type) pair up to `as_of`.
        Returns None when the type has no active policy or nothing changed.
        """
        leave_type = resolve_leave_type(leave_type).value
        as_of = as_of or date.today()
        policy = self.policy_store.find_active_policy(leave_type)
        if policy is None:
            self.log_info(f"No active policy for {leave_type}; skipping accrual for {staff_id}")
            return None

        with _pair_lock(staff_id, leave_type):
            for attempt in self._retrying():
                with attempt:
                    return self._run_once(staff_id, leave_type, as_of, processed_by)

    def _run_once(self, staff_id: str, leave_type: str, as_of: date, processed_by: str) -> Optional[AccrualResult]:
        with self.unit_of_work("Leave balance", staff_id):
            policy = self.policy_store.get_active_policy(leave_type)
            balance = self.ledger.get_balance(staff_id, for_update=True)
            before = balance.get_days(leave_type)
            current = before
            expired_total = 0.0
            notes: List[str] = []

            expired = self._apply_expiry(balance, leave_type, current, as_of)
            if expired is not None:
                expired_total += expired
                current = round(current - expired, 2)
                if expired:
                    notes.append(f"{expired:g} carried-forward days expired")

            anchor = self._last_accrual_date(staff_id, leave_type)
            start_date = balance.accrual_start_date
            periods, pro_rata = elapsed_periods(anchor, start_date, as_of, policy.frequency)
            if (periods <= 0 or policy.accrual_rate <= 0) and expired is None:
                return None

            accrued = 0.0
            hit_max = False
            carry_forward_days = None
            if policy.accrual_rate > 0:
                # Periods of each year left behind accrue before that year is closed
                counted = 0.0
                for year in self._crossed_years(anchor, start_date, as_of):
                    through, _ = elapsed_periods(anchor, start_date, date(year, 12, 31), policy.frequency)
                    gross = round(policy.accrual_rate * (through - counted), 2)
                    counted = through
                    closing = self._closing_row(staff_id, leave_type, year)
                    if closing is None:
                        earned = self._capped(policy, current, gross)
                        hit_max = hit_max or earned < gross
                        kept, forfeited = self._apply_rollover(balance, policy, round(current + earned, 2), year)
                        carry_forward_days = kept
                        expired_total += forfeited
                        current = kept
                        notes.append(f"Year-end {year} carryover: {kept:g} kept, {forfeited:g} forfeited")
                    else:
                        earned = self._late_accrual(balance, policy, current, gross, closing, year)
                        current = round(current + earned, 2)
                        if earned < gross:
                            notes.append(f"Late {year} accrual limited to carryover of {policy.max_carryover:g} days")
                    accrued += earned

                gross = round(policy.accrual_rate * (periods - counted), 2)
                earned = self._capped(policy, current, gross)
                hit_max = hit_max or earned < gross
                current = round(current + earned, 2)
                accrued += earned

            accrued = round(accrued, 2)
            if hit_max:
                notes.append(f"Capped at policy maximum of {policy.max_days:g} days")
            if pro_rata is not None:
                notes.append(f"Pro-rata accrual ({round(pro_rata * 100)}%)")

            expired_total = round(expired_total, 2)
            days_after = round(before + accrued - expired_total, 2)
            balance.set_days(leave_type, days_after)

            period = policy.frequency.value if periods > 0 else LedgerPeriod.EXPIRATION.value
            if periods > 0:
                balance.last_accrual_date = as_of
                balance.accrual_period = policy.frequency.value

            entry = LeaveAccrualHistory(
                staff_id=staff_id,
                leave_type=leave_type,
                accrual_date=as_of,
                accrual_period=period,
                days_accrued=accrued,
                days_before=before,
                days_after=days_after,
                pro_rata_factor=pro_rata,
                carry_forward_days=carry_forward_days,
                expired_days=expired_total,
                notes="; ".join(notes) or None,
                processed_by=processed_by,
            )
            self.db.add(entry)
            self.db.flush()
            self.audit.record(
                "LEAVE_ACCRUED", staff_id=staff_id, entity_type="leave_balance", entity_id=balance.id,
                details={"leave_type": leave_type, "as_of": as_of, "days_accrued": accrued,
                         "expired_days": expired_total, "processed_by": processed_by},
                before_state={leave_type: before}, after_state={leave_type: days_after},
            )
            result = AccrualResult(
                staff_id=staff_id,
                leave_type=leave_type,
                accrual_period=period,
                days_accrued=accrued,
                days_before=before,
                days_after=days_after,
                pro_rata_factor=pro_rata,
                carry_forward_days=carry_forward_days,
                expired_days=expired_total,
                notes=entry.notes,
            )
        self.log_info(
            f"Accrued {result.days_accrued} {leave_type} days for {staff_id} "
            f"({result.days_before} -> {result.days_after})"
        )
        return result

    def process_year_end(
        self, staff_id: str, leave_type, year: int, processed_by: str = "system"
    ) -> Optional[AccrualResult]:
        """
        Close `year` for one pair. Idempotent: a year already closed (here or
        by an accrual run crossing into the next year) is left alone.
        Policies that do not accrue are granted entitlements and are not rolled over.
        """
        leave_type = resolve_leave_type(leave_type).value
        policy = self.policy_store.find_active_policy(leave_type)
        if policy is None or policy.accrual_rate <= 0:
            return None

        with _pair_lock(staff_id, leave_type):
            for attempt in self._retrying():
                with attempt:
                    return self._year_end_once(staff_id, policy, year, processed_by)

    def _year_end_once(self, staff_id: str, policy: LeavePolicy, year: int, processed_by: str) -> Optional[AccrualResult]:
        leave_type = policy.leave_type
        with self.unit_of_work("Leave balance", staff_id):
            if self._year_closed(staff_id, leave_type, year):
                return None
            balance = self.ledger.get_balance(staff_id, for_update=True)
            before = balance.get_days(leave_type)
            kept, forfeited = self._apply_rollover(balance, policy, before, year)
            balance.set_days(leave_type, kept)

            entry = LeaveAccrualHistory(
                staff_id=staff_id,
                leave_type=leave_type,
                accrual_date=date(year + 1, 1, 1),
                accrual_period=LedgerPeriod.YEAR_END.value,
                days_accrued=0.0,
                days_before=before,
                days_after=kept,
                carry_forward_days=kept,
                expired_days=forfeited,
                notes=f"Year-end {year}: {kept:g} carried forward, {forfeited:g} forfeited",
                processed_by=processed_by,
            )
            self.db.add(entry)
            self.db.flush()
            self.audit.record(
                "LEAVE_YEAR_END_PROCESSED", staff_id=staff_id, entity_type="leave_balance",
                entity_id=balance.id,
                details={"leave_type": leave_type, "year": year, "carried_forward": kept, "forfeited": forfeited},
            )
            result = AccrualResult(
                staff_id=staff_id,
                leave_type=leave_type,
                accrual_period=LedgerPeriod.YEAR_END.value,
                days_accrued=0.0,
                days_before=before,
                days_after=kept,
                carry_forward_days=kept,
                expired_days=forfeited,
                notes=entry.notes,
            )
        return result

    def expire_carry_forward(
        self, staff_id: str, leave_type, as_of: Optional[date] = None, processed_by: str = "system"
    ) -> Optional[AccrualResult]:
        leave_type = resolve_leave_type(leave_type).value
        as_of = as_of or date.today()
        with _pair_lock(staff_id, leave_type):
            for attempt in self._retrying():
                with attempt:
                    return self._expire_once(staff_id, leave_type, as_of, processed_by)

    def _expire_once(self, staff_id: str, leave_type: str, as_of: date, processed_by: str) -> Optional[AccrualResult]:
        with self.unit_of_work("Leave balance", staff_id):
            balance = self.ledger.get_balance(staff_id, for_update=True)
            before = balance.get_days(leave_type)
            expired = self._apply_expiry(balance, leave_type, before, as_of)
            if expired is None:
                return None
            after = round(before - expired, 2)
            balance.set_days(leave_type, after)
            self.db.add(LeaveAccrualHistory(
                staff_id=staff_id,
                leave_type=leave_type,
                accrual_date=as_of,
                accrual_period=LedgerPeriod.EXPIRATION.value,
                days_accrued=0.0,
                days_before=before,
                days_after=after,
                expired_days=expired,
                notes=f"Expired {expired:g} carried-forward days",
                processed_by=processed_by,
            ))
            self.db.flush()
            self.audit.record(
                "LEAVE_CARRY_FORWARD_EXPIRED", staff_id=staff_id, entity_type="leave_balance",
                entity_id=balance.id, details={"leave_type": leave_type, "expired_days": expired},
            )
        return AccrualResult(
            staff_id=staff_id,
            leave_type=leave_type,
            accrual_period=LedgerPeriod.EXPIRATION.value,
            days_accrued=0.0,
            days_before=before,
            days_after=after,
            expired_days=expired,
        )

    # --- Batches ---

    def _pairs(self, staff_ids: Optional[Iterable[str]], leave_types: Optional[Iterable[str]], accruing_only=True):
        query = self.db.query(LeaveBalance.staff_id)
        if staff_ids:
            query = query.filter(LeaveBalance.staff_id.in_(list(staff_ids)))
        staff = [row[0] for row in query.order_by(LeaveBalance.staff_id).all()]

        policies = self.policy_store.list_policies(active_only=True)
        if leave_types:
            wanted = {resolve_leave_type(t).value for t in leave_types}
            policies = [p for p in policies if p.leave_type in wanted]
        types = sorted({p.leave_type for p in policies if p.accrual_rate > 0 or not accruing_only})
        return [(s, t) for s in staff for t in types]

    def _batch(self, action: str, pairs, run, actor: Actor) -> AccrualBatchResult:
        results: List[AccrualResult] = []
        errors: List[AccrualError] = []
        for staff_id, leave_type in pairs:
            try:
                result = run(staff_id, leave_type)
            except (AppException, SQLAlchemyError) as e:
                message = getattr(e, "message", None) or str(e)
                self.log_warning(f"{action} failed for {staff_id}/{leave_type}: {message}")
                errors.append(AccrualError(staff_id=staff_id, leave_type=leave_type, error=message))
                continue
            if result is not None:
                results.append(result)

        self.audit.record(
            action, actor=actor, entity_type="leave_balance",
            details={"processed": len(results), "errors": len(errors), "pairs": len(pairs)},
        )
        # Audit entry sits in its own savepoint; persist it
        self.db.commit()
        self.log_info(f"{action}: {len(results)} changed, {len(errors)} failed")
        return AccrualBatchResult(success=not errors, processed=len(results), results=results, errors=errors)

    def run_batch(
        self,
        as_of: Optional[date] = None,
        staff_ids: Optional[Iterable[str]] = None,
        leave_types: Optional[Iterable[str]] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> AccrualBatchResult:
        """Accrue every balance for every active accruing policy; one failure never stops the batch."""
        as_of = as_of or date.today()
        pairs = self._pairs(staff_ids, leave_types)
        return self._batch(
            "LEAVE_ACCRUAL_PROCESSED", pairs,
            lambda s, t: self.run_accrual(s, t, as_of, processed_by=actor.staff_id), actor,
        )

    def run_year_end(
        self,
        year: int,
        staff_ids: Optional[Iterable[str]] = None,
        leave_types: Optional[Iterable[str]] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> AccrualBatchResult:
        pairs = self._pairs(staff_ids, leave_types)
        return self._batch(
            "LEAVE_YEAR_END_PROCESSED", pairs,
            lambda s, t: self.process_year_end(s, t, year, processed_by=actor.staff_id), actor,
        )

    def process_expiration(
        self,
        as_of: Optional[date] = None,
        staff_ids: Optional[Iterable[str]] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> AccrualBatchResult:
        """Expiry sweep over every balance and leave type with carried-forward days due."""
        as_of = as_of or date.today()
        pairs = self._pairs(staff_ids, None, accruing_only=False)
        return self._batch(
            "LEAVE_EXPIRATION_PROCESSED", pairs,
            lambda s, t: self.expire_carry_forward(s, t, as_of, processed_by=actor.staff_id), actor,
        )
