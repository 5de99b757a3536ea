from sqlalchemy import Column, Integer, String, Float, Date, DateTime, ForeignKey, Text, event
from sqlalchemy.sql import func
from leaveflow.database import Base
import enum


class LedgerPeriod(str, enum.Enum):
    """Value of accrual_period; the frequency names double as periodic accrual kinds."""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"
    YEAR_END = "year-end"
    EXPIRATION = "expiration"
    DEDUCTION = "deduction"
    RESTORATION = "restoration"
    ADJUSTMENT = "adjustment"


ACCRUAL_PERIODS = (LedgerPeriod.MONTHLY.value, LedgerPeriod.QUARTERLY.value, LedgerPeriod.ANNUAL.value)


class LeaveAccrualHistory(Base):
    """
    Append-only record of one balance change.
    Invariant: days_after == days_before + days_accrued - expired_days.
    """
    __tablename__ = "leave_accrual_history"

    id = Column(Integer, primary_key=True, index=True)
    staff_id = Column(String, index=True, nullable=False)
    leave_type = Column(String, index=True, nullable=False)
    accrual_date = Column(Date, nullable=False, index=True)
    accrual_period = Column(String, nullable=False)
    days_accrued = Column(Float, nullable=False, default=0.0)
    days_before = Column(Float, nullable=False)
    days_after = Column(Float, nullable=False)
    pro_rata_factor = Column(Float, nullable=True)
    carry_forward_days = Column(Float, nullable=True)
    expired_days = Column(Float, nullable=False, default=0.0)
    leave_request_id = Column(Integer, ForeignKey("leave_requests.id"), nullable=True)
    notes = Column(Text, nullable=True)
    processed_by = Column(String, nullable=False, default="system")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def reconciles(self) -> bool:
        expected = round(self.days_before + self.days_accrued - (self.expired_days or 0.0), 2)
        return expected == round(self.days_after, 2)


@event.listens_for(LeaveAccrualHistory, "before_update")
def _reject_history_update(mapper, connection, target):
    raise ValueError("leave_accrual_history rows are immutable once written")
