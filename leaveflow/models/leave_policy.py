from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime
from sqlalchemy.sql import func
from leaveflow.database import Base
import enum


class AccrualFrequency(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"

    @property
    def months(self) -> int:
        return {"monthly": 1, "quarterly": 3, "annual": 12}[self.value]


class LeavePolicy(Base):
    __tablename__ = "leave_policies"

    id = Column(Integer, primary_key=True, index=True)
    # Not unique: inactive versions of a policy are kept for reference
    leave_type = Column(String, index=True, nullable=False)
    max_days = Column(Float, nullable=False)
    accrual_rate = Column(Float, default=0.0, nullable=False)  # days per period
    accrual_frequency = Column(String, default=AccrualFrequency.MONTHLY.value, nullable=False)
    carryover_allowed = Column(Boolean, default=False, nullable=False)
    max_carryover = Column(Float, default=0.0, nullable=False)
    expires_after_months = Column(Integer, nullable=True)
    requires_approval = Column(Boolean, default=True, nullable=False)
    approval_levels = Column(Integer, default=1, nullable=False)
    active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def frequency(self) -> AccrualFrequency:
        return AccrualFrequency(self.accrual_frequency)

    @property
    def effective_approval_levels(self) -> int:
        """Level count the router acts on; 0 and policies without approval collapse to one step."""
        if not self.requires_approval:
            return 1
        return max(1, self.approval_levels or 0)

    def __repr__(self):
        return f"<LeavePolicy {self.leave_type} levels={self.approval_levels} active={self.active}>"
