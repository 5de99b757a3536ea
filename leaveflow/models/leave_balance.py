"""
Per-staff leave balance row.

One numeric column per leave type, plus carry-forward and expiry tracking
for each. Leave type names (as used on requests and policies) map to
column prefixes through LEAVE_TYPE_FIELDS.
"""
from sqlalchemy import Column, Integer, String, Float, Date, DateTime, CheckConstraint
from sqlalchemy.sql import func
from leaveflow.database import Base
from leaveflow.core.exceptions import InvalidLeaveTypeError
import enum


class LeaveType(str, enum.Enum):
    ANNUAL = "Annual"
    SICK = "Sick"
    UNPAID = "Unpaid"
    SPECIAL_SERVICE = "Special Service"
    TRAINING = "Training"
    STUDY = "Study"
    MATERNITY = "Maternity"
    PATERNITY = "Paternity"
    COMPASSIONATE = "Compassionate"


LEAVE_TYPE_FIELDS = {
    LeaveType.ANNUAL: "annual",
    LeaveType.SICK: "sick",
    LeaveType.UNPAID: "unpaid",
    LeaveType.SPECIAL_SERVICE: "special_service",
    LeaveType.TRAINING: "training",
    LeaveType.STUDY: "study",
    LeaveType.MATERNITY: "maternity",
    LeaveType.PATERNITY: "paternity",
    LeaveType.COMPASSIONATE: "compassionate",
}


def resolve_leave_type(value) -> LeaveType:
    """Accepts the display name ("Special Service"), case-insensitively, or the field name."""
    if isinstance(value, LeaveType):
        return value
    text = str(value or "").strip()
    for leave_type, field in LEAVE_TYPE_FIELDS.items():
        if text.lower() in (leave_type.value.lower(), field):
            return leave_type
    raise InvalidLeaveTypeError(text)


def _non_negative(*fields):
    return tuple(CheckConstraint(f"{f} >= 0", name=f"ck_leave_balances_{f}_non_negative") for f in fields)


class LeaveBalance(Base):
    __tablename__ = "leave_balances"
    __table_args__ = _non_negative(
        *LEAVE_TYPE_FIELDS.values(),
        *(f"{f}_carry_forward" for f in LEAVE_TYPE_FIELDS.values()),
    )

    id = Column(Integer, primary_key=True, index=True)
    staff_id = Column(String, unique=True, index=True, nullable=False)

    annual = Column(Float, default=0.0, nullable=False)
    sick = Column(Float, default=0.0, nullable=False)
    unpaid = Column(Float, default=0.0, nullable=False)
    special_service = Column(Float, default=0.0, nullable=False)
    training = Column(Float, default=0.0, nullable=False)
    study = Column(Float, default=0.0, nullable=False)
    maternity = Column(Float, default=0.0, nullable=False)
    paternity = Column(Float, default=0.0, nullable=False)
    compassionate = Column(Float, default=0.0, nullable=False)

    # Portion of each balance that was rolled over from a previous year
    annual_carry_forward = Column(Float, default=0.0, nullable=False)
    sick_carry_forward = Column(Float, default=0.0, nullable=False)
    unpaid_carry_forward = Column(Float, default=0.0, nullable=False)
    special_service_carry_forward = Column(Float, default=0.0, nullable=False)
    training_carry_forward = Column(Float, default=0.0, nullable=False)
    study_carry_forward = Column(Float, default=0.0, nullable=False)
    maternity_carry_forward = Column(Float, default=0.0, nullable=False)
    paternity_carry_forward = Column(Float, default=0.0, nullable=False)
    compassionate_carry_forward = Column(Float, default=0.0, nullable=False)

    annual_expires_at = Column(Date, nullable=True)
    sick_expires_at = Column(Date, nullable=True)
    unpaid_expires_at = Column(Date, nullable=True)
    special_service_expires_at = Column(Date, nullable=True)
    training_expires_at = Column(Date, nullable=True)
    study_expires_at = Column(Date, nullable=True)
    maternity_expires_at = Column(Date, nullable=True)
    paternity_expires_at = Column(Date, nullable=True)
    compassionate_expires_at = Column(Date, nullable=True)

    accrual_start_date = Column(Date, nullable=True)  # usually the staff member's join date
    last_accrual_date = Column(Date, nullable=True)
    accrual_period = Column(String, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}

    def get_days(self, leave_type) -> float:
        return getattr(self, LEAVE_TYPE_FIELDS[resolve_leave_type(leave_type)]) or 0.0

    def set_days(self, leave_type, value: float) -> None:
        setattr(self, LEAVE_TYPE_FIELDS[resolve_leave_type(leave_type)], value)

    def get_carry_forward(self, leave_type) -> float:
        return getattr(self, f"{LEAVE_TYPE_FIELDS[resolve_leave_type(leave_type)]}_carry_forward") or 0.0

    def set_carry_forward(self, leave_type, value: float) -> None:
        setattr(self, f"{LEAVE_TYPE_FIELDS[resolve_leave_type(leave_type)]}_carry_forward", value)

    def get_expires_at(self, leave_type):
        return getattr(self, f"{LEAVE_TYPE_FIELDS[resolve_leave_type(leave_type)]}_expires_at")

    def set_expires_at(self, leave_type, value) -> None:
        setattr(self, f"{LEAVE_TYPE_FIELDS[resolve_leave_type(leave_type)]}_expires_at", value)

    def as_dict(self) -> dict:
        return {leave_type.value: self.get_days(leave_type) for leave_type in LeaveType}

    def __repr__(self):
        return f"<LeaveBalance {self.staff_id} v{self.version}>"
