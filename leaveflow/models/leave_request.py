from sqlalchemy import Column, Integer, String, Date, ForeignKey, DateTime, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from leaveflow.database import Base
import enum


class LeaveStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id = Column(Integer, primary_key=True, index=True)
    staff_id = Column(String, index=True, nullable=False)
    staff_name = Column(String, nullable=True)  # snapshot at submission
    leave_type = Column(String, index=True, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    days = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String, default=LeaveStatus.PENDING.value, nullable=False, index=True)
    approved_by = Column(String, nullable=True)
    approval_date = Column(DateTime(timezone=True), nullable=True)
    submitted_by = Column(String, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    approval_levels = relationship(
        "ApprovalLevel",
        back_populates="request",
        order_by="ApprovalLevel.level",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def has_workflow(self) -> bool:
        return bool(self.approval_levels)

    @property
    def current_level(self):
        """Lowest pending level whose predecessors are all approved, or None."""
        if self.status != LeaveStatus.PENDING.value:
            return None
        for approval in self.approval_levels:
            if approval.status == ApprovalStatus.PENDING.value:
                return approval
            if approval.status != ApprovalStatus.APPROVED.value:
                return None
        return None

    def __repr__(self):
        return f"<LeaveRequest {self.id} {self.staff_id} {self.leave_type} {self.status}>"


class ApprovalLevel(Base):
    __tablename__ = "leave_approval_levels"
    __table_args__ = (UniqueConstraint("leave_request_id", "level", name="uq_approval_level_per_request"),)

    id = Column(Integer, primary_key=True, index=True)
    leave_request_id = Column(Integer, ForeignKey("leave_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    level = Column(Integer, nullable=False)
    approver_role = Column(String, nullable=False)
    status = Column(String, default=ApprovalStatus.PENDING.value, nullable=False)
    approver_id = Column(String, nullable=True)
    approver_name = Column(String, nullable=True)
    approval_date = Column(DateTime(timezone=True), nullable=True)
    comments = Column(Text, nullable=True)

    request = relationship("LeaveRequest", back_populates="approval_levels")
