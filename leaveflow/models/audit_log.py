from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from leaveflow.database import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String, index=True, nullable=False)  # e.g. LEAVE_APPROVED, LEAVE_ACCRUAL_PROCESSED
    user = Column(String, nullable=True)
    user_role = Column(String, nullable=True)
    staff_id = Column(String, index=True, nullable=True)
    entity_type = Column(String, nullable=True)
    entity_id = Column(Integer, nullable=True)
    level = Column(String, default="info")  # info, warning
    details = Column(JSON, nullable=True)
    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)
