from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import date, datetime
from typing import List, Optional
import enum


class DecisionOutcome(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class LeaveRequestCreate(BaseModel):
    # Only HR may file on behalf of someone else; defaults to the caller
    staff_id: Optional[str] = None
    staff_name: Optional[str] = None
    leave_type: str
    start_date: date
    end_date: date
    reason: Optional[str] = Field(default=None, max_length=2000)


class LeaveDecisionRequest(BaseModel):
    level: Optional[int] = Field(default=None, ge=1)
    outcome: DecisionOutcome
    comments: Optional[str] = Field(default=None, max_length=2000)


class LeaveCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class ApprovalLevelResponse(BaseModel):
    level: int
    approver_role: str
    status: str
    approver_name: Optional[str] = None
    approval_date: Optional[datetime] = None
    comments: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class LeaveRequestResponse(BaseModel):
    id: int
    staff_id: str
    staff_name: Optional[str] = None
    leave_type: str
    start_date: date
    end_date: date
    days: int
    reason: Optional[str] = None
    status: str
    approval_levels: Optional[List[ApprovalLevelResponse]] = None
    approved_by: Optional[str] = None
    approval_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="after")
    def _absent_when_single_level(self):
        # An empty list means no workflow; expose it as absent
        if not self.approval_levels:
            self.approval_levels = None
        return self


class LeaveEligibilityResponse(BaseModel):
    eligible: bool
    reason: str
    remaining_balance: Optional[float] = None


class ApprovalHistoryEntry(BaseModel):
    action: str
    performed_by: Optional[str] = None
    performed_by_role: Optional[str] = None
    performed_at: Optional[datetime] = None
    level: Optional[int] = None
    comments: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
