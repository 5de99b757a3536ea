from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime
from typing import Optional
from leaveflow.models.leave_policy import AccrualFrequency


class LeavePolicyBase(BaseModel):
    max_days: float = Field(ge=0)
    accrual_rate: float = Field(default=0.0, ge=0)
    accrual_frequency: AccrualFrequency = AccrualFrequency.MONTHLY
    carryover_allowed: bool = False
    max_carryover: float = Field(default=0.0, ge=0)
    expires_after_months: Optional[int] = Field(default=None, ge=1)
    requires_approval: bool = True
    approval_levels: int = Field(default=1, ge=1)


class LeavePolicyCreate(LeavePolicyBase):
    leave_type: str

    @model_validator(mode="after")
    def _carryover_within_max(self):
        if self.max_carryover > self.max_days:
            raise ValueError("max_carryover cannot exceed max_days")
        return self


class LeavePolicyUpdate(BaseModel):
    max_days: Optional[float] = Field(default=None, ge=0)
    accrual_rate: Optional[float] = Field(default=None, ge=0)
    accrual_frequency: Optional[AccrualFrequency] = None
    carryover_allowed: Optional[bool] = None
    max_carryover: Optional[float] = Field(default=None, ge=0)
    expires_after_months: Optional[int] = Field(default=None, ge=1)
    requires_approval: Optional[bool] = None
    approval_levels: Optional[int] = Field(default=None, ge=1)


class LeavePolicyResponse(LeavePolicyBase):
    id: int
    leave_type: str
    active: bool
    # Stored rows may predate the >= 1 rule
    approval_levels: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
