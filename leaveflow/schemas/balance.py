from pydantic import BaseModel, Field, field_validator
from datetime import date
from typing import Dict, Optional


class LeaveBalanceCreate(BaseModel):
    staff_id: str
    accrual_start_date: Optional[date] = None
    # Opening balances keyed by leave type name, e.g. {"Annual": 10}
    initial: Dict[str, float] = Field(default_factory=dict)

    @field_validator("initial")
    @classmethod
    def _non_negative(cls, value: Dict[str, float]):
        for leave_type, days in value.items():
            if days < 0:
                raise ValueError(f"Opening balance for {leave_type} cannot be negative")
        return value


class LeaveBalanceResponse(BaseModel):
    staff_id: str
    balances: Dict[str, float]
    carry_forward: Dict[str, float]
    expires_at: Dict[str, Optional[date]]
    accrual_start_date: Optional[date] = None
    last_accrual_date: Optional[date] = None
    accrual_period: Optional[str] = None
    version: int


class BalanceAdjustmentRequest(BaseModel):
    leave_type: str
    days: float
    reason: str = Field(min_length=3, max_length=500)

    @field_validator("days")
    @classmethod
    def _non_zero(cls, value: float):
        if value == 0:
            raise ValueError("Adjustment must be non-zero")
        return round(value, 2)
