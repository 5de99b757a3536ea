from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from typing import Dict, List, Optional


class AccrualRunRequest(BaseModel):
    as_of: Optional[date] = None
    staff_ids: Optional[List[str]] = None
    leave_types: Optional[List[str]] = None
    process_expiration: bool = False


class YearEndRequest(BaseModel):
    year: int = Field(ge=2000, le=2100)
    staff_ids: Optional[List[str]] = None
    leave_types: Optional[List[str]] = None


class ExpirationRequest(BaseModel):
    as_of: Optional[date] = None
    staff_ids: Optional[List[str]] = None


class AccrualResult(BaseModel):
    staff_id: str
    leave_type: str
    accrual_period: str
    days_accrued: float
    days_before: float
    days_after: float
    pro_rata_factor: Optional[float] = None
    carry_forward_days: Optional[float] = None
    expired_days: float = 0.0
    notes: Optional[str] = None


class AccrualError(BaseModel):
    staff_id: str
    leave_type: Optional[str] = None
    error: str


class AccrualBatchResult(BaseModel):
    success: bool
    processed: int
    results: List[AccrualResult] = []
    errors: List[AccrualError] = []


class AccrualHistoryResponse(BaseModel):
    id: int
    staff_id: str
    leave_type: str
    accrual_date: date
    accrual_period: str
    days_accrued: float
    days_before: float
    days_after: float
    pro_rata_factor: Optional[float] = None
    carry_forward_days: Optional[float] = None
    expired_days: float
    leave_request_id: Optional[int] = None
    notes: Optional[str] = None
    processed_by: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AccrualSummary(BaseModel):
    accrual: AccrualBatchResult
    expiration: Optional[AccrualBatchResult] = None
    totals: Dict[str, float] = {}
