from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from leaveflow.core.schemas import ApiResponse
from leaveflow.dependencies import get_accrual_engine, get_ledger
from leaveflow.routers.auth_deps import require_hr
from leaveflow.schemas.accrual import (
    AccrualBatchResult, AccrualHistoryResponse, AccrualRunRequest, AccrualSummary,
    ExpirationRequest, YearEndRequest,
)
from leaveflow.schemas.auth import Actor
from leaveflow.services.accrual import AccrualEngine
from leaveflow.services.balance_ledger import LeaveBalanceLedger

router = APIRouter(prefix="/accrual", tags=["accrual"])


def _totals(result: AccrualBatchResult) -> dict:
    return {
        "days_accrued": round(sum(r.days_accrued for r in result.results), 2),
        "expired_days": round(sum(r.expired_days for r in result.results), 2),
    }


@router.post("/process", response_model=ApiResponse[AccrualSummary])
def process_accrual(
    payload: AccrualRunRequest,
    actor: Actor = Depends(require_hr()),
    engine: AccrualEngine = Depends(get_accrual_engine),
):
    """Run periodic accrual (and optionally the expiry sweep) for every balance."""
    as_of = payload.as_of or date.today()
    expiration = None
    if payload.process_expiration:
        expiration = engine.process_expiration(as_of=as_of, staff_ids=payload.staff_ids, actor=actor)
    accrual = engine.run_batch(
        as_of=as_of, staff_ids=payload.staff_ids, leave_types=payload.leave_types, actor=actor
    )
    totals = _totals(accrual)
    if expiration is not None:
        totals["expired_days"] = round(totals["expired_days"] + _totals(expiration)["expired_days"], 2)
    return ApiResponse.ok(AccrualSummary(accrual=accrual, expiration=expiration, totals=totals))


@router.post("/year-end", response_model=ApiResponse[AccrualBatchResult])
def process_year_end(
    payload: YearEndRequest,
    actor: Actor = Depends(require_hr()),
    engine: AccrualEngine = Depends(get_accrual_engine),
):
    result = engine.run_year_end(
        payload.year, staff_ids=payload.staff_ids, leave_types=payload.leave_types, actor=actor
    )
    return ApiResponse.ok(result, metadata=_totals(result))


@router.post("/expire", response_model=ApiResponse[AccrualBatchResult])
def process_expiration(
    payload: ExpirationRequest,
    actor: Actor = Depends(require_hr()),
    engine: AccrualEngine = Depends(get_accrual_engine),
):
    result = engine.process_expiration(as_of=payload.as_of, staff_ids=payload.staff_ids, actor=actor)
    return ApiResponse.ok(result, metadata=_totals(result))


@router.get("/history", response_model=ApiResponse[List[AccrualHistoryResponse]])
def get_accrual_history(
    staff_id: Optional[str] = None,
    leave_type: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    actor: Actor = Depends(require_hr()),
    ledger: LeaveBalanceLedger = Depends(get_ledger),
):
    entries = ledger.history(staff_id=staff_id, leave_type=leave_type, limit=limit)
    return ApiResponse.ok([AccrualHistoryResponse.model_validate(e) for e in entries])
