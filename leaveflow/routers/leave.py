from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from leaveflow.core.exceptions import AccessDeniedError
from leaveflow.core.schemas import ApiResponse
from leaveflow.core.security import sanitize_input
from leaveflow.dependencies import get_approval_router, get_leave_service, get_ledger
from leaveflow.models.leave_request import LeaveStatus
from leaveflow.routers.auth_deps import ensure_can_view, get_current_actor, require_approver
from leaveflow.schemas.auth import Actor, Role
from leaveflow.schemas.leave import (
    ApprovalHistoryEntry, LeaveCancelRequest, LeaveDecisionRequest, LeaveEligibilityResponse,
    LeaveRequestCreate, LeaveRequestResponse,
)
from leaveflow.services.approval_router import ApprovalRouter
from leaveflow.services.balance_ledger import LeaveBalanceLedger
from leaveflow.services.leave_request import LeaveRequestService, calculate_leave_days

router = APIRouter(prefix="/leaves", tags=["leave"])


@router.post("", response_model=ApiResponse[LeaveRequestResponse], status_code=status.HTTP_201_CREATED)
def submit_leave_request(
    payload: LeaveRequestCreate,
    actor: Actor = Depends(get_current_actor),
    service: LeaveRequestService = Depends(get_leave_service),
):
    staff_id = payload.staff_id or actor.staff_id
    if staff_id != actor.staff_id and not actor.is_hr:
        raise AccessDeniedError("Only HR can submit leave on behalf of another staff member")

    staff_name = payload.staff_name or (actor.name if staff_id == actor.staff_id else None)
    request = service.create_request(
        staff_id=staff_id,
        leave_type=payload.leave_type,
        start_date=payload.start_date,
        end_date=payload.end_date,
        actor=actor,
        reason=sanitize_input(payload.reason) if payload.reason else None,
        staff_name=staff_name,
    )
    return ApiResponse.ok(LeaveRequestResponse.model_validate(request))


@router.get("", response_model=ApiResponse[List[LeaveRequestResponse]])
def list_leave_requests(
    staff_id: Optional[str] = None,
    status_filter: Optional[LeaveStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_current_actor),
    service: LeaveRequestService = Depends(get_leave_service),
):
    if actor.role == Role.EMPLOYEE:
        staff_id = actor.staff_id
    requests = service.list_requests(
        staff_id=staff_id,
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )
    return ApiResponse.ok(
        [LeaveRequestResponse.model_validate(r) for r in requests],
        metadata={"count": len(requests), "limit": limit, "offset": offset},
    )


@router.get("/eligibility", response_model=ApiResponse[LeaveEligibilityResponse])
def check_leave_eligibility(
    leave_type: str,
    start_date: date,
    end_date: date,
    staff_id: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
    ledger: LeaveBalanceLedger = Depends(get_ledger),
):
    staff_id = staff_id or actor.staff_id
    ensure_can_view(actor, staff_id)
    days = calculate_leave_days(start_date, end_date)
    result = ledger.check_eligibility(staff_id, leave_type, days)
    return ApiResponse.ok(result, metadata={"days": days})


@router.get("/{request_id}", response_model=ApiResponse[LeaveRequestResponse])
def get_leave_request(
    request_id: int,
    actor: Actor = Depends(get_current_actor),
    service: LeaveRequestService = Depends(get_leave_service),
):
    request = service.get_request(request_id)
    ensure_can_view(actor, request.staff_id)
    return ApiResponse.ok(LeaveRequestResponse.model_validate(request))


@router.get("/{request_id}/history", response_model=ApiResponse[List[ApprovalHistoryEntry]])
def get_leave_request_history(
    request_id: int,
    actor: Actor = Depends(get_current_actor),
    service: LeaveRequestService = Depends(get_leave_service),
):
    request = service.get_request(request_id)
    ensure_can_view(actor, request.staff_id)
    history = service.approval_history(request_id)
    return ApiResponse.ok(history, metadata={"count": len(history)})


@router.post("/{request_id}/decision", response_model=ApiResponse[LeaveRequestResponse])
def decide_leave_request(
    request_id: int,
    decision: LeaveDecisionRequest,
    actor: Actor = Depends(require_approver()),
    approval_router: ApprovalRouter = Depends(get_approval_router),
):
    request = approval_router.decide(
        request_id,
        outcome=decision.outcome,
        actor=actor,
        level=decision.level,
        comments=sanitize_input(decision.comments) if decision.comments else None,
    )
    return ApiResponse.ok(LeaveRequestResponse.model_validate(request))


@router.post("/{request_id}/cancel", response_model=ApiResponse[LeaveRequestResponse])
def cancel_leave_request(
    request_id: int,
    payload: Optional[LeaveCancelRequest] = None,
    actor: Actor = Depends(get_current_actor),
    approval_router: ApprovalRouter = Depends(get_approval_router),
):
    reason = payload.reason if payload and payload.reason else None
    request = approval_router.cancel(
        request_id, actor=actor, reason=sanitize_input(reason) if reason else None
    )
    return ApiResponse.ok(LeaveRequestResponse.model_validate(request))
