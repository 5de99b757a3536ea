from fastapi import APIRouter, Depends, status

from leaveflow.core.schemas import ApiResponse
from leaveflow.core.security import sanitize_input
from leaveflow.dependencies import get_ledger
from leaveflow.models.leave_balance import LeaveBalance, LeaveType
from leaveflow.routers.auth_deps import ensure_can_view, get_current_actor, require_hr
from leaveflow.schemas.auth import Actor
from leaveflow.schemas.balance import BalanceAdjustmentRequest, LeaveBalanceCreate, LeaveBalanceResponse
from leaveflow.services.balance_ledger import LeaveBalanceLedger

router = APIRouter(prefix="/balances", tags=["balances"])


def to_response(balance: LeaveBalance) -> LeaveBalanceResponse:
    return LeaveBalanceResponse(
        staff_id=balance.staff_id,
        balances=balance.as_dict(),
        carry_forward={t.value: balance.get_carry_forward(t) for t in LeaveType},
        expires_at={t.value: balance.get_expires_at(t) for t in LeaveType},
        accrual_start_date=balance.accrual_start_date,
        last_accrual_date=balance.last_accrual_date,
        accrual_period=balance.accrual_period,
        version=balance.version,
    )


@router.post("", response_model=ApiResponse[LeaveBalanceResponse], status_code=status.HTTP_201_CREATED)
def open_leave_balance(
    payload: LeaveBalanceCreate,
    actor: Actor = Depends(require_hr()),
    ledger: LeaveBalanceLedger = Depends(get_ledger),
):
    balance = ledger.open_balance(
        payload.staff_id, actor, initial=payload.initial, accrual_start_date=payload.accrual_start_date
    )
    return ApiResponse.ok(to_response(balance))


@router.get("/{staff_id}", response_model=ApiResponse[LeaveBalanceResponse])
def get_leave_balance(
    staff_id: str,
    actor: Actor = Depends(get_current_actor),
    ledger: LeaveBalanceLedger = Depends(get_ledger),
):
    ensure_can_view(actor, staff_id)
    return ApiResponse.ok(to_response(ledger.get_balance(staff_id)))


@router.post("/{staff_id}/adjust", response_model=ApiResponse[LeaveBalanceResponse])
def adjust_leave_balance(
    staff_id: str,
    payload: BalanceAdjustmentRequest,
    actor: Actor = Depends(require_hr()),
    ledger: LeaveBalanceLedger = Depends(get_ledger),
):
    balance = ledger.adjust(staff_id, payload.leave_type, payload.days, sanitize_input(payload.reason), actor)
    return ApiResponse.ok(to_response(balance))
