from typing import List

from fastapi import APIRouter, Depends, status

from leaveflow.core.schemas import ApiResponse
from leaveflow.dependencies import get_policy_store
from leaveflow.routers.auth_deps import get_current_actor, require_hr
from leaveflow.schemas.auth import Actor
from leaveflow.schemas.policy import LeavePolicyCreate, LeavePolicyResponse, LeavePolicyUpdate
from leaveflow.services.policy_store import LeavePolicyStore

router = APIRouter(prefix="/leave-policies", tags=["leave-policies"])


@router.get("", response_model=ApiResponse[List[LeavePolicyResponse]])
def list_leave_policies(
    active_only: bool = True,
    actor: Actor = Depends(get_current_actor),
    store: LeavePolicyStore = Depends(get_policy_store),
):
    policies = store.list_policies(active_only=active_only)
    return ApiResponse.ok([LeavePolicyResponse.model_validate(p) for p in policies])


@router.post("", response_model=ApiResponse[LeavePolicyResponse], status_code=status.HTTP_201_CREATED)
def create_leave_policy(
    payload: LeavePolicyCreate,
    actor: Actor = Depends(require_hr()),
    store: LeavePolicyStore = Depends(get_policy_store),
):
    policy = store.create_policy(payload, actor)
    return ApiResponse.ok(LeavePolicyResponse.model_validate(policy))


@router.put("/{policy_id}", response_model=ApiResponse[LeavePolicyResponse])
def update_leave_policy(
    policy_id: int,
    payload: LeavePolicyUpdate,
    actor: Actor = Depends(require_hr()),
    store: LeavePolicyStore = Depends(get_policy_store),
):
    policy = store.update_policy(policy_id, payload, actor)
    return ApiResponse.ok(LeavePolicyResponse.model_validate(policy))


@router.post("/{policy_id}/deactivate", response_model=ApiResponse[LeavePolicyResponse])
def deactivate_leave_policy(
    policy_id: int,
    actor: Actor = Depends(require_hr()),
    store: LeavePolicyStore = Depends(get_policy_store),
):
    policy = store.deactivate_policy(policy_id, actor)
    return ApiResponse.ok(LeavePolicyResponse.model_validate(policy))
