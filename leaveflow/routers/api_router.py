from fastapi import APIRouter
from leaveflow.routers import accrual, balances, leave, policies

# Centralized API router hub: main.py only imports this one.
api_router = APIRouter()

api_router.include_router(leave.router, tags=["Leave"])
api_router.include_router(policies.router, tags=["Leave Policies"])
api_router.include_router(balances.router, tags=["Leave Balances"])
api_router.include_router(accrual.router, tags=["Accrual"])
