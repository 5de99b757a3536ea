"""
Two sessions racing on one leave request.

Each session has its own connection to a file-backed SQLite database, so a
commit in one is only visible to the other through a fresh read.
"""
import pytest
from datetime import date
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from leaveflow.core.exceptions import ConcurrentModificationError, InvalidTransitionError
from leaveflow.database import Base, enable_sqlite_savepoints
from leaveflow.models.leave_accrual_history import LeaveAccrualHistory
from leaveflow.models.leave_balance import LeaveBalance, LeaveType
from leaveflow.models.leave_policy import LeavePolicy
from leaveflow.models.leave_request import LeaveRequest
from leaveflow.schemas.auth import Actor, Role
from leaveflow.services.approval_router import ApprovalRouter
from leaveflow.services.leave_request import LeaveRequestService

EMPLOYEE = Actor(staff_id="S1", role=Role.EMPLOYEE, name="Ama Mensah")
MANAGER = Actor(staff_id="M1", role=Role.MANAGER, name="Kofi Boateng")
OTHER_MANAGER = Actor(staff_id="M2", role=Role.MANAGER, name="Yaw Asante")


@pytest.fixture
def session_factory(tmp_path):
    engine = enable_sqlite_savepoints(create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False},
    ))
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def pending_request(session_factory):
    """A committed single-level Annual request for 3 days against a balance of 10."""
    db = session_factory()
    db.add(LeavePolicy(
        leave_type="Annual", max_days=30, accrual_rate=0.0, accrual_frequency="monthly",
        carryover_allowed=False, max_carryover=0.0, requires_approval=True, approval_levels=1, active=True,
    ))
    balance = LeaveBalance(staff_id="S1")
    for leave_type in LeaveType:
        balance.set_days(leave_type, 0.0)
        balance.set_carry_forward(leave_type, 0.0)
    balance.annual = 10
    db.add(balance)
    db.commit()

    service = LeaveRequestService(db, router=ApprovalRouter(db, strict_policy_lookup=False))
    request = service.create_request(
        staff_id="S1", leave_type="Annual", start_date=date(2025, 5, 5), end_date=date(2025, 5, 7),
        actor=EMPLOYEE, staff_name=EMPLOYEE.name,
    )
    request_id = request.id
    db.close()
    return request_id


def _ledger_state(session_factory):
    db = session_factory()
    try:
        annual = db.query(LeaveBalance).filter_by(staff_id="S1").one().annual
        deductions = db.query(LeaveAccrualHistory).filter_by(accrual_period="deduction").count()
        status = db.query(LeaveRequest.status).scalar()
        return annual, deductions, status
    finally:
        db.close()


def _open_both(session_factory, request_id):
    """Two sessions that have both read the pending request, with no transaction left open."""
    db_a, db_b = session_factory(), session_factory()
    seen_by_a = db_a.get(LeaveRequest, request_id)
    db_b.get(LeaveRequest, request_id)
    db_a.commit()
    db_b.commit()
    assert seen_by_a.status == "pending"
    return db_a, db_b, seen_by_a


def test_second_approval_of_same_request_fails(session_factory, pending_request):
    db_a, db_b, _ = _open_both(session_factory, pending_request)
    try:
        ApprovalRouter(db_b).decide(pending_request, "approved", MANAGER)
        with pytest.raises(InvalidTransitionError):
            ApprovalRouter(db_a).decide(pending_request, "approved", OTHER_MANAGER)
    finally:
        db_a.close()
        db_b.close()

    assert _ledger_state(session_factory) == (7, 1, "approved")


def test_cancel_racing_final_approval_fails(session_factory, pending_request):
    db_a, db_b, _ = _open_both(session_factory, pending_request)
    try:
        ApprovalRouter(db_b).decide(pending_request, "approved", MANAGER)
        with pytest.raises(InvalidTransitionError):
            ApprovalRouter(db_a).cancel(pending_request, EMPLOYEE, reason="Plans changed")
    finally:
        db_a.close()
        db_b.close()

    assert _ledger_state(session_factory) == (7, 1, "approved")


def test_stale_request_write_is_refused_by_version_check(session_factory, pending_request):
    db_a, db_b, stale = _open_both(session_factory, pending_request)
    router_a = ApprovalRouter(db_a)
    try:
        ApprovalRouter(db_b).decide(pending_request, "approved", MANAGER)
        # Writing through the copy read before the approval
        with pytest.raises(ConcurrentModificationError):
            with router_a.unit_of_work("Leave request", pending_request):
                stale.status = "cancelled"
    finally:
        db_a.close()
        db_b.close()

    assert _ledger_state(session_factory) == (7, 1, "approved")
