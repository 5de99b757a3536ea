import pytest
from datetime import date

from leaveflow.core.exceptions import (
    AccessDeniedError, InsufficientBalanceError, InvalidTransitionError,
    OverlappingLeaveError, PolicyNotFoundError, RejectionCommentRequiredError,
)
from leaveflow.models.audit_log import AuditLog
from leaveflow.models.leave_accrual_history import LeaveAccrualHistory
from leaveflow.models.leave_request import LeaveRequest
from leaveflow.schemas.auth import Actor, Role
from leaveflow.services.approval_router import ApprovalRouter
from leaveflow.services.leave_request import LeaveRequestService


def _submit(leave_service, employee, leave_type="Annual", start=date(2025, 5, 5), end=date(2025, 5, 7)):
    return leave_service.create_request(
        staff_id=employee.staff_id,
        leave_type=leave_type,
        start_date=start,
        end_date=end,
        actor=employee,
        reason="Family visit",
        staff_name=employee.name,
    )


def _levels(request):
    return [(a.level, a.approver_role, a.status) for a in request.approval_levels]


# --- Scenarios ---

def test_single_level_approval_debits_balance(leave_service, approval_router, employee, manager, make_policy, make_balance, ledger):
    make_policy("Annual", approval_levels=1)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    assert request.status == "pending"
    assert request.days == 3
    assert request.approval_levels == []

    decided = approval_router.decide(request.id, "approved", manager)
    assert decided.status == "approved"
    assert decided.approved_by == "Kofi Boateng"
    assert decided.approval_date is not None
    assert ledger.get_balance("S1").annual == 7


def test_two_level_chain(leave_service, approval_router, employee, manager, hr, make_policy, make_balance, ledger, db_session):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    assert _levels(request) == [(1, "manager", "pending"), (2, "hr", "pending")]

    request = approval_router.decide(request.id, "approved", manager, level=1)
    assert request.status == "pending"
    assert _levels(request) == [(1, "manager", "approved"), (2, "hr", "pending")]
    assert request.approval_levels[0].approver_name == "Kofi Boateng"
    assert ledger.get_balance("S1").annual == 10

    request = approval_router.decide(request.id, "approved", hr, level=2)
    assert request.status == "approved"
    assert ledger.get_balance("S1").annual == 7
    deductions = db_session.query(LeaveAccrualHistory).filter(LeaveAccrualHistory.accrual_period == "deduction").all()
    assert len(deductions) == 1
    assert deductions[0].leave_request_id == request.id


def test_rejection_at_first_level_is_terminal(leave_service, approval_router, employee, manager, make_policy, make_balance, ledger):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)

    request = approval_router.decide(request.id, "rejected", manager, level=1, comments="Peak season")
    assert request.status == "rejected"
    assert _levels(request) == [(1, "manager", "rejected"), (2, "hr", "pending")]
    assert request.approval_levels[0].comments == "Peak season"
    assert ledger.get_balance("S1").annual == 10


def test_out_of_order_level_is_rejected(leave_service, approval_router, employee, hr, make_policy, make_balance):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)

    with pytest.raises(InvalidTransitionError) as exc:
        approval_router.decide(request.id, "approved", hr, level=2)
    assert exc.value.details["current_level"] == 1

    request = leave_service.get_request(request.id)
    assert request.status == "pending"
    assert _levels(request) == [(1, "manager", "pending"), (2, "hr", "pending")]


def test_insufficient_balance_aborts_final_approval(leave_service, approval_router, employee, manager, make_policy, make_balance, ledger, db_session):
    make_policy("Sick", max_days=12, approval_levels=1)
    make_balance("S1", sick=2)
    request = _submit(leave_service, employee, leave_type="Sick", start=date(2025, 5, 5), end=date(2025, 5, 9))
    assert request.days == 5

    with pytest.raises(InsufficientBalanceError):
        approval_router.decide(request.id, "approved", manager)

    assert leave_service.get_request(request.id).status == "pending"
    assert ledger.get_balance("S1").sick == 2
    assert db_session.query(LeaveAccrualHistory).count() == 0


def test_insufficient_balance_keeps_multi_level_request_at_final_level(
    leave_service, approval_router, employee, manager, hr, make_policy, make_balance, ledger
):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=1)
    request = _submit(leave_service, employee)
    approval_router.decide(request.id, "approved", manager, level=1)

    with pytest.raises(InsufficientBalanceError):
        approval_router.decide(request.id, "approved", hr, level=2)

    request = leave_service.get_request(request.id)
    assert request.status == "pending"
    assert _levels(request) == [(1, "manager", "approved"), (2, "hr", "pending")]
    assert request.current_level.level == 2


# --- State machine properties ---

@pytest.mark.parametrize("terminal", ["approved", "rejected", "cancelled"])
def test_terminal_requests_refuse_further_transitions(terminal, leave_service, approval_router, employee, manager, make_policy, make_balance, ledger, notifier):
    make_policy("Annual", approval_levels=1)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    if terminal == "cancelled":
        approval_router.cancel(request.id, employee)
    else:
        approval_router.decide(request.id, terminal, manager, comments="Team is short-staffed")
    balance_after = ledger.get_balance("S1").annual
    events = len(notifier.events)

    with pytest.raises(InvalidTransitionError):
        approval_router.decide(request.id, "approved", manager)
    with pytest.raises(InvalidTransitionError):
        approval_router.cancel(request.id, employee)

    assert leave_service.get_request(request.id).status == terminal
    assert ledger.get_balance("S1").annual == balance_after
    assert len(notifier.events) == events


def test_approved_level_is_never_reopened(leave_service, approval_router, employee, manager, make_policy, make_balance):
    make_policy("Annual", approval_levels=3)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    approval_router.decide(request.id, "approved", manager, level=1)

    with pytest.raises(InvalidTransitionError):
        approval_router.decide(request.id, "rejected", manager, level=1)
    request = leave_service.get_request(request.id)
    assert request.approval_levels[0].status == "approved"
    assert request.current_level.level == 2


def test_role_must_match_level(leave_service, approval_router, employee, hr, make_policy, make_balance):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)

    with pytest.raises(InvalidTransitionError) as exc:
        approval_router.decide(request.id, "approved", hr, level=1)
    assert exc.value.details["required_role"] == "manager"


def test_admin_must_match_level_role(leave_service, approval_router, employee, manager, admin, make_policy, make_balance, ledger):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)

    with pytest.raises(InvalidTransitionError) as exc:
        approval_router.decide(request.id, "approved", admin, level=1)
    assert exc.value.details["required_role"] == "manager"
    assert exc.value.details["actor_role"] == "admin"
    request = approval_router.decide(request.id, "approved", manager, level=1)
    assert request.current_level.level == 2
    with pytest.raises(InvalidTransitionError):
        approval_router.decide(request.id, "approved", admin, level=2)
    assert ledger.get_balance("S1").annual == 10


def test_admin_decides_levels_resolved_to_admin(db_session, employee, manager, admin, make_policy, make_balance, ledger):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    router = ApprovalRouter(
        db_session,
        role_resolver=lambda leave_type, level, requester: "manager" if level == 1 else "admin",
        strict_policy_lookup=False,
    )
    request = _submit(LeaveRequestService(db_session, router=router), employee)
    router.decide(request.id, "approved", manager, level=1)
    request = router.decide(request.id, "approved", admin, level=2)
    assert request.status == "approved"
    assert ledger.get_balance("S1").annual == 7


def test_level_required_for_multi_level_request(leave_service, approval_router, employee, manager, make_policy, make_balance):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    with pytest.raises(InvalidTransitionError):
        approval_router.decide(request.id, "approved", manager)


def test_single_level_rejects_explicit_later_level(leave_service, approval_router, employee, manager, make_policy, make_balance):
    make_policy("Annual", approval_levels=1)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    with pytest.raises(InvalidTransitionError):
        approval_router.decide(request.id, "approved", manager, level=2)


def test_self_approval_is_denied(leave_service, approval_router, make_policy, make_balance):
    boss = Actor(staff_id="M1", role=Role.MANAGER, name="Kofi Boateng")
    make_policy("Annual", approval_levels=1)
    make_balance("M1", annual=10)
    request = _submit(leave_service, boss)
    with pytest.raises(AccessDeniedError):
        approval_router.decide(request.id, "approved", boss)


def test_employee_cannot_decide(leave_service, approval_router, employee, make_policy, make_balance):
    colleague = Actor(staff_id="S2", role=Role.EMPLOYEE)
    make_policy("Annual", approval_levels=1)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    with pytest.raises(AccessDeniedError):
        approval_router.decide(request.id, "approved", colleague)


def test_zero_levels_and_no_approval_policies_are_single_level(leave_service, employee, make_policy, make_balance):
    make_policy("Annual", approval_levels=0)
    make_policy("Study", max_days=10, approval_levels=3, requires_approval=False)
    assert _submit(leave_service, employee).approval_levels == []
    study = _submit(leave_service, employee, leave_type="Study", start=date(2025, 6, 2), end=date(2025, 6, 3))
    assert study.approval_levels == []


def test_custom_role_resolver(db_session, employee, make_policy, make_balance):
    make_policy("Annual", approval_levels=3)
    router = ApprovalRouter(
        db_session,
        role_resolver=lambda leave_type, level, requester: ["manager", "manager", "admin"][level - 1],
        strict_policy_lookup=False,
    )
    service = LeaveRequestService(db_session, router=router)
    request = _submit(service, employee)
    assert [a.approver_role for a in request.approval_levels] == ["manager", "manager", "admin"]


# --- Missing policy ---

def test_missing_policy_falls_back_to_single_level(leave_service, approval_router, employee, manager, make_balance, ledger, db_session):
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    assert request.approval_levels == []
    warning = db_session.query(AuditLog).filter(AuditLog.action == "LEAVE_POLICY_FALLBACK").one()
    assert warning.level == "warning"
    assert warning.entity_id == request.id

    approval_router.decide(request.id, "approved", manager)
    assert ledger.get_balance("S1").annual == 7


def test_missing_policy_strict_mode_fails(db_session, employee):
    router = ApprovalRouter(db_session, strict_policy_lookup=True)
    service = LeaveRequestService(db_session, router=router)
    with pytest.raises(PolicyNotFoundError):
        _submit(service, employee)
    assert db_session.query(LeaveRequest).count() == 0


# --- Cancellation ---

def test_requester_can_cancel_pending(leave_service, approval_router, employee, make_policy, make_balance, ledger, notifier):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    request = approval_router.cancel(request.id, employee, reason="Plans changed")
    assert request.status == "cancelled"
    assert ledger.get_balance("S1").annual == 10
    assert notifier.events[-1].new_status == "cancelled"


def test_other_employee_cannot_cancel(leave_service, approval_router, employee, make_policy):
    make_policy("Annual")
    request = _submit(leave_service, employee)
    with pytest.raises(AccessDeniedError):
        approval_router.cancel(request.id, Actor(staff_id="S2", role=Role.EMPLOYEE))


def test_hr_can_cancel_for_staff(leave_service, approval_router, employee, hr, make_policy):
    make_policy("Annual")
    request = _submit(leave_service, employee)
    assert approval_router.cancel(request.id, hr).status == "cancelled"


# --- Submission rules ---

def test_overlapping_request_is_rejected(leave_service, employee, make_policy):
    make_policy("Annual")
    first = _submit(leave_service, employee, start=date(2025, 5, 5), end=date(2025, 5, 9))
    with pytest.raises(OverlappingLeaveError) as exc:
        _submit(leave_service, employee, leave_type="Sick", start=date(2025, 5, 9), end=date(2025, 5, 12))
    assert exc.value.details["overlapping_request_ids"] == [first.id]


def test_cancelled_request_does_not_block_new_one(leave_service, approval_router, employee, make_policy):
    make_policy("Annual")
    first = _submit(leave_service, employee)
    approval_router.cancel(first.id, employee)
    second = _submit(leave_service, employee)
    assert second.status == "pending"


def test_submission_does_not_check_balance(leave_service, employee, make_policy, make_balance):
    make_policy("Sick", max_days=12)
    make_balance("S1", sick=0)
    request = _submit(leave_service, employee, leave_type="Sick")
    assert request.status == "pending"


def test_unpaid_leave_approval_leaves_balances_alone(leave_service, approval_router, employee, manager, make_policy, make_balance, ledger):
    make_policy("Unpaid", max_days=60)
    make_balance("S1", unpaid=0)
    request = _submit(leave_service, employee, leave_type="Unpaid")
    assert approval_router.decide(request.id, "approved", manager).status == "approved"
    assert ledger.get_balance("S1").unpaid == 0


# --- Rejection comments and history ---

@pytest.mark.parametrize("comments", [None, "", "   no   ", "Too busy"])
def test_rejection_needs_a_real_comment(comments, leave_service, approval_router, employee, manager, make_policy, make_balance):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)

    with pytest.raises(RejectionCommentRequiredError) as exc:
        approval_router.decide(request.id, "rejected", manager, level=1, comments=comments)
    assert exc.value.details == {"min_length": 10}
    request = leave_service.get_request(request.id)
    assert request.status == "pending"
    assert _levels(request) == [(1, "manager", "pending"), (2, "hr", "pending")]


def test_rejection_comment_length_is_configurable(db_session, leave_service, employee, manager, make_policy, make_balance):
    make_policy("Annual")
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    router = ApprovalRouter(db_session, strict_policy_lookup=False, rejection_min_comment_length=0)
    assert router.decide(request.id, "rejected", manager).status == "rejected"


def test_approval_history_follows_the_audit_trail(leave_service, approval_router, employee, manager, hr, make_policy, make_balance):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    approval_router.decide(request.id, "approved", manager, level=1, comments="Cover arranged")
    approval_router.decide(request.id, "rejected", hr, level=2, comments="Clashes with audit week")

    history = leave_service.approval_history(request.id)
    assert [(h.action, h.level) for h in history] == [
        ("submitted", None), ("level_approved", 1), ("rejected", 2),
    ]
    assert history[1].performed_by == "Kofi Boateng"
    assert history[1].comments == "Cover arranged"
    assert (history[2].performed_by_role, history[2].from_status, history[2].to_status) == ("hr", "pending", "rejected")


def test_approval_history_falls_back_to_level_rows(leave_service, approval_router, employee, manager, hr, make_policy, make_balance, monkeypatch):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    # Decisions go unaudited
    monkeypatch.setattr(approval_router.audit, "record", lambda *args, **kwargs: None)
    approval_router.decide(request.id, "approved", manager, level=1)
    approval_router.decide(request.id, "approved", hr, level=2, comments="Approved")

    history = leave_service.approval_history(request.id)
    assert [(h.action, h.level, h.performed_by) for h in history] == [
        ("submitted", None, "Ama Mensah"),
        ("level_approved", 1, "Kofi Boateng"),
        ("approved", 2, "Efua Owusu"),
    ]


# --- Side channels ---

def test_notifications_follow_each_decision(leave_service, approval_router, employee, manager, hr, make_policy, make_balance, notifier):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    approval_router.decide(request.id, "approved", manager, level=1)
    approval_router.decide(request.id, "approved", hr, level=2)

    assert [(e.new_status, e.level) for e in notifier.events] == [("pending", 1), ("approved", 2)]
    assert all(e.staff_id == "S1" and e.leave_type == "Annual" for e in notifier.events)


def test_notification_failure_is_swallowed(db_session, leave_service, employee, manager, make_policy, make_balance):
    class BrokenDispatcher:
        def notify(self, event):
            raise RuntimeError("SMTP down")

    make_policy("Annual")
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    router = ApprovalRouter(db_session, notifier=BrokenDispatcher(), strict_policy_lookup=False)
    assert router.decide(request.id, "approved", manager).status == "approved"


def test_audit_failure_does_not_block_transition(db_session, leave_service, approval_router, employee, manager, make_policy, make_balance, monkeypatch):
    make_policy("Annual")
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)

    def broken_add(entry):
        raise RuntimeError("audit sink unavailable")

    monkeypatch.setattr("leaveflow.services.audit.AuditLog", lambda **kwargs: broken_add(kwargs))
    decided = approval_router.decide(request.id, "approved", manager)
    assert decided.status == "approved"
    assert db_session.query(AuditLog).filter(AuditLog.action == "LEAVE_APPROVED").count() == 0


def test_decisions_are_audited_with_before_and_after(leave_service, approval_router, employee, manager, make_policy, make_balance, db_session):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    approval_router.decide(request.id, "approved", manager, level=1)

    entry = db_session.query(AuditLog).filter(AuditLog.action == "LEAVE_LEVEL_APPROVED").one()
    assert entry.staff_id == "S1"
    assert entry.before_state["levels"][0]["status"] == "pending"
    assert entry.after_state["levels"][0]["status"] == "approved"
    assert entry.details["level"] == 1


def test_version_bumps_on_level_change(leave_service, approval_router, employee, manager, make_policy, make_balance):
    make_policy("Annual", approval_levels=2)
    make_balance("S1", annual=10)
    request = _submit(leave_service, employee)
    version = request.version
    request = approval_router.decide(request.id, "approved", manager, level=1)
    assert request.version == version + 1
