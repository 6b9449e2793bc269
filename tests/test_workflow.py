"""Tests for the approval state machine."""

from __future__ import annotations

import logging
import threading
from datetime import date
from decimal import Decimal

import pytest

from packages.reimbursement_common import (
    AuthorizationError,
    InvalidTransitionError,
    ItemDraft,
    NotFound,
    RequestStatus,
    ValidationError,
)
from reimbursement_web.workflow import ApprovalStateMachine, allowed_actions


def _submit(repo, amounts=("50000", "75000")):
    return repo.create_request(
        user_id="emp-1",
        title="March travel",
        description="",
        items=[
            ItemDraft("Expense", Decimal(amount), "Transportation", date(2025, 3, 1))
            for amount in amounts
        ],
    )


@pytest.fixture()
def machine(repo):
    return ApprovalStateMachine(repo)


def test_submitted_request_starts_pending(repo):
    """Two items of 50000 and 75000 total 125000 and await review."""

    saved = _submit(repo)

    assert saved.total_amount == Decimal("125000")
    assert saved.status is RequestStatus.PENDING


def test_approve_stamps_actor_time_and_notes(repo, machine, admin, clock):
    """Approval records who processed the request, when, and why."""

    saved = _submit(repo)
    clock.advance(hours=2)

    approved = machine.approve(saved.id, admin, notes="ok")

    assert approved.status is RequestStatus.APPROVED
    assert approved.processed_by == "admin-1"
    assert approved.processed_at == clock.now
    assert approved.notes == "ok"
    assert approved.total_amount == saved.total_amount


def test_approve_twice_fails_the_second_time(repo, machine, admin):
    """A repeated approval conflicts and leaves the first result intact."""

    saved = _submit(repo)
    first = machine.approve(saved.id, admin, notes="ok")

    with pytest.raises(InvalidTransitionError) as excinfo:
        machine.approve(saved.id, admin, notes="again")

    assert excinfo.value.current_status == "approved"
    assert repo.get_request(saved.id) == first


def test_mark_paid_requires_approval(repo, machine, admin):
    """Paying a pending request is not a legal move."""

    saved = _submit(repo)

    with pytest.raises(InvalidTransitionError) as excinfo:
        machine.mark_paid(saved.id, admin)
    assert excinfo.value.current_status == "pending"
    assert excinfo.value.action == "pay"


def test_full_flow_overwrites_notes(repo, machine, admin):
    """Each transition replaces the previous note rather than appending."""

    saved = _submit(repo)
    machine.approve(saved.id, admin, notes="looks fine")
    paid = machine.mark_paid(saved.id, admin)

    assert paid.status is RequestStatus.PAID
    assert paid.notes is None
    assert [(c.from_status, c.to_status) for c in machine.history(saved.id, admin)] == [
        (RequestStatus.PENDING, RequestStatus.APPROVED),
        (RequestStatus.APPROVED, RequestStatus.PAID),
    ]


def test_rejected_is_terminal(repo, machine, admin):
    """Neither approval nor payment is possible after rejection."""

    saved = _submit(repo)
    machine.reject(saved.id, admin, notes="missing receipts")

    for action in ("approve", "reject", "pay"):
        with pytest.raises(InvalidTransitionError):
            machine.apply(action, saved.id, admin)
    assert repo.get_request(saved.id).notes == "missing receipts"


def test_employee_cannot_transition(repo, machine, employee):
    """Non-administrators are refused and nothing changes."""

    saved = _submit(repo)

    with pytest.raises(AuthorizationError):
        machine.reject(saved.id, employee)

    current = repo.get_request(saved.id)
    assert current.status is RequestStatus.PENDING
    assert current.processed_at is None and current.processed_by is None


def test_unknown_request_and_action(machine, admin):
    """Missing requests are NotFound and unknown actions are refused."""

    with pytest.raises(NotFound):
        machine.approve("missing", admin)
    with pytest.raises(InvalidTransitionError):
        machine.apply("archive", "missing", admin)


def test_concurrent_approve_and_reject(repo, machine, admin):
    """Racing approve and reject calls never both succeed."""

    for _ in range(5):
        saved = _submit(repo)
        barrier = threading.Barrier(2)
        outcomes = {}

        def run(action):
            barrier.wait()
            try:
                outcomes[action] = machine.apply(action, saved.id, admin).status
            except InvalidTransitionError as exc:
                outcomes[action] = exc

        threads = [threading.Thread(target=run, args=(a,)) for a in ("approve", "reject")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        successes = [v for v in outcomes.values() if isinstance(v, RequestStatus)]
        conflicts = [v for v in outcomes.values() if isinstance(v, InvalidTransitionError)]
        assert len(successes) == 1
        assert len(conflicts) == 1
        final = repo.get_request(saved.id).status
        assert final == successes[0]
        assert final in (RequestStatus.APPROVED, RequestStatus.REJECTED)
        assert len(repo.list_status_changes(saved.id)) == 1


def test_override_moves_any_status_and_is_logged(repo, machine, admin, caplog):
    """Overrides bypass adjacency but are recorded and logged distinctly."""

    saved = _submit(repo)
    machine.approve(saved.id, admin)
    machine.mark_paid(saved.id, admin)

    with caplog.at_level(logging.WARNING, logger="reimbursement_web.workflow"):
        reopened = machine.set_status(saved.id, "pending", admin, notes="paid twice")

    assert reopened.status is RequestStatus.PENDING
    assert reopened.processed_by == "admin-1"
    assert reopened.notes == "paid twice"
    assert any("Status override" in record.getMessage() for record in caplog.records)

    history = machine.history(saved.id, admin)
    assert [change.kind for change in history] == ["transition", "transition", "override"]
    assert history[-1].from_status is RequestStatus.PAID


def test_override_rules(repo, admin, employee):
    """Overrides are admin-only, configurable, and must change something."""

    saved = _submit(repo)
    machine = ApprovalStateMachine(repo)

    with pytest.raises(AuthorizationError):
        machine.set_status(saved.id, RequestStatus.PAID, employee)
    with pytest.raises(InvalidTransitionError):
        machine.set_status(saved.id, RequestStatus.PENDING, admin)
    with pytest.raises(ValidationError):
        machine.set_status(saved.id, "archived", admin)
    with pytest.raises(AuthorizationError):
        ApprovalStateMachine(repo, allow_override=False).set_status(
            saved.id, RequestStatus.PAID, admin
        )
    assert repo.get_request(saved.id).status is RequestStatus.PENDING


def test_history_is_admin_only(repo, machine, employee):
    """Employees cannot read the transition history."""

    saved = _submit(repo)

    with pytest.raises(AuthorizationError):
        machine.history(saved.id, employee)


def test_allowed_actions():
    """Only pending and approved requests have a next step."""

    assert allowed_actions(RequestStatus.PENDING) == ["approve", "reject"]
    assert allowed_actions(RequestStatus.APPROVED) == ["pay"]
    assert allowed_actions(RequestStatus.REJECTED) == []
    assert allowed_actions(RequestStatus.PAID) == []
