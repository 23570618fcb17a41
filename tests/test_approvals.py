"""
Test suite for the approval subsystem

Covers decisions, authorization, delegation chains, escalation, overdue
detection, bulk approval and withdrawal.
"""

from datetime import timedelta

import pytest

from workflow_core.approvals import ApprovalService
from workflow_core.audit import AuditTrail, AuditEventType
from workflow_core.exceptions import (
    AuthorizationError, ConflictError, InvalidTransitionError, NotFoundError, ValidationError
)
from workflow_core.models import ApprovalDecision, ApprovalStatus, StepStatus, utcnow
from workflow_core.storage import InMemoryStorage


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def resolved():
    return []


@pytest.fixture
def service(storage, audit_trail, resolved):
    approvals = ApprovalService(storage, audit_trail, default_due_hours=48)
    approvals.set_step_resolver(lambda *args: resolved.append(args))
    return approvals


@pytest.fixture
def request_(service):
    return service.request_approval("inst-1", "step-1", "bob")


class TestRequestApproval:

    def test_request_defaults(self, service, request_):
        assert request_.status == ApprovalStatus.PENDING
        assert request_.approver_id == "bob"
        assert request_.due_date == request_.requested_at + timedelta(hours=48)
        assert service.get_approval(request_.id).approver_id == "bob"

    def test_explicit_due_date(self, service):
        due = utcnow() + timedelta(hours=2)
        request = service.request_approval("inst-1", "step-9", "bob", due_date=due)
        assert request.due_date == due

    def test_approver_required(self, service):
        with pytest.raises(ValidationError):
            service.request_approval("inst-1", "step-1", "")

    def test_duplicate_pending_request(self, service, request_):
        with pytest.raises(ConflictError):
            service.request_approval("inst-1", "step-1", "carol")

    def test_unknown_request(self, service):
        with pytest.raises(NotFoundError):
            service.get_approval("missing")


class TestDecide:

    def test_approve(self, service, request_, resolved):
        decided = service.decide(request_.id, ApprovalDecision.APPROVED, "bob", comments="looks fine")

        assert decided.status == ApprovalStatus.APPROVED
        assert decided.decided_by == "bob"
        assert decided.comments == "looks fine"
        assert decided.responded_at is not None

        instance_id, step_id, status, result = resolved[0]
        assert (instance_id, step_id, status) == ("inst-1", "step-1", StepStatus.COMPLETED)
        assert result["decision"] == "approved"

    def test_reject_keeps_reason_verbatim(self, service, request_, resolved):
        decided = service.decide(request_.id, "REJECTED", "bob", reason="missing budget code")

        assert decided.status == ApprovalStatus.REJECTED
        assert service.get_approval(request_.id).reason == "missing budget code"
        assert resolved[0][2] == StepStatus.FAILED
        assert resolved[0][3]["reason"] == "missing budget code"

    def test_wrong_approver(self, service, request_, resolved):
        with pytest.raises(AuthorizationError) as exc_info:
            service.decide(request_.id, "approved", "mallory")

        assert exc_info.value.code == "FORBIDDEN"
        assert service.get_approval(request_.id).status == ApprovalStatus.PENDING
        assert resolved == []

    def test_decide_twice(self, service, request_):
        service.decide(request_.id, "approved", "bob")

        with pytest.raises(InvalidTransitionError):
            service.decide(request_.id, "rejected", "bob")

    def test_invalid_decision(self, service, request_):
        with pytest.raises(ValidationError, match="Invalid decision"):
            service.decide(request_.id, "maybe", "bob")

    def test_decision_is_audited(self, service, request_, audit_trail):
        service.decide(request_.id, "approved", "bob")

        events = audit_trail.get_events_for_entity("approval_request", request_.id)
        assert [e.event_type for e in events] == [
            AuditEventType.APPROVAL_REQUESTED, AuditEventType.APPROVAL_APPROVED
        ]


class TestDelegation:

    def test_delegate(self, service, request_):
        replacement = service.delegate(request_.id, "carol", "on holiday", "bob")

        original = service.get_approval(request_.id)
        assert original.status == ApprovalStatus.DELEGATED
        assert original.delegated_to == "carol"
        assert replacement.status == ApprovalStatus.PENDING
        assert replacement.approver_id == "carol"
        assert replacement.delegated_from == request_.id
        assert replacement.due_date == request_.due_date
        assert replacement.step_id == request_.step_id

    def test_delegate_requires_current_approver(self, service, request_):
        with pytest.raises(AuthorizationError):
            service.delegate(request_.id, "carol", None, "mallory")

    def test_delegate_to_self(self, service, request_):
        with pytest.raises(ValidationError):
            service.delegate(request_.id, "bob", None, "bob")

    def test_delegated_request_cannot_be_decided(self, service, request_):
        service.delegate(request_.id, "carol", None, "bob")

        with pytest.raises(InvalidTransitionError):
            service.decide(request_.id, "approved", "bob")

    def test_delegation_chain(self, service, request_, resolved):
        second = service.delegate(request_.id, "carol", None, "bob")
        third = service.delegate(second.id, "dave", None, "carol")

        chain = service.delegation_chain(third.id)
        assert [r.approver_id for r in chain] == ["bob", "carol", "dave"]

        service.decide(third.id, "approved", "dave")
        assert resolved[0][1] == "step-1"

    def test_escalate_without_ownership(self, service, request_, audit_trail):
        replacement = service.escalate(request_.id, "director")

        assert replacement.approver_id == "director"
        assert service.get_approval(request_.id).decided_by == "system"
        events = audit_trail.get_events_by_type(AuditEventType.APPROVAL_ESCALATED)
        assert [e.entity_id for e in events] == [request_.id]


class TestOverdue:

    def test_overdue_is_computed_without_writes(self, service):
        request = service.request_approval("inst-1", "step-1", "bob", due_date=utcnow() - timedelta(hours=1))

        assert service.is_overdue(service.get_approval(request.id))
        assert [r.id for r in service.list_overdue()] == [request.id]
        # Reading lateness does not touch the stored record
        assert service.get_approval(request.id).revision == 0

    def test_not_overdue_once_decided(self, service):
        request = service.request_approval("inst-1", "step-1", "bob", due_date=utcnow() - timedelta(hours=1))
        service.decide(request.id, "approved", "bob")

        assert not service.get_approval(request.id).is_overdue()
        assert service.list_overdue() == []

    def test_request_without_due_date_is_never_overdue(self, storage):
        service = ApprovalService(storage, default_due_hours=None)
        request = service.request_approval("inst-1", "step-1", "bob")

        assert request.due_date is None
        assert not request.is_overdue(utcnow() + timedelta(days=365))


class TestBulkAndMetrics:

    def test_bulk_approve(self, service):
        mine = service.request_approval("inst-1", "step-1", "bob")
        theirs = service.request_approval("inst-2", "step-2", "carol")

        result = service.bulk_approve([mine.id, theirs.id, "missing"], "bob")

        assert result["approved"] == [mine.id]
        assert [(f["id"], f["code"]) for f in result["failed"]] == [
            (theirs.id, "FORBIDDEN"), ("missing", "NOT_FOUND")
        ]

    def test_metrics(self, service):
        first = service.request_approval("inst-1", "step-1", "bob")
        service.request_approval("inst-2", "step-2", "bob", due_date=utcnow() - timedelta(hours=1))
        service.request_approval("inst-3", "step-3", "carol")
        service.decide(first.id, "approved", "bob")

        metrics = service.get_metrics("bob")
        assert metrics["approved"] == 1
        assert metrics["pending"] == 1
        assert metrics["overdue"] == 1
        assert metrics["total"] == 2
        assert service.get_metrics()["total"] == 3

    def test_list_pending_by_approver(self, service):
        service.request_approval("inst-1", "step-1", "bob")
        service.request_approval("inst-2", "step-2", "carol")

        assert [r.approver_id for r in service.list_pending("bob")] == ["bob"]
        assert len(service.list_pending()) == 2


class TestWithdraw:

    def test_withdraw_pending(self, service, resolved):
        first = service.request_approval("inst-1", "step-1", "bob")
        second = service.request_approval("inst-1", "step-2", "carol")
        other = service.request_approval("inst-2", "step-3", "bob")
        service.decide(second.id, "approved", "carol")

        assert service.withdraw_pending("inst-1", "budget frozen") == 1

        withdrawn = service.get_approval(first.id)
        assert withdrawn.status == ApprovalStatus.REJECTED
        assert withdrawn.decided_by == "system"
        assert withdrawn.reason == "Workflow cancelled: budget frozen"
        assert service.get_approval(other.id).status == ApprovalStatus.PENDING
        # Withdrawal never resolves steps
        assert len(resolved) == 1
