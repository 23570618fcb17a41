"""
Approval Subsystem

Creates, decides, delegates and escalates approval requests for suspended
approval steps. Decisions are handed back to the Instance Engine through the
step resolver callback; delegation never rewrites history, it chains a new
pending request onto the delegated one.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventPublisherMixin
from .exceptions import (
    AuthorizationError, ConflictError, InvalidTransitionError, NotFoundError,
    ValidationError, WorkflowError
)
from .logging_config import get_logger, log_action
from .models import (
    ApprovalDecision, ApprovalRequest, ApprovalStatus, StepStatus, as_utc, new_id, utcnow
)
from .storage import StorageInterface

logger = get_logger("workflow.approvals")

T = TypeVar("T")

# (instance_id, step_id, status, result) -> anything
StepResolver = Callable[[str, str, StepStatus, Dict[str, Any]], Any]


class ApprovalService(EventPublisherMixin):
    """Approval request lifecycle"""

    TABLE = "approval_requests"

    def __init__(self, storage: StorageInterface, audit: Optional[AuditTrail] = None,
                 default_due_hours: Optional[int] = 48, conflict_retries: int = 1):
        self.storage = storage
        self.audit = audit
        self.default_due_hours = default_due_hours
        self.conflict_retries = conflict_retries
        self._resolver: Optional[StepResolver] = None

    def set_step_resolver(self, resolver: StepResolver) -> None:
        self._resolver = resolver

    # Reads

    def get_approval(self, request_id: str) -> ApprovalRequest:
        data = self.storage.load(self.TABLE, request_id)
        if not data:
            raise NotFoundError("Approval request", request_id)
        return ApprovalRequest.from_dict(data)

    def _find(self, **filters) -> List[ApprovalRequest]:
        requests = [ApprovalRequest.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        requests.sort(key=lambda r: r.requested_at)
        return requests

    def pending_for_step(self, step_id: str) -> Optional[ApprovalRequest]:
        pending = self._find(step_id=step_id, status=ApprovalStatus.PENDING.value)
        return pending[0] if pending else None

    def list_pending(self, approver_id: Optional[str] = None) -> List[ApprovalRequest]:
        if approver_id:
            return self._find(approver_id=approver_id, status=ApprovalStatus.PENDING.value)
        return self._find(status=ApprovalStatus.PENDING.value)

    def list_for_step(self, step_id: str) -> List[ApprovalRequest]:
        return self._find(step_id=step_id)

    def list_for_instance(self, instance_id: str) -> List[ApprovalRequest]:
        return self._find(instance_id=instance_id)

    def list_overdue(self, now: Optional[datetime] = None) -> List[ApprovalRequest]:
        now = as_utc(now) or utcnow()
        return [r for r in self.list_pending() if r.is_overdue(now)]

    def is_overdue(self, request: ApprovalRequest, now: Optional[datetime] = None) -> bool:
        return request.is_overdue(now)

    def delegation_chain(self, request_id: str) -> List[ApprovalRequest]:
        """Walk ``delegated_from`` links back to the original request; oldest first"""
        chain = []
        seen = set()
        current: Optional[str] = request_id
        while current and current not in seen:
            seen.add(current)
            request = self.get_approval(current)
            chain.append(request)
            current = request.delegated_from
        chain.reverse()
        return chain

    def get_metrics(self, approver_id: Optional[str] = None,
                    now: Optional[datetime] = None) -> Dict[str, int]:
        """Counts per status plus overdue pending requests"""
        now = as_utc(now) or utcnow()
        requests = self._find(approver_id=approver_id) if approver_id else self._find()
        metrics = {status.value: 0 for status in ApprovalStatus}
        overdue = 0
        for request in requests:
            metrics[request.status.value] += 1
            if request.is_overdue(now):
                overdue += 1
        metrics['overdue'] = overdue
        metrics['total'] = len(requests)
        return metrics

    # Writes

    def request_approval(self, instance_id: str, step_id: str, approver_id: str,
                         due_date: Optional[datetime] = None) -> ApprovalRequest:
        """
        Open a pending request for an approval step.

        Raises:
            ValidationError: missing approver
            ConflictError: the step already has a pending request
        """
        if not approver_id:
            raise ValidationError("Approval step has no approver", {'step_id': step_id})
        if self.pending_for_step(step_id) is not None:
            raise ConflictError(f"Step {step_id} already has a pending approval", {'step_id': step_id})

        request = self._create(instance_id, step_id, approver_id, due_date)
        self._audit(AuditEventType.APPROVAL_REQUESTED, request.id,
                    {'instance_id': instance_id, 'step_id': step_id, 'approver_id': approver_id},
                    "system")
        self.publish_event(DomainEvent.APPROVAL_REQUESTED, "approval", request.id,
                           {'instance_id': instance_id, 'approver_id': approver_id})
        logger.info(f"Approval {request.id} requested from {approver_id} for step {step_id}")
        return request

    def decide(self, request_id: str, decision: Union[ApprovalDecision, str], decided_by: str,
               comments: Optional[str] = None, reason: Optional[str] = None) -> ApprovalRequest:
        """
        Approve or reject a pending request. The owning step completes on
        approval and fails on rejection.

        Raises:
            ValidationError: unknown decision
            InvalidTransitionError: request is not pending
            AuthorizationError: ``decided_by`` is not the approver
        """
        if isinstance(decision, str):
            try:
                decision = ApprovalDecision(decision.lower())
            except ValueError:
                raise ValidationError(f"Invalid decision: {decision}")

        def record(request: ApprovalRequest) -> Tuple[bool, ApprovalRequest]:
            self._require_pending(request)
            if request.approver_id != decided_by:
                raise AuthorizationError(
                    f"User {decided_by} is not the approver of request {request.id}"
                )
            request.status = ApprovalStatus(decision.value)
            request.responded_at = utcnow()
            request.decided_by = decided_by
            request.comments = comments
            request.reason = reason
            return True, request

        request = self._mutate(request_id, record)

        audit_type = (AuditEventType.APPROVAL_APPROVED if decision == ApprovalDecision.APPROVED
                      else AuditEventType.APPROVAL_REJECTED)
        self._audit(audit_type, request.id,
                    {'instance_id': request.instance_id, 'comments': comments, 'reason': reason},
                    decided_by)
        self.publish_event(DomainEvent.APPROVAL_DECIDED, "approval", request.id,
                           {'decision': decision.value, 'decided_by': decided_by})
        log_action(
            logger, "info", f"Approval {request.id} {decision.value}",
            user_id=decided_by, action="decide_approval", resource=f"approval:{request.id}",
            instance_id=request.instance_id, step_id=request.step_id
        )

        if self._resolver is not None:
            step_status = StepStatus.COMPLETED if decision == ApprovalDecision.APPROVED else StepStatus.FAILED
            self._resolver(request.instance_id, request.step_id, step_status, {
                'approval_id': request.id,
                'decision': decision.value,
                'decided_by': decided_by,
                'comments': comments,
                'reason': reason
            })
        return request

    def delegate(self, request_id: str, new_approver_id: str, reason: Optional[str],
                 delegated_by: str) -> ApprovalRequest:
        """
        Hand a pending request to another approver. Returns the new pending
        request, which keeps the original due date.

        Raises:
            AuthorizationError: ``delegated_by`` is not the current approver
        """
        return self._reassign(request_id, new_approver_id, reason, delegated_by,
                              check_owner=True, audit_type=AuditEventType.APPROVAL_DELEGATED)

    def escalate(self, request_id: str, escalate_to: str,
                 reason: str = "Escalated due to SLA breach") -> ApprovalRequest:
        """System-initiated delegation; no ownership check"""
        return self._reassign(request_id, escalate_to, reason, "system",
                              check_owner=False, audit_type=AuditEventType.APPROVAL_ESCALATED)

    def bulk_approve(self, request_ids: List[str], approver_id: str,
                     comments: Optional[str] = None) -> Dict[str, Any]:
        """Approve several requests; individual failures are logged and skipped"""
        approved, failed = [], []
        for request_id in request_ids:
            try:
                self.decide(request_id, ApprovalDecision.APPROVED, approver_id, comments=comments)
                approved.append(request_id)
            except WorkflowError as e:
                logger.warning(f"Bulk approval of {request_id} failed: {e.message}")
                failed.append({'id': request_id, 'code': e.code, 'error': e.message})
        return {'approved': approved, 'failed': failed}

    def withdraw_pending(self, instance_id: str, reason: str) -> int:
        """
        Close every pending request of a cancelled instance without touching
        its steps. Returns the number withdrawn.
        """
        withdrawn = 0
        for request in self._find(instance_id=instance_id, status=ApprovalStatus.PENDING.value):
            def close(current: ApprovalRequest) -> Tuple[bool, bool]:
                if current.status != ApprovalStatus.PENDING:
                    return False, False
                current.status = ApprovalStatus.REJECTED
                current.responded_at = utcnow()
                current.decided_by = "system"
                current.reason = f"Workflow cancelled: {reason}"
                return True, True

            if self._mutate(request.id, close):
                withdrawn += 1
                self._audit(AuditEventType.APPROVAL_WITHDRAWN, request.id,
                            {'instance_id': instance_id, 'reason': reason}, "system")
        if withdrawn:
            logger.info(f"Withdrew {withdrawn} pending approval(s) of instance {instance_id}")
        return withdrawn

    # Internals

    def _reassign(self, request_id: str, new_approver_id: str, reason: Optional[str],
                  actor: str, check_owner: bool, audit_type: AuditEventType) -> ApprovalRequest:
        if not new_approver_id:
            raise ValidationError("A new approver is required")

        def mark_delegated(request: ApprovalRequest) -> Tuple[bool, ApprovalRequest]:
            self._require_pending(request)
            if check_owner and request.approver_id != actor:
                raise AuthorizationError(
                    f"User {actor} is not the approver of request {request.id}"
                )
            if request.approver_id == new_approver_id:
                raise ValidationError("Cannot delegate a request to its current approver")
            request.status = ApprovalStatus.DELEGATED
            request.delegated_to = new_approver_id
            request.responded_at = utcnow()
            request.decided_by = actor
            request.reason = reason
            return True, request

        previous = self._mutate(request_id, mark_delegated)
        replacement = self._create(previous.instance_id, previous.step_id, new_approver_id,
                                   previous.due_date, delegated_from=previous.id)

        self._audit(audit_type, previous.id,
                    {'to': new_approver_id, 'new_request_id': replacement.id, 'reason': reason},
                    actor)
        self.publish_event(DomainEvent.APPROVAL_DELEGATED, "approval", previous.id,
                           {'to': new_approver_id, 'new_request_id': replacement.id})
        logger.info(f"Approval {previous.id} reassigned to {new_approver_id} as {replacement.id}")
        return replacement

    def _create(self, instance_id: str, step_id: str, approver_id: str,
                due_date: Optional[datetime], delegated_from: Optional[str] = None) -> ApprovalRequest:
        now = utcnow()
        due_date = as_utc(due_date)
        if due_date is None and self.default_due_hours:
            due_date = now + timedelta(hours=self.default_due_hours)
        request = ApprovalRequest(
            id=new_id(),
            created_at=now,
            updated_at=now,
            instance_id=instance_id,
            step_id=step_id,
            approver_id=approver_id,
            requested_at=now,
            due_date=due_date,
            delegated_from=delegated_from
        )
        self.storage.save(self.TABLE, request.id, request.to_dict())
        return request

    @staticmethod
    def _require_pending(request: ApprovalRequest) -> None:
        if request.status != ApprovalStatus.PENDING:
            raise InvalidTransitionError(
                f"Approval request {request.id} is already {request.status.value}",
                {'request_id': request.id, 'status': request.status.value}
            )

    def _mutate(self, request_id: str,
                fn: Callable[[ApprovalRequest], Tuple[bool, T]]) -> T:
        attempts = 1 + max(0, self.conflict_retries)
        for _ in range(attempts):
            request = self.get_approval(request_id)
            expected = request.revision
            write, value = fn(request)
            if not write:
                return value
            request.revision = expected + 1
            request.updated_at = utcnow()
            if self.storage.compare_and_swap(self.TABLE, request_id, expected, request.to_dict()):
                return value
            logger.warning(f"Conflict writing approval {request_id}, retrying")
        raise ConflictError(f"Approval request {request_id} was modified concurrently",
                            {'request_id': request_id})

    def _audit(self, event_type: AuditEventType, request_id: str,
               metadata: Dict[str, Any], user_id: Optional[str]) -> None:
        if self.audit:
            self.audit.log_event(event_type, 'approval_request', request_id, metadata, user_id)
