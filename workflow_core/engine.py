"""
Instance Engine

Owns the lifecycle of workflow instances:

    pending -> running -> completed | failed | cancelled
    pending -> cancelled

Every write goes through a compare-and-set on the instance ``revision``. A
lost race raises ``ConflictError`` internally and the mutation is re-applied
on a fresh copy of the instance (``conflict_retries`` extra attempts).

Steps are driven by ``advance``: eligible steps are claimed (written as
running), executed outside the write, and their outcome is applied with a
second compare-and-set that is dropped if the instance was cancelled or the
step was resolved meanwhile. Delay steps stay running until
``resume_due_delays`` sees their ``resume_at`` pass.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union, TYPE_CHECKING

from .audit import AuditTrail, AuditEventType
from .definitions import DefinitionStore
from .events import DomainEvent, EventPublisherMixin
from .exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError, WorkflowError
from .executor import StepExecutor, StepOutcome
from .graph import topological_order
from .logging_config import get_logger, log_action
from .models import (
    Priority, SATISFIED_STEP_STATUSES, StepInstance, StepKind, StepStatus, WorkflowInstance,
    WorkflowStatus, as_utc, new_id, parse_datetime, utcnow
)
from .storage import StorageInterface

if TYPE_CHECKING:
    from .approvals import ApprovalService

logger = get_logger("workflow.engine")

T = TypeVar("T")

# Attempts to record an executed step's outcome, independent of conflict_retries
MAX_OUTCOME_ATTEMPTS = 100

_STEP_EVENTS = {
    StepStatus.RUNNING: (DomainEvent.STEP_STARTED, AuditEventType.STEP_STARTED),
    StepStatus.COMPLETED: (DomainEvent.STEP_COMPLETED, AuditEventType.STEP_COMPLETED),
    StepStatus.FAILED: (DomainEvent.STEP_FAILED, AuditEventType.STEP_FAILED),
    StepStatus.SKIPPED: (DomainEvent.STEP_SKIPPED, AuditEventType.STEP_SKIPPED),
}

_INSTANCE_EVENTS = {
    WorkflowStatus.COMPLETED: (DomainEvent.INSTANCE_COMPLETED, AuditEventType.INSTANCE_COMPLETED),
    WorkflowStatus.FAILED: (DomainEvent.INSTANCE_FAILED, AuditEventType.INSTANCE_FAILED),
}


class InstanceEngine(EventPublisherMixin):
    """Creates, drives and terminates workflow instances"""

    TABLE = "workflow_instances"

    def __init__(self, storage: StorageInterface, definitions: DefinitionStore,
                 executor: Optional[StepExecutor] = None, audit: Optional[AuditTrail] = None,
                 conflict_retries: int = 1):
        self.storage = storage
        self.definitions = definitions
        self.executor = executor
        self.audit = audit
        self.conflict_retries = conflict_retries
        self._approvals: Optional['ApprovalService'] = None

    def set_executor(self, executor: StepExecutor) -> None:
        self.executor = executor

    def set_approvals(self, approvals: 'ApprovalService') -> None:
        """Approval subsystem used to withdraw pending requests on cancel"""
        self._approvals = approvals

    # Reads

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        data = self.storage.load(self.TABLE, instance_id)
        if not data:
            raise NotFoundError("Workflow instance", instance_id)
        return WorkflowInstance.from_dict(data)

    def list_instances(self, status: Optional[WorkflowStatus] = None,
                       definition_id: Optional[str] = None,
                       initiated_by: Optional[str] = None,
                       limit: Optional[int] = None, offset: int = 0) -> List[WorkflowInstance]:
        """List instances, newest first"""
        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = status.value
        if definition_id:
            filters['definition_id'] = definition_id
        if initiated_by:
            filters['initiated_by'] = initiated_by

        instances = [WorkflowInstance.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        instances.sort(key=lambda i: i.created_at, reverse=True)
        if limit is not None:
            return instances[offset:offset + limit]
        return instances[offset:]

    # Lifecycle

    def create_instance(self, definition_id: str, initiated_by: str, name: Optional[str] = None,
                        priority: Union[Priority, str] = Priority.NORMAL,
                        due_date: Optional[datetime] = None,
                        context: Optional[Dict[str, Any]] = None,
                        company_id: Optional[str] = None) -> WorkflowInstance:
        """
        Snapshot a definition into a new pending instance.

        Raises:
            NotFoundError: unknown definition
            ValidationError: inactive definition, bad priority or cyclic graph
        """
        definition = self.definitions.get_definition(definition_id)
        if not definition.is_active:
            raise ValidationError(f"Workflow definition {definition_id} is not active")
        if not initiated_by:
            raise ValidationError("initiated_by is required")
        if isinstance(priority, str):
            try:
                priority = Priority(priority)
            except ValueError:
                raise ValidationError(f"Invalid priority: {priority}")

        order = topological_order(definition.graph)
        now = utcnow()
        instance_id = new_id()
        step_ids = {node_id: new_id() for node_id in order}

        steps = []
        for node_id in order:
            node = definition.graph.node(node_id)
            steps.append(StepInstance(
                id=step_ids[node_id],
                instance_id=instance_id,
                node_id=node_id,
                name=node.label,
                kind=node.kind,
                predecessors=[step_ids[p] for p in definition.graph.predecessors(node_id)],
                optional=node.optional,
                assignee=node.assignee,
                config=dict(node.config),
                fail_on_error=node.fail_on_error
            ))

        due_date = as_utc(due_date)
        if due_date is None and definition.sla_hours:
            due_date = now + timedelta(hours=definition.sla_hours)

        instance = WorkflowInstance(
            id=instance_id,
            created_at=now,
            updated_at=now,
            definition_id=definition.id,
            definition_name=definition.name,
            name=name or definition.name,
            initiated_by=initiated_by,
            priority=priority,
            steps=steps,
            context=dict(context or {}),
            due_date=due_date,
            company_id=company_id or definition.company_id
        )
        self.storage.save(self.TABLE, instance.id, instance.to_dict())

        self._audit(AuditEventType.INSTANCE_CREATED, instance.id,
                    {'definition_id': definition.id, 'steps': len(steps)}, initiated_by)
        self.publish_event(DomainEvent.INSTANCE_CREATED, "instance", instance.id,
                           {'definition_id': definition.id, 'initiated_by': initiated_by})
        log_action(
            logger, "info", f"Created workflow instance {instance.id}",
            user_id=initiated_by, action="create_instance", instance_id=instance.id,
            extra={'definition_id': definition.id, 'priority': priority.value, 'steps': len(steps)}
        )
        return instance

    def start_instance(self, instance_id: str, started_by: Optional[str] = None) -> WorkflowInstance:
        """
        Move a pending instance to running and advance it.

        Raises:
            InvalidTransitionError: if the instance is not pending
        """
        def start(instance: WorkflowInstance) -> Tuple[bool, None]:
            if instance.status != WorkflowStatus.PENDING:
                raise InvalidTransitionError(
                    f"Cannot start instance in status {instance.status.value}",
                    {'instance_id': instance.id, 'status': instance.status.value}
                )
            instance.status = WorkflowStatus.RUNNING
            instance.started_at = utcnow()
            return True, None

        self._mutate(instance_id, start)
        self._audit(AuditEventType.INSTANCE_STARTED, instance_id, {}, started_by)
        self.publish_event(DomainEvent.INSTANCE_STARTED, "instance", instance_id, {})
        return self.advance(instance_id)

    def advance(self, instance_id: str) -> WorkflowInstance:
        """
        Run every step whose dependencies are satisfied until nothing new is
        eligible. Terminal instances are returned unchanged.

        Raises:
            InvalidTransitionError: if the instance has not been started
        """
        instance = self.get_instance(instance_id)
        if instance.status == WorkflowStatus.PENDING:
            raise InvalidTransitionError(
                "Instance must be started before it can advance", {'instance_id': instance_id}
            )
        if instance.is_terminal:
            return instance
        if self.executor is None:
            raise WorkflowError("No step executor configured")

        while True:
            claimed = self._claim_eligible(instance_id)
            if not claimed:
                break
            for step in claimed:
                snapshot = self.get_instance(instance_id)
                try:
                    outcome = self.executor.execute(snapshot, step)
                except WorkflowError as e:
                    logger.error(f"Step {step.id} of instance {instance_id} errored: {e.message}")
                    outcome = StepOutcome(StepStatus.FAILED, {'error': e.message, 'code': e.code}, utcnow())
                self._apply_outcome(instance_id, step.id, outcome)

        return self._settle(instance_id)

    def resolve_step(self, instance_id: str, step_id: str, status: StepStatus,
                     result: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        """
        Record the terminal status of a suspended (running) step and advance.
        Late results for terminal instances are ignored.

        Raises:
            NotFoundError: unknown instance or step
            InvalidTransitionError: step is not running or status is not terminal
        """
        if status not in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED):
            raise InvalidTransitionError(f"Cannot resolve a step to {status.value}")

        instance = self.get_instance(instance_id)
        if instance.is_terminal:
            logger.info(
                f"Ignoring result for step {step_id}: instance {instance_id} is {instance.status.value}"
            )
            return instance
        step = instance.get_step(step_id)
        if step is None:
            raise NotFoundError("Step", step_id)
        if step.status != StepStatus.RUNNING:
            raise InvalidTransitionError(
                f"Step {step_id} is {step.status.value}, not running",
                {'step_id': step_id, 'status': step.status.value}
            )

        self._apply_outcome(instance_id, step_id, StepOutcome(status, dict(result or {}), utcnow()))
        return self.advance(instance_id)

    def resume_due_delays(self, now: Optional[datetime] = None) -> List[str]:
        """
        Complete running delay steps whose ``resume_at`` has passed and
        advance their instances. A step resolved by someone else in the
        meantime is skipped.

        Returns:
            Ids of the steps resumed by this call
        """
        now = as_utc(now) or utcnow()
        resumed = []
        for instance in self.list_instances(status=WorkflowStatus.RUNNING):
            for step in instance.steps:
                if step.kind != StepKind.DELAY or step.status != StepStatus.RUNNING:
                    continue
                resume_at = parse_datetime(step.result.get('resume_at'))
                if resume_at is None or resume_at > now:
                    continue
                try:
                    self.resolve_step(instance.id, step.id, StepStatus.COMPLETED,
                                      {**step.result, 'resumed_at': now.isoformat()})
                except (ConflictError, InvalidTransitionError) as e:
                    logger.info(f"Delay step {step.id} of instance {instance.id} not resumed: {e.message}")
                    continue
                resumed.append(step.id)
        return resumed

    def cancel_instance(self, instance_id: str, reason: str, cancelled_by: str) -> WorkflowInstance:
        """
        Cancel a non-terminal instance. Open steps become skipped and pending
        approvals of the instance are withdrawn.

        Raises:
            InvalidTransitionError: if the instance is already terminal
        """
        skipped: List[StepInstance] = []

        def cancel(instance: WorkflowInstance) -> Tuple[bool, WorkflowInstance]:
            if instance.is_terminal:
                raise InvalidTransitionError(
                    f"Cannot cancel instance in status {instance.status.value}",
                    {'instance_id': instance.id, 'status': instance.status.value}
                )
            now = utcnow()
            skipped.clear()
            for step in instance.steps:
                if step.status in (StepStatus.PENDING, StepStatus.RUNNING):
                    step.status = StepStatus.SKIPPED
                    step.completed_at = now
                    step.result = {**step.result, 'skipped_reason': 'cancelled'}
                    skipped.append(step)
            instance.status = WorkflowStatus.CANCELLED
            instance.cancelled_at = now
            instance.cancelled_by = cancelled_by
            instance.cancel_reason = reason
            return True, instance

        instance = self._mutate(instance_id, cancel)

        if self._approvals is not None:
            self._approvals.withdraw_pending(instance_id, reason)

        self._audit(AuditEventType.INSTANCE_CANCELLED, instance_id,
                    {'reason': reason, 'skipped_steps': [s.id for s in skipped]}, cancelled_by)
        self.publish_event(DomainEvent.INSTANCE_CANCELLED, "instance", instance_id,
                           {'reason': reason, 'cancelled_by': cancelled_by})
        logger.info(f"Cancelled workflow instance {instance_id}: {reason}")
        return instance

    def mark_sla_breached(self, instance_id: str, at: Optional[datetime] = None) -> bool:
        """Set the SLA breach flag once. Returns False if it was already set."""
        at = as_utc(at) or utcnow()

        def mark(instance: WorkflowInstance) -> Tuple[bool, bool]:
            if instance.sla_breached:
                return False, False
            instance.sla_breached = True
            instance.sla_breached_at = at
            return True, True

        changed = self._mutate(instance_id, mark)
        if changed:
            self._audit(AuditEventType.SLA_BREACHED, instance_id, {'breached_at': at}, "system")
        return changed

    # Internals

    def _claim_eligible(self, instance_id: str) -> List[StepInstance]:
        """Write every eligible pending step as running; return the claimed steps"""
        def claim(instance: WorkflowInstance) -> Tuple[bool, List[StepInstance]]:
            if instance.status != WorkflowStatus.RUNNING:
                return False, []
            if any(s.status == StepStatus.FAILED for s in instance.steps):
                return False, []

            statuses = {s.id: s.status for s in instance.steps}
            now = utcnow()
            claimed = []
            for step in instance.steps:
                if step.status != StepStatus.PENDING:
                    continue
                if all(statuses.get(p) in SATISFIED_STEP_STATUSES for p in step.predecessors):
                    step.status = StepStatus.RUNNING
                    step.started_at = now
                    hours = self._node_due_hours(instance, step)
                    if hours:
                        step.due_date = now + timedelta(hours=hours)
                    claimed.append(step)
            return bool(claimed), claimed

        claimed = self._mutate(instance_id, claim)
        for step in claimed:
            self._step_changed(instance_id, step)
        return claimed

    def _apply_outcome(self, instance_id: str, step_id: str, outcome: StepOutcome) -> bool:
        """
        Apply an executed step's outcome. Dropped (returns False) when the
        instance is terminal or the step is no longer running. Conflicting
        writes are retried up to ``MAX_OUTCOME_ATTEMPTS`` times so a step whose
        side effect already ran is not left running.
        """
        changes: Dict[str, Any] = {}

        def apply(instance: WorkflowInstance) -> Tuple[bool, bool]:
            changes.clear()
            step = instance.get_step(step_id)
            if instance.is_terminal or step is None or step.status != StepStatus.RUNNING:
                return False, False

            if outcome.status == StepStatus.RUNNING:
                step.result = {**step.result, **outcome.result}
                return True, True

            step.completed_at = outcome.completed_at or utcnow()
            step.result = dict(outcome.result)
            if outcome.status == StepStatus.FAILED and step.optional:
                step.status = StepStatus.SKIPPED
                step.result['optional_failure'] = True
            else:
                step.status = outcome.status
            changes['step'] = step
            changes['instance_status'] = self._refresh_status(instance)
            return True, True

        applied = self._mutate(instance_id, apply, attempts=MAX_OUTCOME_ATTEMPTS)
        if not applied:
            logger.info(f"Dropped outcome for step {step_id} of instance {instance_id}")
            return False
        if 'step' in changes:
            self._step_changed(instance_id, changes['step'])
        self._instance_changed(instance_id, changes.get('instance_status'))
        return True

    def _settle(self, instance_id: str) -> WorkflowInstance:
        """Recompute the instance status when no more steps can start"""
        new_status: List[Optional[WorkflowStatus]] = [None]

        def settle(instance: WorkflowInstance) -> Tuple[bool, WorkflowInstance]:
            new_status[0] = self._refresh_status(instance)
            return new_status[0] is not None, instance

        instance = self._mutate(instance_id, settle)
        self._instance_changed(instance_id, new_status[0])
        return instance

    def _refresh_status(self, instance: WorkflowInstance) -> Optional[WorkflowStatus]:
        """Mutates ``instance`` to its derived status; returns the new terminal status or None"""
        if instance.status != WorkflowStatus.RUNNING:
            return None

        if all(s.status in SATISFIED_STEP_STATUSES for s in instance.steps):
            instance.status = WorkflowStatus.COMPLETED
            instance.completed_at = utcnow()
            return instance.status

        failed = any(s.status == StepStatus.FAILED for s in instance.steps)
        running = any(s.status == StepStatus.RUNNING for s in instance.steps)
        if failed and not running:
            now = utcnow()
            for step in instance.steps:
                if step.status == StepStatus.PENDING:
                    step.status = StepStatus.SKIPPED
                    step.completed_at = now
                    step.result = {**step.result, 'skipped_reason': 'upstream_failure'}
            instance.status = WorkflowStatus.FAILED
            instance.completed_at = now
            return instance.status
        return None

    def _node_due_hours(self, instance: WorkflowInstance, step: StepInstance) -> Optional[int]:
        try:
            definition = self.definitions.get_definition(instance.definition_id)
        except NotFoundError:
            return None
        node = definition.graph.node(step.node_id)
        return node.due_in_hours if node else None

    def _mutate(self, instance_id: str,
                fn: Callable[[WorkflowInstance], Tuple[bool, T]],
                attempts: Optional[int] = None) -> T:
        """
        Load, mutate and compare-and-set an instance. ``fn`` returns
        ``(write, value)``; when ``write`` is False nothing is persisted.
        """
        attempts = attempts or 1 + max(0, self.conflict_retries)
        for attempt in range(attempts):
            instance = self.get_instance(instance_id)
            expected = instance.revision
            write, value = fn(instance)
            if not write:
                return value
            instance.revision = expected + 1
            instance.updated_at = utcnow()
            if self.storage.compare_and_swap(self.TABLE, instance_id, expected, instance.to_dict()):
                return value
            logger.warning(
                f"Conflict writing instance {instance_id} (attempt {attempt + 1}/{attempts})"
            )
        raise ConflictError(
            f"Instance {instance_id} was modified concurrently",
            {'instance_id': instance_id}
        )

    def _step_changed(self, instance_id: str, step: StepInstance) -> None:
        events = _STEP_EVENTS.get(step.status)
        if not events:
            return
        domain_event, audit_event = events
        payload = {'instance_id': instance_id, 'node_id': step.node_id,
                   'kind': step.kind.value, 'status': step.status.value}
        self._audit(audit_event, step.id, payload, "system", entity_type='workflow_step')
        self.publish_event(domain_event, "step", step.id, payload)

    def _instance_changed(self, instance_id: str, status: Optional[WorkflowStatus]) -> None:
        events = _INSTANCE_EVENTS.get(status) if status else None
        if not events:
            return
        domain_event, audit_event = events
        self._audit(audit_event, instance_id, {'status': status.value}, "system")
        self.publish_event(domain_event, "instance", instance_id, {'status': status.value})
        logger.info(f"Workflow instance {instance_id} {status.value}")

    def _audit(self, event_type: AuditEventType, entity_id: str, metadata: Dict[str, Any],
               user_id: Optional[str], entity_type: str = 'workflow_instance') -> None:
        if self.audit:
            self.audit.log_event(event_type, entity_type, entity_id, metadata, user_id)
