"""
Step Executor

Runs a single claimed step according to its kind and reports the outcome.
Approval steps suspend (the outcome stays ``running`` until a decision is
recorded); automation and notification steps call the injected
``ActionExecutor``. Collaborator errors end up in the step result, never raised.

Condition steps evaluate ``{field, operator, value}`` from the node config
against the instance context. Delay steps stay ``running`` with a
``resume_at`` timestamp until ``InstanceEngine.resume_due_delays`` completes
them.
"""

import logging
import operator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from .actions import ActionExecutor, LoggingActionExecutor
from .exceptions import ConflictError, ExternalActionError
from .models import (
    IMMEDIATE_KINDS, StepInstance, StepKind, StepStatus, WorkflowInstance, utcnow
)

if TYPE_CHECKING:
    from .approvals import ApprovalService

logger = logging.getLogger("workflow.executor")

CONDITION_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    'equals': operator.eq,
    'not_equals': operator.ne,
    'greater_than': operator.gt,
    'less_than': operator.lt,
    'contains': lambda actual, expected: str(expected) in str(actual),
}


def evaluate_condition(condition: Dict[str, Any], context: Dict[str, Any]) -> bool:
    """
    Compare ``context[condition['field']]`` with ``condition['value']``.

    A condition without field, operator or value is true. Values that cannot
    be ordered against each other make ``greater_than``/``less_than`` false.
    """
    name = condition.get('field')
    op = CONDITION_OPERATORS.get(condition.get('operator'))
    if not name or op is None or 'value' not in condition:
        return True
    try:
        return bool(op(context.get(name), condition['value']))
    except TypeError:
        return False


@dataclass
class StepOutcome:
    """Terminal (or suspended) result of executing one step"""
    status: StepStatus
    result: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None


class StepExecutor:
    """Executes claimed steps by kind"""

    def __init__(self, approvals: 'ApprovalService', actions: Optional[ActionExecutor] = None):
        self.approvals = approvals
        self.actions = actions or LoggingActionExecutor()

    def execute(self, instance: WorkflowInstance, step: StepInstance) -> StepOutcome:
        if step.kind in IMMEDIATE_KINDS:
            return StepOutcome(StepStatus.COMPLETED, {}, utcnow())
        if step.kind == StepKind.APPROVAL:
            return self._request_approval(instance, step)
        if step.kind == StepKind.AUTOMATION:
            return self._run_automation(instance, step)
        if step.kind == StepKind.NOTIFICATION:
            return self._send_notification(instance, step)
        if step.kind == StepKind.CONDITION:
            return self._evaluate_condition(instance, step)
        if step.kind == StepKind.DELAY:
            return self._start_delay(step)

        return StepOutcome(StepStatus.FAILED, {
            'error': f"Unsupported step kind: {step.kind.value}",
            'code': 'UNSUPPORTED_STEP'
        }, utcnow())

    def _request_approval(self, instance: WorkflowInstance, step: StepInstance) -> StepOutcome:
        try:
            request = self.approvals.request_approval(
                instance.id, step.id, step.assignee, due_date=step.due_date
            )
        except ConflictError:
            # Re-execution after a lost write: keep the request that already exists
            request = self.approvals.pending_for_step(step.id)
            if request is None:
                raise
        return StepOutcome(StepStatus.RUNNING, {
            'approval_id': request.id,
            'approver_id': request.approver_id
        })

    def _run_automation(self, instance: WorkflowInstance, step: StepInstance) -> StepOutcome:
        action = step.config.get('action') or step.name
        try:
            result = self.actions.run_automation(action, step.config, instance.context)
        except ExternalActionError as e:
            logger.warning(f"Automation '{action}' failed on step {step.id}: {e.message}")
            return StepOutcome(StepStatus.FAILED, {'error': e.message, 'code': e.code}, utcnow())
        except Exception as e:
            logger.error(f"Automation '{action}' raised on step {step.id}: {e}")
            return StepOutcome(StepStatus.FAILED, {
                'error': str(e), 'code': ExternalActionError.code
            }, utcnow())
        return StepOutcome(StepStatus.COMPLETED, result or {}, utcnow())

    def _send_notification(self, instance: WorkflowInstance, step: StepInstance) -> StepOutcome:
        config = step.config
        channel = config.get('channel', 'email')
        recipients = config.get('recipients') or [instance.initiated_by]
        subject = config.get('subject') or step.name
        message = config.get('message') or f"Workflow '{instance.name}' reached step '{step.name}'"

        try:
            result = self.actions.send_notification(
                channel, recipients, subject, message,
                {'instance_id': instance.id, 'step_id': step.id}
            )
        except Exception as e:
            error = e.message if isinstance(e, ExternalActionError) else str(e)
            logger.warning(f"Notification via {channel} failed on step {step.id}: {error}")
            if step.fail_on_error:
                return StepOutcome(StepStatus.FAILED, {
                    'error': error, 'code': ExternalActionError.code
                }, utcnow())
            return StepOutcome(StepStatus.COMPLETED, {
                'delivered': False, 'error': error
            }, utcnow())

        return StepOutcome(StepStatus.COMPLETED, result or {'delivered': True}, utcnow())

    def _evaluate_condition(self, instance: WorkflowInstance, step: StepInstance) -> StepOutcome:
        result = evaluate_condition(step.config, instance.context)
        logger.debug(f"Condition step {step.id} evaluated to {result}")
        return StepOutcome(StepStatus.COMPLETED, {'condition_result': result}, utcnow())

    def _start_delay(self, step: StepInstance) -> StepOutcome:
        minutes = step.config.get('delay_minutes') or 0
        if minutes <= 0:
            return StepOutcome(StepStatus.COMPLETED, {}, utcnow())
        resume_at = (step.started_at or utcnow()) + timedelta(minutes=minutes)
        return StepOutcome(StepStatus.RUNNING, {'resume_at': resume_at.isoformat()})
