"""
SLA Monitor Module

Detects instances, steps and approvals that ran past their due dates. Only the
instance breach flag is persisted (through the Instance Engine); step and
approval lateness is computed at read time. ``SLAScheduler`` runs the checks
on a background thread, and each pass also resumes delay steps that are due.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .actions import ActionExecutor
from .approvals import ApprovalService
from .engine import InstanceEngine
from .events import DomainEvent, EventPublisherMixin
from .exceptions import ValidationError
from .models import StepStatus, TERMINAL_STATUSES, WorkflowInstance, WorkflowStatus, as_utc, utcnow

logger = logging.getLogger("workflow.sla")


@dataclass
class SLAReport:
    """Outcome of one monitoring run"""
    checked_at: datetime
    breached_instances: List[str] = field(default_factory=list)
    overdue_steps: List[Dict[str, Any]] = field(default_factory=list)
    overdue_approvals: List[str] = field(default_factory=list)
    resumed_steps: List[str] = field(default_factory=list)
    reminders_sent: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checked_at': self.checked_at.isoformat(),
            'breached_instances': list(self.breached_instances),
            'overdue_steps': list(self.overdue_steps),
            'overdue_approvals': list(self.overdue_approvals),
            'resumed_steps': list(self.resumed_steps),
            'reminders_sent': self.reminders_sent
        }


def _hours_between(start: datetime, end: datetime) -> float:
    return round((end - start).total_seconds() / 3600, 2)


class SLAMonitor(EventPublisherMixin):
    """Breach detection, overdue listings, SLA metrics and reminders"""

    def __init__(self, engine: InstanceEngine, approvals: ApprovalService,
                 actions: Optional[ActionExecutor] = None, reminder_window_hours: int = 24):
        self.engine = engine
        self.approvals = approvals
        self.actions = actions
        self.reminder_window_hours = reminder_window_hours

    def check_breaches(self, now: Optional[datetime] = None) -> List[str]:
        """
        Flag running instances whose due date has passed. Already flagged
        instances are left untouched, so repeated runs are no-ops.

        Returns:
            Ids of the instances flagged by this run
        """
        now = as_utc(now) or utcnow()
        breached = []
        for instance in self.engine.list_instances(status=WorkflowStatus.RUNNING):
            if instance.sla_breached or instance.due_date is None or instance.due_date >= now:
                continue
            if not self.engine.mark_sla_breached(instance.id, now):
                continue
            breached.append(instance.id)
            logger.warning(f"Workflow instance {instance.id} breached its SLA (due {instance.due_date.isoformat()})")
            self.publish_event(DomainEvent.SLA_BREACHED, "instance", instance.id,
                               {'due_date': instance.due_date.isoformat(), 'breached_at': now.isoformat()})
            self._notify(
                [instance.initiated_by],
                "Workflow SLA Breach",
                f'Workflow "{instance.name}" has breached its SLA deadline',
                {'instance_id': instance.id, 'type': 'instance'}
            )
        return breached

    def check_step_breaches(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Running steps past their due date; observational only"""
        now = as_utc(now) or utcnow()
        overdue = []
        for instance in self.engine.list_instances(status=WorkflowStatus.RUNNING):
            for step in instance.steps:
                if step.status == StepStatus.RUNNING and step.due_date and step.due_date < now:
                    overdue.append({
                        'instance_id': instance.id,
                        'step_id': step.id,
                        'name': step.name,
                        'assignee': step.assignee,
                        'due_date': step.due_date.isoformat(),
                        'hours_overdue': _hours_between(step.due_date, now)
                    })
        return overdue

    def check_approval_breaches(self, now: Optional[datetime] = None) -> List[str]:
        return [request.id for request in self.approvals.list_overdue(as_utc(now) or utcnow())]

    def run_checks(self, now: Optional[datetime] = None) -> SLAReport:
        now = as_utc(now) or utcnow()
        report = SLAReport(checked_at=now)
        report.breached_instances = self.check_breaches(now)
        report.overdue_steps = self.check_step_breaches(now)
        report.overdue_approvals = self.check_approval_breaches(now)
        report.resumed_steps = self.engine.resume_due_delays(now)
        logger.info(
            f"SLA check: {len(report.breached_instances)} new breach(es), "
            f"{len(report.overdue_steps)} overdue step(s), "
            f"{len(report.overdue_approvals)} overdue approval(s), "
            f"{len(report.resumed_steps)} delay step(s) resumed"
        )
        return report

    def get_overdue_items(self, now: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
        now = as_utc(now) or utcnow()
        instances = []
        for instance in self.engine.list_instances():
            if instance.status in TERMINAL_STATUSES or not instance.due_date or instance.due_date >= now:
                continue
            instances.append({
                'id': instance.id,
                'name': instance.name,
                'status': instance.status.value,
                'due_date': instance.due_date.isoformat(),
                'hours_overdue': _hours_between(instance.due_date, now),
                'sla_breached': instance.sla_breached
            })

        approvals = [
            {
                'id': request.id,
                'instance_id': request.instance_id,
                'approver_id': request.approver_id,
                'due_date': request.due_date.isoformat(),
                'hours_overdue': _hours_between(request.due_date, now)
            }
            for request in self.approvals.list_overdue(now)
        ]
        return {'instances': instances, 'steps': self.check_step_breaches(now), 'approvals': approvals}

    def get_sla_metrics(self, period: str = "day", now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        SLA metrics for instances created since the start of the current
        day, week (Monday) or month.
        """
        now = as_utc(now) or utcnow()
        period_start = _period_start(period, now)
        instances = [i for i in self.engine.list_instances() if i.created_at >= period_start]

        total = len(instances)
        on_time = sum(1 for i in instances if _completed_on_time(i))
        breaches = sum(1 for i in instances if i.sla_breached)
        durations = [
            _hours_between(i.started_at, i.completed_at)
            for i in instances
            if i.status == WorkflowStatus.COMPLETED and i.started_at and i.completed_at
        ]

        return {
            'period': period,
            'period_start': period_start.isoformat(),
            'total_instances': total,
            'on_time_completions': on_time,
            'sla_breaches': breaches,
            'average_completion_hours': round(sum(durations) / len(durations), 2) if durations else 0.0,
            'sla_compliance_rate': round(on_time / total * 100, 2) if total else 0.0
        }

    def send_reminders(self, within_hours: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Remind initiators and approvers of items falling due inside the window"""
        now = as_utc(now) or utcnow()
        horizon = now + timedelta(hours=within_hours or self.reminder_window_hours)
        sent = 0

        for instance in self.engine.list_instances(status=WorkflowStatus.RUNNING):
            if instance.due_date and now <= instance.due_date < horizon:
                if self._notify([instance.initiated_by], "Workflow due soon",
                                f'Workflow "{instance.name}" is due {instance.due_date.isoformat()}',
                                {'instance_id': instance.id, 'type': 'instance'}):
                    sent += 1

        for request in self.approvals.list_pending():
            if request.due_date and now <= request.due_date < horizon:
                if self._notify([request.approver_id], "Approval due soon",
                                f"Approval request {request.id} is due {request.due_date.isoformat()}",
                                {'approval_id': request.id, 'type': 'approval'}):
                    sent += 1
        return sent

    def _notify(self, recipients: List[str], subject: str, message: str,
                data: Dict[str, Any]) -> bool:
        if self.actions is None:
            return False
        try:
            self.actions.send_notification("in_app", recipients, subject, message, data)
            return True
        except Exception as e:
            logger.error(f"SLA notification '{subject}' failed: {e}")
            return False


def _completed_on_time(instance: WorkflowInstance) -> bool:
    if instance.status != WorkflowStatus.COMPLETED or instance.completed_at is None:
        return False
    return instance.due_date is None or instance.completed_at <= instance.due_date


def _period_start(period: str, now: datetime) -> datetime:
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "day":
        return day_start
    if period == "week":
        return day_start - timedelta(days=day_start.weekday())
    if period == "month":
        return day_start.replace(day=1)
    raise ValidationError(f"Invalid period: {period}", {'allowed': ['day', 'week', 'month']})


class SLAScheduler:
    """Runs ``SLAMonitor.run_checks`` on a daemon thread"""

    def __init__(self, monitor: SLAMonitor, interval_seconds: float = 300):
        self.monitor = monitor
        self.interval_seconds = interval_seconds
        self.last_report: Optional[SLAReport] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.RLock()

    def run_once(self) -> Optional[SLAReport]:
        """One monitoring pass; errors are logged and swallowed so the loop survives"""
        try:
            self.last_report = self.monitor.run_checks()
            return self.last_report
        except Exception as e:
            logger.error(f"SLA check run failed: {e}", exc_info=True)
            return None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval_seconds)

    def start(self) -> None:
        with self._lock:
            if self.is_running():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name="sla-scheduler")
            self._thread.daemon = True
            self._thread.start()
            logger.info(f"SLA scheduler started (every {self.interval_seconds}s)")

    def stop(self) -> None:
        with self._lock:
            self._stop_event.set()
            if self._thread:
                self._thread.join(timeout=5.0)
                self._thread = None
            logger.info("SLA scheduler stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
