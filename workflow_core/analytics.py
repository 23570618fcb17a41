"""
Workflow Analytics

Read-only metrics over instances: volume and timing, slowest steps per
definition and the critical (longest-duration) path of an instance.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from .definitions import DefinitionStore
from .engine import InstanceEngine
from .exceptions import NotFoundError
from .models import StepInstance, WorkflowStatus, as_utc, utcnow


def _duration_hours(started: Optional[datetime], finished: Optional[datetime]) -> float:
    if not started or not finished:
        return 0.0
    return max(0.0, (finished - started).total_seconds() / 3600)


class WorkflowAnalytics:

    def __init__(self, engine: InstanceEngine, definitions: DefinitionStore):
        self.engine = engine
        self.definitions = definitions

    def get_workflow_metrics(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
                             statuses: Optional[List[WorkflowStatus]] = None,
                             now: Optional[datetime] = None) -> Dict[str, Any]:
        """Instance counts and completion times, filtered by creation window and status"""
        now = as_utc(now) or utcnow()
        start, end = as_utc(start), as_utc(end)
        instances = self.engine.list_instances()
        if start:
            instances = [i for i in instances if i.created_at >= start]
        if end:
            instances = [i for i in instances if i.created_at <= end]
        if statuses:
            instances = [i for i in instances if i.status in statuses]

        active = [i for i in instances if i.status in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING)]
        completed = [i for i in instances if i.status == WorkflowStatus.COMPLETED]
        durations = [_duration_hours(i.started_at, i.completed_at) for i in completed]

        by_category: Dict[str, List[float]] = defaultdict(list)
        counts: Dict[str, int] = defaultdict(int)
        categories: Dict[str, str] = {}
        for instance in instances:
            if instance.definition_id not in categories:
                try:
                    categories[instance.definition_id] = self.definitions.get_definition(
                        instance.definition_id).category
                except NotFoundError:
                    categories[instance.definition_id] = "unknown"
            category = categories[instance.definition_id]
            counts[category] += 1
            if instance.status == WorkflowStatus.COMPLETED:
                by_category[category].append(_duration_hours(instance.started_at, instance.completed_at))

        return {
            'total_workflows': len({i.definition_id for i in instances}),
            'total_instances': len(instances),
            'active_instances': len(active),
            'completed_today': sum(
                1 for i in completed if i.completed_at and i.completed_at.date() == now.date()
            ),
            'overdue_instances': sum(1 for i in active if i.due_date and i.due_date < now),
            'sla_breaches': sum(1 for i in instances if i.sla_breached),
            'average_completion_hours': round(sum(durations) / len(durations), 2) if durations else 0.0,
            'by_category': [
                {
                    'category': category,
                    'count': count,
                    'average_hours': round(sum(by_category[category]) / len(by_category[category]), 2)
                    if by_category[category] else 0.0
                }
                for category, count in sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
            ]
        }

    def get_bottlenecks(self, definition_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Steps of a definition ordered by average time spent, slowest first"""
        timings: Dict[str, List[float]] = defaultdict(list)
        for instance in self.engine.list_instances(definition_id=definition_id):
            for step in instance.steps:
                if step.started_at and step.completed_at:
                    timings[step.name].append(_duration_hours(step.started_at, step.completed_at))

        bottlenecks = [
            {'step_name': name, 'average_hours': round(sum(values) / len(values), 4), 'count': len(values)}
            for name, values in timings.items()
        ]
        bottlenecks.sort(key=lambda b: b['average_hours'], reverse=True)
        return bottlenecks[:limit]

    def critical_path(self, instance_id: str) -> Dict[str, Any]:
        """
        Longest-duration chain through the step dependency graph of an
        instance. Steps without both timestamps count as zero hours.
        """
        instance = self.engine.get_instance(instance_id)
        steps = {s.id: s for s in instance.steps}

        best: Dict[str, float] = {}
        via: Dict[str, Optional[str]] = {}
        # Snapshot steps are stored in topological order
        for step in instance.steps:
            own = _duration_hours(step.started_at, step.completed_at)
            parent = max(step.predecessors, key=lambda p: best.get(p, 0.0), default=None)
            best[step.id] = own + (best.get(parent, 0.0) if parent else 0.0)
            via[step.id] = parent

        if not best:
            return {'steps': [], 'names': [], 'total_hours': 0.0}

        tail = max(best, key=best.get)
        path: List[StepInstance] = []
        current: Optional[str] = tail
        while current:
            path.append(steps[current])
            current = via[current]
        path.reverse()

        return {
            'steps': [s.id for s in path],
            'names': [s.name for s in path],
            'total_hours': round(best[tail], 4)
        }
