"""
Workflow Domain Models

Definitions (a graph of step templates), instances (a running snapshot of a
definition), step instances and approval requests. Status sets are closed
enums; every persisted record carries a ``revision`` for compare-and-set writes.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageRecord


class StepKind(Enum):
    """Kinds of workflow steps"""
    START = "start"
    END = "end"
    TASK = "task"
    APPROVAL = "approval"
    AUTOMATION = "automation"
    NOTIFICATION = "notification"
    CONDITION = "condition"
    DELAY = "delay"


# Kinds that complete as soon as they are claimed
IMMEDIATE_KINDS = frozenset({StepKind.START, StepKind.END, StepKind.TASK})


class WorkflowStatus(Enum):
    """Status of entire workflow instances"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED
})


class Priority(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class StepStatus(Enum):
    """Status of individual workflow steps"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


# A dependency is satisfied once its step completed or was skipped
SATISFIED_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})
TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.FAILED})


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"


class ApprovalDecision(Enum):
    """Decisions an approver can take on a pending request"""
    APPROVED = "approved"
    REJECTED = "rejected"


class Visibility(Enum):
    PUBLIC = "public"
    PRIVATE = "private"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timezone-less datetimes are taken to be UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value))


@dataclass
class WorkflowNode:
    """A step template inside a definition graph"""
    id: str
    kind: StepKind
    label: str
    config: Dict[str, Any] = field(default_factory=dict)
    assignee: Optional[str] = None  # approver for approval nodes
    optional: bool = False
    due_in_hours: Optional[int] = None
    fail_on_error: bool = False  # notification nodes only

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['kind'] = self.kind.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowNode':
        return cls(
            id=data['id'],
            kind=StepKind(data['kind']),
            label=data.get('label', ''),
            config=dict(data.get('config') or {}),
            assignee=data.get('assignee'),
            optional=bool(data.get('optional', False)),
            due_in_hours=data.get('due_in_hours'),
            fail_on_error=bool(data.get('fail_on_error', False))
        )


@dataclass
class WorkflowEdge:
    """``target`` depends on ``source``"""
    source: str
    target: str
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'source': self.source, 'target': self.target}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowEdge':
        return cls(source=data['source'], target=data['target'], id=data.get('id') or new_id())


@dataclass
class WorkflowGraph:
    """Nodes and dependency edges of a definition"""
    nodes: List[WorkflowNode] = field(default_factory=list)
    edges: List[WorkflowEdge] = field(default_factory=list)

    def node(self, node_id: str) -> Optional[WorkflowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def predecessors(self, node_id: str) -> List[str]:
        """Ids of the nodes ``node_id`` depends on, in edge order"""
        return [edge.source for edge in self.edges if edge.target == node_id]

    def successors(self, node_id: str) -> List[str]:
        return [edge.target for edge in self.edges if edge.source == node_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nodes': [node.to_dict() for node in self.nodes],
            'edges': [edge.to_dict() for edge in self.edges]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowGraph':
        return cls(
            nodes=[WorkflowNode.from_dict(n) for n in data.get('nodes', [])],
            edges=[WorkflowEdge.from_dict(e) for e in data.get('edges', [])]
        )


@dataclass
class WorkflowDefinition(StorageRecord):
    """
    Versioned, reusable workflow blueprint.

    A definition with public visibility doubles as a template. The graph is
    never mutated in place: edits go through a new version or a clone.
    """
    name: str
    category: str
    graph: WorkflowGraph
    owner_id: str
    description: str = ""
    industry: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    visibility: Visibility = Visibility.PRIVATE
    version: int = 1
    usage_count: int = 0
    company_id: Optional[str] = None
    is_active: bool = True
    sla_hours: Optional[int] = None
    source_template_id: Optional[str] = None
    previous_version_id: Optional[str] = None
    revision: int = 0

    @property
    def is_public(self) -> bool:
        return self.visibility == Visibility.PUBLIC

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['graph'] = self.graph.to_dict()
        result['visibility'] = self.visibility.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowDefinition':
        data = dict(data)
        data['graph'] = WorkflowGraph.from_dict(data.get('graph') or {})
        data['visibility'] = Visibility(data.get('visibility', Visibility.PRIVATE.value))
        data['tags'] = list(data.get('tags') or [])
        return super().from_dict(data)


@dataclass
class StepInstance:
    """Runtime state of one node inside an instance"""
    id: str
    instance_id: str
    node_id: str
    name: str
    kind: StepKind
    status: StepStatus = StepStatus.PENDING
    predecessors: List[str] = field(default_factory=list)  # step ids
    optional: bool = False
    assignee: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    fail_on_error: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    result: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['kind'] = self.kind.value
        result['status'] = self.status.value
        result['started_at'] = _iso(self.started_at)
        result['completed_at'] = _iso(self.completed_at)
        result['due_date'] = _iso(self.due_date)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepInstance':
        data = dict(data)
        data['kind'] = StepKind(data['kind'])
        data['status'] = StepStatus(data['status'])
        for key in ('started_at', 'completed_at', 'due_date'):
            data[key] = parse_datetime(data.get(key))
        return cls(**data)


@dataclass
class WorkflowInstance(StorageRecord):
    """Running workflow instance with its ordered step snapshot"""
    definition_id: str
    definition_name: str
    name: str
    initiated_by: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    priority: Priority = Priority.NORMAL
    steps: List[StepInstance] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    due_date: Optional[datetime] = None
    sla_breached: bool = False
    sla_breached_at: Optional[datetime] = None
    company_id: Optional[str] = None
    revision: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress(self) -> float:
        """Percentage of completed steps, recomputed on every read"""
        if not self.steps:
            return 0.0
        done = sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)
        return round(done / len(self.steps) * 100, 2)

    def get_step(self, step_id: str) -> Optional[StepInstance]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        result['priority'] = self.priority.value
        result['steps'] = [step.to_dict() for step in self.steps]
        for key in ('started_at', 'completed_at', 'cancelled_at', 'due_date', 'sla_breached_at'):
            result[key] = _iso(getattr(self, key))
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowInstance':
        data = dict(data)
        data['status'] = WorkflowStatus(data['status'])
        data['priority'] = Priority(data.get('priority', Priority.NORMAL.value))
        data['steps'] = [StepInstance.from_dict(s) for s in data.get('steps', [])]
        for key in ('started_at', 'completed_at', 'cancelled_at', 'due_date', 'sla_breached_at'):
            data[key] = parse_datetime(data.get(key))
        return super().from_dict(data)


@dataclass
class ApprovalRequest(StorageRecord):
    """
    Pending or resolved approval for one approval step.

    Delegation never rewrites a request: the old one is marked delegated and a
    new pending one points back at it through ``delegated_from``.
    """
    instance_id: str
    step_id: str
    approver_id: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: datetime = field(default_factory=utcnow)
    due_date: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    comments: Optional[str] = None
    reason: Optional[str] = None
    delegated_from: Optional[str] = None
    delegated_to: Optional[str] = None
    revision: int = 0

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """Pure read-time check; never persisted"""
        if self.status != ApprovalStatus.PENDING or self.due_date is None:
            return False
        return (as_utc(now) or utcnow()) > self.due_date

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        for key in ('requested_at', 'due_date', 'responded_at'):
            result[key] = _iso(getattr(self, key))
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalRequest':
        data = dict(data)
        data['status'] = ApprovalStatus(data['status'])
        for key in ('requested_at', 'due_date', 'responded_at'):
            data[key] = parse_datetime(data.get(key))
        return super().from_dict(data)
