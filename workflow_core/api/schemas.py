"""
Pydantic schemas for API requests, and read-model serializers for responses
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..models import (
    ApprovalDecision, ApprovalRequest, Priority, StepKind, WorkflowDefinition, as_utc,
    WorkflowEdge, WorkflowGraph, WorkflowInstance, WorkflowNode
)


# Graph schemas
class NodeModel(BaseModel):
    id: str = Field(..., min_length=1)
    kind: StepKind
    label: str = Field(..., min_length=1)
    config: Dict[str, Any] = Field(default_factory=dict)
    assignee: Optional[str] = None
    optional: bool = False
    due_in_hours: Optional[int] = Field(None, gt=0)
    fail_on_error: bool = False


class EdgeModel(BaseModel):
    source: str
    target: str
    id: Optional[str] = None


class GraphModel(BaseModel):
    nodes: List[NodeModel]
    edges: List[EdgeModel] = Field(default_factory=list)

    def to_graph(self) -> WorkflowGraph:
        return WorkflowGraph(
            nodes=[
                WorkflowNode(
                    id=n.id, kind=n.kind, label=n.label, config=dict(n.config),
                    assignee=n.assignee, optional=n.optional,
                    due_in_hours=n.due_in_hours, fail_on_error=n.fail_on_error
                )
                for n in self.nodes
            ],
            edges=[
                WorkflowEdge(source=e.source, target=e.target, id=e.id) if e.id
                else WorkflowEdge(source=e.source, target=e.target)
                for e in self.edges
            ]
        )


# Definition and template schemas
class CreateDefinitionRequest(BaseModel):
    name: str
    category: str
    graph: GraphModel
    description: str = ""
    industry: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    is_public: bool = False
    sla_hours: Optional[int] = Field(None, gt=0)


class CreateVersionRequest(BaseModel):
    graph: Optional[GraphModel] = None


class UseTemplateRequest(BaseModel):
    name: str = Field(..., min_length=1)


class TemplateFromDefinitionRequest(BaseModel):
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    industry: Optional[str] = None
    tags: Optional[List[str]] = None
    is_public: bool = False


# Instance schemas
class CreateInstanceRequest(BaseModel):
    definition_id: str
    name: Optional[str] = None
    priority: Priority = Priority.NORMAL
    due_date: Optional[datetime] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    start: bool = False

    @field_validator("due_date")
    @classmethod
    def _due_date_in_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class CancelInstanceRequest(BaseModel):
    reason: str = Field(..., min_length=1)


# Approval schemas
class DecideRequest(BaseModel):
    decision: ApprovalDecision
    comments: Optional[str] = None
    reason: Optional[str] = None


class DelegateRequest(BaseModel):
    new_approver_id: str = Field(..., min_length=1)
    reason: Optional[str] = None


class BulkApproveRequest(BaseModel):
    request_ids: List[str]
    comments: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def definition_response(definition: WorkflowDefinition) -> Dict[str, Any]:
    return {
        "id": definition.id,
        "name": definition.name,
        "category": definition.category,
        "description": definition.description,
        "industry": definition.industry,
        "tags": definition.tags,
        "is_public": definition.is_public,
        "version": definition.version,
        "usage_count": definition.usage_count,
        "owner_id": definition.owner_id,
        "is_active": definition.is_active,
        "sla_hours": definition.sla_hours,
        "source_template_id": definition.source_template_id,
        "previous_version_id": definition.previous_version_id,
        "graph": definition.graph.to_dict(),
        "created_at": _iso(definition.created_at),
        "updated_at": _iso(definition.updated_at)
    }


def instance_response(instance: WorkflowInstance) -> Dict[str, Any]:
    return {
        "id": instance.id,
        "name": instance.name,
        "workflow": {"id": instance.definition_id, "name": instance.definition_name},
        "status": instance.status.value,
        "priority": instance.priority.value,
        "initiated_by": instance.initiated_by,
        "created_at": _iso(instance.created_at),
        "started_at": _iso(instance.started_at),
        "completed_at": _iso(instance.completed_at),
        "cancelled_at": _iso(instance.cancelled_at),
        "cancel_reason": instance.cancel_reason,
        "due_date": _iso(instance.due_date),
        "sla_breached": instance.sla_breached,
        "sla_breached_at": _iso(instance.sla_breached_at),
        "progress": instance.progress,
        "context": instance.context,
        "steps": [
            {
                "id": step.id,
                "node_id": step.node_id,
                "name": step.name,
                "kind": step.kind.value,
                "status": step.status.value,
                "assignee": step.assignee,
                "started_at": _iso(step.started_at),
                "completed_at": _iso(step.completed_at),
                "due_date": _iso(step.due_date),
                "result": step.result
            }
            for step in instance.steps
        ]
    }


def approval_response(request: ApprovalRequest, now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "id": request.id,
        "instance_id": request.instance_id,
        "step_id": request.step_id,
        "status": request.status.value,
        "approver_id": request.approver_id,
        "requested_at": _iso(request.requested_at),
        "due_date": _iso(request.due_date),
        "responded_at": _iso(request.responded_at),
        "comments": request.comments,
        "reason": request.reason,
        "delegated_from": request.delegated_from,
        "delegated_to": request.delegated_to,
        "is_overdue": request.is_overdue(now)
    }
