"""
Workflow instance endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .deps import get_current_user, get_system
from .schemas import CancelInstanceRequest, CreateInstanceRequest, approval_response, instance_response
from ..models import WorkflowStatus
from ..system import WorkflowSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_instance(
    request: CreateInstanceRequest,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    """Create an instance from a definition, optionally starting it right away"""
    instance = system.engine.create_instance(
        definition_id=request.definition_id,
        initiated_by=user_id,
        name=request.name,
        priority=request.priority,
        due_date=request.due_date,
        context=request.context
    )
    if request.start:
        instance = system.engine.start_instance(instance.id, started_by=user_id)
    return instance_response(instance)


@router.get("")
async def list_instances(
    status: Optional[WorkflowStatus] = None,
    definition_id: Optional[str] = None,
    initiated_by: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=500),
    offset: int = Query(0, ge=0),
    system: WorkflowSystem = Depends(get_system)
):
    instances = system.engine.list_instances(
        status=status, definition_id=definition_id, initiated_by=initiated_by,
        limit=limit, offset=offset
    )
    return {"instances": [instance_response(i) for i in instances], "count": len(instances)}


@router.get("/{instance_id}")
async def get_instance(instance_id: str, system: WorkflowSystem = Depends(get_system)):
    return instance_response(system.engine.get_instance(instance_id))


@router.post("/{instance_id}/start")
async def start_instance(
    instance_id: str,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    return instance_response(system.engine.start_instance(instance_id, started_by=user_id))


@router.post("/{instance_id}/advance")
async def advance_instance(instance_id: str, system: WorkflowSystem = Depends(get_system)):
    return instance_response(system.engine.advance(instance_id))


@router.post("/{instance_id}/cancel")
async def cancel_instance(
    instance_id: str,
    request: CancelInstanceRequest,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    return instance_response(system.engine.cancel_instance(instance_id, request.reason, user_id))


@router.get("/{instance_id}/approvals")
async def list_instance_approvals(instance_id: str, system: WorkflowSystem = Depends(get_system)):
    system.engine.get_instance(instance_id)
    approvals = system.approvals.list_for_instance(instance_id)
    return {"approvals": [approval_response(a) for a in approvals]}


@router.get("/{instance_id}/critical-path")
async def critical_path(instance_id: str, system: WorkflowSystem = Depends(get_system)):
    return system.analytics.critical_path(instance_id)
