"""
Workflow definition endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import get_current_user, get_system
from .schemas import CreateDefinitionRequest, CreateVersionRequest, definition_response
from ..system import WorkflowSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_definition(
    request: CreateDefinitionRequest,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    definition = system.definitions.create_definition(
        name=request.name,
        category=request.category,
        graph=request.graph.to_graph(),
        owner_id=user_id,
        description=request.description,
        industry=request.industry,
        tags=request.tags,
        is_public=request.is_public,
        sla_hours=request.sla_hours
    )
    return definition_response(definition)


@router.get("")
async def list_definitions(
    owner_id: Optional[str] = None,
    category: Optional[str] = None,
    active_only: bool = False,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    """Public definitions and the caller's own"""
    definitions = [
        d for d in system.definitions.list_definitions(
            owner_id=owner_id, category=category, active_only=active_only
        )
        if d.is_public or d.owner_id == user_id
    ]
    return {"definitions": [definition_response(d) for d in definitions], "count": len(definitions)}


@router.get("/{definition_id}")
async def get_definition(definition_id: str, system: WorkflowSystem = Depends(get_system)):
    return definition_response(system.definitions.get_definition(definition_id))


@router.post("/{definition_id}/versions", status_code=status.HTTP_201_CREATED)
async def create_version(
    definition_id: str,
    request: CreateVersionRequest,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    """New version of a definition; the previous version is deactivated"""
    graph = request.graph.to_graph() if request.graph else None
    definition = system.definitions.create_version(definition_id, graph, updated_by=user_id)
    return definition_response(definition)


@router.post("/{definition_id}/deactivate")
async def deactivate_definition(
    definition_id: str,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    return definition_response(system.definitions.deactivate_definition(definition_id, user_id))
