"""
Workflow template endpoints
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from .deps import get_current_user, get_optional_user, get_system
from .schemas import (
    CreateDefinitionRequest, TemplateFromDefinitionRequest, UseTemplateRequest,
    definition_response
)
from ..system import WorkflowSystem


router = APIRouter()


@router.get("")
async def list_templates(
    search: Optional[str] = None,
    category: Optional[str] = None,
    is_public: Optional[bool] = None,
    industry: Optional[str] = None,
    tags: Optional[List[str]] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: Optional[str] = Depends(get_optional_user),
    system: WorkflowSystem = Depends(get_system)
):
    """Public templates and the caller's own, ordered by usage, then newest"""
    templates = system.templates.list_templates(
        search=search, category=category, is_public=is_public,
        industry=industry, tags=tags, limit=limit, offset=offset, viewer_id=user_id
    )
    return {"templates": [definition_response(t) for t in templates], "count": len(templates)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_template(
    request: CreateDefinitionRequest,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    template = system.templates.create_template(
        name=request.name,
        category=request.category,
        graph=request.graph.to_graph(),
        owner_id=user_id,
        description=request.description,
        industry=request.industry,
        tags=request.tags,
        is_public=request.is_public
    )
    return definition_response(template)


@router.get("/popular")
async def popular_templates(
    limit: int = Query(10, ge=1, le=100),
    system: WorkflowSystem = Depends(get_system)
):
    return {"templates": [definition_response(t) for t in system.templates.popular_templates(limit)]}


@router.get("/categories")
async def get_categories(
    user_id: Optional[str] = Depends(get_optional_user),
    system: WorkflowSystem = Depends(get_system)
):
    return {"categories": system.templates.get_categories(user_id)}


@router.get("/industries")
async def get_industries(
    user_id: Optional[str] = Depends(get_optional_user),
    system: WorkflowSystem = Depends(get_system)
):
    return {"industries": system.templates.get_industries(user_id)}


@router.get("/tags")
async def get_tags(
    user_id: Optional[str] = Depends(get_optional_user),
    system: WorkflowSystem = Depends(get_system)
):
    return {"tags": system.templates.get_tags(user_id)}


@router.get("/stats")
async def get_stats(system: WorkflowSystem = Depends(get_system)):
    return system.templates.get_stats()


@router.post("/from-definition/{definition_id}", status_code=status.HTTP_201_CREATED)
async def create_from_definition(
    definition_id: str,
    request: TemplateFromDefinitionRequest,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    """Publish an existing definition's graph as a template"""
    template = system.templates.create_template_from_definition(
        definition_id, request.name, user_id,
        category=request.category, description=request.description,
        industry=request.industry, tags=request.tags, is_public=request.is_public
    )
    return definition_response(template)


@router.post("/{template_id}/use", status_code=status.HTTP_201_CREATED)
async def use_template(
    template_id: str,
    request: UseTemplateRequest,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    """Clone a template into a private definition for the caller"""
    definition = system.templates.use_template(template_id, request.name, user_id)
    return definition_response(definition)
