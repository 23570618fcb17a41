"""
SLA and analytics endpoints
"""

from typing import List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query

from .deps import get_system
from ..models import WorkflowStatus
from ..system import WorkflowSystem


router = APIRouter()


@router.post("/check")
async def run_sla_check(system: WorkflowSystem = Depends(get_system)):
    """Run one monitoring pass immediately"""
    return system.sla_monitor.run_checks().to_dict()


@router.get("/overdue")
async def overdue_items(system: WorkflowSystem = Depends(get_system)):
    return system.sla_monitor.get_overdue_items()


@router.get("/metrics")
async def sla_metrics(
    period: str = Query("day", pattern="^(day|week|month)$"),
    system: WorkflowSystem = Depends(get_system)
):
    return system.sla_monitor.get_sla_metrics(period)


@router.post("/reminders")
async def send_reminders(
    within_hours: Optional[int] = Query(None, ge=1),
    system: WorkflowSystem = Depends(get_system)
):
    return {"reminders_sent": system.sla_monitor.send_reminders(within_hours)}


@router.get("/analytics/metrics")
async def workflow_metrics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    statuses: Optional[List[WorkflowStatus]] = Query(None),
    system: WorkflowSystem = Depends(get_system)
):
    return system.analytics.get_workflow_metrics(start, end, statuses)


@router.get("/analytics/bottlenecks/{definition_id}")
async def bottlenecks(definition_id: str, system: WorkflowSystem = Depends(get_system)):
    system.definitions.get_definition(definition_id)
    return {"bottlenecks": system.analytics.get_bottlenecks(definition_id)}
