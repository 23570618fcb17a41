"""
Approval endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .deps import get_current_user, get_system
from .schemas import BulkApproveRequest, DecideRequest, DelegateRequest, approval_response
from ..system import WorkflowSystem


router = APIRouter()


@router.get("/pending")
async def list_pending(
    approver_id: Optional[str] = None,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    """Pending approvals for an approver (the caller by default)"""
    requests = system.approvals.list_pending(approver_id or user_id)
    return {"approvals": [approval_response(r) for r in requests], "count": len(requests)}


@router.get("/overdue")
async def list_overdue(system: WorkflowSystem = Depends(get_system)):
    requests = system.approvals.list_overdue()
    return {"approvals": [approval_response(r) for r in requests], "count": len(requests)}


@router.get("/metrics")
async def approval_metrics(
    approver_id: Optional[str] = None,
    system: WorkflowSystem = Depends(get_system)
):
    return system.approvals.get_metrics(approver_id)


@router.post("/bulk-approve")
async def bulk_approve(
    request: BulkApproveRequest,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    return system.approvals.bulk_approve(request.request_ids, user_id, request.comments)


@router.get("/{request_id}")
async def get_approval(request_id: str, system: WorkflowSystem = Depends(get_system)):
    return approval_response(system.approvals.get_approval(request_id))


@router.get("/{request_id}/chain")
async def delegation_chain(request_id: str, system: WorkflowSystem = Depends(get_system)):
    return {"chain": [approval_response(r) for r in system.approvals.delegation_chain(request_id)]}


@router.post("/{request_id}/decide")
async def decide(
    request_id: str,
    request: DecideRequest,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    approval = system.approvals.decide(
        request_id, request.decision, user_id,
        comments=request.comments, reason=request.reason
    )
    return approval_response(approval)


@router.post("/{request_id}/delegate")
async def delegate(
    request_id: str,
    request: DelegateRequest,
    user_id: str = Depends(get_current_user),
    system: WorkflowSystem = Depends(get_system)
):
    """Returns the new pending request"""
    approval = system.approvals.delegate(request_id, request.new_approver_id, request.reason, user_id)
    return approval_response(approval)
