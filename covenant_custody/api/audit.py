"""Audit API endpoints."""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from covenant_custody.api.deps import (
    get_audit_service,
    get_correlation_id,
    get_workflow,
)
from covenant_custody.schemas.audit import (
    AuditEventResponse,
    AuditPackageResponse,
    AuditVerifyResponse,
)
from covenant_custody.schemas.common import CorrelatedResponse
from covenant_custody.services.audit import WORKFLOW_ENTITY, AuditService
from covenant_custody.services.workflow import WorkflowStateMachine

router = APIRouter(prefix="/v1/audit", tags=["Audit"])


@router.get("/workflows/{workflow_id}", response_model=CorrelatedResponse[AuditPackageResponse])
async def get_workflow_package(
    workflow: WorkflowStateMachine = Depends(get_workflow),
    audit_service: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id)
):
    """
    Get the audit package for a workflow.

    Returns the workflow snapshot (state, covenant, draft, witness and
    transition history), every audit event recorded for it and a package
    hash for verification.
    """
    package = await audit_service.build_workflow_package(workflow)

    return CorrelatedResponse(
        correlation_id=correlation_id,
        data=package
    )


@router.get("/workflows/{workflow_id}/events", response_model=CorrelatedResponse[List[AuditEventResponse]])
async def get_workflow_events(
    workflow_id: str,
    limit: int = Query(100, le=1000),
    audit_service: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id)
):
    """Audit events of a workflow, including ones no longer live."""
    events = await audit_service.get_events_for_entity(WORKFLOW_ENTITY, workflow_id, limit)

    return CorrelatedResponse(
        correlation_id=correlation_id,
        data=[AuditEventResponse.model_validate(e) for e in events]
    )


@router.get("/verify", response_model=CorrelatedResponse[AuditVerifyResponse])
async def verify_audit_chain(
    from_sequence: Optional[int] = Query(None, description="Start verification from this sequence number"),
    to_sequence: Optional[int] = Query(None, description="End verification at this sequence number"),
    audit_service: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id)
):
    """
    Verify integrity of the audit log hash chain.

    Returns verification result including:
    - Whether chain is valid (no tampering detected)
    - Number of events verified
    - Any errors found
    """
    result = await audit_service.verify_chain(
        from_sequence=from_sequence,
        to_sequence=to_sequence
    )

    return CorrelatedResponse(
        correlation_id=correlation_id,
        data=result
    )
