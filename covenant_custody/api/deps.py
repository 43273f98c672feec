"""API dependencies for dependency injection."""
from typing import Optional
from uuid import uuid4

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from covenant_custody.database import get_db
from covenant_custody.services.audit import AuditService
from covenant_custody.services.workflow import (
    WorkflowRegistry,
    WorkflowServices,
    WorkflowStateMachine,
)


def get_correlation_id(
    x_correlation_id: Optional[str] = Header(None, alias="X-Correlation-ID")
) -> str:
    """Get or generate correlation ID for request tracing."""
    return x_correlation_id or str(uuid4())


def get_actor_id(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-ID")
) -> Optional[str]:
    """Operator or signer identity recorded in the audit trail."""
    return x_actor_id


# Service dependencies

async def get_audit_service(db: AsyncSession = Depends(get_db)) -> AuditService:
    """Get audit service instance."""
    return AuditService(db)


def get_registry(request: Request) -> WorkflowRegistry:
    return request.app.state.registry


def get_workflow_services(request: Request) -> WorkflowServices:
    return request.app.state.workflow_services


def get_workflow(
    workflow_id: str,
    registry: WorkflowRegistry = Depends(get_registry),
) -> WorkflowStateMachine:
    """Resolve a live workflow or answer 404."""
    try:
        return registry.get(workflow_id)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Workflow {workflow_id} not found"
        )
