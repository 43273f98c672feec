"""API routers package."""
from covenant_custody.api.audit import router as audit_router
from covenant_custody.api.workflows import router as workflows_router

__all__ = [
    "audit_router",
    "workflows_router",
]
