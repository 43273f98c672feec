"""Main FastAPI application."""
import logging
import os
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse

from covenant_custody.api import audit_router, workflows_router
from covenant_custody.config import Settings, get_settings
from covenant_custody.schemas.common import ErrorResponse
from covenant_custody.services.broadcaster import Broadcaster
from covenant_custody.services.chain_service import ElementsChainService, EsploraChainSource
from covenant_custody.services.covenant_engine import HalSimplicityEngine
from covenant_custody.services.funding import FaucetFunder
from covenant_custody.services.poller import ConfirmationPoller
from covenant_custody.services.tx_builder import TransactionBuilder
from covenant_custody.services.witness import WitnessAssembler
from covenant_custody.services.workflow import WorkflowRegistry, WorkflowServices
from elements_adapter import ElementsRPCClient, EsploraClient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

settings = get_settings()


def build_workflow_services(
    settings: Settings,
    rpc_client: ElementsRPCClient,
    esplora_client: Optional[EsploraClient] = None,
) -> WorkflowServices:
    """Wire the workflow collaborators from explicit settings."""
    return WorkflowServices(
        engine=HalSimplicityEngine(
            hal_path=settings.hal_path,
            simc_path=settings.simc_path,
            network=settings.network,
            internal_key=settings.internal_key,
            timeout_seconds=settings.engine_timeout_seconds,
        ),
        chain=ElementsChainService(rpc_client),
        builder=TransactionBuilder(network=settings.network, min_fee_sats=settings.min_fee_sats),
        assembler=WitnessAssembler(),
        poller=ConfirmationPoller(
            max_attempts=settings.poll_max_attempts,
            interval_seconds=settings.poll_interval_seconds,
        ),
        broadcaster=Broadcaster(),
        secondary_source=EsploraChainSource(esplora_client) if esplora_client else None,
        funder=FaucetFunder(settings.faucet_url) if settings.network == "liquidtestnet" else None,
        funding_min_confirmations=settings.funding_min_confirmations,
        spend_min_confirmations=settings.spend_min_confirmations,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Covenant Custody Service...")

    async with AsyncExitStack() as stack:
        rpc_client = await stack.enter_async_context(
            ElementsRPCClient(settings.elements_rpc_settings())
        )
        esplora_client = None
        if settings.esplora_enabled:
            esplora_client = await stack.enter_async_context(
                EsploraClient(settings.esplora_settings())
            )
            logger.info(f"Esplora fallback enabled at {settings.esplora_base_url}")
        else:
            logger.info("Esplora fallback disabled")

        app.state.workflow_services = build_workflow_services(settings, rpc_client, esplora_client)
        app.state.registry = WorkflowRegistry()

        yield

        logger.info("Shutting down...")

    logger.info("Shutdown complete")


app = FastAPI(
    title="Covenant Custody - Voucher Workflow Service",
    description="""
## Covenant-locked voucher workflows on Elements/Liquid

This API drives Simplicity covenant contracts from compilation to a
confirmed spend:

### Features
- **Covenants**: Generate and compile M-of-N voucher covenants, derive their addresses
- **Funding**: Node wallet, testnet faucet or import of an existing outpoint
- **Spend drafting**: Output shape checked against the covenant policy
- **Signatures**: Positional witness slots bound to signer keys
- **Broadcast**: Elements node with Esplora fallback, recursive change continuation
- **Audit Log**: Tamper-evident hash-chain audit trail
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


def get_allowed_origins():
    """Get allowed CORS origins from environment or defaults."""
    env_origins = os.getenv("CORS_ORIGINS", "")
    if env_origins:
        return [origin.strip() for origin in env_origins.split(",") if origin.strip()]

    return [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    error = ErrorResponse(
        correlation_id=request.headers.get("X-Correlation-ID", "unknown"),
        error="Internal server error",
        error_code="INTERNAL_ERROR",
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error.model_dump(mode="json", exclude_none=True)
    )


# Include routers
app.include_router(workflows_router)
app.include_router(audit_router)


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    registry = getattr(request.app.state, "registry", None)
    return {
        "status": "healthy",
        "environment": settings.environment,
        "network": settings.network,
        "workflows": len(registry) if registry is not None else 0,
    }


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Covenant Custody API",
        "version": "1.0.0",
        "docs": "/docs",
        "openapi": "/openapi.json"
    }


def custom_openapi():
    """Generate custom OpenAPI schema."""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )

    # Add global headers
    openapi_schema.setdefault("components", {})["parameters"] = {
        "CorrelationId": {
            "name": "X-Correlation-ID",
            "in": "header",
            "required": False,
            "schema": {"type": "string"},
            "description": "Request correlation ID for tracing"
        },
        "ActorId": {
            "name": "X-Actor-ID",
            "in": "header",
            "required": False,
            "schema": {"type": "string"},
            "description": "Operator or signer identity recorded in the audit log"
        }
    }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("covenant_custody.main:app", host="0.0.0.0", port=8000, reload=True)
