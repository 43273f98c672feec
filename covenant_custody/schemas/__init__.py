"""Pydantic schemas for API validation."""
from covenant_custody.schemas.common import (
    CorrelatedResponse,
    ErrorResponse,
)
from covenant_custody.schemas.audit import (
    AuditEventResponse,
    AuditPackageResponse,
    AuditVerifyResponse,
)
from covenant_custody.schemas.workflow import (
    AbandonRequest,
    BroadcastResponse,
    DevSignRequest,
    FundingRegistration,
    OutputRequestSchema,
    PolicySpec,
    PollRequest,
    SighashResponse,
    SignatureSubmission,
    SpendDraftCreate,
    WalletFundingRequest,
    WitnessDocument,
    WorkflowCreate,
    WorkflowResponse,
)
