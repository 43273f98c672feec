"""Workflow API endpoints."""
from typing import Awaitable, List, NoReturn, Optional, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from covenant_custody.api.deps import (
    get_actor_id,
    get_audit_service,
    get_correlation_id,
    get_registry,
    get_workflow,
    get_workflow_services,
)
from covenant_custody.database import get_db
from covenant_custody.exceptions import (
    BroadcastUnavailableError,
    CovenantCustodyError,
    IllegalTransitionError,
    NotFoundError,
    TransportError,
)
from covenant_custody.models.audit import AuditEventType
from covenant_custody.models.voucher import UtxoReference
from covenant_custody.models.workflow import WorkflowState
from covenant_custody.schemas.common import CorrelatedResponse
from covenant_custody.schemas.workflow import (
    AbandonRequest,
    BroadcastResponse,
    DevSignRequest,
    FundingRegistration,
    PollRequest,
    SighashResponse,
    SignatureSubmission,
    SpendDraftCreate,
    WalletFundingRequest,
    WitnessDocument,
    WorkflowCreate,
    WorkflowResponse,
)
from covenant_custody.services.audit import WORKFLOW_ENTITY, AuditService
from covenant_custody.services.signer import LocalSigner
from covenant_custody.services.workflow import (
    WorkflowRegistry,
    WorkflowServices,
    WorkflowStateMachine,
)

router = APIRouter(prefix="/v1/workflows", tags=["Workflows"])

T = TypeVar("T")


def raise_http_error(error: CovenantCustodyError) -> NoReturn:
    """Map a workflow error onto an HTTP status."""
    if isinstance(error, IllegalTransitionError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, NotFoundError):
        code = status.HTTP_504_GATEWAY_TIMEOUT
    elif isinstance(error, (TransportError, BroadcastUnavailableError)):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    raise HTTPException(status_code=code, detail=error.to_dict())


async def run_operation(
    workflow: WorkflowStateMachine,
    operation: str,
    call: Awaitable[T],
    audit: AuditService,
    db: AsyncSession,
    correlation_id: str,
    actor_id: Optional[str],
) -> T:
    """Await a workflow operation and record its outcome in the audit trail."""
    try:
        result = await call
    except CovenantCustodyError as e:
        await audit.log_workflow_operation(workflow, operation, correlation_id, actor_id, error=e)
        await db.commit()
        raise_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    await audit.log_workflow_operation(workflow, operation, correlation_id, actor_id)
    await db.commit()
    return result


def _respond(workflow: WorkflowStateMachine, correlation_id: str) -> CorrelatedResponse[WorkflowResponse]:
    return CorrelatedResponse(
        correlation_id=correlation_id,
        data=WorkflowResponse.model_validate(workflow.to_dict())
    )


@router.post("", response_model=CorrelatedResponse[WorkflowResponse], status_code=status.HTTP_201_CREATED)
async def create_workflow(
    data: WorkflowCreate,
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    services: WorkflowServices = Depends(get_workflow_services),
    registry: WorkflowRegistry = Depends(get_registry),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """
    Compile a covenant and start tracking it.

    Without ``source`` or ``program`` the voucher covenant is generated
    from the policy's signer keys and output roles.
    """
    try:
        policy = data.policy.to_policy()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        workflow = await WorkflowStateMachine.compile(
            services, policy, source=data.source, program=data.program_bytes()
        )
    except CovenantCustodyError as e:
        raise_http_error(e)

    registry.add(workflow)
    await audit.log_workflow_operation(workflow, "compile", correlation_id, actor_id)
    await db.commit()
    return _respond(workflow, correlation_id)


@router.get("", response_model=CorrelatedResponse[List[WorkflowResponse]])
async def list_workflows(
    state: Optional[WorkflowState] = Query(None),
    registry: WorkflowRegistry = Depends(get_registry),
    correlation_id: str = Depends(get_correlation_id)
):
    """List live workflows, optionally filtered by state."""
    return CorrelatedResponse(
        correlation_id=correlation_id,
        data=[WorkflowResponse.model_validate(w.to_dict()) for w in registry.list(state)]
    )


@router.get("/{workflow_id}", response_model=CorrelatedResponse[WorkflowResponse])
async def get_workflow_detail(
    workflow: WorkflowStateMachine = Depends(get_workflow),
    correlation_id: str = Depends(get_correlation_id)
):
    return _respond(workflow, correlation_id)


@router.post("/{workflow_id}/derive-address", response_model=CorrelatedResponse[WorkflowResponse])
async def derive_address(
    workflow: WorkflowStateMachine = Depends(get_workflow),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Derive the commitment id and covenant address."""
    await run_operation(
        workflow, "derive_address", workflow.derive_address(), audit, db, correlation_id, actor_id
    )
    return _respond(workflow, correlation_id)


@router.post("/{workflow_id}/fund/wallet", response_model=CorrelatedResponse[WorkflowResponse])
async def fund_from_wallet(
    data: WalletFundingRequest,
    workflow: WorkflowStateMachine = Depends(get_workflow),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Pay the covenant address from the node wallet."""
    await run_operation(
        workflow, "fund_from_wallet", workflow.fund_from_wallet(data.amount_sats),
        audit, db, correlation_id, actor_id
    )
    return _respond(workflow, correlation_id)


@router.post("/{workflow_id}/fund/faucet", response_model=CorrelatedResponse[WorkflowResponse])
async def fund_from_faucet(
    workflow: WorkflowStateMachine = Depends(get_workflow),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Request testnet coins for the covenant address."""
    await run_operation(
        workflow, "fund_from_faucet", workflow.fund_from_faucet(), audit, db, correlation_id, actor_id
    )
    return _respond(workflow, correlation_id)


@router.post("/{workflow_id}/fund/register", response_model=CorrelatedResponse[WorkflowResponse])
async def register_funding(
    data: FundingRegistration,
    workflow: WorkflowStateMachine = Depends(get_workflow),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Import an existing outpoint paying the covenant address."""
    reference = UtxoReference(txid=data.txid.lower(), vout=data.vout)
    await run_operation(
        workflow, "register_funding", workflow.register_funding(reference),
        audit, db, correlation_id, actor_id
    )
    return _respond(workflow, correlation_id)


@router.post("/{workflow_id}/funding/confirm", response_model=CorrelatedResponse[WorkflowResponse])
async def confirm_funding(
    data: Optional[PollRequest] = None,
    workflow: WorkflowStateMachine = Depends(get_workflow),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Poll until the funding output is visible with enough confirmations."""
    data = data or PollRequest()
    await run_operation(
        workflow,
        "await_funding_confirmation",
        workflow.await_funding_confirmation(data.max_attempts, data.interval_seconds),
        audit, db, correlation_id, actor_id
    )
    return _respond(workflow, correlation_id)


@router.post("/{workflow_id}/draft", response_model=CorrelatedResponse[WorkflowResponse])
async def draft_spend(
    data: SpendDraftCreate,
    workflow: WorkflowStateMachine = Depends(get_workflow),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """
    Draft a spend of the covenant UTXO.

    Outputs must follow the policy's role order; the FEE output receives
    the remainder of the input value.
    """
    requests = [o.to_request() for o in data.outputs]
    await run_operation(
        workflow, "draft_spend", workflow.draft_spend(requests), audit, db, correlation_id, actor_id
    )
    return _respond(workflow, correlation_id)


@router.get("/{workflow_id}/sighash", response_model=CorrelatedResponse[SighashResponse])
async def get_sighash(
    workflow: WorkflowStateMachine = Depends(get_workflow),
    correlation_id: str = Depends(get_correlation_id)
):
    """Signature hash every signer signs, with the slot keys in order."""
    try:
        sighash = await workflow.signature_hash()
    except CovenantCustodyError as e:
        raise_http_error(e)

    return CorrelatedResponse(
        correlation_id=correlation_id,
        data=SighashResponse(
            workflow_id=workflow.id,
            sighash=sighash.hex(),
            signer_pubkeys=list(workflow.policy.signer_pubkeys),
        )
    )


@router.post("/{workflow_id}/signatures", response_model=CorrelatedResponse[WorkflowResponse])
async def add_signature(
    data: SignatureSubmission,
    workflow: WorkflowStateMachine = Depends(get_workflow),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Submit a BIP-340 signature for the signer's slot."""
    await run_operation(
        workflow,
        "add_signature",
        workflow.add_signature(data.slot_index, bytes.fromhex(data.signature), data.signer_pubkey),
        audit, db, correlation_id, actor_id or data.signer_pubkey
    )
    return _respond(workflow, correlation_id)


@router.post("/{workflow_id}/signatures/dev", response_model=CorrelatedResponse[WorkflowResponse])
async def sign_with_dev_key(
    data: DevSignRequest,
    workflow: WorkflowStateMachine = Depends(get_workflow),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Sign server-side with a supplied secret key (testnet only)."""
    signer = LocalSigner.from_hex(data.secret_key)
    await run_operation(
        workflow, "sign_with_key", workflow.sign_with_key(data.slot_index, signer),
        audit, db, correlation_id, actor_id or signer.xonly_pubkey
    )
    return _respond(workflow, correlation_id)


@router.get("/{workflow_id}/witness", response_model=CorrelatedResponse[WitnessDocument])
async def export_witness(
    workflow: WorkflowStateMachine = Depends(get_workflow),
    correlation_id: str = Depends(get_correlation_id)
):
    """Current witness as a MAYBE_SIGS witness file."""
    try:
        document = workflow.export_witness()
    except CovenantCustodyError as e:
        raise_http_error(e)
    return CorrelatedResponse(correlation_id=correlation_id, data=WitnessDocument(witness=document))


@router.post("/{workflow_id}/witness", response_model=CorrelatedResponse[WorkflowResponse])
async def import_witness(
    data: WitnessDocument,
    workflow: WorkflowStateMachine = Depends(get_workflow),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Merge signatures from a witness file, slot by slot."""
    await run_operation(
        workflow, "import_witness", workflow.import_witness(data.witness),
        audit, db, correlation_id, actor_id
    )
    return _respond(workflow, correlation_id)


@router.post("/{workflow_id}/finalize", response_model=CorrelatedResponse[WorkflowResponse])
async def finalize(
    workflow: WorkflowStateMachine = Depends(get_workflow),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    await run_operation(
        workflow, "finalize", workflow.finalize(), audit, db, correlation_id, actor_id
    )
    return _respond(workflow, correlation_id)


@router.post("/{workflow_id}/broadcast", response_model=CorrelatedResponse[BroadcastResponse])
async def broadcast(
    workflow: WorkflowStateMachine = Depends(get_workflow),
    registry: WorkflowRegistry = Depends(get_registry),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """
    Broadcast the finalized spend.

    When the spend returns change to the covenant, the continuation
    workflow tracking that output is registered and its id returned.
    """
    txid = await run_operation(
        workflow, "broadcast", workflow.broadcast(), audit, db, correlation_id, actor_id
    )

    successor = workflow.continuation()
    if successor is not None:
        registry.add(successor)
        await audit.log_event(
            event_type=AuditEventType.CONTINUATION_CREATED,
            correlation_id=correlation_id,
            actor_id=actor_id,
            entity_type=WORKFLOW_ENTITY,
            entity_id=successor.id,
            entity_refs={"commitment_id": successor.covenant.commitment_id, "parent_id": workflow.id},
            payload={"utxo": str(successor.voucher.reference), "value": successor.voucher.value},
        )
        await db.commit()

    return CorrelatedResponse(
        correlation_id=correlation_id,
        data=BroadcastResponse(
            workflow_id=workflow.id,
            txid=txid,
            continuation_id=successor.id if successor else None,
        )
    )


@router.get("/{workflow_id}/continuation", response_model=CorrelatedResponse[WorkflowResponse])
async def get_continuation(
    workflow: WorkflowStateMachine = Depends(get_workflow),
    correlation_id: str = Depends(get_correlation_id)
):
    """Workflow tracking this spend's recursive change output."""
    successor = workflow.continuation()
    if successor is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Workflow {workflow.id} has no continuation"
        )
    return _respond(successor, correlation_id)


@router.post("/{workflow_id}/spend/confirm", response_model=CorrelatedResponse[WorkflowResponse])
async def confirm_spend(
    data: Optional[PollRequest] = None,
    workflow: WorkflowStateMachine = Depends(get_workflow),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    data = data or PollRequest()
    await run_operation(
        workflow,
        "await_spend_confirmation",
        workflow.await_spend_confirmation(data.max_attempts, data.interval_seconds),
        audit, db, correlation_id, actor_id
    )
    return _respond(workflow, correlation_id)


@router.post("/{workflow_id}/abandon", response_model=CorrelatedResponse[WorkflowResponse])
async def abandon(
    data: Optional[AbandonRequest] = None,
    workflow: WorkflowStateMachine = Depends(get_workflow),
    db: AsyncSession = Depends(get_db),
    audit: AuditService = Depends(get_audit_service),
    correlation_id: str = Depends(get_correlation_id),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Stop tracking the workflow. After broadcast this is bookkeeping only."""
    reason = data.reason if data else None
    await run_operation(
        workflow, "abandon", workflow.abandon(reason), audit, db, correlation_id, actor_id
    )
    return _respond(workflow, correlation_id)
