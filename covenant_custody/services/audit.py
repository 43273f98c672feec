"""Hash-chained audit trail of workflow operations."""
import hashlib
import json
import logging
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from covenant_custody.models.audit import AuditEvent, AuditEventType
from covenant_custody.schemas.audit import (
    AuditEventResponse,
    AuditPackageResponse,
    AuditVerifyResponse,
)

logger = logging.getLogger(__name__)

WORKFLOW_ENTITY = "WORKFLOW"

# Event recorded for a successful workflow operation
OPERATION_EVENTS = {
    "compile": AuditEventType.WORKFLOW_CREATED,
    "register_funding": AuditEventType.FUNDING_SUBMITTED,
    "fund_from_wallet": AuditEventType.FUNDING_SUBMITTED,
    "fund_from_faucet": AuditEventType.FUNDING_SUBMITTED,
    "await_funding_confirmation": AuditEventType.FUNDING_CONFIRMED,
    "draft_spend": AuditEventType.SPEND_DRAFTED,
    "add_signature": AuditEventType.SIGNATURE_ADDED,
    "sign_with_key": AuditEventType.SIGNATURE_ADDED,
    "import_witness": AuditEventType.SIGNATURE_ADDED,
    "finalize": AuditEventType.SPEND_FINALIZED,
    "broadcast": AuditEventType.SPEND_BROADCAST,
    "await_spend_confirmation": AuditEventType.SPEND_CONFIRMED,
    "abandon": AuditEventType.WORKFLOW_ABANDONED,
}


class AuditService:
    """Append-only audit trail; each event commits to its predecessor's hash."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log_event(
        self,
        event_type: AuditEventType,
        correlation_id: str,
        actor_id: Optional[str] = None,
        actor_type: str = "OPERATOR",
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        entity_refs: Optional[dict] = None,
        payload: Optional[dict] = None,
    ) -> AuditEvent:
        """Append an event linked to the current chain head."""
        head = await self._get_last_event()
        prev_hash = head.hash if head else None

        event = AuditEvent(
            id=str(uuid4()),
            sequence_number=head.sequence_number + 1 if head else 1,
            timestamp=datetime.utcnow(),
            event_type=event_type,
            actor_id=actor_id,
            actor_type=actor_type,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_refs=entity_refs,
            payload=payload,
            correlation_id=correlation_id,
            prev_hash=prev_hash,
        )
        event.hash = AuditEvent.compute_hash(
            event_id=event.id,
            timestamp=event.timestamp,
            event_type=event_type.value,
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload,
            prev_hash=prev_hash
        )

        self.db.add(event)
        await self.db.flush()
        logger.debug(f"Audit event {event.sequence_number} {event_type.value} for {entity_type} {entity_id}")
        return event

    async def _get_last_event(self) -> Optional[AuditEvent]:
        result = await self.db.execute(
            select(AuditEvent)
            .order_by(AuditEvent.sequence_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def log_workflow_operation(
        self,
        workflow,
        operation: str,
        correlation_id: str,
        actor_id: Optional[str] = None,
        error: Optional[Exception] = None,
    ) -> AuditEvent:
        """Record the outcome of one workflow operation.

        Successful operations carry the latest transition record; failures
        carry the error and the unchanged state.
        """
        entity_refs = {
            "commitment_id": workflow.covenant.commitment_id if workflow.covenant else None,
            "parent_id": workflow.parent_id,
        }
        if error is not None:
            to_dict = getattr(error, "to_dict", None)
            payload = {
                "operation": operation,
                "state": workflow.state.value,
                "errored": workflow.errored,
                "error": to_dict() if to_dict else {"error": str(error)},
            }
            event_type = AuditEventType.WORKFLOW_OPERATION_FAILED
        else:
            payload = {"operation": operation, "state": workflow.state.value}
            if workflow.history and workflow.history[-1].operation == operation:
                payload["transition"] = workflow.history[-1].to_dict()
            event_type = OPERATION_EVENTS.get(operation, AuditEventType.WORKFLOW_STATE_CHANGED)

        return await self.log_event(
            event_type=event_type,
            correlation_id=correlation_id,
            actor_id=actor_id,
            entity_type=WORKFLOW_ENTITY,
            entity_id=workflow.id,
            entity_refs=entity_refs,
            payload=payload,
        )

    async def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: int = 100
    ) -> List[AuditEvent]:
        """Get audit events for a specific entity."""
        result = await self.db.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type)
            .where(AuditEvent.entity_id == entity_id)
            .order_by(AuditEvent.sequence_number.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def build_workflow_package(self, workflow) -> AuditPackageResponse:
        """Bundle a workflow snapshot with its audit trail."""
        events = await self.get_events_for_entity(WORKFLOW_ENTITY, workflow.id, limit=1000)
        snapshot = workflow.to_dict()
        # Raw transaction bytes are reproducible from the chain; keep the package small
        snapshot.pop("raw_tx", None)

        package_data = {
            "workflow_id": workflow.id,
            "workflow": snapshot,
            "audit_events": [AuditEventResponse.model_validate(e).model_dump() for e in events],
        }
        package_hash = hashlib.sha256(
            json.dumps(package_data, sort_keys=True, default=str).encode()
        ).hexdigest()

        return AuditPackageResponse(
            workflow_id=workflow.id,
            workflow=snapshot,
            audit_events=[AuditEventResponse.model_validate(e) for e in events],
            package_hash=package_hash,
            generated_at=datetime.utcnow()
        )

    async def verify_chain(
        self,
        from_sequence: Optional[int] = None,
        to_sequence: Optional[int] = None
    ) -> AuditVerifyResponse:
        """Recompute every event hash in the range and check the links."""
        query = select(AuditEvent).order_by(AuditEvent.sequence_number.asc())
        if from_sequence is not None:
            query = query.where(AuditEvent.sequence_number >= from_sequence)
        if to_sequence is not None:
            query = query.where(AuditEvent.sequence_number <= to_sequence)
        events = list((await self.db.execute(query)).scalars().all())

        # A range starting mid-chain links to the event just before it
        anchor = None
        if events and from_sequence and from_sequence > 1:
            anchor = await self._get_event_at(from_sequence - 1)
        prev_hash = anchor.hash if anchor else None

        errors: List[str] = []
        verified = 0
        for event in events:
            problems = self._check_event(event, prev_hash)
            errors.extend(problems)
            if not any("hash mismatch" in p for p in problems):
                verified += 1
            prev_hash = event.hash

        if errors:
            logger.error(f"Audit chain verification found {len(errors)} problem(s)")

        intact = not errors
        return AuditVerifyResponse(
            is_valid=intact,
            total_events=len(events),
            verified_events=verified,
            first_event_id=events[0].id if events else None,
            last_event_id=events[-1].id if events else None,
            chain_intact=intact,
            errors=errors
        )

    async def _get_event_at(self, sequence_number: int) -> Optional[AuditEvent]:
        result = await self.db.execute(
            select(AuditEvent).where(AuditEvent.sequence_number == sequence_number)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _check_event(event: AuditEvent, prev_hash: Optional[str]) -> List[str]:
        label = f"Event {event.id} (seq {event.sequence_number})"
        problems = []
        if event.prev_hash != prev_hash:
            problems.append(f"{label}: broken link, expected prev_hash {prev_hash}, got {event.prev_hash}")

        recomputed = AuditEvent.compute_hash(
            event_id=event.id,
            timestamp=event.timestamp,
            event_type=event.event_type.value,
            actor_id=event.actor_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            payload=event.payload,
            prev_hash=event.prev_hash
        )
        if recomputed != event.hash:
            problems.append(f"{label}: hash mismatch, contents were modified")
        return problems
