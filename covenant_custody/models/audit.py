"""Audit log model with hash chain for tamper evidence."""
import enum
import hashlib
import json
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import String, Enum, DateTime, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column

from covenant_custody.database import Base


class AuditEventType(str, enum.Enum):
    """Types of auditable events."""
    # Workflow lifecycle
    WORKFLOW_CREATED = "WORKFLOW_CREATED"
    WORKFLOW_STATE_CHANGED = "WORKFLOW_STATE_CHANGED"
    WORKFLOW_OPERATION_FAILED = "WORKFLOW_OPERATION_FAILED"
    WORKFLOW_ABANDONED = "WORKFLOW_ABANDONED"

    # Funding
    FUNDING_SUBMITTED = "FUNDING_SUBMITTED"
    FUNDING_CONFIRMED = "FUNDING_CONFIRMED"

    # Spend
    SPEND_DRAFTED = "SPEND_DRAFTED"
    SIGNATURE_ADDED = "SIGNATURE_ADDED"
    SPEND_FINALIZED = "SPEND_FINALIZED"
    SPEND_BROADCAST = "SPEND_BROADCAST"
    SPEND_CONFIRMED = "SPEND_CONFIRMED"
    CONTINUATION_CREATED = "CONTINUATION_CREATED"


class AuditEvent(Base):
    """Append-only audit log with hash chain."""
    __tablename__ = "audit_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    sequence_number: Mapped[int] = mapped_column(nullable=False, unique=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    event_type: Mapped[AuditEventType] = mapped_column(Enum(AuditEventType), nullable=False, index=True)

    # Actor
    actor_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    actor_type: Mapped[str] = mapped_column(String(50), default="OPERATOR")  # OPERATOR, SIGNER, SYSTEM

    # Entity references (what was affected)
    entity_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # WORKFLOW, VOUCHER
    entity_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)

    # Additional entity refs (txid, commitment id, ...)
    entity_refs: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Event payload (NO secret keys!)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Correlation ID for request tracing
    correlation_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Hash chain for tamper evidence
    prev_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # NULL for first event
    hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    __table_args__ = (
        Index("ix_audit_events_entity", "entity_type", "entity_id"),
        Index("ix_audit_events_timestamp_type", "timestamp", "event_type"),
    )

    @staticmethod
    def compute_hash(
        event_id: str,
        timestamp: datetime,
        event_type: str,
        actor_id: Optional[str],
        entity_type: Optional[str],
        entity_id: Optional[str],
        payload: Optional[dict],
        prev_hash: Optional[str]
    ) -> str:
        """Compute SHA-256 hash for the event."""
        data = {
            "event_id": event_id,
            "timestamp": timestamp.isoformat(),
            "event_type": event_type,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "payload": payload,
            "prev_hash": prev_hash
        }
        canonical = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()
