"""Domain models."""
from covenant_custody.models.audit import AuditEvent, AuditEventType
from covenant_custody.models.covenant import CovenantDescriptor, OutputPolicy, OutputRole
from covenant_custody.models.voucher import (
    UtxoInfo,
    UtxoReference,
    VoucherStatus,
    VoucherUTXO,
)
from covenant_custody.models.witness import SignatureSlot, WitnessBundle
from covenant_custody.models.workflow import (
    OutputRequest,
    SpendDraft,
    SpendOutput,
    TransitionRecord,
    WorkflowState,
    VALID_TRANSITIONS,
)

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "CovenantDescriptor",
    "OutputPolicy",
    "OutputRole",
    "UtxoInfo",
    "UtxoReference",
    "VoucherStatus",
    "VoucherUTXO",
    "SignatureSlot",
    "WitnessBundle",
    "OutputRequest",
    "SpendDraft",
    "SpendOutput",
    "TransitionRecord",
    "WorkflowState",
    "VALID_TRANSITIONS",
]
