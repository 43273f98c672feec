"""Workflow state machine definitions and spend drafts."""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple
from uuid import uuid4

from covenant_custody.models.covenant import OutputRole
from covenant_custody.models.voucher import UtxoReference


class WorkflowState(str, enum.Enum):
    """
    Contract workflow state machine.

    COMPILED -> ADDRESS_DERIVED -> FUNDED_UNCONFIRMED -> FUNDED_CONFIRMED
    -> SPEND_DRAFTED -> PARTIALLY_SIGNED -> THRESHOLD_MET -> FINALIZED
    -> BROADCAST -> CONFIRMED
    """
    COMPILED = "COMPILED"
    ADDRESS_DERIVED = "ADDRESS_DERIVED"
    FUNDED_UNCONFIRMED = "FUNDED_UNCONFIRMED"
    FUNDED_CONFIRMED = "FUNDED_CONFIRMED"
    SPEND_DRAFTED = "SPEND_DRAFTED"
    PARTIALLY_SIGNED = "PARTIALLY_SIGNED"
    THRESHOLD_MET = "THRESHOLD_MET"
    FINALIZED = "FINALIZED"
    BROADCAST = "BROADCAST"
    CONFIRMED = "CONFIRMED"
    ABANDONED = "ABANDONED"


# Valid state transitions
VALID_TRANSITIONS = {
    WorkflowState.COMPILED: [WorkflowState.ADDRESS_DERIVED, WorkflowState.ABANDONED],
    WorkflowState.ADDRESS_DERIVED: [WorkflowState.FUNDED_UNCONFIRMED, WorkflowState.ABANDONED],
    WorkflowState.FUNDED_UNCONFIRMED: [WorkflowState.FUNDED_CONFIRMED, WorkflowState.ABANDONED],
    WorkflowState.FUNDED_CONFIRMED: [WorkflowState.SPEND_DRAFTED, WorkflowState.ABANDONED],
    WorkflowState.SPEND_DRAFTED: [
        WorkflowState.SPEND_DRAFTED,     # Redraft before any signature arrived
        WorkflowState.PARTIALLY_SIGNED,
        WorkflowState.THRESHOLD_MET,     # 1-of-N, or first signature meets threshold
        WorkflowState.ABANDONED,
    ],
    WorkflowState.PARTIALLY_SIGNED: [
        WorkflowState.PARTIALLY_SIGNED,
        WorkflowState.THRESHOLD_MET,
        WorkflowState.ABANDONED,
    ],
    WorkflowState.THRESHOLD_MET: [
        WorkflowState.THRESHOLD_MET,     # Extra signatures up to N are accepted
        WorkflowState.FINALIZED,
        WorkflowState.ABANDONED,
    ],
    WorkflowState.FINALIZED: [WorkflowState.BROADCAST, WorkflowState.ABANDONED],
    # Abandoning after broadcast only updates local bookkeeping
    WorkflowState.BROADCAST: [WorkflowState.CONFIRMED, WorkflowState.ABANDONED],
    WorkflowState.CONFIRMED: [],  # Terminal state
    WorkflowState.ABANDONED: [],  # Terminal state
}

TERMINAL_STATES = {WorkflowState.CONFIRMED, WorkflowState.ABANDONED}


@dataclass(frozen=True)
class OutputRequest:
    """Caller's proposal for one output; fixed-destination roles may omit it."""
    role: OutputRole
    destination: Optional[str]
    amount: int

    def __post_init__(self):
        object.__setattr__(self, "role", OutputRole(self.role))


@dataclass(frozen=True)
class SpendOutput:
    role: OutputRole
    destination: Optional[str]
    amount: int

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "destination": self.destination,
            "amount": self.amount,
        }


@dataclass(frozen=True)
class SpendDraft:
    """A validated, immutable spend of one covenant UTXO.

    Output order matches the covenant policy; ``fee`` equals
    ``input_value`` minus all non-fee outputs and is carried by the FEE output.
    """
    utxo_reference: UtxoReference
    input_value: int
    asset: Optional[str]
    covenant_address: str
    outputs: Tuple[SpendOutput, ...]
    fee: int
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def roles(self) -> Tuple[OutputRole, ...]:
        return tuple(o.role for o in self.outputs)

    def output_index(self, role: OutputRole) -> Optional[int]:
        for i, output in enumerate(self.outputs):
            if output.role == role:
                return i
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "txid": self.utxo_reference.txid,
            "vout": self.utxo_reference.vout,
            "input_value": self.input_value,
            "asset": self.asset,
            "covenant_address": self.covenant_address,
            "outputs": [o.to_dict() for o in self.outputs],
            "fee": self.fee,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class TransitionRecord:
    """One entry of a workflow's transition history."""
    operation: str
    from_state: WorkflowState
    to_state: WorkflowState
    timestamp: datetime = field(default_factory=datetime.utcnow)
    details: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }
