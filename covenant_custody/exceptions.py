"""Error taxonomy for the covenant workflow.

Every failure a component can report is one of these classes. Each carries
an ``ErrorCategory``: TRANSIENT errors may succeed on a later attempt,
PERMANENT errors require the operator to change something first.
"""
import enum
from typing import Any


class ErrorCategory(str, enum.Enum):
    """Whether retrying the same operation can succeed."""
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"


class CovenantCustodyError(Exception):
    """Base exception for all workflow errors."""

    category: ErrorCategory = ErrorCategory.PERMANENT
    code: str = "COVENANT_ERROR"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message

    @property
    def is_retryable(self) -> bool:
        return self.category == ErrorCategory.TRANSIENT

    def to_dict(self) -> dict:
        return {
            "error_code": self.code,
            "error": self.message,
            "category": self.category.value,
            "details": self.details if isinstance(self.details, dict) else (
                {"info": str(self.details)} if self.details else None
            ),
        }


# Spend drafting (TransactionBuilder)

class DraftError(CovenantCustodyError):
    """The proposed spend is not acceptable; correct the request."""
    code = "DRAFT_ERROR"


class StructuralMismatchError(DraftError):
    """Output roles or a fixed destination deviate from the covenant policy."""
    code = "STRUCTURAL_MISMATCH"


class InvalidDestinationError(DraftError):
    """A caller-chosen destination is malformed, on the wrong network or not allowed."""
    code = "INVALID_DESTINATION"


class InsufficientFundsError(DraftError):
    """Requested outputs exceed the input value."""
    code = "INSUFFICIENT_FUNDS"


class FeeTooLowError(DraftError):
    """Implied fee is below the configured floor."""
    code = "FEE_TOO_LOW"


class InvalidAmountError(DraftError):
    """A non-fee output amount is not a positive number of satoshis."""
    code = "INVALID_AMOUNT"


# Signature collection (WitnessAssembler)

class WitnessError(CovenantCustodyError):
    """A signature submission was refused; the bundle is unchanged."""
    code = "WITNESS_ERROR"


class SlotOccupiedError(WitnessError):
    code = "SLOT_OCCUPIED"


class SignerMismatchError(WitnessError):
    code = "SIGNER_MISMATCH"


class InvalidSlotError(WitnessError):
    """Slot index outside the bundle, or a malformed signature."""
    code = "INVALID_SLOT"


class InvalidSignatureError(WitnessError):
    """Signature does not verify against the spend's signature hash."""
    code = "INVALID_SIGNATURE"


# Lookup (ConfirmationPoller / chain service)

class NotFoundError(CovenantCustodyError):
    """Reference not (yet) visible or not sufficiently confirmed."""
    category = ErrorCategory.TRANSIENT
    code = "NOT_FOUND"


class InvalidReferenceError(CovenantCustodyError):
    """Malformed or definitively unknown transaction reference."""
    code = "INVALID_REFERENCE"


class TransportError(CovenantCustodyError):
    """A collaborator could not be reached or did not answer in time."""
    category = ErrorCategory.TRANSIENT
    code = "TRANSPORT_ERROR"


# Broadcast

class BroadcastError(CovenantCustodyError):
    code = "BROADCAST_ERROR"


class BroadcastRejectedError(BroadcastError):
    """The network refused the transaction (invalid, double-spend, ...)."""
    code = "BROADCAST_REJECTED"


class BroadcastUnavailableError(BroadcastError):
    """Neither broadcast channel could be reached."""
    category = ErrorCategory.TRANSIENT
    code = "BROADCAST_UNAVAILABLE"


# State machine

class IllegalTransitionError(CovenantCustodyError):
    """Operation not permitted in the current workflow state."""
    code = "ILLEGAL_TRANSITION"

    def __init__(self, operation: str, current_state: Any, details: Any = None):
        state = getattr(current_state, "value", current_state)
        super().__init__(f"Cannot {operation} in state {state}", details)
        self.operation = operation
        self.current_state = current_state


# Opaque collaborator failures, propagated verbatim

class CompileError(CovenantCustodyError):
    code = "COMPILE_ERROR"


class FinalizationRejectedError(CovenantCustodyError):
    code = "FINALIZATION_REJECTED"


class IncompleteError(CovenantCustodyError):
    """The chain service could not produce a fully finalized transaction."""
    code = "INCOMPLETE"


class ChainServiceError(CovenantCustodyError):
    """The ledger node refused a request outside lookup and broadcast."""
    code = "CHAIN_SERVICE_ERROR"


class FundingError(CovenantCustodyError):
    """Faucet or wallet funding did not produce a funding transaction."""
    code = "FUNDING_ERROR"

