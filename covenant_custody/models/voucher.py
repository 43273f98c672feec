"""Voucher UTXO lifecycle entity."""
import enum
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import uuid4

from covenant_custody.exceptions import IllegalTransitionError
from covenant_custody.models.covenant import CovenantDescriptor

TXID_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


class VoucherStatus(str, enum.Enum):
    """Lifecycle of a covenant-locked output."""
    UNFUNDED = "UNFUNDED"
    FUNDING_SUBMITTED = "FUNDING_SUBMITTED"
    CONFIRMED = "CONFIRMED"
    SPEND_DRAFTED = "SPEND_DRAFTED"
    SIGNED = "SIGNED"
    FINALIZED = "FINALIZED"
    BROADCAST = "BROADCAST"
    SPENT = "SPENT"
    ABANDONED = "ABANDONED"


# Forward-only; abandonment is allowed from every non-terminal status
VALID_VOUCHER_TRANSITIONS = {
    VoucherStatus.UNFUNDED: [
        VoucherStatus.FUNDING_SUBMITTED,
        VoucherStatus.CONFIRMED,  # Imported from an already-confirmed outpoint
        VoucherStatus.ABANDONED,
    ],
    VoucherStatus.FUNDING_SUBMITTED: [VoucherStatus.CONFIRMED, VoucherStatus.ABANDONED],
    VoucherStatus.CONFIRMED: [VoucherStatus.SPEND_DRAFTED, VoucherStatus.ABANDONED],
    VoucherStatus.SPEND_DRAFTED: [VoucherStatus.SIGNED, VoucherStatus.ABANDONED],
    VoucherStatus.SIGNED: [VoucherStatus.FINALIZED, VoucherStatus.ABANDONED],
    VoucherStatus.FINALIZED: [VoucherStatus.BROADCAST, VoucherStatus.ABANDONED],
    VoucherStatus.BROADCAST: [VoucherStatus.SPENT, VoucherStatus.ABANDONED],
    VoucherStatus.SPENT: [],  # Terminal state
    VoucherStatus.ABANDONED: [],  # Terminal state
}


@dataclass(frozen=True)
class UtxoReference:
    """Outpoint of a transaction output."""
    txid: str
    vout: int

    @property
    def is_well_formed(self) -> bool:
        return (
            isinstance(self.txid, str)
            and bool(TXID_PATTERN.match(self.txid))
            and isinstance(self.vout, int)
            and not isinstance(self.vout, bool)
            and self.vout >= 0
        )

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class UtxoInfo:
    """What a UTXO source reports about an output.

    ``value`` is in satoshis; ``confirmations`` is 0 while in the mempool.
    """
    reference: UtxoReference
    value: int
    asset: Optional[str]
    script_pubkey: Optional[str]
    confirmations: int
    address: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "txid": self.reference.txid,
            "vout": self.reference.vout,
            "value": self.value,
            "asset": self.asset,
            "script_pubkey": self.script_pubkey,
            "address": self.address,
            "confirmations": self.confirmations,
            "source": self.source,
        }


@dataclass(frozen=True)
class TxStatus:
    """What a source reports about a whole transaction."""
    txid: str
    confirmations: int
    block_height: Optional[int] = None
    source: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "txid": self.txid,
            "confirmations": self.confirmations,
            "block_height": self.block_height,
            "source": self.source,
        }


@dataclass
class VoucherUTXO:
    """A covenant-locked output tracked through its lifecycle.

    Issued by a promoter (no reference until funded) or imported by a
    participant from a known outpoint.
    """
    covenant: CovenantDescriptor
    reference: Optional[UtxoReference] = None
    value: Optional[int] = None
    asset: Optional[str] = None
    script_pubkey: Optional[str] = None
    status: VoucherStatus = VoucherStatus.UNFUNDED
    id: str = field(default_factory=lambda: str(uuid4()))
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def can_transition_to(self, new_status: VoucherStatus) -> bool:
        """Check if transition to new status is valid."""
        return new_status in VALID_VOUCHER_TRANSITIONS.get(self.status, [])

    def advance(self, new_status: VoucherStatus) -> None:
        if not self.can_transition_to(new_status):
            raise IllegalTransitionError(f"move voucher to {new_status.value}", self.status)
        self.status = new_status
        self.updated_at = datetime.utcnow()

    def apply_utxo(self, info: UtxoInfo) -> None:
        """Record value and script observed on chain."""
        self.reference = info.reference
        self.value = info.value
        self.asset = info.asset
        self.script_pubkey = info.script_pubkey
        self.updated_at = datetime.utcnow()

    @property
    def is_terminal(self) -> bool:
        return self.status in (VoucherStatus.SPENT, VoucherStatus.ABANDONED)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "txid": self.reference.txid if self.reference else None,
            "vout": self.reference.vout if self.reference else None,
            "value": self.value,
            "asset": self.asset,
            "status": self.status.value,
            "covenant_address": self.covenant.address,
            "commitment_id": self.covenant.commitment_id,
        }
