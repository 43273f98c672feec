"""Covenant descriptor and output policy."""
import base64
import enum
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple

HEX64 = re.compile(r"^[0-9a-f]{64}$")


class OutputRole(str, enum.Enum):
    """Permitted recipient classes of a covenant spend."""
    PAYMENT = "PAYMENT"
    RECURSIVE_COVENANT_CHANGE = "RECURSIVE_COVENANT_CHANGE"
    REFUND = "REFUND"
    THRESHOLD_MULTISIG = "THRESHOLD_MULTISIG"
    FEE = "FEE"


@dataclass(frozen=True)
class CovenantDescriptor:
    """A compiled covenant program with its derived identity.

    ``commitment_id`` is the program's commitment Merkle root (hex) and
    ``address`` the chain address locking coins to it.
    """
    program: bytes
    commitment_id: str
    address: str
    source: Optional[str] = None

    def __post_init__(self):
        if not self.program:
            raise ValueError("Covenant program must not be empty")
        commitment_id = self.commitment_id.lower()
        if not HEX64.match(commitment_id):
            raise ValueError(f"Invalid commitment id: {self.commitment_id}")
        object.__setattr__(self, "commitment_id", commitment_id)
        if not self.address:
            raise ValueError("Covenant address must not be empty")

    @property
    def program_b64(self) -> str:
        return base64.b64encode(self.program).decode()

    def to_dict(self) -> dict:
        return {
            "program": self.program_b64,
            "commitment_id": self.commitment_id,
            "address": self.address,
        }


def normalize_xonly_pubkey(pubkey: str) -> str:
    """Normalize a 32-byte x-only public key to lowercase hex without prefix."""
    value = pubkey.lower()
    if value.startswith("0x"):
        value = value[2:]
    if not HEX64.match(value):
        raise ValueError(f"Invalid x-only public key: {pubkey}")
    return value


@dataclass(frozen=True)
class OutputPolicy:
    """The exact output shape and signer set a covenant enforces.

    Signer positions are bound to ``signer_pubkeys`` in order; the covenant
    program checks signature ``i`` against key ``i``.
    """
    required_roles: Tuple[OutputRole, ...]
    signer_pubkeys: Tuple[str, ...]
    min_threshold: int
    max_threshold: Optional[int] = None
    promoter_address: Optional[str] = None
    allowed_payees: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        roles = tuple(OutputRole(r) for r in self.required_roles)
        if not roles:
            raise ValueError("Policy must declare at least one output role")
        if roles.count(OutputRole.FEE) != 1:
            raise ValueError("Policy must declare exactly one FEE output")
        if OutputRole.REFUND in roles and not self.promoter_address:
            raise ValueError("REFUND output requires a promoter address")

        pubkeys = tuple(normalize_xonly_pubkey(pk) for pk in self.signer_pubkeys)
        if not pubkeys:
            raise ValueError("Policy must declare at least one signer")
        if len(set(pubkeys)) != len(pubkeys):
            raise ValueError("Signer public keys must be unique")

        max_threshold = self.max_threshold if self.max_threshold is not None else len(pubkeys)
        if max_threshold != len(pubkeys):
            raise ValueError(
                f"max_threshold ({max_threshold}) must equal the number of signers ({len(pubkeys)})"
            )
        if not 1 <= self.min_threshold <= max_threshold:
            raise ValueError(
                f"Threshold {self.min_threshold}-of-{max_threshold} is not satisfiable"
            )

        object.__setattr__(self, "required_roles", roles)
        object.__setattr__(self, "signer_pubkeys", pubkeys)
        object.__setattr__(self, "max_threshold", max_threshold)
        object.__setattr__(self, "allowed_payees", tuple(self.allowed_payees))

    @property
    def signer_count(self) -> int:
        return len(self.signer_pubkeys)

    @classmethod
    def voucher(
        cls,
        signer_pubkeys: Iterable[str],
        min_threshold: int = 2,
        promoter_address: Optional[str] = None,
        allowed_payees: Iterable[str] = (),
    ) -> "OutputPolicy":
        """Payment, recursive change back to the covenant, fee."""
        return cls(
            required_roles=(
                OutputRole.PAYMENT,
                OutputRole.RECURSIVE_COVENANT_CHANGE,
                OutputRole.FEE,
            ),
            signer_pubkeys=tuple(signer_pubkeys),
            min_threshold=min_threshold,
            promoter_address=promoter_address,
            allowed_payees=tuple(allowed_payees),
        )

    @classmethod
    def voucher_with_refund(
        cls,
        signer_pubkeys: Iterable[str],
        promoter_address: str,
        min_threshold: int = 2,
        allowed_payees: Iterable[str] = (),
    ) -> "OutputPolicy":
        """Voucher spend that also returns a refund to the promoter."""
        return cls(
            required_roles=(
                OutputRole.PAYMENT,
                OutputRole.RECURSIVE_COVENANT_CHANGE,
                OutputRole.REFUND,
                OutputRole.FEE,
            ),
            signer_pubkeys=tuple(signer_pubkeys),
            min_threshold=min_threshold,
            promoter_address=promoter_address,
            allowed_payees=tuple(allowed_payees),
        )

    @classmethod
    def multisig(
        cls,
        signer_pubkeys: Iterable[str],
        min_threshold: int = 2,
        allowed_payees: Iterable[str] = (),
    ) -> "OutputPolicy":
        """Plain threshold spend: payment and fee, no continuation."""
        return cls(
            required_roles=(OutputRole.PAYMENT, OutputRole.FEE),
            signer_pubkeys=tuple(signer_pubkeys),
            min_threshold=min_threshold,
            allowed_payees=tuple(allowed_payees),
        )

    def to_dict(self) -> dict:
        return {
            "required_roles": [r.value for r in self.required_roles],
            "signer_pubkeys": list(self.signer_pubkeys),
            "min_threshold": self.min_threshold,
            "max_threshold": self.max_threshold,
            "promoter_address": self.promoter_address,
            "allowed_payees": list(self.allowed_payees),
        }
