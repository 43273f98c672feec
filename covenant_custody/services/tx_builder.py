"""Spend drafting and covenant output validation.

A draft accepted by ``TransactionBuilder.draft`` has exactly the output
shape the covenant program enforces on chain.
"""
import logging
from typing import Optional, Sequence, Tuple

from embit import base58, bech32
from embit.liquid import blech32

from covenant_custody.exceptions import (
    DraftError,
    FeeTooLowError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidDestinationError,
    StructuralMismatchError,
)
from covenant_custody.models.covenant import OutputPolicy, OutputRole
from covenant_custody.models.voucher import VoucherUTXO
from covenant_custody.models.workflow import OutputRequest, SpendDraft, SpendOutput

logger = logging.getLogger(__name__)

# Address parameters per network: segwit HRPs and base58 version bytes
NETWORK_PARAMS = {
    "liquid": {"bech32": "ex", "blech32": "lq", "p2pkh": 0x39, "p2sh": 0x27, "blinded": 0x0C},
    "liquidtestnet": {"bech32": "tex", "blech32": "tlq", "p2pkh": 0x24, "p2sh": 0x13, "blinded": 0x17},
    "elementsregtest": {"bech32": "ert", "blech32": "el", "p2pkh": 0xEB, "p2sh": 0x4B, "blinded": 0x04},
}

# version + hash160; blinded prefix + version + blinding pubkey + hash160
UNCONFIDENTIAL_PAYLOAD_SIZE = 21
CONFIDENTIAL_PAYLOAD_SIZE = 55


def _segwit_network(address: str) -> Optional[Tuple[str, str, str]]:
    """``(network, encoding, hrp)`` claimed by a segwit address prefix."""
    lowered = address.lower()
    # Longest HRP first: "tex1" must not be read as "ex1"
    candidates = sorted(
        (
            (name, encoding, params[encoding])
            for name, params in NETWORK_PARAMS.items()
            for encoding in ("bech32", "blech32")
        ),
        key=lambda candidate: len(candidate[2]),
        reverse=True,
    )
    for name, encoding, hrp in candidates:
        if lowered.startswith(hrp + "1"):
            return name, encoding, hrp
    return None


def _base58_network(payload: bytes) -> Optional[str]:
    if len(payload) == UNCONFIDENTIAL_PAYLOAD_SIZE:
        blinded, version = None, payload[0]
    elif len(payload) == CONFIDENTIAL_PAYLOAD_SIZE:
        blinded, version = payload[0], payload[1]
    else:
        return None
    for name, params in NETWORK_PARAMS.items():
        if blinded is not None and blinded != params["blinded"]:
            continue
        if version in (params["p2pkh"], params["p2sh"]):
            return name
    return None


def validate_address(address: str, network: str) -> None:
    """Checksum and network check for a destination address.

    Accepts segwit/taproot (bech32, bech32m), confidential blech32 and
    base58 (plain or confidential) addresses of ``network``.

    Raises:
        InvalidDestinationError: If the address is malformed, fails its
            checksum or belongs to another network.
    """
    if not address or not isinstance(address, str):
        raise InvalidDestinationError("Destination address is required")
    if network not in NETWORK_PARAMS:
        raise ValueError(f"Unknown network: {network}")

    claimed = _segwit_network(address)
    if claimed is not None:
        name, encoding, hrp = claimed
        decoder = bech32 if encoding == "bech32" else blech32
        version, program = decoder.decode(hrp, address)
        if version is None or program is None:
            raise InvalidDestinationError(
                f"Malformed address: {address}", {"encoding": encoding, "hrp": hrp}
            )
    else:
        try:
            payload = base58.decode_check(address)
        except ValueError as e:
            raise InvalidDestinationError(f"Malformed address: {address}", str(e))
        name = _base58_network(payload)
        if name is None:
            raise InvalidDestinationError(
                f"Address {address} is not an Elements address",
                {"version": payload[0] if payload else None, "network": None},
            )

    if name != network:
        raise InvalidDestinationError(
            f"Address {address} is not a {network} address",
            {"network": name},
        )


class TransactionBuilder:
    """Builds spend drafts that match a covenant's output policy."""

    def __init__(self, network: str = "liquidtestnet", min_fee_sats: int = 100):
        if network not in NETWORK_PARAMS:
            raise ValueError(f"Unknown network: {network}")
        if min_fee_sats < 0:
            raise ValueError("min_fee_sats must not be negative")
        self.network = network
        self.min_fee_sats = min_fee_sats

    def draft(
        self,
        utxo: VoucherUTXO,
        policy: OutputPolicy,
        requests: Sequence[OutputRequest],
    ) -> SpendDraft:
        """Validate ``requests`` against ``policy`` and return a spend draft.

        Fixed-destination roles (recursive change, refund) may leave the
        destination empty; it is filled from the covenant/policy. A supplied
        value that differs is a structural mismatch. The FEE output's amount
        is always the remainder ``utxo.value - sum(non-fee amounts)``.

        Raises:
            StructuralMismatchError: Role count/order or a fixed destination
                deviates from the policy.
            InvalidDestinationError: A caller-chosen destination is invalid.
            InvalidAmountError: A non-fee amount is not a positive integer.
            InsufficientFundsError: Outputs exceed the input value.
            FeeTooLowError: The remainder is below the fee floor.
        """
        if utxo.reference is None or utxo.value is None:
            raise DraftError("UTXO has no known outpoint and value", {"voucher_id": utxo.id})

        requested_roles = tuple(OutputRole(r.role) for r in requests)
        if requested_roles != policy.required_roles:
            raise StructuralMismatchError(
                "Output roles do not match the covenant policy",
                {
                    "expected": [r.value for r in policy.required_roles],
                    "got": [r.value for r in requested_roles],
                },
            )

        outputs = []
        non_fee_total = 0
        for index, request in enumerate(requests):
            role = requested_roles[index]
            if role == OutputRole.FEE:
                if request.destination:
                    raise StructuralMismatchError(
                        "Fee output must not carry a destination",
                        {"index": index, "destination": request.destination},
                    )
                outputs.append(None)  # placeholder until the fee is known
                continue

            self._check_amount(index, role, request.amount)
            destination = self._resolve_destination(
                index, role, request.destination, utxo, policy
            )
            outputs.append(SpendOutput(role=role, destination=destination, amount=request.amount))
            non_fee_total += request.amount

        fee = utxo.value - non_fee_total
        if fee < 0:
            raise InsufficientFundsError(
                f"Outputs total {non_fee_total} sats exceeds input value {utxo.value} sats",
                {"input_value": utxo.value, "outputs_total": non_fee_total},
            )
        if fee < self.min_fee_sats:
            raise FeeTooLowError(
                f"Fee {fee} sats is below the minimum of {self.min_fee_sats} sats",
                {"fee": fee, "min_fee": self.min_fee_sats},
            )

        fee_index = requested_roles.index(OutputRole.FEE)
        requested_fee = requests[fee_index].amount
        if requested_fee and requested_fee != fee:
            logger.info(
                f"Fee output for {utxo.reference} set to remainder {fee} sats "
                f"(requested {requested_fee})"
            )
        outputs[fee_index] = SpendOutput(role=OutputRole.FEE, destination=None, amount=fee)

        draft = SpendDraft(
            utxo_reference=utxo.reference,
            input_value=utxo.value,
            asset=utxo.asset,
            covenant_address=utxo.covenant.address,
            outputs=tuple(outputs),
            fee=fee,
        )
        logger.info(
            f"Drafted spend {draft.id} of {utxo.reference}: "
            f"{[o.role.value for o in draft.outputs]}, fee {fee} sats"
        )
        return draft

    @staticmethod
    def _check_amount(index: int, role: OutputRole, amount) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(
                f"{role.value} output amount must be a positive number of sats",
                {"index": index, "amount": amount},
            )

    def _resolve_destination(
        self,
        index: int,
        role: OutputRole,
        destination: Optional[str],
        utxo: VoucherUTXO,
        policy: OutputPolicy,
    ) -> str:
        if role == OutputRole.RECURSIVE_COVENANT_CHANGE:
            return self._fixed_destination(index, role, destination, utxo.covenant.address)
        if role == OutputRole.REFUND:
            return self._fixed_destination(index, role, destination, policy.promoter_address)

        # Caller-free roles: PAYMENT, THRESHOLD_MULTISIG
        validate_address(destination, self.network)
        if role == OutputRole.PAYMENT and policy.allowed_payees and destination not in policy.allowed_payees:
            raise InvalidDestinationError(
                f"Payment destination {destination} is not an allowed payee",
                {"index": index},
            )
        return destination

    @staticmethod
    def _fixed_destination(
        index: int, role: OutputRole, supplied: Optional[str], required: Optional[str]
    ) -> str:
        if not required:
            raise StructuralMismatchError(
                f"No fixed destination known for {role.value}", {"index": index}
            )
        if supplied and supplied != required:
            raise StructuralMismatchError(
                f"{role.value} destination must be {required}",
                {"index": index, "expected": required, "got": supplied},
            )
        return required
