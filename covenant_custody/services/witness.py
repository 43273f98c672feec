"""Signature collection into positional witness slots.

The covenant program reads ``witness::MAYBE_SIGS``, an array of
``Option<Signature>`` whose position ``i`` is checked against signer key
``i``. A signature in the wrong position is indistinguishable from a
missing one, so slot binding is enforced here before handoff.
"""
import json
import logging
import re
from typing import List, Optional

from coincurve import PublicKeyXOnly

from covenant_custody.exceptions import (
    InvalidSignatureError,
    InvalidSlotError,
    SignerMismatchError,
    SlotOccupiedError,
)
from covenant_custody.models.covenant import OutputPolicy, normalize_xonly_pubkey
from covenant_custody.models.witness import WitnessBundle

logger = logging.getLogger(__name__)

SCHNORR_SIGNATURE_SIZE = 64
WITNESS_NAME = "MAYBE_SIGS"

_TYPE_PATTERN = re.compile(r"^\[Option<Signature>;\s*(\d+)\]$")
_SOME_PATTERN = re.compile(r"^Some\(0x([0-9a-fA-F]{128})\)$")


class WitnessAssembler:
    """Validates signature submissions against a bundle's slot bindings."""

    def add_signature(
        self,
        bundle: WitnessBundle,
        slot_index: int,
        signature: bytes,
        signer_pubkey: str,
        sighash: Optional[bytes] = None,
    ) -> WitnessBundle:
        """Place ``signature`` in slot ``slot_index`` and return the new bundle.

        Resubmitting the identical signature from the same signer returns
        the bundle unchanged. When ``sighash`` is given the signature is
        verified as BIP-340 over it.

        Raises:
            InvalidSlotError: Index out of range or malformed signature.
            SlotOccupiedError: The slot already holds a different submission.
            SignerMismatchError: ``signer_pubkey`` is not bound to the slot,
                or already fills another slot.
            InvalidSignatureError: Verification against ``sighash`` failed.
        """
        if isinstance(slot_index, bool) or not 0 <= slot_index < bundle.size:
            raise InvalidSlotError(
                f"Slot {slot_index} is out of range for {bundle.size} signers",
                {"slot_index": slot_index},
            )
        if not isinstance(signature, bytes) or len(signature) != SCHNORR_SIGNATURE_SIZE:
            raise InvalidSlotError(
                f"Signature must be {SCHNORR_SIGNATURE_SIZE} bytes",
                {"slot_index": slot_index},
            )
        try:
            pubkey = normalize_xonly_pubkey(signer_pubkey)
        except ValueError as e:
            raise SignerMismatchError(str(e), {"slot_index": slot_index})

        slot = bundle.slots[slot_index]
        if slot.is_filled:
            if slot.signature == signature and slot.pubkey == pubkey:
                logger.debug(f"Idempotent resubmission for slot {slot_index} of draft {bundle.draft_id}")
                return bundle
            raise SlotOccupiedError(
                f"Slot {slot_index} already holds a signature",
                {"slot_index": slot_index, "draft_id": bundle.draft_id},
            )

        if pubkey != slot.pubkey:
            raise SignerMismatchError(
                f"Signer {pubkey} is not bound to slot {slot_index}",
                {"slot_index": slot_index, "expected": slot.pubkey},
            )
        for other in bundle.slots:
            if other.index != slot_index and other.is_filled and other.pubkey == pubkey:
                raise SignerMismatchError(
                    f"Signer {pubkey} already signed slot {other.index}",
                    {"slot_index": slot_index},
                )

        if sighash is not None and not verify_schnorr(pubkey, signature, sighash):
            raise InvalidSignatureError(
                f"Signature for slot {slot_index} does not verify against the spend sighash",
                {"slot_index": slot_index, "sighash": sighash.hex()},
            )

        updated = bundle.with_slot(slot.filled_with(signature))
        logger.info(
            f"Signature added to slot {slot_index} of draft {bundle.draft_id} "
            f"({updated.filled_count}/{bundle.min_threshold})"
        )
        return updated

    @staticmethod
    def is_satisfied(bundle: WitnessBundle, policy: OutputPolicy) -> bool:
        return bundle.filled_count >= policy.min_threshold

    @staticmethod
    def finalize_inputs(bundle: WitnessBundle) -> List[Optional[bytes]]:
        """Slot contents in order, ``None`` marking empty positions."""
        return [slot.signature for slot in bundle.slots]

    # ==================== Exchange format ====================

    @staticmethod
    def export_witness(bundle: WitnessBundle) -> str:
        """Serialize as the compiler's witness file.

        {"MAYBE_SIGS": {"value": "[Some(0x..), None, None]",
                        "type": "[Option<Signature>; 3]"}}
        """
        elements = [
            f"Some(0x{slot.signature.hex()})" if slot.is_filled else "None"
            for slot in bundle.slots
        ]
        document = {
            WITNESS_NAME: {
                "value": f"[{', '.join(elements)}]",
                "type": f"[Option<Signature>; {bundle.size}]",
            }
        }
        return json.dumps(document, indent=4)

    @staticmethod
    def import_witness(text: str, template: WitnessBundle) -> WitnessBundle:
        """Parse a witness file into ``template``'s slots.

        Positions are taken verbatim; the template supplies the slot keys.

        Raises:
            InvalidSlotError: Malformed document or slot count mismatch.
        """
        try:
            entry = json.loads(text)[WITNESS_NAME]
            if not isinstance(entry, dict):
                raise TypeError(f"{WITNESS_NAME} must be an object")
            value = entry["value"]
            if not isinstance(value, str):
                raise TypeError("Witness value must be a string")
            type_match = _TYPE_PATTERN.match(entry["type"])
        except (ValueError, KeyError, TypeError) as e:
            raise InvalidSlotError("Malformed witness document", str(e))

        if not type_match or int(type_match.group(1)) != template.size:
            raise InvalidSlotError(
                f"Witness type does not describe {template.size} signature slots",
                {"type": entry.get("type")},
            )

        body = value.strip()
        if not (body.startswith("[") and body.endswith("]")):
            raise InvalidSlotError("Witness value is not an array", {"value": value})
        elements = [e.strip() for e in body[1:-1].split(",")] if body[1:-1].strip() else []
        if len(elements) != template.size:
            raise InvalidSlotError(
                f"Witness has {len(elements)} entries, expected {template.size}",
                {"value": value},
            )

        bundle = WitnessBundle.empty(
            template.draft_id, [slot.pubkey for slot in template.slots], template.min_threshold
        )
        for index, element in enumerate(elements):
            if element == "None":
                continue
            match = _SOME_PATTERN.match(element)
            if not match:
                raise InvalidSlotError(f"Malformed witness entry {index}", {"entry": element})
            bundle = bundle.with_slot(bundle.slots[index].filled_with(bytes.fromhex(match.group(1))))
        return bundle


def verify_schnorr(pubkey_hex: str, signature: bytes, message: bytes) -> bool:
    """BIP-340 verification of ``signature`` over a 32-byte ``message``."""
    try:
        return PublicKeyXOnly(bytes.fromhex(pubkey_hex)).verify(signature, message)
    except ValueError:
        return False
