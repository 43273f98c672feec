"""Positional signature slots for threshold spends."""
from dataclasses import dataclass, replace
from typing import Optional, Tuple


@dataclass(frozen=True)
class SignatureSlot:
    """One signer position; ``pubkey`` is fixed when the covenant is compiled."""
    index: int
    pubkey: str
    signature: Optional[bytes] = None

    @property
    def is_filled(self) -> bool:
        return self.signature is not None

    def filled_with(self, signature: bytes) -> "SignatureSlot":
        return replace(self, signature=signature)


@dataclass(frozen=True)
class WitnessBundle:
    """Ordered signature slots collected for one spend draft.

    Immutable: adding a signature yields a new bundle, so a rejected
    submission can never leave a half-updated bundle behind.
    """
    draft_id: str
    slots: Tuple[SignatureSlot, ...]
    min_threshold: int

    @classmethod
    def empty(cls, draft_id: str, signer_pubkeys, min_threshold: int) -> "WitnessBundle":
        return cls(
            draft_id=draft_id,
            slots=tuple(SignatureSlot(index=i, pubkey=pk) for i, pk in enumerate(signer_pubkeys)),
            min_threshold=min_threshold,
        )

    @property
    def size(self) -> int:
        return len(self.slots)

    @property
    def filled_count(self) -> int:
        return sum(1 for slot in self.slots if slot.is_filled)

    def with_slot(self, slot: SignatureSlot) -> "WitnessBundle":
        slots = list(self.slots)
        slots[slot.index] = slot
        return replace(self, slots=tuple(slots))

    def to_dict(self) -> dict:
        return {
            "draft_id": self.draft_id,
            "min_threshold": self.min_threshold,
            "filled": self.filled_count,
            "slots": [
                {
                    "index": slot.index,
                    "pubkey": slot.pubkey,
                    "signature": slot.signature.hex() if slot.signature else None,
                }
                for slot in self.slots
            ],
        }
