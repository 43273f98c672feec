"""Unit tests for positional signature collection."""
import json

import pytest

from covenant_custody.exceptions import (
    InvalidSignatureError,
    InvalidSlotError,
    SignerMismatchError,
    SlotOccupiedError,
)
from covenant_custody.models.witness import WitnessBundle
from covenant_custody.services.witness import WitnessAssembler, verify_schnorr

from conftest import SIGHASH


@pytest.fixture
def assembler() -> WitnessAssembler:
    return WitnessAssembler()


@pytest.fixture
def bundle(voucher_policy) -> WitnessBundle:
    return WitnessBundle.empty("draft-1", voucher_policy.signer_pubkeys, voucher_policy.min_threshold)


def sign(signer, message=SIGHASH):
    signature, pubkey = signer.sign(message)
    return signature, pubkey


def test_threshold_reached_exactly_at_m(assembler, bundle, signers, voucher_policy):
    sig0, pk0 = sign(signers[0])
    sig2, pk2 = sign(signers[2])

    one = assembler.add_signature(bundle, 0, sig0, pk0, sighash=SIGHASH)
    assert not assembler.is_satisfied(one, voucher_policy)

    two = assembler.add_signature(one, 2, sig2, pk2, sighash=SIGHASH)
    assert assembler.is_satisfied(two, voucher_policy)
    assert assembler.finalize_inputs(two) == [sig0, None, sig2]


def test_all_signers_still_satisfied(assembler, bundle, signers, voucher_policy):
    for index, signer in enumerate(signers):
        signature, pubkey = sign(signer)
        bundle = assembler.add_signature(bundle, index, signature, pubkey, sighash=SIGHASH)

    assert bundle.filled_count == 3
    assert assembler.is_satisfied(bundle, voucher_policy)


def test_add_signature_does_not_mutate_input(assembler, bundle, signers):
    signature, pubkey = sign(signers[0])

    updated = assembler.add_signature(bundle, 0, signature, pubkey)

    assert bundle.filled_count == 0
    assert updated.filled_count == 1


def test_identical_resubmission_is_idempotent(assembler, bundle, signers):
    signature, pubkey = sign(signers[1])
    once = assembler.add_signature(bundle, 1, signature, pubkey, sighash=SIGHASH)

    again = assembler.add_signature(once, 1, signature, pubkey, sighash=SIGHASH)

    assert again is once
    assert again.filled_count == 1


def test_different_signature_for_filled_slot_is_rejected(assembler, bundle, signers):
    signature, pubkey = sign(signers[1])
    once = assembler.add_signature(bundle, 1, signature, pubkey, sighash=SIGHASH)
    other, _ = sign(signers[1], bytes(32))

    with pytest.raises(SlotOccupiedError):
        assembler.add_signature(once, 1, other, pubkey)


def test_other_signer_into_filled_slot_is_occupied(assembler, bundle, signers):
    signature, pubkey = sign(signers[1])
    once = assembler.add_signature(bundle, 1, signature, pubkey, sighash=SIGHASH)
    other_sig, other_pk = sign(signers[2])

    with pytest.raises(SlotOccupiedError) as exc_info:
        assembler.add_signature(once, 1, other_sig, other_pk, sighash=SIGHASH)

    assert exc_info.value.details["slot_index"] == 1
    assert once.slots[1].signature == signature


def test_signer_bound_to_other_slot_is_rejected(assembler, bundle, signers):
    signature, pubkey = sign(signers[0])

    with pytest.raises(SignerMismatchError) as exc_info:
        assembler.add_signature(bundle, 1, signature, pubkey)

    assert exc_info.value.details["expected"] == signers[1].xonly_pubkey


def test_malformed_pubkey_is_signer_mismatch(assembler, bundle, signers):
    signature, _ = sign(signers[0])

    with pytest.raises(SignerMismatchError):
        assembler.add_signature(bundle, 0, signature, "02abc")


@pytest.mark.parametrize("slot_index", [-1, 3, True])
def test_out_of_range_slot(assembler, bundle, signers, slot_index):
    signature, pubkey = sign(signers[0])

    with pytest.raises(InvalidSlotError):
        assembler.add_signature(bundle, slot_index, signature, pubkey)


def test_short_signature_is_rejected(assembler, bundle, signers):
    with pytest.raises(InvalidSlotError):
        assembler.add_signature(bundle, 0, b"\x01" * 63, signers[0].xonly_pubkey)


def test_signature_over_wrong_message_fails_verification(assembler, bundle, signers):
    signature, pubkey = sign(signers[0], bytes(32))

    with pytest.raises(InvalidSignatureError):
        assembler.add_signature(bundle, 0, signature, pubkey, sighash=SIGHASH)


def test_pubkey_prefix_and_case_are_normalized(assembler, bundle, signers):
    signature, pubkey = sign(signers[0])

    updated = assembler.add_signature(bundle, 0, signature, "0x" + pubkey.upper(), sighash=SIGHASH)

    assert updated.slots[0].signature == signature


def test_verify_schnorr(signers):
    signature, pubkey = sign(signers[0])

    assert verify_schnorr(pubkey, signature, SIGHASH)
    assert not verify_schnorr(pubkey, signature, bytes(32))
    assert not verify_schnorr(signers[1].xonly_pubkey, signature, SIGHASH)


class TestWitnessExchange:
    def test_export_format(self, assembler, bundle, signers):
        signature, pubkey = sign(signers[0])
        bundle = assembler.add_signature(bundle, 0, signature, pubkey)

        document = json.loads(assembler.export_witness(bundle))

        assert document["MAYBE_SIGS"]["type"] == "[Option<Signature>; 3]"
        assert document["MAYBE_SIGS"]["value"] == f"[Some(0x{signature.hex()}), None, None]"

    def test_import_keeps_positions(self, assembler, bundle, signers):
        sig1, pk1 = sign(signers[1])
        signed = assembler.add_signature(bundle, 1, sig1, pk1)
        text = assembler.export_witness(signed)

        imported = assembler.import_witness(text, bundle)

        assert imported.slots == signed.slots
        assert imported.draft_id == bundle.draft_id

    def test_import_rejects_wrong_slot_count(self, assembler, bundle):
        text = json.dumps({
            "MAYBE_SIGS": {"value": "[None, None]", "type": "[Option<Signature>; 2]"}
        })

        with pytest.raises(InvalidSlotError):
            assembler.import_witness(text, bundle)

    def test_import_rejects_entry_count_mismatch(self, assembler, bundle):
        text = json.dumps({
            "MAYBE_SIGS": {"value": "[None, None]", "type": "[Option<Signature>; 3]"}
        })

        with pytest.raises(InvalidSlotError):
            assembler.import_witness(text, bundle)

    def test_import_rejects_malformed_entry(self, assembler, bundle):
        text = json.dumps({
            "MAYBE_SIGS": {"value": "[Some(0x1234), None, None]", "type": "[Option<Signature>; 3]"}
        })

        with pytest.raises(InvalidSlotError):
            assembler.import_witness(text, bundle)

    def test_import_rejects_non_json(self, assembler, bundle):
        with pytest.raises(InvalidSlotError):
            assembler.import_witness("MAYBE_SIGS = [None]", bundle)

    @pytest.mark.parametrize("entry", [
        {"value": 5, "type": "[Option<Signature>; 3]"},
        {"value": None, "type": "[Option<Signature>; 3]"},
        ["[None, None, None]", "[Option<Signature>; 3]"],
    ])
    def test_import_rejects_non_string_value(self, assembler, bundle, entry):
        text = json.dumps({"MAYBE_SIGS": entry})

        with pytest.raises(InvalidSlotError):
            assembler.import_witness(text, bundle)
