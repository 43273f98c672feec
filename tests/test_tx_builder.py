"""Unit tests for spend drafting against the covenant output policy."""
import pytest

from covenant_custody.exceptions import (
    DraftError,
    FeeTooLowError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidDestinationError,
    StructuralMismatchError,
)
from covenant_custody.models.covenant import CovenantDescriptor, OutputPolicy, OutputRole
from covenant_custody.models.voucher import UtxoReference, VoucherUTXO
from covenant_custody.models.workflow import OutputRequest
from covenant_custody.services.tx_builder import TransactionBuilder, validate_address

from conftest import (
    COMMITMENT_ID,
    COVENANT_ADDRESS,
    FUNDING_TXID,
    PAYEE_ADDRESS,
    POLICY_ASSET,
    PROMOTER_ADDRESS,
)

MAINNET_ADDRESS = "ex1qzyg3zyg3zyg3zyg3zyg3zyg3zyg3zyg3aw53mz"
REGTEST_ADDRESS = "ert1qyg3zyg3zyg3zyg3zyg3zyg3zyg3zyg3zgpm0v0"
OTHER_PAYEE_ADDRESS = "tex1qg3zyg3zyg3zyg3zyg3zyg3zyg3zyg3zy9yuuuz"


@pytest.fixture
def builder() -> TransactionBuilder:
    return TransactionBuilder(network="liquidtestnet", min_fee_sats=100)


@pytest.fixture
def voucher() -> VoucherUTXO:
    covenant = CovenantDescriptor(
        program=b"\x01program", commitment_id=COMMITMENT_ID, address=COVENANT_ADDRESS
    )
    return VoucherUTXO(
        covenant=covenant,
        reference=UtxoReference(txid=FUNDING_TXID, vout=0),
        value=100_000,
        asset=POLICY_ASSET,
    )


def voucher_requests(payment=50_000, change=48_900, change_destination=None):
    return [
        OutputRequest(role=OutputRole.PAYMENT, destination=PAYEE_ADDRESS, amount=payment),
        OutputRequest(
            role=OutputRole.RECURSIVE_COVENANT_CHANGE,
            destination=change_destination,
            amount=change,
        ),
        OutputRequest(role=OutputRole.FEE, destination=None, amount=0),
    ]


def test_voucher_draft_fee_is_remainder(builder, voucher, voucher_policy):
    """Input 100000, payment 50000, change 48900 leaves a 1100 sat fee."""
    draft = builder.draft(voucher, voucher_policy, voucher_requests())

    assert draft.fee == 1_100
    assert draft.roles == voucher_policy.required_roles
    assert draft.outputs[0].destination == PAYEE_ADDRESS
    assert draft.outputs[1].destination == COVENANT_ADDRESS
    assert draft.outputs[2].amount == 1_100
    assert draft.outputs[2].destination is None
    assert sum(o.amount for o in draft.outputs) == draft.input_value
    assert draft.utxo_reference == voucher.reference
    assert draft.asset == POLICY_ASSET


def test_change_to_foreign_address_is_structural_mismatch(builder, voucher, voucher_policy):
    """Redirecting the change output away from the covenant is rejected."""
    with pytest.raises(StructuralMismatchError) as exc_info:
        builder.draft(
            voucher, voucher_policy, voucher_requests(change_destination=PAYEE_ADDRESS)
        )

    assert exc_info.value.details["expected"] == COVENANT_ADDRESS


def test_change_to_covenant_address_explicitly_is_accepted(builder, voucher, voucher_policy):
    draft = builder.draft(
        voucher, voucher_policy, voucher_requests(change_destination=COVENANT_ADDRESS)
    )

    assert draft.outputs[1].destination == COVENANT_ADDRESS


def test_permuted_roles_are_rejected(builder, voucher, voucher_policy):
    requests = voucher_requests()
    permuted = [requests[1], requests[0], requests[2]]

    with pytest.raises(StructuralMismatchError):
        builder.draft(voucher, voucher_policy, permuted)


def test_omitted_role_is_rejected(builder, voucher, voucher_policy):
    requests = voucher_requests()

    with pytest.raises(StructuralMismatchError):
        builder.draft(voucher, voucher_policy, [requests[0], requests[2]])


def test_extra_output_is_rejected(builder, voucher, voucher_policy):
    requests = voucher_requests(payment=40_000)
    extra = OutputRequest(role=OutputRole.PAYMENT, destination=PAYEE_ADDRESS, amount=10_000)

    with pytest.raises(StructuralMismatchError):
        builder.draft(voucher, voucher_policy, [requests[0], extra, requests[1], requests[2]])


def test_fee_output_with_destination_is_rejected(builder, voucher, voucher_policy):
    requests = voucher_requests()
    requests[2] = OutputRequest(role=OutputRole.FEE, destination=PAYEE_ADDRESS, amount=0)

    with pytest.raises(StructuralMismatchError):
        builder.draft(voucher, voucher_policy, requests)


def test_requested_fee_amount_is_overridden(builder, voucher, voucher_policy):
    requests = voucher_requests()
    requests[2] = OutputRequest(role=OutputRole.FEE, destination=None, amount=5)

    draft = builder.draft(voucher, voucher_policy, requests)

    assert draft.fee == 1_100


def test_payment_to_other_network_is_invalid_destination(builder, voucher, voucher_policy):
    requests = voucher_requests()
    requests[0] = OutputRequest(
        role=OutputRole.PAYMENT, destination=MAINNET_ADDRESS, amount=50_000
    )

    with pytest.raises(InvalidDestinationError) as exc_info:
        builder.draft(voucher, voucher_policy, requests)

    assert exc_info.value.details["network"] == "liquid"


def test_malformed_payment_destination(builder, voucher, voucher_policy):
    requests = voucher_requests()
    requests[0] = OutputRequest(role=OutputRole.PAYMENT, destination="not an address", amount=50_000)

    with pytest.raises(InvalidDestinationError):
        builder.draft(voucher, voucher_policy, requests)


def test_payment_outside_allowed_payees(builder, voucher, signers):
    policy = OutputPolicy.voucher(
        [s.xonly_pubkey for s in signers], allowed_payees=[OTHER_PAYEE_ADDRESS]
    )

    with pytest.raises(InvalidDestinationError):
        builder.draft(voucher, policy, voucher_requests())


def test_outputs_exceeding_input_are_insufficient_funds(builder, voucher, voucher_policy):
    with pytest.raises(InsufficientFundsError) as exc_info:
        builder.draft(voucher, voucher_policy, voucher_requests(payment=60_000, change=48_900))

    assert exc_info.value.details == {"input_value": 100_000, "outputs_total": 108_900}


def test_fee_below_floor(builder, voucher, voucher_policy):
    with pytest.raises(FeeTooLowError):
        builder.draft(voucher, voucher_policy, voucher_requests(payment=50_000, change=49_950))


def test_zero_fee_allowed_without_floor(voucher, voucher_policy):
    builder = TransactionBuilder(network="liquidtestnet", min_fee_sats=0)

    draft = builder.draft(voucher, voucher_policy, voucher_requests(payment=50_000, change=50_000))

    assert draft.fee == 0


@pytest.mark.parametrize("amount", [0, -1, True, 1.5])
def test_non_positive_or_fractional_amount(builder, voucher, voucher_policy, amount):
    with pytest.raises(InvalidAmountError):
        builder.draft(voucher, voucher_policy, voucher_requests(payment=amount))


def test_unfunded_voucher_cannot_be_drafted(builder, voucher, voucher_policy):
    voucher.reference = None

    with pytest.raises(DraftError):
        builder.draft(voucher, voucher_policy, voucher_requests())


def test_refund_destination_is_filled_from_policy(builder, voucher, signers):
    policy = OutputPolicy.voucher_with_refund([s.xonly_pubkey for s in signers], PROMOTER_ADDRESS)
    requests = [
        OutputRequest(role=OutputRole.PAYMENT, destination=PAYEE_ADDRESS, amount=40_000),
        OutputRequest(role=OutputRole.RECURSIVE_COVENANT_CHANGE, destination=None, amount=40_000),
        OutputRequest(role=OutputRole.REFUND, destination=None, amount=19_000),
        OutputRequest(role=OutputRole.FEE, destination=None, amount=0),
    ]

    draft = builder.draft(voucher, policy, requests)

    assert draft.outputs[2].destination == PROMOTER_ADDRESS
    assert draft.fee == 1_000


def test_multisig_draft_has_no_change(builder, voucher, signers):
    policy = OutputPolicy.multisig([s.xonly_pubkey for s in signers], min_threshold=2)
    requests = [
        OutputRequest(role=OutputRole.PAYMENT, destination=PAYEE_ADDRESS, amount=99_000),
        OutputRequest(role=OutputRole.FEE, destination=None, amount=0),
    ]

    draft = builder.draft(voucher, policy, requests)

    assert draft.output_index(OutputRole.RECURSIVE_COVENANT_CHANGE) is None
    assert draft.fee == 1_000


class TestValidateAddress:
    def test_accepts_network_addresses(self):
        validate_address(PAYEE_ADDRESS, "liquidtestnet")
        validate_address(PROMOTER_ADDRESS, "liquidtestnet")
        validate_address(REGTEST_ADDRESS, "elementsregtest")
        validate_address(MAINNET_ADDRESS, "liquid")

    def test_accepts_base58_address(self):
        validate_address("Fcwv7HAU8ZAqP5jUtaSFHZDvCfMwU86ne5", "liquidtestnet")

    def test_uppercase_bech32_is_accepted(self):
        validate_address(PROMOTER_ADDRESS.upper(), "liquidtestnet")

    def test_bad_checksum_is_rejected(self):
        corrupted = PAYEE_ADDRESS[:-1] + ("q" if PAYEE_ADDRESS[-1] != "q" else "p")

        with pytest.raises(InvalidDestinationError):
            validate_address(corrupted, "liquidtestnet")

    def test_bitcoin_vector_relabelled_for_liquid_is_rejected(self):
        with pytest.raises(InvalidDestinationError):
            validate_address("tex1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx", "liquidtestnet")

    def test_taproot_with_bech32_checksum_is_rejected(self):
        # Witness v1 must use bech32m
        with pytest.raises(InvalidDestinationError):
            validate_address(
                "tex1pwamhwamhwamhwamhwamhwamhwamhwamhwamhwamhwamhwamhwamsuw8ymw", "liquidtestnet"
            )

    def test_mixed_case_is_rejected(self):
        mixed = PROMOTER_ADDRESS[:10] + PROMOTER_ADDRESS[10:].upper()

        with pytest.raises(InvalidDestinationError):
            validate_address(mixed, "liquidtestnet")

    def test_other_network_segwit_address(self):
        with pytest.raises(InvalidDestinationError) as exc_info:
            validate_address(REGTEST_ADDRESS, "liquidtestnet")

        assert exc_info.value.details["network"] == "elementsregtest"

    def test_other_network_base58_address(self):
        with pytest.raises(InvalidDestinationError) as exc_info:
            validate_address("GrWxzgLxB7FvRUhDN8XMhwXPzskZqeGAZm", "liquidtestnet")

        assert exc_info.value.details["network"] == "liquid"

    def test_bitcoin_base58_address_is_rejected(self):
        with pytest.raises(InvalidDestinationError) as exc_info:
            validate_address("1BoatSLRHtKNngkdXEeobR76b53LETtpyT", "liquidtestnet")

        assert exc_info.value.details["network"] is None

    def test_blech32_garbage_is_rejected(self):
        with pytest.raises(InvalidDestinationError):
            validate_address("tlq1qqcnfdent4l", "liquidtestnet")

    def test_empty_address(self):
        with pytest.raises(InvalidDestinationError):
            validate_address("", "liquidtestnet")

    def test_unknown_network(self):
        with pytest.raises(ValueError):
            validate_address(PAYEE_ADDRESS, "dogecoin")
