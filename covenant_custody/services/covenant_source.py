"""SimplicityHL source generation for voucher covenants.

The rendered program checks an M-of-N threshold of BIP-340 signatures over
``sig_all_hash`` against the policy's signer keys, in order, and then the
output structure: the output count, recursive change back to the same
script and the position of the explicit fee output.
"""
import logging
from typing import Optional

from covenant_custody.models.covenant import HEX64, OutputPolicy, OutputRole

logger = logging.getLogger(__name__)

MAX_SIGNERS = 255  # signature counter is a u8

PRELUDE = """\
fn not(bit: bool) -> bool {
    <u1>::into(jet::complement_1(<bool>::into(bit)))
}

fn checksig(pk: Pubkey, sig: Signature) {
    let msg: u256 = jet::sig_all_hash();
    jet::bip_0340_verify((pk, msg), sig);
}

fn checksig_add(counter: u8, pk: Pubkey, maybe_sig: Option<Signature>) -> u8 {
    match maybe_sig {
        Some(sig: Signature) => {
            checksig(pk, sig);
            let (carry, new_counter): (bool, u8) = jet::increment_8(counter);
            assert!(not(carry));
            new_counter
        }
        None => counter,
    }
}
"""


def _render_multisig(policy: OutputPolicy) -> str:
    n = policy.signer_count
    pks = ", ".join(f"pk{i}" for i in range(n))
    sigs = ", ".join(f"sig{i}" for i in range(n))
    lines = [
        f"fn check_threshold(pks: [Pubkey; {n}], maybe_sigs: [Option<Signature>; {n}]) {{",
        f"    let [{pks}]: [Pubkey; {n}] = pks;",
        f"    let [{sigs}]: [Option<Signature>; {n}] = maybe_sigs;",
    ]
    previous = "0"
    for i in range(n):
        lines.append(f"    let counter{i}: u8 = checksig_add({previous}, pk{i}, sig{i});")
        previous = f"counter{i}"
    lines += [
        f"    let threshold: u8 = {policy.min_threshold};",
        f"    assert!(jet::le_8(threshold, {previous}));",
        "}",
    ]
    return "\n".join(lines) + "\n"


def _render_structure(policy: OutputPolicy, refund_script_hash: Optional[str]) -> str:
    lines = [
        "fn covenant_structure() {",
        f"    assert!(jet::eq_32(jet::num_outputs(), {len(policy.required_roles)}));",
    ]
    for index, role in enumerate(policy.required_roles):
        if role == OutputRole.RECURSIVE_COVENANT_CHANGE:
            lines += [
                "",
                f"    // Output {index}: change back to this covenant",
                f"    let change_script_hash: u256 = unwrap(jet::output_script_hash({index}));",
                "    assert!(jet::eq_256(jet::current_script_hash(), change_script_hash));",
            ]
        elif role == OutputRole.REFUND and refund_script_hash:
            lines += [
                "",
                f"    // Output {index}: refund to the promoter",
                f"    let refund_script_hash: u256 = unwrap(jet::output_script_hash({index}));",
                f"    assert!(jet::eq_256(0x{refund_script_hash}, refund_script_hash));",
            ]
        elif role == OutputRole.FEE:
            lines += [
                "",
                f"    // Output {index}: fee",
                f"    assert!(unwrap(jet::output_is_fee({index})));",
            ]
    lines.append("}")
    return "\n".join(lines) + "\n"


def render_covenant_source(
    policy: OutputPolicy, refund_script_hash: Optional[str] = None
) -> str:
    """Render the covenant program for ``policy``.

    Args:
        policy: Signer set, threshold and output roles to enforce.
        refund_script_hash: SHA-256 of the promoter's output script. When
            given, the REFUND output's script is pinned on chain; otherwise
            only the drafting step checks the refund destination.

    Raises:
        ValueError: Too many signers, or a malformed script hash.
    """
    if policy.signer_count > MAX_SIGNERS:
        raise ValueError(f"At most {MAX_SIGNERS} signers are supported")
    if refund_script_hash is not None:
        refund_script_hash = refund_script_hash.lower()
        if not HEX64.match(refund_script_hash):
            raise ValueError(f"Invalid refund script hash: {refund_script_hash}")

    n = policy.signer_count
    header = (
        "/*\n"
        f" * {policy.min_threshold}-of-{n} voucher covenant\n"
        " *\n"
        + "".join(f" * Output {i}: {role.value}\n" for i, role in enumerate(policy.required_roles))
        + " */\n"
    )
    keys = "".join(
        f"        0x{pk}, // Signer {i}\n" for i, pk in enumerate(policy.signer_pubkeys)
    )
    main = (
        "fn main() {\n"
        f"    let pks: [Pubkey; {n}] = [\n"
        f"{keys}"
        "    ];\n"
        "    check_threshold(pks, witness::MAYBE_SIGS);\n"
        "    covenant_structure();\n"
        "}\n"
    )
    source = "\n".join([
        header + PRELUDE,
        _render_multisig(policy),
        _render_structure(policy, refund_script_hash),
        main,
    ])
    logger.debug(
        f"Rendered {policy.min_threshold}-of-{n} covenant with outputs "
        f"{[r.value for r in policy.required_roles]}"
    )
    return source
