"""Covenant engine: compile, derive, sighash and finalize Simplicity programs.

``HalSimplicityEngine`` drives the ``simc`` compiler and the
``hal-simplicity`` CLI as subprocesses. Each call runs with a timeout;
non-zero exits surface with the tool's stderr verbatim.
"""
import asyncio
import base64
import binascii
import json
import logging
import os
import tempfile
from typing import List, Optional, Protocol, Tuple

from covenant_custody.exceptions import (
    CompileError,
    FinalizationRejectedError,
    TransportError,
)
from covenant_custody.models.covenant import CovenantDescriptor
from covenant_custody.models.voucher import UtxoInfo
from elements_adapter import sats_to_btc

logger = logging.getLogger(__name__)

# Unconfidential address reported by `simplicity info`, per network
ADDRESS_KEYS = {
    "liquid": "liquid_address_unconf",
    "liquidtestnet": "liquid_testnet_address_unconf",
    "elementsregtest": "elements_regtest_address_unconf",
}

SIG_ALL_HASH_JET = "sig_all_hash"


def encode_witness(maybe_sigs: List[Optional[bytes]]) -> str:
    """Bit-encode an ``[Option<Signature>; N]`` witness value as hex.

    Each slot is a tag bit (0 = None, 1 = Some) followed, for Some, by the
    512 signature bits; the bit string is zero-padded to a byte boundary.
    """
    bits = []
    for sig in maybe_sigs:
        if sig is None:
            bits.append("0")
        else:
            bits.append("1")
            bits.append("".join(format(b, "08b") for b in sig))
    bit_string = "".join(bits)
    bit_string += "0" * (-len(bit_string) % 8)
    return bytes(int(bit_string[i:i + 8], 2) for i in range(0, len(bit_string), 8)).hex()


def parse_compiler_output(output: str) -> bytes:
    """Extract the program from simc output (``Program:\\n<base64>``)."""
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    program_b64 = None
    for i, line in enumerate(lines):
        if line.rstrip(":").lower() == "program" and i + 1 < len(lines):
            program_b64 = lines[i + 1]
            break
    if program_b64 is None and len(lines) == 1:
        program_b64 = lines[0]
    if not program_b64:
        raise CompileError("Compiler output contains no program", output)
    try:
        return base64.b64decode(program_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CompileError("Compiler produced an invalid program encoding", str(e))


class CovenantEngine(Protocol):
    """Covenant engine capability consumed by the workflow."""

    async def compile(self, source: str) -> bytes:
        ...

    async def derive(self, program: bytes) -> Tuple[str, str]:
        """Return ``(commitment_id, address)``."""
        ...

    async def prepare_input(
        self, unsigned_tx: str, input_index: int, utxo: UtxoInfo, commitment_id: str
    ) -> str:
        """Attach the spent output and covenant commitment to an input."""
        ...

    async def signature_hash(
        self, unsigned_tx: str, input_index: int, covenant: CovenantDescriptor, slot_count: int
    ) -> bytes:
        ...

    async def finalize(
        self,
        unsigned_tx: str,
        input_index: int,
        covenant: CovenantDescriptor,
        witness: List[Optional[bytes]],
    ) -> str:
        """Return the spend proof: the PSET with the input's final witness."""
        ...


class HalSimplicityEngine:
    """Covenant engine backed by simc and hal-simplicity."""

    def __init__(
        self,
        hal_path: str = "hal-simplicity",
        simc_path: str = "simc",
        network: str = "liquidtestnet",
        internal_key: Optional[str] = None,
        timeout_seconds: float = 60.0,
    ):
        if network not in ADDRESS_KEYS:
            raise ValueError(f"Unknown network: {network}")
        self.hal_path = hal_path
        self.simc_path = simc_path
        self.network = network
        self.internal_key = internal_key
        self.timeout_seconds = timeout_seconds

    async def _run(
        self,
        args: List[str],
        error_class=FinalizationRejectedError,
        check: bool = True,
    ) -> str:
        """Run a tool and return its stdout.

        Raises:
            TransportError: The tool is missing or timed out.
            error_class: Non-zero exit (when ``check``), with stderr.
        """
        logger.debug(f"Running {' '.join(args[:4])} ...")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise TransportError(f"Covenant tool not found: {args[0]}", str(e))

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            raise TransportError(
                f"{os.path.basename(args[0])} timed out after {self.timeout_seconds}s",
                {"command": args[1:3]},
            )
        finally:
            # Also reached on cancellation
            if process.returncode is None:
                process.kill()
                await process.wait()

        out = stdout.decode().strip()
        if check and process.returncode != 0:
            err = stderr.decode().strip()
            logger.error(f"{os.path.basename(args[0])} exited with {process.returncode}: {err}")
            raise error_class(f"{os.path.basename(args[0])} failed", err or out)
        return out

    async def _run_json(self, args: List[str], error_class=FinalizationRejectedError, check: bool = True) -> dict:
        out = await self._run(args, error_class=error_class, check=check)
        try:
            return json.loads(out)
        except ValueError:
            raise error_class(f"Unexpected output from {os.path.basename(args[0])}", out)

    async def _run_pset(self, args: List[str]) -> str:
        """Run a ``pset`` subcommand and return the updated PSET."""
        result = await self._run_json(args)
        pset = result.get("pset") if isinstance(result, dict) else None
        if not pset:
            raise FinalizationRejectedError(
                f"{os.path.basename(args[0])} {args[3]} returned no PSET", result
            )
        return pset

    async def compile(self, source: str) -> bytes:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "covenant.simf")
            with open(path, "w") as f:
                f.write(source)
            output = await self._run([self.simc_path, path], error_class=CompileError)
        program = parse_compiler_output(output)
        logger.info(f"Compiled covenant program ({len(program)} bytes)")
        return program

    async def derive(self, program: bytes) -> Tuple[str, str]:
        program_b64 = base64.b64encode(program).decode()
        info = await self._run_json(
            [self.hal_path, "simplicity", "info", program_b64], error_class=CompileError
        )
        address_key = ADDRESS_KEYS[self.network]
        if "cmr" not in info or address_key not in info:
            raise CompileError("Program info lacks commitment or address", info)
        return info["cmr"], info[address_key]

    async def prepare_input(
        self, unsigned_tx: str, input_index: int, utxo: UtxoInfo, commitment_id: str
    ) -> str:
        if not utxo.script_pubkey or not utxo.asset:
            raise FinalizationRejectedError(
                f"UTXO {utxo.reference} lacks script or asset for input preparation"
            )
        input_utxo = f"{utxo.script_pubkey}:{utxo.asset}:{sats_to_btc(utxo.value)}"
        args = [
            self.hal_path, "simplicity", "pset", "update-input", "--liquid",
            unsigned_tx, str(input_index),
            "--input-utxo", input_utxo,
            "--cmr", commitment_id,
        ]
        if self.internal_key:
            args += ["--internal-key", self.internal_key]
        return await self._run_pset(args)

    async def signature_hash(
        self, unsigned_tx: str, input_index: int, covenant: CovenantDescriptor, slot_count: int
    ) -> bytes:
        """Read ``sig_all_hash`` from a run with a placeholder signature.

        The program only evaluates the jet inside ``checksig``, so the
        placeholder witness fills slot 0 with a zero signature; the run
        fails verification but reports the jet's output.
        """
        placeholder = [bytes(64)] + [None] * (slot_count - 1)
        result = await self._run_json(
            [
                self.hal_path, "simplicity", "pset", "run", "--liquid",
                unsigned_tx, str(input_index), covenant.program_b64, encode_witness(placeholder),
            ],
            check=False,
        )
        for jet in result.get("jets", []):
            if jet.get("jet") == SIG_ALL_HASH_JET and jet.get("output_value"):
                value = jet["output_value"]
                return bytes.fromhex(value[2:] if value.startswith("0x") else value)
        raise FinalizationRejectedError("Engine did not report a signature hash", result)

    async def finalize(
        self,
        unsigned_tx: str,
        input_index: int,
        covenant: CovenantDescriptor,
        witness: List[Optional[bytes]],
    ) -> str:
        """Check the witness against the program, then finalize the input.

        Raises:
            FinalizationRejectedError: The program rejects the witness.
        """
        witness_hex = encode_witness(witness)
        run = await self._run_json(
            [
                self.hal_path, "simplicity", "pset", "run", "--liquid",
                unsigned_tx, str(input_index), covenant.program_b64, witness_hex,
            ],
            check=False,
        )
        if not run.get("success", False):
            failed = [j.get("jet") for j in run.get("jets", []) if j.get("success") is False]
            raise FinalizationRejectedError(
                "Covenant program rejected the witness", {"failed_jets": failed}
            )

        pset = await self._run_pset(
            [
                self.hal_path, "simplicity", "pset", "finalize", "--liquid",
                unsigned_tx, str(input_index), covenant.program_b64, witness_hex,
            ]
        )
        logger.info(f"Finalized input {input_index} for covenant {covenant.commitment_id[:16]}...")
        return pset
