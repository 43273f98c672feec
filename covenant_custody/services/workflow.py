"""Covenant contract workflow: one state machine per tracked UTXO.

The machine owns the voucher, its spend draft and the single authoritative
witness bundle. Every public operation runs under the machine's lock,
checks its precondition state before touching a collaborator, and leaves
the state unchanged when anything fails.
"""
import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from covenant_custody.exceptions import (
    BroadcastUnavailableError,
    CovenantCustodyError,
    IllegalTransitionError,
    InvalidReferenceError,
    NotFoundError,
    TransportError,
)
from covenant_custody.models.covenant import CovenantDescriptor, OutputPolicy, OutputRole
from covenant_custody.models.voucher import TxStatus, UtxoInfo, UtxoReference, VoucherStatus, VoucherUTXO
from covenant_custody.models.witness import WitnessBundle
from covenant_custody.models.workflow import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    OutputRequest,
    SpendDraft,
    TransitionRecord,
    WorkflowState,
)
from covenant_custody.services.broadcaster import Broadcaster
from covenant_custody.services.chain_service import ChainService, EsploraChainSource
from covenant_custody.services.covenant_engine import CovenantEngine
from covenant_custody.services.covenant_source import render_covenant_source
from covenant_custody.services.funding import FaucetFunder
from covenant_custody.services.poller import ConfirmationPoller
from covenant_custody.services.signer import LocalSigner
from covenant_custody.services.tx_builder import TransactionBuilder
from covenant_custody.services.witness import WitnessAssembler

logger = logging.getLogger(__name__)

SPEND_INPUT_INDEX = 0

SIGNING_STATES = (
    WorkflowState.SPEND_DRAFTED,
    WorkflowState.PARTIALLY_SIGNED,
    WorkflowState.THRESHOLD_MET,
)


@dataclass
class WorkflowServices:
    """Collaborators and tunables shared by all workflows of a process."""
    engine: CovenantEngine
    chain: ChainService
    builder: TransactionBuilder
    assembler: WitnessAssembler
    poller: ConfirmationPoller
    broadcaster: Broadcaster
    secondary_source: Optional[EsploraChainSource] = None
    funder: Optional[FaucetFunder] = None
    funding_min_confirmations: int = 0
    spend_min_confirmations: int = 1


def workflow_operation(name: str):
    """Serialize an operation on the machine lock and record its failure."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self: "WorkflowStateMachine", *args, **kwargs):
            async with self._lock:
                try:
                    return await func(self, *args, **kwargs)
                except CovenantCustodyError as e:
                    self.last_error = e
                    self.last_failed_operation = name
                    logger.error(f"Workflow {self.id}: {name} failed in {self.state.value}: {e}")
                    raise
        return wrapper
    return decorator


class WorkflowStateMachine:
    """Drives one covenant contract from compilation to a confirmed spend."""

    def __init__(
        self,
        services: WorkflowServices,
        policy: OutputPolicy,
        program: bytes,
        source: Optional[str] = None,
        state: WorkflowState = WorkflowState.COMPILED,
        covenant: Optional[CovenantDescriptor] = None,
        voucher: Optional[VoucherUTXO] = None,
        parent_id: Optional[str] = None,
    ):
        self.id = str(uuid4())
        self.services = services
        self.policy = policy
        self.program = program
        self.source = source
        self.state = state
        self.covenant = covenant
        self.voucher = voucher
        self.parent_id = parent_id
        self.created_at = datetime.utcnow()

        self.funding_txid: Optional[str] = None
        self.utxo_info: Optional[UtxoInfo] = None
        self.draft: Optional[SpendDraft] = None
        self.unsigned_tx: Optional[str] = None
        self.bundle: Optional[WitnessBundle] = None
        self.sighash: Optional[bytes] = None
        self.raw_tx: Optional[str] = None
        self.spend_txid: Optional[str] = None
        self.successor: Optional["WorkflowStateMachine"] = None

        self.history: List[TransitionRecord] = []
        self.last_error: Optional[CovenantCustodyError] = None
        self.last_failed_operation: Optional[str] = None
        self.errored = False
        self._lock = asyncio.Lock()

    # ==================== Construction ====================

    @classmethod
    async def compile(
        cls,
        services: WorkflowServices,
        policy: OutputPolicy,
        source: Optional[str] = None,
        program: Optional[bytes] = None,
    ) -> "WorkflowStateMachine":
        """Create a workflow from a program, a source, or the policy alone.

        Without either, the voucher covenant source is rendered from
        ``policy``. CompileError propagates; no workflow is created.
        """
        if program is None:
            if source is None:
                source = render_covenant_source(policy)
            program = await services.engine.compile(source)
        machine = cls(services, policy, program, source=source)
        logger.info(
            f"Workflow {machine.id} compiled: {policy.min_threshold}-of-{policy.signer_count}, "
            f"outputs {[r.value for r in policy.required_roles]}"
        )
        return machine

    # ==================== State ====================

    def can_transition_to(self, new_state: WorkflowState) -> bool:
        return new_state in VALID_TRANSITIONS.get(self.state, [])

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _require(self, operation: str, *states: WorkflowState) -> None:
        if self.state not in states:
            raise IllegalTransitionError(
                operation,
                self.state,
                {"allowed_states": [s.value for s in states]},
            )

    def _transition(self, operation: str, new_state: WorkflowState, details: Optional[dict] = None) -> None:
        if not self.can_transition_to(new_state):
            raise IllegalTransitionError(operation, self.state)
        record = TransitionRecord(
            operation=operation,
            from_state=self.state,
            to_state=new_state,
            details=details,
        )
        self.history.append(record)
        self.state = new_state
        self.errored = False
        self.last_error = None
        self.last_failed_operation = None
        logger.info(
            f"Workflow {self.id}: {operation} {record.from_state.value} -> {new_state.value}"
        )

    def _advance_voucher(self, status: VoucherStatus) -> None:
        if self.voucher is not None and self.voucher.status != status:
            self.voucher.advance(status)

    # ==================== Address and funding ====================

    @workflow_operation("derive_address")
    async def derive_address(self) -> CovenantDescriptor:
        self._require("derive_address", WorkflowState.COMPILED)
        commitment_id, address = await self.services.engine.derive(self.program)
        self.covenant = CovenantDescriptor(
            program=self.program,
            commitment_id=commitment_id,
            address=address,
            source=self.source,
        )
        self.voucher = VoucherUTXO(covenant=self.covenant)
        self._transition(
            "derive_address",
            WorkflowState.ADDRESS_DERIVED,
            {"commitment_id": self.covenant.commitment_id, "address": address},
        )
        return self.covenant

    def _funding_submitted(self, operation: str, txid: str, details: dict) -> None:
        self.funding_txid = txid
        self._advance_voucher(VoucherStatus.FUNDING_SUBMITTED)
        self._transition(operation, WorkflowState.FUNDED_UNCONFIRMED, {"txid": txid, **details})

    @workflow_operation("fund_from_wallet")
    async def fund_from_wallet(self, amount_sats: int) -> str:
        self._require("fund_from_wallet", WorkflowState.ADDRESS_DERIVED)
        if isinstance(amount_sats, bool) or not isinstance(amount_sats, int) or amount_sats <= 0:
            raise ValueError("Funding amount must be a positive number of sats")
        txid = await self.services.chain.fund_address(self.covenant.address, amount_sats)
        self._funding_submitted("fund_from_wallet", txid, {"amount": amount_sats, "via": "wallet"})
        return txid

    @workflow_operation("fund_from_faucet")
    async def fund_from_faucet(self) -> str:
        self._require("fund_from_faucet", WorkflowState.ADDRESS_DERIVED)
        if self.services.funder is None:
            raise ValueError("No faucet configured")
        txid = await self.services.funder.fund(self.covenant.address)
        self._funding_submitted("fund_from_faucet", txid, {"via": "faucet"})
        return txid

    @workflow_operation("register_funding")
    async def register_funding(self, reference: UtxoReference) -> None:
        """Track an existing outpoint paying the covenant address."""
        self._require("register_funding", WorkflowState.ADDRESS_DERIVED)
        if not reference.is_well_formed:
            raise InvalidReferenceError(f"Malformed UTXO reference: {reference}")
        self.voucher.reference = reference
        self._funding_submitted(
            "register_funding", reference.txid, {"vout": reference.vout, "via": "import"}
        )

    async def _locate_funding_output(self) -> UtxoReference:
        sources = [self.services.chain]
        if self.services.secondary_source is not None:
            sources.append(self.services.secondary_source)

        last_error: Optional[CovenantCustodyError] = None
        for source in sources:
            try:
                return await source.locate_output(self.funding_txid, self.covenant.address)
            except (NotFoundError, TransportError) as e:
                logger.warning(f"Could not locate funding output via {source.name}: {e}")
                last_error = e
        raise NotFoundError(
            f"Funding transaction {self.funding_txid} not visible yet",
            {"last_error": str(last_error)},
        )

    @workflow_operation("await_funding_confirmation")
    async def await_funding_confirmation(
        self, max_attempts: Optional[int] = None, interval: Optional[float] = None
    ) -> UtxoInfo:
        self._require("await_funding_confirmation", WorkflowState.FUNDED_UNCONFIRMED)
        if self.voucher.reference is None:
            self.voucher.reference = await self._locate_funding_output()

        info = await self._poll(self.voucher.reference, self.services.funding_min_confirmations, max_attempts, interval)
        if info.address and info.address != self.covenant.address:
            raise InvalidReferenceError(
                f"UTXO {info.reference} does not pay the covenant address",
                {"address": info.address, "expected": self.covenant.address},
            )

        self.utxo_info = info
        self.voucher.apply_utxo(info)
        self._advance_voucher(VoucherStatus.CONFIRMED)
        self._transition(
            "await_funding_confirmation",
            WorkflowState.FUNDED_CONFIRMED,
            {"utxo": str(info.reference), "value": info.value, "confirmations": info.confirmations},
        )
        return info

    async def _poll(
        self,
        reference: UtxoReference,
        min_confirmations: int,
        max_attempts: Optional[int],
        interval: Optional[float],
    ) -> UtxoInfo:
        try:
            return await self.services.poller.await_confirmed(
                reference,
                self.services.chain,
                self.services.secondary_source,
                max_attempts=max_attempts,
                interval=interval,
                min_confirmations=min_confirmations,
            )
        except NotFoundError:
            self.errored = True
            raise

    # ==================== Spend ====================

    @workflow_operation("draft_spend")
    async def draft_spend(self, requests: Sequence[OutputRequest]) -> SpendDraft:
        """Draft a spend; redrafting is allowed until the first signature."""
        self._require("draft_spend", WorkflowState.FUNDED_CONFIRMED, WorkflowState.SPEND_DRAFTED)

        draft = self.services.builder.draft(self.voucher, self.policy, requests)
        unsigned = await self.services.chain.assemble_raw([draft.utxo_reference], list(draft.outputs))
        unsigned = await self.services.engine.prepare_input(
            unsigned, SPEND_INPUT_INDEX, self.utxo_info, self.covenant.commitment_id
        )

        self.draft = draft
        self.unsigned_tx = unsigned
        self.sighash = None
        self.bundle = WitnessBundle.empty(draft.id, self.policy.signer_pubkeys, self.policy.min_threshold)
        self._advance_voucher(VoucherStatus.SPEND_DRAFTED)
        self._transition("draft_spend", WorkflowState.SPEND_DRAFTED, {"draft_id": draft.id, "fee": draft.fee})
        return draft

    async def _signature_hash(self) -> bytes:
        if self.sighash is None:
            self.sighash = await self.services.engine.signature_hash(
                self.unsigned_tx, SPEND_INPUT_INDEX, self.covenant, self.policy.signer_count
            )
        return self.sighash

    @workflow_operation("signature_hash")
    async def signature_hash(self) -> bytes:
        """The message every signer signs for the current draft."""
        self._require("signature_hash", *SIGNING_STATES)
        return await self._signature_hash()

    def _commit_bundle(self, operation: str, bundle: WitnessBundle, details: dict) -> None:
        self.bundle = bundle
        if self.services.assembler.is_satisfied(bundle, self.policy):
            self._advance_voucher(VoucherStatus.SIGNED)
            new_state = WorkflowState.THRESHOLD_MET
        else:
            new_state = WorkflowState.PARTIALLY_SIGNED
        self._transition(operation, new_state, {"filled": bundle.filled_count, **details})

    @workflow_operation("add_signature")
    async def add_signature(self, slot_index: int, signature: bytes, signer_pubkey: str) -> WitnessBundle:
        """Place a signer's BIP-340 signature in its slot.

        Rejected submissions leave the bundle and the state untouched.
        """
        self._require("add_signature", *SIGNING_STATES)
        return await self._add_signature("add_signature", slot_index, signature, signer_pubkey)

    async def _add_signature(
        self, operation: str, slot_index: int, signature: bytes, signer_pubkey: str
    ) -> WitnessBundle:
        sighash = await self._signature_hash()
        bundle = self.services.assembler.add_signature(
            self.bundle, slot_index, signature, signer_pubkey, sighash=sighash
        )
        if bundle is self.bundle:
            return bundle
        self._commit_bundle(operation, bundle, {"slot_index": slot_index})
        return bundle

    @workflow_operation("sign_with_key")
    async def sign_with_key(self, slot_index: int, signer: LocalSigner) -> WitnessBundle:
        self._require("sign_with_key", *SIGNING_STATES)
        signature, pubkey = signer.sign(await self._signature_hash())
        return await self._add_signature("sign_with_key", slot_index, signature, pubkey)

    def export_witness(self) -> str:
        if self.bundle is None:
            raise IllegalTransitionError("export_witness", self.state)
        return self.services.assembler.export_witness(self.bundle)

    @workflow_operation("import_witness")
    async def import_witness(self, text: str) -> WitnessBundle:
        """Apply every signature of a witness file through the slot checks.

        All entries are checked against the current bundle before any is
        committed; one bad entry rejects the whole file.
        """
        self._require("import_witness", *SIGNING_STATES)
        incoming = self.services.assembler.import_witness(text, self.bundle)
        sighash = await self._signature_hash()

        bundle = self.bundle
        for slot in incoming.slots:
            if slot.is_filled:
                bundle = self.services.assembler.add_signature(
                    bundle, slot.index, slot.signature, slot.pubkey, sighash=sighash
                )
        if bundle is self.bundle:
            return bundle
        self._commit_bundle("import_witness", bundle, {"imported": incoming.filled_count})
        return bundle

    @workflow_operation("finalize")
    async def finalize(self) -> str:
        """Produce the broadcastable transaction from the threshold witness."""
        self._require("finalize", WorkflowState.THRESHOLD_MET)
        witness = self.services.assembler.finalize_inputs(self.bundle)
        spend_proof = await self.services.engine.finalize(
            self.unsigned_tx, SPEND_INPUT_INDEX, self.covenant, witness
        )
        raw_tx = await self.services.chain.finalize_raw(self.unsigned_tx, spend_proof)

        self.raw_tx = raw_tx
        self._advance_voucher(VoucherStatus.FINALIZED)
        self._transition("finalize", WorkflowState.FINALIZED, {"signatures": self.bundle.filled_count})
        return raw_tx

    @workflow_operation("broadcast")
    async def broadcast(self) -> str:
        """Submit the finalized spend. The only irreversible step."""
        self._require("broadcast", WorkflowState.FINALIZED)
        try:
            txid = await self.services.broadcaster.submit(
                self.raw_tx, self.services.chain, self.services.secondary_source
            )
        except BroadcastUnavailableError:
            self.errored = True
            raise

        self.spend_txid = txid
        self._advance_voucher(VoucherStatus.BROADCAST)
        self._transition("broadcast", WorkflowState.BROADCAST, {"txid": txid})
        self.successor = self._build_continuation()
        return txid

    def _build_continuation(self) -> Optional["WorkflowStateMachine"]:
        index = self.draft.output_index(OutputRole.RECURSIVE_COVENANT_CHANGE)
        if index is None:
            return None
        change = self.draft.outputs[index]
        voucher = VoucherUTXO(
            covenant=self.covenant,
            reference=UtxoReference(txid=self.spend_txid, vout=index),
            value=change.amount,
            asset=self.draft.asset,
        )
        voucher.advance(VoucherStatus.FUNDING_SUBMITTED)

        successor = WorkflowStateMachine(
            self.services,
            self.policy,
            self.program,
            source=self.source,
            state=WorkflowState.FUNDED_UNCONFIRMED,
            covenant=self.covenant,
            voucher=voucher,
            parent_id=self.id,
        )
        successor.funding_txid = self.spend_txid
        logger.info(
            f"Workflow {self.id}: continuation {successor.id} tracks change "
            f"{voucher.reference} ({change.amount} sats)"
        )
        return successor

    def continuation(self) -> Optional["WorkflowStateMachine"]:
        """Workflow for the recursive change output, once broadcast."""
        return self.successor

    @workflow_operation("await_spend_confirmation")
    async def await_spend_confirmation(
        self, max_attempts: Optional[int] = None, interval: Optional[float] = None
    ) -> TxStatus:
        self._require("await_spend_confirmation", WorkflowState.BROADCAST)
        # Outputs of the spend may already be spent again (payee, continuation)
        try:
            status = await self.services.poller.await_transaction(
                self.spend_txid,
                self.services.chain,
                self.services.secondary_source,
                max_attempts=max_attempts,
                interval=interval,
                min_confirmations=self.services.spend_min_confirmations,
            )
        except NotFoundError:
            self.errored = True
            raise
        self._advance_voucher(VoucherStatus.SPENT)
        self._transition(
            "await_spend_confirmation",
            WorkflowState.CONFIRMED,
            {"txid": self.spend_txid, "confirmations": status.confirmations},
        )
        return status

    @workflow_operation("abandon")
    async def abandon(self, reason: Optional[str] = None) -> None:
        if self.is_terminal:
            raise IllegalTransitionError("abandon", self.state)
        if self.state == WorkflowState.BROADCAST:
            logger.warning(
                f"Workflow {self.id} abandoned after broadcast; transaction "
                f"{self.spend_txid} may still confirm"
            )
        if self.voucher is not None and not self.voucher.is_terminal:
            self.voucher.advance(VoucherStatus.ABANDONED)
        self._transition("abandon", WorkflowState.ABANDONED, {"reason": reason})

    # ==================== Reporting ====================

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "errored": self.errored,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "last_failed_operation": self.last_failed_operation,
            "policy": self.policy.to_dict(),
            "covenant": self.covenant.to_dict() if self.covenant else None,
            "voucher": self.voucher.to_dict() if self.voucher else None,
            "funding_txid": self.funding_txid,
            "draft": self.draft.to_dict() if self.draft else None,
            "witness": self.bundle.to_dict() if self.bundle else None,
            "sighash": self.sighash.hex() if self.sighash else None,
            "raw_tx": self.raw_tx,
            "spend_txid": self.spend_txid,
            "parent_id": self.parent_id,
            "continuation_id": self.successor.id if self.successor else None,
            "created_at": self.created_at.isoformat(),
            "history": [record.to_dict() for record in self.history],
        }


class WorkflowRegistry:
    """Live workflows of this process, keyed by id."""

    def __init__(self):
        self._workflows: Dict[str, WorkflowStateMachine] = {}

    def add(self, machine: WorkflowStateMachine) -> WorkflowStateMachine:
        self._workflows[machine.id] = machine
        return machine

    def get(self, workflow_id: str) -> WorkflowStateMachine:
        """Raises KeyError for unknown ids."""
        return self._workflows[workflow_id]

    def list(self, state: Optional[WorkflowState] = None) -> List[WorkflowStateMachine]:
        machines = list(self._workflows.values())
        if state is not None:
            machines = [m for m in machines if m.state == state]
        return sorted(machines, key=lambda m: m.created_at)

    def __len__(self) -> int:
        return len(self._workflows)
