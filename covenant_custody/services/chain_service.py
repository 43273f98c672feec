"""Chain service: UTXO lookup, PSET assembly, finalization and broadcast.

``ElementsChainService`` talks to an Elements node and is the primary UTXO
source and broadcast channel. ``EsploraChainSource`` is the secondary one.
Adapter exceptions are translated into the workflow error taxonomy here so
the core never sees HTTP or RPC details.
"""
import logging
from typing import List, Protocol

import httpx

from covenant_custody.exceptions import (
    BroadcastRejectedError,
    ChainServiceError,
    FundingError,
    IncompleteError,
    InvalidReferenceError,
    NotFoundError,
    TransportError,
)
from covenant_custody.models.covenant import OutputRole
from covenant_custody.models.voucher import TxStatus, UtxoInfo, UtxoReference
from covenant_custody.models.workflow import SpendOutput
from elements_adapter import (
    ElementsError,
    ElementsNotFoundError,
    ElementsRPCClient,
    ElementsRPCError,
    ElementsValidationError,
    EsploraClient,
    btc_to_sats,
    sats_to_btc,
)

logger = logging.getLogger(__name__)

# Anything not classified more precisely is treated as a transport failure
TRANSPORT_ERRORS = (ElementsError, httpx.HTTPError)

# Elements RPC error codes
RPC_INVALID_ADDRESS_OR_KEY = -5
RPC_INVALID_PARAMETER = -8
RPC_DESERIALIZATION_ERROR = -22
RPC_IN_WARMUP = -28

INVALID_REFERENCE_CODES = {RPC_INVALID_ADDRESS_OR_KEY, RPC_INVALID_PARAMETER, RPC_DESERIALIZATION_ERROR}


class ChainService(Protocol):
    """Ledger node capability consumed by the workflow."""

    name: str

    async def lookup_utxo(self, reference: UtxoReference) -> UtxoInfo:
        ...

    async def lookup_transaction(self, txid: str) -> TxStatus:
        ...

    async def locate_output(self, txid: str, address: str) -> UtxoReference:
        ...

    async def assemble_raw(self, inputs: List[UtxoReference], outputs: List[SpendOutput]) -> str:
        ...

    async def finalize_raw(self, unsigned_tx: str, spend_proof: str) -> str:
        ...

    async def submit(self, raw_tx_hex: str) -> str:
        ...

    async def fund_address(self, address: str, amount_sats: int) -> str:
        ...


class ElementsChainService:
    """Chain service backed by an Elements node's JSON-RPC interface."""

    name = "elements"

    def __init__(self, client: ElementsRPCClient):
        self.client = client

    async def lookup_utxo(self, reference: UtxoReference) -> UtxoInfo:
        try:
            txout = await self.client.get_tx_out(reference.txid, reference.vout)
        except ElementsRPCError as e:
            if e.code in INVALID_REFERENCE_CODES:
                raise InvalidReferenceError(f"Invalid UTXO reference {reference}", e.message)
            raise TransportError(f"gettxout failed for {reference}", str(e))
        except TRANSPORT_ERRORS as e:
            raise TransportError("Elements node unreachable", str(e))

        if txout is None:
            raise NotFoundError(f"UTXO {reference} not found or already spent")
        if txout.value is None:
            raise InvalidReferenceError(f"UTXO {reference} has a confidential value")

        return UtxoInfo(
            reference=reference,
            value=btc_to_sats(txout.value),
            asset=txout.asset,
            script_pubkey=txout.script_pubkey.hex,
            address=txout.script_pubkey.address,
            confirmations=txout.confirmations,
            source=self.name,
        )

    async def _raw_transaction(self, txid: str):
        try:
            return await self.client.get_raw_transaction(txid)
        except ElementsRPCError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                raise NotFoundError(f"Transaction {txid} not known to the node", e.message)
            if e.code in INVALID_REFERENCE_CODES:
                raise InvalidReferenceError(f"Invalid transaction id {txid}", e.message)
            raise TransportError(f"getrawtransaction failed for {txid}", str(e))
        except TRANSPORT_ERRORS as e:
            raise TransportError("Elements node unreachable", str(e))

    async def lookup_transaction(self, txid: str) -> TxStatus:
        """Confirmation count of ``txid``, independent of its outputs' spentness.

        Confirmed transactions outside the wallet need ``-txindex``.
        """
        tx = await self._raw_transaction(txid)
        return TxStatus(txid=txid, confirmations=tx.confirmations, source=self.name)

    async def locate_output(self, txid: str, address: str) -> UtxoReference:
        """Find the output of ``txid`` paying ``address``."""
        tx = await self._raw_transaction(txid)
        for vout in tx.vout:
            if vout.script_pubkey.address == address:
                return UtxoReference(txid=txid, vout=vout.n)
        raise InvalidReferenceError(f"Transaction {txid} does not pay {address}")

    async def assemble_raw(self, inputs: List[UtxoReference], outputs: List[SpendOutput]) -> str:
        """Create an unsigned PSET with outputs in the given order."""
        rpc_inputs = [{"txid": ref.txid, "vout": ref.vout} for ref in inputs]
        rpc_outputs = []
        for output in outputs:
            amount = sats_to_btc(output.amount)
            if output.role == OutputRole.FEE:
                rpc_outputs.append({"fee": amount})
            else:
                rpc_outputs.append({output.destination: amount})

        try:
            return await self.client.create_psbt(rpc_inputs, rpc_outputs)
        except ElementsRPCError as e:
            raise ChainServiceError("createpsbt rejected the spend", e.message)
        except TRANSPORT_ERRORS as e:
            raise TransportError("Elements node unreachable", str(e))

    async def finalize_raw(self, unsigned_tx: str, spend_proof: str) -> str:
        """Merge the spend proof into the PSET and extract the raw transaction.

        Raises:
            IncompleteError: The node could not finalize every input.
        """
        try:
            combined = await self.client.combine_psbt([unsigned_tx, spend_proof])
            result = await self.client.finalize_psbt(combined)
        except ElementsRPCError as e:
            raise IncompleteError("Node could not finalize the transaction", e.message)
        except TRANSPORT_ERRORS as e:
            raise TransportError("Elements node unreachable", str(e))

        if not result.complete or not result.hex:
            raise IncompleteError("Transaction is not fully finalized", {"psbt": result.psbt})
        return result.hex

    async def submit(self, raw_tx_hex: str) -> str:
        try:
            return await self.client.send_raw_transaction(raw_tx_hex)
        except ElementsRPCError as e:
            if e.code == RPC_IN_WARMUP:
                raise TransportError("Elements node is warming up", e.message)
            raise BroadcastRejectedError(f"Transaction rejected: {e.message}", {"code": e.code})
        except TRANSPORT_ERRORS as e:
            raise TransportError("Elements node unreachable", str(e))

    async def fund_address(self, address: str, amount_sats: int) -> str:
        """Pay ``amount_sats`` to ``address`` from the node wallet."""
        try:
            txid = await self.client.send_to_address(address, sats_to_btc(amount_sats))
        except ElementsRPCError as e:
            raise FundingError(f"Wallet funding of {address} failed", e.message)
        except TRANSPORT_ERRORS as e:
            raise TransportError("Elements node unreachable", str(e))
        logger.info(f"Funded {address} with {amount_sats} sats from node wallet: {txid}")
        return txid


class EsploraChainSource:
    """Secondary UTXO source and broadcast channel backed by Esplora."""

    name = "esplora"

    def __init__(self, client: EsploraClient):
        self.client = client

    async def _tx_with_tip(self, txid: str):
        try:
            tx = await self.client.get_tx(txid)
            tip_height = await self.client.get_tip_height() if tx.status.confirmed else None
        except ElementsNotFoundError:
            raise NotFoundError(f"Transaction {txid} not found on {self.name}")
        except ElementsValidationError as e:
            raise InvalidReferenceError(f"Invalid transaction id {txid}", e.details)
        except TRANSPORT_ERRORS as e:
            raise TransportError("Esplora unreachable", str(e))

        confirmations = 0
        if tx.status.confirmed and tx.status.block_height is not None:
            confirmations = max(tip_height - tx.status.block_height + 1, 1)
        return tx, confirmations

    async def lookup_transaction(self, txid: str) -> TxStatus:
        tx, confirmations = await self._tx_with_tip(txid)
        return TxStatus(
            txid=txid,
            confirmations=confirmations,
            block_height=tx.status.block_height,
            source=self.name,
        )

    async def lookup_utxo(self, reference: UtxoReference) -> UtxoInfo:
        tx, confirmations = await self._tx_with_tip(reference.txid)
        if reference.vout >= len(tx.vout):
            raise InvalidReferenceError(
                f"Transaction {reference.txid} has no output {reference.vout}",
                {"outputs": len(tx.vout)},
            )
        vout = tx.vout[reference.vout]
        if vout.value is None:
            raise InvalidReferenceError(f"UTXO {reference} has a confidential value")

        return UtxoInfo(
            reference=reference,
            value=vout.value,
            asset=vout.asset,
            script_pubkey=vout.scriptpubkey,
            address=vout.scriptpubkey_address,
            confirmations=confirmations,
            source=self.name,
        )

    async def locate_output(self, txid: str, address: str) -> UtxoReference:
        try:
            tx = await self.client.get_tx(txid)
        except ElementsNotFoundError:
            raise NotFoundError(f"Transaction {txid} not found on {self.name}")
        except ElementsValidationError as e:
            raise InvalidReferenceError(f"Invalid transaction id {txid}", e.details)
        except TRANSPORT_ERRORS as e:
            raise TransportError("Esplora unreachable", str(e))

        for index, vout in enumerate(tx.vout):
            if vout.scriptpubkey_address == address:
                return UtxoReference(txid=txid, vout=index)
        raise InvalidReferenceError(f"Transaction {txid} does not pay {address}")

    async def submit(self, raw_tx_hex: str) -> str:
        try:
            return await self.client.broadcast(raw_tx_hex)
        except ElementsValidationError as e:
            raise BroadcastRejectedError("Transaction rejected", e.details)
        except TRANSPORT_ERRORS as e:
            raise TransportError("Esplora unreachable", str(e))
