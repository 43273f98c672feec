"""Elements node JSON-RPC result schemas."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class BlockchainInfo(BaseModel):
    """Subset of the getblockchaininfo result."""

    model_config = ConfigDict(extra="ignore")

    chain: str = Field(..., description="Chain name (e.g. 'liquidtestnet')")
    blocks: int = Field(..., description="Current block height")
    bestblockhash: str = Field(..., description="Tip block hash")
    initialblockdownload: bool = Field(default=False)


class ScriptPubKey(BaseModel):
    """Output script as reported by the node."""

    model_config = ConfigDict(extra="ignore")

    hex: str = Field(..., description="Serialized script")
    address: str | None = Field(default=None, description="Address, if standard")
    type: str | None = Field(default=None, description="Script template name")


class TxOut(BaseModel):
    """gettxout result for an unspent output."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    bestblock: str = Field(..., description="Tip hash at lookup time")
    confirmations: int = Field(..., description="0 while in the mempool")
    value: Decimal | None = Field(
        default=None, description="Explicit value in coin units"
    )
    asset: str | None = Field(default=None, description="Explicit asset id")
    script_pubkey: ScriptPubKey = Field(..., alias="scriptPubKey")
    coinbase: bool = Field(default=False)


class FinalizedPsbt(BaseModel):
    """finalizepsbt result."""

    hex: str | None = Field(default=None, description="Extracted transaction")
    psbt: str | None = Field(default=None, description="PSET if not complete")
    complete: bool = Field(..., description="Whether all inputs are finalized")


class RawTxOut(BaseModel):
    """Output entry of a verbose getrawtransaction result."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    n: int = Field(..., description="Output index")
    value: Decimal | None = Field(default=None)
    asset: str | None = Field(default=None)
    script_pubkey: ScriptPubKey = Field(..., alias="scriptPubKey")


class RawTransaction(BaseModel):
    """Verbose getrawtransaction result."""

    model_config = ConfigDict(extra="ignore")

    txid: str
    vout: list[RawTxOut] = Field(default_factory=list)
    confirmations: int = Field(default=0, description="Absent while in the mempool")
