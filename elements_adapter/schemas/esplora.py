"""Esplora REST API schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class EsploraTxStatus(BaseModel):
    """Confirmation status of a transaction."""

    model_config = ConfigDict(extra="ignore")

    confirmed: bool = Field(..., description="Whether the tx is in a block")
    block_height: int | None = Field(default=None)
    block_hash: str | None = Field(default=None)


class EsploraVout(BaseModel):
    """Transaction output as reported by Esplora.

    Confidential outputs carry commitments instead of ``value``/``asset``.
    """

    model_config = ConfigDict(extra="ignore")

    scriptpubkey: str = Field(..., description="Serialized script (hex)")
    scriptpubkey_address: str | None = Field(default=None)
    scriptpubkey_type: str | None = Field(default=None)
    asset: str | None = Field(default=None)
    value: int | None = Field(default=None, description="Value in satoshis")


class EsploraTx(BaseModel):
    """GET /tx/{txid} result."""

    model_config = ConfigDict(extra="ignore")

    txid: str
    vout: list[EsploraVout] = Field(default_factory=list)
    status: EsploraTxStatus
    fee: int | None = Field(default=None)

