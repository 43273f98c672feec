"""Workflow request/response schemas."""
import base64
import binascii
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from covenant_custody.models.covenant import OutputPolicy, OutputRole
from covenant_custody.models.workflow import OutputRequest, WorkflowState

HEX64_PATTERN = "^[0-9a-fA-F]{64}$"


class PolicySpec(BaseModel):
    """Output policy of a new workflow.

    ``voucher``, ``voucher_with_refund`` and ``multisig`` select the preset
    output layouts; ``custom`` takes ``required_roles`` verbatim.
    """
    preset: str = Field(default="voucher", pattern="^(voucher|voucher_with_refund|multisig|custom)$")
    signer_pubkeys: List[str] = Field(..., min_length=1)
    min_threshold: int = Field(default=2, ge=1)
    required_roles: Optional[List[OutputRole]] = None
    promoter_address: Optional[str] = None
    allowed_payees: List[str] = []

    def to_policy(self) -> OutputPolicy:
        """Raises ValueError for an inconsistent policy."""
        if self.preset == "voucher":
            return OutputPolicy.voucher(
                self.signer_pubkeys, self.min_threshold, self.promoter_address, self.allowed_payees
            )
        if self.preset == "voucher_with_refund":
            if not self.promoter_address:
                raise ValueError("voucher_with_refund requires a promoter address")
            return OutputPolicy.voucher_with_refund(
                self.signer_pubkeys, self.promoter_address, self.min_threshold, self.allowed_payees
            )
        if self.preset == "multisig":
            return OutputPolicy.multisig(self.signer_pubkeys, self.min_threshold, self.allowed_payees)
        if not self.required_roles:
            raise ValueError("custom policy requires required_roles")
        return OutputPolicy(
            required_roles=tuple(self.required_roles),
            signer_pubkeys=tuple(self.signer_pubkeys),
            min_threshold=self.min_threshold,
            promoter_address=self.promoter_address,
            allowed_payees=tuple(self.allowed_payees),
        )


class WorkflowCreate(BaseModel):
    """Create a workflow from covenant source, a compiled program, or the policy alone."""
    policy: PolicySpec
    source: Optional[str] = None
    program: Optional[str] = Field(None, description="Base64 compiled program")

    @model_validator(mode="after")
    def check_single_input(self):
        if self.source is not None and self.program is not None:
            raise ValueError("Provide either source or program, not both")
        return self

    @field_validator("program")
    @classmethod
    def validate_program(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Program must be base64")
        return v

    def program_bytes(self) -> Optional[bytes]:
        return base64.b64decode(self.program) if self.program is not None else None

    class Config:
        json_schema_extra = {
            "example": {
                "policy": {
                    "preset": "voucher",
                    "signer_pubkeys": [
                        "79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798",
                        "c6047f9441ed7d6d3045406e95c07cd85c778e4b8cef3ca7abac09b95c709ee5",
                        "f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9",
                    ],
                    "min_threshold": 2,
                }
            }
        }


class WalletFundingRequest(BaseModel):
    amount_sats: int = Field(..., gt=0)


class FundingRegistration(BaseModel):
    """Import an existing outpoint paying the covenant address."""
    txid: str = Field(..., pattern=HEX64_PATTERN)
    vout: int = Field(..., ge=0)


class PollRequest(BaseModel):
    max_attempts: Optional[int] = Field(None, ge=1)
    interval_seconds: Optional[float] = Field(None, ge=0)


class OutputRequestSchema(BaseModel):
    role: OutputRole
    destination: Optional[str] = None
    amount: int = Field(default=0, ge=0, description="Sats; ignored for the FEE output")

    def to_request(self) -> OutputRequest:
        return OutputRequest(role=self.role, destination=self.destination, amount=self.amount)


class SpendDraftCreate(BaseModel):
    outputs: List[OutputRequestSchema] = Field(..., min_length=1)

    class Config:
        json_schema_extra = {
            "example": {
                "outputs": [
                    {"role": "PAYMENT", "destination": "tex1q...", "amount": 50000},
                    {"role": "RECURSIVE_COVENANT_CHANGE", "amount": 48900},
                    {"role": "FEE"},
                ]
            }
        }


class SignatureSubmission(BaseModel):
    slot_index: int = Field(..., ge=0)
    signature: str = Field(..., pattern="^[0-9a-fA-F]{128}$", description="BIP-340 signature hex")
    signer_pubkey: str = Field(..., description="x-only public key hex")


class DevSignRequest(BaseModel):
    """Sign with a secret key held by the server. Testnet use only."""
    slot_index: int = Field(..., ge=0)
    secret_key: str = Field(..., pattern="^(0x)?[0-9a-fA-F]{64}$")


class WitnessDocument(BaseModel):
    witness: str = Field(..., description="MAYBE_SIGS witness file contents")


class AbandonRequest(BaseModel):
    reason: Optional[str] = None


class WorkflowResponse(BaseModel):
    """Schema for workflow response."""
    id: str
    state: WorkflowState
    errored: bool
    last_error: Optional[dict]
    last_failed_operation: Optional[str]
    policy: dict
    covenant: Optional[dict]
    voucher: Optional[dict]
    funding_txid: Optional[str]
    draft: Optional[dict]
    witness: Optional[dict]
    sighash: Optional[str]
    raw_tx: Optional[str]
    spend_txid: Optional[str]
    parent_id: Optional[str]
    continuation_id: Optional[str]
    created_at: datetime
    history: List[dict] = []


class SighashResponse(BaseModel):
    workflow_id: str
    sighash: str
    signer_pubkeys: List[str]


class BroadcastResponse(BaseModel):
    workflow_id: str
    txid: str
    continuation_id: Optional[str]
