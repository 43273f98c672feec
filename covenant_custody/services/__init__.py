"""Business logic services."""
from covenant_custody.services.broadcaster import Broadcaster
from covenant_custody.services.chain_service import ElementsChainService, EsploraChainSource
from covenant_custody.services.covenant_engine import HalSimplicityEngine
from covenant_custody.services.funding import FaucetFunder
from covenant_custody.services.poller import ConfirmationPoller
from covenant_custody.services.signer import LocalSigner
from covenant_custody.services.tx_builder import TransactionBuilder
from covenant_custody.services.witness import WitnessAssembler
from covenant_custody.services.workflow import (
    WorkflowRegistry,
    WorkflowServices,
    WorkflowStateMachine,
)

__all__ = [
    "Broadcaster",
    "ConfirmationPoller",
    "ElementsChainService",
    "EsploraChainSource",
    "FaucetFunder",
    "HalSimplicityEngine",
    "LocalSigner",
    "TransactionBuilder",
    "WitnessAssembler",
    "WorkflowRegistry",
    "WorkflowServices",
    "WorkflowStateMachine",
]
