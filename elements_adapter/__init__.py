"""Elements adapter - async clients for Elements node RPC and Esplora."""

from .client import ElementsRPCClient
from .config import ElementsRPCSettings, EsploraSettings
from .esplora import EsploraClient
from .exceptions import (
    ElementsAuthError,
    ElementsError,
    ElementsNetworkError,
    ElementsNotFoundError,
    ElementsRateLimitError,
    ElementsRPCError,
    ElementsServerError,
    ElementsValidationError,
)
from .helpers import btc_to_sats, sats_to_btc
from .schemas import (
    BlockchainInfo,
    EsploraTx,
    EsploraTxStatus,
    EsploraVout,
    FinalizedPsbt,
    RawTransaction,
    RawTxOut,
    ScriptPubKey,
    TxOut,
)

__version__ = "0.1.0"

__all__ = [
    # Main classes
    "ElementsRPCClient",
    "EsploraClient",
    "ElementsRPCSettings",
    "EsploraSettings",
    # Exceptions
    "ElementsError",
    "ElementsAuthError",
    "ElementsNotFoundError",
    "ElementsValidationError",
    "ElementsRateLimitError",
    "ElementsServerError",
    "ElementsNetworkError",
    "ElementsRPCError",
    # Helpers
    "sats_to_btc",
    "btc_to_sats",
    # Schemas
    "BlockchainInfo",
    "ScriptPubKey",
    "TxOut",
    "FinalizedPsbt",
    "RawTransaction",
    "RawTxOut",
    "EsploraTx",
    "EsploraTxStatus",
    "EsploraVout",
]
