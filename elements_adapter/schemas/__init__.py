"""Elements and Esplora schemas."""

from .esplora import EsploraTx, EsploraTxStatus, EsploraVout
from .rpc import (
    BlockchainInfo,
    FinalizedPsbt,
    RawTransaction,
    RawTxOut,
    ScriptPubKey,
    TxOut,
)
