"""Local BIP-340 signing for participants holding their own key."""
import logging
from typing import Tuple

from coincurve import PrivateKey

logger = logging.getLogger(__name__)


class LocalSigner:
    """Schnorr signer over a 32-byte secret key.

    Used by the signing endpoint and tests; production signers normally
    sign offline and submit only the signature.
    """

    def __init__(self, secret_key: bytes):
        if len(secret_key) != 32:
            raise ValueError("Secret key must be 32 bytes")
        self._key = PrivateKey(secret_key)

    @classmethod
    def from_hex(cls, secret_hex: str) -> "LocalSigner":
        value = secret_hex[2:] if secret_hex.lower().startswith("0x") else secret_hex
        try:
            return cls(bytes.fromhex(value))
        except ValueError:
            raise ValueError("Secret key must be 64 hex characters")

    @property
    def xonly_pubkey(self) -> str:
        # Compressed SEC1 minus the parity byte
        return self._key.public_key.format(compressed=True)[1:].hex()

    def sign(self, sighash: bytes) -> Tuple[bytes, str]:
        """Return ``(signature, xonly_pubkey)`` for a 32-byte sighash."""
        if len(sighash) != 32:
            raise ValueError("Signature hash must be 32 bytes")
        signature = self._key.sign_schnorr(sighash)
        logger.debug(f"Signed {sighash.hex()[:16]}... with {self.xonly_pubkey[:16]}...")
        return signature, self.xonly_pubkey
