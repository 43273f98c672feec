"""Bounded-retry confirmation polling with a fallback source."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

from covenant_custody.exceptions import (
    InvalidReferenceError,
    NotFoundError,
    TransportError,
)
from covenant_custody.models.voucher import TXID_PATTERN, TxStatus, UtxoInfo, UtxoReference

logger = logging.getLogger(__name__)

Observation = TypeVar("Observation", UtxoInfo, TxStatus)


class UtxoSource(Protocol):
    """Something that can report an output by outpoint, or a transaction.

    Lookups raise NotFoundError when the object is not (yet) visible,
    TransportError when the source is unreachable and InvalidReferenceError
    when the reference is definitively invalid.
    """

    name: str

    async def lookup_utxo(self, reference: UtxoReference) -> UtxoInfo:
        ...

    async def lookup_transaction(self, txid: str) -> TxStatus:
        ...


class ConfirmationPoller:
    """Waits for an output or transaction to reach enough confirmations.

    Each round asks the primary source and, if it fails or reports too few
    confirmations, the secondary source before sleeping. Exactly
    ``max_attempts`` rounds are made; there is no sleep after the last one.
    """

    def __init__(self, max_attempts: int = 20, interval_seconds: float = 5.0):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.interval_seconds = interval_seconds

    async def await_confirmed(
        self,
        reference: UtxoReference,
        primary_source: UtxoSource,
        secondary_source: Optional[UtxoSource] = None,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
        min_confirmations: int = 0,
    ) -> UtxoInfo:
        """Poll until ``reference`` is visible with ``min_confirmations``.

        Raises:
            InvalidReferenceError: Malformed reference, or a source reported
                it as definitively invalid. Never retried.
            NotFoundError: Not visible/confirmed after all attempts.
        """
        if not reference.is_well_formed:
            raise InvalidReferenceError(f"Malformed UTXO reference: {reference}")
        return await self._poll(
            f"UTXO {reference}",
            lambda source: source.lookup_utxo(reference),
            primary_source,
            secondary_source,
            max_attempts,
            interval,
            min_confirmations,
        )

    async def await_transaction(
        self,
        txid: str,
        primary_source: UtxoSource,
        secondary_source: Optional[UtxoSource] = None,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
        min_confirmations: int = 1,
    ) -> TxStatus:
        """Poll until transaction ``txid`` has ``min_confirmations``.

        Unlike ``await_confirmed`` this keeps working after the
        transaction's outputs have been spent.
        """
        if not isinstance(txid, str) or not TXID_PATTERN.match(txid):
            raise InvalidReferenceError(f"Malformed transaction id: {txid}")
        return await self._poll(
            f"Transaction {txid}",
            lambda source: source.lookup_transaction(txid),
            primary_source,
            secondary_source,
            max_attempts,
            interval,
            min_confirmations,
        )

    async def _poll(
        self,
        label: str,
        lookup: Callable[[UtxoSource], Awaitable[Observation]],
        primary_source: UtxoSource,
        secondary_source: Optional[UtxoSource],
        max_attempts: Optional[int],
        interval: Optional[float],
        min_confirmations: int,
    ) -> Observation:
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        delay = interval if interval is not None else self.interval_seconds
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        sources = [primary_source] + ([secondary_source] if secondary_source else [])
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            for source in sources:
                try:
                    observed = await lookup(source)
                except (NotFoundError, TransportError) as e:
                    last_error = e
                    if source is primary_source and secondary_source:
                        logger.warning(
                            f"Primary source {source.name} failed for {label} "
                            f"(attempt {attempt}/{attempts}): {e}; trying {secondary_source.name}"
                        )
                    continue

                if observed.confirmations >= min_confirmations:
                    logger.info(
                        f"{label} found via {source.name} with "
                        f"{observed.confirmations} confirmation(s) on attempt {attempt}"
                    )
                    return observed

                last_error = NotFoundError(
                    f"{label} has {observed.confirmations} confirmation(s), "
                    f"{min_confirmations} required"
                )

            if attempt < attempts:
                logger.debug(f"{label} not ready, retrying in {delay}s ({attempt}/{attempts})")
                await asyncio.sleep(delay)

        logger.error(f"{label} not confirmed after {attempts} attempts: {last_error}")
        raise NotFoundError(
            f"{label} not confirmed after {attempts} attempts",
            {"attempts": attempts, "last_error": str(last_error) if last_error else None},
        )
