"""Transaction broadcast with channel fallback."""
import logging
from typing import Optional, Protocol, Union

from covenant_custody.exceptions import (
    BroadcastRejectedError,
    BroadcastUnavailableError,
    TransportError,
)

logger = logging.getLogger(__name__)


class BroadcastChannel(Protocol):
    """Submits raw transactions to the network.

    ``submit`` raises BroadcastRejectedError when the network refuses the
    transaction and TransportError when the channel is unreachable.
    """

    name: str

    async def submit(self, raw_tx_hex: str) -> str:
        ...


class Broadcaster:
    """Submits via the primary channel, falling back only on transport failure."""

    async def submit(
        self,
        raw_tx: Union[bytes, str],
        primary_channel: BroadcastChannel,
        secondary_channel: Optional[BroadcastChannel] = None,
    ) -> str:
        """Broadcast ``raw_tx`` and return its txid.

        A rejection is final: the secondary channel is not tried, since
        the transaction itself is invalid.

        Raises:
            BroadcastRejectedError: The network rejected the transaction.
            BroadcastUnavailableError: No channel could be reached.
        """
        raw_tx_hex = raw_tx.hex() if isinstance(raw_tx, bytes) else raw_tx

        try:
            txid = await primary_channel.submit(raw_tx_hex)
        except BroadcastRejectedError as e:
            logger.error(f"Broadcast rejected by {primary_channel.name}: {e}")
            raise
        except TransportError as primary_error:
            if secondary_channel is None:
                raise BroadcastUnavailableError(
                    f"Broadcast channel {primary_channel.name} unavailable",
                    {primary_channel.name: str(primary_error)},
                )
            logger.warning(
                f"Broadcast via {primary_channel.name} failed ({primary_error}); "
                f"falling back to {secondary_channel.name}"
            )
            try:
                txid = await secondary_channel.submit(raw_tx_hex)
            except BroadcastRejectedError as e:
                logger.error(f"Broadcast rejected by {secondary_channel.name}: {e}")
                raise
            except TransportError as secondary_error:
                logger.error(f"Both broadcast channels unavailable: {secondary_error}")
                raise BroadcastUnavailableError(
                    "All broadcast channels unavailable",
                    {
                        primary_channel.name: str(primary_error),
                        secondary_channel.name: str(secondary_error),
                    },
                )
            channel = secondary_channel
        else:
            channel = primary_channel

        txid = txid.strip().lower()
        logger.info(f"Transaction {txid} broadcast via {channel.name}")
        return txid
