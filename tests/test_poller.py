"""Unit tests for bounded confirmation polling."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from covenant_custody.exceptions import InvalidReferenceError, NotFoundError, TransportError
from covenant_custody.models.voucher import TxStatus, UtxoReference
from covenant_custody.services.poller import ConfirmationPoller

from conftest import FUNDING_TXID, SPEND_TXID, make_utxo_info


def make_source(name: str, *, side_effect=None, return_value=None) -> MagicMock:
    source = MagicMock()
    source.name = name
    source.lookup_utxo = AsyncMock(side_effect=side_effect, return_value=return_value)
    return source


@pytest.fixture
def reference() -> UtxoReference:
    return UtxoReference(txid=FUNDING_TXID, vout=0)


@pytest.mark.asyncio
async def test_found_on_first_attempt(reference):
    primary = make_source("elements", return_value=make_utxo_info())
    poller = ConfirmationPoller(max_attempts=3, interval_seconds=5)

    with patch("covenant_custody.services.poller.asyncio.sleep", new_callable=AsyncMock) as sleep:
        info = await poller.await_confirmed(reference, primary)

    assert info.value == 100_000
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_gives_up_after_exactly_max_attempts(reference):
    """Three rounds, two sleeps, then NotFoundError."""
    primary = make_source("elements", side_effect=NotFoundError("not yet"))
    poller = ConfirmationPoller(max_attempts=3, interval_seconds=5)

    with patch("covenant_custody.services.poller.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(NotFoundError) as exc_info:
            await poller.await_confirmed(reference, primary)

    assert primary.lookup_utxo.await_count == 3
    assert sleep.await_count == 2
    sleep.assert_awaited_with(5)
    assert exc_info.value.details["attempts"] == 3


@pytest.mark.asyncio
async def test_call_overrides_configured_attempts(reference):
    primary = make_source("elements", side_effect=NotFoundError("not yet"))
    poller = ConfirmationPoller(max_attempts=20, interval_seconds=5)

    with patch("covenant_custody.services.poller.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(NotFoundError):
            await poller.await_confirmed(reference, primary, max_attempts=2, interval=0.5)

    assert primary.lookup_utxo.await_count == 2
    sleep.assert_awaited_once_with(0.5)


@pytest.mark.asyncio
async def test_secondary_source_used_when_primary_unreachable(reference):
    primary = make_source("elements", side_effect=TransportError("connection refused"))
    secondary = make_source("esplora", return_value=make_utxo_info(source="esplora"))
    poller = ConfirmationPoller(max_attempts=3, interval_seconds=0)

    info = await poller.await_confirmed(reference, primary, secondary)

    assert info.source == "esplora"
    assert primary.lookup_utxo.await_count == 1
    assert secondary.lookup_utxo.await_count == 1


@pytest.mark.asyncio
async def test_both_sources_failing_exhausts_all_rounds(reference):
    primary = make_source("elements", side_effect=TransportError("connection refused"))
    secondary = make_source("esplora", side_effect=NotFoundError("Transaction not found"))
    poller = ConfirmationPoller(max_attempts=3, interval_seconds=5)

    with patch("covenant_custody.services.poller.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(NotFoundError) as exc_info:
            await poller.await_confirmed(reference, primary, secondary)

    assert primary.lookup_utxo.await_count == 3
    assert secondary.lookup_utxo.await_count == 3
    assert sleep.await_count == 2
    assert exc_info.value.details["attempts"] == 3


@pytest.mark.asyncio
async def test_waits_for_required_confirmations(reference):
    primary = make_source(
        "elements",
        side_effect=[make_utxo_info(confirmations=0), make_utxo_info(confirmations=1)],
    )
    poller = ConfirmationPoller(max_attempts=3, interval_seconds=0)

    info = await poller.await_confirmed(reference, primary, min_confirmations=1)

    assert info.confirmations == 1
    assert primary.lookup_utxo.await_count == 2


@pytest.mark.asyncio
async def test_mempool_output_accepted_with_zero_confirmations(reference):
    primary = make_source("elements", return_value=make_utxo_info(confirmations=0))
    poller = ConfirmationPoller(max_attempts=3, interval_seconds=0)

    info = await poller.await_confirmed(reference, primary, min_confirmations=0)

    assert info.confirmations == 0


@pytest.mark.asyncio
async def test_invalid_reference_is_not_retried(reference):
    primary = make_source("elements", side_effect=InvalidReferenceError("bad outpoint"))
    poller = ConfirmationPoller(max_attempts=3, interval_seconds=0)

    with pytest.raises(InvalidReferenceError):
        await poller.await_confirmed(reference, primary)

    assert primary.lookup_utxo.await_count == 1


@pytest.mark.asyncio
async def test_malformed_reference_never_queries():
    primary = make_source("elements", return_value=make_utxo_info())
    poller = ConfirmationPoller(max_attempts=3, interval_seconds=0)

    with pytest.raises(InvalidReferenceError):
        await poller.await_confirmed(UtxoReference(txid="xyz", vout=0), primary)

    primary.lookup_utxo.assert_not_awaited()


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        ConfirmationPoller(max_attempts=0)


class TestAwaitTransaction:
    @pytest.mark.asyncio
    async def test_confirms_on_transaction_status(self):
        primary = MagicMock()
        primary.name = "elements"
        primary.lookup_transaction = AsyncMock(side_effect=[
            TxStatus(txid=SPEND_TXID, confirmations=0, source="elements"),
            TxStatus(txid=SPEND_TXID, confirmations=1, source="elements"),
        ])
        poller = ConfirmationPoller(max_attempts=3, interval_seconds=0)

        status = await poller.await_transaction(SPEND_TXID, primary, min_confirmations=1)

        assert status.confirmations == 1
        assert primary.lookup_transaction.await_count == 2
        primary.lookup_utxo.assert_not_called()

    @pytest.mark.asyncio
    async def test_falls_back_to_secondary(self):
        primary = MagicMock()
        primary.name = "elements"
        primary.lookup_transaction = AsyncMock(side_effect=NotFoundError("no txindex"))
        secondary = MagicMock()
        secondary.name = "esplora"
        secondary.lookup_transaction = AsyncMock(
            return_value=TxStatus(txid=SPEND_TXID, confirmations=2, block_height=100, source="esplora")
        )
        poller = ConfirmationPoller(max_attempts=3, interval_seconds=0)

        status = await poller.await_transaction(SPEND_TXID, primary, secondary)

        assert status.source == "esplora"

    @pytest.mark.asyncio
    async def test_malformed_txid_never_queries(self):
        primary = MagicMock()
        primary.lookup_transaction = AsyncMock()
        poller = ConfirmationPoller(max_attempts=3, interval_seconds=0)

        with pytest.raises(InvalidReferenceError):
            await poller.await_transaction("not-a-txid", primary)

        primary.lookup_transaction.assert_not_awaited()
