"""Unit tests for broadcast channel fallback."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from covenant_custody.exceptions import (
    BroadcastRejectedError,
    BroadcastUnavailableError,
    TransportError,
)
from covenant_custody.services.broadcaster import Broadcaster

from conftest import SPEND_TXID

RAW_TX = "0200000001deadbeef"


def make_channel(name: str, *, side_effect=None, return_value=None) -> MagicMock:
    channel = MagicMock()
    channel.name = name
    channel.submit = AsyncMock(side_effect=side_effect, return_value=return_value)
    return channel


@pytest.mark.asyncio
async def test_primary_success():
    primary = make_channel("elements", return_value=SPEND_TXID.upper())
    secondary = make_channel("esplora", return_value=SPEND_TXID)

    txid = await Broadcaster().submit(RAW_TX, primary, secondary)

    assert txid == SPEND_TXID
    primary.submit.assert_awaited_once_with(RAW_TX)
    secondary.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_bytes_are_hex_encoded():
    primary = make_channel("elements", return_value=SPEND_TXID)

    await Broadcaster().submit(bytes.fromhex(RAW_TX), primary)

    primary.submit.assert_awaited_once_with(RAW_TX)


@pytest.mark.asyncio
async def test_rejection_never_tries_secondary():
    primary = make_channel("elements", side_effect=BroadcastRejectedError("bad-txns-inputs-missingorspent"))
    secondary = make_channel("esplora", return_value=SPEND_TXID)

    with pytest.raises(BroadcastRejectedError):
        await Broadcaster().submit(RAW_TX, primary, secondary)

    secondary.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_transport_failure_falls_back():
    primary = make_channel("elements", side_effect=TransportError("connection refused"))
    secondary = make_channel("esplora", return_value=SPEND_TXID)

    txid = await Broadcaster().submit(RAW_TX, primary, secondary)

    assert txid == SPEND_TXID
    secondary.submit.assert_awaited_once_with(RAW_TX)


@pytest.mark.asyncio
async def test_secondary_rejection_propagates():
    primary = make_channel("elements", side_effect=TransportError("connection refused"))
    secondary = make_channel("esplora", side_effect=BroadcastRejectedError("non-final"))

    with pytest.raises(BroadcastRejectedError):
        await Broadcaster().submit(RAW_TX, primary, secondary)


@pytest.mark.asyncio
async def test_both_channels_unavailable():
    primary = make_channel("elements", side_effect=TransportError("connection refused"))
    secondary = make_channel("esplora", side_effect=TransportError("timeout"))

    with pytest.raises(BroadcastUnavailableError) as exc_info:
        await Broadcaster().submit(RAW_TX, primary, secondary)

    assert set(exc_info.value.details) == {"elements", "esplora"}
    assert exc_info.value.is_retryable


@pytest.mark.asyncio
async def test_no_secondary_configured():
    primary = make_channel("elements", side_effect=TransportError("connection refused"))

    with pytest.raises(BroadcastUnavailableError):
        await Broadcaster().submit(RAW_TX, primary)
