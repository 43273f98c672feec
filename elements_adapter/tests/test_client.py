"""Tests for Elements RPC client."""

import json
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from elements_adapter import ElementsRPCClient, ElementsRPCSettings
from elements_adapter.exceptions import (
    ElementsAuthError,
    ElementsNetworkError,
    ElementsRPCError,
    ElementsServerError,
)


def rpc_response(result, status: int = 200) -> httpx.Response:
    return httpx.Response(
        status,
        json={"result": result, "error": None, "id": 1},
        request=httpx.Request("POST", "/"),
    )


def rpc_error(code: int, message: str, status: int = 500) -> httpx.Response:
    return httpx.Response(
        status,
        json={"result": None, "error": {"code": code, "message": message}, "id": 1},
        request=httpx.Request("POST", "/"),
    )


class TestElementsRPCClient:
    """Test Elements RPC client methods."""

    @pytest.mark.asyncio
    async def test_context_manager(self, rpc_settings: ElementsRPCSettings) -> None:
        """Test client works as async context manager."""
        async with ElementsRPCClient(rpc_settings) as client:
            assert client._client is not None

        assert client._client is None

    @pytest.mark.asyncio
    async def test_client_not_initialized_error(
        self, rpc_settings: ElementsRPCSettings
    ) -> None:
        """Test error when using client outside context manager."""
        client = ElementsRPCClient(rpc_settings)

        with pytest.raises(RuntimeError, match="Client not initialized"):
            _ = client.client

    @pytest.mark.asyncio
    async def test_call_builds_jsonrpc_payload(
        self, rpc_settings: ElementsRPCSettings, txid: str
    ) -> None:
        """Test RPC payload carries method and positional params."""
        async with ElementsRPCClient(rpc_settings) as client:
            with patch.object(
                client._client, "request", new_callable=AsyncMock
            ) as mock_request:
                mock_request.return_value = rpc_response(None)

                result = await client.get_tx_out(txid, 1)

                assert result is None
                payload = mock_request.call_args.kwargs["json"]
                assert payload["method"] == "gettxout"
                assert payload["params"] == [txid, 1, True]
                assert mock_request.call_args.kwargs["url"] == "/"

    @pytest.mark.asyncio
    async def test_get_tx_out(self, rpc_settings: ElementsRPCSettings, txid: str) -> None:
        """Test gettxout result parsing."""
        mock_result = {
            "bestblock": "00" * 32,
            "confirmations": 2,
            "value": 0.001,
            "asset": "144c" + "00" * 30,
            "scriptPubKey": {"hex": "5120" + "ab" * 32, "address": "tex1pcov"},
            "coinbase": False,
        }

        async with ElementsRPCClient(rpc_settings) as client:
            with patch.object(
                client._client, "request", new_callable=AsyncMock
            ) as mock_request:
                mock_request.return_value = rpc_response(mock_result)

                result = await client.get_tx_out(txid, 0)

                assert result.confirmations == 2
                assert result.value == Decimal("0.001")
                assert result.script_pubkey.address == "tex1pcov"

    @pytest.mark.asyncio
    async def test_get_raw_transaction(
        self, rpc_settings: ElementsRPCSettings, txid: str
    ) -> None:
        """Test verbose getrawtransaction parsing."""
        mock_result = {
            "txid": txid,
            "vout": [
                {
                    "n": 0,
                    "value": 0.0005,
                    "asset": "144c" + "00" * 30,
                    "scriptPubKey": {"hex": "0014" + "cd" * 20, "address": "tex1qpayee"},
                },
                {
                    "n": 1,
                    "value": 0.0001,
                    "scriptPubKey": {"hex": "", "type": "fee"},
                },
            ],
        }

        async with ElementsRPCClient(rpc_settings) as client:
            with patch.object(
                client._client, "request", new_callable=AsyncMock
            ) as mock_request:
                mock_request.return_value = rpc_response(mock_result)

                result = await client.get_raw_transaction(txid)

                payload = mock_request.call_args.kwargs["json"]
                assert payload["params"] == [txid, True]
                assert result.confirmations == 0
                assert [o.n for o in result.vout] == [0, 1]
                assert result.vout[0].script_pubkey.address == "tex1qpayee"
                assert result.vout[1].script_pubkey.address is None

    @pytest.mark.asyncio
    async def test_wallet_calls_use_wallet_path(self) -> None:
        """Test wallet-scoped methods route to /wallet/<name>."""
        settings = ElementsRPCSettings(wallet="voucher", retry_attempts=1)

        async with ElementsRPCClient(settings) as client:
            with patch.object(
                client._client, "request", new_callable=AsyncMock
            ) as mock_request:
                mock_request.return_value = rpc_response("b2" * 32)

                txid = await client.send_to_address("tex1pcov", Decimal("0.00100000"))

                assert txid == "b2" * 32
                assert mock_request.call_args.kwargs["url"] == "/wallet/voucher"
                payload = mock_request.call_args.kwargs["json"]
                # Decimal amounts are encoded as JSON numbers
                assert json.dumps(payload["params"]) == '["tex1pcov", 0.001]'

    @pytest.mark.asyncio
    async def test_get_balance_per_asset(self, rpc_settings: ElementsRPCSettings) -> None:
        """Test Elements per-asset balance mapping."""
        async with ElementsRPCClient(rpc_settings) as client:
            with patch.object(
                client._client, "request", new_callable=AsyncMock
            ) as mock_request:
                mock_request.return_value = rpc_response({"bitcoin": 1.5})

                assert await client.get_balance() == Decimal("1.5")

    @pytest.mark.asyncio
    async def test_finalize_psbt(self, rpc_settings: ElementsRPCSettings) -> None:
        """Test finalizepsbt result parsing."""
        async with ElementsRPCClient(rpc_settings) as client:
            with patch.object(
                client._client, "request", new_callable=AsyncMock
            ) as mock_request:
                mock_request.return_value = rpc_response({"hex": "0200", "complete": True})

                result = await client.finalize_psbt("cHNldP8=")

                assert result.complete is True
                assert result.hex == "0200"

    @pytest.mark.asyncio
    async def test_rpc_error_carries_code(self, rpc_settings: ElementsRPCSettings) -> None:
        """Test JSON-RPC error body raises ElementsRPCError with its code."""
        async with ElementsRPCClient(rpc_settings) as client:
            with patch.object(
                client._client, "request", new_callable=AsyncMock
            ) as mock_request:
                mock_request.return_value = rpc_error(-26, "bad-txns-inputs-missingorspent")

                with pytest.raises(ElementsRPCError) as exc_info:
                    await client.send_raw_transaction("0200")

                assert exc_info.value.code == -26
                assert "missingorspent" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_rpc_error_not_retried(self) -> None:
        """Test RPC errors are definitive and not retried."""
        settings = ElementsRPCSettings(
            retry_attempts=3, retry_min_wait_seconds=0, retry_max_wait_seconds=0
        )

        async with ElementsRPCClient(settings) as client:
            with patch.object(
                client._client, "request", new_callable=AsyncMock
            ) as mock_request:
                mock_request.return_value = rpc_error(-8, "Invalid parameter")

                with pytest.raises(ElementsRPCError):
                    await client.get_tx_out("zz", 0)

                assert mock_request.call_count == 1

    @pytest.mark.asyncio
    async def test_error_401_raises_auth_error(
        self, rpc_settings: ElementsRPCSettings
    ) -> None:
        """Test 401 response raises ElementsAuthError."""
        async with ElementsRPCClient(rpc_settings) as client:
            with patch.object(
                client._client, "request", new_callable=AsyncMock
            ) as mock_request:
                mock_request.return_value = httpx.Response(
                    401, text="", request=httpx.Request("POST", "/")
                )

                with pytest.raises(ElementsAuthError):
                    await client.get_blockchain_info()

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self) -> None:
        """Test 5xx without RPC body is retried up to the attempt budget."""
        settings = ElementsRPCSettings(
            retry_attempts=2, retry_min_wait_seconds=0, retry_max_wait_seconds=0
        )

        async with ElementsRPCClient(settings) as client:
            with patch.object(
                client._client, "request", new_callable=AsyncMock
            ) as mock_request:
                mock_request.return_value = httpx.Response(
                    503, text="unavailable", request=httpx.Request("POST", "/")
                )

                with pytest.raises(ElementsServerError):
                    await client.get_block_count()

                assert mock_request.call_count == 2

    @pytest.mark.asyncio
    async def test_connect_error_raises_network_error(
        self, rpc_settings: ElementsRPCSettings
    ) -> None:
        """Test connection failures surface as ElementsNetworkError."""
        async with ElementsRPCClient(rpc_settings) as client:
            with patch.object(
                client._client, "request", new_callable=AsyncMock
            ) as mock_request:
                mock_request.side_effect = httpx.ConnectError("refused")

                with pytest.raises(ElementsNetworkError):
                    await client.get_block_count()
