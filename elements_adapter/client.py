"""Elements node JSON-RPC client."""

from __future__ import annotations

import itertools
from decimal import Decimal
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import ElementsRPCSettings
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
from .schemas import BlockchainInfo, FinalizedPsbt, RawTransaction, TxOut


class ElementsRPCClient:
    """Async client for an Elements node JSON-RPC endpoint.

    Usage:
        async with ElementsRPCClient(settings) as client:
            info = await client.get_blockchain_info()
    """

    def __init__(self, settings: ElementsRPCSettings | None = None):
        """Initialize client.

        Args:
            settings: Node settings. If not provided, loads from environment.
        """
        self.settings = settings or ElementsRPCSettings()
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "ElementsRPCClient":
        """Enter async context."""
        self._client = httpx.AsyncClient(
            base_url=self.settings.url,
            auth=(self.settings.user, self.settings.password),
            timeout=httpx.Timeout(self.settings.timeout_seconds),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client, ensuring it's initialized."""
        if self._client is None:
            raise RuntimeError(
                "Client not initialized. Use 'async with ElementsRPCClient() as client:'"
            )
        return self._client

    def _handle_error(self, response: httpx.Response) -> Any:
        """Return the RPC result or raise the matching exception.

        The node reports RPC failures with HTTP 500 (or 404 for an unknown
        method) and a JSON body, so the body is inspected before the status.

        Raises:
            ElementsRPCError: For JSON-RPC error bodies.
            ElementsAuthError: For 401/403 responses.
            ElementsNotFoundError: For 404 responses without an RPC body.
            ElementsValidationError: For 400/422 responses.
            ElementsRateLimitError: For 429 responses.
            ElementsServerError: For other 5xx responses.
            ElementsError: For other error responses.
        """
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            raise ElementsRPCError(
                error.get("message", "unknown error"),
                code=int(error.get("code", 0)),
                details=error,
            )

        status = response.status_code
        if response.is_success and isinstance(body, dict):
            return body.get("result")

        details = body if body is not None else response.text
        message = f"HTTP {status}"

        if status in (401, 403):
            raise ElementsAuthError(message, details)
        elif status == 404:
            raise ElementsNotFoundError(message, details)
        elif status in (400, 422):
            raise ElementsValidationError(message, details)
        elif status == 429:
            raise ElementsRateLimitError(message, details)
        elif status >= 500:
            raise ElementsServerError(message, details)
        else:
            raise ElementsError(message, details)

    def _create_retry_decorator(self):
        """Create retry decorator with current settings."""
        return retry(
            retry=retry_if_exception_type(
                (ElementsServerError, ElementsNetworkError, httpx.NetworkError, httpx.TimeoutException)
            ),
            stop=stop_after_attempt(self.settings.retry_attempts),
            wait=wait_exponential(
                min=self.settings.retry_min_wait_seconds,
                max=self.settings.retry_max_wait_seconds,
            ),
            reraise=True,
        )

    async def call(self, method: str, *params: Any, wallet: bool = False) -> Any:
        """Invoke an RPC method.

        Args:
            method: RPC method name.
            params: Positional RPC parameters.
            wallet: Route the call to the configured wallet endpoint.

        Returns:
            The ``result`` member of the RPC response.
        """
        path = "/"
        if wallet and self.settings.wallet:
            path = f"/wallet/{self.settings.wallet}"
        payload = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": [_jsonable(p) for p in params],
        }

        @self._create_retry_decorator()
        async def _do_request():
            try:
                response = await self.client.request(
                    method="POST",
                    url=path,
                    json=payload,
                )
            except httpx.NetworkError as e:
                raise ElementsNetworkError(f"Network error: {e}")
            except httpx.TimeoutException as e:
                raise ElementsNetworkError(f"Timeout: {e}")

            return self._handle_error(response)

        return await _do_request()

    # ==================== Chain ====================

    async def get_blockchain_info(self) -> BlockchainInfo:
        data = await self.call("getblockchaininfo")
        return BlockchainInfo(**data)

    async def get_block_count(self) -> int:
        return int(await self.call("getblockcount"))

    async def get_tx_out(
        self, txid: str, vout: int, include_mempool: bool = True
    ) -> TxOut | None:
        """Look up an unspent output.

        Returns:
            The output, or None if it is unknown or already spent.
        """
        data = await self.call("gettxout", txid, vout, include_mempool)
        if data is None:
            return None
        return TxOut(**data)

    async def get_raw_transaction(self, txid: str) -> RawTransaction:
        """Decoded transaction; needs -txindex unless in the mempool or wallet."""
        data = await self.call("getrawtransaction", txid, True)
        return RawTransaction(**data)

    # ==================== Wallet ====================

    async def get_balance(self) -> Decimal:
        data = await self.call("getbalance", wallet=True)
        # Elements returns a per-asset mapping
        if isinstance(data, dict):
            return Decimal(str(data.get("bitcoin", 0)))
        return Decimal(str(data))

    async def send_to_address(self, address: str, amount: Decimal) -> str:
        """Pay ``amount`` coins to ``address`` from the node wallet."""
        return await self.call("sendtoaddress", address, amount, wallet=True)

    # ==================== PSET ====================

    async def create_psbt(
        self, inputs: list[dict[str, Any]], outputs: list[dict[str, Any]]
    ) -> str:
        """Create an unsigned PSET.

        ``outputs`` is an ordered array; a ``{"fee": amount}`` entry places
        the explicit fee output at its position.
        """
        return await self.call("createpsbt", inputs, outputs)

    async def combine_psbt(self, psbts: list[str]) -> str:
        return await self.call("combinepsbt", psbts)

    async def finalize_psbt(self, psbt: str, extract: bool = True) -> FinalizedPsbt:
        data = await self.call("finalizepsbt", psbt, extract)
        return FinalizedPsbt(**data)

    async def send_raw_transaction(self, tx_hex: str) -> str:
        """Submit a raw transaction and return its txid."""
        return await self.call("sendrawtransaction", tx_hex)


def _jsonable(value: Any) -> Any:
    """Convert Decimal amounts (possibly nested) for JSON encoding."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value
