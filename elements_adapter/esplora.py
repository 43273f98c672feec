"""Esplora REST API client."""

from __future__ import annotations

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import EsploraSettings
from .exceptions import (
    ElementsError,
    ElementsNetworkError,
    ElementsNotFoundError,
    ElementsRateLimitError,
    ElementsServerError,
    ElementsValidationError,
)
from .schemas import EsploraTx


class EsploraClient:
    """Async client for an Esplora instance (e.g. Blockstream's Liquid API).

    Usage:
        async with EsploraClient(settings) as client:
            tx = await client.get_tx(txid)
    """

    def __init__(self, settings: EsploraSettings | None = None):
        self.settings = settings or EsploraSettings()
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "EsploraClient":
        """Enter async context."""
        self._client = httpx.AsyncClient(
            base_url=self.settings.base_url.rstrip("/"),
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
                "Client not initialized. Use 'async with EsploraClient() as client:'"
            )
        return self._client

    def _handle_error(self, response: httpx.Response) -> None:
        """Raise appropriate exception for error response.

        Esplora answers with plain-text bodies, so details carry the text.
        """
        if response.is_success:
            return

        status = response.status_code
        message = f"HTTP {status}"
        details = response.text

        if status == 404:
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
                (ElementsServerError, ElementsNetworkError, ElementsRateLimitError)
            ),
            stop=stop_after_attempt(self.settings.retry_attempts),
            wait=wait_exponential(
                min=self.settings.retry_min_wait_seconds,
                max=self.settings.retry_max_wait_seconds,
            ),
            reraise=True,
        )

    async def _request(
        self, method: str, path: str, content: str | None = None
    ) -> httpx.Response:
        @self._create_retry_decorator()
        async def _do_request():
            try:
                response = await self.client.request(
                    method=method,
                    url=path,
                    content=content,
                )
            except httpx.NetworkError as e:
                raise ElementsNetworkError(f"Network error: {e}")
            except httpx.TimeoutException as e:
                raise ElementsNetworkError(f"Timeout: {e}")

            self._handle_error(response)
            return response

        return await _do_request()

    async def get_tx(self, txid: str) -> EsploraTx:
        """Fetch a transaction with its outputs and status."""
        response = await self._request("GET", f"/tx/{txid}")
        return EsploraTx(**response.json())

    async def get_tip_height(self) -> int:
        response = await self._request("GET", "/blocks/tip/height")
        return int(response.text.strip())

    async def broadcast(self, tx_hex: str) -> str:
        """Submit a raw transaction; returns the txid."""
        response = await self._request("POST", "/tx", content=tx_hex)
        return response.text.strip()
