"""Testnet faucet funding of covenant addresses."""
import logging
import re
from typing import Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from covenant_custody.exceptions import FundingError, TransportError

logger = logging.getLogger(__name__)

# The faucet answers with an HTML page mentioning the funding transaction
TXID_PATTERNS = (
    re.compile(r"transaction\s+([a-f0-9]{64})", re.IGNORECASE),
    re.compile(r"txid[:\s]+([a-f0-9]{64})", re.IGNORECASE),
)


def parse_faucet_txid(body: str) -> Optional[str]:
    for pattern in TXID_PATTERNS:
        match = pattern.search(body)
        if match:
            return match.group(1).lower()
    return None


class FaucetFunder:
    """Requests L-BTC from a Liquid testnet faucet.

    Usage:
        funder = FaucetFunder("https://liquidtestnet.com/faucet")
        txid = await funder.fund(address)
    """

    def __init__(
        self,
        faucet_url: str,
        timeout_seconds: float = 30.0,
        retry_attempts: int = 3,
        retry_min_wait_seconds: float = 1.0,
        retry_max_wait_seconds: float = 10.0,
    ):
        self.faucet_url = faucet_url
        self.timeout_seconds = timeout_seconds
        self.retry_attempts = retry_attempts
        self.retry_min_wait_seconds = retry_min_wait_seconds
        self.retry_max_wait_seconds = retry_max_wait_seconds

    def _create_retry_decorator(self):
        return retry(
            retry=retry_if_exception_type(TransportError),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(
                min=self.retry_min_wait_seconds,
                max=self.retry_max_wait_seconds,
            ),
            reraise=True,
        )

    async def fund(self, address: str) -> str:
        """Ask the faucet to pay ``address`` and return the funding txid.

        Raises:
            TransportError: Faucet unreachable or failing after retries.
            FundingError: The faucet answered without a transaction id.
        """
        params = {"address": address, "action": "lbtc"}

        @self._create_retry_decorator()
        async def _do_request() -> httpx.Response:
            try:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(self.faucet_url, params=params)
            except httpx.HTTPError as e:
                raise TransportError("Faucet unreachable", str(e))
            if response.status_code >= 500:
                raise TransportError(f"Faucet returned HTTP {response.status_code}")
            return response

        response = await _do_request()
        if not response.is_success:
            raise FundingError(
                f"Faucet refused funding of {address}",
                {"status": response.status_code, "body": response.text[:200]},
            )

        txid = parse_faucet_txid(response.text)
        if txid is None:
            logger.error(f"Faucet response for {address} contains no transaction id")
            raise FundingError("Faucet response contains no transaction id", response.text[:200])

        logger.info(f"Faucet funded {address}: {txid}")
        return txid
