"""Pytest configuration and fixtures."""

import pytest


@pytest.fixture
def txid() -> str:
    """A well-formed transaction id."""
    return "a1" * 32


@pytest.fixture
def rpc_settings():
    """Create test node settings."""
    from elements_adapter.config import ElementsRPCSettings

    return ElementsRPCSettings(
        host="127.0.0.1",
        port=18891,
        user="test-user",
        password="test-pass",
        retry_attempts=1,  # Disable retries for faster tests
    )


@pytest.fixture
def esplora_settings():
    """Create test Esplora settings."""
    from elements_adapter.config import EsploraSettings

    return EsploraSettings(
        base_url="https://esplora.test/liquidtestnet/api",
        retry_attempts=1,
    )
