"""Pytest configuration and fixtures."""
import hashlib
from typing import AsyncGenerator, List
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from covenant_custody.database import Base
from covenant_custody.exceptions import NotFoundError
from covenant_custody.models.covenant import OutputPolicy
from covenant_custody.models.voucher import TxStatus, UtxoInfo, UtxoReference
from covenant_custody.services.broadcaster import Broadcaster
from covenant_custody.services.poller import ConfirmationPoller
from covenant_custody.services.signer import LocalSigner
from covenant_custody.services.tx_builder import TransactionBuilder
from covenant_custody.services.witness import WitnessAssembler
from covenant_custody.services.workflow import WorkflowRegistry, WorkflowServices


# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

COMMITMENT_ID = "c0" * 32
COVENANT_ADDRESS = "tex1pgrwxqqg00u3pgyt4gyfccav5x2vyz7h0u6y0ujqk3khf3mwcg8ashz9ymw"
PAYEE_ADDRESS = "tex1pfeaa7eex2cxa923tehj5vd0emf779fp8v968mcx9uymm6q3gze6s8cvkka"
PROMOTER_ADDRESS = "tex1qxvenxvenxvenxvenxvenxvenxvenxven6t5r6v"
FUNDING_TXID = "f0" * 32
SPEND_TXID = "5e" * 32
POLICY_ASSET = "144c654344aa716d6f3abcc1ca90e5641e4e2a7f633bc09fe3baf64585819a49"
SIGHASH = hashlib.sha256(b"covenant spend").digest()


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    session_maker = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with session_maker() as session:
        yield session


@pytest.fixture
def signers() -> List[LocalSigner]:
    """Three signers with secret keys 1, 2 and 3."""
    return [LocalSigner((i + 1).to_bytes(32, "big")) for i in range(3)]


@pytest.fixture
def voucher_policy(signers) -> OutputPolicy:
    """2-of-3 voucher: payment, recursive change, fee."""
    return OutputPolicy.voucher([s.xonly_pubkey for s in signers], min_threshold=2)


def make_utxo_info(
    vout: int = 0,
    txid: str = FUNDING_TXID,
    value: int = 100_000,
    confirmations: int = 1,
    address: str = COVENANT_ADDRESS,
    source: str = "elements",
) -> UtxoInfo:
    return UtxoInfo(
        reference=UtxoReference(txid=txid, vout=vout),
        value=value,
        asset=POLICY_ASSET,
        script_pubkey="5120" + "ab" * 32,
        confirmations=confirmations,
        address=address,
        source=source,
    )


@pytest.fixture
def fake_engine() -> MagicMock:
    """Covenant engine double returning fixed artifacts."""
    engine = MagicMock()
    engine.compile = AsyncMock(return_value=b"\x01covenant-program")
    engine.derive = AsyncMock(return_value=(COMMITMENT_ID, COVENANT_ADDRESS))
    engine.prepare_input = AsyncMock(return_value="prepared-pset")
    engine.signature_hash = AsyncMock(return_value=SIGHASH)
    engine.finalize = AsyncMock(return_value="spend-proof-pset")
    return engine


@pytest.fixture
def fake_chain() -> MagicMock:
    """Primary chain service double; the funding output is at vout 0."""
    chain = MagicMock()
    chain.name = "elements"

    async def lookup_utxo(reference: UtxoReference) -> UtxoInfo:
        if reference.txid == FUNDING_TXID:
            return make_utxo_info(vout=reference.vout)
        if reference.txid == SPEND_TXID:
            return make_utxo_info(vout=reference.vout, txid=SPEND_TXID, value=48_900)
        raise NotFoundError(f"UTXO {reference} not found")

    async def lookup_transaction(txid: str) -> TxStatus:
        if txid in (FUNDING_TXID, SPEND_TXID):
            return TxStatus(txid=txid, confirmations=1, source="elements")
        raise NotFoundError(f"Transaction {txid} not found")

    chain.lookup_utxo = AsyncMock(side_effect=lookup_utxo)
    chain.lookup_transaction = AsyncMock(side_effect=lookup_transaction)
    chain.locate_output = AsyncMock(return_value=UtxoReference(txid=FUNDING_TXID, vout=0))
    chain.assemble_raw = AsyncMock(return_value="unsigned-pset")
    chain.finalize_raw = AsyncMock(return_value="0200000001deadbeef")
    chain.submit = AsyncMock(return_value=SPEND_TXID)
    chain.fund_address = AsyncMock(return_value=FUNDING_TXID)
    return chain


@pytest.fixture
def workflow_services(fake_engine, fake_chain) -> WorkflowServices:
    return WorkflowServices(
        engine=fake_engine,
        chain=fake_chain,
        builder=TransactionBuilder(network="liquidtestnet", min_fee_sats=100),
        assembler=WitnessAssembler(),
        poller=ConfirmationPoller(max_attempts=3, interval_seconds=0),
        broadcaster=Broadcaster(),
        funding_min_confirmations=0,
        spend_min_confirmations=1,
    )


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, workflow_services: WorkflowServices) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with fake chain collaborators."""
    from covenant_custody.database import get_db
    from covenant_custody.main import app

    # Override database dependency
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    # ASGITransport does not run the lifespan
    app.state.workflow_services = workflow_services
    app.state.registry = WorkflowRegistry()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        client.headers["X-Actor-ID"] = "operator-1"
        yield client

    app.dependency_overrides.clear()
