import os
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_account import Account

# Set test environment variables
# This must run before src.config is imported by any test
os.environ.setdefault("PAYMENT_MODE", "simulated")
os.environ.setdefault("WEBHOOK_NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault(
    "DATABASE_PATH", str(Path(tempfile.gettempdir()) / "adao-subscriptions-test.db")
)

from src.config import PaymentSettings  # noqa: E402
from src.database import Database  # noqa: E402
from src.models import TransferReceipt  # noqa: E402
from src.subscriptions.processor import PaymentProcessor  # noqa: E402
from factories import (  # noqa: E402
    ONE_ADAO,
    ONE_ETH,
    RECEIVER_ADDRESS,
    TOKEN_ADDRESS,
    make_subscription,
)


@pytest.fixture
def settings():
    return PaymentSettings(
        chain_id=8453,
        token_address=TOKEN_ADDRESS,
        token_decimals=18,
        token_symbol="ADAO",
        native_symbol="ETH",
        min_gas_balance="0.0001",
        default_receiver=RECEIVER_ADDRESS,
        confirmation_timeout_seconds=5,
    )


@pytest.fixture
def chain():
    """Chain client mock holding 1 ETH and 150 ADAO; looked-up transfers are mined."""
    client = MagicMock()
    client.get_native_balance = AsyncMock(return_value=1 * ONE_ETH)
    client.get_token_balance = AsyncMock(return_value=150 * ONE_ADAO)
    client.get_token_decimals = AsyncMock(return_value=18)
    client.transfer_token = AsyncMock()
    client.estimate_transfer_gas = AsyncMock(return_value=(50_000, 1_000_000_000))
    client.get_transfer_receipt = AsyncMock(
        return_value=TransferReceipt(transaction_hash="0x" + "00" * 32, block_number=99, gas_used=51_234)
    )
    return client


@pytest.fixture
def gateway():
    mock = MagicMock()
    mock.create_subscription = AsyncMock(return_value=make_subscription())
    mock.check_subscription = AsyncMock()
    mock.cancel_subscription = AsyncMock(return_value=True)
    return mock


@pytest.fixture
async def ledger(tmp_path):
    """Create a temporary ledger database."""
    database = Database(str(tmp_path / "ledger.db"))
    await database.initialize()
    return database


@pytest.fixture
def processor(settings, chain, gateway, ledger):
    return PaymentProcessor(settings, chain, gateway, ledger)


@pytest.fixture
def payer():
    return Account.create()
