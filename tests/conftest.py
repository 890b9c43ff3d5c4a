import os

import pytest

TEST_ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef"

# Set dummy environment variables for testing
# This must run before payagent.config is imported by any test
os.environ.setdefault("SECRET_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
os.environ.setdefault("SEPOLIA_RPC_URL", "https://sepolia.rpc.test")
os.environ.setdefault("ETH_MAINNET_RPC_URL", "https://mainnet.rpc.test")
os.environ.setdefault("TREASURY_WALLET", "0x7777777777777777777777777777777777777777")
os.environ.setdefault("LOG_FORMAT", "text")

from payagent.core.encryption import SecretCipher, StaticKeyProvider  # noqa: E402
from payagent.database import Database  # noqa: E402


class FakeClock:
    """Manually advanced clock (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cipher():
    return SecretCipher(StaticKeyProvider(TEST_ENCRYPTION_KEY))


@pytest.fixture
async def test_db(tmp_path):
    """Create a temporary test database."""
    db = Database(str(tmp_path / "test.db"))
    await db.initialize()
    return db
