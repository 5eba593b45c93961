import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from eth_abi import encode

from plan_relay.config import Settings
from plan_relay.db import create_db_engine, create_session_factory
from plan_relay.models import Base
from plan_relay.services.plan_codec import function_selector
from plan_relay.services.rpc_client import ChainError

USER = "0x" + "12" * 20
ROUTER = "0x" + "aa" * 20
UNISWAP_ADAPTER = "0x" + "b1" * 20
WRAP_ADAPTER = "0x" + "b2" * 20
PULL_ADAPTER = "0x" + "b3" * 20
LEND_ADAPTER = "0x" + "b4" * 20
PROOF_ADAPTER = "0x" + "b5" * 20
VAULT = "0x" + "c1" * 20
WETH = "0x" + "d1" * 20
USDC = "0x" + "d2" * 20
RELAYER_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
NOW = 1_700_000_000
SESSION_ID = "0x" + "5e" * 32


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        execution_mode="eth_testnet",
        execution_auth_mode="session",
        rpc_url="http://rpc.test",
        router_address=ROUTER,
        relayer_private_key=RELAYER_KEY,
        uniswap_v3_adapter=UNISWAP_ADAPTER,
        weth_wrap_adapter=WRAP_ADAPTER,
        erc20_pull_adapter=PULL_ADAPTER,
        lend_adapter=LEND_ADAPTER,
        proof_adapter=PROOF_ADAPTER,
        lend_vault=VAULT,
        weth_address=WETH,
        stable_address=USDC,
    )
    values.update(overrides)
    return Settings(**values)


def session_result(owner=USER, executor="0x" + "ee" * 20, expires_at=NOW + 3600, max_spend=10 * 10**18, spent=0, active=True):
    return encode(
        ["address", "address", "uint64", "uint256", "uint256", "bool"],
        [owner, executor, expires_at, max_spend, spent, active],
    )


class FakeRpc:
    """In-memory JSON-RPC node. eth_call results are keyed by 4-byte selector."""

    def __init__(self) -> None:
        self.call_results: dict[bytes, bytes | Exception] = {}
        self.code: bytes | Exception = b"\x60\x80"
        self.receipts: list = []
        self.sent: list[bytes] = []
        self.send_error: Exception | None = None
        self.estimate_error: Exception | None = None
        self.balance = 10**18
        self.block_error: Exception | None = None
        self.calls: list[tuple[str, bytes]] = []

    def set_call(self, signature: str, result) -> None:
        self.call_results[function_selector(signature)] = result

    async def eth_call(self, to, data, timeout=None):
        self.calls.append((to, data))
        result = self.call_results.get(bytes(data[:4]))
        if result is None:
            raise ChainError("rpc", "execution reverted")
        if isinstance(result, Exception):
            raise result
        return result

    async def get_code(self, address, timeout=None):
        if isinstance(self.code, Exception):
            raise self.code
        return self.code

    async def block_number(self, timeout=None):
        if self.block_error:
            raise self.block_error
        return 1000

    async def get_transaction_count(self, address, block="pending", timeout=None):
        return 3

    async def get_balance(self, address, timeout=None):
        return self.balance

    async def gas_price(self, timeout=None):
        return 10**9

    async def estimate_gas(self, tx, timeout=None):
        if self.estimate_error:
            raise self.estimate_error
        return 100_000

    async def get_transaction_receipt(self, tx_hash, timeout=None):
        if not self.receipts:
            return None
        item = self.receipts.pop(0) if len(self.receipts) > 1 else self.receipts[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def send_raw_transaction(self, raw_tx, timeout=None):
        if self.send_error:
            raise self.send_error
        self.sent.append(raw_tx)
        return "0x" + "ab" * 32


class FakeClock:
    def __init__(self, start: float = NOW) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def rpc():
    return FakeRpc()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    return create_session_factory(engine)
