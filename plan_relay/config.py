import os
from dataclasses import dataclass, field


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _env_address(name: str) -> str:
    return os.getenv(name, "").strip().lower()


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./plan_relay.db"
    log_level: str = "INFO"

    execution_mode: str = "sim"
    execution_auth_mode: str = "direct"
    execution_disabled: bool = False
    v1_demo: bool = False

    rpc_url: str = ""
    chain_id: int = 11155111
    router_address: str = ""
    relayer_private_key: str = ""

    uniswap_v3_adapter: str = ""
    mock_swap_adapter: str = ""
    weth_wrap_adapter: str = ""
    erc20_pull_adapter: str = ""
    lend_adapter: str = ""
    proof_adapter: str = ""
    lend_vault: str = ""

    weth_address: str = ""
    stable_address: str = ""
    stable_symbol: str = "USDC"
    stable_decimals: int = 6

    max_plan_actions: int = 4
    max_deadline_sec: int = 600
    max_swap_amount_wei: int = 10**18
    max_plan_value_wei: int = 10**18
    session_ttl_sec: int = 7 * 24 * 60 * 60
    session_max_spend_wei: int = 10 * 10**18
    relayer_max_gas_limit: int = 6_000_000

    receipt_timeout_sec: float = 60.0
    receipt_poll_sec: float = 2.0
    rpc_read_timeout_sec: float = 3.0
    session_status_timeout_sec: float = 2.0
    router_check_timeout_sec: float = 1.0
    session_cooldown_ms: int = 1500
    router_code_cache_ttl_sec: float = 30.0

    explorer_tx_url: str = "https://sepolia.etherscan.io/tx/"
    extra_adapters: tuple[str, ...] = field(default_factory=tuple)

    @property
    def session_mode_enabled(self) -> bool:
        return self.execution_mode == "eth_testnet" and self.execution_auth_mode == "session"

    @property
    def allowed_adapters(self) -> tuple[str, ...]:
        adapters: list[str] = []
        for address in (
            self.uniswap_v3_adapter,
            self.mock_swap_adapter,
            self.weth_wrap_adapter,
            self.erc20_pull_adapter,
            self.lend_adapter,
            self.proof_adapter,
            *self.extra_adapters,
        ):
            if address and address.lower() not in adapters:
                adapters.append(address.lower())
        return tuple(adapters)

    @property
    def allowed_tokens(self) -> tuple[str, ...]:
        return tuple(token for token in (self.weth_address, self.stable_address) if token)

    def token_address(self, symbol: str) -> str:
        symbol = symbol.strip().upper()
        if symbol == "WETH":
            return self.weth_address
        if symbol == self.stable_symbol.upper():
            return self.stable_address
        return ""

    def token_decimals(self, symbol: str) -> int:
        if symbol.strip().upper() in {"ETH", "WETH"}:
            return 18
        return self.stable_decimals

    def missing_testnet_config(self) -> list[str]:
        missing = []
        if not self.rpc_url:
            missing.append("ETH_TESTNET_RPC_URL")
        if not self.router_address:
            missing.append("EXECUTION_ROUTER_ADDRESS")
        if not self.allowed_adapters:
            missing.append("ADAPTER_ADDRESS")
        return missing

    def missing_relayer_config(self) -> list[str]:
        missing = []
        if not self.relayer_private_key:
            missing.append("RELAYER_PRIVATE_KEY")
        return missing + self.missing_testnet_config()


def load_settings() -> Settings:
    execution_mode = os.getenv("EXECUTION_MODE", "sim").strip().lower()
    if execution_mode not in {"sim", "eth_testnet"}:
        raise RuntimeError("EXECUTION_MODE must be one of: sim, eth_testnet")
    auth_mode = os.getenv("EXECUTION_AUTH_MODE", "direct").strip().lower()
    if auth_mode not in {"direct", "session"}:
        raise RuntimeError("EXECUTION_AUTH_MODE must be one of: direct, session")

    extra_adapters = tuple(
        item.strip().lower() for item in os.getenv("EXTRA_ADAPTER_ADDRESSES", "").split(",") if item.strip()
    )

    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./plan_relay.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        execution_mode=execution_mode,
        execution_auth_mode=auth_mode,
        execution_disabled=_env_flag("EXECUTION_DISABLED"),
        v1_demo=_env_flag("V1_DEMO"),
        rpc_url=os.getenv("ETH_TESTNET_RPC_URL", "").strip(),
        chain_id=int(os.getenv("ETH_TESTNET_CHAIN_ID", "11155111")),
        router_address=_env_address("EXECUTION_ROUTER_ADDRESS"),
        relayer_private_key=os.getenv("RELAYER_PRIVATE_KEY", "").strip(),
        uniswap_v3_adapter=_env_address("UNISWAP_V3_ADAPTER_ADDRESS"),
        mock_swap_adapter=_env_address("MOCK_SWAP_ADAPTER_ADDRESS"),
        weth_wrap_adapter=_env_address("WETH_WRAP_ADAPTER_ADDRESS"),
        erc20_pull_adapter=_env_address("ERC20_PULL_ADAPTER_ADDRESS"),
        lend_adapter=_env_address("DEMO_LEND_ADAPTER_ADDRESS"),
        proof_adapter=_env_address("PROOF_ADAPTER_ADDRESS"),
        lend_vault=_env_address("DEMO_LEND_VAULT_ADDRESS"),
        weth_address=_env_address("WETH_ADDRESS_SEPOLIA"),
        stable_address=_env_address("STABLE_ADDRESS_SEPOLIA"),
        stable_symbol=os.getenv("STABLE_SYMBOL", "USDC").strip().upper(),
        stable_decimals=int(os.getenv("STABLE_DECIMALS", "6")),
        max_plan_actions=int(os.getenv("MAX_PLAN_ACTIONS", "4")),
        max_deadline_sec=int(os.getenv("MAX_DEADLINE_SEC", "600")),
        max_swap_amount_wei=int(os.getenv("MAX_SWAP_AMOUNT_WEI", str(10**18))),
        max_plan_value_wei=int(os.getenv("MAX_PLAN_VALUE_WEI", str(10**18))),
        session_ttl_sec=int(os.getenv("SESSION_TTL_SEC", str(7 * 24 * 60 * 60))),
        session_max_spend_wei=int(os.getenv("SESSION_MAX_SPEND_WEI", str(10 * 10**18))),
        relayer_max_gas_limit=int(os.getenv("RELAYER_MAX_GAS_LIMIT", "6000000")),
        receipt_timeout_sec=float(os.getenv("RECEIPT_TIMEOUT_SEC", "60")),
        receipt_poll_sec=float(os.getenv("RECEIPT_POLL_SEC", "2")),
        rpc_read_timeout_sec=float(os.getenv("RPC_READ_TIMEOUT_SEC", "3")),
        session_status_timeout_sec=float(os.getenv("SESSION_STATUS_TIMEOUT_SEC", "2")),
        router_check_timeout_sec=float(os.getenv("ROUTER_CHECK_TIMEOUT_SEC", "1")),
        session_cooldown_ms=int(os.getenv("SESSION_COOLDOWN_MS", "1500")),
        router_code_cache_ttl_sec=float(os.getenv("ROUTER_CODE_CACHE_TTL_SEC", "30")),
        explorer_tx_url=os.getenv("EXPLORER_TX_URL", "https://sepolia.etherscan.io/tx/"),
        extra_adapters=extra_adapters,
    )
