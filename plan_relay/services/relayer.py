import asyncio
import logging
import re
import time
from enum import Enum
from typing import Callable

from eth_account import Account
from web3 import Web3

from plan_relay.config import Settings
from plan_relay.logging_utils import short_hex
from plan_relay.services.guards import validate_plan_with_settings
from plan_relay.services.plan_codec import Plan, execute_with_session_call, to_hex
from plan_relay.services.rpc_client import ChainError

logger = logging.getLogger(__name__)

GAS_BUFFER_WEI = 2 * 10**15

SESSION_REVERT = re.compile(
    r"session\s*(?:has\s*)?(?:expired|not\s*active|inactive|revoked|not\s*found)|(?:expired|revoked|invalid)\s*session"
)


class ErrorKind(str, Enum):
    SESSION_EXPIRED = "SESSION_EXPIRED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    SLIPPAGE_FAILURE = "SLIPPAGE_FAILURE"
    RELAYER_FAILED = "RELAYER_FAILED"


class RelayExecutionError(Exception):
    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


def classify_error(message: str) -> ErrorKind:
    text = (message or "").lower()
    if SESSION_REVERT.search(text):
        return ErrorKind.SESSION_EXPIRED
    if "insufficient" in text or "balance" in text:
        return ErrorKind.INSUFFICIENT_BALANCE
    if "slippage" in text or "amountoutmin" in text:
        return ErrorKind.SLIPPAGE_FAILURE
    return ErrorKind.RELAYER_FAILED


class Relayer:
    def __init__(self, settings: Settings, rpc, clock: Callable[[], float] = time.time) -> None:
        if not settings.relayer_private_key:
            raise RuntimeError("RELAYER_PRIVATE_KEY must be set to relay transactions")
        self.settings = settings
        self.rpc = rpc
        self._clock = clock
        self._account = Account.from_key(settings.relayer_private_key)
        self._send_lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self._account.address

    async def submit(self, session_id: bytes, plan: Plan, value: int = 0) -> str:
        """Validate, sign and send executeWithSession once. Returns the transaction hash."""
        validate_plan_with_settings(plan, value, int(self._clock()), self.settings)
        router = Web3.to_checksum_address(self.settings.router_address)
        data = execute_with_session_call(session_id, plan)

        try:
            estimated = await self.rpc.estimate_gas(
                {"from": self.address, "to": router, "data": to_hex(data), "value": value}
            )
            gas_limit = min(estimated * 120 // 100, self.settings.relayer_max_gas_limit)
            gas_price = await self.rpc.gas_price()
            balance = await self.rpc.get_balance(self.address)
        except ChainError as exc:
            logger.error("Relay preparation failed: %s", exc)
            raise RelayExecutionError(classify_error(str(exc)), f"Gas estimation failed: {exc}") from exc

        if balance < gas_limit * gas_price + GAS_BUFFER_WEI:
            logger.error("Relayer balance too low for gas (balance=%s)", balance)
            raise RelayExecutionError(
                ErrorKind.INSUFFICIENT_BALANCE,
                f"Relayer has insufficient ETH for gas. Balance: {balance} wei, estimated need: {gas_limit * gas_price} wei",
            )

        # One relayer account: the pending nonce read and the send must not interleave.
        async with self._send_lock:
            try:
                nonce = await self.rpc.get_transaction_count(self.address, "pending")
            except ChainError as exc:
                logger.error("Relayer nonce read failed: %s", exc)
                raise RelayExecutionError(ErrorKind.RELAYER_FAILED, f"Relayer nonce read failed: {exc}") from exc
            signed = self._account.sign_transaction(
                {
                    "to": router,
                    "value": value,
                    "data": data,
                    "nonce": nonce,
                    "gas": gas_limit,
                    "gasPrice": gas_price,
                    "chainId": self.settings.chain_id,
                }
            )
            try:
                tx_hash = await self.rpc.send_raw_transaction(signed.raw_transaction)
            except ChainError as exc:
                logger.error("Relayed transaction send failed: %s", exc)
                raise RelayExecutionError(classify_error(str(exc)), f"Relayed transaction failed: {exc}") from exc
        logger.info("Relayed tx sent %s (gas=%s, actions=%s)", short_hex(tx_hash), gas_limit, len(plan.actions))
        return tx_hash
