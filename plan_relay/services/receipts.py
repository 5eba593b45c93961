import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from plan_relay.logging_utils import short_hex
from plan_relay.services.plan_codec import hex_to_int
from plan_relay.services.rpc_client import ChainError

logger = logging.getLogger(__name__)


class ReceiptStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ReceiptOutcome:
    status: ReceiptStatus
    block_number: int | None = None
    gas_used: int | None = None
    error: str | None = None

    @property
    def confirmed(self) -> bool:
        return self.status == ReceiptStatus.CONFIRMED


def outcome_from_receipt(receipt: dict | None) -> ReceiptOutcome:
    if not receipt:
        return ReceiptOutcome(status=ReceiptStatus.PENDING)
    block_number = hex_to_int(receipt["blockNumber"]) if receipt.get("blockNumber") else None
    gas_used = hex_to_int(receipt["gasUsed"]) if receipt.get("gasUsed") else None
    if hex_to_int(receipt.get("status")) == 1:
        return ReceiptOutcome(status=ReceiptStatus.CONFIRMED, block_number=block_number, gas_used=gas_used)
    return ReceiptOutcome(
        status=ReceiptStatus.REVERTED,
        block_number=block_number,
        gas_used=gas_used,
        error="Transaction reverted on-chain",
    )


class ReceiptConfirmer:
    def __init__(
        self,
        rpc,
        timeout_sec: float = 60.0,
        poll_sec: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.rpc = rpc
        self.timeout_sec = timeout_sec
        self.poll_sec = poll_sec
        self._clock = clock
        self._sleep = sleep

    async def check(self, tx_hash: str) -> ReceiptOutcome:
        receipt = await self.rpc.get_transaction_receipt(tx_hash)
        return outcome_from_receipt(receipt)

    async def wait(self, tx_hash: str) -> ReceiptOutcome:
        started = self._clock()
        while self._clock() - started < self.timeout_sec:
            try:
                outcome = await self.check(tx_hash)
            except ChainError as exc:
                logger.warning("Receipt poll error for %s: %s", short_hex(tx_hash), exc)
            else:
                if outcome.status != ReceiptStatus.PENDING:
                    logger.info(
                        "Receipt %s for %s at block %s", outcome.status.value, short_hex(tx_hash), outcome.block_number
                    )
                    return outcome
            await self._sleep(self.poll_sec)
        logger.warning("Receipt wait timed out for %s", short_hex(tx_hash))
        return ReceiptOutcome(
            status=ReceiptStatus.TIMEOUT,
            error=f"Transaction not confirmed within {self.timeout_sec:g}s",
        )
