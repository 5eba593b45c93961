import asyncio
import logging
from typing import Any, Awaitable

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception, Web3RPCError
from web3.providers.async_base import AsyncBaseProvider

logger = logging.getLogger(__name__)


class ChainError(Exception):
    """Node access failure. kind is one of: timeout, transport, rpc."""

    def __init__(self, kind: str, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code


def _rpc_error(exc: Web3RPCError) -> ChainError:
    error = (exc.rpc_response or {}).get("error")
    if isinstance(error, dict):
        return ChainError("rpc", error.get("message") or str(exc), error.get("code"))
    return ChainError("rpc", str(exc))


class RpcClient:
    """Async node client on web3. Every call is bounded by its own timeout."""

    def __init__(
        self,
        rpc_url: str | None,
        default_timeout: float = 3.0,
        provider: AsyncBaseProvider | None = None,
    ) -> None:
        if not rpc_url and provider is None:
            raise RuntimeError("ETH_TESTNET_RPC_URL must be set to use the RPC client")
        self.rpc_url = rpc_url
        self.default_timeout = default_timeout
        self._provider = provider or AsyncHTTPProvider(rpc_url)
        self.web3 = AsyncWeb3(self._provider)

    async def aclose(self) -> None:
        if isinstance(self._provider, AsyncHTTPProvider):
            await self._provider.disconnect()

    async def _run(self, method: str, call: Awaitable[Any], timeout: float | None) -> Any:
        try:
            return await asyncio.wait_for(call, timeout or self.default_timeout)
        except TransactionNotFound:
            raise
        except asyncio.TimeoutError as exc:
            logger.warning("RPC %s timed out", method)
            raise ChainError("timeout", f"{method} timed out") from exc
        except ContractLogicError as exc:
            raise ChainError("rpc", exc.message or str(exc), 3) from exc
        except Web3RPCError as exc:
            raise _rpc_error(exc) from exc
        except (Web3Exception, aiohttp.ClientError, OSError) as exc:
            logger.warning("RPC %s transport error: %s", method, exc)
            raise ChainError("transport", f"{method} failed: {exc}") from exc

    async def eth_call(self, to: str, data: bytes, timeout: float | None = None) -> bytes:
        tx = {"to": Web3.to_checksum_address(to), "data": Web3.to_hex(data)}
        return bytes(await self._run("eth_call", self.web3.eth.call(tx, "latest"), timeout))

    async def get_code(self, address: str, timeout: float | None = None) -> bytes:
        call = self.web3.eth.get_code(Web3.to_checksum_address(address), "latest")
        return bytes(await self._run("eth_getCode", call, timeout))

    async def block_number(self, timeout: float | None = None) -> int:
        return await self._run("eth_blockNumber", self.web3.eth.block_number, timeout)

    async def chain_id(self, timeout: float | None = None) -> int:
        return await self._run("eth_chainId", self.web3.eth.chain_id, timeout)

    async def get_transaction_count(self, address: str, block: str = "pending", timeout: float | None = None) -> int:
        call = self.web3.eth.get_transaction_count(Web3.to_checksum_address(address), block)
        return await self._run("eth_getTransactionCount", call, timeout)

    async def get_balance(self, address: str, timeout: float | None = None) -> int:
        call = self.web3.eth.get_balance(Web3.to_checksum_address(address), "latest")
        return await self._run("eth_getBalance", call, timeout)

    async def gas_price(self, timeout: float | None = None) -> int:
        return await self._run("eth_gasPrice", self.web3.eth.gas_price, timeout)

    async def estimate_gas(self, tx: dict, timeout: float | None = None) -> int:
        tx = dict(tx)
        for field in ("from", "to"):
            if tx.get(field):
                tx[field] = Web3.to_checksum_address(tx[field])
        return await self._run("eth_estimateGas", self.web3.eth.estimate_gas(tx), timeout)

    async def get_transaction_receipt(self, tx_hash: str, timeout: float | None = None) -> dict | None:
        try:
            receipt = await self._run(
                "eth_getTransactionReceipt", self.web3.eth.get_transaction_receipt(tx_hash), timeout
            )
        except TransactionNotFound:
            return None
        return dict(receipt)

    async def send_raw_transaction(self, raw_tx: bytes, timeout: float | None = None) -> str:
        tx_hash = await self._run("eth_sendRawTransaction", self.web3.eth.send_raw_transaction(raw_tx), timeout)
        return Web3.to_hex(tx_hash)
