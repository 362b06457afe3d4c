"""
Chain access
------------
One :class:`ChainClient` per configured chain. Read calls go through a timeout plus a bounded
retry with exponential backoff; only transport failures are retried. Reverts, insufficient
funds and bad signatures surface immediately. Broadcasting is attempted once.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

import aiohttp
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ProviderConnectionError, TimeExhausted

from . import abi
from .config import BPS_DENOMINATOR, ChainConfig, Config, fee_caps_wei
from .errors import RpcError, TransactionReverted

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (asyncio.TimeoutError, ConnectionError, OSError, aiohttp.ClientError, ProviderConnectionError)

GAS_NATIVE_TRANSFER = 21000


@dataclass
class TxRequest:
    to: str
    data: bytes = b""
    value: int = 0
    gas: int = GAS_NATIVE_TRANSFER
    label: str = ""


@dataclass(frozen=True)
class FeeData:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    def scaled(self, bps: int) -> "FeeData":
        """Both components multiplied by ``bps / 10000``, rounded up."""
        return FeeData(
            max_fee_per_gas=-(-self.max_fee_per_gas * bps // BPS_DENOMINATOR),
            max_priority_fee_per_gas=-(-self.max_priority_fee_per_gas * bps // BPS_DENOMINATOR),
        )

    def cost(self, gas_units: int) -> int:
        return gas_units * self.max_fee_per_gas


def as_hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return AsyncWeb3.to_hex(value)


def as_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return bytes(value)


class ChainClient:
    def __init__(self, chain: ChainConfig, w3: Optional[AsyncWeb3] = None,
                 timeout: Optional[float] = None, retries: Optional[int] = None,
                 backoff: Optional[float] = None, fee_caps: Optional[Tuple[int, int]] = None):
        self.chain = chain
        self.w3 = w3 if w3 is not None else AsyncWeb3(AsyncHTTPProvider(chain.rpc_url))
        self.timeout = Config.RPC_TIMEOUT_SECONDS if timeout is None else timeout
        self.retries = Config.RPC_RETRIES if retries is None else retries
        self.backoff = Config.RPC_BACKOFF_SECONDS if backoff is None else backoff
        self.fee_caps = fee_caps if fee_caps is not None else fee_caps_wei()
        self._send_locks: Dict[str, asyncio.Lock] = {}

    @property
    def key(self) -> str:
        return self.chain.key

    async def _rpc(self, label: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout)
            except RETRYABLE_ERRORS as e:
                attempt += 1
                if attempt > self.retries:
                    raise RpcError(f"[{self.key}] {label} failed after {attempt} attempts: {e}") from e
                delay = self.backoff * (2 ** (attempt - 1))
                logger.warning("[%s] %s failed (%s), retry %d/%d in %.2fs",
                               self.key, label, e, attempt, self.retries, delay)
                await asyncio.sleep(delay)

    # -- reads -------------------------------------------------------------------------

    async def block_number(self) -> int:
        return int(await self._rpc("eth_blockNumber", lambda: self.w3.eth.block_number))

    async def get_block(self, number: Any, full_transactions: bool = True) -> Optional[Dict]:
        block = await self._rpc(
            "eth_getBlockByNumber",
            lambda: self.w3.eth.get_block(number, full_transactions=full_transactions),
        )
        return dict(block) if block else None

    async def get_balance(self, address: str) -> int:
        return int(await self._rpc("eth_getBalance", lambda: self.w3.eth.get_balance(abi.checksum(address))))

    async def call(self, to: str, data: bytes) -> bytes:
        result = await self._rpc("eth_call", lambda: self.w3.eth.call({"to": abi.checksum(to), "data": data}))
        return bytes(result)

    async def read(self, to: str, signature: str, args: Sequence[Any], returns: Sequence[str]) -> Tuple[Any, ...]:
        return abi.decode_result(returns, await self.call(to, abi.encode_call(signature, *args)))

    async def token_balance(self, token: str, owner: str) -> int:
        (balance,) = await self.read(token, abi.ERC20_BALANCE_OF, [abi.checksum(owner)], ["uint256"])
        return int(balance)

    async def nonce(self, address: str) -> int:
        return int(await self._rpc(
            "eth_getTransactionCount",
            lambda: self.w3.eth.get_transaction_count(abi.checksum(address), "pending"),
        ))

    async def fee_data(self) -> FeeData:
        if self.fee_caps:
            return FeeData(*self.fee_caps)
        latest = await self.get_block("latest", full_transactions=False)
        base_fee = (latest or {}).get("baseFeePerGas")
        if base_fee is None:
            gas_price = int(await self._rpc("eth_gasPrice", lambda: self.w3.eth.gas_price))
            return FeeData(gas_price, gas_price)
        priority = int(await self._rpc("eth_maxPriorityFeePerGas", lambda: self.w3.eth.max_priority_fee))
        return FeeData(int(base_fee) * 2 + priority, priority)

    # -- writes ------------------------------------------------------------------------

    async def send_transaction(self, account: LocalAccount, tx: TxRequest, fee: Optional[FeeData] = None) -> str:
        fee = fee or await self.fee_data()
        # Nonce read and broadcast are atomic per sender; the sponsor signs for several jobs at once.
        lock = self._send_locks.setdefault(account.address.lower(), asyncio.Lock())
        async with lock:
            payload = {
                "to": abi.checksum(tx.to),
                "value": int(tx.value),
                "data": tx.data,
                "gas": int(tx.gas),
                "maxFeePerGas": fee.max_fee_per_gas,
                "maxPriorityFeePerGas": min(fee.max_priority_fee_per_gas, fee.max_fee_per_gas),
                "nonce": await self.nonce(account.address),
                "chainId": self.chain.chain_id,
                "type": 2,
            }
            signed = account.sign_transaction(payload)
            tx_hash = await asyncio.wait_for(
                self.w3.eth.send_raw_transaction(signed.raw_transaction), timeout=self.timeout,
            )
        tx_hash = as_hex(tx_hash)
        logger.info("[%s] sent %s from %s -> %s value=%d: %s",
                    self.key, tx.label or "tx", account.address, tx.to, tx.value, tx_hash)
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str) -> Dict:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=Config.RECEIPT_TIMEOUT_SECONDS)
        except TimeExhausted as e:
            raise RpcError(f"[{self.key}] no receipt for {tx_hash}: {e}") from e
        receipt = dict(receipt)
        if int(receipt.get("status", 0)) != 1:
            raise TransactionReverted(tx_hash)
        return receipt

    async def transact(self, account: LocalAccount, tx: TxRequest, fee: Optional[FeeData] = None) -> Dict:
        """Send and wait until final; returns the receipt with ``transactionHash`` as hex."""
        tx_hash = await self.send_transaction(account, tx, fee)
        receipt = await self.wait_for_receipt(tx_hash)
        receipt["transactionHash"] = tx_hash
        return receipt
