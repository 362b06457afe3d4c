"""
Gas sponsorship and sweeping
----------------------------
Ephemeral deposit signers never hold more native currency than the next steps need:
:class:`GasSponsor` tops them up just in time, :class:`Sweeper` returns what is left.
:func:`reserve_gas` is the single place that decides how much of a native balance is spendable.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from eth_account.signers.local import LocalAccount

from .config import BPS_DENOMINATOR, Config
from .errors import InsufficientFundsForGas
from .rpc import GAS_NATIVE_TRANSFER, ChainClient, FeeData, TxRequest

logger = logging.getLogger(__name__)

# Conservative per-step gas limits
GAS_APPROVE = 60_000
GAS_WRAP = 50_000
GAS_ERC20_TRANSFER = 65_000
GAS_PAIR_SWAP = 150_000
GAS_ROUTER_SWAP = 200_000
GAS_ONESHOT_SWAP = 400_000
GAS_AUTHORIZED_TRANSFER = 100_000

# Worst case for a native deposit: approval + wrap + transfer-to-pool + pool swap, then the two split transfers
WORST_CASE_SWAP_GAS = GAS_APPROVE + GAS_WRAP + GAS_ERC20_TRANSFER + GAS_PAIR_SWAP
DIRECT_SPLIT_GAS = 2 * GAS_ERC20_TRANSFER

SWEEP_SUBMITTED = "submitted"
SWEEP_SKIPPED = "skipped"
SWEEP_FAILED = "failed"


def gas_cost(gas_units: int, fee: FeeData, buffer_bps: Optional[int] = None) -> int:
    """Worst-case native cost of ``gas_units`` at ``fee`` plus the safety buffer."""
    buffer_bps = Config.GAS_BUFFER_BPS if buffer_bps is None else buffer_bps
    raw = fee.cost(gas_units)
    return raw + (-(-raw * buffer_bps // BPS_DENOMINATOR))


def reserve_gas(address: str, balance: int, reserved: int) -> int:
    """Spendable part of ``balance`` once ``reserved`` is set aside. Never negative."""
    if balance <= reserved:
        raise InsufficientFundsForGas(address, balance, reserved)
    return balance - reserved


async def spendable_native(client: ChainClient, address: str, gas_units: int,
                           buffer_bps: Optional[int] = None) -> Tuple[int, int, FeeData]:
    """Return ``(spendable, reserved, fee)`` for ``address`` on ``client``'s chain."""
    fee = await client.fee_data()
    reserved = gas_cost(gas_units, fee, buffer_bps)
    balance = await client.get_balance(address)
    return reserve_gas(address, balance, reserved), reserved, fee


class GasSponsor:
    """Funds deposit signers with exactly the shortfall against a gas budget."""

    def __init__(self, client: ChainClient, account: LocalAccount, buffer_bps: Optional[int] = None):
        self.client = client
        self.account = account
        self.buffer_bps = Config.GAS_BUFFER_BPS if buffer_bps is None else buffer_bps

    @property
    def address(self) -> str:
        return self.account.address

    async def top_up(self, address: str, gas_units: int) -> Optional[str]:
        """Bring ``address`` up to the cost of ``gas_units``. Returns the funding tx hash, if any."""
        fee = await self.client.fee_data()
        required = gas_cost(gas_units, fee, self.buffer_bps)
        balance = await self.client.get_balance(address)
        if balance >= required:
            logger.info("[%s] %s already covers gas budget (%d >= %d)", self.client.key, address, balance, required)
            return None

        shortfall = required - balance
        sponsor_balance = await self.client.get_balance(self.address)
        own_gas = fee.cost(GAS_NATIVE_TRANSFER)
        if sponsor_balance < shortfall + own_gas:
            raise InsufficientFundsForGas(self.address, sponsor_balance, shortfall + own_gas)

        receipt = await self.client.transact(
            self.account,
            TxRequest(to=address, value=shortfall, gas=GAS_NATIVE_TRANSFER, label="gas top-up"),
            fee,
        )
        logger.info("[%s] topped up %s with %d wei: %s", self.client.key, address, shortfall,
                    receipt["transactionHash"])
        return receipt["transactionHash"]


@dataclass
class SweepOutcome:
    address: str
    status: str
    tx_hash: Optional[str] = None
    amount: int = 0
    reason: Optional[str] = None

    def to_dict(self):
        return {
            "address": self.address,
            "status": self.status,
            "tx_hash": self.tx_hash,
            "amount": str(self.amount),
            "reason": self.reason,
        }


# (fee multiplier bps, gas limit) per attempt, each more generous than the last
SWEEP_ESCALATION: Sequence[Tuple[int, int]] = (
    (10000, GAS_NATIVE_TRANSFER),
    (12500, 25_000),
    (15000, 30_000),
    (20000, 35_000),
)


class Sweeper:
    def __init__(self, client: ChainClient, min_sweep_wei: Optional[int] = None, attempts: Optional[int] = None):
        self.client = client
        self.min_sweep_wei = Config.MIN_SWEEP_WEI if min_sweep_wei is None else min_sweep_wei
        attempts = Config.SWEEP_ATTEMPTS if attempts is None else attempts
        self.escalation = list(SWEEP_ESCALATION[:max(1, min(attempts, len(SWEEP_ESCALATION)))])

    async def sweep_one(self, account: LocalAccount, destination: str) -> SweepOutcome:
        address = account.address
        try:
            balance = await self.client.get_balance(address)
        except Exception as e:
            logger.error("[%s] sweep balance check failed for %s: %s", self.client.key, address, e)
            return SweepOutcome(address, SWEEP_FAILED, reason=str(e))

        if balance == 0 or balance < self.min_sweep_wei:
            return SweepOutcome(address, SWEEP_SKIPPED, amount=balance, reason="below min threshold")

        last_error = None
        for attempt, (multiplier_bps, gas_limit) in enumerate(self.escalation, start=1):
            try:
                fee = (await self.client.fee_data()).scaled(multiplier_bps)
                value = balance - fee.cost(gas_limit)
                if value <= 0:
                    return SweepOutcome(address, SWEEP_SKIPPED, amount=balance, reason="balance below sweep gas cost")
                if value < self.min_sweep_wei:
                    return SweepOutcome(address, SWEEP_SKIPPED, amount=value, reason="below min threshold after gas")
                tx_hash = await self.client.send_transaction(
                    account, TxRequest(to=destination, value=value, gas=gas_limit, label="sweep"), fee,
                )
                return SweepOutcome(address, SWEEP_SUBMITTED, tx_hash=tx_hash, amount=value)
            except Exception as e:
                last_error = e
                logger.warning("[%s] sweep attempt %d/%d for %s failed: %s",
                               self.client.key, attempt, len(self.escalation), address, e)
        return SweepOutcome(address, SWEEP_FAILED, amount=balance, reason=str(last_error))

    async def sweep(self, accounts: Iterable[LocalAccount], destination: str) -> List[SweepOutcome]:
        """Sweep every account; per-address outcomes, never raises for a single failure."""
        if not destination:
            raise ValueError("Sweep destination address is required")
        results = []
        for account in accounts:
            outcome = await self.sweep_one(account, destination)
            logger.info("[%s] sweep %s: %s %s", self.client.key, outcome.address, outcome.status,
                        outcome.tx_hash or outcome.reason or "")
            results.append(outcome)
        return results
