"""
Swap router
-----------
Ordered fallback over independent strategies that turn a deposited amount into the chain's stable
token. A strategy only *plans*: it quotes, reserves gas and returns the transaction steps. The steps
are executed afterwards, strictly in order, by :func:`execute_swap`.

Strategies:

* ``v2_direct``  - constant-product pair math; wrap, transfer to the pair, call ``swap`` on the pair.
* ``v3_router``  - first fee tier with liquidity, single ``exactInputSingle`` through the router.
* ``oneshot``    - dedicated contract that swaps and distributes treasury / fee shares in one call.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from eth_account.signers.local import LocalAccount

from . import abi
from .config import BPS_DENOMINATOR, NATIVE, Config
from .errors import LiquidityError, SwapError
from .gas import (
    GAS_APPROVE, GAS_ERC20_TRANSFER, GAS_ONESHOT_SWAP, GAS_PAIR_SWAP, GAS_ROUTER_SWAP, GAS_WRAP,
    spendable_native,
)
from .rpc import ChainClient, TxRequest, as_bytes

logger = logging.getLogger(__name__)

V3_FEE_TIERS = (500, 3000, 10000, 100)
ONESHOT_FEE_TIER = 3000


def constant_product_out(amount_in: int, reserve_in: int, reserve_out: int) -> int:
    """Output of a 0.3%-fee constant-product pool, rounded down."""
    if amount_in <= 0:
        raise ValueError("amount_in must be positive")
    if reserve_in <= 0 or reserve_out <= 0:
        raise LiquidityError("Pair has no liquidity")
    amount_in_with_fee = amount_in * 997
    return amount_in_with_fee * reserve_out // (reserve_in * 1000 + amount_in_with_fee)


def apply_slippage(amount_out: int, slippage_bps: int) -> int:
    if not 0 <= slippage_bps <= BPS_DENOMINATOR:
        raise ValueError(f"slippage_bps out of range: {slippage_bps}")
    return amount_out * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


def is_native(token: str) -> bool:
    return token.upper() == NATIVE


@dataclass
class SwapRequest:
    from_address: str
    source_token: str
    amount_raw: int
    slippage_bps: int
    stable_token: str
    treasury: str = ""
    fee_recipient: str = ""
    fee_bps: int = 0
    extra_gas: int = 0           # gas the signer still needs after the swap, e.g. for the split


@dataclass
class SwapResult:
    strategy: str
    steps: List[TxRequest]
    approvals: List[TxRequest] = field(default_factory=list)
    amount_in: int = 0
    amount_out: int = 0          # reported output; 0 means "infer from balances"
    min_out: int = 0
    splits_proceeds: bool = False
    approval_hashes: List[str] = field(default_factory=list)
    tx_hashes: List[str] = field(default_factory=list)
    receipts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def swap_tx(self) -> Optional[str]:
        return self.tx_hashes[-1] if self.tx_hashes else None


class SwapStrategy(Protocol):
    name: str

    async def build(self, client: ChainClient, request: SwapRequest) -> SwapResult:
        ...


class V2PairDirectStrategy:
    name = "v2_direct"

    async def build(self, client: ChainClient, request: SwapRequest) -> SwapResult:
        chain = client.chain
        if not chain.v2_factory or not chain.weth:
            raise SwapError(f"V2 factory or WETH not configured for {chain.key}")
        native = is_native(request.source_token)
        if not native and not abi.same_address(request.source_token, chain.weth):
            raise SwapError("v2_direct only swaps native or wrapped-native input")

        (pair,) = await client.read(chain.v2_factory, abi.V2_GET_PAIR, [chain.weth, request.stable_token], ["address"])
        if abi.same_address(pair, abi.ZERO_ADDRESS):
            raise LiquidityError(f"No V2 pair for WETH/stable on {chain.key}")
        (token0,) = await client.read(pair, abi.V2_TOKEN0, [], ["address"])
        reserve0, reserve1, _ = await client.read(pair, abi.V2_GET_RESERVES, [], ["uint112", "uint112", "uint32"])
        weth_is_token0 = abi.same_address(token0, chain.weth)
        reserve_in, reserve_out = (reserve0, reserve1) if weth_is_token0 else (reserve1, reserve0)

        amount_in = request.amount_raw
        steps = []
        if native:
            spendable, reserved, _ = await spendable_native(
                client, request.from_address, GAS_WRAP + GAS_ERC20_TRANSFER + GAS_PAIR_SWAP + request.extra_gas,
            )
            amount_in = min(amount_in, spendable)
            logger.info("[v2_direct] wrapping %d wei (requested %d, reserved %d for gas)",
                        amount_in, request.amount_raw, reserved)
            steps.append(TxRequest(chain.weth, abi.encode_call(abi.WETH_DEPOSIT), amount_in, GAS_WRAP, "wrap"))

        amount_out = constant_product_out(amount_in, reserve_in, reserve_out)
        min_out = apply_slippage(amount_out, request.slippage_bps)
        if min_out <= 0:
            raise LiquidityError("Quoted output rounds to zero")

        amount0_out, amount1_out = (0, min_out) if weth_is_token0 else (min_out, 0)
        steps.append(TxRequest(
            chain.weth, abi.encode_call(abi.ERC20_TRANSFER, abi.checksum(pair), amount_in),
            0, GAS_ERC20_TRANSFER, "transfer to pair",
        ))
        steps.append(TxRequest(
            pair, abi.encode_call(abi.V2_SWAP, amount0_out, amount1_out, abi.checksum(request.from_address), b""),
            0, GAS_PAIR_SWAP, "pair swap",
        ))
        # The pair pays out exactly the requested amount, so min_out is the realized output.
        return SwapResult(self.name, steps, amount_in=amount_in, amount_out=min_out, min_out=min_out)


class V3RouterStrategy:
    name = "v3_router"

    def __init__(self, allow_unquoted: Optional[bool] = None, fee_tiers: Sequence[int] = V3_FEE_TIERS):
        self.allow_unquoted = Config.ALLOW_UNQUOTED_ROUTER_SWAPS if allow_unquoted is None else allow_unquoted
        self.fee_tiers = tuple(fee_tiers)

    async def _select_pool(self, client: ChainClient, factory: str, token_in: str, token_out: str):
        for fee in self.fee_tiers:
            (pool,) = await client.read(factory, abi.V3_GET_POOL, [token_in, token_out, fee], ["address"])
            if abi.same_address(pool, abi.ZERO_ADDRESS):
                continue
            (liquidity,) = await client.read(pool, abi.V3_LIQUIDITY, [], ["uint128"])
            if liquidity > 0:
                return fee, pool
        raise LiquidityError(f"No V3 pool with liquidity across fee tiers {self.fee_tiers}")

    async def build(self, client: ChainClient, request: SwapRequest) -> SwapResult:
        chain = client.chain
        if not chain.swap_router:
            raise SwapError(f"Swap router not configured for {chain.key}")
        native = is_native(request.source_token)

        factory = chain.v3_factory
        if not factory:
            (factory,) = await client.read(chain.swap_router, abi.ROUTER_FACTORY, [], ["address"])
        token_in = request.source_token
        if native:
            token_in = chain.weth
            if not token_in:
                (token_in,) = await client.read(chain.swap_router, abi.ROUTER_WETH9, [], ["address"])

        fee_tier, pool = await self._select_pool(client, factory, token_in, request.stable_token)
        logger.info("[v3_router] using pool %s fee tier %d", pool, fee_tier)

        amount_in = request.amount_raw
        if native:
            spendable, _, _ = await spendable_native(client, request.from_address, GAS_ROUTER_SWAP + request.extra_gas)
            amount_in = min(amount_in, spendable)
        else:
            await spendable_native(client, request.from_address, GAS_APPROVE + GAS_ROUTER_SWAP + request.extra_gas)

        if chain.quoter:
            quoted = await client.read(
                chain.quoter, abi.QUOTER_EXACT_INPUT_SINGLE,
                [(abi.checksum(token_in), abi.checksum(request.stable_token), amount_in, fee_tier, 0)],
                ["uint256", "uint160", "uint32", "uint256"],
            )
            min_out = apply_slippage(quoted[0], request.slippage_bps)
        elif self.allow_unquoted:
            logger.warning("[v3_router] no quoter on %s; swapping with amountOutMinimum=0 (unbounded slippage)",
                           chain.key)
            min_out = 0
        else:
            raise SwapError(f"No quoter configured for {chain.key} and unquoted router swaps are disabled")

        approvals = []
        if not native:
            approvals.append(TxRequest(
                token_in, abi.encode_call(abi.ERC20_APPROVE, abi.checksum(chain.swap_router), amount_in),
                0, GAS_APPROVE, "approve router",
            ))
        params = (
            abi.checksum(token_in), abi.checksum(request.stable_token), fee_tier,
            abi.checksum(request.from_address), amount_in, min_out, 0,
        )
        step = TxRequest(
            chain.swap_router, abi.encode_call(abi.ROUTER_EXACT_INPUT_SINGLE, params),
            amount_in if native else 0, GAS_ROUTER_SWAP, "router swap",
        )
        return SwapResult(self.name, [step], approvals, amount_in=amount_in, min_out=min_out)


class OneShotContractStrategy:
    name = "oneshot"

    async def build(self, client: ChainClient, request: SwapRequest) -> SwapResult:
        chain = client.chain
        contract = chain.oneshot_contract
        if not contract:
            raise SwapError(f"One-shot swap contract not configured for {chain.key}")
        if not request.treasury or not request.fee_recipient:
            raise SwapError("One-shot swap needs treasury and fee recipient addresses")

        treasury = abi.checksum(request.treasury)
        fee_recipient = abi.checksum(request.fee_recipient)
        stable = abi.checksum(request.stable_token)
        if is_native(request.source_token):
            if not chain.weth:
                raise SwapError(f"WETH not configured for {chain.key}")
            spendable, _, _ = await spendable_native(client, request.from_address, GAS_ONESHOT_SWAP)
            amount_in = min(request.amount_raw, spendable)
            data = abi.encode_call(
                abi.ONESHOT_SWAP_NATIVE, treasury, fee_recipient, request.fee_bps, stable,
                abi.checksum(chain.weth), ONESHOT_FEE_TIER,
            )
            return SwapResult(self.name, [TxRequest(contract, data, amount_in, GAS_ONESHOT_SWAP, "oneshot swap")],
                              amount_in=amount_in, splits_proceeds=True)

        await spendable_native(client, request.from_address, GAS_APPROVE + GAS_ONESHOT_SWAP)
        token = abi.checksum(request.source_token)
        approval = TxRequest(
            token, abi.encode_call(abi.ERC20_APPROVE, abi.checksum(contract), request.amount_raw),
            0, GAS_APPROVE, "approve oneshot",
        )
        data = abi.encode_call(
            abi.ONESHOT_SWAP_ERC20, token, request.amount_raw, treasury, fee_recipient, request.fee_bps,
            stable, ONESHOT_FEE_TIER,
        )
        return SwapResult(self.name, [TxRequest(contract, data, 0, GAS_ONESHOT_SWAP, "oneshot swap")], [approval],
                          amount_in=request.amount_raw, splits_proceeds=True)


def oneshot_output(receipt: Dict[str, Any]) -> int:
    """``amountOut`` from the ``SwapAndSplitExecuted`` event of a one-shot receipt."""
    topic = abi.event_topic(abi.ONESHOT_EVENT)
    for log in receipt.get("logs", []):
        topics = log.get("topics") or []
        if topics and as_bytes(topics[0]) == topic:
            _, amount_out = abi.decode_result(["uint256", "uint256"], as_bytes(log["data"]))
            return int(amount_out)
    raise SwapError("One-shot receipt carries no SwapAndSplitExecuted event")


STRATEGIES = {
    V2PairDirectStrategy.name: V2PairDirectStrategy,
    V3RouterStrategy.name: V3RouterStrategy,
    OneShotContractStrategy.name: OneShotContractStrategy,
}


def build_strategies(names: Optional[Sequence[str]] = None) -> List[SwapStrategy]:
    names = Config.SWAP_STRATEGIES if names is None else names
    unknown = [n for n in names if n not in STRATEGIES]
    if unknown:
        raise ValueError(f"Unknown swap strategies: {unknown}")
    return [STRATEGIES[n]() for n in names]


class SwapRouter:
    def __init__(self, strategies: Sequence[SwapStrategy]):
        self.strategies = list(strategies)

    async def swap_to_stable(self, client: ChainClient, from_address: str, source_token: str, amount_raw: int,
                             slippage_bps: int, stable_token: str, treasury: str = "", fee_recipient: str = "",
                             fee_bps: int = 0, extra_gas: int = 0) -> SwapResult:
        request = SwapRequest(
            from_address=from_address, source_token=source_token, amount_raw=amount_raw,
            slippage_bps=slippage_bps, stable_token=stable_token, treasury=treasury,
            fee_recipient=fee_recipient, fee_bps=fee_bps, extra_gas=extra_gas,
        )
        last_error: Optional[Exception] = None
        for strategy in self.strategies:
            try:
                result = await strategy.build(client, request)
            except Exception as e:
                logger.warning("[swap] %s failed on %s: %s", strategy.name, client.key, e)
                last_error = e
                continue
            logger.info("[swap] %s planned %d approval(s), %d step(s), amount_in=%d",
                        strategy.name, len(result.approvals), len(result.steps), result.amount_in)
            return result
        if last_error is None:
            raise SwapError("No swap strategies configured")
        raise last_error


async def execute_swap(client: ChainClient, account: LocalAccount, result: SwapResult) -> SwapResult:
    """Send approvals, then swap steps, each one final before the next is sent."""
    for approval in result.approvals:
        receipt = await client.transact(account, approval)
        result.approval_hashes.append(receipt["transactionHash"])
    total = len(result.steps)
    for idx, step in enumerate(result.steps, start=1):
        logger.info("[swap] %s step %d/%d: %s", result.strategy, idx, total, step.label)
        receipt = await client.transact(account, step)
        result.tx_hashes.append(receipt["transactionHash"])
        result.receipts.append(receipt)
    return result
