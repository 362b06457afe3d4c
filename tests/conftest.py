from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List

import pytest
from web3.exceptions import ContractLogicError

from settlement import abi
from settlement.config import ChainConfig
from settlement.errors import TransactionReverted
from settlement.hd import HDKeyring
from settlement.models import build_engine, init_db, make_session_factory
from settlement.rpc import ChainClient, FeeData, TxRequest

TEST_MNEMONIC = "test test test test test test test test test test test junk"
TEST_PATH_PREFIX = "m/44'/60'/0'/0"

GWEI = 10**9
ETHER = 10**18

STABLE = "0x" + "11" * 20
WETH = "0x" + "22" * 20
V2_FACTORY = "0x" + "33" * 20
PAIR = "0x" + "44" * 20
V3_FACTORY = "0x" + "55" * 20
ROUTER = "0x" + "66" * 20
QUOTER = "0x" + "77" * 20
ONESHOT = "0x" + "88" * 20
POOL = "0x" + "99" * 20
TREASURY = "0x" + "aa" * 20
FEE_WALLET = "0x" + "bb" * 20
SWEEP_TO = "0x" + "cc" * 20


class FakeRevert(Exception):
    pass


@dataclass
class SentTx:
    sender: str
    tx: TxRequest
    tx_hash: str
    fee: FeeData


def _sel(signature: str) -> bytes:
    return abi.selector(signature)


class FakeChain(ChainClient):
    """In-process chain: native balances, ERC-20 ledgers, WETH, a V2 pair, a V3 router and a one-shot contract.

    Every transaction is charged ``gas limit * maxFeePerGas`` up front and refused when the sender cannot
    pay gas plus value, the way a node refuses it.
    """

    def __init__(self, chain: ChainConfig, max_fee: int = 2 * GWEI, priority: int = GWEI):
        super().__init__(chain, w3=object(), timeout=1, retries=0, backoff=0, fee_caps=(max_fee, priority))
        self.fee = FeeData(max_fee, priority)
        self.head = 100
        self.blocks: Dict[int, dict] = {}
        self.native: Dict[str, int] = defaultdict(int)
        self.tokens: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.allowances: Dict[tuple, int] = {}
        self.sent: List[SentTx] = []
        self.receipts: Dict[str, dict] = {}
        self.revert_labels = set()
        self.fail_sends = 0
        self.pairs: Dict[frozenset, str] = {}
        self.pair_token0: Dict[str, str] = {}
        self.reserves: Dict[str, List[int]] = {}
        self.pools: Dict[tuple, str] = {}
        self.liquidity: Dict[str, int] = {}
        self.quote_out = None
        self.router_out = 0
        self.oneshot_out = 0
        self.token_meta = {STABLE: ("USD Coin", "2")}
        self.used_nonces = set()
        self.balance_reads = 0

    # -- test helpers ------------------------------------------------------------------

    def fund(self, address: str, wei: int):
        self.native[address.lower()] += wei

    def mint(self, token: str, address: str, amount: int):
        self.tokens[token.lower()][address.lower()] += amount

    def balance_of(self, token: str, address: str) -> int:
        return self.tokens[token.lower()][address.lower()]

    def add_v2_pair(self, weth_reserve: int, stable_reserve: int, weth_is_token0: bool = True):
        self.pairs[frozenset((WETH, STABLE))] = PAIR
        self.pair_token0[PAIR] = WETH if weth_is_token0 else STABLE
        self.mint(WETH, PAIR, weth_reserve)
        self.mint(STABLE, PAIR, stable_reserve)
        self.reserves[PAIR] = [weth_reserve, stable_reserve] if weth_is_token0 else [stable_reserve, weth_reserve]

    def add_v3_pool(self, fee_tier: int, liquidity: int, pool: str = POOL):
        self.pools[(frozenset((WETH, STABLE)), fee_tier)] = pool
        self.liquidity[pool] = liquidity

    def sent_from(self, address: str) -> List[SentTx]:
        return [s for s in self.sent if s.sender == address.lower()]

    def add_block(self, number: int, transactions: List[dict]):
        self.blocks[number] = {"number": number, "transactions": transactions}

    # -- reads -------------------------------------------------------------------------

    async def block_number(self) -> int:
        return self.head

    async def get_block(self, number, full_transactions=True):
        if number == "latest":
            number = self.head
        if number > self.head:
            return None
        return self.blocks.get(number, {"number": number, "transactions": []})

    async def get_balance(self, address: str) -> int:
        self.balance_reads += 1
        return self.native[address.lower()]

    async def nonce(self, address: str) -> int:
        return len(self.sent_from(address))

    async def fee_data(self) -> FeeData:
        return self.fee

    async def call(self, to: str, data: bytes) -> bytes:
        to = to.lower()
        sel = bytes(data[:4])
        if sel == _sel(abi.ERC20_BALANCE_OF):
            (owner,) = abi.decode_call_args(abi.ERC20_BALANCE_OF, data)
            return abi.encode_result(["uint256"], [self.tokens[to][owner.lower()]])
        if sel == _sel(abi.V2_GET_PAIR) and to == V2_FACTORY:
            a, b = abi.decode_call_args(abi.V2_GET_PAIR, data)
            return abi.encode_result(["address"], [self.pairs.get(frozenset((a.lower(), b.lower())), abi.ZERO_ADDRESS)])
        if sel == _sel(abi.V2_TOKEN0) and to in self.pair_token0:
            return abi.encode_result(["address"], [self.pair_token0[to]])
        if sel == _sel(abi.V2_GET_RESERVES) and to in self.reserves:
            r0, r1 = self.reserves[to]
            return abi.encode_result(["uint112", "uint112", "uint32"], [r0, r1, 0])
        if sel == _sel(abi.V3_GET_POOL) and to == V3_FACTORY:
            a, b, fee = abi.decode_call_args(abi.V3_GET_POOL, data)
            pool = self.pools.get((frozenset((a.lower(), b.lower())), fee), abi.ZERO_ADDRESS)
            return abi.encode_result(["address"], [pool])
        if sel == _sel(abi.V3_LIQUIDITY) and to in self.liquidity:
            return abi.encode_result(["uint128"], [self.liquidity[to]])
        if sel == _sel(abi.QUOTER_EXACT_INPUT_SINGLE) and to == QUOTER and self.quote_out is not None:
            return abi.encode_result(["uint256", "uint160", "uint32", "uint256"], [self.quote_out, 0, 1, 100_000])
        if sel == _sel(abi.ERC20_NAME) and to in self.token_meta:
            return abi.encode_result(["string"], [self.token_meta[to][0]])
        if sel == _sel(abi.ERC20_VERSION) and to in self.token_meta:
            return abi.encode_result(["string"], [self.token_meta[to][1]])
        raise ContractLogicError("execution reverted")

    # -- writes ------------------------------------------------------------------------

    async def send_transaction(self, account, tx: TxRequest, fee=None) -> str:
        if self.fail_sends:
            self.fail_sends -= 1
            raise ValueError("replacement transaction underpriced")
        fee = fee or self.fee
        sender = account.address.lower()
        gas_cost = tx.gas * fee.max_fee_per_gas
        if self.native[sender] < gas_cost + tx.value:
            raise ValueError("insufficient funds for gas * price + value")
        self.native[sender] -= gas_cost
        tx_hash = "0x%064x" % (len(self.sent) + 1)
        self.sent.append(SentTx(sender, tx, tx_hash, fee))
        status, logs = 1, []
        if tx.label in self.revert_labels:
            status = 0
        else:
            try:
                logs = self._apply(sender, tx)
            except FakeRevert:
                status = 0
        self.receipts[tx_hash] = {"status": status, "transactionHash": tx_hash, "logs": logs, "gasUsed": tx.gas}
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str) -> dict:
        receipt = dict(self.receipts[tx_hash])
        if receipt["status"] != 1:
            raise TransactionReverted(tx_hash)
        return receipt

    # -- state transitions -------------------------------------------------------------

    def _move_token(self, token: str, sender: str, recipient: str, amount: int):
        ledger = self.tokens[token]
        if ledger[sender] < amount:
            raise FakeRevert("transfer amount exceeds balance")
        ledger[sender] -= amount
        ledger[recipient.lower()] += amount

    def _apply(self, sender: str, tx: TxRequest) -> list:
        logs = self._dispatch(sender, tx)
        if tx.value:
            self.native[sender] -= tx.value
            self.native[tx.to.lower()] += tx.value
        return logs

    def _dispatch(self, sender: str, tx: TxRequest) -> list:
        to = tx.to.lower()
        data = bytes(tx.data)
        if not data:
            return []
        sel = data[:4]
        if sel == _sel(abi.WETH_DEPOSIT) and to == WETH:
            self.tokens[WETH][sender] += tx.value
            return []
        if sel == _sel(abi.ERC20_TRANSFER):
            recipient, amount = abi.decode_call_args(abi.ERC20_TRANSFER, data)
            self._move_token(to, sender, recipient, amount)
            return []
        if sel == _sel(abi.ERC20_APPROVE):
            spender, amount = abi.decode_call_args(abi.ERC20_APPROVE, data)
            self.allowances[(to, sender, spender.lower())] = amount
            return []
        if sel == _sel(abi.V2_SWAP) and to in self.reserves:
            return self._pair_swap(to, data)
        if sel == _sel(abi.ROUTER_EXACT_INPUT_SINGLE) and to == ROUTER:
            return self._router_swap(sender, tx, data)
        if sel == _sel(abi.ONESHOT_SWAP_NATIVE) and to == ONESHOT:
            return self._oneshot(tx, data)
        if sel == _sel(abi.TRANSFER_WITH_AUTHORIZATION):
            frm, recipient, value, _, valid_before, nonce, _, _, _ = abi.decode_call_args(
                abi.TRANSFER_WITH_AUTHORIZATION, data)
            if (to, nonce) in self.used_nonces:
                raise FakeRevert("authorization is used")
            self.used_nonces.add((to, nonce))
            self._move_token(to, frm.lower(), recipient, value)
            return []
        raise FakeRevert("unknown call")

    def _pair_swap(self, pair: str, data: bytes) -> list:
        amount0_out, amount1_out, recipient, _ = abi.decode_call_args(abi.V2_SWAP, data)
        token0 = self.pair_token0[pair]
        token1 = STABLE if token0 == WETH else WETH
        r0, r1 = self.reserves[pair]
        balance0 = self.tokens[token0][pair] - amount0_out
        balance1 = self.tokens[token1][pair] - amount1_out
        in0 = max(balance0 - (r0 - amount0_out), 0)
        in1 = max(balance1 - (r1 - amount1_out), 0)
        if (balance0 * 1000 - in0 * 3) * (balance1 * 1000 - in1 * 3) < r0 * r1 * 1000 ** 2:
            raise FakeRevert("K")
        if amount0_out:
            self._move_token(token0, pair, recipient, amount0_out)
        if amount1_out:
            self._move_token(token1, pair, recipient, amount1_out)
        self.reserves[pair] = [self.tokens[token0][pair], self.tokens[token1][pair]]
        return []

    def _router_swap(self, sender: str, tx: TxRequest, data: bytes) -> list:
        ((token_in, token_out, _, recipient, amount_in, min_out, _),) = abi.decode_call_args(
            abi.ROUTER_EXACT_INPUT_SINGLE, data)
        if self.router_out < min_out:
            raise FakeRevert("Too little received")
        if not tx.value:
            key = (token_in.lower(), sender, ROUTER)
            if self.allowances.get(key, 0) < amount_in:
                raise FakeRevert("STF")
            self._move_token(token_in.lower(), sender, ROUTER, amount_in)
        self.mint(token_out, recipient, self.router_out)
        return []

    def _oneshot(self, tx: TxRequest, data: bytes) -> list:
        treasury, fee_recipient, bps, stable, _, _ = abi.decode_call_args(abi.ONESHOT_SWAP_NATIVE, data)
        out = self.oneshot_out
        fee_amount = out * bps // 10000
        self.mint(stable, fee_recipient, fee_amount)
        self.mint(stable, treasury, out - fee_amount)
        return [{
            "address": ONESHOT,
            "topics": [abi.event_topic(abi.ONESHOT_EVENT)],
            "data": abi.encode_result(["uint256", "uint256"], [tx.value, out]),
        }]


@pytest.fixture
def chain_config():
    return ChainConfig(
        key="eth_sepolia",
        chain_id=11155111,
        rpc_url="http://localhost:8545",
        confirmations=2,
        stable_token=STABLE,
        weth=WETH,
        v2_factory=V2_FACTORY,
        v3_factory=V3_FACTORY,
        swap_router=ROUTER,
        quoter=QUOTER,
        oneshot_contract=ONESHOT,
    )


@pytest.fixture
def chain(chain_config):
    return FakeChain(chain_config)


@pytest.fixture(scope="session")
def keyring():
    return HDKeyring(TEST_MNEMONIC, TEST_PATH_PREFIX)


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'settlement.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()
