"""
Deposit processor
-----------------
Turns one :class:`~settlement.queue.SwapJob` into a settled, credited balance:

1. rebuild the deposit signer from its derivation index
2. optionally top it up with gas from the sponsor
3. swap the deposit to the stable token through the strategy router, step by step
4. work out the realized stable output
5. split it between treasury and fee recipient
6. credit the treasury share to the user and mark the job settled, in one DB transaction
7. sweep leftover native currency back to the sponsor

The swap result and every split transfer are saved on the job row as soon as they land. A re-driven job
skips the stages already on chain: a job left unresolved only runs step 6 again.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from eth_account.signers.local import LocalAccount
from sqlalchemy.orm import sessionmaker

from .config import Config, split_bps
from .errors import SettlementError, SwapError
from .gas import DIRECT_SPLIT_GAS, WORST_CASE_SWAP_GAS, GasSponsor, Sweeper
from .hd import HDKeyring
from .jobs import DepositJobStore
from .ledger import audit_log, credit_balance, find_user_by_deposit_address, to_units
from .notify import DEPOSIT_SETTLED, Notifier
from .queue import SwapJob
from .rpc import ChainClient
from .split import SPLIT_GASLESS, DirectSplitter, GaslessSplitter, SplitResult, SplitTransfer, compute_split
from .swap import SwapResult, SwapRouter, execute_swap, oneshot_output

logger = logging.getLogger(__name__)

SPLIT_ONESHOT = "oneshot"


class DepositProcessor:
    def __init__(self, clients: Dict[str, ChainClient], keyring: HDKeyring, session_factory: sessionmaker,
                 router: SwapRouter, store: Optional[DepositJobStore] = None, notifier: Optional[Notifier] = None,
                 sponsor: Optional[LocalAccount] = None, treasury: Optional[str] = None,
                 fee_wallet: Optional[str] = None, fee_bps: Optional[int] = None, split_mode: Optional[str] = None,
                 sponsorship: Optional[bool] = None, slippage_bps: Optional[int] = None):
        self.clients = clients
        self.keyring = keyring
        self.SessionLocal = session_factory
        self.router = router
        self.store = store
        self.notifier = notifier or Notifier(session_factory)
        self.sponsor = sponsor
        self.treasury = treasury or Config.TREASURY_ADDRESS
        self.fee_wallet = fee_wallet or Config.FEE_WALLET
        self.bps_treasury, self.bps_fee = split_bps(fee_bps)
        self.split_mode = (split_mode or Config.SPLIT_MODE).lower()
        self.sponsorship = Config.ENABLE_GAS_SPONSORSHIP if sponsorship is None else sponsorship
        self.slippage_bps = Config.SLIPPAGE_BPS if slippage_bps is None else slippage_bps
        if not self.treasury or not self.fee_wallet:
            raise SettlementError("TREASURY_ADDRESS and FEE_WALLET must be configured")
        if (self.sponsorship or self.split_mode == SPLIT_GASLESS) and self.sponsor is None:
            raise SettlementError("Gas sponsorship and gasless splits need a sponsor key")

    def _gas_budget(self) -> int:
        return WORST_CASE_SWAP_GAS + (0 if self.split_mode == SPLIT_GASLESS else DIRECT_SPLIT_GAS)

    async def _realized_output(self, client: ChainClient, signer: str, result: SwapResult, before: int) -> int:
        if result.splits_proceeds:
            return oneshot_output(result.receipts[-1])
        if result.amount_out > 0:
            return result.amount_out
        after = await client.token_balance(client.chain.stable_token, signer)
        return after - before

    async def process(self, job: SwapJob) -> Dict[str, Any]:
        key = job.identity
        if self.store is not None:
            self.store.mark_processing(key)
        try:
            return await self._settle(job)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            if self.store is not None:
                self.store.mark_failed(key, reason)
            await self.notifier.deposit_failed(key, job.destination, reason)
            raise

    def _save(self, key: str, progress: Dict[str, Any]):
        if self.store is not None:
            self.store.record_progress(key, progress)

    async def _swap(self, client: ChainClient, job: SwapJob, account: LocalAccount) -> Dict[str, Any]:
        chain = client.chain
        stable_before = await client.token_balance(chain.stable_token, account.address)
        result = await self.router.swap_to_stable(
            client, account.address, job.token_kind, job.amount_raw, self.slippage_bps, chain.stable_token,
            treasury=self.treasury, fee_recipient=self.fee_wallet, fee_bps=self.bps_fee,
            extra_gas=0 if self.split_mode == SPLIT_GASLESS else DIRECT_SPLIT_GAS,
        )
        await execute_swap(client, account, result)
        swap_tx = result.swap_tx

        amount_out = await self._realized_output(client, account.address, result, stable_before)
        if amount_out <= 0:
            raise SwapError(f"Swap {swap_tx} produced no stable output")
        logger.info("[%s] %s swapped via %s: %d in -> %d out (%s)",
                    chain.key, job.identity, result.strategy, result.amount_in, amount_out, swap_tx)

        treasury_amount, fee_amount = compute_split(amount_out, self.bps_treasury, self.bps_fee)
        progress = {
            "strategy": result.strategy,
            "swap_tx": swap_tx,
            "approval_txs": list(result.approval_hashes),
            "amount_in": str(result.amount_in),
            "stable_out": str(amount_out),
            "treasury": self.treasury,
            "fee_wallet": self.fee_wallet,
            "treasury_amount": str(treasury_amount),
            "fee_amount": str(fee_amount),
            "split_mode": SPLIT_ONESHOT if result.splits_proceeds else self.split_mode,
            "split_txs": {"treasury": swap_tx, "fee": swap_tx} if result.splits_proceeds else {},
        }
        self._save(job.identity, progress)
        return progress

    async def _split(self, client: ChainClient, job: SwapJob, account: LocalAccount, progress: Dict[str, Any],
                     sponsor: Optional[GasSponsor], resumed: bool) -> SplitResult:
        txs = dict(progress.get("split_txs") or {})
        split = SplitResult(
            SplitTransfer(progress["treasury"], int(progress["treasury_amount"]), txs.get("treasury")),
            SplitTransfer(progress["fee_wallet"], int(progress["fee_amount"]), txs.get("fee")),
            mode=progress["split_mode"],
        )
        if split.mode == SPLIT_ONESHOT or not split.pending():
            return split
        if split.mode == SPLIT_GASLESS:
            if self.sponsor is None:
                raise SettlementError(f"{job.identity} was split gasless; resuming it needs a sponsor key")
            splitter = GaslessSplitter(client, self.sponsor)
        else:
            splitter = DirectSplitter(client)
            if resumed and sponsor is not None:
                await sponsor.top_up(account.address, DIRECT_SPLIT_GAS)

        def on_transfer(side: str, tx_hash: str):
            txs[side] = tx_hash
            progress["split_txs"] = dict(txs)
            self._save(job.identity, progress)

        return await splitter.execute(account, client.chain.stable_token, split, on_transfer)

    async def _settle(self, job: SwapJob) -> Dict[str, Any]:
        key = job.identity
        client = self.clients.get(job.chain_key)
        if client is None:
            raise SettlementError(f"No client configured for chain {job.chain_key}")
        chain = client.chain

        derived = self.keyring.derive_signer(job.derivation_index)
        if derived.address.lower() != job.destination.lower():
            raise SettlementError(f"Index {job.derivation_index} derives {derived.address}, not {job.destination}")
        account = derived.account

        sponsor = GasSponsor(client, self.sponsor) if self.sponsorship else None
        progress = self.store.progress(key) if self.store is not None else {}
        resumed = bool(progress.get("stable_out"))
        if resumed:
            logger.info("[%s] %s resuming after swap %s", chain.key, key, progress.get("swap_tx"))
        else:
            if sponsor is not None:
                await sponsor.top_up(account.address, self._gas_budget())
            progress = await self._swap(client, job, account)

        split = await self._split(client, job, account, progress, sponsor, resumed)
        swap_tx = progress["swap_tx"]
        credited = to_units(split.treasury_amount, chain.stable_decimals)
        outcome = {
            "key": key,
            "chain": chain.key,
            "address": job.destination,
            "amount_in": progress["amount_in"],
            "stable_out": progress["stable_out"],
            "credited": str(credited),
            "fee": str(to_units(split.fee_amount, chain.stable_decimals)),
            "strategy": progress["strategy"],
            "swap_tx": swap_tx,
            "approval_txs": list(progress.get("approval_txs") or []),
            "split_txs": split.tx_hashes(),
            "split_mode": split.mode,
        }

        with self.SessionLocal() as session:
            user = find_user_by_deposit_address(session, job.destination)
            if user is None:
                logger.error("[%s] no user for deposit address %s; %s left unresolved", chain.key,
                             job.destination, key)
                outcome["status"] = "unresolved"
            else:
                description = (f"Deposit {credited} | Swap: {swap_tx} | "
                               f"Treasury: {split.treasury.tx_hash} | Fee: {split.fee.tx_hash}")
                if credited > Decimal(0):
                    credit_balance(session, user.id, credited, description, outcome)
                audit_log(session, DEPOSIT_SETTLED, user.id, key, outcome)
                if self.store is not None:
                    self.store.mark_settled(session, key, progress["strategy"], swap_tx, split.tx_hashes(), credited)
                session.commit()
                outcome["status"] = "settled"
                outcome["user_id"] = user.id

        if outcome["status"] == "unresolved":
            if self.store is not None:
                self.store.mark_unresolved(key, f"No user for deposit address {job.destination}", swap_tx,
                                           split.tx_hashes())
            await self.notifier.deposit_unresolved(outcome)
        else:
            logger.info("[%s] %s settled: credited %s to user %s", chain.key, key, credited, outcome["user_id"])
            await self.notifier.deposit_settled(outcome)

        if sponsor is not None:
            sweep = await Sweeper(client).sweep_one(account, sponsor.address)
            outcome["sweep"] = sweep.to_dict()
            await self.notifier.sweep_result(chain.key, [sweep])
        return outcome
