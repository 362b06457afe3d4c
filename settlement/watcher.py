"""
Chain watcher
-------------
Turns new blocks into :class:`DepositEvent` objects for one chain. Pure producer: it knows nothing
about swaps or settlement, it only hands events to a callback.

``transactions`` mode inspects every top-level transaction of each block that has reached the
confirmation depth. ``balances`` mode polls each watched address once per new head and reports
strictly positive deltas; it sees internal transfers at the price of one query per address per block.

Transfers sent by our own wallets (gas sponsor, treasury, fee wallet) are never deposits. Transaction
mode drops them by sender. Balance mode cannot see senders, so an address whose job is in flight is
held: it is not polled, and on release its balance becomes the new baseline.
"""

import asyncio
import inspect
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .config import Config
from .rpc import ChainClient, as_hex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepositEvent:
    chain_key: str
    address: str
    amount: int
    tx_hash: str
    block_number: int
    log_index: int = 0
    derivation_index: Optional[int] = None


def balance_event_id(address: str, block_number: int) -> str:
    return f"balance:{address.lower()}:{block_number}"


class WatchedSet:
    """Lower-cased address -> derivation index. Only grows."""

    def __init__(self, targets: Optional[Mapping[str, int]] = None):
        self._targets: Dict[str, int] = {}
        if targets:
            self.update(targets)

    def __contains__(self, address: Optional[str]) -> bool:
        return bool(address) and address.lower() in self._targets

    def __len__(self) -> int:
        return len(self._targets)

    def add(self, address: str, index: int):
        self._targets[address.lower()] = index

    def update(self, targets: Mapping[str, int]) -> int:
        """Merge ``targets``; returns how many addresses were new."""
        added = 0
        for address, index in targets.items():
            if address.lower() not in self._targets:
                added += 1
            self.add(address, index)
        return added

    def index_of(self, address: str) -> Optional[int]:
        return self._targets.get(address.lower())

    def addresses(self) -> List[str]:
        return list(self._targets)

    def items(self) -> Iterable[Tuple[str, int]]:
        return list(self._targets.items())


class Subscription:
    def __init__(self, chain_key: str, task: "asyncio.Task"):
        self.chain_key = chain_key
        self._task = task
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self):
        """Stop producing events. Safe to call any number of times."""
        if not self._active:
            return
        self._active = False
        if not self._task.done():
            self._task.cancel()
        logger.info("[%s] watcher unsubscribed", self.chain_key)


class ChainWatcher:
    def __init__(self, client: ChainClient, watched: WatchedSet, poll_seconds: Optional[float] = None,
                 ignore_senders: Iterable[str] = ()):
        self.client = client
        self.watched = watched
        self.mode = client.chain.watch_mode
        self.confirmations = client.chain.confirmations
        self.poll_seconds = Config.WATCHER_POLL_SECONDS if poll_seconds is None else poll_seconds
        self.last_processed: Optional[int] = None
        self.ignore_senders = {sender.lower() for sender in ignore_senders if sender}
        self._balances: Dict[str, int] = {}
        self._held: Counter = Counter()

    @property
    def confirmation_lag(self) -> int:
        return max(self.confirmations - 1, 0)

    def hold(self, address: str):
        """Stop reporting balance changes of ``address`` until the matching :meth:`release`."""
        self._held[address.lower()] += 1

    async def release(self, address: str):
        address = address.lower()
        self._held[address] -= 1
        if self._held[address] > 0:
            return
        del self._held[address]
        if self.mode != "balances" or address not in self.watched:
            return
        try:
            self._balances[address] = await self.client.get_balance(address)
        except Exception as e:
            # Without a fresh baseline the next poll records one instead of reporting a delta.
            logger.warning("[%s] could not re-read balance of %s: %s", self.client.key, address, e)
            self._balances.pop(address, None)

    async def scan_block(self, number: int) -> Optional[List[DepositEvent]]:
        """Deposits among the top-level transactions of block ``number``; ``None`` if not available yet."""
        block = await self.client.get_block(number, full_transactions=True)
        if block is None:
            return None
        events = []
        for tx in block.get("transactions", []):
            if not isinstance(tx, Mapping):
                continue
            to = tx.get("to")
            value = int(tx.get("value", 0))
            if value <= 0 or to not in self.watched:
                continue
            sender = tx.get("from")
            if sender and sender.lower() in self.ignore_senders:
                logger.debug("[%s] ignoring internal transfer %s -> %s", self.client.key, sender, to)
                continue
            events.append(DepositEvent(
                chain_key=self.client.key,
                address=to.lower(),
                amount=value,
                tx_hash=as_hex(tx["hash"]).lower(),
                block_number=number,
                derivation_index=self.watched.index_of(to),
            ))
        return events

    async def scan_balances(self, block_number: int) -> List[DepositEvent]:
        """Positive balance deltas since the previous observation; the first one is a baseline."""
        events = []
        for address, index in self.watched.items():
            if self._held[address]:
                continue
            balance = await self.client.get_balance(address)
            previous = self._balances.get(address)
            self._balances[address] = balance
            if previous is None or balance <= previous:
                continue
            events.append(DepositEvent(
                chain_key=self.client.key,
                address=address,
                amount=balance - previous,
                tx_hash=balance_event_id(address, block_number),
                block_number=block_number,
                derivation_index=index,
            ))
        return events

    async def on_head(self, head: int) -> List[DepositEvent]:
        if self.mode == "balances":
            if self.last_processed is not None and head <= self.last_processed:
                return []
            events = await self.scan_balances(head)
            self.last_processed = head
            return events

        target = head - self.confirmation_lag
        if target < 0:
            return []
        start = target if self.last_processed is None else self.last_processed + 1
        events = []
        for number in range(start, target + 1):
            found = await self.scan_block(number)
            if found is None:
                logger.warning("[%s] block %d not available yet", self.client.key, number)
                break
            events.extend(found)
            self.last_processed = number
        return events

    async def _emit(self, callback: Callable[[DepositEvent], Any], events: List[DepositEvent]):
        for event in events:
            logger.info("[%s] deposit %d wei -> %s (%s, block %d)", event.chain_key, event.amount,
                        event.address, event.tx_hash, event.block_number)
            result = callback(event)
            if inspect.isawaitable(result):
                await result

    async def _poll(self, callback: Callable[[DepositEvent], Any]):
        logger.info("[%s] watcher started in %s mode (confirmations=%d, watching %d addresses)",
                    self.client.key, self.mode, self.confirmations, len(self.watched))
        while True:
            try:
                head = await self.client.block_number()
                await self._emit(callback, await self.on_head(head))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[%s] watcher poll failed", self.client.key)
            await asyncio.sleep(self.poll_seconds)

    def subscribe(self, callback: Callable[[DepositEvent], Any]) -> Subscription:
        task = asyncio.get_running_loop().create_task(self._poll(callback))
        return Subscription(self.client.key, task)
