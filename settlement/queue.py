"""
Job queue
---------
Bounded-concurrency FIFO in front of the deposit processor. The queue limits concurrency, it does not
sequence: unrelated deposits may settle in any order. Each identity is admitted at most once, first
against the in-process :class:`ProcessedSet`, then against the durable job table when a store is attached.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional, Set

from .config import NATIVE, Config

logger = logging.getLogger(__name__)

JOB_KIND_SWAP = "swap"


@dataclass(frozen=True)
class SwapJob:
    deposit_id: str
    chain_key: str
    destination: str
    derivation_index: int
    amount_raw: int
    tx_hash: str
    log_index: int = 0
    token_kind: str = NATIVE
    block_number: Optional[int] = None
    kind: str = JOB_KIND_SWAP

    @property
    def identity(self) -> str:
        return job_identity(self.chain_key, self.tx_hash, self.log_index)


def job_identity(chain_key: str, tx_hash: str, log_index: Optional[int] = 0) -> str:
    return f"{chain_key}:{tx_hash.lower()}:{log_index or 0}"


class ProcessedSet:
    """Identity keys admitted during the lifetime of this process."""

    def __init__(self):
        self._keys: Set[str] = set()

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> bool:
        if key in self._keys:
            return False
        self._keys.add(key)
        return True


class JobQueue:
    def __init__(self, handler: Callable[[SwapJob], Awaitable[Any]], concurrency: Optional[int] = None,
                 store=None, processed: Optional[ProcessedSet] = None):
        self.handler = handler
        self.concurrency = max(1, Config.QUEUE_CONCURRENCY if concurrency is None else concurrency)
        self.store = store
        self.processed = processed if processed is not None else ProcessedSet()
        self.running = 0
        self.peak_running = 0
        self._pending: Deque[SwapJob] = deque()
        self._tasks: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def enqueue(self, job: SwapJob) -> bool:
        """Admit ``job`` unless its identity was seen before. Never blocks."""
        key = job.identity
        if key in self.processed:
            logger.info("[queue] duplicate %s dropped", key)
            return False
        if self.store is not None and not self.store.claim(job):
            self.processed.add(key)
            logger.info("[queue] %s already recorded, dropped", key)
            return False
        self.processed.add(key)
        self._admit(job)
        return True

    def redrive(self, job: SwapJob):
        """Run a job an operator moved back to ``queued``; skips the duplicate checks."""
        self.processed.add(job.identity)
        logger.info("[queue] re-driving %s", job.identity)
        self._admit(job)

    def _admit(self, job: SwapJob):
        self._pending.append(job)
        self._idle.clear()
        self._pump()

    def _pump(self):
        while self.running < self.concurrency and self._pending:
            job = self._pending.popleft()
            self.running += 1
            self.peak_running = max(self.peak_running, self.running)
            task = asyncio.get_running_loop().create_task(self._run(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, job: SwapJob):
        key = job.identity
        started = time.monotonic()
        logger.info("[queue] start %s (running=%d, pending=%d)", key, self.running, len(self._pending))
        try:
            await self.handler(job)
            logger.info("[queue] done %s in %.2fs", key, time.monotonic() - started)
        except Exception:
            logger.exception("[queue] failed %s after %.2fs", key, time.monotonic() - started)
        finally:
            self.running -= 1
            self._pump()
            if self.running == 0 and not self._pending:
                self._idle.set()

    async def join(self):
        await self._idle.wait()
