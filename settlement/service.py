"""
Service wiring: one watcher per chain feeding the job queue, a periodic resync of the watched set,
and the operator HTTP API, all on one asyncio loop.
"""

import asyncio
import logging
import logging.handlers
from typing import Dict, List, Mapping, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from .config import ChainConfig, Config, load_chains
from .gas import Sweeper, SweepOutcome
from .hd import HDKeyring
from .jobs import DepositJobStore
from .ledger import load_watch_targets
from .models import User, build_engine, init_db, make_session_factory
from .notify import Notifier
from .processor import DepositProcessor
from .queue import JobQueue, SwapJob
from .rpc import ChainClient
from .swap import SwapRouter, build_strategies
from .watcher import ChainWatcher, DepositEvent, Subscription, WatchedSet

logger = logging.getLogger(__name__)


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None):
    level = level or Config.LOG_LEVEL
    log_file = Config.LOG_FILE if log_file is None else log_file
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.handlers.RotatingFileHandler(log_file, maxBytes=10485760, backupCount=5))
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers,
    )


def sponsor_account() -> Optional[LocalAccount]:
    if not Config.SPONSOR_PRIVATE_KEY:
        return None
    return Account.from_key(Config.SPONSOR_PRIVATE_KEY)


class SettlementService:
    def __init__(self, chains: Optional[Mapping[str, ChainConfig]] = None,
                 session_factory: Optional[sessionmaker] = None, keyring: Optional[HDKeyring] = None,
                 clients: Optional[Dict[str, ChainClient]] = None, notifier: Optional[Notifier] = None,
                 router: Optional[SwapRouter] = None, sponsor: Optional[LocalAccount] = None,
                 processor: Optional[DepositProcessor] = None):
        if clients is None:
            chains = chains if chains is not None else load_chains()
            clients = {key: ChainClient(chain) for key, chain in chains.items()}
        self.clients = clients
        if session_factory is None:
            engine = build_engine()
            init_db(engine)
            session_factory = make_session_factory(engine)
        self.SessionLocal = session_factory
        self.keyring = keyring or HDKeyring()
        self.store = DepositJobStore(session_factory)
        self.notifier = notifier or Notifier(session_factory)
        self.sponsor = sponsor if sponsor is not None else sponsor_account()
        self._processor = processor
        self._router = router
        self.watched = WatchedSet()
        self.queue: Optional[JobQueue] = None
        self.subscriptions: List[Subscription] = []
        self.watchers: Dict[str, ChainWatcher] = {}

    @property
    def processor(self) -> DepositProcessor:
        # Built lazily so maintenance commands work without the settlement wallets configured.
        if self._processor is None:
            self._processor = DepositProcessor(
                self.clients, self.keyring, self.SessionLocal, self._router or SwapRouter(build_strategies()),
                store=self.store, notifier=self.notifier, sponsor=self.sponsor,
            )
        return self._processor

    def ensure_queue(self) -> JobQueue:
        if self.queue is None:
            self.queue = JobQueue(self.handle, store=self.store)
        return self.queue

    def sync_watched(self) -> int:
        with self.SessionLocal() as session:
            added = self.watched.update(load_watch_targets(session))
        if added:
            logger.info("Watching %d new deposit address(es), %d total", added, len(self.watched))
        return added

    def internal_senders(self) -> List[str]:
        """Our own wallets; native transfers from them are gas top-ups or refunds, not deposits."""
        senders = [Config.TREASURY_ADDRESS, Config.FEE_WALLET]
        if self.sponsor is not None:
            senders.append(self.sponsor.address)
        return [sender.lower() for sender in senders if sender]

    def job_for(self, event: DepositEvent) -> Optional[SwapJob]:
        index = event.derivation_index
        if index is None:
            index = self.watched.index_of(event.address)
        if index is None:
            logger.warning("[%s] deposit to unknown address %s ignored", event.chain_key, event.address)
            return None
        return SwapJob(
            deposit_id=event.tx_hash,
            chain_key=event.chain_key,
            destination=event.address,
            derivation_index=index,
            amount_raw=event.amount,
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            block_number=event.block_number,
        )

    def on_deposit(self, event: DepositEvent):
        job = self.job_for(event)
        if job is not None:
            self.ensure_queue().enqueue(job)

    async def handle(self, job: SwapJob):
        watcher = self.watchers.get(job.chain_key)
        if watcher is not None:
            watcher.hold(job.destination)
        try:
            return await self.processor.process(job)
        finally:
            if watcher is not None:
                await watcher.release(job.destination)

    def start_watchers(self):
        for client in self.clients.values():
            watcher = ChainWatcher(client, self.watched, ignore_senders=self.internal_senders())
            self.watchers[client.key] = watcher
            self.subscriptions.append(watcher.subscribe(self.on_deposit))

    def stop(self):
        for subscription in self.subscriptions:
            subscription.unsubscribe()

    def redrive(self, key: str) -> Optional[SwapJob]:
        job = self.store.requeue(key)
        if job is not None:
            self.ensure_queue().redrive(job)
        return job

    def redrive_all(self) -> List[SwapJob]:
        jobs = []
        for row in self.store.stuck():
            job = self.redrive(row.job_key)
            if job is not None:
                jobs.append(job)
        return jobs

    def provisioned_indices(self) -> List[int]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(User.derivation_index).where(User.derivation_index.is_not(None)).order_by(User.id)
            ).scalars().all()
        return list(rows)

    async def sweep(self, chain_key: Optional[str] = None,
                    destination: Optional[str] = None) -> Dict[str, List[SweepOutcome]]:
        """Maintenance pass: sweep every provisioned deposit address on one or all chains."""
        destination = destination or Config.TREASURY_ADDRESS
        if not destination:
            raise ValueError("No sweep destination: pass one or set TREASURY_ADDRESS")
        accounts = [self.keyring.derive_signer(index).account for index in self.provisioned_indices()]
        keys = [chain_key] if chain_key else list(self.clients)
        results = {}
        for key in keys:
            outcomes = await Sweeper(self.clients[key]).sweep(accounts, destination)
            await self.notifier.sweep_result(key, outcomes)
            results[key] = outcomes
        return results

    async def resync_loop(self):
        while True:
            await asyncio.sleep(Config.WATCHER_SYNC_SECONDS)
            try:
                self.sync_watched()
            except Exception:
                logger.exception("Watched-set resync failed")

    async def serve_api(self):
        import uvicorn
        from .api import create_api
        config = uvicorn.Config(create_api(self), host="0.0.0.0", port=Config.API_PORT, log_level="info",
                                loop="asyncio")
        server = uvicorn.Server(config)
        await server.serve()

    async def run(self, with_api: bool = True):
        self.sync_watched()
        self.ensure_queue()
        self.start_watchers()
        logger.info("Settlement service running on %s", ", ".join(sorted(self.clients)))
        tasks = [self.resync_loop()]
        if with_api:
            tasks.append(self.serve_api())
        try:
            await asyncio.gather(*tasks)
        finally:
            self.stop()
