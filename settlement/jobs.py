"""Durable deposit job table: idempotency guard, status tracking and the stuck-deposit view."""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .config import Config
from .models import DepositJob, now_utc
from .queue import SwapJob

logger = logging.getLogger(__name__)

STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_SETTLED = "settled"
STATUS_FAILED = "failed"
STATUS_UNRESOLVED = "unresolved"

REQUEUEABLE = (STATUS_QUEUED, STATUS_PROCESSING, STATUS_FAILED, STATUS_UNRESOLVED)


def job_from_row(row: DepositJob) -> SwapJob:
    return SwapJob(
        deposit_id=row.tx_hash,
        chain_key=row.chain_key,
        destination=row.destination,
        derivation_index=row.derivation_index,
        amount_raw=int(row.amount_raw),
        tx_hash=row.tx_hash,
        log_index=row.log_index,
        token_kind=row.token_kind,
        block_number=row.block_number,
    )


def row_to_dict(row: DepositJob) -> Dict[str, Any]:
    return {
        "key": row.job_key,
        "chain": row.chain_key,
        "tx_hash": row.tx_hash,
        "destination": row.destination,
        "amount_raw": row.amount_raw,
        "status": row.status,
        "attempts": row.attempts,
        "error": row.error,
        "strategy": row.strategy,
        "swap_tx": row.swap_tx,
        "split_txs": row.split_txs,
        "progress": row.progress or {},
        "credited_amount": str(row.credited_amount) if row.credited_amount is not None else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


class DepositJobStore:
    def __init__(self, session_factory: sessionmaker):
        self.SessionLocal = session_factory

    def claim(self, job: SwapJob) -> bool:
        """Insert the job row; ``False`` when the identity already exists."""
        with self.SessionLocal() as session:
            session.add(DepositJob(
                chain_key=job.chain_key,
                tx_hash=job.tx_hash.lower(),
                log_index=job.log_index or 0,
                job_key=job.identity,
                destination=job.destination.lower(),
                derivation_index=job.derivation_index,
                token_kind=job.token_kind,
                amount_raw=str(job.amount_raw),
                block_number=job.block_number,
                status=STATUS_QUEUED,
            ))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def get(self, key: str, session: Optional[Session] = None) -> Optional[DepositJob]:
        if session is not None:
            return session.execute(select(DepositJob).where(DepositJob.job_key == key)).scalar_one_or_none()
        with self.SessionLocal() as session:
            return session.execute(select(DepositJob).where(DepositJob.job_key == key)).scalar_one_or_none()

    def _update(self, key: str, **values):
        with self.SessionLocal() as session:
            row = self.get(key, session)
            if row is None:
                logger.warning("[jobs] no row for %s", key)
                return
            for name, value in values.items():
                setattr(row, name, value)
            session.commit()

    def mark_processing(self, key: str):
        with self.SessionLocal() as session:
            row = self.get(key, session)
            if row is None:
                return
            row.status = STATUS_PROCESSING
            row.attempts = (row.attempts or 0) + 1
            row.error = None
            session.commit()

    def mark_failed(self, key: str, error: str, swap_tx: Optional[str] = None):
        values = {"status": STATUS_FAILED, "error": error[:2000]}
        if swap_tx:
            values["swap_tx"] = swap_tx
        self._update(key, **values)

    def mark_unresolved(self, key: str, error: str, swap_tx: Optional[str] = None,
                        split_txs: Optional[Dict[str, Any]] = None):
        self._update(key, status=STATUS_UNRESOLVED, error=error, swap_tx=swap_tx, split_txs=split_txs or {})

    def mark_settled(self, session: Session, key: str, strategy: str, swap_tx: Optional[str],
                     split_txs: Dict[str, Any], credited_amount):
        """Settle inside the caller's transaction, next to the balance credit."""
        row = self.get(key, session)
        if row is None:
            return
        row.status = STATUS_SETTLED
        row.error = None
        row.strategy = strategy
        row.swap_tx = swap_tx
        row.split_txs = split_txs
        row.credited_amount = credited_amount

    def progress(self, key: str) -> Dict[str, Any]:
        row = self.get(key)
        return dict(row.progress or {}) if row is not None else {}

    def record_progress(self, key: str, progress: Dict[str, Any]):
        # Assign fresh containers: in-place mutation of a JSON column is not tracked.
        self._update(
            key,
            progress=dict(progress),
            strategy=progress.get("strategy"),
            swap_tx=progress.get("swap_tx"),
            split_txs=dict(progress.get("split_txs") or {}),
        )

    def stuck(self, older_than_seconds: Optional[int] = None) -> List[DepositJob]:
        """Failed and unresolved rows, plus queued/processing rows nobody finished in time."""
        grace = Config.STUCK_AFTER_SECONDS if older_than_seconds is None else older_than_seconds
        cutoff = now_utc() - timedelta(seconds=grace)
        with self.SessionLocal() as session:
            return list(session.execute(
                select(DepositJob).where(or_(
                    DepositJob.status.in_((STATUS_FAILED, STATUS_UNRESOLVED)),
                    and_(DepositJob.status.in_((STATUS_QUEUED, STATUS_PROCESSING)),
                         DepositJob.updated_at < cutoff),
                )).order_by(DepositJob.id)
            ).scalars().all())

    def requeue(self, key: str) -> Optional[SwapJob]:
        with self.SessionLocal() as session:
            row = self.get(key, session)
            if row is None or row.status not in REQUEUEABLE:
                return None
            row.status = STATUS_QUEUED
            row.error = None
            session.commit()
            logger.info("[jobs] %s requeued", key)
            return job_from_row(row)
