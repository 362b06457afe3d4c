from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    create_engine, String, Integer, BigInteger, DateTime, Numeric, ForeignKey, Text, JSON as SA_JSON,
    UniqueConstraint,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .config import Config


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tg_id: Mapped[Optional[int]] = mapped_column(BigInteger, unique=True, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    balance: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    deposit_address: Mapped[Optional[str]] = mapped_column(String(64), unique=True, index=True)
    derivation_index: Mapped[Optional[int]] = mapped_column(Integer, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18))
    type: Mapped[str] = mapped_column(String(32))
    description: Mapped[Optional[str]] = mapped_column(Text)
    reference: Mapped[Dict[str, Any]] = mapped_column(SA_JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category: Mapped[str] = mapped_column(String(32), index=True)
    target_user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    reference: Mapped[Optional[str]] = mapped_column(String(160), index=True)
    data: Mapped[Dict[str, Any]] = mapped_column(SA_JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)


class DepositJob(Base):
    """One row per deposit identity; the unique key is the durable idempotency guard."""
    __tablename__ = "deposit_jobs"
    __table_args__ = (UniqueConstraint("chain_key", "tx_hash", "log_index", name="uq_deposit_identity"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    chain_key: Mapped[str] = mapped_column(String(32))
    tx_hash: Mapped[str] = mapped_column(String(128))
    log_index: Mapped[int] = mapped_column(Integer, default=0)
    job_key: Mapped[str] = mapped_column(String(200), unique=True, index=True)
    destination: Mapped[str] = mapped_column(String(64), index=True)
    derivation_index: Mapped[int] = mapped_column(Integer)
    token_kind: Mapped[str] = mapped_column(String(64))
    amount_raw: Mapped[str] = mapped_column(String(80))  # uint256 does not fit any SQL integer type
    block_number: Mapped[Optional[int]] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String(16), default="queued", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text)
    strategy: Mapped[Optional[str]] = mapped_column(String(32))
    swap_tx: Mapped[Optional[str]] = mapped_column(String(128))
    split_txs: Mapped[Dict[str, Any]] = mapped_column(SA_JSON, default=dict)
    credited_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18))
    # Swap and split results of earlier attempts; a re-drive resumes after the last finished stage.
    progress: Mapped[Dict[str, Any]] = mapped_column(SA_JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)


def build_engine(url: Optional[str] = None) -> Engine:
    return create_engine(url or Config.DB_URL, echo=False, future=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine):
    Base.metadata.create_all(engine)
