"""
Ledger seam: the user lookup and balance credit the pipeline consumes, plus provisioning of deposit
addresses. None of these commit; callers own the transaction boundary.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .errors import LedgerError
from .hd import HDKeyring
from .models import AuditLog, LedgerEntry, User

logger = logging.getLogger(__name__)

DEPOSIT_ENTRY = "deposit"


def to_units(amount_raw: int, decimals: int) -> Decimal:
    return Decimal(amount_raw) / (Decimal(10) ** decimals)


def find_user_by_deposit_address(session: Session, address: str) -> Optional[User]:
    if not address:
        return None
    return session.execute(
        select(User).where(func.lower(User.deposit_address) == address.lower())
    ).scalar_one_or_none()


def credit_balance(session: Session, user_id: int, amount: Decimal, reason: str,
                   reference: Optional[Dict[str, Any]] = None, entry_type: str = DEPOSIT_ENTRY) -> LedgerEntry:
    """Atomic ``balance = balance + amount`` plus the matching ledger entry."""
    if amount <= 0:
        raise LedgerError(f"Credit amount must be positive, got {amount}")
    result = session.execute(
        update(User).where(User.id == user_id).values(balance=User.balance + amount)
    )
    if result.rowcount != 1:
        raise LedgerError(f"User {user_id} not found for credit")
    entry = LedgerEntry(user_id=user_id, amount=amount, type=entry_type, description=reason,
                        reference=reference or {})
    session.add(entry)
    return entry


def audit_log(session: Session, category: str, target_user_id: Optional[int], reference: Optional[str],
              data: Dict[str, Any]) -> AuditLog:
    log = AuditLog(category=category, target_user_id=target_user_id, reference=reference, data=data)
    session.add(log)
    return log


def ensure_deposit_address(session: Session, keyring: HDKeyring, user: User) -> str:
    """Give ``user`` its derived deposit address; the derivation index is the user id."""
    if user.deposit_address:
        return user.deposit_address
    if user.id is None:
        session.flush()
    user.derivation_index = user.id
    user.deposit_address = keyring.address_for(user.id)
    logger.info("Provisioned deposit address %s (index %d) for user %s",
                user.deposit_address, user.derivation_index, user.tg_id)
    return user.deposit_address


def provision_missing(session: Session, keyring: HDKeyring) -> int:
    users = session.execute(select(User).where(User.deposit_address.is_(None))).scalars().all()
    for user in users:
        ensure_deposit_address(session, keyring, user)
    return len(users)


def load_watch_targets(session: Session) -> Dict[str, int]:
    """Lower-cased deposit address -> derivation index for every provisioned user."""
    rows = session.execute(
        select(User.deposit_address, User.derivation_index).where(User.deposit_address.is_not(None))
    ).all()
    return {address.lower(): index for address, index in rows if index is not None}
