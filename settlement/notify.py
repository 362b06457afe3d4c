import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import sessionmaker
from telegram import Bot

from .config import Config
from .ledger import audit_log

logger = logging.getLogger(__name__)

DEPOSIT_SETTLED = "deposit_settled"
DEPOSIT_FAILED = "deposit_failed"
DEPOSIT_UNRESOLVED = "deposit_unresolved"
SWEEP_RESULT = "sweep_result"


class Notifier:
    """Fans settlement events out to the audit table, the log and the admin Telegram chat."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, bot: Optional[Bot] = None,
                 chat_id: Optional[str] = None):
        self.SessionLocal = session_factory
        self.chat_id = chat_id if chat_id is not None else Config.ADMIN_CHAT_ID
        if bot is None and Config.TELEGRAM_BOT_TOKEN and self.chat_id:
            bot = Bot(Config.TELEGRAM_BOT_TOKEN)
        self.bot = bot

    async def emit(self, category: str, reference: Optional[str], data: Dict[str, Any], text: str,
                   audit: bool = True, user_id: Optional[int] = None):
        logger.info("[%s] %s %s", category, reference or "", data)
        if audit and self.SessionLocal is not None:
            try:
                with self.SessionLocal() as session:
                    audit_log(session, category, user_id, reference, data)
                    session.commit()
            except Exception as e:
                logger.error(f"Failed to write audit entry for {category} {reference}: {str(e)}")
        if self.bot is not None and self.chat_id:
            try:
                await self.bot.send_message(chat_id=self.chat_id, text=text, parse_mode="Markdown")
            except Exception as e:
                logger.error(f"Failed to notify admin {self.chat_id} about {category}: {str(e)}")

    async def deposit_settled(self, outcome: Dict[str, Any]):
        # The audit row for a settlement is written together with the credit.
        await self.emit(
            DEPOSIT_SETTLED, outcome["key"], outcome,
            f"✅ *Deposit settled*\n\n"
            f"*Chain:* {outcome['chain']}\n"
            f"*Address:* `{outcome['address']}`\n"
            f"*Credited:* {outcome['credited']}\n"
            f"*Swap:* `{outcome['swap_tx']}`\n"
            f"*Split:* `{outcome['split_txs'].get('treasury')}` / `{outcome['split_txs'].get('fee')}`",
            audit=False,
        )

    async def deposit_unresolved(self, outcome: Dict[str, Any]):
        await self.emit(
            DEPOSIT_UNRESOLVED, outcome["key"], outcome,
            f"⚠️ *Deposit unresolved*\n\n"
            f"*Address:* `{outcome['address']}`\n"
            f"No user is registered for this deposit address. Funds were swapped and split but not credited.",
        )

    async def deposit_failed(self, key: str, address: str, reason: str):
        await self.emit(
            DEPOSIT_FAILED, key, {"address": address, "reason": reason},
            f"🚨 *Deposit failed*\n\n*Job:* `{key}`\n*Address:* `{address}`\n*Reason:* {reason}",
        )

    async def sweep_result(self, chain_key: str, outcomes: Iterable[Any]):
        rows = [o.to_dict() for o in outcomes]
        summary: Dict[str, int] = {}
        for row in rows:
            summary[row["status"]] = summary.get(row["status"], 0) + 1
        await self.emit(
            SWEEP_RESULT, chain_key, {"chain": chain_key, "outcomes": rows},
            f"🧹 *Sweep on {chain_key}*\n\n" + "\n".join(f"*{k}:* {v}" for k, v in sorted(summary.items())),
        )
