# ensoul/quota_guard.py
import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from ensoul.entities import Claw, WalletQuota, utcnow
from ensoul.errors import Conflict, CooldownActive
from ensoul.settings import Tuning

logger = logging.getLogger("ensoul_backend")


class QuotaGuard:
    """
    Per-Claw batch cooldown and per-wallet mint ceiling.

    Both checks are conditional UPDATEs run on the caller's session, so they
    commit or roll back together with the action they guard. Two concurrent
    writers for the same Claw/wallet cannot both pass.
    """

    def __init__(self, tuning: Tuning | None = None, clock: Callable[[], datetime] = utcnow):
        self.tuning = tuning or Tuning()
        self.clock = clock

    def claim_batch_slot(self, session: Session, claw_id: str) -> datetime:
        now = self.clock()
        cooldown = timedelta(seconds=self.tuning.batch_cooldown_seconds)
        result = session.execute(
            update(Claw)
            .where(Claw.id == claw_id)
            .where(or_(Claw.last_batch_at.is_(None), Claw.last_batch_at <= now - cooldown))
            .values(last_batch_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return now

        last = session.execute(select(Claw.last_batch_at).where(Claw.id == claw_id)).scalar_one_or_none()
        retry_after = self.tuning.batch_cooldown_seconds
        if last is not None:
            retry_after = max(1, int((last + cooldown - now).total_seconds()))
        logger.info(f"[quota] Claw {claw_id} hit the batch cooldown (retry in {retry_after}s)")
        raise CooldownActive(
            f"Quality over quantity: one batch every {self.tuning.batch_cooldown_seconds // 60} minutes. "
            f"Try again in {retry_after} seconds.",
            retry_after=retry_after,
        )

    def claim_mint_slot(self, session: Session, wallet_addr: str) -> int:
        """
        Reserve one of the wallet's soul slots. Returns the new count.
        """
        key = wallet_addr.lower()
        ceiling = self.tuning.max_souls_per_wallet

        self._ensure_quota_row(session, key)

        result = session.execute(
            update(WalletQuota)
            .where(WalletQuota.wallet_addr == key)
            .where(WalletQuota.souls_minted < ceiling)
            .values(souls_minted=WalletQuota.souls_minted + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"[quota] Wallet {key} reached the mint ceiling ({ceiling})")
            raise Conflict(f"Each wallet can mint at most {ceiling} souls", code="mint_limit")

        return session.execute(
            select(WalletQuota.souls_minted).where(WalletQuota.wallet_addr == key)
        ).scalar_one()

    def _ensure_quota_row(self, session: Session, key: str) -> None:
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            if session.get(WalletQuota, key) is None:
                session.add(WalletQuota(wallet_addr=key, souls_minted=0))
                session.flush()
            return

        session.execute(
            insert(WalletQuota)
            .values(wallet_addr=key, souls_minted=0)
            .on_conflict_do_nothing(index_elements=["wallet_addr"])
        )
