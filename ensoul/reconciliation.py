# ensoul/reconciliation.py
import asyncio
import logging
from typing import Callable, Optional, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from ensoul.entities import Soul
from ensoul.errors import ChainUnavailable
from ensoul.settings import Tuning

logger = logging.getLogger("ensoul_backend")


def agent_id_missing():
    return or_(Soul.agent_id.is_(None), Soul.agent_id == 0)


class ReceiptSource(Protocol):
    def registered_agent_id(self, tx_hash: str) -> Optional[int]: ...


def set_agent_id_once(session: Session, soul_id: str, agent_id: int) -> bool:
    """
    First writer wins: the identifier is written only while it is still
    missing (NULL, or 0 as reported by clients that could not read the event).
    Returns True when this call wrote it. Caller commits.
    """
    result = session.execute(
        update(Soul)
        .where(Soul.id == soul_id)
        .where(agent_id_missing())
        .values(agent_id=agent_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


class ChainReconciler:
    """
    Backfills Soul.agent_id from the Registered event of the mint transaction.

    Safety net for clients that never reported the identifier (closed the
    browser, failed to parse the receipt). One pass never raises: chain
    failures are logged and the soul is retried on the next pass.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        chain_client: ReceiptSource | None,
        *,
        tuning: Tuning | None = None,
    ):
        self.SessionFactory = session_factory
        self.chain_client = chain_client
        self.tuning = tuning or Tuning()

    def pending_souls(self) -> list[tuple[str, str, str]]:
        session = self.SessionFactory()
        try:
            rows = session.execute(
                select(Soul.id, Soul.handle, Soul.mint_tx_hash)
                .where(agent_id_missing())
                .where(Soul.mint_tx_hash.is_not(None))
                .where(Soul.mint_tx_hash != "")
                .order_by(Soul.created_at.asc())
            ).all()
            return [(r[0], r[1], r[2]) for r in rows]
        finally:
            session.close()

    def run_once(self) -> int:
        """Returns how many souls got their identifier in this pass."""
        if self.chain_client is None:
            return 0

        try:
            souls = self.pending_souls()
        except Exception:
            logger.exception("[backfill] Error querying souls")
            return 0
        if not souls:
            return 0

        logger.debug(f"[backfill] Found {len(souls)} soul(s) needing agent_id backfill")
        filled = 0
        for soul_id, handle, tx_hash in souls:
            try:
                agent_id = self.chain_client.registered_agent_id(tx_hash)
            except ChainUnavailable as e:
                logger.warning(f"[backfill] @{handle}: failed to get receipt for tx {tx_hash}: {e}")
                continue
            except Exception:
                logger.exception(f"[backfill] @{handle}: unexpected error reading tx {tx_hash}")
                continue

            if not agent_id:
                logger.warning(f"[backfill] @{handle}: Registered event not found in tx {tx_hash}")
                continue

            session = self.SessionFactory()
            try:
                if set_agent_id_once(session, soul_id, agent_id):
                    session.commit()
                    filled += 1
                    logger.info(f"[backfill] @{handle}: agent_id backfilled to {agent_id} (tx: {tx_hash})")
                else:
                    session.rollback()
                    logger.info(f"[backfill] @{handle}: agent_id was set concurrently, skipped")
            except Exception:
                session.rollback()
                logger.exception(f"[backfill] @{handle}: failed to update agent_id")
            finally:
                session.close()
        return filled

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        interval = self.tuning.reconcile_interval_seconds
        logger.info(f"[backfill] Agent ID backfill started (interval: {interval}s)")
        while not stop_event.is_set():
            await asyncio.to_thread(self.run_once)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("[backfill] Agent ID backfill stopped")
