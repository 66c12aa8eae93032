# ensoul/soul_service.py
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ensoul.base_utils import BaseUtils
from ensoul.entities import Condensation, Soul, STAGE_EMBRYO, utcnow
from ensoul.errors import Conflict, Forbidden, NotFound, ValidationFailed
from ensoul.identity import sanitize_identifier, verify_wallet_signature
from ensoul.profile import DimensionProfile
from ensoul.prompts import INITIAL_SOUL_PROMPT
from ensoul.quota_guard import QuotaGuard
from ensoul.reconciliation import set_agent_id_once
from ensoul.settings import Tuning
from ensoul.soul_state import SoulStateMachine

logger = logging.getLogger("ensoul_backend")

MINT_PREFIX = "ensoul:mint:"
_HANDLE_RE = re.compile(r"^[a-z0-9_]{1,15}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def validate_handle(raw: str) -> str:
    handle = sanitize_identifier(raw)
    if not handle:
        raise ValidationFailed("handle is required", code="invalid_handle")
    if not _HANDLE_RE.match(handle):
        raise ValidationFailed(
            "invalid handle: only letters, numbers, and underscores are allowed (max 15 characters)",
            code="invalid_handle",
        )
    return handle


def soul_to_public_dict(soul: Soul) -> Dict[str, Any]:
    """Public view of a soul. The system prompt is never exposed."""
    return {
        "id": soul.id,
        "handle": soul.handle,
        "display_name": soul.display_name,
        "avatar_url": soul.avatar_url,
        "owner_addr": soul.owner_addr,
        "stage": soul.stage,
        "profile_version": soul.profile_version,
        "seed_summary": soul.seed_summary,
        "dimensions": DimensionProfile.from_json(soul.dimensions).to_json(),
        "total_frags": soul.total_frags,
        "accepted_frags": soul.accepted_frags,
        "total_claws": soul.total_claws,
        "total_chats": soul.total_chats,
        "agent_id": soul.agent_id,
        "mint_tx_hash": soul.mint_tx_hash,
        "created_at": soul.created_at.isoformat() if soul.created_at else None,
    }


class SoulService(BaseUtils):
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        tuning: Tuning | None = None,
        quota_guard: QuotaGuard | None = None,
        state_machine: SoulStateMachine | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.SessionFactory = session_factory
        self.tuning = tuning or Tuning()
        self.quota_guard = quota_guard or QuotaGuard(self.tuning, clock=clock)
        self.state_machine = state_machine or SoulStateMachine(self.tuning)
        self.clock = clock

    def _get_by_handle(self, session: Session, handle: str) -> Soul:
        soul = session.execute(select(Soul).where(Soul.handle == handle)).scalar_one_or_none()
        if soul is None:
            raise NotFound(f"Soul @{handle} not found")
        return soul

    # -----------------------
    # Mint
    # -----------------------

    def mint_soul(
        self,
        wallet_addr: str,
        handle: str,
        signature: str,
        preview: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create the soul off-ledger. The on-chain mint is done by the client
        wallet and reported back through confirm_mint.
        """
        handle = validate_handle(handle)
        verify_wallet_signature(MINT_PREFIX + handle, signature, wallet_addr)
        preview = preview or {}

        seed_summary = str(preview.get("seed_summary") or "").strip()
        dimensions = DimensionProfile.from_json(preview.get("dimensions"))
        system_prompt = self.unsafe_string_format(
            INITIAL_SOUL_PROMPT,
            HANDLE=handle,
            SEED_SUMMARY=seed_summary or "(no background yet)",
        )

        session = self.SessionFactory()
        try:
            taken = session.execute(select(Soul.id).where(Soul.handle == handle)).scalar_one_or_none()
            if taken is not None:
                raise Conflict(f"A soul for @{handle} already exists", code="handle_taken")

            minted = self.quota_guard.claim_mint_slot(session, wallet_addr)

            soul = Soul(
                handle=handle,
                owner_addr=wallet_addr,
                display_name=preview.get("display_name"),
                avatar_url=preview.get("avatar_url"),
                stage=STAGE_EMBRYO,
                profile_version=1,
                seed_summary=seed_summary,
                system_prompt=system_prompt,
                dimensions=dimensions.to_json(),
            )
            session.add(soul)
            session.commit()
            body = soul_to_public_dict(soul)
        except IntegrityError:
            session.rollback()
            raise Conflict(f"A soul for @{handle} already exists", code="handle_taken")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(f"[mint] Soul @{handle} created for {wallet_addr} ({minted}/{self.tuning.max_souls_per_wallet})")
        return body

    def confirm_mint(
        self,
        wallet_addr: str,
        handle: str,
        tx_hash: str,
        agent_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Record the client's mint transaction. Owner only, idempotent per
        handle; neither the tx hash nor the agent id is ever overwritten.
        """
        handle = validate_handle(handle)
        tx_hash = (tx_hash or "").strip()
        if not _TX_HASH_RE.match(tx_hash):
            raise ValidationFailed("tx_hash must be a 0x-prefixed 32-byte hex string", code="invalid_tx_hash")
        if agent_id is not None and agent_id < 0:
            raise ValidationFailed("agent_id must be non-negative", code="invalid_agent_id")
        if agent_id == 0:
            # clients send 0 when the Registered event could not be read
            logger.info(f"[mint] @{handle}: agent_id 0 reported, leaving it for backfill")
            agent_id = None

        session = self.SessionFactory()
        try:
            soul_id = session.execute(select(Soul.id).where(Soul.handle == handle)).scalar_one_or_none()
            if soul_id is None:
                raise NotFound(f"Soul @{handle} not found")
            soul = self.state_machine.lock_soul(session, soul_id)
            if soul.owner_addr.lower() != wallet_addr.lower():
                raise Forbidden("Only the original minter can confirm", code="not_owner")

            if not soul.mint_tx_hash:
                soul.mint_tx_hash = tx_hash
            elif soul.mint_tx_hash.lower() != tx_hash.lower():
                logger.warning(
                    f"[mint] @{handle}: confirm with tx {tx_hash} ignored, already recorded {soul.mint_tx_hash}"
                )
            session.flush()

            if agent_id is not None:
                if not set_agent_id_once(session, soul.id, agent_id):
                    current = session.execute(select(Soul.agent_id).where(Soul.id == soul.id)).scalar_one()
                    if current != agent_id:
                        logger.warning(
                            f"[mint] @{handle}: agent_id {agent_id} ignored, already set to {current}"
                        )

            session.commit()
            current = session.execute(select(Soul.agent_id, Soul.mint_tx_hash).where(Soul.id == soul.id)).one()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(f"[mint] Soul @{handle} confirmed: agent_id={current[0]}, tx={current[1]}")
        return {"status": "confirmed", "handle": handle, "agent_id": current[0], "mint_tx_hash": current[1]}

    # -----------------------
    # Reads
    # -----------------------

    def get_soul(self, handle: str) -> Dict[str, Any]:
        handle = validate_handle(handle)
        session = self.SessionFactory()
        try:
            return soul_to_public_dict(self._get_by_handle(session, handle))
        finally:
            session.close()

    def get_dimensions(self, handle: str) -> Dict[str, Any]:
        handle = validate_handle(handle)
        session = self.SessionFactory()
        try:
            soul = self._get_by_handle(session, handle)
            return {
                "handle": soul.handle,
                "profile_version": soul.profile_version,
                "dimensions": DimensionProfile.from_json(soul.dimensions).to_json(),
            }
        finally:
            session.close()

    def get_history(self, handle: str) -> Dict[str, Any]:
        handle = validate_handle(handle)
        session = self.SessionFactory()
        try:
            soul = self._get_by_handle(session, handle)
            rows = session.execute(
                select(Condensation)
                .where(Condensation.soul_id == soul.id)
                .order_by(Condensation.version_to.desc())
            ).scalars().all()
            return {
                "handle": soul.handle,
                "history": [
                    {
                        "id": c.id,
                        "version_from": c.version_from,
                        "version_to": c.version_to,
                        "frags_merged": c.frags_merged,
                        "summary_diff": c.summary_diff,
                        "tx_hash": c.tx_hash,
                        "created_at": c.created_at.isoformat(),
                    }
                    for c in rows
                ],
            }
        finally:
            session.close()

    def soul_id_for(self, handle: str) -> str:
        handle = validate_handle(handle)
        session = self.SessionFactory()
        try:
            return self._get_by_handle(session, handle).id
        finally:
            session.close()
