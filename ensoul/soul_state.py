# ensoul/soul_state.py
import logging

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ensoul.entities import (
    Claw,
    Condensation,
    Fragment,
    Soul,
    FRAG_STATUS_ACCEPTED,
    STAGE_EMBRYO,
    STAGE_EVOLVING,
    STAGE_GROWING,
    STAGE_MATURE,
)
from ensoul.settings import Tuning

logger = logging.getLogger("ensoul_backend")

STAGE_ORDER = [STAGE_EMBRYO, STAGE_GROWING, STAGE_MATURE, STAGE_EVOLVING]
_STAGE_RANK = {s: i for i, s in enumerate(STAGE_ORDER)}


def stage_rank(stage: str) -> int:
    return _STAGE_RANK.get(stage, 0)


def compute_stage(accepted_frags: int, condensation_count: int, tuning: Tuning | None = None) -> str:
    """Pure function of the two counters."""
    tuning = tuning or Tuning()
    if condensation_count >= tuning.evolving_condensations:
        return STAGE_EVOLVING
    if accepted_frags >= tuning.mature_threshold:
        return STAGE_MATURE
    if accepted_frags >= tuning.growing_threshold:
        return STAGE_GROWING
    return STAGE_EMBRYO


def advance_stage(current: str, computed: str) -> str:
    """Stages only move forward."""
    return computed if stage_rank(computed) > stage_rank(current) else current


class SoulStateMachine:
    """
    Owns Soul.stage and the aggregate counters.

    Callers hold the soul row lock (lock_soul) inside the transaction that
    applied the verdict or wrote the condensation, so counters and stage are
    read and written under one serialisation point per soul.
    """

    def __init__(self, tuning: Tuning | None = None):
        self.tuning = tuning or Tuning()

    def lock_soul(self, session: Session, soul_id: str) -> Soul:
        return session.execute(
            select(Soul)
            .where(Soul.id == soul_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

    def record_outcome(self, session: Session, soul: Soul, fragment: Fragment) -> None:
        """
        Apply one terminal curation outcome to the counters, then recompute the stage.
        """
        soul.total_frags = (soul.total_frags or 0) + 1

        if fragment.status == FRAG_STATUS_ACCEPTED:
            soul.accepted_frags = (soul.accepted_frags or 0) + 1
            session.flush()

            soul.total_claws = session.execute(
                select(func.count(func.distinct(Fragment.claw_id)))
                .where(Fragment.soul_id == soul.id)
                .where(Fragment.status == FRAG_STATUS_ACCEPTED)
            ).scalar_one()

            reward = float(self.tuning.reward_per_accept) * float(fragment.confidence or 0.0)
            session.execute(
                update(Claw)
                .where(Claw.id == fragment.claw_id)
                .values(
                    total_accepted=Claw.total_accepted + 1,
                    earnings=Claw.earnings + reward,
                )
                .execution_options(synchronize_session=False)
            )

        self.refresh_stage(session, soul)

    def condensation_count(self, session: Session, soul_id: str) -> int:
        return session.execute(
            select(func.count(Condensation.id)).where(Condensation.soul_id == soul_id)
        ).scalar_one()

    def refresh_stage(self, session: Session, soul: Soul) -> str:
        session.flush()
        computed = compute_stage(
            soul.accepted_frags or 0,
            self.condensation_count(session, soul.id),
            self.tuning,
        )
        new_stage = advance_stage(soul.stage, computed)
        if new_stage != soul.stage:
            logger.info(f"[stage] @{soul.handle}: {soul.stage} -> {new_stage}")
            soul.stage = new_stage
        return soul.stage
