# ensoul/directory.py
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ensoul.entities import (
    Claw,
    Fragment,
    Soul,
    CLAW_STATUS_CLAIMED,
    FRAG_STATUS_ACCEPTED,
    STAGE_EMBRYO,
    STAGE_EVOLVING,
    STAGE_GROWING,
    STAGE_MATURE,
)
from ensoul.errors import NotFound, ValidationFailed
from ensoul.fragment_service import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from ensoul.profile import Dimension, DimensionProfile
from ensoul.settings import Tuning
from ensoul.soul_service import soul_to_public_dict, validate_handle

logger = logging.getLogger("ensoul_backend")

STAGES = (STAGE_EMBRYO, STAGE_GROWING, STAGE_MATURE, STAGE_EVOLVING)

SOUL_SORTS = {
    "newest": Soul.created_at.desc(),
    "most_fragments": Soul.total_frags.desc(),
    "hot": Soul.total_chats.desc(),
}

MAX_CONTRIBUTORS = 20
PROFILE_CONTRIBUTIONS = 20
HIGH_PRIORITY_SCORE = 15


def _page_and_limit(page: Optional[int], limit: Optional[int]) -> tuple[int, int]:
    page = page if page and page >= 1 else 1
    limit = limit if limit and 1 <= limit <= MAX_PAGE_SIZE else DEFAULT_PAGE_SIZE
    return page, limit


def _accept_rate(claw: Claw) -> str:
    rate = claw.total_accepted / claw.total_submitted * 100 if claw.total_submitted else 0.0
    return f"{rate:.1f}%"


class Directory:
    """
    Public read models: soul listings, contributor and Claw rankings,
    global counters and the task board of under-covered dimensions.
    Only minted souls (mint_tx_hash recorded) are listed.
    """

    def __init__(self, session_factory: Callable[[], Session], *, tuning: Tuning | None = None):
        self.SessionFactory = session_factory
        self.tuning = tuning or Tuning()

    # -----------------------
    # Souls
    # -----------------------

    def list_souls(
        self,
        *,
        stage: Optional[str] = None,
        sort: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Dict[str, Any]:
        page, limit = _page_and_limit(page, limit)
        filters = [Soul.mint_tx_hash.is_not(None), Soul.mint_tx_hash != ""]
        if stage and stage != "all":
            if stage not in STAGES:
                raise ValidationFailed(f"unknown stage '{stage}'", code="invalid_stage")
            filters.append(Soul.stage == stage)
        search = (search or "").strip().lstrip("@").lower()
        if search:
            filters.append(Soul.handle.contains(search, autoescape=True))
        order = SOUL_SORTS.get(sort or "newest", SOUL_SORTS["newest"])

        session = self.SessionFactory()
        try:
            total = session.execute(select(func.count(Soul.id)).where(*filters)).scalar_one()
            rows = session.execute(
                select(Soul)
                .where(*filters)
                .order_by(order, Soul.handle)
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars().all()
            return {
                "shells": [soul_to_public_dict(s) for s in rows],
                "total": total,
                "page": page,
                "limit": limit,
            }
        finally:
            session.close()

    def contributors(self, handle: str) -> Dict[str, Any]:
        handle = validate_handle(handle)
        session = self.SessionFactory()
        try:
            soul_id = session.execute(select(Soul.id).where(Soul.handle == handle)).scalar_one_or_none()
            if soul_id is None:
                raise NotFound(f"Soul @{handle} not found")
            accepted = func.count(Fragment.id).label("accepted_frags")
            rows = session.execute(
                select(Claw.id, Claw.name, accepted)
                .join(Fragment, Fragment.claw_id == Claw.id)
                .where(Fragment.soul_id == soul_id, Fragment.status == FRAG_STATUS_ACCEPTED)
                .group_by(Claw.id, Claw.name)
                .order_by(accepted.desc(), Claw.name)
                .limit(MAX_CONTRIBUTORS)
            ).all()
            return {
                "contributors": [
                    {"claw_id": claw_id, "name": name, "accepted_frags": count}
                    for claw_id, name, count in rows
                ]
            }
        finally:
            session.close()

    # -----------------------
    # Claws
    # -----------------------

    def leaderboard(self, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
        page, limit = _page_and_limit(page, limit)
        offset = (page - 1) * limit
        session = self.SessionFactory()
        try:
            claimed = Claw.status == CLAW_STATUS_CLAIMED
            total = session.execute(select(func.count(Claw.id)).where(claimed)).scalar_one()
            rows = session.execute(
                select(Claw)
                .where(claimed)
                .order_by(Claw.total_accepted.desc(), Claw.total_submitted.desc(), Claw.created_at)
                .offset(offset)
                .limit(limit)
            ).scalars().all()
            return {
                "leaderboard": [
                    {
                        "rank": offset + i + 1,
                        "id": c.id,
                        "name": c.name,
                        "description": c.description,
                        "total_submitted": c.total_submitted,
                        "total_accepted": c.total_accepted,
                        "accept_rate": _accept_rate(c),
                        "earnings": float(c.earnings or 0.0),
                        "created_at": c.created_at.isoformat(),
                    }
                    for i, c in enumerate(rows)
                ],
                "total": total,
                "page": page,
                "limit": limit,
            }
        finally:
            session.close()

    def claw_public_profile(self, claw_id: str) -> Dict[str, Any]:
        """Public view of a Claw; keys, claim code and wallet stay private."""
        session = self.SessionFactory()
        try:
            claw = session.get(Claw, claw_id)
            if claw is None:
                raise NotFound("Claw not found")
            rows = session.execute(
                select(Fragment, Soul.handle)
                .join(Soul, Soul.id == Fragment.soul_id)
                .where(Fragment.claw_id == claw.id)
                .order_by(Fragment.created_at.desc(), Fragment.id)
                .limit(PROFILE_CONTRIBUTIONS)
            ).all()
            return {
                "claw": {
                    "id": claw.id,
                    "name": claw.name,
                    "description": claw.description,
                    "status": claw.status,
                    "total_submitted": claw.total_submitted,
                    "total_accepted": claw.total_accepted,
                    "accept_rate": _accept_rate(claw),
                    "earnings": float(claw.earnings or 0.0),
                    "created_at": claw.created_at.isoformat(),
                },
                "contributions": [
                    {
                        "id": f.id,
                        "handle": handle,
                        "dimension": f.dimension,
                        "status": f.status,
                        "created_at": f.created_at.isoformat(),
                    }
                    for f, handle in rows
                ],
            }
        finally:
            session.close()

    # -----------------------
    # Counters
    # -----------------------

    def global_stats(self) -> Dict[str, int]:
        session = self.SessionFactory()
        try:
            return {
                "souls": session.execute(select(func.count(Soul.id))).scalar_one(),
                "fragments": session.execute(select(func.count(Fragment.id))).scalar_one(),
                "claws": session.execute(
                    select(func.count(Claw.id)).where(Claw.status == CLAW_STATUS_CLAIMED)
                ).scalar_one(),
                "chats": session.execute(select(func.coalesce(func.sum(Soul.total_chats), 0))).scalar_one(),
            }
        finally:
            session.close()

    def task_board(self) -> Dict[str, Any]:
        """
        One task per (minted soul, dimension) whose score is below
        task_score_threshold. Souls with more accepted fragments come first.
        """
        threshold = self.tuning.task_score_threshold
        session = self.SessionFactory()
        try:
            souls = session.execute(
                select(Soul.handle, Soul.dimensions)
                .where(Soul.mint_tx_hash.is_not(None), Soul.mint_tx_hash != "")
                .order_by(Soul.accepted_frags.desc(), Soul.handle)
            ).all()
        finally:
            session.close()

        tasks: List[Dict[str, Any]] = []
        for handle, raw_dimensions in souls:
            profile = DimensionProfile.from_json(raw_dimensions)
            for dim in Dimension:
                score = profile.get(dim).score
                if score >= threshold:
                    continue
                tasks.append({
                    "handle": handle,
                    "dimension": dim.value,
                    "score": score,
                    "priority": "high" if score < HIGH_PRIORITY_SCORE else "medium",
                    "message": f"@{handle} needs more fragments for {dim.value} (current score: {score})",
                })
        logger.debug(f"[tasks] {len(tasks)} open task(s) across {len(souls)} soul(s)")
        return {"tasks": tasks, "total": len(tasks)}
