# ensoul/fragment_service.py
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ensoul.entities import (
    Claw,
    Fragment,
    Soul,
    CLAW_STATUS_CLAIMED,
    FRAG_STATUS_ACCEPTED,
    FRAG_STATUS_PENDING,
    FRAG_STATUS_REJECTED,
    utcnow,
)
from ensoul.errors import NotClaimed, NotFound, ValidationFailed
from ensoul.profile import Dimension
from ensoul.quota_guard import QuotaGuard
from ensoul.settings import Tuning
from ensoul.soul_service import validate_handle
from ensoul.validator import validate_batch

logger = logging.getLogger("ensoul_backend")

FRAGMENT_STATUSES = (FRAG_STATUS_PENDING, FRAG_STATUS_ACCEPTED, FRAG_STATUS_REJECTED)
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def fragment_to_dict(fragment: Fragment, handle: Optional[str] = None, claw_name: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": fragment.id,
        "soul_id": fragment.soul_id,
        "handle": handle,
        "claw_id": fragment.claw_id,
        "claw_name": claw_name,
        "batch_id": fragment.batch_id,
        "dimension": fragment.dimension,
        "content": fragment.content,
        "status": fragment.status,
        "confidence": fragment.confidence,
        "reject_reason": fragment.reject_reason,
        "condensation_id": fragment.condensation_id,
        "created_at": fragment.created_at.isoformat() if fragment.created_at else None,
        "reviewed_at": fragment.reviewed_at.isoformat() if fragment.reviewed_at else None,
    }


class FragmentService:
    """
    Batch intake. Validation and authorisation run before anything is
    written; the cooldown stamp and the pending rows commit together.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        tuning: Tuning | None = None,
        quota_guard: QuotaGuard | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.SessionFactory = session_factory
        self.tuning = tuning or Tuning()
        self.quota_guard = quota_guard or QuotaGuard(self.tuning, clock=clock)
        self.clock = clock

    def submit_batch(self, claw: Claw, handle: str, items: Any) -> Dict[str, Any]:
        if claw.status != CLAW_STATUS_CLAIMED:
            raise NotClaimed(
                "This Claw has not been claimed yet. Ask your owner to claim it before submitting fragments."
            )
        handle = validate_handle(handle)
        drafts = validate_batch(items, self.tuning)

        batch_id = str(uuid4())
        now = self.clock()
        session = self.SessionFactory()
        try:
            soul_id = session.execute(select(Soul.id).where(Soul.handle == handle)).scalar_one_or_none()
            if soul_id is None:
                raise NotFound(f"Soul @{handle} not found")

            self.quota_guard.claim_batch_slot(session, claw.id)

            fragments = [
                Fragment(
                    soul_id=soul_id,
                    claw_id=claw.id,
                    batch_id=batch_id,
                    dimension=d.dimension.value,
                    content=d.content,
                    status=FRAG_STATUS_PENDING,
                    confidence=0.0,
                    created_at=now,
                )
                for d in drafts
            ]
            session.add_all(fragments)
            session.execute(
                update(Claw)
                .where(Claw.id == claw.id)
                .values(total_submitted=Claw.total_submitted + len(fragments))
                .execution_options(synchronize_session=False)
            )
            session.commit()
            body = {
                "handle": handle,
                "batch_id": batch_id,
                "count": len(fragments),
                "fragments": [
                    {"id": f.id, "dimension": f.dimension, "status": FRAG_STATUS_PENDING} for f in fragments
                ],
            }
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(f"[fragment] Claw '{claw.name}' submitted batch {batch_id} ({len(drafts)} fragments) for @{handle}")
        return body

    def list_fragments(
        self,
        *,
        handle: Optional[str] = None,
        status: Optional[str] = None,
        dimension: Optional[str] = None,
        claw_id: Optional[str] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Dict[str, Any]:
        page = page if page and page >= 1 else 1
        limit = limit if limit and 1 <= limit <= MAX_PAGE_SIZE else DEFAULT_PAGE_SIZE

        if status and status not in FRAGMENT_STATUSES:
            raise ValidationFailed(f"unknown status '{status}'", code="invalid_status")
        if dimension and Dimension.parse(dimension) is None:
            raise ValidationFailed(
                f"unknown dimension '{dimension}'",
                code="unknown_dimension",
                valid_dimensions=Dimension.values(),
            )

        session = self.SessionFactory()
        try:
            filters = []
            if handle:
                soul_id = session.execute(
                    select(Soul.id).where(Soul.handle == validate_handle(handle))
                ).scalar_one_or_none()
                if soul_id is None:
                    return {"fragments": [], "total": 0, "page": page, "limit": limit}
                filters.append(Fragment.soul_id == soul_id)
            if status:
                filters.append(Fragment.status == status)
            if dimension:
                filters.append(Fragment.dimension == dimension)
            if claw_id:
                filters.append(Fragment.claw_id == claw_id)

            total = session.execute(select(func.count(Fragment.id)).where(*filters)).scalar_one()
            rows = session.execute(
                select(Fragment, Soul.handle, Claw.name)
                .join(Soul, Soul.id == Fragment.soul_id)
                .join(Claw, Claw.id == Fragment.claw_id)
                .where(*filters)
                .order_by(Fragment.created_at.desc(), Fragment.id)
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            return {
                "fragments": [fragment_to_dict(f, h, n) for f, h, n in rows],
                "total": total,
                "page": page,
                "limit": limit,
            }
        finally:
            session.close()

    def get_fragment(self, fragment_id: str) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            row = session.execute(
                select(Fragment, Soul.handle, Claw.name)
                .join(Soul, Soul.id == Fragment.soul_id)
                .join(Claw, Claw.id == Fragment.claw_id)
                .where(Fragment.id == fragment_id)
            ).one_or_none()
            if row is None:
                raise NotFound("Fragment not found")
            return fragment_to_dict(*row)
        finally:
            session.close()
