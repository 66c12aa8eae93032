# ensoul/curation.py
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from langchain_core.messages import HumanMessage, SystemMessage
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from ensoul.base_utils import BaseUtils
from ensoul.entities import (
    Fragment,
    Soul,
    FRAG_STATUS_ACCEPTED,
    FRAG_STATUS_PENDING,
    FRAG_STATUS_REJECTED,
    utcnow,
)
from ensoul.errors import JudgeUnavailable
from ensoul.llm_client import ChatLlmClient, MaxRetryErrorsException
from ensoul.prompts import CURATOR_PROMPT, CURATOR_SYSTEM_PROMPT
from ensoul.settings import Tuning
from ensoul.soul_state import SoulStateMachine

logger = logging.getLogger("ensoul_backend")

VERDICT_ACCEPT = "accept"
VERDICT_REJECT = "reject"


@dataclass(frozen=True)
class SoulContext:
    handle: str
    stage: str
    seed_summary: str
    existing_fragments: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SiblingFragment:
    dimension: str
    content: str


@dataclass(frozen=True)
class JudgeRequest:
    fragment_id: str
    soul: SoulContext
    dimension: str
    content: str
    siblings: List[SiblingFragment] = field(default_factory=list)


@dataclass(frozen=True)
class Verdict:
    verdict: str
    confidence: float
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.verdict == VERDICT_ACCEPT

    def normalized(self) -> "Verdict":
        verdict = VERDICT_ACCEPT if self.verdict == VERDICT_ACCEPT else VERDICT_REJECT
        try:
            confidence = float(self.confidence)
        except (TypeError, ValueError):
            confidence = 0.0
        confidence = max(0.0, min(1.0, confidence))
        reason = (self.reason or "").strip() or None
        if verdict == VERDICT_REJECT and not reason:
            reason = "Rejected by curator"
        if verdict == VERDICT_ACCEPT:
            reason = None
        return Verdict(verdict=verdict, confidence=confidence, reason=reason)


class Judge(Protocol):
    def __call__(self, request: JudgeRequest) -> Verdict: ...


class AutoAcceptJudge:
    """Used when no LLM is configured."""

    def __init__(self, confidence: float = 0.75):
        self.confidence = confidence

    def __call__(self, request: JudgeRequest) -> Verdict:
        logger.info("[curator] LLM not configured, auto-accepting fragment")
        return Verdict(verdict=VERDICT_ACCEPT, confidence=self.confidence)


class LlmCuratorJudge(BaseUtils):
    def __init__(self, chat_llm: ChatLlmClient, retries: int = 2):
        self.chat_llm = chat_llm
        self.retries = retries

    def build_prompt(self, request: JudgeRequest) -> str:
        if request.soul.existing_fragments:
            existing = "\n".join(f"[{i + 1}] {c}" for i, c in enumerate(request.soul.existing_fragments))
        else:
            existing = "(No existing fragments for this dimension yet)"

        if request.siblings:
            siblings = "\n".join(f"[{s.dimension}] {s.content}" for s in request.siblings)
        else:
            siblings = "(none)"

        return self.unsafe_string_format(
            CURATOR_PROMPT,
            HANDLE=request.soul.handle,
            STAGE=request.soul.stage,
            SEED_SUMMARY=request.soul.seed_summary or "(none)",
            DIMENSION=request.dimension,
            EXISTING_FRAGMENTS=existing,
            SIBLING_FRAGMENTS=siblings,
            CONTENT=request.content,
        )

    def __call__(self, request: JudgeRequest) -> Verdict:
        messages = [
            SystemMessage(content=CURATOR_SYSTEM_PROMPT),
            HumanMessage(content=self.build_prompt(request)),
        ]
        try:
            raw = self.chat_llm.invoke(messages, retries=self.retries)
        except MaxRetryErrorsException as e:
            raise JudgeUnavailable(f"curator LLM unavailable: {e.__cause__ or e}") from e

        data = self.load_fault_tolerant_json(raw)
        if not data or "accept" not in data:
            raise JudgeUnavailable(f"curator LLM returned an unusable answer: {raw[:200]!r}")

        accept = data.get("accept")
        if isinstance(accept, str):
            accept = accept.strip().lower() in ("true", "yes", "accept")
        return Verdict(
            verdict=VERDICT_ACCEPT if accept else VERDICT_REJECT,
            confidence=data.get("confidence", 0.0),
            reason=data.get("reason"),
        )


class CurationPipeline:
    """
    Reviews pending fragments one by one.

    Each fragment goes through three short transactions: lease it, (judge it
    outside any transaction), apply the verdict. The verdict write is a
    conditional UPDATE on status='pending' under the soul row lock, so a
    fragment reaches a terminal status exactly once and the soul counters
    move only on that terminal outcome.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        judge: Judge,
        *,
        tuning: Tuning | None = None,
        state_machine: SoulStateMachine | None = None,
        on_accepted: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.SessionFactory = session_factory
        self.judge = judge
        self.tuning = tuning or Tuning()
        self.state_machine = state_machine or SoulStateMachine(self.tuning)
        self.on_accepted = on_accepted
        self.clock = clock

    # -----------------------
    # Entry points
    # -----------------------

    def review_batch(self, batch_id: str) -> dict[str, Optional[str]]:
        session = self.SessionFactory()
        try:
            ids = session.execute(
                select(Fragment.id).where(Fragment.batch_id == batch_id).order_by(Fragment.created_at.asc())
            ).scalars().all()
        finally:
            session.close()
        return self._review_many(ids)

    def review_pending(self, limit: int = 20) -> dict[str, Optional[str]]:
        """Review fragments whose lease/backoff has expired. Used by the worker loop."""
        now = self.clock()
        session = self.SessionFactory()
        try:
            ids = session.execute(
                select(Fragment.id)
                .where(Fragment.status == FRAG_STATUS_PENDING)
                .where(Fragment.review_attempts < self.tuning.max_review_attempts)
                .where(or_(Fragment.next_review_at.is_(None), Fragment.next_review_at <= now))
                .order_by(Fragment.created_at.asc())
                .limit(limit)
            ).scalars().all()
        finally:
            session.close()
        return self._review_many(ids)

    def _review_many(self, fragment_ids) -> dict[str, Optional[str]]:
        outcomes: dict[str, Optional[str]] = {}
        for fid in fragment_ids:
            # siblings never block each other
            try:
                outcomes[fid] = self.review_fragment(fid)
            except Exception:
                logger.exception(f"[curator] Unexpected failure reviewing fragment {fid}")
                outcomes[fid] = None
        return outcomes

    def review_fragment(self, fragment_id: str) -> Optional[str]:
        """
        Returns the terminal status applied by this call, or None when the
        fragment stays pending (leased elsewhere, judge failure, already final).
        """
        request = self._lease_and_build_request(fragment_id)
        if request is None:
            return None

        try:
            verdict = self.judge(request)
        except Exception as e:
            self._record_judge_failure(fragment_id, e)
            return None

        status, soul_id = self._apply_verdict(fragment_id, verdict.normalized())
        if status == FRAG_STATUS_ACCEPTED and self.on_accepted is not None:
            try:
                self.on_accepted(soul_id)
            except Exception:
                logger.exception(f"[curator] Post-acceptance hook failed for soul {soul_id}")
        return status

    # -----------------------
    # Steps
    # -----------------------

    def _lease_and_build_request(self, fragment_id: str) -> Optional[JudgeRequest]:
        now = self.clock()
        session = self.SessionFactory()
        try:
            leased = session.execute(
                update(Fragment)
                .where(Fragment.id == fragment_id)
                .where(Fragment.status == FRAG_STATUS_PENDING)
                .where(Fragment.review_attempts < self.tuning.max_review_attempts)
                .where(or_(Fragment.next_review_at.is_(None), Fragment.next_review_at <= now))
                .values(next_review_at=now + timedelta(seconds=self.tuning.review_lease_seconds))
                .execution_options(synchronize_session=False)
            )
            if leased.rowcount != 1:
                session.rollback()
                return None

            fragment = session.get(Fragment, fragment_id)
            soul = session.get(Soul, fragment.soul_id)

            existing = session.execute(
                select(Fragment.content)
                .where(Fragment.soul_id == soul.id)
                .where(Fragment.dimension == fragment.dimension)
                .where(Fragment.status == FRAG_STATUS_ACCEPTED)
                .where(Fragment.id != fragment.id)
                .order_by(Fragment.created_at.desc())
                .limit(self.tuning.existing_fragments_context)
            ).scalars().all()

            siblings = session.execute(
                select(Fragment.dimension, Fragment.content)
                .where(Fragment.batch_id == fragment.batch_id)
                .where(Fragment.id != fragment.id)
                .order_by(Fragment.created_at.asc())
            ).all()

            request = JudgeRequest(
                fragment_id=fragment.id,
                soul=SoulContext(
                    handle=soul.handle,
                    stage=soul.stage,
                    seed_summary=soul.seed_summary or "",
                    existing_fragments=list(existing),
                ),
                dimension=fragment.dimension,
                content=fragment.content,
                siblings=[SiblingFragment(dimension=d, content=c) for d, c in siblings],
            )
            session.commit()
            return request
        finally:
            session.close()

    def _record_judge_failure(self, fragment_id: str, error: Exception) -> None:
        now = self.clock()
        session = self.SessionFactory()
        try:
            fragment = session.get(Fragment, fragment_id)
            if fragment is None or fragment.status != FRAG_STATUS_PENDING:
                return
            attempts = (fragment.review_attempts or 0) + 1
            delay = self.tuning.review_backoff_seconds * (2 ** (attempts - 1))
            session.execute(
                update(Fragment)
                .where(Fragment.id == fragment_id)
                .where(Fragment.status == FRAG_STATUS_PENDING)
                .values(
                    review_attempts=Fragment.review_attempts + 1,
                    last_review_error=str(error)[:1000],
                    next_review_at=now + timedelta(seconds=delay),
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
        finally:
            session.close()

        if attempts >= self.tuning.max_review_attempts:
            logger.warning(
                f"[curator] Fragment {fragment_id} is stale pending after {attempts} failed reviews: {error}"
            )
        else:
            logger.info(f"[curator] Review of fragment {fragment_id} failed (attempt {attempts}), retry in {delay}s: {error}")

    def _apply_verdict(self, fragment_id: str, verdict: Verdict) -> tuple[Optional[str], Optional[str]]:
        status = FRAG_STATUS_ACCEPTED if verdict.accepted else FRAG_STATUS_REJECTED
        session = self.SessionFactory()
        try:
            soul_id = session.execute(
                select(Fragment.soul_id).where(Fragment.id == fragment_id)
            ).scalar_one_or_none()
            if soul_id is None:
                return None, None

            soul = self.state_machine.lock_soul(session, soul_id)

            result = session.execute(
                update(Fragment)
                .where(Fragment.id == fragment_id)
                .where(Fragment.status == FRAG_STATUS_PENDING)
                .values(
                    status=status,
                    confidence=verdict.confidence,
                    reject_reason=verdict.reason,
                    reviewed_at=self.clock(),
                    next_review_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.info(f"[curator] Fragment {fragment_id} already has a terminal status, verdict ignored")
                session.rollback()
                return None, soul_id

            fragment = session.execute(
                select(Fragment).where(Fragment.id == fragment_id).execution_options(populate_existing=True)
            ).scalar_one()
            self.state_machine.record_outcome(session, soul, fragment)
            session.commit()

            logger.info(
                f"[curator] Review for @{soul.handle}/{fragment.dimension}: status={status}, "
                f"confidence={verdict.confidence:.2f}, reason={verdict.reason}"
            )
            return status, soul_id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def stale_pending_fragments(session: Session, tuning: Tuning | None = None) -> List[Fragment]:
    """Pending fragments that exhausted their review attempts (operator visibility)."""
    tuning = tuning or Tuning()
    return list(
        session.execute(
            select(Fragment)
            .where(Fragment.status == FRAG_STATUS_PENDING)
            .where(Fragment.review_attempts >= tuning.max_review_attempts)
            .order_by(Fragment.created_at.asc())
        ).scalars().all()
    )
