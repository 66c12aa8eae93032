# ensoul/condensation.py
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ensoul.base_utils import BaseUtils
from ensoul.entities import Condensation, Fragment, Soul, FRAG_STATUS_ACCEPTED, utcnow
from ensoul.llm_client import ChatLlmClient
from ensoul.profile import Dimension, DimensionEntry, DimensionProfile, clamp_score
from ensoul.prompts import ENSOULING_PROMPT, ENSOULING_SYSTEM_PROMPT
from ensoul.settings import Tuning
from ensoul.soul_state import SoulStateMachine

logger = logging.getLogger("ensoul_backend")

SUMMARY_EXCERPT_CHARS = 200
# merged summaries keep only their most recent text
SUMMARY_MAX_CHARS = 800


def cap_summary(summary: str, limit: int = SUMMARY_MAX_CHARS) -> str:
    if len(summary) <= limit:
        return summary
    tail = summary[-(limit - 3):]
    # restart on a word boundary
    cut = tail.find(" ")
    if 0 <= cut < len(tail) - 1:
        tail = tail[cut + 1:]
    return "..." + tail


@dataclass(frozen=True)
class FragmentSnapshot:
    id: str
    dimension: str
    content: str
    confidence: float


@dataclass(frozen=True)
class SoulSnapshot:
    id: str
    handle: str
    stage: str
    profile_version: int
    seed_summary: str
    system_prompt: str
    dimensions: DimensionProfile


@dataclass(frozen=True)
class CondensationResult:
    new_prompt: str
    dimensions: DimensionProfile
    summary_diff: str


class _LostRace(Exception):
    pass


class CondensationEngine(BaseUtils):
    """
    Folds accepted-but-unconsumed fragments into a new profile version.

    The LLM (or the weighted merge) runs on a snapshot outside any
    transaction. The write is guarded by a compare-and-set on
    profile_version; a writer that loses the race re-reads and tries again,
    so a window of fragments is consumed by exactly one Condensation.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        llm: ChatLlmClient | None = None,
        tuning: Tuning | None = None,
        state_machine: SoulStateMachine | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.SessionFactory = session_factory
        self.llm = llm
        self.tuning = tuning or Tuning()
        self.state_machine = state_machine or SoulStateMachine(self.tuning)
        self.clock = clock

    def unconsumed_count(self, session: Session, soul_id: str) -> int:
        return session.execute(
            select(func.count(Fragment.id))
            .where(Fragment.soul_id == soul_id)
            .where(Fragment.status == FRAG_STATUS_ACCEPTED)
            .where(Fragment.condensation_id.is_(None))
        ).scalar_one()

    def maybe_condense(self, soul_id: str) -> Optional[Condensation]:
        session = self.SessionFactory()
        try:
            pending = self.unconsumed_count(session, soul_id)
        finally:
            session.close()
        if pending < self.tuning.condensation_threshold:
            return None
        return self.condense(soul_id)

    def condense(self, soul_id: str, *, force: bool = False) -> Optional[Condensation]:
        """
        force=True (operator signal) condenses any non-empty window.
        Returns the new Condensation, or None when there was nothing to do.
        """
        for attempt in range(1, self.tuning.condensation_max_attempts + 1):
            soul, fragments = self._snapshot(soul_id)
            if not fragments:
                return None
            if not force and len(fragments) < self.tuning.condensation_threshold:
                return None

            result = self._produce(soul, fragments)
            try:
                return self._write(soul, fragments, result)
            except _LostRace:
                logger.info(
                    f"[ensouling] @{soul.handle}: v{soul.profile_version} was condensed concurrently "
                    f"(attempt {attempt}), re-reading"
                )
        logger.warning(f"[ensouling] Gave up on soul {soul_id} after {self.tuning.condensation_max_attempts} lost races")
        return None

    # -----------------------
    # Snapshot / produce / write
    # -----------------------

    def _snapshot(self, soul_id: str) -> tuple[SoulSnapshot, List[FragmentSnapshot]]:
        session = self.SessionFactory()
        try:
            soul = session.get(Soul, soul_id)
            if soul is None:
                raise ValueError(f"unknown soul {soul_id}")
            rows = session.execute(
                select(Fragment)
                .where(Fragment.soul_id == soul_id)
                .where(Fragment.status == FRAG_STATUS_ACCEPTED)
                .where(Fragment.condensation_id.is_(None))
                .order_by(Fragment.created_at.asc())
            ).scalars().all()
            snapshot = SoulSnapshot(
                id=soul.id,
                handle=soul.handle,
                stage=soul.stage,
                profile_version=soul.profile_version,
                seed_summary=soul.seed_summary or "",
                system_prompt=soul.system_prompt or "",
                dimensions=DimensionProfile.from_json(soul.dimensions),
            )
            frags = [
                FragmentSnapshot(id=f.id, dimension=f.dimension, content=f.content, confidence=f.confidence or 0.0)
                for f in rows
            ]
            return snapshot, frags
        finally:
            session.close()

    def _produce(self, soul: SoulSnapshot, fragments: List[FragmentSnapshot]) -> CondensationResult:
        if self.llm is not None:
            try:
                result = self.condense_with_llm(soul, fragments)
                if result is not None:
                    return result
                logger.warning(f"[ensouling] LLM returned an unusable answer for @{soul.handle}, using fallback")
            except Exception as e:
                logger.warning(f"[ensouling] LLM ensouling failed, using fallback: {e}")
        return self.condense_fallback(soul, fragments)

    def _write(
        self,
        soul: SoulSnapshot,
        fragments: List[FragmentSnapshot],
        result: CondensationResult,
    ) -> Condensation:
        version_to = soul.profile_version + 1
        frag_ids = [f.id for f in fragments]
        session = self.SessionFactory()
        try:
            bumped = session.execute(
                update(Soul)
                .where(Soul.id == soul.id)
                .where(Soul.profile_version == soul.profile_version)
                .values(
                    profile_version=version_to,
                    system_prompt=result.new_prompt,
                    dimensions=result.dimensions.to_json(),
                )
                .execution_options(synchronize_session=False)
            )
            if bumped.rowcount != 1:
                session.rollback()
                raise _LostRace()

            condensation = Condensation(
                soul_id=soul.id,
                version_from=soul.profile_version,
                version_to=version_to,
                frags_merged=len(fragments),
                summary_diff=result.summary_diff,
                new_prompt=result.new_prompt,
                created_at=self.clock(),
            )
            session.add(condensation)
            session.flush()

            consumed = session.execute(
                update(Fragment)
                .where(Fragment.id.in_(frag_ids))
                .where(Fragment.condensation_id.is_(None))
                .values(condensation_id=condensation.id)
                .execution_options(synchronize_session=False)
            )
            if consumed.rowcount != len(frag_ids):
                session.rollback()
                raise _LostRace()

            locked = self.state_machine.lock_soul(session, soul.id)
            self.state_machine.refresh_stage(session, locked)
            session.commit()
        except IntegrityError:
            session.rollback()
            raise _LostRace()
        except _LostRace:
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(
            f"[ensouling] Completed for @{soul.handle}: v{soul.profile_version} -> v{version_to}, "
            f"merged {len(fragments)} fragments"
        )
        return condensation

    # -----------------------
    # Condensers
    # -----------------------

    def condense_with_llm(self, soul: SoulSnapshot, fragments: List[FragmentSnapshot]) -> Optional[CondensationResult]:
        frag_list = "\n".join(
            f"[{i + 1}] Dimension: {f.dimension} | Confidence: {f.confidence:.2f}\n{f.content}\n"
            for i, f in enumerate(fragments)
        )
        new_per_dim: dict[str, int] = {}
        for f in fragments:
            new_per_dim[f.dimension] = new_per_dim.get(f.dimension, 0) + 1
        coverage = "\n".join(
            f"  {d.value}: score={soul.dimensions.get(d).score} (new fragments: {new_per_dim.get(d.value, 0)})"
            for d in Dimension
        )

        prompt = self.unsafe_string_format(
            ENSOULING_PROMPT,
            HANDLE=soul.handle,
            STAGE=soul.stage,
            VERSION=soul.profile_version,
            SEED_SUMMARY=soul.seed_summary or "(none)",
            SYSTEM_PROMPT=soul.system_prompt or "(empty)",
            DIMENSION_COVERAGE=coverage,
            FRAGMENT_COUNT=len(fragments),
            FRAGMENT_LIST=frag_list,
        )
        raw = self.llm.invoke(
            [SystemMessage(content=ENSOULING_SYSTEM_PROMPT), HumanMessage(content=prompt)],
            retries=self.tuning.judge_retries,
        )
        data = self.load_fault_tolerant_json(raw)
        if not data:
            return None
        new_prompt = str(data.get("new_prompt") or "").strip()
        if not new_prompt:
            return None

        logger.debug(f"[ensouling] LLM ensouling for @{soul.handle}: {data.get('summary_diff')}")
        return CondensationResult(
            new_prompt=new_prompt,
            dimensions=soul.dimensions.merged_with(data.get("dimensions")),
            summary_diff=str(data.get("summary_diff") or "").strip()
            or self._default_summary_diff(soul, fragments),
        )

    def condense_fallback(self, soul: SoulSnapshot, fragments: List[FragmentSnapshot]) -> CondensationResult:
        """Deterministic merge used when no LLM is configured or it fails."""
        by_dim: "OrderedDict[str, List[FragmentSnapshot]]" = OrderedDict()
        for f in fragments:
            by_dim.setdefault(f.dimension, []).append(f)

        prompt = f"{soul.system_prompt}\n\n--- Updated Knowledge (v{soul.profile_version + 1}) ---\n\n"
        for dim, frags in by_dim.items():
            prompt += f"[{dim}]\n"
            for f in frags:
                prompt += f"- {f.content}\n"
            prompt += "\n"

        return CondensationResult(
            new_prompt=prompt,
            dimensions=self.weighted_merge(soul.dimensions, fragments),
            summary_diff=self._default_summary_diff(soul, fragments, len(by_dim)),
        )

    def weighted_merge(self, prior: DimensionProfile, fragments: List[FragmentSnapshot]) -> DimensionProfile:
        out = prior
        for dim in Dimension:
            frags = [f for f in fragments if f.dimension == dim.value]
            if not frags:
                continue
            entry = prior.get(dim)
            score = clamp_score(round(entry.score + self.tuning.condensation_evidence_weight * sum(f.confidence for f in frags)))
            best = max(frags, key=lambda f: f.confidence)
            excerpt = best.content.strip()
            if len(excerpt) > SUMMARY_EXCERPT_CHARS:
                excerpt = excerpt[:SUMMARY_EXCERPT_CHARS].rstrip() + "..."
            summary = f"{entry.summary} {excerpt}".strip() if entry.summary else excerpt
            out = out.with_entry(dim, DimensionEntry(score=score, summary=cap_summary(summary)))
        return out

    def _default_summary_diff(self, soul: SoulSnapshot, fragments: List[FragmentSnapshot], dims: int | None = None) -> str:
        if dims is None:
            dims = len({f.dimension for f in fragments})
        return (
            f"Merged {len(fragments)} new fragments across {dims} dimensions. "
            f"Profile upgraded from v{soul.profile_version} to v{soul.profile_version + 1}."
        )
