# ensoul/backend.py
import logging
from datetime import datetime
from typing import Any, Callable, Dict

from sqlalchemy.orm import Session

from ensoul import settings
from ensoul.chain_client import ChainClient
from ensoul.chat_service import ChatService
from ensoul.condensation import CondensationEngine
from ensoul.curation import AutoAcceptJudge, CurationPipeline, LlmCuratorJudge, stale_pending_fragments
from ensoul.db_hlpr import DbConnection
from ensoul.directory import Directory
from ensoul.entities import utcnow
from ensoul.fragment_service import FragmentService
from ensoul.identity import IdentityService
from ensoul.llm_client import build_chat_llm
from ensoul.quota_guard import QuotaGuard
from ensoul.reconciliation import ChainReconciler
from ensoul.settings import Tuning, load_tuning
from ensoul.soul_service import SoulService
from ensoul.soul_state import SoulStateMachine

logger = logging.getLogger("ensoul_backend")

_UNSET: Any = object()


class Backend:
    """
    Builds every component once around a shared session factory.
    Anything left unset comes from the environment (ensoul.settings).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        tuning: Tuning | None = None,
        llm: Any = _UNSET,
        judge: Any = _UNSET,
        chain_client: Any = _UNSET,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.tuning = tuning or load_tuning()
        self.clock = clock

        if session_factory is None:
            db = DbConnection()
            db.create_all()
            session_factory = db.build_db_session_factory()
        self.SessionFactory = session_factory

        if llm is _UNSET:
            llm = build_chat_llm(
                settings.LLM_MODEL,
                project=settings.PROJECT_ID,
                region=settings.REGION,
                timeout=settings.LLM_TIMEOUT,
            )
        self.llm = llm

        if judge is _UNSET:
            if self.llm is not None:
                judge = LlmCuratorJudge(self.llm, retries=self.tuning.judge_retries)
            else:
                logger.info("[curator] LLM not configured, fragments will be auto-accepted")
                judge = AutoAcceptJudge()
        self.judge = judge

        if chain_client is _UNSET:
            chain_client = None
            if settings.BSC_RPC_URL:
                try:
                    chain_client = ChainClient(
                        settings.BSC_RPC_URL,
                        registry_addr=settings.IDENTITY_REGISTRY_ADDR,
                        timeout=settings.CHAIN_TIMEOUT,
                    )
                except Exception as e:
                    logger.info(f"Warning: Could not initialize chain client: {e}. Backfill disabled.")
        self.chain_client = chain_client

        self.state_machine = SoulStateMachine(self.tuning)
        self.quota_guard = QuotaGuard(self.tuning, clock=clock)
        self.condensation = CondensationEngine(
            self.SessionFactory,
            llm=self.llm,
            tuning=self.tuning,
            state_machine=self.state_machine,
            clock=clock,
        )
        self.curation = CurationPipeline(
            self.SessionFactory,
            self.judge,
            tuning=self.tuning,
            state_machine=self.state_machine,
            on_accepted=self.condensation.maybe_condense,
            clock=clock,
        )
        self.identity = IdentityService(self.SessionFactory, tuning=self.tuning, clock=clock)
        self.souls = SoulService(
            self.SessionFactory,
            tuning=self.tuning,
            quota_guard=self.quota_guard,
            state_machine=self.state_machine,
            clock=clock,
        )
        self.fragments = FragmentService(
            self.SessionFactory,
            tuning=self.tuning,
            quota_guard=self.quota_guard,
            clock=clock,
        )
        self.reconciler = ChainReconciler(self.SessionFactory, self.chain_client, tuning=self.tuning)
        self.directory = Directory(self.SessionFactory, tuning=self.tuning)
        self.chat = ChatService(self.SessionFactory, llm=self.llm, tuning=self.tuning, clock=clock)

    # -----------------------
    # Housekeeping
    # -----------------------

    def stale_pending_report(self) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            rows = stale_pending_fragments(session, self.tuning)
            return {
                "count": len(rows),
                "fragments": [
                    {
                        "id": f.id,
                        "soul_id": f.soul_id,
                        "dimension": f.dimension,
                        "review_attempts": f.review_attempts,
                        "last_review_error": f.last_review_error,
                        "created_at": f.created_at.isoformat(),
                    }
                    for f in rows
                ],
            }
        finally:
            session.close()
