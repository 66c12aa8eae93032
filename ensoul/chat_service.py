# ensoul/chat_service.py
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from ensoul.entities import (
    ChatMessage,
    ChatSession,
    Soul,
    CHAT_TIER_FREE,
    CHAT_TIER_GUEST,
    STAGE_EMBRYO,
    utcnow,
)
from ensoul.errors import Forbidden, NotFound, ServiceUnavailable, ValidationFailed
from ensoul.llm_client import ChatLlmClient
from ensoul.settings import Tuning
from ensoul.soul_service import validate_handle

logger = logging.getLogger("ensoul_backend")

TITLE_MAX_CHARS = 60
MAX_LISTED_SESSIONS = 50

EMBRYO_REPLY = (
    "This soul is still in embryo stage and hasn't awakened yet. "
    "More fragments are needed before it can have conversations."
)


def chat_session_to_dict(chat: ChatSession, handle: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": chat.id,
        "soul_id": chat.soul_id,
        "handle": handle,
        "tier": chat.tier,
        "rounds": chat.rounds,
        "title": chat.title,
        "created_at": chat.created_at.isoformat(),
        "updated_at": chat.updated_at.isoformat(),
    }


class ChatService:
    """
    Conversations with a minted soul, persisted per session.

    Guest sessions (no wallet) are capped at chat_guest_max_rounds; wallet
    sessions are private to that wallet. Only the last chat_history_window
    messages are replayed to the LLM, behind the soul's system prompt.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        llm: ChatLlmClient | None = None,
        tuning: Tuning | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.SessionFactory = session_factory
        self.llm = llm
        self.tuning = tuning or Tuning()
        self.clock = clock

    @staticmethod
    def _check_access(chat: ChatSession, wallet_addr: Optional[str]) -> None:
        if chat.wallet_addr and (not wallet_addr or wallet_addr.lower() != chat.wallet_addr):
            raise Forbidden("access denied", code="access_denied")

    def _load(self, session: Session, session_id: str) -> tuple[ChatSession, Soul]:
        row = session.execute(
            select(ChatSession, Soul)
            .join(Soul, Soul.id == ChatSession.soul_id)
            .where(ChatSession.id == session_id)
        ).one_or_none()
        if row is None:
            raise NotFound("chat session not found")
        return row[0], row[1]

    # -----------------------
    # Sessions
    # -----------------------

    def create_session(self, handle: str, wallet_addr: Optional[str] = None) -> Dict[str, Any]:
        handle = validate_handle(handle)
        now = self.clock()
        session = self.SessionFactory()
        try:
            soul = session.execute(select(Soul).where(Soul.handle == handle)).scalar_one_or_none()
            if soul is None:
                raise NotFound(f"Soul @{handle} not found")
            if not soul.mint_tx_hash:
                raise ValidationFailed(f"soul @{handle} has not been minted on-chain yet", code="not_minted")

            chat = ChatSession(
                soul_id=soul.id,
                wallet_addr=wallet_addr.lower() if wallet_addr else None,
                tier=CHAT_TIER_FREE if wallet_addr else CHAT_TIER_GUEST,
                rounds=0,
                title="",
                created_at=now,
                updated_at=now,
            )
            session.add(chat)
            session.commit()
            logger.info(f"[chat] New {chat.tier} session {chat.id} with @{handle}")
            return chat_session_to_dict(chat, handle)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_sessions(self, wallet_addr: str, handle: Optional[str] = None) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            query = (
                select(ChatSession, Soul.handle)
                .join(Soul, Soul.id == ChatSession.soul_id)
                .where(ChatSession.wallet_addr == wallet_addr.lower())
            )
            if handle:
                query = query.where(Soul.handle == validate_handle(handle))
            rows = session.execute(
                query.order_by(ChatSession.updated_at.desc()).limit(MAX_LISTED_SESSIONS)
            ).all()
            return {"sessions": [chat_session_to_dict(c, h) for c, h in rows]}
        finally:
            session.close()

    def get_session(self, session_id: str, wallet_addr: Optional[str] = None) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            chat, soul = self._load(session, session_id)
            self._check_access(chat, wallet_addr)
            messages = session.execute(
                select(ChatMessage)
                .where(ChatMessage.session_id == chat.id)
                # user before assistant within a turn
                .order_by(ChatMessage.turn, ChatMessage.role.desc())
            ).scalars().all()
            body = chat_session_to_dict(chat, soul.handle)
            body["messages"] = [
                {"id": m.id, "role": m.role, "content": m.content, "created_at": m.created_at.isoformat()}
                for m in messages
            ]
            return body
        finally:
            session.close()

    def delete_session(self, session_id: str, wallet_addr: str) -> None:
        session = self.SessionFactory()
        try:
            chat = session.get(ChatSession, session_id)
            if chat is None or chat.wallet_addr != wallet_addr.lower():
                raise NotFound("chat session not found")
            session.execute(delete(ChatMessage).where(ChatMessage.session_id == chat.id))
            session.delete(chat)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -----------------------
    # Messages
    # -----------------------

    def send_message(self, session_id: str, message: str, wallet_addr: Optional[str] = None) -> Dict[str, Any]:
        message = (message or "").strip()
        if not message:
            raise ValidationFailed("message is required", code="invalid_message")

        now = self.clock()
        session = self.SessionFactory()
        try:
            chat, soul = self._load(session, session_id)
            self._check_access(chat, wallet_addr)

            if soul.stage == STAGE_EMBRYO:
                return self._reply_body(chat.id, EMBRYO_REPLY, chat.rounds)

            limit = self.tuning.chat_guest_max_rounds
            result = session.execute(
                update(ChatSession)
                .where(ChatSession.id == chat.id)
                .where(or_(ChatSession.tier != CHAT_TIER_GUEST, ChatSession.rounds < limit))
                .values(rounds=ChatSession.rounds + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                return self._reply_body(
                    chat.id,
                    f"You've reached the {limit}-round limit for guest conversations. Connect your wallet "
                    f"and sign in to continue chatting with unlimited rounds and saved history!",
                    limit,
                )
            turn = session.execute(select(ChatSession.rounds).where(ChatSession.id == chat.id)).scalar_one()

            session.add(ChatMessage(session_id=chat.id, turn=turn, role="user", content=message, created_at=now))
            if turn == 1 and not chat.title:
                title = message if len(message) <= TITLE_MAX_CHARS else message[:TITLE_MAX_CHARS] + "..."
                session.execute(
                    update(ChatSession)
                    .where(ChatSession.id == chat.id)
                    .values(title=title, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            session.execute(
                update(Soul)
                .where(Soul.id == soul.id)
                .values(total_chats=Soul.total_chats + 1)
                .execution_options(synchronize_session=False)
            )
            session.commit()

            history = self._recent_history(session, chat.id)
            handle, version, system_prompt = soul.handle, soul.profile_version, soul.system_prompt
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if self.llm is None:
            reply = (
                f"I am the digital soul of @{handle} (profile v{version}). You asked: \"{message}\". "
                f"Set LLM_MODEL to enable full conversations."
            )
        else:
            reply = self._generate(handle, system_prompt, history)

        self._save_assistant(chat.id, turn, reply)
        return self._reply_body(chat.id, reply, turn)

    def _recent_history(self, session: Session, chat_id: str) -> List[ChatMessage]:
        rows = session.execute(
            select(ChatMessage)
            .where(ChatMessage.session_id == chat_id)
            .order_by(ChatMessage.turn.desc(), ChatMessage.role.asc())
            .limit(self.tuning.chat_history_window)
        ).scalars().all()
        return list(reversed(rows))

    def _generate(self, handle: str, system_prompt: str, history: List[ChatMessage]) -> str:
        messages: List[SystemMessage | HumanMessage | AIMessage] = [SystemMessage(content=system_prompt)]
        for m in history:
            if m.role == "assistant":
                messages.append(AIMessage(content=m.content))
            else:
                messages.append(HumanMessage(content=m.content))
        try:
            reply = self.llm.invoke(messages, retries=self.tuning.judge_retries)
        except Exception as e:
            logger.error(f"[chat] Generation failed for @{handle}: {e}")
            raise ServiceUnavailable("Failed to generate response. Please try again.", code="llm_unavailable")
        return str(reply).strip()

    def _save_assistant(self, chat_id: str, turn: int, content: str) -> None:
        session = self.SessionFactory()
        try:
            session.add(ChatMessage(session_id=chat_id, turn=turn, role="assistant", content=content,
                                    created_at=self.clock()))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _reply_body(chat_id: str, content: str, rounds: int) -> Dict[str, Any]:
        return {"session_id": chat_id, "role": "assistant", "content": content, "rounds": rounds}
