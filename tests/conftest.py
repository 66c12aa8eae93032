from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ensoul.curation import Verdict
from ensoul.entities import (
    Base,
    Claw,
    Fragment,
    Soul,
    CLAW_STATUS_CLAIMED,
    CLAW_STATUS_PENDING_CLAIM,
    FRAG_STATUS_ACCEPTED,
)
from ensoul.identity import hash_token
from ensoul.settings import Tuning


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)

    def unix(self) -> int:
        return int(self.now.replace(tzinfo=timezone.utc).timestamp())


class ScriptedJudge:
    """Returns (or raises) a scripted outcome per dimension and records every request."""

    def __init__(self, default: Optional[Verdict] = None, by_dimension: Optional[Dict[str, object]] = None):
        self.default = default or Verdict(verdict="accept", confidence=0.9)
        self.by_dimension = dict(by_dimension or {})
        self.requests: List = []

    def __call__(self, request):
        self.requests.append(request)
        outcome = self.by_dimension.get(request.dimension, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeChain:
    def __init__(self, receipts: Optional[Dict[str, object]] = None):
        self.receipts = dict(receipts or {})
        self.calls: List[str] = []

    def registered_agent_id(self, tx_hash: str):
        self.calls.append(tx_hash)
        outcome = self.receipts.get(tx_hash)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tuning():
    return Tuning()


@pytest.fixture
def judge():
    return ScriptedJudge()


def sign(account, message: str) -> str:
    signed = Account.sign_message(encode_defunct(text=message), private_key=account.key)
    return "0x" + bytes(signed.signature).hex()


def make_soul(session_factory, handle: str = "vitalik", owner: str = "0x" + "ab" * 20, **kw) -> Soul:
    session = session_factory()
    try:
        soul = Soul(handle=handle, owner_addr=owner, seed_summary=f"Seed for {handle}", system_prompt="You are it.", **kw)
        session.add(soul)
        session.commit()
        return soul
    finally:
        session.close()


def make_claw(session_factory, name: str = "claw-one", claimed: bool = True, api_key: Optional[str] = None) -> Claw:
    api_key = api_key or f"ensoul_sk_{name}"
    session = session_factory()
    try:
        claw = Claw(
            name=name,
            api_key_hash=hash_token(api_key),
            claim_code=f"ensoul_claim_{name}",
            verification_code="reef-ABCD",
            status=CLAW_STATUS_CLAIMED if claimed else CLAW_STATUS_PENDING_CLAIM,
        )
        session.add(claw)
        session.commit()
        return claw
    finally:
        session.close()


def add_accepted(session_factory, soul: Soul, claw: Claw, items, created_at: Optional[datetime] = None) -> List[str]:
    """Insert already-accepted fragments; items are (dimension, confidence) pairs."""
    session = session_factory()
    try:
        ids = []
        base = created_at or datetime(2026, 1, 1, 12, 0, 0)
        for i, (dim, confidence) in enumerate(items):
            f = Fragment(
                soul_id=soul.id,
                claw_id=claw.id,
                batch_id=f"batch-{i}",
                dimension=dim,
                content=f"{dim} insight number {i} " + "x" * 60,
                status=FRAG_STATUS_ACCEPTED,
                confidence=confidence,
                created_at=base + timedelta(seconds=i),
            )
            session.add(f)
            session.flush()
            ids.append(f.id)
        db_soul = session.get(Soul, soul.id)
        db_soul.accepted_frags += len(items)
        db_soul.total_frags += len(items)
        session.commit()
        return ids
    finally:
        session.close()


def batch_items(dims=("personality", "knowledge", "stance"), length: int = 80):
    return [{"dimension": d, "content": f"About {d}: " + "y" * length} for d in dims]
