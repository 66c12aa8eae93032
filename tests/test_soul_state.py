import pytest
from sqlalchemy import select

from ensoul.entities import (
    Claw,
    Condensation,
    Fragment,
    Soul,
    FRAG_STATUS_ACCEPTED,
    FRAG_STATUS_REJECTED,
    STAGE_EMBRYO,
    STAGE_EVOLVING,
    STAGE_GROWING,
    STAGE_MATURE,
)
from ensoul.settings import Tuning
from ensoul.soul_state import SoulStateMachine, advance_stage, compute_stage

from conftest import make_claw, make_soul


@pytest.mark.parametrize(
    "accepted, condensations, expected",
    [
        (0, 0, STAGE_EMBRYO),
        (1, 0, STAGE_GROWING),
        (49, 0, STAGE_GROWING),
        (50, 0, STAGE_MATURE),
        (10, 3, STAGE_EVOLVING),
        (0, 3, STAGE_EVOLVING),
        (60, 2, STAGE_MATURE),
    ],
)
def test_compute_stage(accepted, condensations, expected):
    assert compute_stage(accepted, condensations) == expected


def test_compute_stage_is_idempotent():
    assert compute_stage(5, 1) == compute_stage(5, 1)


def test_stage_never_regresses():
    assert advance_stage(STAGE_MATURE, STAGE_GROWING) == STAGE_MATURE
    assert advance_stage(STAGE_GROWING, STAGE_MATURE) == STAGE_MATURE
    assert advance_stage(STAGE_EVOLVING, STAGE_EMBRYO) == STAGE_EVOLVING


def _decide(session_factory, soul, claw, status, confidence=0.8, dim="style"):
    machine = SoulStateMachine(Tuning(reward_per_accept=2.0))
    session = session_factory()
    try:
        fragment = Fragment(
            soul_id=soul.id,
            claw_id=claw.id,
            batch_id="b",
            dimension=dim,
            content="c" * 60,
            status=status,
            confidence=confidence,
        )
        session.add(fragment)
        session.flush()
        locked = machine.lock_soul(session, soul.id)
        machine.record_outcome(session, locked, fragment)
        session.commit()
    finally:
        session.close()


def _load(session_factory, model, id_):
    session = session_factory()
    try:
        return session.get(model, id_)
    finally:
        session.close()


def test_rejection_only_counts_total(session_factory):
    soul, claw = make_soul(session_factory), make_claw(session_factory)
    _decide(session_factory, soul, claw, FRAG_STATUS_REJECTED, confidence=0.2)

    soul = _load(session_factory, Soul, soul.id)
    assert (soul.total_frags, soul.accepted_frags, soul.total_claws) == (1, 0, 0)
    assert soul.stage == STAGE_EMBRYO
    assert _load(session_factory, Claw, claw.id).total_accepted == 0


def test_acceptance_updates_counters_and_stage(session_factory):
    soul = make_soul(session_factory)
    claw_a, claw_b = make_claw(session_factory, "claw-a"), make_claw(session_factory, "claw-b")

    _decide(session_factory, soul, claw_a, FRAG_STATUS_ACCEPTED, confidence=0.5)
    _decide(session_factory, soul, claw_a, FRAG_STATUS_ACCEPTED, confidence=1.0, dim="stance")
    _decide(session_factory, soul, claw_b, FRAG_STATUS_ACCEPTED, confidence=0.25, dim="timeline")

    soul = _load(session_factory, Soul, soul.id)
    assert (soul.total_frags, soul.accepted_frags, soul.total_claws) == (3, 3, 2)
    assert soul.stage == STAGE_GROWING

    a = _load(session_factory, Claw, claw_a.id)
    assert a.total_accepted == 2
    assert a.earnings == pytest.approx(3.0)


def test_accepted_never_exceeds_total(session_factory):
    soul, claw = make_soul(session_factory), make_claw(session_factory)
    for status in (FRAG_STATUS_ACCEPTED, FRAG_STATUS_REJECTED, FRAG_STATUS_ACCEPTED):
        _decide(session_factory, soul, claw, status)
    soul = _load(session_factory, Soul, soul.id)
    assert soul.accepted_frags <= soul.total_frags


def test_refresh_stage_uses_condensation_count(session_factory):
    soul = make_soul(session_factory, stage=STAGE_GROWING, accepted_frags=12, total_frags=12)
    machine = SoulStateMachine()
    session = session_factory()
    try:
        for v in range(1, 4):
            session.add(Condensation(soul_id=soul.id, version_from=v, version_to=v + 1, frags_merged=4))
        session.flush()
        locked = machine.lock_soul(session, soul.id)
        assert machine.refresh_stage(session, locked) == STAGE_EVOLVING
        session.commit()
    finally:
        session.close()

    session = session_factory()
    stage = session.execute(select(Soul.stage).where(Soul.id == soul.id)).scalar_one()
    session.close()
    assert stage == STAGE_EVOLVING
