import json

import pytest
from sqlalchemy import select, update

from ensoul.condensation import SUMMARY_MAX_CHARS, CondensationEngine, FragmentSnapshot, cap_summary
from ensoul.entities import Condensation, Fragment, Soul, STAGE_EVOLVING
from ensoul.profile import DimensionProfile
from ensoul.settings import Tuning

from conftest import add_accepted, make_claw, make_soul


class FakeLlm:
    def __init__(self, answer=None, error=None):
        self.answer = answer
        self.error = error
        self.calls = []

    def invoke(self, messages, retries=3):
        self.calls.append(messages)
        if self.error:
            raise self.error
        return self.answer


def seeded_soul(session_factory, **kw):
    dims = DimensionProfile.from_json({"personality": {"score": 10, "summary": "Curious."}}).to_json()
    return make_soul(session_factory, dimensions=dims, **kw)


def load(session_factory, soul_id):
    session = session_factory()
    try:
        soul = session.get(Soul, soul_id)
        conds = session.execute(
            select(Condensation).where(Condensation.soul_id == soul_id).order_by(Condensation.version_to)
        ).scalars().all()
        frags = session.execute(select(Fragment).where(Fragment.soul_id == soul_id)).scalars().all()
        return soul, conds, frags
    finally:
        session.close()


def test_below_threshold_does_nothing(session_factory, clock):
    soul, claw = seeded_soul(session_factory), make_claw(session_factory)
    add_accepted(session_factory, soul, claw, [("personality", 0.5)] * 9)
    engine = CondensationEngine(session_factory, clock=clock)

    assert engine.maybe_condense(soul.id) is None
    _, conds, _ = load(session_factory, soul.id)
    assert conds == []


def test_threshold_triggers_weighted_merge(session_factory, clock):
    soul, claw = seeded_soul(session_factory), make_claw(session_factory)
    add_accepted(session_factory, soul, claw, [("personality", 0.5)] * 6 + [("style", 0.9)] * 4)
    engine = CondensationEngine(session_factory, clock=clock)

    condensation = engine.maybe_condense(soul.id)

    assert (condensation.version_from, condensation.version_to, condensation.frags_merged) == (1, 2, 10)
    assert "Merged 10 new fragments across 2 dimensions" in condensation.summary_diff
    db_soul, conds, frags = load(session_factory, soul.id)
    assert db_soul.profile_version == 2
    assert "--- Updated Knowledge (v2) ---" in db_soul.system_prompt
    assert "[personality]" in db_soul.system_prompt
    assert len(conds) == 1
    assert {f.condensation_id for f in frags} == {condensation.id}

    dims = DimensionProfile.from_json(db_soul.dimensions)
    assert dims.personality.score == 25          # 10 + 5 * 3.0
    assert dims.personality.summary.startswith("Curious.")
    assert dims.style.score == 18                # 0 + 5 * 3.6
    assert dims.knowledge.score == 0


def test_scores_are_capped(session_factory, clock):
    dims = DimensionProfile.from_json({"stance": {"score": 98, "summary": ""}}).to_json()
    soul, claw = make_soul(session_factory, dimensions=dims), make_claw(session_factory)
    add_accepted(session_factory, soul, claw, [("stance", 1.0)] * 10)
    CondensationEngine(session_factory, clock=clock).maybe_condense(soul.id)
    db_soul, _, _ = load(session_factory, soul.id)
    assert DimensionProfile.from_json(db_soul.dimensions).stance.score == 100


def test_window_is_consumed_once(session_factory, clock):
    soul, claw = seeded_soul(session_factory), make_claw(session_factory)
    add_accepted(session_factory, soul, claw, [("knowledge", 0.7)] * 10)
    engine = CondensationEngine(session_factory, clock=clock)

    assert engine.maybe_condense(soul.id) is not None
    assert engine.maybe_condense(soul.id) is None
    assert engine.condense(soul.id, force=True) is None
    _, conds, _ = load(session_factory, soul.id)
    assert len(conds) == 1


def test_operator_signal_condenses_small_window(session_factory, clock):
    soul, claw = seeded_soul(session_factory), make_claw(session_factory)
    add_accepted(session_factory, soul, claw, [("timeline", 0.6)] * 2)
    engine = CondensationEngine(session_factory, clock=clock)

    assert engine.condense(soul.id) is None
    condensation = engine.condense(soul.id, force=True)
    assert condensation.frags_merged == 2


def test_lost_race_rereads_and_retries(session_factory, clock):
    soul, claw = seeded_soul(session_factory), make_claw(session_factory)
    add_accepted(session_factory, soul, claw, [("style", 0.5)] * 10)

    class RacingEngine(CondensationEngine):
        raced = False

        def _produce(self, snapshot, fragments):
            if not self.raced:
                self.raced = True
                session = session_factory()
                session.execute(update(Soul).where(Soul.id == soul.id).values(profile_version=Soul.profile_version + 1))
                session.commit()
                session.close()
            return super()._produce(snapshot, fragments)

    condensation = RacingEngine(session_factory, clock=clock).maybe_condense(soul.id)

    assert (condensation.version_from, condensation.version_to) == (2, 3)
    db_soul, conds, frags = load(session_factory, soul.id)
    assert db_soul.profile_version == 3
    assert len(conds) == 1
    assert {f.condensation_id for f in frags} == {condensation.id}


def test_gives_up_after_max_attempts(session_factory, clock):
    soul, claw = seeded_soul(session_factory), make_claw(session_factory)
    add_accepted(session_factory, soul, claw, [("style", 0.5)] * 10)

    class AlwaysRacing(CondensationEngine):
        def _produce(self, snapshot, fragments):
            session = session_factory()
            session.execute(update(Soul).where(Soul.id == soul.id).values(profile_version=Soul.profile_version + 1))
            session.commit()
            session.close()
            return super()._produce(snapshot, fragments)

    engine = AlwaysRacing(session_factory, tuning=Tuning(condensation_max_attempts=3), clock=clock)
    assert engine.maybe_condense(soul.id) is None
    _, conds, frags = load(session_factory, soul.id)
    assert conds == []
    assert all(f.condensation_id is None for f in frags)


def test_llm_condenser(session_factory, clock):
    soul, claw = seeded_soul(session_factory), make_claw(session_factory)
    add_accepted(session_factory, soul, claw, [("knowledge", 0.8)] * 10)
    answer = "```json\n" + json.dumps({
        "new_prompt": "You are the digital soul of @vitalik. Deeply technical.",
        "dimensions": {"knowledge": {"score": 40, "summary": "Protocol design."}},
        "summary_diff": "Added protocol knowledge.",
    }) + "\n```"
    llm = FakeLlm(answer=answer)

    condensation = CondensationEngine(session_factory, llm=llm, clock=clock).maybe_condense(soul.id)

    assert condensation.summary_diff == "Added protocol knowledge."
    db_soul, _, _ = load(session_factory, soul.id)
    assert db_soul.system_prompt.startswith("You are the digital soul of @vitalik.")
    dims = DimensionProfile.from_json(db_soul.dimensions)
    assert dims.knowledge.score == 40
    assert dims.personality.score == 10
    human = llm.calls[0][1].content
    assert "Profile Version: v1" in human
    assert "NEW FRAGMENTS TO MERGE (total: 10)" in human


@pytest.mark.parametrize("llm", [FakeLlm(error=RuntimeError("quota")), FakeLlm(answer="no json here")])
def test_llm_failure_falls_back(session_factory, clock, llm):
    soul, claw = seeded_soul(session_factory), make_claw(session_factory)
    add_accepted(session_factory, soul, claw, [("knowledge", 0.8)] * 10)

    condensation = CondensationEngine(session_factory, llm=llm, clock=clock).maybe_condense(soul.id)

    assert condensation is not None
    db_soul, _, _ = load(session_factory, soul.id)
    assert "--- Updated Knowledge (v2) ---" in db_soul.system_prompt


def test_three_condensations_make_the_soul_evolve(session_factory, clock):
    soul, claw = seeded_soul(session_factory), make_claw(session_factory)
    engine = CondensationEngine(session_factory, clock=clock)
    for _ in range(3):
        add_accepted(session_factory, soul, claw, [("stance", 0.5)] * 10)
        assert engine.maybe_condense(soul.id) is not None

    db_soul, conds, _ = load(session_factory, soul.id)
    assert [c.version_to for c in conds] == [2, 3, 4]
    assert db_soul.stage == STAGE_EVOLVING


def test_merged_summaries_stay_bounded(session_factory, clock):
    engine = CondensationEngine(session_factory, clock=clock)
    profile = DimensionProfile()
    for i in range(40):
        fragment = FragmentSnapshot(id=f"f{i}", dimension="style", content=f"round {i} " + "w" * 150, confidence=0.5)
        profile = engine.weighted_merge(profile, [fragment])

    summary = profile.style.summary
    assert len(summary) <= SUMMARY_MAX_CHARS
    assert summary.startswith("...")
    assert "round 39" in summary
    assert "round 0 " not in summary


def test_cap_summary_leaves_short_text_alone():
    assert cap_summary("short") == "short"
    capped = cap_summary("alpha " * 200, limit=50)
    assert len(capped) <= 50
    assert capped.startswith("...alpha")
