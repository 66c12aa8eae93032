import pytest
from sqlalchemy import select

from ensoul.entities import Claw, WalletQuota
from ensoul.errors import Conflict, CooldownActive
from ensoul.quota_guard import QuotaGuard

from conftest import make_claw


def test_batch_cooldown(session_factory, clock):
    claw = make_claw(session_factory)
    guard = QuotaGuard(clock=clock)

    session = session_factory()
    guard.claim_batch_slot(session, claw.id)
    session.commit()
    session.close()

    clock.advance(120)
    session = session_factory()
    with pytest.raises(CooldownActive) as exc:
        guard.claim_batch_slot(session, claw.id)
    session.rollback()
    session.close()
    assert exc.value.status == 429
    assert exc.value.to_body()["retry_after"] == 180

    clock.advance(180)
    session = session_factory()
    guard.claim_batch_slot(session, claw.id)
    session.commit()
    last = session.execute(select(Claw.last_batch_at).where(Claw.id == claw.id)).scalar_one()
    session.close()
    assert last == clock.now


def test_rolled_back_batch_does_not_consume_the_slot(session_factory, clock):
    claw = make_claw(session_factory)
    guard = QuotaGuard(clock=clock)

    session = session_factory()
    guard.claim_batch_slot(session, claw.id)
    session.rollback()
    session.close()

    session = session_factory()
    guard.claim_batch_slot(session, claw.id)
    session.commit()
    session.close()


def test_mint_ceiling_is_case_insensitive(session_factory):
    guard = QuotaGuard()
    wallet = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"

    for expected, addr in enumerate([wallet, wallet.lower(), wallet.upper().replace("0X", "0x")], start=1):
        session = session_factory()
        assert guard.claim_mint_slot(session, addr) == expected
        session.commit()
        session.close()

    session = session_factory()
    with pytest.raises(Conflict) as exc:
        guard.claim_mint_slot(session, wallet)
    session.rollback()
    session.close()
    assert exc.value.code == "mint_limit"

    session = session_factory()
    row = session.get(WalletQuota, wallet.lower())
    session.close()
    assert row.souls_minted == 3


def test_mint_slot_rolls_back_with_its_transaction(session_factory):
    guard = QuotaGuard()
    session = session_factory()
    guard.claim_mint_slot(session, "0x" + "11" * 20)
    session.rollback()
    session.close()

    session = session_factory()
    row = session.get(WalletQuota, "0x" + "11" * 20)
    session.close()
    assert row is None or row.souls_minted == 0
