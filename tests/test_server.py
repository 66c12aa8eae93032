import inspect

import pytest
from eth_account import Account
from fastapi.testclient import TestClient

import server
from ensoul import settings
from ensoul.backend import Backend
from ensoul.curation import Verdict
from ensoul.settings import Tuning

from conftest import ScriptedJudge, batch_items, sign

OPERATOR_KEY = "op-secret"


@pytest.fixture
def judge():
    return ScriptedJudge(by_dimension={"stance": Verdict(verdict="reject", confidence=0.2, reason="Off-topic")})


@pytest.fixture
def backend(session_factory, clock, judge):
    return Backend(session_factory, tuning=Tuning(), llm=None, judge=judge, chain_client=None, clock=clock)


@pytest.fixture
def client(backend, monkeypatch):
    monkeypatch.setattr(settings, "CURATION_MODE", "inline")
    monkeypatch.setattr(settings, "OPERATOR_KEY", OPERATOR_KEY)
    server.app.dependency_overrides[server.get_backend] = lambda: backend
    with TestClient(server.app) as c:
        yield c
    server.app.dependency_overrides.clear()


@pytest.fixture
def wallet():
    return Account.create()


def login(client, clock, wallet):
    message = f"ensoul:login:{clock.unix()}"
    r = client.post("/api/auth/login", json={
        "address": wallet.address,
        "signature": sign(wallet, message),
        "message": message,
    })
    assert r.status_code == 200, r.text
    token = r.cookies["ensoul_session"]
    # the cookie would take precedence over the header in later requests
    client.cookies.clear()
    return {"X-Session-Token": token}


def register_and_claim(client, session_headers, name="scout"):
    r = client.post("/api/claw/register", json={"name": name, "description": "reads a lot"})
    assert r.status_code == 201, r.text
    claw = r.json()["claw"]
    code = claw["claim_url"].rsplit("/", 1)[-1]
    r = client.post("/api/claw/claim/verify", json={"claim_code": code}, headers=session_headers)
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {claw['api_key']}"}


def mint(client, session_headers, wallet, handle="vitalik"):
    r = client.post("/api/shell/mint", headers=session_headers, json={
        "handle": handle,
        "signature": sign(wallet, f"ensoul:mint:{handle}"),
        "preview": {"seed_summary": "Ethereum co-founder."},
    })
    assert r.status_code == 201, r.text
    return r.json()


def test_full_lifecycle(client, clock, wallet):
    session = login(client, clock, wallet)
    assert client.get("/api/auth/session", headers=session).json() == {"address": wallet.address}

    claw = register_and_claim(client, session)
    status = client.get("/api/claw/status", headers=claw).json()
    assert status["claimed"] is True

    soul = mint(client, session, wallet)
    assert soul["stage"] == "embryo"

    r = client.post("/api/fragment/batch", headers=claw, json={"handle": "vitalik", "fragments": batch_items()})
    assert r.status_code == 201, r.text
    batch = r.json()
    assert batch["count"] == 3

    # the inline review ran as a background task once the response was sent
    listed = client.get("/api/fragment/list", params={"handle": "vitalik"}).json()
    by_dim = {f["dimension"]: f for f in listed["fragments"]}
    assert by_dim["personality"]["status"] == "accepted"
    assert by_dim["stance"]["status"] == "rejected"
    assert by_dim["stance"]["reject_reason"] == "Off-topic"

    soul = client.get("/api/shell/vitalik").json()
    assert soul["stage"] == "growing"
    assert (soul["total_frags"], soul["accepted_frags"], soul["total_claws"]) == (3, 2, 1)
    assert "system_prompt" not in soul

    me = client.get("/api/claw/me", headers=claw).json()
    assert me["claw"]["name"] == "scout"
    assert me["overview"]["total_submitted"] == 3
    assert me["overview"]["total_accepted"] == 2

    contributions = client.get("/api/claw/contributions", headers=claw).json()
    assert contributions["total"] == 3

    fragment = client.get(f"/api/fragment/{batch['fragments'][0]['id']}").json()
    assert fragment["handle"] == "vitalik"


def test_login_sets_http_only_cookie(client, clock, wallet):
    message = f"ensoul:login:{clock.unix()}"
    r = client.post("/api/auth/login", json={
        "address": wallet.address, "signature": sign(wallet, message), "message": message,
    })
    cookie = r.headers["set-cookie"].lower()
    assert "ensoul_session=" in cookie
    assert "httponly" in cookie
    assert "samesite=lax" in cookie


def test_logout(client, clock, wallet):
    session = login(client, clock, wallet)
    assert client.post("/api/auth/logout", headers=session).status_code == 200
    r = client.get("/api/auth/session", headers=session)
    assert r.status_code == 401
    assert r.json()["error"] == "unauthenticated"


def test_batch_requires_api_key(client):
    r = client.post("/api/fragment/batch", json={"handle": "vitalik", "fragments": batch_items()})
    assert r.status_code == 401
    r = client.post("/api/fragment/batch", headers={"Authorization": "Bearer ensoul_sk_unknown"},
                    json={"handle": "vitalik", "fragments": batch_items()})
    assert r.status_code == 401


def test_unclaimed_claw_is_refused(client, clock, wallet):
    session = login(client, clock, wallet)
    mint(client, session, wallet)
    api_key = client.post("/api/claw/register", json={"name": "lonely"}).json()["claw"]["api_key"]

    r = client.post("/api/fragment/batch", headers={"Authorization": f"Bearer {api_key}"},
                    json={"handle": "vitalik", "fragments": batch_items()})
    assert r.status_code == 403
    assert r.json()["error"] == "not_claimed"


def test_batch_error_codes(client, clock, wallet):
    session = login(client, clock, wallet)
    claw = register_and_claim(client, session)
    mint(client, session, wallet)

    r = client.post("/api/fragment/batch", headers=claw,
                    json={"handle": "vitalik", "fragments": batch_items(("personality", "vibes", "stance"))})
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "unknown_dimension"
    assert "timeline" in body["valid_dimensions"]

    r = client.post("/api/fragment/batch", headers=claw,
                    json={"handle": "vitalik", "fragments": batch_items(("personality", "personality", "stance"))})
    assert r.json()["error"] == "duplicate_dimension"

    r = client.post("/api/fragment/batch", headers=claw, json={"handle": "vitalik", "fragments": "nope"})
    assert r.json()["error"] == "invalid_shape"

    r = client.post("/api/fragment/batch", headers=claw, json={"fragments": batch_items()})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_shape"

    r = client.post("/api/fragment/batch", headers=claw, json={"handle": "ghost", "fragments": batch_items()})
    assert r.status_code == 404

    assert client.post("/api/fragment/batch", headers=claw,
                       json={"handle": "vitalik", "fragments": batch_items()}).status_code == 201
    r = client.post("/api/fragment/batch", headers=claw, json={"handle": "vitalik", "fragments": batch_items()})
    assert r.status_code == 429
    assert r.json()["error"] == "cooldown"
    assert r.json()["retry_after"] == 300


def test_single_submit_is_retired(client):
    r = client.post("/api/fragment/submit", json={"handle": "vitalik", "dimension": "style", "content": "x"})
    assert r.status_code == 410
    assert r.json()["error"] == "retired"


def test_mint_confirm_and_history(client, clock, wallet):
    session = login(client, clock, wallet)
    mint(client, session, wallet, handle="alice")

    r = client.post("/api/shell/mint", headers=session, json={
        "handle": "alice", "signature": sign(wallet, "ensoul:mint:alice"),
    })
    assert r.status_code == 409
    assert r.json()["error"] == "handle_taken"

    tx = "0x" + "ab" * 32
    r = client.post("/api/shell/confirm", headers=session, json={"handle": "alice", "tx_hash": tx, "agent_id": 42})
    assert r.json() == {"status": "confirmed", "handle": "alice", "agent_id": 42, "mint_tx_hash": tx}

    stranger = login(client, clock, Account.create())
    r = client.post("/api/shell/confirm", headers=stranger, json={"handle": "alice", "tx_hash": tx})
    assert r.status_code == 403

    r = client.post("/api/shell/confirm", headers=session, json={"handle": "alice", "tx_hash": tx, "agent_id": -1})
    assert r.status_code == 400

    assert client.get("/api/shell/alice/history").json() == {"handle": "alice", "history": []}
    assert client.get("/api/shell/alice/dimensions").json()["profile_version"] == 1
    assert client.get("/api/shell/nobody").status_code == 404


def test_mint_requires_session(client, wallet):
    r = client.post("/api/shell/mint", json={"handle": "alice", "signature": sign(wallet, "ensoul:mint:alice")})
    assert r.status_code == 401


def test_operator_condense(client, clock, wallet):
    session = login(client, clock, wallet)
    claw = register_and_claim(client, session)
    mint(client, session, wallet)
    client.post("/api/fragment/batch", headers=claw, json={"handle": "vitalik", "fragments": batch_items()})

    assert client.post("/api/shell/vitalik/condense").status_code == 403
    r = client.post("/api/shell/vitalik/condense", headers={"X-Operator-Key": "wrong"})
    assert r.status_code == 403
    assert r.json()["error"] == "operator_only"

    r = client.post("/api/shell/vitalik/condense", headers={"X-Operator-Key": OPERATOR_KEY})
    body = r.json()
    assert body["condensed"] is True
    assert (body["version_from"], body["version_to"], body["frags_merged"]) == (1, 2, 2)

    r = client.post("/api/shell/vitalik/condense", headers={"X-Operator-Key": OPERATOR_KEY})
    assert r.json()["condensed"] is False

    history = client.get("/api/shell/vitalik/history").json()["history"]
    assert [h["version_to"] for h in history] == [2]

    report = client.get("/api/admin/stale-pending", headers={"X-Operator-Key": OPERATOR_KEY}).json()
    assert report["count"] == 0


def test_key_bindings_endpoints(client, clock, wallet):
    session = login(client, clock, wallet)
    api_key = client.post("/api/claw/register", json={"name": "helper"}).json()["claw"]["api_key"]

    r = client.post("/api/claw/keys", headers=session, json={"api_key": api_key})
    assert r.status_code == 201
    binding_id = r.json()["id"]
    assert client.post("/api/claw/keys", headers=session, json={"api_key": api_key}).status_code == 409

    keys = client.get("/api/claw/keys", headers=session).json()["claws"]
    assert [k["id"] for k in keys] == [binding_id]

    dashboard = client.get(f"/api/claw/keys/{binding_id}/dashboard", headers=session).json()
    assert dashboard["overview"]["total_submitted"] == 0

    assert client.delete(f"/api/claw/keys/{binding_id}", headers=session).status_code == 200
    assert client.delete(f"/api/claw/keys/{binding_id}", headers=session).status_code == 404


def test_register_validation(client):
    r = client.post("/api/claw/register", json={"name": "bad/name"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_name"
    client.post("/api/claw/register", json={"name": "taken"})
    assert client.post("/api/claw/register", json={"name": "TAKEN"}).status_code == 409


def test_api_handlers_are_plain_functions():
    # sync handlers run in the threadpool, so blocking DB and LLM calls never stall the event loop
    endpoints = [r for r in server.app.routes if getattr(r, "path", "").startswith("/api/")]
    assert endpoints
    assert [r.path for r in endpoints if inspect.iscoroutinefunction(r.endpoint)] == []


def confirm(client, session_headers, handle="vitalik"):
    r = client.post("/api/shell/confirm", headers=session_headers,
                    json={"handle": handle, "tx_hash": "0x" + "cd" * 32, "agent_id": 7})
    assert r.status_code == 200, r.text


def test_public_reads(client, clock, wallet):
    assert client.get("/api/health").json() == {"status": "ok", "service": "ensoul-server"}

    session = login(client, clock, wallet)
    r = client.post("/api/claw/register", json={"name": "scout"})
    code = r.json()["claw"]["claim_url"].rsplit("/", 1)[-1]
    info = client.get(f"/api/claw/claim/{code}").json()
    assert info == {"name": "scout", "verification_code": info["verification_code"], "status": "pending_claim"}
    assert client.get("/api/claw/claim/ensoul_claim_nope").status_code == 404

    api_key = r.json()["claw"]["api_key"]
    claw_id = r.json()["claw"]["id"]
    client.post("/api/claw/claim/verify", json={"claim_code": code}, headers=session)
    claw = {"Authorization": f"Bearer {api_key}"}
    mint(client, session, wallet)
    assert client.get("/api/shell/list").json()["total"] == 0
    confirm(client, session)
    client.post("/api/fragment/batch", headers=claw, json={"handle": "vitalik", "fragments": batch_items()})

    listed = client.get("/api/shell/list", params={"stage": "growing", "sort": "hot", "search": "vit"}).json()
    assert [s["handle"] for s in listed["shells"]] == ["vitalik"]
    assert client.get("/api/shell/list", params={"stage": "larva"}).status_code == 400

    contributors = client.get("/api/shell/vitalik/contributors").json()["contributors"]
    assert [(c["name"], c["accepted_frags"]) for c in contributors] == [("scout", 2)]

    board = client.get("/api/claw/leaderboard").json()["leaderboard"]
    assert [(e["rank"], e["name"], e["total_accepted"]) for e in board] == [(1, "scout", 2)]
    profile = client.get(f"/api/claw/profile/{claw_id}").json()
    assert profile["claw"]["accept_rate"] == "66.7%"
    assert client.get("/api/claw/profile/missing").status_code == 404
    assert client.get("/api/claw/dashboard", headers=claw).json()["overview"]["total_submitted"] == 3

    assert client.get("/api/stats").json() == {"souls": 1, "fragments": 3, "claws": 1, "chats": 0}
    tasks = client.get("/api/tasks").json()["tasks"]
    assert {t["handle"] for t in tasks} == {"vitalik"}


def test_chat_over_http(client, clock, wallet):
    session = login(client, clock, wallet)
    claw = register_and_claim(client, session)
    mint(client, session, wallet)
    assert client.post("/api/chat/vitalik/session").json()["error"] == "not_minted"
    confirm(client, session)
    client.post("/api/fragment/batch", headers=claw, json={"handle": "vitalik", "fragments": batch_items()})

    guest = client.post("/api/chat/vitalik/session").json()
    assert guest["tier"] == "guest"
    r = client.post(f"/api/chat/sessions/{guest['id']}/message", json={"message": "gm"})
    assert r.status_code == 200, r.text
    assert "@vitalik" in r.json()["content"]
    assert len(client.get(f"/api/chat/sessions/{guest['id']}").json()["messages"]) == 2

    private = client.post("/api/chat/vitalik/session", headers=session).json()
    assert private["tier"] == "free"
    assert client.get(f"/api/chat/sessions/{private['id']}").status_code == 403
    assert client.post(f"/api/chat/sessions/{private['id']}/message", json={"message": "gm"}).status_code == 403
    assert [s["id"] for s in client.get("/api/chat/sessions", headers=session).json()["sessions"]] == [private["id"]]
    assert client.get("/api/chat/sessions").status_code == 401

    assert client.delete(f"/api/chat/sessions/{private['id']}", headers=session).json() == {"status": "deleted"}
    assert client.get("/api/stats").json()["chats"] == 1
