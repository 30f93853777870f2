"""
Tests for the API endpoints and the reverse-proxy route.
"""

import re

import httpx
import pytest
from httpx import AsyncClient, ASGITransport

from bastion.main import create_app
from bastion.mitigation.challenge import CLEARANCE_COOKIE, ChallengeType, solve_pow
from bastion.proxy.handler import ADMIN_PREFIX

API = ADMIN_PREFIX
ADMIN_KEY = "test-admin-key"
ADMIN = {"X-Admin-Key": ADMIN_KEY}


def _upstream(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/down":
        raise httpx.ConnectError("connection refused", request=request)
    return httpx.Response(
        200,
        json={
            "path": request.url.path,
            "forwarded_for": request.headers.get("x-forwarded-for"),
            "score": request.headers.get("x-bastion-score"),
        },
        headers={"x-upstream": "yes"},
    )


@pytest.fixture
async def app(config):
    """App wired with a temp audit DB and a mocked upstream."""
    config.pow_difficulty = 1
    config.admin_api_key = ADMIN_KEY
    application = create_app(config)
    await application.state.incidents.init_db()
    application.state.http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(_upstream), base_url="http://upstream",
    )
    yield application
    await application.state.orchestrator.drain()
    await application.state.http_client.aclose()
    await application.state.incidents.close()


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ── Health & stats ───────────────────────────────────────


@pytest.mark.asyncio
async def test_health_check(client):
    resp = await client.get(f"{API}/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["redis"] is False
    assert data["open_circuits"] == []


@pytest.mark.asyncio
async def test_get_stats(client):
    await client.get("/")
    resp = await client.get(f"{API}/stats")
    assert resp.status_code == 200
    data = resp.json()
    assert "uptime" in data
    assert data["environment"] == "production"
    assert data["traffic"]["total_requests"] == 1
    assert data["traffic"]["forwarded_requests"] == 1
    assert "thresholds" in data["engine"]["decision"]


@pytest.mark.asyncio
async def test_breakers_snapshot(client):
    await client.get("/")
    resp = await client.get(f"{API}/breakers")
    assert resp.status_code == 200
    data = resp.json()
    assert data["throttle"] is False
    assert data["breakers"]["patterns"]["state"] == "closed"


@pytest.mark.asyncio
async def test_docs_live_under_admin_prefix(client):
    resp = await client.get(f"{API}/openapi.json")
    assert resp.status_code == 200
    assert f"{API}/health" in resp.json()["paths"]


@pytest.mark.asyncio
async def test_unknown_admin_path_is_not_proxied(client):
    resp = await client.get(f"{API}/nope")
    assert resp.status_code == 404


# ── Proxy ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_clean_request_is_forwarded(client):
    resp = await client.get("/courses/42")
    assert resp.status_code == 200
    body = resp.json()
    assert body["path"] == "/courses/42"
    assert body["forwarded_for"] == "127.0.0.1"
    assert body["score"] is not None
    assert resp.headers["x-upstream"] == "yes"
    assert resp.headers["x-defense-action"] == "ALLOW"
    assert resp.headers["x-incident-id"].startswith("DEF-")
    assert resp.headers["x-circuit-state"] == "closed"


@pytest.mark.asyncio
async def test_upstream_failure_returns_502(client):
    resp = await client.get("/down")
    assert resp.status_code == 502
    assert resp.headers["x-defense-action"] == "ALLOW"


@pytest.mark.asyncio
async def test_attack_is_challenged_and_listed_in_events(client):
    resp = await client.get("/search", params={"q": "' OR '1'='1"})
    assert resp.status_code == 403
    assert resp.json()["error"] == "challenge_required"
    assert resp.headers["x-defense-action"] == "CHALLENGE"

    events = (await client.get(f"{API}/events")).json()
    assert events["count"] == 1
    assert events["events"][0]["action"] == "CHALLENGE"
    assert events["events"][0]["path"] == "/search"


@pytest.mark.asyncio
async def test_incidents_endpoint_lists_recorded_decisions(app, client):
    await client.get("/search", params={"q": "' OR '1'='1"})
    await app.state.orchestrator.drain()

    resp = await client.get(f"{API}/incidents", params={"limit": 10})
    data = resp.json()
    assert data["count"] == 1
    assert data["incidents"][0]["action"] == "CHALLENGE"
    assert data["incidents"][0]["source_ip"] == "127.0.0.1"


@pytest.mark.asyncio
async def test_disallowed_method_rejected(client):
    resp = await client.request("TRACE", "/")
    assert resp.status_code == 405


# ── Reputation ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_reputation_unknown_identity(client):
    resp = await client.get(f"{API}/reputation/198.51.100.99")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_reputation_after_request(client):
    await client.get("/")
    resp = await client.get(f"{API}/reputation/127.0.0.1")
    assert resp.status_code == 200
    data = resp.json()
    assert data["reputation"]["session_count"] == 1
    assert data["profile"]["request_count"] == 1


# ── Trust registry ───────────────────────────────────────


@pytest.mark.asyncio
async def test_trust_registry_crud(client):
    before = (await client.get(f"{API}/trust")).json()["count"]

    resp = await client.post(f"{API}/trust", headers=ADMIN, json={
        "type": "ip", "value": "198.51.100.7", "trust_level": "HIGH", "name": "partner",
    })
    assert resp.status_code == 201
    source_id = resp.json()["id"]
    assert (await client.get(f"{API}/trust")).json()["count"] == before + 1

    assert (await client.delete(f"{API}/trust/{source_id}", headers=ADMIN)).status_code == 200
    assert (await client.delete(f"{API}/trust/{source_id}", headers=ADMIN)).status_code == 404


@pytest.mark.asyncio
async def test_trust_rejects_bad_cidr(client):
    resp = await client.post(f"{API}/trust", headers=ADMIN, json={
        "type": "ip_range", "value": "not-a-network", "trust_level": "MEDIUM",
    })
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_trust_rejects_unknown_level(client):
    resp = await client.post(f"{API}/trust", headers=ADMIN, json={
        "type": "ip", "value": "198.51.100.7", "trust_level": "SUPREME",
    })
    assert resp.status_code == 422


# ── Classifier ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_feedback_relabels_sample(app, client):
    resp = await client.get("/")
    incident_id = resp.headers["x-incident-id"]

    resp = await client.post(f"{API}/feedback", headers=ADMIN, json={
        "incident_id": incident_id, "verdict": "confirmed_threat",
    })
    assert resp.status_code == 200
    data = resp.json()
    assert data["sample_updated"] is True
    assert data["incident_updated"] is False
    assert app.state.engine.classifier.info()["feedback_pending"] == 1


@pytest.mark.asyncio
async def test_feedback_unknown_incident(client):
    resp = await client.post(f"{API}/feedback", headers=ADMIN, json={
        "incident_id": "DEF-NOPE-000000", "verdict": "false_positive",
    })
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_feedback_rejects_unknown_verdict(client):
    resp = await client.post(f"{API}/feedback", headers=ADMIN, json={"incident_id": "x", "verdict": "maybe"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_ml_status(client):
    resp = await client.get(f"{API}/ml/status")
    assert resp.status_code == 200
    data = resp.json()
    assert data["version"] == 0
    assert data["labeled_samples"] == 0


@pytest.mark.asyncio
async def test_ml_train_requires_labeled_samples(client):
    resp = await client.post(f"{API}/ml/train", headers=ADMIN)
    assert resp.status_code == 400


# ── Blocklist ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_blocklist_without_redis(client):
    assert (await client.post(f"{API}/block", headers=ADMIN, json={"ip": "198.51.100.1"})).status_code == 200
    data = (await client.get(f"{API}/blocked")).json()
    assert data == {"blocked_ips": [], "count": 0}
    assert (await client.post(f"{API}/unblock", headers=ADMIN, json={"ip": "198.51.100.1"})).status_code == 200


# ── Challenge flow ───────────────────────────────────────


@pytest.mark.asyncio
async def test_challenge_issue_and_verify(app, client):
    resp = await client.post(f"{API}/challenge")
    assert resp.status_code == 200
    challenge = resp.json()
    assert challenge["type"] == "pow"
    assert "answer" not in challenge

    nonce = solve_pow(challenge["challenge_id"], challenge["difficulty"])
    resp = await client.post(f"{API}/challenge/verify", json={
        "challenge_id": challenge["challenge_id"], "nonce": nonce,
    })
    assert resp.status_code == 200
    assert resp.json() == {"status": "verified", "trust": 75.0}
    assert CLEARANCE_COOKIE in resp.headers["set-cookie"]

    token = resp.headers["set-cookie"].split(";")[0].split("=", 1)[1]
    assert app.state.engine.challenges.verify_clearance(token, "127.0.0.1")


@pytest.mark.asyncio
async def test_challenge_cannot_be_replayed(client):
    challenge = (await client.post(f"{API}/challenge", json={"type": "pow"})).json()
    nonce = solve_pow(challenge["challenge_id"], challenge["difficulty"])
    payload = {"challenge_id": challenge["challenge_id"], "nonce": nonce}

    assert (await client.post(f"{API}/challenge/verify", json=payload)).status_code == 200
    resp = await client.post(f"{API}/challenge/verify", json=payload)
    assert resp.status_code == 410


@pytest.mark.asyncio
async def test_challenge_wrong_answer(client):
    challenge = (await client.post(f"{API}/challenge", json={"type": "compute"})).json()
    resp = await client.post(f"{API}/challenge/verify", json={
        "challenge_id": challenge["challenge_id"], "answer": -1,
    })
    assert resp.status_code == 400
    assert resp.json()["detail"] == "incorrect solution"


@pytest.mark.asyncio
async def test_challenge_unknown_id(client):
    resp = await client.post(f"{API}/challenge/verify", json={"challenge_id": "missing", "nonce": "1"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_compute_solve_earns_no_trust(app, client):
    challenge = (await client.post(f"{API}/challenge", json={"type": "compute"})).json()
    a, b = map(int, re.findall(r"\d+", challenge["question"]))
    resp = await client.post(f"{API}/challenge/verify", json={
        "challenge_id": challenge["challenge_id"], "answer": a + b,
    })
    assert resp.status_code == 200
    assert resp.json()["trust"] == 50.0

    token = resp.headers["set-cookie"].split(";")[0].split("=", 1)[1]
    assert app.state.engine.challenges.clearance_type(token, "127.0.0.1") is ChallengeType.COMPUTE


@pytest.mark.asyncio
async def test_pow_trust_bonus_once_per_window(client):
    trust = []
    for _ in range(3):
        challenge = (await client.post(f"{API}/challenge")).json()
        nonce = solve_pow(challenge["challenge_id"], challenge["difficulty"])
        resp = await client.post(f"{API}/challenge/verify", json={
            "challenge_id": challenge["challenge_id"], "nonce": nonce,
        })
        trust.append(resp.json()["trust"])
    assert trust == [75.0, 75.0, 75.0]


@pytest.mark.asyncio
async def test_wrong_answer_spends_challenge(client):
    challenge = (await client.post(f"{API}/challenge", json={"type": "compute"})).json()
    payload = {"challenge_id": challenge["challenge_id"], "answer": -1}
    assert (await client.post(f"{API}/challenge/verify", json=payload)).status_code == 400
    resp = await client.post(f"{API}/challenge/verify", json=payload)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "unknown challenge"


# ── Admin auth ───────────────────────────────────────────

ADMIN_CALLS = [
    ("POST", "/trust", {"type": "ip", "value": "127.0.0.1", "trust_level": "ABSOLUTE"}),
    ("DELETE", "/trust/trust_1_abcd1234", None),
    ("POST", "/feedback", {"incident_id": "DEF-NOPE-000000", "verdict": "false_positive"}),
    ("POST", "/ml/train", None),
    ("POST", "/block", {"ip": "198.51.100.1"}),
    ("POST", "/unblock", {"ip": "127.0.0.1"}),
]


@pytest.mark.asyncio
@pytest.mark.parametrize("method,path,body", ADMIN_CALLS)
async def test_admin_endpoint_requires_key(client, method, path, body):
    resp = await client.request(method, f"{API}{path}", json=body)
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Missing admin API key"


@pytest.mark.asyncio
@pytest.mark.parametrize("method,path,body", ADMIN_CALLS)
async def test_admin_endpoint_rejects_wrong_key(client, method, path, body):
    resp = await client.request(method, f"{API}{path}", json=body, headers={"X-Admin-Key": "guess"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_endpoints_closed_without_configured_key(app, client):
    app.state.config.admin_api_key = None
    resp = await client.post(f"{API}/block", headers=ADMIN, json={"ip": "198.51.100.1"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_read_endpoints_stay_open(client):
    assert (await client.get(f"{API}/trust")).status_code == 200
    assert (await client.get(f"{API}/blocked")).status_code == 200


@pytest.mark.asyncio
async def test_neutralized_client_cannot_trust_itself(app, client):
    attack = "/p?id=1%20union%20select%201"
    resp = await client.get(attack)
    assert resp.status_code == 403
    assert resp.headers["x-defense-action"] == "NEUTRALIZE"

    before = len(app.state.engine.trust)
    resp = await client.post(f"{API}/trust", json={
        "type": "ip", "value": "127.0.0.1", "trust_level": "ABSOLUTE",
    })
    assert resp.status_code == 401
    assert (await client.post(f"{API}/unblock", json={"ip": "127.0.0.1"})).status_code == 401
    assert len(app.state.engine.trust) == before

    resp = await client.get(attack)
    assert resp.headers["x-defense-action"] == "NEUTRALIZE"
