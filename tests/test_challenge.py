"""
Tests for challenge issuance, verification and clearance tokens.
"""

import re

import pytest

from bastion.errors import ChallengeError
from bastion.mitigation.challenge import ChallengeManager, ChallengeType, pow_digest, solve_pow

IP = "203.0.113.10"
T0 = 1_700_000_000.0


@pytest.fixture
def manager(config):
    config.pow_difficulty = 2
    return ChallengeManager(config)


def test_issue_pow(manager):
    challenge = manager.issue(IP, now=T0)
    assert challenge.type is ChallengeType.POW
    assert challenge.difficulty == 2
    assert challenge.expires_at == T0 + 300
    assert re.fullmatch(r"[0-9a-f]{32}", challenge.challenge_id)
    assert len(manager) == 1


def test_client_view_hides_answer(manager):
    challenge = manager.issue(IP, ChallengeType.COMPUTE, now=T0)
    data = challenge.to_dict()
    assert "answer" not in data
    assert data["question"].startswith("What is ")
    assert data["type"] == "compute"
    assert data["difficulty"] == 0


def test_pow_round(manager):
    challenge = manager.issue(IP, now=T0)
    nonce = solve_pow(challenge.challenge_id, challenge.difficulty)
    assert pow_digest(challenge.challenge_id, nonce).startswith("00")
    token = manager.verify(challenge.challenge_id, IP, nonce=nonce, now=T0 + 5)
    assert manager.verify_clearance(token, IP, now=T0 + 10)
    assert manager.verify_clearance(token, IP, now=T0 + 10, require=ChallengeType.POW)


def test_compute_round(manager):
    challenge = manager.issue(IP, "compute", now=T0)
    token = manager.verify(challenge.challenge_id, IP, answer=challenge.answer, now=T0 + 5)
    assert token.startswith(f"{IP}|")
    assert manager.clearance_type(token, IP, now=T0 + 10) is ChallengeType.COMPUTE
    assert manager.verify_clearance(token, IP, now=T0 + 10)
    assert not manager.verify_clearance(token, IP, now=T0 + 10, require=ChallengeType.POW)


def test_wrong_solutions(manager):
    pow_challenge = manager.issue(IP, now=T0)
    with pytest.raises(ChallengeError, match="incorrect solution"):
        manager.verify(pow_challenge.challenge_id, IP, now=T0 + 1)

    compute = manager.issue(IP, ChallengeType.COMPUTE, now=T0)
    with pytest.raises(ChallengeError) as exc:
        manager.verify(compute.challenge_id, IP, answer=compute.answer + 1, now=T0 + 1)
    assert exc.value.status_code == 400
    # one attempt only: the right answer now finds nothing to solve
    with pytest.raises(ChallengeError, match="unknown challenge"):
        manager.verify(compute.challenge_id, IP, answer=compute.answer, now=T0 + 2)
    assert len(manager) == 0


def test_single_use(manager):
    challenge = manager.issue(IP, ChallengeType.COMPUTE, now=T0)
    manager.verify(challenge.challenge_id, IP, answer=challenge.answer, now=T0 + 1)
    with pytest.raises(ChallengeError) as exc:
        manager.verify(challenge.challenge_id, IP, answer=challenge.answer, now=T0 + 2)
    assert exc.value.status_code == 410


def test_expired(manager):
    challenge = manager.issue(IP, ChallengeType.COMPUTE, now=T0)
    with pytest.raises(ChallengeError) as exc:
        manager.verify(challenge.challenge_id, IP, answer=challenge.answer, now=T0 + 300)
    assert exc.value.status_code == 410
    assert len(manager) == 0


def test_unknown_and_wrong_client(manager):
    with pytest.raises(ChallengeError, match="unknown challenge"):
        manager.verify("deadbeef", IP)
    challenge = manager.issue(IP, ChallengeType.COMPUTE, now=T0)
    with pytest.raises(ChallengeError, match="different client"):
        manager.verify(challenge.challenge_id, "198.51.100.1", answer=challenge.answer, now=T0 + 1)


def test_bad_challenge_type(manager):
    with pytest.raises(ValueError):
        manager.issue(IP, "captcha")


# ── Clearance ────────────────────────────────────────────


def test_clearance_bound_to_ip_and_time(manager):
    token = manager.issue_clearance(IP, now=T0)
    assert manager.verify_clearance(token, IP, now=T0 + 3599)
    assert not manager.verify_clearance(token, IP, now=T0 + 3600)
    assert not manager.verify_clearance(token, "198.51.100.1", now=T0)


def test_clearance_rejects_tampering(manager):
    token = manager.issue_clearance(IP, now=T0)
    ip, expires, kind, sig = token.split("|")
    assert kind == "pow"
    assert not manager.verify_clearance(f"{ip}|{int(expires) + 86400}|{kind}|{sig}", IP, now=T0)
    assert not manager.verify_clearance(f"{ip}|{expires}|compute|{sig}", IP, now=T0)
    assert not manager.verify_clearance(f"{ip}|{expires}|{sig}", IP, now=T0)
    assert not manager.verify_clearance(None, IP)
    assert not manager.verify_clearance("garbage", IP)
    assert not manager.verify_clearance(f"{IP}|soon|{kind}|{sig}", IP, now=T0)


def test_clearance_needs_matching_secret(config):
    token = ChallengeManager(config).issue_clearance(IP, now=T0)
    config.challenge_secret = "another-secret"
    assert not ChallengeManager(config).verify_clearance(token, IP, now=T0)


# ── Maintenance ──────────────────────────────────────────


def test_purge(manager):
    solved = manager.issue(IP, ChallengeType.COMPUTE, now=T0)
    manager.verify(solved.challenge_id, IP, answer=solved.answer, now=T0 + 1)
    manager.issue(IP, now=T0 - 400)
    manager.issue(IP, now=T0)
    assert manager.purge(now=T0 + 10) == 2
    assert len(manager) == 1


def test_render_page(manager):
    challenge = manager.issue(IP, now=T0)
    page = ChallengeManager.render_page(challenge, "DEF-TEST-ABCDEF")
    assert challenge.challenge_id in page
    assert "DEF-TEST-ABCDEF" in page
    assert '"0".repeat(2)' in page
    assert "/api/bastion/challenge/verify" in page


def test_wrong_nonce_spends_pow_challenge(manager):
    challenge = manager.issue(IP, now=T0)
    wrong = next(str(n) for n in range(1000) if not pow_digest(challenge.challenge_id, str(n)).startswith("00"))
    with pytest.raises(ChallengeError, match="incorrect solution"):
        manager.verify(challenge.challenge_id, IP, nonce=wrong, now=T0 + 1)
    nonce = solve_pow(challenge.challenge_id, challenge.difficulty)
    with pytest.raises(ChallengeError, match="unknown challenge"):
        manager.verify(challenge.challenge_id, IP, nonce=nonce, now=T0 + 2)


def test_reward_once_per_window(manager):
    assert manager.claim_reward(IP, now=T0)
    assert not manager.claim_reward(IP, now=T0 + 3599)
    assert manager.claim_reward("198.51.100.1", now=T0)
    assert manager.claim_reward(IP, now=T0 + 3600)

