"""
Tests for the incident audit log.
"""

import pytest

from bastion.detection.fusion import new_incident_id
from bastion.detection.types import Action, Decision, ThreatSource, ThreatVector
from bastion.storage.database import IncidentLog


@pytest.fixture
async def log(config):
    incidents = IncidentLog(config)
    await incidents.init_db()
    yield incidents
    await incidents.close()


def _decision(action: Action = Action.BLOCK, score: float = 91.0) -> Decision:
    return Decision(
        action=action,
        score=score,
        confidence=80.0,
        incident_id=new_incident_id(),
        vectors=(ThreatVector("patterns", score, 80.0, ThreatSource.RULES, ("SQL_INJECTION",)),),
        reason=f"score {score:.1f} ≥ block 88",
    )


async def test_record_and_get(log):
    decision = _decision()
    await log.record(decision, "203.0.113.10", identity="ip:203.0.113.10",
                     path="/search", method="GET", user_agent="sqlmap/1.7")

    incident = await log.get(decision.incident_id)
    data = incident.to_dict()
    assert data["action"] == "BLOCK"
    assert data["source_ip"] == "203.0.113.10"
    assert data["threat_score"] == pytest.approx(91.0)
    assert data["feedback"] is None
    assert data["vectors"][0]["details"] == ["SQL_INJECTION"]
    assert data["timestamp"]


async def test_get_unknown(log):
    assert await log.get("DEF-NOPE") is None


async def test_mark_feedback(log):
    decision = _decision()
    await log.record(decision, "203.0.113.10")
    assert await log.mark_feedback(decision.incident_id, "false_positive")
    assert (await log.get(decision.incident_id)).feedback == "false_positive"
    assert not await log.mark_feedback("DEF-NOPE", "false_positive")


async def test_recent_newest_first(log):
    ids = []
    for score in (55.0, 75.0, 99.0):
        decision = _decision(Action.CHALLENGE, score)
        ids.append(decision.incident_id)
        await log.record(decision, "203.0.113.10")

    recent = await log.recent(limit=2)
    assert [i.incident_id for i in recent] == [ids[2], ids[1]]


async def test_long_paths_are_truncated(log):
    decision = _decision()
    await log.record(decision, "203.0.113.10", path="/a" * 3000)
    assert len((await log.get(decision.incident_id)).path) == 2048
