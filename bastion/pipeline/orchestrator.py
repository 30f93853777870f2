"""
Bastion — Defense Orchestrator.

Sequences the whole per-request pipeline:

  1. Foundation (critical tier): blocklist → security guard →
     encryption enforcement → rate-limit tier
  2. Trust: ABSOLUTE registry match or auto-trusted identity take the fast
     path; a HIGH match raises the identity's trust before fusion
  3. Sanitizer: decoded path/query against the dangerous-pattern subset
  4. Detectors, concurrently, each behind its circuit breaker
  5. Fusion + decision, then action floors
  6. Execute the decision (block / challenge / rate-limit / allow, bypasses)
  7. Commit: reputation, profile, classifier sample
  8. Audit + alert (fire-and-forget), secondary tier, diagnostic headers

Anything unexpected escaping the pipeline is caught here and resolved by
the fail-open / fail-closed policy.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import unquote

from fastapi import Response

from bastion.alerts.dispatcher import AlertEvent, WebhookAlert
from bastion.config import Environment, Settings, settings as default_settings
from bastion.detection.behavior import AnomalyType, ProfileAnalysis
from bastion.detection.engine import DefenseEngine
from bastion.detection.features import FeatureVector
from bastion.detection.fusion import Floor, new_incident_id
from bastion.detection.patterns import PatternScan
from bastion.detection.trust import NOT_TRUSTED, TrustCheck
from bastion.detection.types import Action, Decision, ThreatSource, ThreatVector, TrustLevel
from bastion.errors import CriticalLayerError, MaliciousInputError
from bastion.geoip.lookup import GeoLocator, GeoResult
from bastion.mitigation.blocker import IPBlocker
from bastion.mitigation.challenge import CLEARANCE_COOKIE, ChallengeType
from bastion.mitigation.rate_limiter import RateLimiter, RateLimitStatus
from bastion.pipeline import responses
from bastion.pipeline.health import HealthMonitor
from bastion.proxy.context import RequestContext
from bastion.rules.engine import GeoVerdict, PolicyEngine
from bastion.storage.database import IncidentLog
from bastion.storage.reputation import INITIAL_TRUST, ClientReputation

logger = logging.getLogger("bastion.pipeline.orchestrator")

ALLOWED_METHODS = frozenset(["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
INSECURE_ALLOWED_PATHS = ("/health", "/api/health")
RATE_LIMIT_RETRY_AFTER = 45
SESSION_BYPASS_TRUST = 10.0
CREDENTIAL_BYPASS_TRUST = 15.0
HIGH_TRUST_BOOST = 30.0
PATTERN_BLOCK_SCORE = 70
PATTERN_CHALLENGE_SCORE = 30

TRUST_VECTOR_CONFIDENCE = {
    TrustLevel.HIGH: 90.0,
    TrustLevel.MEDIUM: 70.0,
    TrustLevel.LOW: 50.0,
}


@dataclass
class PipelineResult:
    """Outcome for one request: a terminal response, or headers to forward with."""
    response: Optional[Response] = None
    decision: Optional[Decision] = None
    headers: dict[str, str] = field(default_factory=dict)
    fast_path: Optional[str] = None

    @property
    def forward(self) -> bool:
        return self.response is None

    def finalize(self) -> Optional[Response]:
        if self.response is not None:
            for name, value in self.headers.items():
                self.response.headers[name] = value
        return self.response


@dataclass
class DetectorResults:
    vectors: list[ThreatVector] = field(default_factory=list)
    features: Optional[FeatureVector] = None
    analysis: Optional[ProfileAnalysis] = None
    scan: Optional[PatternScan] = None
    geo_verdict: Optional[GeoVerdict] = None


class Orchestrator:
    """Runs every proxied request through the defense pipeline."""

    def __init__(
        self,
        engine: DefenseEngine,
        *,
        config: Optional[Settings] = None,
        health: Optional[HealthMonitor] = None,
        policy: Optional[PolicyEngine] = None,
        rate_limiter: Optional[RateLimiter] = None,
        blocker: Optional[IPBlocker] = None,
        geo: Optional[GeoLocator] = None,
        incidents: Optional[IncidentLog] = None,
        alerts: Optional[WebhookAlert] = None,
    ) -> None:
        self.engine = engine
        self.config = config or engine.config or default_settings
        self.health = health or HealthMonitor(self.config)
        self.policy = policy or PolicyEngine()
        self.rate_limiter = rate_limiter
        self.blocker = blocker
        self.geo = geo
        self.incidents = incidents
        self.alerts = alerts
        self.stats: Counter[str] = Counter()
        self._background: set[asyncio.Task] = set()

    # ── Entry point ──────────────────────────────────────

    async def process(self, ctx: RequestContext) -> PipelineResult:
        """Never raises: failures resolve through the fail-open policy."""
        self.stats["total"] += 1
        headers: dict[str, str] = {}
        try:
            result = await self._foundation(ctx, headers)
            if result is None:
                result = await self._defend(ctx, headers)
        except CriticalLayerError as exc:
            incident_id = new_incident_id(ctx.timestamp)
            logger.error("Critical layer %s failed (%s): %s", exc.layer, incident_id, exc)
            self.stats["critical_failures"] += 1
            result = PipelineResult(
                response=responses.unavailable_response(incident_id, "critical_layer_failure"),
                headers={"X-Incident-Id": incident_id, "X-Defense-Layer": exc.layer},
            )
        except Exception:
            incident_id = new_incident_id(ctx.timestamp)
            logger.exception("Defense pipeline failed for %s %s (%s)", ctx.method, ctx.path, incident_id)
            self.stats["pipeline_errors"] += 1
            if self.config.fail_open:
                result = PipelineResult(headers={
                    **headers,
                    "X-Defense-Action": Action.ALLOW.value,
                    "X-Incident-Id": incident_id,
                    "X-Fail-Open": "1",
                })
            else:
                result = PipelineResult(
                    response=responses.unavailable_response(incident_id),
                    headers={"X-Incident-Id": incident_id},
                )

        result.headers["X-Circuit-State"] = ",".join(self.health.open_circuits()) or "closed"
        self.stats["forwarded" if result.forward else "terminated"] += 1
        result.finalize()
        return result

    def record_upstream(self, ctx: RequestContext, status_code: int) -> None:
        """Feed the upstream status back for failed-login tracking."""
        self.engine.profiler.record_auth_result(ctx.profile_key, ctx.path, status_code, ctx.timestamp)

    # ── Foundation (critical tier) ───────────────────────

    async def _foundation(self, ctx: RequestContext, headers: dict[str, str]) -> Optional[PipelineResult]:
        for layer in (self._blocklist, self._security_guard, self._encryption, self._rate_tier):
            try:
                result = await layer(ctx, headers)
            except (CriticalLayerError, MaliciousInputError):
                raise
            except Exception as exc:
                raise CriticalLayerError(layer.__name__.lstrip("_"), str(exc)) from exc
            if result is not None:
                return result
        return None

    async def _blocklist(self, ctx: RequestContext, headers: dict[str, str]) -> Optional[PipelineResult]:
        if self.blocker is None:
            return None
        try:
            blocked = await self.blocker.is_blocked(ctx.client_ip)
        except Exception:
            logger.warning("Blocklist lookup failed, treating %s as not blocked", ctx.client_ip, exc_info=True)
            return None
        if not blocked:
            return None
        self.stats["blocklisted"] += 1
        decision = Decision(
            action=Action.NEUTRALIZE, score=100.0, confidence=100.0,
            incident_id=new_incident_id(ctx.timestamp), reason="client is on the blocklist",
        )
        headers.update(self._decision_headers(decision))
        return PipelineResult(
            response=responses.block_response(ctx, decision, "Access from your address is temporarily blocked."),
            decision=decision,
            headers=headers,
        )

    async def _security_guard(self, ctx: RequestContext, headers: dict[str, str]) -> Optional[PipelineResult]:
        if ctx.method not in ALLOWED_METHODS:
            return PipelineResult(response=responses.guard_response(405, "method_not_allowed"), headers=headers)
        if len(ctx.raw_url) > self.config.max_url_length:
            return PipelineResult(response=responses.guard_response(414, "uri_too_long"), headers=headers)
        if len(ctx.headers) > self.config.max_header_count:
            return PipelineResult(response=responses.guard_response(431, "too_many_headers"), headers=headers)
        if (
            ctx.method == "OPTIONS"
            and ctx.headers.get("origin")
            and ctx.headers.get("access-control-request-method")
        ):
            return PipelineResult(response=responses.preflight_response(ALLOWED_METHODS), headers=headers)
        return None

    async def _encryption(self, ctx: RequestContext, headers: dict[str, str]) -> Optional[PipelineResult]:
        cfg = self.config
        if not cfg.enforce_https or cfg.environment is not Environment.PRODUCTION or ctx.is_secure:
            return None
        if ctx.path.startswith(INSECURE_ALLOWED_PATHS):
            return None
        if not any(ctx.path.startswith(p) for p in (*cfg.sensitive_paths, *cfg.auth_paths)):
            return None
        return PipelineResult(response=responses.https_redirect(ctx), headers=headers)

    async def _rate_tier(self, ctx: RequestContext, headers: dict[str, str]) -> Optional[PipelineResult]:
        tier = self.policy.tier_for(ctx.path, ctx.method)
        if tier is None or self.rate_limiter is None:
            return None
        try:
            status: RateLimitStatus = await self.rate_limiter.check(ctx.client_ip, tier, ctx.timestamp)
        except Exception:
            logger.warning("Rate tier %s unavailable, allowing", tier.name, exc_info=True)
            return None
        headers.update(status.headers())
        if status.allowed:
            return None
        self.stats["rate_tier_exceeded"] += 1
        return PipelineResult(response=responses.rate_limited_response(status.retry_after, tier.name), headers=headers)

    # ── Defense pipeline ─────────────────────────────────

    async def _defend(self, ctx: RequestContext, headers: dict[str, str]) -> PipelineResult:
        engine = self.engine
        now = ctx.timestamp

        trust = engine.trust.is_trusted(ctx, now)
        reputation = engine.reputation.snapshot(ctx.client_ip, now)

        if trust.is_trusted and trust.trust_level is TrustLevel.ABSOLUTE:
            return self._fast_allow(ctx, headers, "trusted-source", trust)
        if trust.is_trusted and trust.trust_level is TrustLevel.HIGH:
            # Lands before fusion so the per-identity thresholds see it
            reputation = engine.reputation.adjust(ctx.client_ip, trust=HIGH_TRUST_BOOST, now=now)
        if reputation.auto_trust and reputation.threat < self.config.auto_trust_fast_path_threat:
            return self._fast_allow(ctx, headers, "auto-trust", trust)

        try:
            self._sanitize(ctx)
        except MaliciousInputError as exc:
            return await self._neutralize_input(ctx, headers, exc, trust)

        results = await self._run_detectors(ctx, reputation, trust)
        floors = self._floors(results)
        decision = engine.decisions.decide(results.vectors, reputation, floors, now)

        result = await self._execute(ctx, decision, headers)
        self._commit(ctx, decision, results, trust, bypass=result.headers.get("X-Challenge-Bypass"))
        self._audit(ctx, decision)
        headers.update(self._decision_headers(decision, trust, reputation))
        self._secondary(ctx, headers)
        result.headers = headers
        return result

    def _fast_allow(
        self,
        ctx: RequestContext,
        headers: dict[str, str],
        path_taken: str,
        trust: TrustCheck,
    ) -> PipelineResult:
        engine = self.engine
        decision = Decision(
            action=Action.ALLOW, score=0.0, confidence=100.0,
            incident_id=new_incident_id(ctx.timestamp), reason=path_taken,
        )
        reputation = engine.reputation.apply_decision(ctx.client_ip, Action.ALLOW, 0.0, ctx.timestamp)
        engine.profiler.record(ctx, ctx.timestamp)
        self.stats[f"fast_path:{path_taken}"] += 1
        headers.update(self._decision_headers(decision, trust, reputation))
        headers["X-Fast-Path"] = path_taken
        self._secondary(ctx, headers)
        return PipelineResult(decision=decision, headers=headers, fast_path=path_taken)

    def _sanitize(self, ctx: RequestContext) -> None:
        """Decode the path and query twice and look for dangerous payloads."""
        text = ctx.raw_url
        found: list[str] = []
        for _ in range(2):
            text = unquote(text)
            found.extend(n for n in self.engine.patterns.dangerous(text) if n not in found)
        if found:
            raise MaliciousInputError(found)

    async def _neutralize_input(
        self,
        ctx: RequestContext,
        headers: dict[str, str],
        exc: MaliciousInputError,
        trust: TrustCheck,
    ) -> PipelineResult:
        decision = Decision(
            action=Action.NEUTRALIZE, score=100.0, confidence=95.0,
            incident_id=new_incident_id(ctx.timestamp),
            reason=f"malicious input: {', '.join(exc.categories)}",
        )
        logger.warning("Sanitizer rejected %s %s from %s: %s", ctx.method, ctx.path, ctx.client_ip, exc)
        result = await self._execute(ctx, decision, headers)
        self._commit(ctx, decision, DetectorResults(), trust)
        self._audit(ctx, decision)
        headers.update(self._decision_headers(decision, trust))
        result.headers = headers
        return result

    # ── Detectors ────────────────────────────────────────

    async def _run_detectors(
        self,
        ctx: RequestContext,
        reputation: ClientReputation,
        trust: TrustCheck,
    ) -> DetectorResults:
        engine = self.engine
        health = self.health
        now = ctx.timestamp
        results = DetectorResults()

        if self.geo is not None and ctx.geo is None:
            ctx.geo = await health.execute("geo", lambda: self.geo.lookup(ctx.client_ip), GeoResult.unknown())

        async def extract() -> FeatureVector:
            history = engine.profiler.history(ctx.profile_key, now, reputation)
            return engine.extractor.extract(ctx, history)

        results.features = await health.execute("features", extract)
        throttled = health.should_throttle()
        if throttled:
            logger.debug("System health low, skipping model detectors")

        async def patterns() -> list[ThreatVector]:
            scan = engine.patterns.scan(ctx.components())
            results.scan = scan
            categories = len(scan.categories)
            confidence = min(95.0, 60.0 + 10.0 * categories) if categories else 40.0
            return [ThreatVector("Patterns", min(100, scan.score), confidence, ThreatSource.RULES,
                                 tuple(scan.reasons()))]

        async def classifier() -> list[ThreatVector]:
            if results.features is None or throttled:
                return []
            prediction = engine.classifier.predict(results.features)
            confidence = 70.0 if engine.classifier.version > 0 else 35.0
            return [ThreatVector("Classifier", prediction.probability * 100.0, confidence, ThreatSource.ML,
                                 tuple(prediction.explanation))]

        async def anomaly() -> list[ThreatVector]:
            snapshot = engine.statistics.snapshot()
            if results.features is None or throttled or not snapshot.ready:
                return []
            found = engine.anomaly.detect(results.features, snapshot)
            confidence = 50.0 if found.is_anomaly else 30.0
            return [ThreatVector("Anomaly", found.anomaly_score * 100.0, confidence, ThreatSource.ML,
                                 tuple(found.reasons()))]

        async def behavior() -> list[ThreatVector]:
            analysis = engine.profiler.analyze(ctx, now)
            results.analysis = analysis
            if analysis.anomalies:
                vectors = [ThreatVector(
                    "Behavior", analysis.risk_score, analysis.max_confidence, ThreatSource.BEHAVIOR,
                    tuple(f"{a.type.value}: {a.detail}" for a in analysis.anomalies),
                )]
            else:
                vectors = [ThreatVector("Behavior", 0.0, 30.0, ThreatSource.BEHAVIOR)]
            cap = self.config.velocity_cap
            rpm = analysis.requests_last_minute
            vectors.append(ThreatVector(
                "Velocity", 100.0 * rpm / (2 * cap), 85.0 if rpm > cap else 40.0, ThreatSource.BEHAVIOR,
                (f"{rpm} requests/min",),
            ))
            return vectors

        async def geo_restriction() -> list[ThreatVector]:
            verdict = self.policy.check_geo(ctx.path, ctx.geo)
            results.geo_verdict = verdict
            if verdict.blocked:
                return [ThreatVector("GeoRestriction", 100.0, 90.0, ThreatSource.RULES, (verdict.reason,))]
            if verdict.proxy_denied:
                return [ThreatVector("GeoRestriction", 60.0, 60.0, ThreatSource.RULES, (verdict.reason,))]
            if ctx.geo is None or not ctx.geo.known:
                return []
            return [ThreatVector("GeoRestriction", 0.0, 40.0, ThreatSource.RULES)]

        detectors = {
            "patterns": patterns,
            "classifier": classifier,
            "anomaly": anomaly,
            "behavior": behavior,
            "geo_restriction": geo_restriction,
        }
        outputs = await asyncio.gather(*(
            health.execute(name, fn, []) for name, fn in detectors.items()
        ))
        for vectors in outputs:
            results.vectors.extend(vectors or [])

        results.vectors.extend(self._state_vectors(reputation, trust))
        return results

    @staticmethod
    def _state_vectors(reputation: ClientReputation, trust: TrustCheck) -> list[ThreatVector]:
        """Vectors derived from stored state rather than the request itself."""
        vectors = []
        rep_score = reputation.threat + max(0.0, INITIAL_TRUST - reputation.trust)
        rep_confidence = min(95.0, 30.0 + 2.0 * reputation.session_count + 20.0 * reputation.block_count)
        vectors.append(ThreatVector(
            "Reputation", rep_score, rep_confidence, ThreatSource.REPUTATION,
            (f"trust={reputation.trust:.0f} threat={reputation.threat:.0f}",),
        ))
        if reputation.recent_scores:
            vectors.append(ThreatVector(
                "History", reputation.history_score,
                min(90.0, 20.0 + 5.0 * len(reputation.recent_scores)), ThreatSource.HISTORY,
            ))
        if trust.is_trusted and trust.trust_level in TRUST_VECTOR_CONFIDENCE:
            vectors.append(ThreatVector(
                "Trust", 0.0, TRUST_VECTOR_CONFIDENCE[trust.trust_level], ThreatSource.TRUST, (trust.reason,),
            ))
        return vectors

    def _floors(self, results: DetectorResults) -> list[Floor]:
        floors = []
        analysis = results.analysis
        if analysis is not None:
            if analysis.requests_last_minute > self.config.velocity_cap:
                floors.append(Floor(Action.RATE_LIMIT, f"velocity {analysis.requests_last_minute}/min"))
            if analysis.failed_auth_streak >= 2 * self.config.brute_force_threshold:
                floors.append(Floor(Action.CHALLENGE, f"brute force ({analysis.failed_auth_streak} failures)"))
            if analysis.has(AnomalyType.IMPOSSIBLE_TRAVEL):
                floors.append(Floor(Action.CHALLENGE, "impossible travel"))
        if results.geo_verdict is not None and results.geo_verdict.blocked:
            floors.append(Floor(Action.BLOCK, results.geo_verdict.reason))
        if results.scan is not None:
            if results.scan.score >= PATTERN_BLOCK_SCORE:
                floors.append(Floor(Action.BLOCK, "attack signatures: " + ", ".join(sorted(results.scan.categories))))
            elif results.scan.score >= PATTERN_CHALLENGE_SCORE:
                floors.append(Floor(Action.CHALLENGE, "attack signature: " + ", ".join(sorted(results.scan.categories))))
        return floors

    # ── Execution ────────────────────────────────────────

    async def _execute(self, ctx: RequestContext, decision: Decision, headers: dict[str, str]) -> PipelineResult:
        engine = self.engine
        action = decision.action
        self.stats[f"action:{action.value}"] += 1
        cleared = engine.challenges.clearance_type(ctx.cookies.get(CLEARANCE_COOKIE), ctx.client_ip, ctx.timestamp)

        if action is Action.ALLOW:
            return PipelineResult(decision=decision, headers=headers)

        if action is Action.RATE_LIMIT:
            headers["Retry-After"] = str(RATE_LIMIT_RETRY_AFTER)
            return PipelineResult(decision=decision, headers=headers)

        if action is Action.CHALLENGE:
            bypass = None
            if cleared is not None:
                bypass = "clearance"
            elif ctx.has_credentials:
                bypass = "credentials"
            elif ctx.has_session:
                bypass = "session"
            if bypass:
                headers["X-Challenge-Bypass"] = bypass
                self.stats[f"bypass:{bypass}"] += 1
                return PipelineResult(decision=decision, headers=headers)
            challenge = engine.challenges.issue(ctx.client_ip, ChallengeType.POW, ctx.timestamp)
            return PipelineResult(
                response=responses.challenge_response(ctx, decision, challenge),
                decision=decision, headers=headers,
            )

        if action is Action.BLOCK:
            # Only proof-of-work clearance outranks a BLOCK
            if cleared is ChallengeType.POW:
                headers["X-Challenge-Bypass"] = "clearance"
                self.stats["bypass:clearance"] += 1
                return PipelineResult(decision=decision, headers=headers)
            challenge = engine.challenges.issue(ctx.client_ip, ChallengeType.POW, ctx.timestamp)
            return PipelineResult(
                response=responses.block_response(
                    ctx, decision, "This request was blocked by security policy.", challenge,
                ),
                decision=decision, headers=headers,
            )

        # NEUTRALIZE: terminal, no bypass
        if self.blocker is not None:
            try:
                await self.blocker.block(
                    ctx.client_ip, reason=decision.reason or decision.incident_id,
                    duration_sec=self.config.neutralize_block_sec,
                )
            except Exception:
                logger.warning("Could not blocklist %s", ctx.client_ip, exc_info=True)
        return PipelineResult(
            response=responses.block_response(ctx, decision, "This request was blocked by security policy."),
            decision=decision, headers=headers,
        )

    # ── Commit ───────────────────────────────────────────

    def _commit(
        self,
        ctx: RequestContext,
        decision: Decision,
        results: DetectorResults,
        trust: TrustCheck = NOT_TRUSTED,
        bypass: Optional[str] = None,
    ) -> None:
        """Fold a finished decision into shared state. Only called for decided requests."""
        engine = self.engine
        now = ctx.timestamp
        action = decision.action

        engine.reputation.apply_decision(ctx.client_ip, action, decision.score, now)
        if bypass == "session":
            engine.reputation.adjust(ctx.client_ip, trust=SESSION_BYPASS_TRUST, now=now)
        elif bypass == "credentials":
            engine.reputation.adjust(ctx.client_ip, trust=CREDENTIAL_BYPASS_TRUST, now=now)

        risk = results.analysis.risk_score if results.analysis is not None else 0.0
        engine.profiler.record(ctx, now, risk)

        if results.features is not None:
            if action in (Action.BLOCK, Action.NEUTRALIZE):
                label: Optional[int] = 1
            elif action is Action.ALLOW:
                label = 0
            else:
                label = None
            engine.classifier.observe(results.features, label, sample_id=decision.incident_id)

    # ── Audit ────────────────────────────────────────────

    def _audit(self, ctx: RequestContext, decision: Decision) -> None:
        if decision.action is Action.ALLOW:
            return
        logger.info(
            "%s %s %s from %s (score %.1f, %s) [%s]",
            decision.action.value, ctx.method, ctx.path, ctx.client_ip,
            decision.score, decision.reason or "-", decision.incident_id,
        )
        if self.incidents is not None:
            self._spawn(self._write_incident(ctx, decision))
        if decision.action is Action.NEUTRALIZE and self.alerts is not None:
            self._spawn(self._send_alert(ctx, decision))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write_incident(self, ctx: RequestContext, decision: Decision) -> None:
        """Persist an incident (best-effort)."""
        try:
            await self.incidents.record(  # type: ignore[union-attr]
                decision,
                source_ip=ctx.client_ip,
                identity=ctx.profile_key,
                path=ctx.path,
                method=ctx.method,
                user_agent=ctx.user_agent,
            )
        except Exception:
            logger.debug("Failed to write incident %s", decision.incident_id, exc_info=True)

    async def _send_alert(self, ctx: RequestContext, decision: Decision) -> None:
        """Send a webhook alert (best-effort)."""
        try:
            await self.alerts.send(AlertEvent(  # type: ignore[union-attr]
                level="critical",
                title="Client neutralized",
                message=f"{ctx.client_ip} neutralized on {ctx.method} {ctx.path}: {decision.reason}",
                source_ip=ctx.client_ip,
                incident_id=decision.incident_id,
                metadata={"score": round(decision.score, 2), "vectors": [v.to_dict() for v in decision.vectors]},
            ))
        except Exception:
            logger.debug("Failed to send alert", exc_info=True)

    async def drain(self) -> None:
        """Wait for in-flight audit tasks (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Secondary tier & headers ─────────────────────────

    def _secondary(self, ctx: RequestContext, headers: dict[str, str]) -> None:
        """Cache policy. Failures are logged and skipped."""
        try:
            headers["Cache-Control"] = self.policy.cache_header(ctx.path, ctx.method)
        except Exception:
            logger.warning("Cache policy failed for %s", ctx.path, exc_info=True)

    def _decision_headers(
        self,
        decision: Decision,
        trust: TrustCheck = NOT_TRUSTED,
        reputation: Optional[ClientReputation] = None,
    ) -> dict[str, str]:
        if trust.is_trusted and trust.trust_level is not None:
            level = trust.trust_level.value
        elif reputation is not None and reputation.trust >= 80:
            level = TrustLevel.HIGH.value
        elif reputation is not None and reputation.trust >= 50:
            level = TrustLevel.MEDIUM.value
        else:
            level = TrustLevel.LOW.value
        return {
            "X-Threat-Score": f"{decision.score:.1f}",
            "X-Defense-Action": decision.action.value,
            "X-Incident-Id": decision.incident_id,
            "X-Trust-Level": level,
        }

    def info(self) -> dict:
        return {
            "counters": dict(self.stats),
            "open_circuits": self.health.open_circuits(),
            "system_health": self.health.system_health(),
        }
