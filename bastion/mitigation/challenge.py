"""
Bastion — Challenge Issuance & Verification.

Two challenge types:
  • pow      find a nonce so that sha256(challenge_id + nonce) starts with
             ``difficulty`` zero hex digits
  • compute  answer a small arithmetic question

Challenges are time-boxed and single use: a wrong answer spends the
challenge too. A solved challenge earns a signed clearance cookie bound to
the client IP and to the challenge type. Any clearance lets CHALLENGE
decisions through; only a proof-of-work clearance lets BLOCK through.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from bastion.config import Settings, settings as default_settings
from bastion.errors import ChallengeError

logger = logging.getLogger("bastion.mitigation.challenge")

CLEARANCE_COOKIE = "bastion_clearance"
MAX_PENDING = 10_000


class ChallengeType(str, Enum):
    POW = "pow"
    COMPUTE = "compute"


@dataclass
class Challenge:
    challenge_id: str
    type: ChallengeType
    client_ip: str
    difficulty: int
    created_at: float
    expires_at: float
    question: Optional[str] = None
    answer: Optional[int] = None
    solved: bool = False

    def expired(self, now: float) -> bool:
        return now >= self.expires_at

    @property
    def instructions(self) -> str:
        if self.type is ChallengeType.POW:
            return (
                f"Find a nonce such that sha256(challenge_id + nonce) as hex starts with "
                f"{self.difficulty} zero(s), then POST {{challenge_id, nonce}} to /api/bastion/challenge/verify"
            )
        return "Compute the answer to the question and POST {challenge_id, answer} to /api/bastion/challenge/verify"

    def to_dict(self) -> dict:
        """Client-facing view; never includes the expected answer."""
        return {
            "challenge_id": self.challenge_id,
            "type": self.type.value,
            "difficulty": self.difficulty,
            "prefix": self.challenge_id,
            "question": self.question,
            "expires_at": self.expires_at,
            "instructions": self.instructions,
        }


def pow_digest(challenge_id: str, nonce: str) -> str:
    return hashlib.sha256(f"{challenge_id}{nonce}".encode()).hexdigest()


def solve_pow(challenge_id: str, difficulty: int, limit: int = 10_000_000) -> str:
    """Brute-force a nonce. Used by tests and tooling, never on the request path."""
    target = "0" * difficulty
    for n in range(limit):
        if pow_digest(challenge_id, str(n)).startswith(target):
            return str(n)
    raise ValueError("no nonce found within limit")


class ChallengeManager:
    """Issues challenges, verifies solutions and signs clearance tokens."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self.config = config or default_settings
        self._secret = self.config.challenge_secret.encode()
        self._pending: dict[str, Challenge] = {}
        self._rewarded: dict[str, float] = {}   # client ip → end of its reward window
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._pending)

    # ── Issuance ─────────────────────────────────────────

    def issue(
        self,
        client_ip: str,
        challenge_type: ChallengeType | str = ChallengeType.POW,
        now: Optional[float] = None,
    ) -> Challenge:
        now = time.time() if now is None else now
        challenge_type = ChallengeType(challenge_type)
        challenge = Challenge(
            challenge_id=secrets.token_hex(16),
            type=challenge_type,
            client_ip=client_ip,
            difficulty=self.config.pow_difficulty if challenge_type is ChallengeType.POW else 0,
            created_at=now,
            expires_at=now + self.config.challenge_ttl_sec,
        )
        if challenge_type is ChallengeType.COMPUTE:
            a, b = secrets.randbelow(90) + 10, secrets.randbelow(90) + 10
            challenge.question = f"What is {a} + {b}?"
            challenge.answer = a + b

        with self._lock:
            if len(self._pending) >= MAX_PENDING:
                oldest = min(self._pending.values(), key=lambda c: c.created_at)
                del self._pending[oldest.challenge_id]
            self._pending[challenge.challenge_id] = challenge
        logger.debug("Issued %s challenge %s to %s", challenge_type.value, challenge.challenge_id, client_ip)
        return challenge

    # ── Verification ─────────────────────────────────────

    def verify(
        self,
        challenge_id: str,
        client_ip: str,
        nonce: Optional[str] = None,
        answer: Optional[int] = None,
        now: Optional[float] = None,
    ) -> str:
        """
        Check a solution. Returns a clearance token on success; raises
        ChallengeError for unknown, expired, replayed or wrong submissions.
        """
        now = time.time() if now is None else now
        with self._lock:
            challenge = self._pending.get(challenge_id)
            if challenge is None:
                raise ChallengeError("unknown challenge", status_code=400)
            if challenge.solved:
                raise ChallengeError("challenge already used", status_code=410)
            if challenge.expired(now):
                del self._pending[challenge_id]
                raise ChallengeError("challenge expired", status_code=410)
            if challenge.client_ip != client_ip:
                raise ChallengeError("challenge was issued to a different client", status_code=400)
            if not self._check_solution(challenge, nonce, answer):
                # One attempt per challenge; the client must request a new one
                del self._pending[challenge_id]
                raise ChallengeError("incorrect solution", status_code=400)
            challenge.solved = True

        logger.info("Challenge %s (%s) solved by %s", challenge_id, challenge.type.value, client_ip)
        return self.issue_clearance(client_ip, now, challenge.type)

    @staticmethod
    def _check_solution(challenge: Challenge, nonce: Optional[str], answer: Optional[int]) -> bool:
        if challenge.type is ChallengeType.POW:
            if nonce is None:
                return False
            return pow_digest(challenge.challenge_id, str(nonce)).startswith("0" * challenge.difficulty)
        return answer is not None and int(answer) == challenge.answer

    # ── Clearance ────────────────────────────────────────

    def _sign(self, data: str) -> str:
        return hmac.new(self._secret, data.encode(), hashlib.sha256).hexdigest()

    def issue_clearance(
        self,
        client_ip: str,
        now: Optional[float] = None,
        kind: ChallengeType = ChallengeType.POW,
    ) -> str:
        """Token format: ``ip|expires|type|hmac``."""
        now = time.time() if now is None else now
        expires = int(now + self.config.clearance_ttl_sec)
        data = f"{client_ip}|{expires}|{ChallengeType(kind).value}"
        return f"{data}|{self._sign(data)}"

    def clearance_type(
        self,
        token: Optional[str],
        client_ip: str,
        now: Optional[float] = None,
    ) -> Optional[ChallengeType]:
        """Type of challenge behind a valid token, or None if the token is not valid here."""
        if not token:
            return None
        now = time.time() if now is None else now
        parts = token.split("|")
        if len(parts) != 4:
            return None
        ip, expires, kind, sig = parts
        if ip != client_ip or not expires.isdigit() or int(expires) <= now:
            return None
        if not hmac.compare_digest(sig, self._sign(f"{ip}|{expires}|{kind}")):
            return None
        try:
            return ChallengeType(kind)
        except ValueError:
            return None

    def verify_clearance(
        self,
        token: Optional[str],
        client_ip: str,
        now: Optional[float] = None,
        require: Optional[ChallengeType] = None,
    ) -> bool:
        """Valid signature, bound to this IP, not expired and, if asked, of the required type."""
        kind = self.clearance_type(token, client_ip, now)
        if kind is None:
            return False
        return require is None or kind is require

    def claim_reward(self, client_ip: str, now: Optional[float] = None) -> bool:
        """True at most once per clearance window for each client."""
        now = time.time() if now is None else now
        with self._lock:
            if self._rewarded.get(client_ip, 0.0) > now:
                return False
            self._rewarded[client_ip] = now + self.config.clearance_ttl_sec
        return True

    # ── Maintenance ──────────────────────────────────────

    def purge(self, now: Optional[float] = None) -> int:
        """Drop expired and already-solved challenges. Returns count removed."""
        now = time.time() if now is None else now
        with self._lock:
            doomed = [cid for cid, c in self._pending.items() if c.solved or c.expired(now)]
            for cid in doomed:
                del self._pending[cid]
            for ip in [ip for ip, until in self._rewarded.items() if until <= now]:
                del self._rewarded[ip]
        if doomed:
            logger.debug("Purged %d challenge(s)", len(doomed))
        return len(doomed)

    # ── Rendering ────────────────────────────────────────

    @staticmethod
    def render_page(challenge: Challenge, incident_id: str) -> str:
        """Browser page that solves a pow challenge and reloads with clearance."""
        return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Verifying your connection | Bastion</title>
    <style>
        body {{
            background: #0d1117; color: #c9d1d9;
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .container {{ text-align: center; }}
        h1 {{ font-size: 1.5rem; margin-bottom: 8px; }}
        p {{ color: #8b949e; }}
        code {{ color: #58a6ff; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Security check</h1>
        <p>We need to verify your connection before continuing.</p>
        <p id="status">Working…</p>
        <p>Incident <code>{incident_id}</code></p>
    </div>
    <script>
        (async function() {{
            const id = "{challenge.challenge_id}";
            const target = "0".repeat({challenge.difficulty});
            let nonce = 0;
            while (true) {{
                const hash = await crypto.subtle.digest("SHA-256", new TextEncoder().encode(id + nonce));
                const hex = Array.from(new Uint8Array(hash))
                    .map(b => b.toString(16).padStart(2, '0')).join('');
                if (hex.startsWith(target)) break;
                nonce++;
                if (nonce % 10000 === 0) await new Promise(r => setTimeout(r, 0));
            }}
            const res = await fetch("/api/bastion/challenge/verify", {{
                method: "POST",
                headers: {{"Content-Type": "application/json"}},
                body: JSON.stringify({{challenge_id: id, nonce: String(nonce)}}),
            }});
            document.getElementById("status").textContent = res.ok ? "Verified, reloading…" : "Verification failed";
            if (res.ok) setTimeout(() => location.reload(), 300);
        }})();
    </script>
</body>
</html>"""
