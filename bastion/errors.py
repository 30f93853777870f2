"""
Bastion — Exception types.
"""

from __future__ import annotations


class BastionError(Exception):
    """Base class for all Bastion errors."""


class CriticalLayerError(BastionError):
    """A critical foundation layer failed; the request must not continue."""

    def __init__(self, layer: str, message: str = "") -> None:
        super().__init__(message or f"critical layer '{layer}' failed")
        self.layer = layer


class MaliciousInputError(BastionError):
    """Raised by the request sanitizer when decoded input matches a dangerous pattern."""

    def __init__(self, categories: list[str]) -> None:
        super().__init__(f"malicious input: {', '.join(categories)}")
        self.categories = categories


class ChallengeError(BastionError):
    """Challenge token is unknown, expired or already used."""

    def __init__(self, reason: str, status_code: int = 400) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
