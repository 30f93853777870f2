"""
Bastion — Attack Signature Matcher.

Stateless matching of request components (URL, header values, user-agent)
against a versioned rule table. Each category contributes its severity
weight at most once per input string; weights sum across categories.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from bastion.detection.signatures import DEFAULT_SIGNATURES, DEFAULT_TARGETS

logger = logging.getLogger("bastion.detection.patterns")


@dataclass(frozen=True)
class CategoryRule:
    """One attack category: severity weight plus its compiled matchers."""
    name: str
    severity: int
    patterns: tuple[re.Pattern, ...]
    targets: frozenset[str]

    def applies_to(self, target: Optional[str]) -> bool:
        return target is None or target in self.targets

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


@dataclass(frozen=True)
class RuleSet:
    """Versioned signature table."""
    version: str
    categories: tuple[CategoryRule, ...]
    sanitizer: tuple[tuple[str, re.Pattern], ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RuleSet":
        categories = []
        for name, raw in data.get("categories", {}).items():
            categories.append(CategoryRule(
                name=name,
                severity=int(raw["severity"]),
                patterns=tuple(re.compile(p, re.IGNORECASE) for p in raw.get("patterns", [])),
                targets=frozenset(t.lower() for t in raw.get("targets", DEFAULT_TARGETS)),
            ))
        sanitizer = tuple(
            (entry["name"], re.compile(entry["pattern"], re.IGNORECASE | re.DOTALL))
            for entry in data.get("sanitizer", [])
        )
        return cls(
            version=str(data.get("version", "unversioned")),
            categories=tuple(categories),
            sanitizer=sanitizer,
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RuleSet":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        ruleset = cls.from_dict(data)
        logger.info(
            "Loaded signature table %s (%d categories) from %s",
            ruleset.version, len(ruleset.categories), path,
        )
        return ruleset

    def severity_of(self, category: str) -> int:
        for rule in self.categories:
            if rule.name == category:
                return rule.severity
        raise KeyError(category)


@dataclass
class PatternMatch:
    """Categories matched in a single string."""
    categories: dict[str, int] = field(default_factory=dict)

    @property
    def score(self) -> int:
        return sum(self.categories.values())

    @property
    def matched(self) -> bool:
        return bool(self.categories)


@dataclass
class PatternScan:
    """Aggregate of per-component matches for one request."""
    hits: dict[str, PatternMatch] = field(default_factory=dict)

    @property
    def score(self) -> int:
        return sum(m.score for m in self.hits.values())

    @property
    def categories(self) -> set[str]:
        found: set[str] = set()
        for match in self.hits.values():
            found.update(match.categories)
        return found

    def reasons(self) -> list[str]:
        return [
            f"{category} in {component}"
            for component, match in self.hits.items()
            for category in match.categories
        ]


class PatternMatcher:
    """Matches strings against a RuleSet. Pure: no state beyond the table."""

    def __init__(self, ruleset: Optional[RuleSet] = None) -> None:
        self.ruleset = ruleset or DEFAULT_RULESET

    @property
    def version(self) -> str:
        return self.ruleset.version

    def match(self, text: str, target: Optional[str] = None) -> PatternMatch:
        """
        Match one string. When ``target`` names a request component
        (e.g. ``"user-agent"``), only categories aimed at it are checked.
        """
        result = PatternMatch()
        if not text:
            return result
        for rule in self.ruleset.categories:
            if rule.applies_to(target) and rule.matches(text):
                result.categories[rule.name] = rule.severity
        return result

    def scan(self, components: Mapping[str, str]) -> PatternScan:
        """Match every request component; categories count once per component."""
        scan = PatternScan()
        for component, value in components.items():
            match = self.match(value, target=component.lower())
            if match.matched:
                scan.hits[component] = match
        return scan

    def dangerous(self, text: str) -> list[str]:
        """Names of sanitizer patterns found in (already decoded) text."""
        if not text:
            return []
        return [name for name, pattern in self.ruleset.sanitizer if pattern.search(text)]


DEFAULT_RULESET = RuleSet.from_dict(DEFAULT_SIGNATURES)
