"""
Request analyzer.

Turns a free-form WorkRequest into an Analysis: domain tags from the trigger
table, a complexity score in [0, 1] and a risk level. Analysis is total; a
request that matches nothing gets the safe default instead of an error.
"""

import logging
import re
from typing import Dict, FrozenSet, List, Optional, Pattern

from .models import Analysis, DomainTag, RiskLevel, WorkRequest
from .registry import DelegationConfig

logger = logging.getLogger(__name__)


class RequestAnalyzer:
    """Classifies work requests using the delegation trigger tables."""

    def __init__(self, delegation: DelegationConfig) -> None:
        self.delegation = delegation
        self._triggers: Dict[DomainTag, List[Pattern[str]]] = {
            tag: [re.compile(p, re.IGNORECASE) for p in patterns]
            for tag, patterns in delegation.triggers.items()
        }
        self._scope = [re.compile(p, re.IGNORECASE) for p in delegation.scope_patterns]
        self._overrides = [re.compile(p, re.IGNORECASE) for p in delegation.override_patterns]

    def tag_domains(self, text: str) -> FrozenSet[DomainTag]:
        """Return every domain whose trigger patterns match the text."""
        if not text or not text.strip():
            return frozenset()
        return frozenset(
            tag
            for tag, patterns in self._triggers.items()
            if any(pattern.search(text) for pattern in patterns)
        )

    def has_scope_language(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self._scope)

    def detect_override(self, request: WorkRequest) -> Optional[str]:
        """
        Find an explicitly requested worker.

        The ``worker_override`` field is returned as given and validated by
        the scorer. Names found in the description are only taken when they
        belong to the roster, so "use the security agent" stays a routing hint.
        """
        if request.worker_override:
            return request.worker_override
        registry = self.delegation.registry
        for pattern in self._overrides:
            for match in pattern.finditer(request.description):
                name = match.group(1).lower()
                if name in registry:
                    return name
                logger.debug(f"Ignoring override phrase naming unknown worker '{name}'")
        return None

    def classify_risk(self, domains: FrozenSet[DomainTag]) -> RiskLevel:
        tables = self.delegation.risk
        sensitive = domains & tables.sensitive_domains
        if sensitive:
            if domains & tables.critical_domains and len(sensitive) > 1:
                return RiskLevel.CRITICAL
            return RiskLevel.HIGH
        if domains and domains <= tables.low_risk_domains:
            return RiskLevel.LOW
        return RiskLevel.MEDIUM

    def analyze(self, request: WorkRequest) -> Analysis:
        """
        Analyze a work request.

        Args:
            request: Submitted work request

        Returns:
            Analysis with domains, complexity score and risk level. When no
            domain matches, ``domains={unknown}`` with the default score and
            medium risk, flagged as ``defaulted``.
        """
        weights = self.delegation.complexity
        text = request.description or ""
        explicit_worker = self.detect_override(request)
        domains = self.tag_domains(text)

        if not domains:
            score = weights.default_score
            if explicit_worker:
                score = min(score, weights.override_cap)
            logger.warning(
                "No domain matched request; applying default analysis "
                f"(complexity={score}, risk=medium)"
            )
            return Analysis(
                domains=frozenset({DomainTag.UNKNOWN}),
                complexity_score=score,
                risk_level=RiskLevel.MEDIUM,
                explicit_worker=explicit_worker,
                defaulted=True,
            )

        score = min(len(domains) * weights.per_domain, weights.domain_cap)
        if self.has_scope_language(text):
            score += weights.scope_bonus
        if request.requirements:
            score += weights.requirements_bonus
        score = round(max(0.0, min(score, 1.0)), 6)
        if explicit_worker:
            score = min(score, weights.override_cap)

        analysis = Analysis(
            domains=domains,
            complexity_score=score,
            risk_level=self.classify_risk(domains),
            explicit_worker=explicit_worker,
        )
        logger.info(
            f"Analyzed request: domains={[d.value for d in analysis.sorted_domains()]}, "
            f"complexity={analysis.complexity_score}, risk={analysis.risk_level.value}"
            + (f", override={explicit_worker}" if explicit_worker else "")
        )
        return analysis
