"""
Tests for candidate scoring.

Module: cto_orchestrator/tests/test_scorer.py
"""

import pytest

from cto_orchestrator.service.errors import UnknownWorkerError
from cto_orchestrator.service.models import Analysis, DomainTag, RiskLevel, Worker
from cto_orchestrator.service.registry import DelegationConfig
from cto_orchestrator.service.scorer import confidence, score


def _analysis(*domains: DomainTag, explicit_worker=None) -> Analysis:
    return Analysis(
        domains=frozenset(domains),
        complexity_score=0.5,
        risk_level=RiskLevel.MEDIUM,
        explicit_worker=explicit_worker,
    )


class TestConfidence:
    """Test suite for per-worker confidence."""

    def test_mean_of_domain_weights(self) -> None:
        worker = Worker(
            name="golang-pro",
            domain_weights={DomainTag.GOLANG: 0.98, DomainTag.BACKEND: 0.9},
        )

        value = confidence(worker, frozenset({DomainTag.GOLANG, DomainTag.BACKEND, DomainTag.AI}))

        assert value == pytest.approx((0.98 + 0.9) / 3)

    def test_no_overlap(self) -> None:
        worker = Worker(name="docs", domain_weights={DomainTag.DOCUMENTATION: 0.9})

        assert confidence(worker, frozenset({DomainTag.SECURITY})) == 0.0

    def test_empty_domains(self) -> None:
        worker = Worker(name="docs", domain_weights={DomainTag.DOCUMENTATION: 0.9})

        assert confidence(worker, frozenset()) == 0.0


class TestScore:
    """Test suite for candidate ranking."""

    def test_security_scan_ranking(self, delegation: DelegationConfig) -> None:
        candidates = score(_analysis(DomainTag.SECURITY, DomainTag.BACKEND), delegation.registry)

        assert [c.name for c in candidates] == [
            "security-auditor",
            "architect",
            "golang-pro",
            "performance-optimizer",
            "ai-engineer",
            "code-reviewer",
        ]
        assert candidates[0].confidence == pytest.approx(0.725)
        assert candidates[1].confidence == pytest.approx(0.5)

    def test_go_ranking(self, delegation: DelegationConfig) -> None:
        candidates = score(
            _analysis(DomainTag.GOLANG, DomainTag.PERFORMANCE, DomainTag.BACKEND),
            delegation.registry,
        )

        assert candidates[0].name == "golang-pro"
        assert candidates[0].confidence == pytest.approx(0.826667)
        assert candidates[1].name == "performance-optimizer"

    def test_zero_confidence_workers_omitted(self, delegation: DelegationConfig) -> None:
        candidates = score(_analysis(DomainTag.DOCUMENTATION), delegation.registry)

        assert [c.name for c in candidates] == ["docs-architect"]

    def test_ties_break_by_name(self, delegation: DelegationConfig) -> None:
        candidates = score(_analysis(DomainTag.UNKNOWN), delegation.registry)

        assert [(c.name, c.confidence) for c in candidates] == [
            ("architect", pytest.approx(0.6)),
            ("code-reviewer", pytest.approx(0.5)),
            ("performance-optimizer", pytest.approx(0.4)),
            ("architect-reviewer", pytest.approx(0.3)),
            ("workflow-orchestrator", pytest.approx(0.3)),
        ]

    def test_confidences_are_non_increasing(self, delegation: DelegationConfig) -> None:
        candidates = score(
            _analysis(DomainTag.ARCHITECTURE, DomainTag.FRONTEND, DomainTag.AI),
            delegation.registry,
        )

        values = [c.confidence for c in candidates]
        assert values == sorted(values, reverse=True)
        assert all(0.0 < v <= 1.0 for v in values)

    def test_explicit_worker_short_circuits(self, delegation: DelegationConfig) -> None:
        candidates = score(
            _analysis(DomainTag.FRONTEND, explicit_worker="golang-pro"),
            delegation.registry,
        )

        assert len(candidates) == 1
        assert candidates[0].name == "golang-pro"
        assert candidates[0].confidence == 1.0

    def test_unknown_explicit_worker(self, delegation: DelegationConfig) -> None:
        with pytest.raises(UnknownWorkerError):
            score(_analysis(DomainTag.BACKEND, explicit_worker="rust-pro"), delegation.registry)
