"""Confidence scoring of registry workers against an analysis."""

import logging
from typing import FrozenSet, List

from .models import Analysis, Candidate, DomainTag, Worker
from .registry import CapabilityRegistry

logger = logging.getLogger(__name__)


def confidence(worker: Worker, domains: FrozenSet[DomainTag]) -> float:
    """Mean of the worker's weights over the requested domains, in [0, 1]."""
    if not domains:
        return 0.0
    total = sum(worker.weight_for(tag) for tag in domains)
    return round(max(0.0, min(total / len(domains), 1.0)), 6)


def score(analysis: Analysis, registry: CapabilityRegistry) -> List[Candidate]:
    """
    Rank registry workers for an analysis.

    Workers with no overlap are omitted. Ordering is by descending
    confidence, then worker name. An explicit worker short-circuits ranking
    and is returned alone with confidence 1.0.

    Raises:
        UnknownWorkerError: If the explicit worker is not in the registry
    """
    if analysis.explicit_worker:
        worker = registry.get(analysis.explicit_worker)
        logger.info(f"Explicit worker requested: {worker.name}")
        return [Candidate(worker=worker, confidence=1.0)]

    candidates: List[Candidate] = []
    for worker in registry:
        value = confidence(worker, analysis.domains)
        if value > 0.0:
            candidates.append(Candidate(worker=worker, confidence=value))
    candidates.sort(key=lambda c: (-c.confidence, c.name))

    logger.debug(
        "Scored candidates: "
        + ", ".join(f"{c.name}={c.confidence:.3f}" for c in candidates)
    )
    return candidates
