from __future__ import annotations

import math
from typing import Iterable, Mapping, Sequence

from pydantic import BaseModel, Field

from validator.config import Settings
from validator.grounding import Citation


class QualityThresholds(BaseModel):
    low_coverage_pct: float = Field(default=50.0, ge=0.0, le=100.0)
    low_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    good_coverage_pct: float = Field(default=80.0, ge=0.0, le=100.0)
    good_confidence: float = Field(default=0.8, ge=0.0, le=1.0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "QualityThresholds":
        return cls(
            low_coverage_pct=settings.quality_low_coverage_pct,
            low_confidence=settings.quality_low_confidence,
            good_coverage_pct=settings.quality_good_coverage_pct,
            good_confidence=settings.quality_good_confidence,
        )


class QualityFlags(BaseModel):
    no_citations: bool
    low_coverage: bool
    low_confidence: bool
    good_quality: bool


class QualityMetrics(BaseModel):
    requirement_count: int
    citation_count: int
    citation_coverage: float
    average_confidence: float
    flags: QualityFlags


def _citation_lists(
    requirement_results: Mapping[str, Sequence[Citation]] | Iterable[Sequence[Citation]],
) -> list[Sequence[Citation]]:
    if isinstance(requirement_results, Mapping):
        return list(requirement_results.values())
    return list(requirement_results)


def compute_quality_metrics(
    requirement_results: Mapping[str, Sequence[Citation]] | Iterable[Sequence[Citation]],
    thresholds: QualityThresholds | None = None,
) -> QualityMetrics:
    """Coverage, confidence and quality flags over the citations of a set of requirements.

    Each element holds the citations of one requirement. The sums are exactly rounded so the
    result does not depend on requirement or citation order.
    """
    limits = thresholds or QualityThresholds()
    per_requirement = _citation_lists(requirement_results)

    requirement_count = len(per_requirement)
    covered = sum(1 for citations in per_requirement if len(citations) > 0)
    confidences = [citation.confidence for citations in per_requirement for citation in citations]
    citation_count = len(confidences)

    # Flags compare the exact values; only the reported fields are rounded.
    coverage = covered / requirement_count * 100 if requirement_count else 0.0
    average = math.fsum(confidences) / citation_count if citation_count else 0.0

    flags = QualityFlags(
        no_citations=citation_count == 0,
        low_coverage=coverage < limits.low_coverage_pct,
        low_confidence=average < limits.low_confidence,
        good_quality=(
            citation_count > 0
            and coverage >= limits.good_coverage_pct
            and average >= limits.good_confidence
        ),
    )
    return QualityMetrics(
        requirement_count=requirement_count,
        citation_count=citation_count,
        citation_coverage=round(coverage, 2),
        average_confidence=round(average, 4),
        flags=flags,
    )
