"""
Domain Aggregation & Classification for the Competency Assessment

This module folds per-question results into per-domain scores and an
overall score, classifies the overall score into a proficiency band, splits
domains into strengths and gaps with the per-domain 90% rule, and produces
the narrative summary of a result.

The proficiency bands (on the overall score) and the 90% rule (on each
domain's score) are two separate classifications.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from competency_backend.assessments.base.models import (
    DomainScore,
    ProficiencyLevel,
    QuestionEvaluationResult,
)
from competency_backend.assessments.competency.competency_config import (
    PROFICIENCY_BANDS,
    STRENGTH_THRESHOLD_PERCENT,
)
from competency_backend.assessments.competency.judgment import (
    JudgmentService,
    parse_feedback_response,
)
from competency_backend.assessments.competency.prompts import (
    EVALUATOR_SYSTEM_PROMPT,
    build_overall_feedback_prompt,
)
from competency_backend.common.error_handling import RetryPolicy, call_with_fallback
from competency_backend.common.logger import app_logger

# Module logger
logger = app_logger.getChild("competency.scoring")

DEFAULT_NARRATIVE = "Assessment completed."


@dataclass
class ScoreSummary:
    """Aggregated scores of one evaluation pass."""
    domain_scores: List[DomainScore]
    overall_percent: float
    proficiency_level: ProficiencyLevel
    strength_domains: List[str] = field(default_factory=list)
    gap_domains: List[str] = field(default_factory=list)

    @property
    def overall_score(self) -> float:
        """Overall percent rounded to 2 decimals for storage and display."""
        return round(self.overall_percent, 2)


def _percent(raw: float, maximum: float) -> float:
    # Multiply first so exact boundaries (e.g. 4/10 -> 40.0) stay exact
    return raw * 100 / maximum


def calculate_domain_scores(results: Sequence[QuestionEvaluationResult]) -> List[DomainScore]:
    """
    Sum scores and max scores per domain.

    Domains appear in the order they are first seen. A domain whose summed
    max score is zero is left out.
    """
    totals: Dict[str, List[float]] = {}
    for result in results:
        raw_max = totals.setdefault(result.domain_key, [0.0, 0.0])
        raw_max[0] += result.score
        raw_max[1] += result.max_score

    domain_scores = []
    for domain_key, (raw, maximum) in totals.items():
        if maximum <= 0:
            logger.warning(f"Skipping domain {domain_key} with zero max score")
            continue
        domain_scores.append(DomainScore(
            domain_key=domain_key,
            raw_score=raw,
            max_score=maximum,
            score_percent=_percent(raw, maximum),
        ))
    return domain_scores


def calculate_overall_percent(results: Sequence[QuestionEvaluationResult]) -> float:
    """Total score over total max score across all results, as a percentage."""
    total_raw = sum(r.score for r in results)
    total_max = sum(r.max_score for r in results)
    if total_max <= 0:
        return 0.0
    return _percent(total_raw, total_max)


def determine_proficiency_level(score_percent: float) -> ProficiencyLevel:
    """Band floors are inclusive: 40, 60 and 80 map to Developing, Proficient, Advanced."""
    for floor, level in PROFICIENCY_BANDS:
        if score_percent >= floor:
            return level
    return ProficiencyLevel.BEGINNER


def categorize_domains(
    domain_scores: Sequence[DomainScore],
    threshold: float = STRENGTH_THRESHOLD_PERCENT
) -> Tuple[List[str], List[str]]:
    """
    Apply the 90% rule.

    Returns:
        Tuple of (strength domains, gap domains)
    """
    strengths: List[str] = []
    gaps: List[str] = []
    for domain in domain_scores:
        if domain.score_percent >= threshold:
            strengths.append(domain.domain_key)
        else:
            gaps.append(domain.domain_key)
    return strengths, gaps


def summarize_results(results: Sequence[QuestionEvaluationResult]) -> ScoreSummary:
    """Aggregate and classify a full set of question results."""
    domain_scores = calculate_domain_scores(results)
    overall_percent = calculate_overall_percent(results)
    strengths, gaps = categorize_domains(domain_scores)
    return ScoreSummary(
        domain_scores=domain_scores,
        overall_percent=overall_percent,
        proficiency_level=determine_proficiency_level(overall_percent),
        strength_domains=strengths,
        gap_domains=gaps,
    )


def fallback_narrative(strength_domains: Sequence[str], gap_domains: Sequence[str]) -> str:
    """Template summary used when the judgment service cannot write one."""
    parts = []
    if strength_domains:
        parts.append(f"Strong performance in {', '.join(strength_domains)}.")
    if gap_domains:
        parts.append(f"Areas for improvement: {', '.join(gap_domains)}.")
    return " ".join(parts) or DEFAULT_NARRATIVE


class NarrativeGenerator:
    """Writes the overall feedback text of a result with the judgment service."""

    def __init__(
        self,
        judgment: JudgmentService,
        retry_policy: Optional[RetryPolicy] = None,
        temperature: float = 0.5,
        max_tokens: int = 300
    ):
        self.judgment = judgment
        self.retry_policy = retry_policy or RetryPolicy()
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def generate(self, summary: ScoreSummary) -> str:
        """
        Generate the narrative summary for ``summary``.

        Never raises for judgment failures; after the retry policy is
        exhausted a template sentence built from the strength and gap
        domains is returned.
        """
        user_prompt = build_overall_feedback_prompt(
            summary.domain_scores, summary.strength_domains, summary.gap_domains
        )

        async def attempt() -> str:
            raw = await self.judgment.judge(
                EVALUATOR_SYSTEM_PROMPT,
                user_prompt,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            return parse_feedback_response(raw)

        return await call_with_fallback(
            attempt,
            self.retry_policy,
            lambda _: fallback_narrative(summary.strength_domains, summary.gap_domains),
            operation_name="Overall feedback generation",
            log=logger,
        )
