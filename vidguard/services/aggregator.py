import math
from typing import Sequence

from vidguard.schemas import (
    CATEGORIES,
    AnalysisMetadata,
    AnalysisResult,
    CategoryBreakdown,
    FrameAnalysis,
    FrameScore,
    RiskTier,
    TemporalAnalysis,
    to_percent,
)

FLAG_THRESHOLD = 0.5
NSFW_ADVISORY_THRESHOLD = 0.6
VIOLENCE_ADVISORY_THRESHOLD = 0.4

# (lower bound, tier, summary, tier recommendations), checked in order against the peak score
TIER_RULES = (
    (0.7, RiskTier.HIGH, "High Risk: Significant sensitive content detected.",
     ["Content should be flagged", "Manual review strongly recommended"]),
    (0.5, RiskTier.MEDIUM, "Medium Risk: Some concerning content detected.",
     ["Content may need review"]),
    (0.3, RiskTier.LOW_MEDIUM, "Low Risk: Minor concerns detected.",
     ["Content likely safe with minor concerns"]),
)
SAFE_SUMMARY = "Content appears safe."


class AllFramesFailedError(Exception):
    """No sampled frame produced a usable score."""
    pass


def risk_tier(peak_score: float) -> RiskTier:
    for bound, tier, _, _ in TIER_RULES:
        if peak_score > bound:
            return tier
    return RiskTier.LOW


def summarize(tier: RiskTier) -> str:
    for _, rule_tier, summary, _ in TIER_RULES:
        if rule_tier == tier:
            return summary
    return SAFE_SUMMARY


def recommendations(tier: RiskTier, category_max: dict[str, float]) -> list[str]:
    result = next(
        (list(recs) for _, rule_tier, _, recs in TIER_RULES if rule_tier == tier),
        ["Content appears safe"],
    )
    if category_max.get("nsfw", 0) > NSFW_ADVISORY_THRESHOLD:
        result.append(f"NSFW content detected ({to_percent(category_max['nsfw'])}%)")
    if category_max.get("violence", 0) > VIOLENCE_ADVISORY_THRESHOLD:
        result.append(f"Violence/gore detected ({to_percent(category_max['violence'])}%)")
    return result


def _position_label(position: int, sampled: int) -> str:
    return f"{math.floor(position / sampled * 100)}%"


def aggregate(
    scores: Sequence[FrameScore],
    total_frame_count: int,
    provider: str = "sightengine",
    models_used: Sequence[str] = (),
) -> AnalysisResult:
    """Combine per-frame scores into a single verdict for the video."""
    sampled = len(scores)
    successful = [s for s in scores if s.succeeded]
    if not successful:
        raise AllFramesFailedError("All classification calls failed")

    success_count = len(successful)
    composites = [s.composite_score for s in successful]
    overall = sum(composites) / success_count
    peak = max(composites)
    tier = risk_tier(peak)
    confidence = success_count / sampled

    breakdown = {}
    for name in CATEGORIES:
        values = [getattr(s, name) for s in successful]
        breakdown[name] = CategoryBreakdown(
            average=sum(values) / success_count,
            max=max(values),
            confidence=confidence,
        )

    frame_analysis = []
    for position, score in enumerate(scores):
        composite = score.composite_score if score.succeeded else 0.0
        frame_analysis.append(
            FrameAnalysis(
                frame_index=score.frame_index,
                timestamp=_position_label(position, sampled),
                composite_score=composite,
                is_flagged=composite > FLAG_THRESHOLD,
                categories={name: getattr(score, name) for name in CATEGORIES},
                errors=[score.error] if score.error else [],
            )
        )

    flagged = [f for f in frame_analysis if f.is_flagged]

    return AnalysisResult(
        overall_score=overall,
        peak_score=peak,
        risk_tier=tier,
        category_breakdown=breakdown,
        flagged_frame_indices=[f.frame_index for f in flagged],
        frame_count=sampled,
        total_frames=total_frame_count,
        flagged_frames=len(flagged),
        analysis=summarize(tier),
        recommendations=recommendations(tier, {k: v.max for k, v in breakdown.items()}),
        temporal_analysis=TemporalAnalysis(
            flagged_timestamps=[f.timestamp for f in flagged],
            consistency_score=1 - len(flagged) / sampled,
        ),
        frame_analysis=frame_analysis,
        metadata=AnalysisMetadata(models_used=list(models_used), api_provider=provider),
    )
