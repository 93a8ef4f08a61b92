"""
Template explanations built from contrastive evidence.

Format: "Among 18 similar ads, those with subtitles:true performed 11% better."
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np

from .models import (
    BoolTrait,
    ContrastiveAnalysis,
    ExperimentSuggestion,
    ExplanationDetail,
    Neighbor,
    Orb,
    TraitEffect,
)

# Neighbor counts below these make the result explicitly "limited"
LIMITED_DATA_NEIGHBORS = 3
LOW_SAMPLE_NEIGHBORS = 5

HIGH_CONFIDENCE = 70
MODERATE_CONFIDENCE = 40

# Lift (points) above which the percentage reads better than raw points
PERCENT_DISPLAY_LIFT = 10


def explain_trait_effect(effect: TraitEffect, confidence_threshold: float = 0.3, minimal_lift: float = 3.0) -> str:
    n_total = effect.n_with + effect.n_without
    label = effect.label

    if effect.confidence < confidence_threshold:
        return (
            f"Not enough data to determine impact of {label}. "
            f"({effect.n_with} with, {effect.n_without} without)"
        )
    if abs(effect.lift) < minimal_lift:
        return f"{label} shows minimal impact among {n_total} similar ads."

    direction = "better" if effect.lift > 0 else "worse"
    if abs(effect.lift) > PERCENT_DISPLAY_LIFT and effect.lift_percent is not None:
        amount = f"{abs(effect.lift_percent):.0f}%"
    else:
        amount = f"{abs(effect.lift):.0f} points"
    return f"Among {n_total} similar ads, those with {label} performed {amount} {direction}."


def explain_neighbors(neighbors: Sequence[Neighbor]) -> ExplanationDetail:
    if not neighbors:
        return ExplanationDetail(
            type="neighbor_evidence",
            text="No similar ads found in the database.",
            confidence=0.0,
        )

    scores = [s for s in (n.orb.success_score for n in neighbors) if s is not None]
    avg_score = float(np.mean(scores)) if scores else 0.0
    avg_similarity = float(np.mean([n.hybrid_similarity for n in neighbors])) * 100

    text = f"Found {len(neighbors)} similar ads with average {avg_similarity:.0f}% similarity."
    if scores:
        text += f" Their average success score was {avg_score:.0f}."
    top_score = neighbors[0].orb.success_score
    if top_score is not None:
        text += f" Most similar ad scored {top_score:.0f}."

    return ExplanationDetail(
        type="neighbor_evidence",
        text=text,
        confidence=avg_similarity,
        data={
            "neighbor_count": len(neighbors),
            "avg_similarity": avg_similarity,
            "avg_score": avg_score,
        },
    )


def _trait_details(effects: Sequence[TraitEffect], confidence_threshold: float) -> List[ExplanationDetail]:
    return [
        ExplanationDetail(
            type="trait_impact",
            text=explain_trait_effect(effect, confidence_threshold),
            confidence=effect.confidence * 100,
            data={
                "trait": effect.trait,
                "value": effect.trait_value.text,
                "lift": effect.lift,
                "direction": effect.direction.value,
            },
        )
        for effect in effects
    ]


def explain_low_confidence(neighbors: Sequence[Neighbor], low_confidence: Sequence[TraitEffect]) -> List[ExplanationDetail]:
    details = []
    if len(neighbors) < LOW_SAMPLE_NEIGHBORS:
        details.append(ExplanationDetail(
            type="low_confidence",
            text=f"Only {len(neighbors)} similar ads found. Prediction reliability is limited.",
            confidence=len(neighbors) * 10.0,
        ))
    if low_confidence:
        names = ", ".join(e.trait for e in low_confidence[:3])
        details.append(ExplanationDetail(
            type="low_confidence",
            text=f"Limited data for: {names}. Consider A/B testing.",
            confidence=30.0,
        ))
    return details


def generate_recommendations(analysis: ContrastiveAnalysis) -> List[str]:
    """Actionable recommendations from significant, confident effects."""
    recommendations = [e.recommendation for e in analysis.top_positive[:3] if e.recommendation]
    recommendations += [e.recommendation for e in analysis.top_negative[:2] if e.recommendation]

    if analysis.low_confidence:
        names = ", ".join(e.trait for e in analysis.low_confidence[:2])
        recommendations.append(f"A/B test recommended for: {names} - not enough evidence yet.")

    if analysis.total_neighbors < LOW_SAMPLE_NEIGHBORS:
        recommendations.append(
            f"Low sample size ({analysis.total_neighbors} similar ads). "
            f"Results will improve as you add more ads."
        )
    return recommendations


def generate_experiment_suggestions(query: Orb, low_confidence: Sequence[TraitEffect]) -> List[ExperimentSuggestion]:
    """A/B test ideas for query traits whose effect is still uncertain."""
    suggestions = []
    for effect in low_confidence[:3]:
        current = query.traits.get(effect.trait)
        if isinstance(current, BoolTrait):
            variant = "false" if current.value else "true"
            reason = f"Not enough data to determine impact of {effect.trait}. Test both versions."
        else:
            variant = "alternative"
            current_text = current.text if current is not None else "unset"
            reason = f"Limited data for {effect.trait}={current_text}. Consider testing other options."

        suggestions.append(ExperimentSuggestion(
            trait=effect.trait,
            current_value=current.text if current is not None else None,
            suggested_variant=variant,
            reason=reason,
        ))
    return suggestions


def summarize(prediction: float, confidence: float, neighbor_count: int) -> str:
    if neighbor_count < LIMITED_DATA_NEIGHBORS:
        return (
            f"Prediction based on limited data ({neighbor_count} similar ads). "
            f"Treat as rough estimate."
        )
    if confidence >= HIGH_CONFIDENCE:
        return (
            f"Predicted {prediction:.0f}% success with high confidence "
            f"based on {neighbor_count} similar ads."
        )
    if confidence >= MODERATE_CONFIDENCE:
        return (
            f"Predicted {prediction:.0f}% success with moderate confidence. "
            f"More data would improve accuracy."
        )
    return f"Predicted {prediction:.0f}% success, but confidence is low. Consider A/B testing."


def generate_explanation(
    query: Orb,
    prediction: float,
    confidence: float,
    neighbors: Sequence[Neighbor],
    analysis: Optional[ContrastiveAnalysis],
    confidence_threshold: float = 0.3,
) -> Tuple[str, List[ExplanationDetail], List[str], List[ExperimentSuggestion]]:
    """
    Summary, details, recommendations and experiments for a prediction.

    Returns:
        (summary, details, recommendations, experiments)
    """
    analysis = analysis or ContrastiveAnalysis(total_neighbors=len(neighbors))

    details = [explain_neighbors(neighbors)]
    details += _trait_details(analysis.top_positive[:3], confidence_threshold)
    details += _trait_details(analysis.top_negative[:2], confidence_threshold)
    details += explain_low_confidence(neighbors, analysis.low_confidence)

    return (
        summarize(prediction, confidence, len(neighbors)),
        details,
        generate_recommendations(analysis),
        generate_experiment_suggestions(query, analysis.low_confidence),
    )


def legacy_explanation(score: float, confidence: float, reason: Optional[str] = None) -> str:
    text = f"Predicted {score:.0f}% success from creative heuristics (confidence {confidence:.0f})."
    if reason:
        text += f" Similar-ad evidence unavailable: {reason}."
    return text

