"""Prompt context helpers."""

from typing import Any, Dict

# How much each kind of context contributes to confidence in the result.
CONTEXT_WEIGHTS = {
    "post_title": 0.25,
    "categories": 0.15,
    "tags": 0.10,
    "filename_hint": 0.10,
    "exif_data": 0.15,
    "current_alt": 0.10,
    "site_topic": 0.15,
}

# Blend of model confidence, rule-based quality and available context.
FINAL_SCORE_WEIGHTS = {"ai": 0.5, "quality": 0.3, "context": 0.2}


def context_score(context: Dict[str, Any]) -> float:
    """Share of weighted context fields that are present, 0.0 to 1.0."""
    total = sum(CONTEXT_WEIGHTS.values())
    present = sum(weight for key, weight in CONTEXT_WEIGHTS.items() if context.get(key))
    return present / total if total else 0.0


def final_score(ai_score: float, quality_score: float, ctx_score: float) -> float:
    w = FINAL_SCORE_WEIGHTS
    return round(ai_score * w["ai"] + quality_score * w["quality"] + ctx_score * w["context"], 4)


def describe_image(width: int, height: int) -> Dict[str, str]:
    if width <= 0 or height <= 0:
        return {}

    if width > height:
        orientation = "landscape"
    elif height > width:
        orientation = "portrait"
    else:
        orientation = "square"
    return {"dimensions": f"{width}x{height}", "orientation": orientation}
