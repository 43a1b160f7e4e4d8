"""Heuristic readiness check run before the (expensive) provider call.

Four 0-25 sub-scores: prompt specificity, context completeness, image coverage
for the mode, and mode/template consistency.
"""

from __future__ import annotations

from dataclasses import dataclass

from adforge.models import GenerationContext, Mode

DESCRIPTIVE_KEYWORDS = (
    "lighting",
    "background",
    "color",
    "style",
    "professional",
    "product",
    "scene",
    "mood",
    "angle",
    "perspective",
    "composition",
    "quality",
)


@dataclass(frozen=True)
class GateBreakdown:
    prompt_specificity: int
    context_completeness: int
    image_coverage: int
    consistency: int


@dataclass(frozen=True)
class GateResult:
    score: int
    suggestions: tuple[str, ...]
    breakdown: GateBreakdown


def evaluate_gate(ctx: GenerationContext) -> GateResult:
    inp = ctx.input
    suggestions: list[str] = []

    prompt = inp.prompt.strip()
    n = len(prompt)
    if n == 0:
        specificity = 0
        suggestions.append("Prompt is empty. Describe the image you want to generate.")
    elif n < 20:
        specificity = 5
        suggestions.append("Prompt is very short. Add details about the scene, style, and composition.")
    elif n < 50:
        specificity = 12
        suggestions.append("Consider adding more detail to your prompt (lighting, environment, mood).")
    elif n < 150:
        specificity = 18
    else:
        specificity = 25
    lowered = prompt.lower()
    if sum(1 for kw in DESCRIPTIVE_KEYWORDS if kw in lowered) >= 3:
        specificity = min(25, specificity + 5)

    has_brand = ctx.brand is not None
    has_recipe = inp.recipe is not None
    has_template = ctx.template is not None or bool(inp.template_id)
    completeness = (10 if has_brand else 0) + (8 if has_recipe else 0) + (7 if has_template else 0)
    if completeness == 0:
        # Prompt alone is valid; a long one partly compensates.
        completeness = 10 if n > 100 else 5

    count = len(inp.images)
    if inp.mode in (Mode.EXACT_INSERT, Mode.INSPIRATION):
        if count:
            coverage = 25 if count >= 2 else 20
        else:
            coverage = 10
            if inp.mode is Mode.EXACT_INSERT:
                suggestions.append("Exact insert mode works best with product photos.")
        if has_template:
            consistency = 25
        else:
            consistency = 5
            suggestions.append(f"{inp.mode.value} mode works best with a template. Select one for best results.")
    else:
        coverage = (25 if count >= 2 else 22) if count else 15
        consistency = 25

    score = specificity + completeness + coverage + consistency
    return GateResult(
        score=score,
        suggestions=tuple(suggestions),
        breakdown=GateBreakdown(specificity, completeness, coverage, consistency),
    )
