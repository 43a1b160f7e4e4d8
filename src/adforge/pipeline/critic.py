"""Post-generation critique.

Four independent checks feed a swappable scoring policy:

- composition: local Pillow inspection (decodes, big enough, not a flat frame)
  plus the judge's opinion when one is configured
- product visible: judged; a hard failure whenever a product was expected
- brand consistent: judged; only meaningful when a brand profile is known
- prompt faithful: judged

Without a judge, the judged checks pass and the score comes from local
inspection alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Protocol

from PIL import Image, ImageStat

from adforge.models import CritiqueChecks, CritiqueResult, GenerationContext, RawResult
from adforge.providers.base import ImageJudge, ImageJudgement

log = logging.getLogger(__name__)

MIN_SIDE_PX = 64
FLAT_STDDEV = 2.0
MAX_ISSUES = 5

CORRECTIONS = {
    "product_visible": "Make the product the clearly visible, recognizable hero of the image.",
    "brand_consistent": "Use the brand colors and visual style throughout.",
    "composition_ok": "Use a balanced, professional composition with the subject fully in frame.",
    "prompt_faithful": "Follow every explicit instruction in the request.",
}


class Critic(Protocol):
    async def critique(self, raw: RawResult, ctx: GenerationContext, prompt: str) -> CritiqueResult: ...


@dataclass(frozen=True)
class Evidence:
    local_issues: tuple[str, ...]
    judgement: ImageJudgement | None


@dataclass(frozen=True)
class CheckOutcome:
    ok: bool
    hard: bool = False
    issue: str | None = None


class Check(Protocol):
    name: str

    def evaluate(self, evidence: Evidence, ctx: GenerationContext) -> CheckOutcome: ...


class CompositionCheck:
    name = "composition_ok"

    def evaluate(self, evidence: Evidence, ctx: GenerationContext) -> CheckOutcome:
        if evidence.local_issues:
            return CheckOutcome(ok=False, hard=True, issue=evidence.local_issues[0])
        if evidence.judgement is not None and not evidence.judgement.composition_good:
            return CheckOutcome(ok=False, issue="composition is unbalanced or the subject is cropped")
        return CheckOutcome(ok=True)


class ProductVisibleCheck:
    name = "product_visible"

    def evaluate(self, evidence: Evidence, ctx: GenerationContext) -> CheckOutcome:
        if not ctx.expects_product or evidence.judgement is None:
            return CheckOutcome(ok=True)
        if evidence.judgement.product_visible:
            return CheckOutcome(ok=True)
        return CheckOutcome(ok=False, hard=True, issue="product is not clearly visible")


class BrandConsistentCheck:
    name = "brand_consistent"

    def evaluate(self, evidence: Evidence, ctx: GenerationContext) -> CheckOutcome:
        if ctx.brand is None or evidence.judgement is None or evidence.judgement.brand_consistent:
            return CheckOutcome(ok=True)
        return CheckOutcome(ok=False, issue="image contradicts the brand colors or style")


class PromptFaithfulCheck:
    name = "prompt_faithful"

    def evaluate(self, evidence: Evidence, ctx: GenerationContext) -> CheckOutcome:
        if evidence.judgement is None or evidence.judgement.prompt_faithful:
            return CheckOutcome(ok=True)
        return CheckOutcome(ok=False, issue="image does not follow the prompt's instructions")


DEFAULT_CHECKS: tuple[Check, ...] = (
    ProductVisibleCheck(),
    BrandConsistentCheck(),
    CompositionCheck(),
    PromptFaithfulCheck(),
)


class ScoringPolicy(Protocol):
    def score(self, outcomes: dict[str, bool], judge_score: int | None) -> int: ...


class WeightedScoring:
    def __init__(self, weights: dict[str, int] | None = None) -> None:
        self.weights = weights or {
            "product_visible": 35,
            "composition_ok": 25,
            "brand_consistent": 20,
            "prompt_faithful": 20,
        }

    def score(self, outcomes: dict[str, bool], judge_score: int | None) -> int:
        total = sum(self.weights.get(name, 0) for name in outcomes) or 1
        earned = sum(self.weights.get(name, 0) for name, ok in outcomes.items() if ok)
        check_score = round(100 * earned / total)
        if judge_score is None:
            return check_score
        return round((check_score + judge_score) / 2)


class RubricCritic:
    def __init__(
        self,
        judge: ImageJudge | None = None,
        *,
        pass_threshold: int = 60,
        checks: tuple[Check, ...] = DEFAULT_CHECKS,
        scoring: ScoringPolicy | None = None,
    ) -> None:
        self.judge = judge
        self.pass_threshold = pass_threshold
        self.checks = checks
        self.scoring = scoring or WeightedScoring()

    async def critique(self, raw: RawResult, ctx: GenerationContext, prompt: str) -> CritiqueResult:
        local_issues = tuple(inspect_composition(raw.image_bytes))
        judgement = None
        # A corrupt image is a hard failure already; no point paying for a judge call.
        if self.judge is not None and not local_issues:
            try:
                judgement = await self.judge.judge(raw.image_bytes, raw.mime_type, build_rubric(ctx, prompt))
            except Exception:
                log.warning("image judge failed, scoring on local checks only", exc_info=True)

        evidence = Evidence(local_issues=local_issues, judgement=judgement)
        outcomes = {check.name: check.evaluate(evidence, ctx) for check in self.checks}

        checks = CritiqueChecks(**{name: o.ok for name, o in outcomes.items() if name in CORRECTIONS})
        judge_score = judgement.score if judgement is not None else None
        score = max(0, min(100, self.scoring.score({n: o.ok for n, o in outcomes.items()}, judge_score)))
        hard_failure = any(o.hard and not o.ok for o in outcomes.values())
        passed = score >= self.pass_threshold and not hard_failure

        issues: list[str] = [o.issue for o in outcomes.values() if not o.ok and o.issue]
        if judgement is not None:
            issues.extend(i for i in judgement.issues if i not in issues)
        issues = issues[:MAX_ISSUES]

        return CritiqueResult(
            passed=passed,
            score=score,
            checks=checks,
            issues=tuple(issues),
            revised_prompt=None if passed else build_revised_prompt(prompt, checks, issues),
        )


def inspect_composition(image_bytes: bytes) -> list[str]:
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            img.load()
            width, height = img.size
            stat = ImageStat.Stat(img.convert("L"))
    except (OSError, ValueError, Image.DecompressionBombError):
        return ["image could not be decoded"]

    issues: list[str] = []
    if min(width, height) < MIN_SIDE_PX:
        issues.append(f"image is too small ({width}x{height})")
    if stat.stddev[0] < FLAT_STDDEV:
        issues.append("image is blank or a single flat color")
    return issues


def build_rubric(ctx: GenerationContext, prompt: str) -> str:
    brand = ctx.brand
    product_name = ctx.product.primary_name if ctx.product else "the product"
    photos = "YES, the product should be clearly visible" if ctx.expects_product else "NO, described in text only"
    return (
        "You are an advertising quality evaluator. Evaluate this generated ad image.\n\n"
        f'ORIGINAL PROMPT: "{ctx.input.prompt}"\n\n'
        "CONTEXT:\n"
        f"- Brand: {brand.name if brand else 'Unknown'}\n"
        f"- Brand Colors: {', '.join(brand.colors) if brand and brand.colors else 'not specified'}\n"
        f"- Product: {product_name}\n"
        f"- Product expected: {photos}\n\n"
        "Respond in this exact JSON format:\n"
        "{\n"
        '  "score": <number 0-100>,\n'
        '  "product_visible": <boolean>,\n'
        '  "brand_consistent": <boolean>,\n'
        '  "composition_good": <boolean>,\n'
        '  "prompt_faithful": <boolean>,\n'
        '  "issues": [<short strings, empty if none>]\n'
        "}\n\n"
        f"FULL GENERATION PROMPT:\n{prompt[:2000]}"
    )


def build_revised_prompt(prompt: str, checks: CritiqueChecks, issues: list[str]) -> str:
    notes = [CORRECTIONS[name] for name in checks.failed()]
    notes.extend(f"Fix: {issue}" for issue in issues[:3])
    if not notes:
        notes.append("Improve overall image quality and polish.")
    return prompt + "\n\nREVISION NOTES (the previous attempt fell short):\n" + "\n".join(f"- {n}" for n in notes)
