"""Compile -> invoke -> critique loop."""

import pytest

from conftest import LONG_PROMPT, FakeImageProvider, FakeJudge, judgement, upload

from adforge.errors import GenerationError, TransientProviderError
from adforge.models import CritiqueChecks, CritiqueResult, GenerationContext, GenerationInput
from adforge.pipeline.critic import RubricCritic
from adforge.pipeline.invoker import GenerationInvoker
from adforge.pipeline.orchestrator import RetryOrchestrator, State


def _ctx():
    return GenerationContext(input=GenerationInput(prompt=LONG_PROMPT, user_id="u1", images=(upload(),)))


def _loop(provider, judge, settings, max_attempts=3):
    return RetryOrchestrator(GenerationInvoker(provider, settings), RubricCritic(judge), max_attempts)


@pytest.mark.asyncio
async def test_first_pass_stops_the_loop(settings):
    provider = FakeImageProvider()
    ctx = _ctx()
    outcome = await _loop(provider, FakeJudge([judgement(score=90)]), settings).run(ctx)

    assert outcome.passed
    assert len(outcome.attempts) == 1
    assert outcome.trace == (State.COMPILING, State.INVOKING, State.CRITIQUING, State.PASSED)
    assert ctx.result is outcome.chosen.raw


@pytest.mark.asyncio
async def test_retry_uses_revised_prompt_and_same_image_parts(settings):
    provider = FakeImageProvider()
    judge = FakeJudge([judgement(score=20, product_visible=False), judgement(score=90)])
    ctx = _ctx()

    outcome = await _loop(provider, judge, settings).run(ctx)

    assert outcome.passed
    assert [a.number for a in outcome.attempts] == [1, 2]
    assert outcome.issues == ()
    first, second = provider.calls
    assert "REVISION NOTES" not in first["prompt"]
    assert second["prompt"].startswith(first["prompt"])
    assert "REVISION NOTES" in second["prompt"]
    assert second["image_parts"] == first["image_parts"]
    # The critic always judges against the un-revised prompt.
    assert "REVISION NOTES" not in judge.rubrics[1]
    assert outcome.chosen.prompt == second["prompt"]
    assert State.RETRYING in outcome.trace


@pytest.mark.asyncio
async def test_exhaustion_returns_best_attempt_not_last(settings):
    provider = FakeImageProvider()
    judge = FakeJudge(
        [
            judgement(score=11, product_visible=False),
            judgement(score=51, product_visible=False, issues=["mug is cropped"]),
            judgement(score=31, product_visible=False),
        ]
    )
    ctx = _ctx()

    outcome = await _loop(provider, judge, settings).run(ctx)

    assert outcome.final_state is State.EXHAUSTED
    assert len(provider.calls) == 3
    assert [a.score for a in outcome.attempts] == [38, 58, 48]
    assert outcome.chosen.number == 2
    assert "mug is cropped" in outcome.issues
    assert ctx.result is outcome.attempts[1].raw


@pytest.mark.asyncio
async def test_ties_keep_the_earlier_attempt(settings):
    provider = FakeImageProvider()
    judge = FakeJudge([judgement(score=30, product_visible=False)])
    outcome = await _loop(provider, judge, settings, max_attempts=2).run(_ctx())

    assert outcome.attempts[0].score == outcome.attempts[1].score
    assert outcome.chosen.number == 1


@pytest.mark.asyncio
async def test_provider_failure_ends_the_loop(settings):
    settings.invoke_max_attempts = 1
    provider = FakeImageProvider(script=[None, TransientProviderError("503")])
    judge = FakeJudge([judgement(score=10, product_visible=False)])

    with pytest.raises(GenerationError):
        await _loop(provider, judge, settings).run(_ctx())
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_critic_crash_accepts_image_unreviewed(settings):
    class Broken:
        async def critique(self, raw, ctx, prompt):
            raise RuntimeError("critic exploded")

    loop = RetryOrchestrator(GenerationInvoker(FakeImageProvider(), settings), Broken(), 3)
    outcome = await loop.run(_ctx())

    assert outcome.passed
    assert outcome.chosen.critique is None
    assert outcome.issues == ()


@pytest.mark.asyncio
async def test_single_attempt_budget(settings):
    class AlwaysFails:
        async def critique(self, raw, ctx, prompt):
            return CritiqueResult(passed=False, score=40, checks=CritiqueChecks(composition_ok=False), issues=("dull",))

    provider = FakeImageProvider()
    outcome = await RetryOrchestrator(GenerationInvoker(provider, settings), AlwaysFails(), 1).run(_ctx())

    assert outcome.final_state is State.EXHAUSTED
    assert len(provider.calls) == 1
    assert outcome.issues == ("dull",)
