"""Compile -> invoke -> critique loop as an explicit, bounded state machine.

    COMPILING -> INVOKING -> CRITIQUING -> PASSED
                                        -> RETRYING -> COMPILING
                                        -> EXHAUSTED

An invoker failure ends the loop immediately by raising (hard exhaustion).
Running out of attempts is soft: the best-scoring attempt is returned with its
issues, never simply the last one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum

from adforge.errors import PipelineCancelled, PipelineError
from adforge.models import AssembledPrompt, CritiqueResult, GenerationContext, RawResult
from adforge.pipeline.cancel import run_cancellable
from adforge.pipeline.compiler import compile_prompt
from adforge.pipeline.critic import Critic, build_revised_prompt
from adforge.pipeline.invoker import GenerationInvoker

log = logging.getLogger(__name__)


class State(str, Enum):
    COMPILING = "compiling"
    INVOKING = "invoking"
    CRITIQUING = "critiquing"
    RETRYING = "retrying"
    PASSED = "passed"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class Attempt:
    number: int
    prompt: str
    raw: RawResult
    critique: CritiqueResult | None  # None when the critic itself failed

    @property
    def score(self) -> int:
        return self.critique.score if self.critique is not None else -1


@dataclass(frozen=True)
class LoopOutcome:
    chosen: Attempt
    attempts: tuple[Attempt, ...]
    final_state: State
    trace: tuple[State, ...]

    @property
    def passed(self) -> bool:
        return self.final_state is State.PASSED

    @property
    def issues(self) -> tuple[str, ...]:
        if self.passed or self.chosen.critique is None:
            return ()
        return self.chosen.critique.issues


class RetryOrchestrator:
    def __init__(self, invoker: GenerationInvoker, critic: Critic, max_attempts: int = 3) -> None:
        self.invoker = invoker
        self.critic = critic
        self.max_attempts = max(1, max_attempts)

    async def run(self, ctx: GenerationContext, cancel: asyncio.Event | None = None) -> LoopOutcome:
        state = State.COMPILING
        trace: list[State] = []
        attempts: list[Attempt] = []
        best: Attempt | None = None
        number = 1
        revised: str | None = None
        prior = ctx.conversation.history if ctx.conversation else ()

        assembled: AssembledPrompt | None = None
        raw: RawResult | None = None
        critique: CritiqueResult | None = None

        while True:
            trace.append(state)

            if state is State.COMPILING:
                if cancel is not None and cancel.is_set():
                    raise PipelineCancelled(f"cancelled before attempt {number}")
                if ctx.assembled is None:
                    ctx.assembled = compile_prompt(ctx)
                # Same image parts every attempt; only the text may change.
                assembled = ctx.assembled if revised is None else replace(ctx.assembled, prompt=revised)
                state = State.INVOKING

            elif state is State.INVOKING:
                log.info("attempt %d/%d: invoking provider", number, self.max_attempts)
                call = self.invoker.invoke(
                    assembled,
                    prior,
                    resolution=ctx.input.resolution,
                    aspect_ratio=ctx.input.aspect_ratio,
                )
                try:
                    raw = await run_cancellable(call, cancel, f"attempt {number}")
                except PipelineCancelled:
                    raise
                except PipelineError as e:
                    log.error("attempt %d: provider failed (%s), loop exhausted", number, type(e).__name__)
                    raise
                state = State.CRITIQUING

            elif state is State.CRITIQUING:
                review = self.critic.critique(raw, ctx, ctx.assembled.prompt)
                try:
                    critique = await run_cancellable(review, cancel, f"critique of attempt {number}")
                except PipelineCancelled:
                    raise
                except Exception:
                    log.warning("attempt %d: critic failed, accepting image unreviewed", number, exc_info=True)
                    critique = None

                current = Attempt(number=number, prompt=assembled.prompt, raw=raw, critique=critique)
                attempts.append(current)
                # Strictly greater: on a tie the earlier attempt stays best.
                if best is None or current.score > best.score:
                    best = current

                if critique is None or critique.passed:
                    log.info("attempt %d passed (score=%s)", number, critique.score if critique else "n/a")
                    ctx.result = raw
                    trace.append(State.PASSED)
                    return LoopOutcome(current, tuple(attempts), State.PASSED, tuple(trace))

                log.info("attempt %d failed critique (score=%d, issues=%s)", number, critique.score, list(critique.issues))
                state = State.RETRYING if number < self.max_attempts else State.EXHAUSTED

            elif state is State.RETRYING:
                revised = critique.revised_prompt or build_revised_prompt(
                    ctx.assembled.prompt, critique.checks, list(critique.issues)
                )
                number += 1
                state = State.COMPILING

            elif state is State.EXHAUSTED:
                log.warning(
                    "all %d attempts failed critique; returning attempt %d (score=%d)",
                    len(attempts),
                    best.number,
                    best.score,
                )
                ctx.result = best.raw
                return LoopOutcome(best, tuple(attempts), State.EXHAUSTED, tuple(trace))
