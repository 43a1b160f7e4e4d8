"""Pipeline entry points: run_generation and run_edit.

Every collaborator (provider, persister, context sources, critic) is passed in
by the caller; nothing here reaches for a module-level client.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from adforge.config import Settings, settings as default_settings
from adforge.errors import PersistenceError, PipelineError, QualityGateError, ValidationError
from adforge.models import (
    RESOLUTIONS,
    Generation,
    GenerationContext,
    GenerationInput,
    GenerationMetadata,
    GenerationResult,
    Mode,
)
from adforge.pipeline.cancel import run_cancellable
from adforge.pipeline.compiler import compile_prompt
from adforge.pipeline.conversation import ConversationManager, edit_context
from adforge.pipeline.critic import Critic, RubricCritic
from adforge.pipeline.gate import evaluate_gate
from adforge.pipeline.invoker import GenerationInvoker
from adforge.pipeline.orchestrator import LoopOutcome, RetryOrchestrator
from adforge.providers.base import ImageProvider
from adforge.sources.assembler import ContextAssembler
from adforge.sources.base import ContextSources
from adforge.storage import ResultPersister

log = logging.getLogger(__name__)


class GenerationPipeline:
    def __init__(
        self,
        provider: ImageProvider,
        persister: ResultPersister,
        sources: ContextSources | None = None,
        critic: Critic | None = None,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.persister = persister
        self.assembler = ContextAssembler(sources or ContextSources(), self.settings, http_client)
        self.invoker = GenerationInvoker(provider, self.settings)
        self.critic = critic or RubricCritic(pass_threshold=self.settings.critic_pass_threshold)
        self.orchestrator = RetryOrchestrator(self.invoker, self.critic, self.settings.max_attempts)
        self.conversations = ConversationManager(persister)

    async def run_generation(self, inp: GenerationInput, cancel: asyncio.Event | None = None) -> GenerationResult:
        validate_input(inp, self.settings)
        started = time.monotonic()
        log.info(
            "generation started: mode=%s images=%d template=%s recipe=%s style_refs=%d",
            inp.mode.value,
            len(inp.images),
            inp.template_id,
            inp.recipe is not None,
            len(inp.style_reference_ids),
        )

        ctx, stages = await run_cancellable(self.assembler.assemble(inp), cancel, "context assembly")
        if self.settings.gate_enabled:
            self._gate(ctx)
            stages.append("gate")

        ctx.assembled = compile_prompt(ctx)
        stages.append("assembly")
        log.info("prompt assembled: %d chars, %d image part(s)", len(ctx.assembled.prompt), len(ctx.assembled.image_parts))

        outcome = await self.orchestrator.run(ctx, cancel)
        stages.extend(["generation", "critic"])

        gen = await self._persist(ctx, outcome, parent=None, started=started)
        stages.append("persistence")

        log.info("generation %s completed in %.1fs via %s", gen.id, time.monotonic() - started, stages)
        return _result(gen, ctx, outcome, stages)

    async def run_edit(
        self,
        parent_generation_id: str,
        edit_prompt: str,
        user_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> GenerationResult:
        started = time.monotonic()
        parent, seed = await self.conversations.seed(parent_generation_id, edit_prompt, user_id)
        ctx = edit_context(parent, seed)
        stages = ["conversation"]

        ctx.assembled = compile_prompt(ctx)
        stages.append("assembly")

        outcome = await self.orchestrator.run(ctx, cancel)
        stages.extend(["generation", "critic"])

        gen = await self._persist(ctx, outcome, parent=parent, started=started)
        stages.append("persistence")

        log.info("edit %s of %s completed (edit_count=%d)", gen.id, parent.id, gen.edit_count)
        return _result(gen, ctx, outcome, stages)

    def _gate(self, ctx: GenerationContext) -> None:
        gate = evaluate_gate(ctx)
        if gate.score < self.settings.gate_block_threshold:
            raise QualityGateError(gate.score, list(gate.suggestions))
        if gate.score < self.settings.gate_warn_threshold:
            log.warning("pre-generation gate warning (score=%d): %s", gate.score, list(gate.suggestions))

    async def _persist(
        self, ctx: GenerationContext, outcome: LoopOutcome, parent: Generation | None, started: float
    ) -> Generation:
        raw = outcome.chosen.raw
        inp = ctx.input
        metadata = GenerationMetadata(
            user_id=inp.user_id,
            prompt=inp.prompt,
            image_bytes=raw.image_bytes,
            mime_type=raw.mime_type,
            conversation_history=raw.conversation_history,
            model=raw.model,
            aspect_ratio=inp.aspect_ratio,
            mode=inp.mode,
            template_id=inp.template_id,
            product_ids=tuple(inp.product_ids),
            resolution=inp.resolution,
            original_images=tuple(inp.images),
            usage_metadata=dict(raw.usage_metadata or {}),
            duration_ms=round((time.monotonic() - started) * 1000),
        )
        try:
            if parent is None:
                return await self.persister.create_generation(metadata)
            return await self.persister.create_edit(parent.id, ctx.conversation.edit_prompt, metadata)
        except PipelineError:
            raise
        except Exception as e:
            log.error("generated image could not be saved", exc_info=True)
            raise PersistenceError(f"failed to save generation: {e}", prompt=outcome.chosen.prompt, mime_type=raw.mime_type) from e


def validate_input(inp: GenerationInput, settings: Settings) -> None:
    if not inp.prompt or not inp.prompt.strip():
        raise ValidationError("prompt is empty")
    if not inp.user_id:
        raise ValidationError("user_id is required")
    if not isinstance(inp.mode, Mode):
        raise ValidationError(f"unknown mode {inp.mode!r}")
    if inp.resolution not in RESOLUTIONS:
        raise ValidationError(f"resolution must be one of {', '.join(RESOLUTIONS)}")
    if len(inp.images) > settings.max_images:
        raise ValidationError(f"at most {settings.max_images} images are allowed")

    max_bytes = settings.max_image_mb * 1024 * 1024
    for img in inp.images:
        if img.mime_type not in settings.allowed_mime_types:
            raise ValidationError(f"unsupported image type {img.mime_type} ({img.name})")
        if not img.data:
            raise ValidationError(f"image {img.name} is empty")
        if len(img.data) > max_bytes:
            raise ValidationError(f"image {img.name} exceeds {settings.max_image_mb} MB")

    if inp.mode is Mode.EXACT_INSERT and not inp.images and not inp.template_id:
        raise ValidationError("exact_insert needs a product image or a template")


def _result(gen: Generation, ctx: GenerationContext, outcome: LoopOutcome, stages: list[str]) -> GenerationResult:
    critique = outcome.chosen.critique
    return GenerationResult(
        generation_id=gen.id,
        image_url=gen.image_url,
        prompt=outcome.chosen.prompt,
        can_edit=bool(gen.conversation_history),
        mode=ctx.input.mode,
        stages_completed=tuple(stages),
        template_id=ctx.input.template_id,
        issues=outcome.issues,
        score=critique.score if critique is not None else None,
        attempts=len(outcome.attempts),
        parent_generation_id=gen.parent_generation_id,
        edit_count=gen.edit_count,
    )
