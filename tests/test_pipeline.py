"""End-to-end runs of GenerationPipeline against fakes and a real on-disk store."""

import asyncio
import logging

import pytest

from conftest import LONG_PROMPT, FakeImageProvider, FakeJudge, StaticSource, judgement, upload

from adforge.errors import (
    NotFoundError,
    PersistenceError,
    PipelineCancelled,
    QualityGateError,
    ValidationError,
)
from adforge.models import (
    BrandContext,
    GenerationInput,
    GenerationMetadata,
    ImageInput,
    Mode,
    Recipe,
    RecipeProduct,
    VisionContext,
)
from adforge.pipeline.critic import RubricCritic
from adforge.pipeline.service import GenerationPipeline, validate_input
from adforge.sources.base import ContextSources


def _pipeline(store, settings, provider=None, judge=None, sources=None):
    return GenerationPipeline(
        provider=provider or FakeImageProvider(),
        persister=store,
        sources=sources,
        critic=RubricCritic(judge, pass_threshold=settings.critic_pass_threshold),
        settings=settings,
    )


def _input(**kw):
    kw.setdefault("prompt", LONG_PROMPT)
    kw.setdefault("user_id", "u1")
    return GenerationInput(**kw)


@pytest.mark.asyncio
async def test_product_photo_generation_uses_vision(store, settings):
    provider = FakeImageProvider()
    sources = ContextSources(vision=StaticSource(VisionContext(category="mug", materials=("ceramic",))))
    pipeline = _pipeline(store, settings, provider, FakeJudge([judgement(score=90)]), sources)

    result = await pipeline.run_generation(_input(images=(upload(),)))

    assert result.stages_completed == ("vision", "gate", "assembly", "generation", "critic", "persistence")
    assert result.can_edit
    assert result.issues == ()
    assert result.attempts == 1
    assert result.image_url == f"/generations/{result.generation_id}/image"
    assert "PRODUCT VISUAL ANALYSIS" in provider.calls[0]["prompt"]

    saved = await store.get_generation(result.generation_id)
    assert saved.edit_count == 0
    assert saved.parent_generation_id is None
    assert len(saved.conversation_history) == 2
    assert store.image_path(saved).exists()
    assert saved.usage_metadata == {"call": 1}
    assert saved.duration_ms is not None and saved.duration_ms >= 0
    assert len(saved.original_image_paths) == 1
    assert (store.root_dir / saved.original_image_paths[0]).read_bytes() == upload().data


@pytest.mark.asyncio
async def test_failed_critique_is_retried_with_a_revised_prompt(store, settings):
    provider = FakeImageProvider()
    judge = FakeJudge([judgement(score=20, product_visible=False), judgement(score=90)])

    result = await _pipeline(store, settings, provider, judge).run_generation(_input(images=(upload(),)))

    assert result.attempts == 2
    assert result.issues == ()
    assert "REVISION NOTES" in result.prompt
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_exhausted_loop_still_persists_best_image_with_issues(store, settings):
    provider = FakeImageProvider()
    judge = FakeJudge(
        [
            judgement(score=11, product_visible=False),
            judgement(score=51, product_visible=False),
            judgement(score=31, product_visible=False),
        ]
    )

    result = await _pipeline(store, settings, provider, judge).run_generation(_input(images=(upload(),)))

    assert result.attempts == 3
    assert result.score == 58
    assert "product is not clearly visible" in result.issues
    saved = await store.get_generation(result.generation_id)
    # Attempt 2's turns were kept, not attempt 3's.
    assert saved.conversation_history[1].blob == b"model-2"


@pytest.mark.asyncio
async def test_edit_chain(store, settings):
    provider = FakeImageProvider()
    pipeline = _pipeline(store, settings, provider)

    root = await pipeline.run_generation(_input())
    first = await pipeline.run_edit(root.generation_id, "make the mug blue", user_id="u1")
    second = await pipeline.run_edit(first.generation_id, "add steam rising from the mug")

    assert first.stages_completed[0] == "conversation"
    assert (first.parent_generation_id, first.edit_count) == (root.generation_id, 1)
    assert (second.parent_generation_id, second.edit_count) == (first.generation_id, 2)

    parent = await store.get_generation(root.generation_id)
    child = await store.get_generation(first.generation_id)
    assert provider.calls[1]["prior"] == parent.conversation_history
    assert provider.calls[1]["image_parts"] == ()
    assert child.conversation_history[:2] == parent.conversation_history
    assert len(child.conversation_history) == 4
    assert child.edit_prompt == "make the mug blue"

    chain = await store.get_edit_chain(second.generation_id)
    assert [g.id for g in chain] == [root.generation_id, first.generation_id, second.generation_id]


@pytest.mark.asyncio
async def test_edit_of_unknown_or_foreign_generation(store, settings):
    pipeline = _pipeline(store, settings)
    root = await pipeline.run_generation(_input())

    with pytest.raises(NotFoundError):
        await pipeline.run_edit("does-not-exist", "make it blue")
    with pytest.raises(NotFoundError):
        await pipeline.run_edit(root.generation_id, "make it blue", user_id="someone-else")
    with pytest.raises(ValidationError):
        await pipeline.run_edit(root.generation_id, "   ")


@pytest.mark.asyncio
async def test_generation_without_history_cannot_be_edited(store, settings):
    gen = await store.create_generation(
        GenerationMetadata(
            user_id="u1",
            prompt="legacy",
            image_bytes=b"png",
            mime_type="image/png",
            conversation_history=(),
            model="m",
            aspect_ratio="1:1",
        )
    )
    with pytest.raises(ValidationError, match="no conversation history"):
        await _pipeline(store, settings).run_edit(gen.id, "make it blue")


@pytest.mark.asyncio
async def test_broken_sources_do_not_fail_generation(store, settings, caplog):
    kb = StaticSource(ConnectionError("kb unreachable"))
    sources = ContextSources(
        brand=StaticSource(RuntimeError("brand db down")),
        patterns=StaticSource(["x"], delay=5.0),
        kb=kb,
    )
    recipe = Recipe(products=(RecipeProduct(id="p1", name="Mug"),))

    with caplog.at_level(logging.WARNING, logger="adforge.sources.assembler"):
        result = await _pipeline(store, settings, sources=sources).run_generation(_input(recipe=recipe))

    assert kb.calls == 1
    assert "kb" not in result.stages_completed
    assert result.stages_completed == ("gate", "assembly", "generation", "critic", "persistence")
    messages = [r.getMessage() for r in caplog.records]
    assert any("context stage kb failed" in m for m in messages)
    assert any("context stage brand failed" in m for m in messages)
    assert any("context stage patterns timed out" in m for m in messages)


@pytest.mark.asyncio
async def test_brand_context_reaches_the_prompt(store, settings):
    provider = FakeImageProvider()
    sources = ContextSources(brand=StaticSource(BrandContext(name="Acme", colors=("crimson",))))
    result = await _pipeline(store, settings, provider, sources=sources).run_generation(_input())

    assert result.stages_completed[0] == "brand"
    assert "Brand Colors: crimson" in provider.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_quality_gate_blocks_before_the_provider(store, settings):
    provider = FakeImageProvider()
    with pytest.raises(QualityGateError) as exc:
        await _pipeline(store, settings, provider).run_generation(_input(prompt="hat", mode=Mode.INSPIRATION))

    assert exc.value.score < settings.gate_block_threshold
    assert exc.value.suggestions
    assert provider.calls == []


@pytest.mark.asyncio
async def test_gate_can_be_disabled(store, settings):
    settings.gate_enabled = False
    result = await _pipeline(store, settings).run_generation(_input(prompt="hat", mode=Mode.INSPIRATION))
    assert "gate" not in result.stages_completed


@pytest.mark.asyncio
async def test_cancel_before_start(store, settings):
    provider = FakeImageProvider()
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(PipelineCancelled):
        await _pipeline(store, settings, provider).run_generation(_input(), cancel=cancel)
    assert provider.calls == []


@pytest.mark.asyncio
async def test_cancel_during_provider_call(store, settings):
    cancel = asyncio.Event()
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(5)

    provider = FakeImageProvider(script=[slow])
    pipeline = _pipeline(store, settings, provider)

    async def cancel_when_started():
        await started.wait()
        cancel.set()

    canceller = asyncio.create_task(cancel_when_started())
    with pytest.raises(PipelineCancelled):
        await pipeline.run_generation(_input(), cancel=cancel)
    await canceller

    assert list(store.records_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_persistence_failure_reports_creative_success(settings):
    class FailingStore:
        async def create_generation(self, metadata):
            raise RuntimeError("disk full")

    with pytest.raises(PersistenceError) as exc:
        await _pipeline(FailingStore(), settings).run_generation(_input())

    assert exc.value.creative_succeeded
    assert exc.value.mime_type == "image/png"
    assert exc.value.prompt == LONG_PROMPT


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"prompt": "  "}, "prompt is empty"),
        ({"user_id": ""}, "user_id"),
        ({"resolution": "8K"}, "resolution"),
        ({"images": (ImageInput(data=b"x", mime_type="image/gif"),)}, "unsupported image type"),
        ({"images": (ImageInput(data=b"", mime_type="image/png"),)}, "is empty"),
        ({"mode": Mode.EXACT_INSERT}, "exact_insert"),
        ({"mode": "freestyle"}, "unknown mode"),
    ],
)
def test_validate_input_rejects(settings, overrides, message):
    with pytest.raises(ValidationError, match=message):
        validate_input(_input(**overrides), settings)


def test_validate_input_limits_image_count_and_size(settings):
    settings.max_images = 1
    with pytest.raises(ValidationError, match="at most 1"):
        validate_input(_input(images=(upload(), upload())), settings)

    settings.max_images = 6
    settings.max_image_mb = 0
    with pytest.raises(ValidationError, match="exceeds"):
        validate_input(_input(images=(upload(),)), settings)


def test_exact_insert_accepts_a_template_without_images(settings):
    validate_input(_input(mode=Mode.EXACT_INSERT, template_id="t1"), settings)


@pytest.mark.asyncio
async def test_corrupt_parent_record_is_a_persistence_error(store, settings):
    pipeline = _pipeline(store, settings)
    root = await pipeline.run_generation(_input())
    (store.records_dir / f"{root.generation_id}.json").write_text('{"id": "trunc', encoding="utf-8")

    with pytest.raises(PersistenceError) as exc:
        await pipeline.run_edit(root.generation_id, "make it blue")
    assert not exc.value.creative_succeeded
